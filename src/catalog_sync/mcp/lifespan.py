"""Lifespan management for MCP server startup and shutdown."""

import logging
import sys
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from typing import Any

from dotenv import load_dotenv

from ..config import load_config
from ..config_loader import (
    discover_config_files,
    load_hierarchical_config,
)
from ..config_schema import build_config
from ..core.async_utils import run_sync
from ..core.client import CatalogClient
from ..errors import CatalogSyncError

logger = logging.getLogger(__name__)


def _stderr_print(msg: str) -> None:
    """Print message to stderr for user feedback (safe in MCP mode)."""
    print(msg, file=sys.stderr, flush=True)


@asynccontextmanager
async def server_lifespan(
    config_overrides: dict[str, Any] | None = None,
) -> AsyncIterator[dict[str, Any]]:
    """
    Manage server startup and shutdown lifecycle.

    On startup:
    - Load .env file (so values are available for env var lookups and YAML interpolation)
    - Load YAML config file if present (shop section as fallbacks, sync section as settings)
    - Merge all sources via load_config(): CLI > env vars > .env > YAML > defaults
    - Create CatalogClient and validate the connection
    - Fail fast if the shop is unreachable

    Args:
        config_overrides: Optional dict with config values from CLI
            (shop_domain, access_token, api_version, read_only, debug)

    Yields:
        Dict with 'config' and 'client' keys

    Raises:
        RuntimeError: If configuration is invalid or the connection fails.
    """
    logger.info("MCP server starting...")
    _stderr_print("Catalog Sync MCP Server starting...")

    try:
        # .env first so ${VAR} interpolation in YAML can use its values
        load_dotenv()

        yaml_fallbacks: dict[str, Any] | None = None
        sync_settings = None
        config_files = discover_config_files()
        sources = []

        if config_files:
            config_path = config_files[0]
            unified = build_config(load_hierarchical_config())
            yaml_fallbacks = {
                k: v
                for k, v in unified.shop.model_dump().items()
                if v is not None
            }
            sync_settings = unified.sync
            sources.append(f"config file: {config_path}")

        overrides = config_overrides or {}
        config = load_config(
            shop_domain=overrides.get("shop_domain"),
            access_token=overrides.get("access_token"),
            api_version=overrides.get("api_version"),
            read_only=overrides.get("read_only", False),
            debug=overrides.get("debug", False),
            yaml_fallbacks=yaml_fallbacks,
            sync_settings=sync_settings,
        )

        if overrides:
            sources.append("CLI arguments")
        sources.append("environment variables")
        source_desc = ", ".join(sources)
        logger.info("Configuration loaded from: %s", source_desc)
        _stderr_print(f"  Configuration loaded from: {source_desc}")
        logger.info("Shop: %s", config.shop_domain)
        _stderr_print(f"  Shop: {config.shop_domain}")
        if config.is_read_only():
            _stderr_print("  Read-only mode: live sync sessions are refused")
    except ValueError as e:
        logger.error("Configuration error: %s", e)
        _stderr_print(f"ERROR: Configuration error: {e}")
        _stderr_print("  Ensure SHOP_DOMAIN and SHOP_ACCESS_TOKEN are set.")
        raise RuntimeError(
            f"Configuration error: {e}. Ensure SHOP_DOMAIN and SHOP_ACCESS_TOKEN are set."
        ) from e

    logger.info("Validating shop connection...")
    _stderr_print("  Validating shop connection...")
    try:
        client = CatalogClient(config)
        shop = await run_sync(client.test_connection)
        _stderr_print(f"  Connected to {shop.get('name', config.shop_domain)}")
        _stderr_print("Server ready. Waiting for MCP client connection...")
    except CatalogSyncError as e:
        logger.error("Failed to connect to shop: %s", e)
        _stderr_print("ERROR: Shop connection failed.")
        _stderr_print(f"  {e}")
        _stderr_print("  Check SHOP_DOMAIN and SHOP_ACCESS_TOKEN.")
        raise RuntimeError(
            f"Shop connection failed: {e}. Check SHOP_DOMAIN and SHOP_ACCESS_TOKEN."
        ) from e

    yield {"config": config, "client": client}

    logger.info("MCP server shutting down")
    _stderr_print("Catalog Sync MCP Server shutting down.")
