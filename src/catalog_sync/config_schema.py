"""Unified configuration schema for catalog_sync.

Defines Pydantic models for the unified config structure with dedicated
sections for the shop connection, sync engine tuning, and logging. Includes
an adapter function producing the flat ``Config`` dataclass that is handed
to every component.

Usage:
    from catalog_sync.config_schema import (
        UnifiedConfig, build_config, to_legacy_config,
    )

    raw = load_hierarchical_config()
    unified = build_config(raw)
    config = to_legacy_config(unified, cli_overrides={"shop_domain": "..."})
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

from pydantic import BaseModel, Field, field_validator

if TYPE_CHECKING:
    from .config import Config

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Section models
# ---------------------------------------------------------------------------


class ShopConfig(BaseModel):
    """Remote shop connection settings.

    All fields are optional to support zero-config: env vars and CLI args
    can supply them at runtime instead.
    """

    domain: str | None = Field(
        default=None, description="Shop domain, e.g. acme.myshopify.com"
    )
    access_token: str | None = Field(
        default=None, description="Admin API access token"
    )
    api_version: str = Field(
        default="2024-01", description="Admin API version"
    )
    timeout_seconds: float = Field(
        default=30.0, gt=0, description="Per-request read timeout"
    )

    model_config = {"frozen": True}


class BatchSizes(BaseModel):
    """Maximum items per batch, per operation.

    Creates can use larger batches than updates; deletes the largest.
    """

    create: int = Field(default=50, ge=1, le=250)
    update: int = Field(default=25, ge=1, le=250)
    delete: int = Field(default=100, ge=1, le=250)

    model_config = {"frozen": True}


class SyncSettings(BaseModel):
    """Tuning knobs for the sync engine."""

    mirror_dir: str = Field(
        default=".catalog_sync/mirror",
        description="Directory holding the tabular mirror (one CSV per entity)",
    )
    state_dir: str = Field(
        default=".catalog_sync/state",
        description="Directory for session snapshots, retry state and audit logs",
    )
    read_only_mode: bool = Field(
        default=False, description="Refuse to start write sessions"
    )
    rate_limit_delay_ms: int = Field(
        default=500,
        ge=0,
        le=60000,
        description="Minimum spacing between outbound API calls",
    )
    max_retries: int = Field(default=3, ge=0, le=20)
    backoff_base_ms: int = Field(default=1000, ge=1)
    backoff_max_ms: int = Field(default=32000, ge=1)
    session_retry_budget: int = Field(
        default=50,
        ge=0,
        description="Total retries allowed across one session",
    )
    batch_sizes: BatchSizes = Field(default_factory=BatchSizes)
    cache_ttl_seconds: float = Field(default=30.0, ge=0)
    time_budget_seconds: float = Field(
        default=330.0,
        gt=0,
        description="Wall-clock budget for one invocation",
    )
    checkpoint_margin_seconds: float = Field(default=15.0, ge=0)
    checkpoint_every_batches: int = Field(default=1, ge=1)
    promote_after_seconds: float = Field(default=300.0, gt=0)
    grow_after: int = Field(
        default=3,
        ge=1,
        description="Clean batches before an operation's batch size grows back",
    )
    page_size: int = Field(default=250, ge=1, le=250)
    inventory_location_id: str | None = Field(
        default=None,
        description="Location whose stock level variants mirror; "
        "defaults to the shop's primary location",
    )

    model_config = {"frozen": True}

    @field_validator("backoff_max_ms")
    @classmethod
    def _cap_not_below_base(cls, value: int, info) -> int:
        base = info.data.get("backoff_base_ms", 1)
        if value < base:
            raise ValueError(
                f"backoff_max_ms ({value}) must be >= backoff_base_ms ({base})"
            )
        return value


class LoggingConfig(BaseModel):
    """Logging configuration.

    Attributes:
        level: Log level name (DEBUG, INFO, WARNING, ERROR, CRITICAL).
        file: Optional log file path.
        format: ``text`` or ``json``.
    """

    level: str = Field(default="INFO", description="Log level")
    file: str | None = Field(default=None, description="Log file path")
    format: str = Field(default="text", description="text or json")

    model_config = {"frozen": True}


# ---------------------------------------------------------------------------
# Top-level unified config
# ---------------------------------------------------------------------------


class UnifiedConfig(BaseModel):
    """Top-level unified configuration.

    Aggregates all config sections. Every section has sensible defaults,
    so ``UnifiedConfig()`` (zero-config) is always valid.
    """

    shop: ShopConfig = Field(default_factory=ShopConfig)
    sync: SyncSettings = Field(default_factory=SyncSettings)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)

    model_config = {"frozen": True}


# ---------------------------------------------------------------------------
# Factory function
# ---------------------------------------------------------------------------


def build_config(raw_data: dict) -> UnifiedConfig:
    """Construct a ``UnifiedConfig`` from the raw dict returned by
    ``load_hierarchical_config()``.

    Handles missing sections gracefully; anything absent gets defaults.

    Args:
        raw_data: Merged configuration dictionary.

    Returns:
        Validated ``UnifiedConfig`` instance.
    """
    if not raw_data:
        return UnifiedConfig()

    return UnifiedConfig(**raw_data)


# ---------------------------------------------------------------------------
# Adapter: UnifiedConfig -> Config dataclass
# ---------------------------------------------------------------------------


def to_legacy_config(
    unified: UnifiedConfig,
    cli_overrides: dict | None = None,
) -> Config:
    """Convert a ``UnifiedConfig`` into the flat ``Config`` dataclass,
    applying CLI overrides on top.

    The precedence applied here is:
        CLI override > unified config value > empty

    CLI overrides dict keys: shop_domain, access_token, api_version,
    read_only, debug.

    Args:
        unified: The unified config produced by ``build_config()``.
        cli_overrides: Optional dict of CLI argument values.

    Returns:
        ``Config`` dataclass instance (NOT validated; caller should run
        ``validate_config()`` separately if needed).
    """
    # Import here to avoid circular imports
    from .config import Config

    overrides = cli_overrides or {}

    return Config(
        shop_domain=overrides.get("shop_domain") or unified.shop.domain or "",
        access_token=overrides.get("access_token")
        or unified.shop.access_token
        or "",
        api_version=overrides.get("api_version") or unified.shop.api_version,
        timeout_seconds=unified.shop.timeout_seconds,
        debug=overrides.get("debug", False),
        sync=unified.sync.model_copy(
            update={
                "read_only_mode": overrides.get("read_only", False)
                or unified.sync.read_only_mode
            }
        ),
    )
