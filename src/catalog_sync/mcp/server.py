"""MCP Server for catalog sync using stdio transport.

This module implements the Model Context Protocol server that lets AI
agents preview, run, resume and inspect catalog sync sessions.

``create_server()`` binds the handlers to one tool registry and one tool
context, both built in ``main()`` once the lifespan has connected.

Transport: stdio
Protocol: JSON-RPC 2.0 over MCP
"""

import argparse
import asyncio
import logging
import sys

import mcp.server.stdio
import mcp.types as types
from mcp.server import NotificationOptions, Server
from mcp.server.models import InitializationOptions

from .. import __version__
from ..logger import setup_logging
from .lifespan import server_lifespan
from .tools import (
    ALL_SPECS,
    ToolContext,
    ToolRegistry,
    build_error_response,
    load_scopes_file,
)

logger = logging.getLogger(__name__)

SERVER_NAME = "catalog-sync"


# ---------------------------------------------------------------------------
# MCP protocol handlers
# ---------------------------------------------------------------------------


async def dispatch_tool(
    registry: ToolRegistry,
    ctx: ToolContext,
    name: str,
    arguments: dict | None,
) -> types.CallToolResult:
    """Run tool *name* through *registry*.

    Returns:
        The tool's result, or an ``unknown_tool`` error response when the
        name is not registered or filtered out by scopes.
    """
    try:
        return await registry.call_tool(name, arguments, ctx)
    except ValueError as e:
        return build_error_response(
            "unknown_tool",
            str(e),
            "Use list_tools to see available tools.",
        )


def create_server(registry: ToolRegistry, ctx: ToolContext) -> Server:
    """Build an MCP server whose handlers use *registry* and *ctx*."""
    server = Server(SERVER_NAME)

    @server.list_tools()
    async def handle_list_tools() -> list[types.Tool]:
        """List all registered (and permitted) tools."""
        return registry.list_tools()

    @server.call_tool()
    async def handle_call_tool(
        name: str, arguments: dict | None
    ) -> types.CallToolResult:
        return await dispatch_tool(registry, ctx, name, arguments)

    return server


# ---------------------------------------------------------------------------
# Server lifecycle
# ---------------------------------------------------------------------------


async def main(config_overrides: dict | None = None):
    """Run the MCP server with stdio transport.

    Logging goes to a file only, never stdout, which carries the protocol.

    Args:
        config_overrides: Optional dict with config values to override
            (shop_domain, access_token, api_version, read_only, debug,
            log_file, scopes_file)
    """
    overrides = config_overrides or {}

    # Must run before stdio_server to keep stdout clean
    setup_logging(
        mode="mcp",
        debug=overrides.get("debug", False),
        log_file=overrides.get("log_file"),
    )

    scopes_file = overrides.get("scopes_file")
    allowed_scopes = None
    if scopes_file:
        allowed_scopes = load_scopes_file(scopes_file)
        logger.info(
            "Loaded %d scopes from %s", len(allowed_scopes), scopes_file
        )

    registry = ToolRegistry(ALL_SPECS, allowed_scopes)
    logger.info(
        "Registered %d tools (of %d total)",
        registry.tool_count(),
        len(ALL_SPECS),
    )
    if scopes_file:
        print(
            f"Scopes file: {scopes_file} "
            f"({registry.tool_count()} of {len(ALL_SPECS)} tools enabled)",
            file=sys.stderr,
        )

    async with server_lifespan(config_overrides=overrides) as ctx:
        server = create_server(
            registry, ToolContext(config=ctx["config"], client=ctx["client"])
        )
        async with mcp.server.stdio.stdio_server() as (
            read_stream,
            write_stream,
        ):
            init_options = InitializationOptions(
                server_name=SERVER_NAME,
                server_version=__version__,
                capabilities=server.get_capabilities(
                    notification_options=NotificationOptions(),
                    experimental_capabilities={},
                ),
            )
            await server.run(read_stream, write_stream, init_options)


def run() -> None:
    """Entry point that handles errors gracefully and parses CLI arguments."""
    parser = argparse.ArgumentParser(
        description="Catalog Sync MCP Server - differential catalog sync over MCP",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  # Run with default config (from .env or config.yml)
  catalog-sync-mcp

  # Override the shop
  catalog-sync-mcp --shop-domain acme.myshopify.com

  # Refuse live sessions (dry runs and status only)
  catalog-sync-mcp --read-only

  # Restrict tools by access scopes
  catalog-sync-mcp --scopes-file /etc/catalog-sync/preview.scopes

Note: This server uses stdio transport for JSON-RPC communication with MCP clients.
All user-facing messages are written to stderr.
        """,
    )

    parser.add_argument(
        "--shop-domain",
        help="Override shop domain (takes precedence over SHOP_DOMAIN and config files)",
    )
    parser.add_argument(
        "--access-token",
        help="Override access token (visible in process list -- prefer SHOP_ACCESS_TOKEN)",
    )
    parser.add_argument(
        "--api-version",
        help="Override Admin API version (default: 2024-01)",
    )
    parser.add_argument(
        "--read-only",
        action="store_true",
        help="Refuse live sync sessions; dry runs and status remain available",
    )
    parser.add_argument(
        "--debug",
        action="store_true",
        help="Enable debug logging",
    )
    parser.add_argument(
        "--log-file",
        default="/tmp/catalog-sync-mcp.log",
        help="Log file path (default: /tmp/catalog-sync-mcp.log)",
    )
    parser.add_argument(
        "--scopes-file",
        help="Path to a file of access scopes restricting available tools. "
        "Format: one scope per line (e.g., read_products), # for comments. "
        "If not specified, all tools are available.",
    )
    parser.add_argument(
        "--version",
        action="version",
        version=f"catalog-sync-mcp version {__version__}",
    )

    args = parser.parse_args()

    config_overrides: dict = {}
    if args.shop_domain:
        config_overrides["shop_domain"] = args.shop_domain
    if args.access_token:
        config_overrides["access_token"] = args.access_token
    if args.api_version:
        config_overrides["api_version"] = args.api_version
    if args.read_only:
        config_overrides["read_only"] = True
    if args.debug:
        config_overrides["debug"] = True
    if args.log_file:
        config_overrides["log_file"] = args.log_file
    if args.scopes_file:
        config_overrides["scopes_file"] = args.scopes_file

    override_keys = [
        k for k in config_overrides if k not in ("access_token", "log_file")
    ]
    if override_keys:
        print(
            f"Config overrides from CLI: {', '.join(override_keys)}",
            file=sys.stderr,
        )

    try:
        asyncio.run(main(config_overrides=config_overrides))
    except RuntimeError:
        # Error already printed to stderr by lifespan manager
        sys.exit(1)
    except KeyboardInterrupt:
        print("\nInterrupted.", file=sys.stderr)
        sys.exit(0)


if __name__ == "__main__":
    run()
