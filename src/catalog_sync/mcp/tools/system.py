"""System tool handlers for MCP server.

``ping`` checks the shop connection; it needs no scope and is always
registered.
"""

import logging

import mcp.types as types

from ...core.async_utils import run_sync
from ...errors import CatalogSyncError
from .registry import ToolContext, ToolSpec

logger = logging.getLogger(__name__)


async def _handle_ping(ctx: ToolContext, args: dict) -> types.CallToolResult:
    """Handle ping tool -- test shop connectivity."""
    try:
        shop = await run_sync(ctx.client.test_connection)
    except CatalogSyncError as e:
        logger.warning("Ping failed: %s", e.message)
        return types.CallToolResult(
            content=[
                types.TextContent(
                    type="text",
                    text=f"Shop connection failed: {e.message}. "
                    "Check SHOP_DOMAIN and SHOP_ACCESS_TOKEN.",
                )
            ],
            isError=True,
        )

    read_only = ctx.config.is_read_only()
    text = (
        f"Connected to {shop.get('name', '?')} ({shop.get('domain', '?')}), "
        f"API version {ctx.config.api_version}"
    )
    if read_only:
        text += " [read-only mode]"
    return types.CallToolResult(
        content=[types.TextContent(type="text", text=text)],
        structuredContent={
            "shop": shop.get("name"),
            "domain": shop.get("domain"),
            "api_version": ctx.config.api_version,
            "read_only": read_only,
        },
    )


PING_SPEC = ToolSpec(
    tool=types.Tool(
        name="ping",
        description="Test shop connectivity and report the API version in use",
        inputSchema={
            "type": "object",
            "properties": {},
            "required": [],
        },
    ),
    scopes=frozenset(),
    handler=_handle_ping,
)

SYSTEM_SPECS: list[ToolSpec] = [PING_SPEC]
