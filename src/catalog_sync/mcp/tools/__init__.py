"""MCP tool handlers for catalog sync operations.

This package contains MCP tool implementations that wrap the sync
orchestrator with async handlers and structured error responses.
"""

from .errors import build_error_response, translate_catalog_error
from .registry import ToolContext, ToolRegistry, ToolSpec, load_scopes_file
from .sync import SYNC_SPECS
from .system import PING_SPEC, SYSTEM_SPECS

ALL_SPECS: list[ToolSpec] = SYSTEM_SPECS + SYNC_SPECS

__all__ = [
    "build_error_response",
    "translate_catalog_error",
    # Registry
    "ToolContext",
    "ToolSpec",
    "ToolRegistry",
    "load_scopes_file",
    # Spec lists
    "ALL_SPECS",
    "PING_SPEC",
    "SYNC_SPECS",
    "SYSTEM_SPECS",
]
