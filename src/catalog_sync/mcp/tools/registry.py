"""ToolSpec and ToolRegistry for scope-based tool filtering.

This module provides a centralized registry for MCP tools that supports
filtering based on access scopes, enabling operators to restrict which
tools are exposed to AI agents (e.g. a read-only deployment that can only
preview and inspect sessions).

Key concepts:
- ToolContext: What every handler receives: the runtime config and client.
- ToolSpec: Immutable dataclass linking a Tool definition, required scopes,
  and an async handler with standardized signature (ctx, args) -> CallToolResult.
- ToolRegistry: Filters specs by allowed scopes at construction time,
  then provides list_tools() and call_tool() dispatch with error translation.
- load_scopes_file: Reads a simple text file of scope names.
"""

import logging
import re
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from pathlib import Path

import mcp.types as types

from ...config import Config
from ...core.client import CatalogClient
from ...errors import CatalogSyncError

logger = logging.getLogger(__name__)

_SCOPE_PATTERN = re.compile(r"^(read|write)_[a-z_]+$")


@dataclass(frozen=True, slots=True)
class ToolContext:
    config: Config
    client: CatalogClient


@dataclass(frozen=True, slots=True)
class ToolSpec:
    """Immutable specification for a single MCP tool.

    Attributes:
        tool: The MCP Tool definition (name, description, inputSchema).
        scopes: Access scopes required to use this tool.
            Empty frozenset means the tool is always available.
        handler: Async handler with signature (ctx, args) -> CallToolResult.
    """

    tool: types.Tool
    scopes: frozenset[str]
    handler: Callable[[ToolContext, dict], Awaitable[types.CallToolResult]]


class ToolRegistry:
    """Registry of ToolSpecs with optional scope-based filtering.

    If allowed_scopes is None, all specs are included.  Otherwise, a spec
    is included only if:
    - its scopes set is empty (always available), or
    - its scopes are a subset of allowed_scopes.
    """

    def __init__(
        self,
        specs: list[ToolSpec],
        allowed_scopes: frozenset[str] | None = None,
    ):
        self._specs: dict[str, ToolSpec] = {}
        for spec in specs:
            if (
                allowed_scopes is None
                or not spec.scopes
                or spec.scopes <= allowed_scopes
            ):
                self._specs[spec.tool.name] = spec

    def list_tools(self) -> list[types.Tool]:
        """Return list of types.Tool for all registered (permitted) specs."""
        return [spec.tool for spec in self._specs.values()]

    def tool_count(self) -> int:
        return len(self._specs)

    async def call_tool(
        self,
        name: str,
        arguments: dict | None,
        ctx: ToolContext,
    ) -> types.CallToolResult:
        """Dispatch tool call to registered handler.

        Catalog errors, validation errors and unexpected exceptions are
        translated into structured CallToolResult responses with corrective
        actions.

        Args:
            name: Tool name to invoke.
            arguments: Tool arguments (may be None).
            ctx: Runtime context passed to the handler.

        Returns:
            CallToolResult from the handler.

        Raises:
            ValueError: If tool name is not registered (unknown or filtered out).
        """
        from .errors import build_error_response, translate_catalog_error

        spec = self._specs.get(name)
        if spec is None:
            raise ValueError(f"Unknown tool: {name}")
        args = arguments or {}
        try:
            return await spec.handler(ctx, args)
        except CatalogSyncError as e:
            logger.warning("Catalog error in %s: %s", name, e.message)
            return translate_catalog_error(e)
        except ValueError as e:
            return build_error_response(
                "validation_error",
                str(e),
                "Check parameter values and retry.",
            )
        except Exception as e:
            logger.exception("Unexpected error in tool %s", name)
            return build_error_response(
                "server_error",
                str(e),
                "Check the server log file and retry later.",
            )


def load_scopes_file(path: str | Path) -> frozenset[str]:
    """Load access scopes from a text file.

    Format: one scope per line, ``#`` for comments, blank lines ignored.

    Example file::

        # Preview-only deployment
        read_products

    Args:
        path: Path to the scopes file.

    Returns:
        Frozenset of scope strings.

    Raises:
        FileNotFoundError: If the file does not exist.
        ValueError: If the file contains invalid scopes or is empty.
    """
    path = Path(path)
    scopes: set[str] = set()
    for line_num, line in enumerate(path.read_text().splitlines(), 1):
        stripped = line.strip()
        if not stripped or stripped.startswith("#"):
            continue
        if not _SCOPE_PATTERN.match(stripped):
            raise ValueError(
                f"Invalid scope '{stripped}' at line {line_num} in {path}. "
                "Expected read_<resource> or write_<resource> "
                "(e.g., read_products)."
            )
        scopes.add(stripped)
    if not scopes:
        raise ValueError(
            f"No scopes found in {path}. File must contain at least one scope."
        )
    return frozenset(scopes)
