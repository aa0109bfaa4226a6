"""MCP tool handlers for catalog sync sessions.

Defines three tools:

- ``catalog_sync`` -- run (or resume) a sync session, optionally as a dry run.
- ``catalog_sync_status`` -- show the active or most recent session.
- ``catalog_sync_report`` -- aggregate a session's audit trail.
"""

from __future__ import annotations

import logging
from typing import Any

import mcp.types as types

from ...catalog.models import EntityType
from ...core.async_utils import run_sync
from ...sync.audit import build_report
from ...sync.models import SessionStatus, SyncMode
from ...sync.orchestrator import build_orchestrator
from ...sync.reporter import (
    format_audit_report,
    format_session_status,
    format_sync_report,
    report_to_json,
)
from .errors import build_error_response
from .registry import ToolContext, ToolSpec

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Tool definitions
# ---------------------------------------------------------------------------


_CATALOG_SYNC = types.Tool(
    name="catalog_sync",
    description=(
        "Synchronize the local catalog mirror (products.csv / variants.csv) "
        "with the remote store. Only changed records are sent. Resumes an "
        "interrupted session before starting a new one."
    ),
    annotations=types.ToolAnnotations(
        readOnlyHint=False,
        destructiveHint=True,
        idempotentHint=True,
        openWorldHint=True,
    ),
    inputSchema={
        "type": "object",
        "properties": {
            "direction": {
                "type": "string",
                "enum": [m.value for m in SyncMode],
                "default": "push",
                "description": (
                    "push (mirror -> store), pull (store -> mirror) "
                    "or bidirectional"
                ),
            },
            "entity_types": {
                "type": "array",
                "items": {
                    "type": "string",
                    "enum": [t.value for t in EntityType],
                },
                "description": "Entity types to sync. Defaults to all.",
            },
            "dry_run": {
                "type": "boolean",
                "default": False,
                "description": "Preview changes without applying them",
            },
            "since": {
                "type": "string",
                "description": (
                    "Pull only records updated at or after this ISO 8601 "
                    "timestamp"
                ),
            },
        },
        "required": [],
    },
)

_CATALOG_SYNC_STATUS = types.Tool(
    name="catalog_sync_status",
    description=(
        "Show the active sync session (or the last finished one): status, "
        "batches completed, items processed and queued, first errors."
    ),
    annotations=types.ToolAnnotations(
        readOnlyHint=True,
        destructiveHint=False,
        idempotentHint=True,
        openWorldHint=False,
    ),
    inputSchema={"type": "object", "properties": {}, "required": []},
)

_CATALOG_SYNC_REPORT = types.Tool(
    name="catalog_sync_report",
    description=(
        "Summarize the audit trail of a sync session: entries by level, "
        "item outcomes, success rate, elapsed time and first errors."
    ),
    annotations=types.ToolAnnotations(
        readOnlyHint=True,
        destructiveHint=False,
        idempotentHint=True,
        openWorldHint=False,
    ),
    inputSchema={
        "type": "object",
        "properties": {
            "session_id": {
                "type": "string",
                "description": (
                    "Session to report on. Defaults to the active or last "
                    "session."
                ),
            },
        },
        "required": [],
    },
)


# ---------------------------------------------------------------------------
# Individual handlers
# ---------------------------------------------------------------------------


async def _handle_catalog_sync(
    ctx: ToolContext, args: dict[str, Any]
) -> types.CallToolResult:
    direction = args.get("direction", SyncMode.PUSH.value)
    try:
        mode = SyncMode(direction)
    except ValueError:
        return build_error_response(
            "validation_error",
            f"Unknown direction '{direction}'.",
            f"Use one of: {', '.join(m.value for m in SyncMode)}.",
        )

    entity_types = args.get("entity_types") or None
    if entity_types is not None:
        valid = {t.value for t in EntityType}
        unknown = [t for t in entity_types if t not in valid]
        if unknown:
            return build_error_response(
                "validation_error",
                f"Unknown entity types: {unknown}.",
                f"Use any of: {sorted(valid)}.",
            )

    orchestrator = build_orchestrator(ctx.config, client=ctx.client)
    report = await run_sync(
        orchestrator.run,
        direction=mode,
        entity_types=entity_types,
        dry_run=bool(args.get("dry_run", False)),
        since=args.get("since"),
    )

    return types.CallToolResult(
        content=[
            types.TextContent(type="text", text=format_sync_report(report))
        ],
        structuredContent=report_to_json(report),
        isError=report.status == SessionStatus.FAILED,
    )


async def _handle_catalog_sync_status(
    ctx: ToolContext, args: dict[str, Any]
) -> types.CallToolResult:
    orchestrator = build_orchestrator(ctx.config, client=ctx.client)
    session = await run_sync(orchestrator.status)
    structured: dict[str, Any] = {"session": None}
    if session is not None:
        structured["session"] = session.model_dump(
            mode="json", exclude={"queue_snapshot"}
        )
        structured["queued"] = len(
            (session.queue_snapshot or {}).get("items", [])
        )
    return types.CallToolResult(
        content=[
            types.TextContent(type="text", text=format_session_status(session))
        ],
        structuredContent=structured,
    )


async def _handle_catalog_sync_report(
    ctx: ToolContext, args: dict[str, Any]
) -> types.CallToolResult:
    orchestrator = build_orchestrator(ctx.config, client=ctx.client)
    session_id = args.get("session_id")
    if not session_id:
        session = await run_sync(orchestrator.status)
        if session is None:
            return build_error_response(
                "not_found",
                "No sync session recorded.",
                "Run catalog_sync first.",
            )
        session_id = session.session_id

    entries = await run_sync(orchestrator.store.load_audit, session_id)
    if not entries:
        return build_error_response(
            "not_found",
            f"No audit entries for session '{session_id}'.",
            "Use catalog_sync_status to find a valid session id.",
        )
    report = build_report(session_id, entries)
    return types.CallToolResult(
        content=[
            types.TextContent(type="text", text=format_audit_report(report))
        ],
        structuredContent=report.model_dump(mode="json"),
    )


SYNC_SPECS: list[ToolSpec] = [
    ToolSpec(
        tool=_CATALOG_SYNC,
        scopes=frozenset({"read_products", "write_products"}),
        handler=_handle_catalog_sync,
    ),
    ToolSpec(
        tool=_CATALOG_SYNC_STATUS,
        scopes=frozenset({"read_products"}),
        handler=_handle_catalog_sync_status,
    ),
    ToolSpec(
        tool=_CATALOG_SYNC_REPORT,
        scopes=frozenset({"read_products"}),
        handler=_handle_catalog_sync_report,
    ),
]
