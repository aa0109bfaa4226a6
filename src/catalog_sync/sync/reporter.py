"""Sync report formatting functions.

Provides human-readable and machine-readable output for sync sessions:

- ``format_sync_report`` -- post-run summary with the first errors.
- ``format_dry_run_preview`` -- planned changes grouped by operation.
- ``format_audit_report`` -- aggregate view over a session's audit trail.
- ``report_to_json`` -- structured dict for MCP tool output.
"""

from __future__ import annotations

from collections import defaultdict
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from .audit import AuditReport
    from .models import ExportSession, SyncItem, SyncReport

from .models import Operation, SyncDirection

# Errors listed in the human-readable summary
ERROR_PREVIEW_LIMIT = 5

# ------------------------------------------------------------------
# Human-readable report
# ------------------------------------------------------------------


def format_sync_report(report: SyncReport) -> str:
    """Format a sync report as human-readable text.

    Args:
        report: Report for one invocation.

    Returns:
        Multi-line formatted string.
    """
    if report.dry_run:
        return format_dry_run_preview(report)

    lines: list[str] = []

    header = f"Sync session {report.session_id} ({report.direction})"
    if report.resumed:
        header += " (resumed)"
    lines.append(header)
    lines.append(f"Status: {report.status.value}")
    lines.append(f"Started: {report.started_at}")
    if report.completed_at:
        lines.append(f"Finished: {report.completed_at}")
    lines.append("")

    lines.append(
        f"Processed {report.processed_count} items: "
        f"{len(report.completed)} succeeded, "
        f"{len(report.failed)} failed, "
        f"{len(report.skipped)} skipped"
    )
    lines.append(
        f"Batches: {report.batches}, remote calls: {report.remote_calls}, "
        f"remaining: {report.remaining}"
    )
    lines.append("")

    if report.message:
        lines.append(f"Note: {report.message}")
        lines.append("")

    problems = report.failed + [r for r in report.skipped if r.error]
    if problems:
        lines.append("Errors:")
        for r in problems[:ERROR_PREVIEW_LIMIT]:
            lines.append(f"  [{r.operation.value}] {r.key}: {r.error}")
        if len(problems) > ERROR_PREVIEW_LIMIT:
            lines.append(f"  ... and {len(problems) - ERROR_PREVIEW_LIMIT} more")
        lines.append("")

    return "\n".join(lines).rstrip()


# ------------------------------------------------------------------
# Dry-run preview
# ------------------------------------------------------------------


def format_dry_run_preview(report: SyncReport) -> str:
    """Format the planned changes of a dry run grouped by operation.

    Each item is shown as ``<entity>:<id> (<priority>)`` under a
    ``[DIRECTION OPERATION]`` heading.

    Args:
        report: A dry-run report (``dry_run=True``).

    Returns:
        Multi-line formatted string.
    """
    lines: list[str] = []
    lines.append("DRY RUN -- No changes will be made")
    lines.append(f"Direction: {report.direction}")
    lines.append("")

    groups: dict[tuple[SyncDirection, Operation], list[SyncItem]] = defaultdict(
        list
    )
    for item in report.planned:
        groups[(item.direction, item.operation)].append(item)

    for direction in SyncDirection:
        for operation in Operation:
            items = groups.get((direction, operation))
            if not items:
                continue
            lines.append(f"[{direction.value.upper()} {operation.value.upper()}]")
            for item in items:
                lines.append(f"  {item.key_str} ({item.priority.value})")
            lines.append("")

    if report.skipped:
        lines.append(f"Dropped locally: {len(report.skipped)} rows")
        lines.append("")

    if not report.planned:
        lines.append("No changes needed.")
        lines.append("")

    return "\n".join(lines).rstrip()


# ------------------------------------------------------------------
# Session and audit views
# ------------------------------------------------------------------


def format_session_status(session: ExportSession | None) -> str:
    if session is None:
        return "No sync session recorded."
    snapshot = session.queue_snapshot or {}
    lines = [
        f"Session {session.session_id} ({session.direction})",
        f"Status: {session.status.value}",
        f"Started: {session.started_at}",
        f"Updated: {session.updated_at or '-'}",
        f"Invocations: {session.invocations}",
        f"Batches completed: {session.batches_completed}",
        f"Queued: {len(snapshot.get('items', []))}",
    ]
    if session.processed:
        counts = ", ".join(
            f"{count} {outcome}" for outcome, count in sorted(session.processed.items())
        )
        lines.append(f"Processed: {counts}")
    if session.errors:
        lines.append("Errors:")
        for error in session.errors[:ERROR_PREVIEW_LIMIT]:
            lines.append(f"  {error}")
    return "\n".join(lines)


def format_audit_report(report: AuditReport) -> str:
    rate = (
        f"{report.success_rate:.1%}" if report.success_rate is not None else "n/a"
    )
    lines = [
        f"Audit report for session {report.session_id}",
        f"Entries: {report.entries} "
        + "("
        + ", ".join(f"{n} {level}" for level, n in report.by_level.items())
        + ")",
        f"Batches: {report.batches}",
        f"Items: {report.completed} completed, {report.failed} failed, "
        f"{report.skipped} skipped",
        f"Success rate: {rate}",
        f"Elapsed: {report.elapsed_seconds:.1f}s",
    ]
    if report.first_errors:
        lines.append("First errors:")
        for error in report.first_errors:
            lines.append(f"  {error}")
    return "\n".join(lines)


# ------------------------------------------------------------------
# JSON output
# ------------------------------------------------------------------


def report_to_json(report: SyncReport) -> dict:
    """Convert a sync report to a structured dict for JSON serialisation.

    Suitable for MCP ``structuredContent`` output.

    Args:
        report: The sync report.

    Returns:
        Dict with session info, counts, per-result and planned-item details.
    """
    results_list = []
    for r in report.results:
        entry: dict = {
            "key": r.key,
            "operation": r.operation.value,
            "direction": r.direction.value,
            "outcome": r.outcome.value,
            "attempts": r.attempts,
        }
        if r.error:
            entry["error"] = r.error
        if r.remote_id:
            entry["remote_id"] = r.remote_id
        results_list.append(entry)

    return {
        "session_id": report.session_id,
        "direction": report.direction,
        "status": report.status.value,
        "dry_run": report.dry_run,
        "resumed": report.resumed,
        "started_at": report.started_at,
        "completed_at": report.completed_at,
        "message": report.message,
        "counts": {
            "processed": report.processed_count,
            "completed": len(report.completed),
            "failed": len(report.failed),
            "skipped": len(report.skipped),
            "remaining": report.remaining,
            "batches": report.batches,
            "remote_calls": report.remote_calls,
        },
        "results": results_list,
        "planned": [
            {
                "key": item.key_str,
                "operation": item.operation.value,
                "direction": item.direction.value,
                "priority": item.priority.value,
            }
            for item in report.planned
        ],
    }
