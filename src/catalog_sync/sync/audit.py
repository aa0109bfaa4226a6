"""Append-only audit trail for sync sessions.

Each event becomes one ``AuditLogEntry``.  Entries are buffered briefly and
flushed to the ``SessionStore`` at every batch boundary, error and session
end, so a report can be built for a session whose process was cut off.
Every entry is also mirrored to ``logging`` at the matching level.
"""

from __future__ import annotations

import logging
import time
from datetime import datetime, timezone
from typing import Any, Callable

from pydantic import BaseModel, Field

from .models import AuditLevel, AuditLogEntry, BatchResult, ItemOutcome
from .store import SessionStore

logger = logging.getLogger(__name__)

_LOG_LEVELS = {
    AuditLevel.DEBUG: logging.DEBUG,
    AuditLevel.INFO: logging.INFO,
    AuditLevel.WARNING: logging.WARNING,
    AuditLevel.ERROR: logging.ERROR,
}

FIRST_ERRORS_LIMIT = 5


def iso_timestamp(seconds: float) -> str:
    return datetime.fromtimestamp(seconds, timezone.utc).isoformat()


class AuditReport(BaseModel):
    """Aggregate view over a session's audit entries.

    Attributes:
        session_id: Session reported on.
        entries: Total entries.
        by_level: Entry counts per level.
        completed / failed / skipped: Item outcomes across all batches.
        success_rate: ``completed / (completed + failed + skipped)``, or
            ``None`` when no item was processed.
        elapsed_seconds: Time between the first and last entry.
        first_errors: The first few error messages.
    """

    session_id: str
    entries: int = 0
    by_level: dict[str, int] = Field(default_factory=dict)
    batches: int = 0
    completed: int = 0
    failed: int = 0
    skipped: int = 0
    success_rate: float | None = None
    elapsed_seconds: float = 0.0
    first_errors: list[str] = Field(default_factory=list)

    model_config = {"frozen": True}


class AuditLogger:
    """Record session events for one session.

    Args:
        session_id: Session every entry is grouped under.
        store: Persistence target; ``None`` keeps entries in memory only.
        clock: Epoch-seconds clock.
        flush_every: Buffered entries that force a flush.
    """

    def __init__(
        self,
        session_id: str,
        store: SessionStore | None = None,
        clock: Callable[[], float] = time.time,
        flush_every: int = 25,
    ) -> None:
        self.session_id = session_id
        self._store = store
        self._clock = clock
        self._flush_every = flush_every
        self._buffer: list[AuditLogEntry] = []
        self._memory: list[AuditLogEntry] = []

    # ------------------------------------------------------------------
    # Event API
    # ------------------------------------------------------------------

    def log(
        self,
        level: AuditLevel,
        operation: str,
        message: str,
        metrics: dict[str, Any] | None = None,
    ) -> AuditLogEntry:
        entry = AuditLogEntry(
            session_id=self.session_id,
            timestamp=iso_timestamp(self._clock()),
            level=level,
            operation=operation,
            message=message,
            metrics=metrics or {},
        )
        logger.log(
            _LOG_LEVELS[level],
            "[%s] %s: %s",
            self.session_id,
            operation,
            message,
            extra={"session_id": self.session_id},
        )
        self._buffer.append(entry)
        if self._store is None:
            self._memory.append(entry)
        if len(self._buffer) >= self._flush_every:
            self.flush()
        return entry

    def start_session(self, metadata: dict[str, Any]) -> AuditLogEntry:
        entry = self.log(
            AuditLevel.INFO,
            "session_start",
            f"Session started ({metadata.get('direction', 'push')})",
            metadata,
        )
        self.flush()
        return entry

    def log_batch_start(self, info: dict[str, Any]) -> AuditLogEntry:
        return self.log(
            AuditLevel.DEBUG,
            "batch_start",
            "Batch {batch_number}: {size} {operation} {entity_type} items".format(
                **{k: info.get(k, "?") for k in (
                    "batch_number", "size", "operation", "entity_type"
                )}
            ),
            info,
        )

    def log_batch_complete(
        self, info: dict[str, Any], result: BatchResult
    ) -> AuditLogEntry:
        counts = {
            "completed": result.count(ItemOutcome.COMPLETED),
            "failed": result.count(ItemOutcome.FAILED),
            "skipped": result.count(ItemOutcome.SKIPPED),
            "deferred": result.count(ItemOutcome.DEFERRED),
        }
        metrics = {
            **info,
            **counts,
            "remote_calls": result.remote_calls,
            "throttled": result.throttled,
            "interrupted": result.interrupted,
            "duration_ms": result.duration_ms,
        }
        level = AuditLevel.WARNING if counts["failed"] else AuditLevel.INFO
        entry = self.log(
            level,
            "batch_complete",
            f"Batch {result.batch_number}: {counts['completed']} completed, "
            f"{counts['failed']} failed, {counts['skipped']} skipped",
            metrics,
        )
        self.flush()
        return entry

    def log_warning(
        self, message: str, context: dict[str, Any] | None = None
    ) -> AuditLogEntry:
        return self.log(AuditLevel.WARNING, "warning", message, context)

    def log_error(
        self, error: BaseException, context: dict[str, Any] | None = None
    ) -> AuditLogEntry:
        metrics = dict(context or {})
        metrics["error_type"] = type(error).__name__
        entry = self.log(AuditLevel.ERROR, "error", str(error), metrics)
        self.flush()
        return entry

    def log_metrics(self, metrics: dict[str, Any]) -> AuditLogEntry:
        entry = self.log(AuditLevel.INFO, "metrics", "Session metrics", metrics)
        self.flush()
        return entry

    def flush(self) -> None:
        """Persist buffered entries."""
        if not self._buffer:
            return
        if self._store is not None:
            self._store.append_audit(self.session_id, self._buffer)
        self._buffer = []

    # ------------------------------------------------------------------
    # Reporting
    # ------------------------------------------------------------------

    def entries(self) -> list[AuditLogEntry]:
        """Every entry recorded for the session, persisted or buffered."""
        if self._store is None:
            return list(self._memory)
        return self._store.load_audit(self.session_id) + list(self._buffer)

    def generate_report(self) -> AuditReport:
        return build_report(self.session_id, self.entries())


def build_report(session_id: str, entries: list[AuditLogEntry]) -> AuditReport:
    """Aggregate *entries* into an ``AuditReport``."""
    by_level = {level.value: 0 for level in AuditLevel}
    completed = failed = skipped = batches = 0
    errors: list[str] = []
    for entry in entries:
        by_level[entry.level.value] += 1
        if entry.operation == "batch_complete":
            batches += 1
            completed += int(entry.metrics.get("completed", 0))
            failed += int(entry.metrics.get("failed", 0))
            skipped += int(entry.metrics.get("skipped", 0))
        if entry.level == AuditLevel.ERROR and len(errors) < FIRST_ERRORS_LIMIT:
            errors.append(entry.message)

    processed = completed + failed + skipped
    elapsed = 0.0
    if len(entries) > 1:
        first = datetime.fromisoformat(entries[0].timestamp)
        last = datetime.fromisoformat(entries[-1].timestamp)
        elapsed = max((last - first).total_seconds(), 0.0)

    return AuditReport(
        session_id=session_id,
        entries=len(entries),
        by_level=by_level,
        batches=batches,
        completed=completed,
        failed=failed,
        skipped=skipped,
        success_rate=(completed / processed) if processed else None,
        elapsed_seconds=elapsed,
        first_errors=errors,
    )
