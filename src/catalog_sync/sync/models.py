"""Pydantic models for the differential sync engine.

Defines the core data contracts used across all sync modules:

- ``Operation`` / ``Priority`` / ``SyncDirection``: item classification enums.
- ``SyncItem``: one pending unit of work, unique by ``(entity_type, id)``.
- ``ChangeSet``: classified diff produced by ``ChangeDetector``.
- ``ItemResult`` / ``BatchResult``: outcomes of dispatching work.
- ``SessionStatus`` / ``ExportSession``: persisted session lifecycle.
- ``AuditLogEntry``: one append-only audit event.
- ``SyncReport``: aggregate results for a run.

Records and results are frozen; ``SyncItem`` and ``ExportSession`` are
mutated in place while a session runs and persisted at checkpoints.
"""

from __future__ import annotations

from enum import Enum
from typing import Any

from pydantic import BaseModel, Field

from ..catalog.models import CatalogRecord, EntityType


class Operation(str, Enum):
    """Write operation carried by a sync item."""

    CREATE = "create"
    UPDATE = "update"
    DELETE = "delete"


class Priority(str, Enum):
    """Queue tiers, highest first."""

    CRITICAL = "critical"
    HIGH = "high"
    NORMAL = "normal"
    LOW = "low"

    @property
    def rank(self) -> int:
        return _PRIORITY_RANK[self]


_PRIORITY_RANK = {
    Priority.CRITICAL: 4,
    Priority.HIGH: 3,
    Priority.NORMAL: 2,
    Priority.LOW: 1,
}


class SyncDirection(str, Enum):
    """Where an item's write lands."""

    PUSH = "push"  # mirror -> remote
    PULL = "pull"  # remote -> mirror


class SyncMode(str, Enum):
    """What a session synchronises."""

    PUSH = "push"
    PULL = "pull"
    BIDIRECTIONAL = "bidirectional"


class SyncItem(BaseModel):
    """A pending write.

    Attributes:
        id: Record id (may be provisional for creates).
        entity_type: Product or variant.
        operation: create / update / delete.
        direction: push (remote write) or pull (mirror write).
        record: Record payload at classification time.
        priority: Queue tier.
        priority_score: Numeric rank; higher dequeues first.
        sequence: Monotonic enqueue counter, FIFO tiebreaker.
        enqueued_at: Milliseconds since epoch at first enqueue.
        promoted_at: Milliseconds since epoch of the last aging promotion.
        attempts: Failed attempts so far.
        last_error: Message of the most recent failure.
    """

    id: str
    entity_type: EntityType
    operation: Operation
    direction: SyncDirection = SyncDirection.PUSH
    record: CatalogRecord
    priority: Priority = Priority.NORMAL
    priority_score: int = 0
    sequence: int = 0
    enqueued_at: int = 0
    promoted_at: int | None = None
    attempts: int = 0
    last_error: str | None = None

    @property
    def key(self) -> tuple[EntityType, str]:
        return (self.entity_type, self.id)

    @property
    def key_str(self) -> str:
        return f"{self.entity_type.value}:{self.id}"


class ChangeSet(BaseModel):
    """Result of ``ChangeDetector.classify``.

    ``hashes`` maps ``"<entity>:<id>"`` to the freshly computed hash of
    every record in ``to_add``, ``to_update`` and ``unchanged``.
    """

    to_add: list[CatalogRecord] = Field(default_factory=list)
    to_update: list[CatalogRecord] = Field(default_factory=list)
    to_delete: list[CatalogRecord] = Field(default_factory=list)
    unchanged: list[CatalogRecord] = Field(default_factory=list)
    hashes: dict[str, str] = Field(default_factory=dict)

    @property
    def pending_count(self) -> int:
        return len(self.to_add) + len(self.to_update) + len(self.to_delete)

    def is_empty(self) -> bool:
        return self.pending_count == 0


class ItemOutcome(str, Enum):
    """Terminal resolution of a sync item within a session."""

    COMPLETED = "completed"
    SKIPPED = "skipped"
    FAILED = "failed"
    DEFERRED = "deferred"  # still queued (session aborted mid-batch)


class ItemResult(BaseModel):
    """Outcome of one item.

    Attributes:
        key: ``"<entity>:<id>"`` of the item as queued.
        operation: The operation that was attempted.
        direction: push or pull.
        outcome: completed / skipped / failed / deferred.
        attempts: Attempts used.
        error: Error message for skipped/failed items.
        remote_id: Id assigned by the remote on create.
        from_cache: True when served from the operation cache.
    """

    key: str
    operation: Operation
    direction: SyncDirection
    outcome: ItemOutcome
    attempts: int = 0
    error: str | None = None
    remote_id: str | None = None
    from_cache: bool = False

    model_config = {"frozen": True}


class BatchResult(BaseModel):
    """Outcome of one batch."""

    batch_number: int
    entity_type: EntityType
    operation: Operation
    direction: SyncDirection
    results: list[ItemResult] = Field(default_factory=list)
    remote_calls: int = 0
    throttled: bool = False
    duration_ms: int = 0
    abort_reason: str | None = None
    # Stopped early because a backoff would pass the deadline
    interrupted: bool = False

    model_config = {"frozen": True}

    @property
    def aborted(self) -> bool:
        return self.abort_reason is not None

    def count(self, outcome: ItemOutcome) -> int:
        return sum(1 for r in self.results if r.outcome == outcome)


class SessionStatus(str, Enum):
    """Orchestrator state machine states."""

    INITIATED = "initiated"
    DETECTING_CHANGES = "detecting_changes"
    QUEUEING = "queueing"
    PROCESSING = "processing"
    INTERRUPTED = "interrupted"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (SessionStatus.COMPLETED, SessionStatus.FAILED)


class ExportSession(BaseModel):
    """Persisted sync session.

    Attributes:
        session_id: Unique id.
        scope: Free-form scope description (direction, entity types).
        direction: push, pull or bidirectional.
        entity_types: Entity types in scope.
        status: Current state machine state.
        queue_snapshot: Serialized ``PriorityQueue`` at the last checkpoint.
        started_at: ISO 8601 start timestamp.
        completed_at: ISO 8601 completion timestamp.
        updated_at: ISO 8601 timestamp of the last checkpoint.
        batches_completed: Batches fully processed across invocations.
        processed: Counts per ``ItemOutcome`` value.
        errors: First few error messages.
        invocations: Number of invocations that touched this session.
    """

    session_id: str
    scope: dict[str, Any] = Field(default_factory=dict)
    direction: str = "push"
    entity_types: list[EntityType] = Field(default_factory=list)
    status: SessionStatus = SessionStatus.INITIATED
    queue_snapshot: dict[str, Any] | None = None
    started_at: str
    completed_at: str | None = None
    updated_at: str | None = None
    batches_completed: int = 0
    processed: dict[str, int] = Field(default_factory=dict)
    errors: list[str] = Field(default_factory=list)
    invocations: int = 0


class AuditLevel(str, Enum):
    DEBUG = "debug"
    INFO = "info"
    WARNING = "warning"
    ERROR = "error"


class AuditLogEntry(BaseModel):
    """One append-only audit event."""

    session_id: str
    timestamp: str
    level: AuditLevel = AuditLevel.INFO
    operation: str
    message: str
    metrics: dict[str, Any] = Field(default_factory=dict)

    model_config = {"frozen": True}


class SyncReport(BaseModel):
    """Aggregate report for one invocation of a session.

    Attributes:
        session_id: Session the run belongs to.
        direction: push, pull or bidirectional.
        status: Session status when the invocation ended.
        dry_run: Whether this was a preview.
        resumed: Whether the invocation resumed an interrupted session.
        results: Per-item results produced by this invocation.
        planned: Items classified (dry run) or enqueued (live run).
        remaining: Items still queued when the invocation ended.
        remote_calls: Outbound write calls made.
        batches: Batches processed by this invocation.
        started_at: ISO 8601 timestamp when the invocation started.
        completed_at: ISO 8601 timestamp when the invocation ended.
        message: Reason for abort/interruption, if any.
    """

    session_id: str
    direction: str
    status: SessionStatus
    dry_run: bool = False
    resumed: bool = False
    results: list[ItemResult] = Field(default_factory=list)
    planned: list[SyncItem] = Field(default_factory=list)
    remaining: int = 0
    remote_calls: int = 0
    batches: int = 0
    started_at: str
    completed_at: str | None = None
    message: str | None = None

    model_config = {"frozen": True}

    def _with(self, outcome: ItemOutcome) -> list[ItemResult]:
        return [r for r in self.results if r.outcome == outcome]

    @property
    def completed(self) -> list[ItemResult]:
        return self._with(ItemOutcome.COMPLETED)

    @property
    def skipped(self) -> list[ItemResult]:
        return self._with(ItemOutcome.SKIPPED)

    @property
    def failed(self) -> list[ItemResult]:
        return self._with(ItemOutcome.FAILED)

    @property
    def processed_count(self) -> int:
        """Items that reached a terminal outcome in this invocation."""
        return len(self.completed) + len(self.skipped) + len(self.failed)

    def summary(self) -> str:
        """Format a short human-readable summary.

        Returns:
            Multi-line summary string with counts by outcome.
        """
        lines = [
            f"Sync session {self.session_id} ({self.direction})"
            + (" (dry run)" if self.dry_run else ""),
            f"  Status:    {self.status.value}",
            f"  Succeeded: {len(self.completed)}",
            f"  Failed:    {len(self.failed)}",
            f"  Skipped:   {len(self.skipped)}",
            f"  Remaining: {self.remaining}",
        ]
        return "\n".join(lines)
