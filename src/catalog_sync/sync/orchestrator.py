"""Session state machine driving a sync end to end.

::

    INITIATED -> DETECTING_CHANGES -> QUEUEING -> PROCESSING -> COMPLETED
                        |                             |  ^
                        v                             v  |
                      FAILED                      INTERRUPTED (resume)

* ``INITIATED``: the read-only flag is consulted once; a read-only live
  run fails immediately without touching anything.
* ``DETECTING_CHANGES``: the mirror is loaded and (for pulls) the remote
  snapshot fetched and classified.  Any failure ends in ``FAILED`` with
  nothing written to the mirror or the remote.
* ``QUEUEING``: exactly the classified diff is enqueued and the first
  checkpoint is written.
* ``PROCESSING``: batches are drained in priority order.  Before every
  batch the wall-clock budget is checked; when it runs out the session is
  checkpointed as ``INTERRUPTED`` and the next invocation resumes from the
  persisted queue snapshot.  After every batch the mirror, then the session
  (queue snapshot, counters) is checkpointed, so a completed batch is never
  reprocessed.
* ``COMPLETED``: the queue is empty; the session is archived.
"""

from __future__ import annotations

import csv
import functools
import logging
import time
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Callable, Iterable

from ..catalog.entities import EntityAdapter, default_adapters
from ..catalog.mirror import Mirror, MirrorStore
from ..catalog.models import CatalogRecord, EntityType, MirrorRow, RowAction
from ..config import Config, ShopCredentials
from ..core.client import CatalogClient
from ..errors import CatalogSyncError, ReadOnlyModeError, StateCorruptionError
from .audit import AuditLogger, iso_timestamp
from .batch import AdaptiveBatchSizer, BatchProcessor, OperationCache
from .detector import ChangeDetector
from .models import (
    AuditLevel,
    ChangeSet,
    ExportSession,
    ItemOutcome,
    ItemResult,
    Operation,
    SessionStatus,
    SyncDirection,
    SyncItem,
    SyncMode,
    SyncReport,
)
from .queue import PriorityQueue
from .retry import RetryManager
from .store import SessionStore

logger = logging.getLogger(__name__)

ProgressCallback = Callable[[str, int], None]

ERROR_SUMMARY_LIMIT = 10

# Progress percentages per phase; processing fills the rest
_PROGRESS_DETECTING = 5
_PROGRESS_QUEUED = 15


def _no_progress(message: str, percentage: int) -> None:
    pass


@dataclass
class _Invocation:
    """Working state of one invocation of a session."""

    session: ExportSession
    mirror: Mirror
    queue: PriorityQueue
    audit: AuditLogger
    retry: RetryManager
    started: float
    deadline: float
    resumed: bool = False
    planned: list[SyncItem] = field(default_factory=list)
    results: list[ItemResult] = field(default_factory=list)
    remote_calls: int = 0
    batches: int = 0


class SyncOrchestrator:
    """Run and resume sync sessions.

    Args:
        config: Runtime configuration; ``config.sync`` tunes every component.
        client: Remote API client.
        store: Persistent session store.
        mirror_store: Tabular mirror persistence.
        adapters: Entity adapters by type.
        detector: Change detector.
        clock: Epoch-seconds clock used for budgets and timestamps.
        sleep: Sleep function used for retry backoff.
        progress: ``(message, percentage)`` callback.
        read_only: Read-only flag provider; defaults to the config flag.
    """

    def __init__(
        self,
        config: Config,
        client: CatalogClient,
        store: SessionStore,
        mirror_store: MirrorStore,
        adapters: dict[EntityType, EntityAdapter] | None = None,
        detector: ChangeDetector | None = None,
        clock: Callable[[], float] = time.time,
        sleep: Callable[[float], None] = time.sleep,
        progress: ProgressCallback | None = None,
        read_only: Callable[[], bool] | None = None,
    ) -> None:
        self.config = config
        self.settings = config.sync
        self.client = client
        self.store = store
        self.mirror_store = mirror_store
        self.adapters = adapters or default_adapters()
        self.detector = detector or ChangeDetector()
        self._clock = clock
        self._sleep = sleep
        self._progress = progress or _no_progress
        self._read_only = read_only or config.is_read_only

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def run(
        self,
        direction: str | SyncMode = SyncMode.PUSH,
        entity_types: Iterable[EntityType | str] | None = None,
        dry_run: bool = False,
        since: str | None = None,
    ) -> SyncReport:
        """Run a sync session, resuming an interrupted one first.

        Args:
            direction: ``push``, ``pull`` or ``bidirectional``.
            entity_types: Entity types in scope; defaults to all.
            dry_run: Classify and preview only; nothing is written.
            since: Pull only records updated at or after this ISO 8601
                timestamp; removals are not inferred from a partial snapshot.

        Returns:
            Report for this invocation.
        """
        mode = SyncMode(direction)
        types = self._entity_types(entity_types)

        if not dry_run:
            active = self.store.active_session()
            if active is not None:
                logger.info(
                    "Resuming %s session %s before starting a new one",
                    active.status.value,
                    active.session_id,
                )
                return self._resume(active)

        return self._start(mode, types, dry_run, since)

    def resume(self) -> SyncReport | None:
        """Resume the active session, or return ``None`` if there is none."""
        active = self.store.active_session()
        if active is None:
            return None
        return self._resume(active)

    def status(self) -> ExportSession | None:
        """The active session, else the most recently finished one."""
        return self.store.active_session() or self.store.last_session()

    # ------------------------------------------------------------------
    # New session
    # ------------------------------------------------------------------

    def _start(
        self,
        mode: SyncMode,
        types: list[EntityType],
        dry_run: bool,
        since: str | None,
    ) -> SyncReport:
        started = self._clock()
        session = ExportSession(
            session_id=self._new_session_id(started),
            scope={
                "direction": mode.value,
                "entity_types": [t.value for t in types],
                "dry_run": dry_run,
                "since": since,
            },
            direction=mode.value,
            entity_types=types,
            started_at=iso_timestamp(started),
            invocations=1,
        )
        persist = self.store if not dry_run else None
        audit = AuditLogger(session.session_id, persist, clock=self._clock)
        audit.start_session(dict(session.scope))
        self._transition(session, SessionStatus.INITIATED, 0)

        if not dry_run and self._read_only():
            error = ReadOnlyModeError(
                "Read-only mode is active; sync session refused"
            )
            audit.log_error(error, {"state": SessionStatus.INITIATED.value})
            return self._fail(session, audit, started, error.message, persist)

        self._transition(session, SessionStatus.DETECTING_CHANGES, _PROGRESS_DETECTING)
        retry = RetryManager(
            self.settings,
            persist,
            session.session_id,
            sleep=self._sleep,
            clock=self._clock,
        )
        try:
            mirror = self.mirror_store.load(types)
            items, local_drops = self._detect(mode, types, mirror, retry, since)
        except (CatalogSyncError, OSError, csv.Error) as exc:
            logger.error("Change detection failed: %s", exc)
            audit.log_error(exc, {"state": SessionStatus.DETECTING_CHANGES.value})
            return self._fail(
                session,
                audit,
                started,
                f"Change detection failed: {exc}",
                persist,
            )

        queue = PriorityQueue(clock=self._clock_ms)
        queue.add(items)
        planned = queue.ordered()

        if dry_run:
            audit.log_metrics({"planned": len(planned), **queue.stats()})
            self._progress("Dry run complete", 100)
            return SyncReport(
                session_id=session.session_id,
                direction=mode.value,
                status=SessionStatus.COMPLETED,
                dry_run=True,
                results=[self._drop_result(row) for row in local_drops],
                planned=planned,
                remaining=len(planned),
                started_at=iso_timestamp(started),
                completed_at=iso_timestamp(self._clock()),
            )

        inv = _Invocation(
            session=session,
            mirror=mirror,
            queue=queue,
            audit=audit,
            retry=retry,
            started=started,
            deadline=self._deadline(started),
            planned=planned,
        )
        self._transition(session, SessionStatus.QUEUEING, _PROGRESS_QUEUED)
        for row in local_drops:
            mirror.remove(row.record.entity_type, row.record.id)
            inv.results.append(self._drop_result(row))
            self._count(session, ItemOutcome.SKIPPED)
            audit.log_warning(
                f"Dropped never-synced row {row.record.entity_type.value}:"
                f"{row.record.id} marked for deletion"
            )
        audit.log_metrics({"enqueued": len(queue), **queue.stats()})
        self.store.set_active(session.session_id)
        self._checkpoint(inv)

        return self._process(inv)

    def _detect(
        self,
        mode: SyncMode,
        types: list[EntityType],
        mirror: Mirror,
        retry: RetryManager,
        since: str | None,
    ) -> tuple[list[SyncItem], list[MirrorRow]]:
        """Classify the diff for *mode*.

        Returns:
            ``(items, local_drops)`` where *local_drops* are never-synced
            rows marked for deletion, removed locally without a remote call.
        """
        items: list[SyncItem] = []
        local_drops: list[MirrorRow] = []
        push_keys: set[tuple[EntityType, str]] = set()

        if mode in (SyncMode.PUSH, SyncMode.BIDIRECTIONAL):
            changes, local_drops = self._classify_push(types, mirror)
            items.extend(self.detector.build_items(changes, SyncDirection.PUSH))
            push_keys = {
                (r.entity_type, r.id)
                for r in changes.to_add + changes.to_update + changes.to_delete
            }

        if mode in (SyncMode.PULL, SyncMode.BIDIRECTIONAL):
            changes, previous = self._classify_pull(
                types, mirror, retry, push_keys, since
            )
            items.extend(
                self.detector.build_items(
                    changes, SyncDirection.PULL, previous
                )
            )

        logger.info(
            "Detected %d pending changes (%s)", len(items), mode.value
        )
        return items, local_drops

    def _classify_push(
        self, types: list[EntityType], mirror: Mirror
    ) -> tuple[ChangeSet, list[MirrorRow]]:
        rows = [row for t in types for row in mirror.all_rows(t)]
        drops = [
            row
            for row in rows
            if row.meta.action == RowAction.DELETE and row.meta.hash is None
        ]
        dropped = {row.key for row in drops}
        current = [
            row.record for row in rows if row.meta.action == RowAction.NONE
        ]
        mirrored = [
            row
            for row in rows
            if row.meta.action != RowAction.SKIP and row.key not in dropped
        ]
        return self.detector.classify(current, mirrored), drops

    def _classify_pull(
        self,
        types: list[EntityType],
        mirror: Mirror,
        retry: RetryManager,
        exclude: set[tuple[EntityType, str]],
        since: str | None,
    ) -> tuple[ChangeSet, dict[tuple[EntityType, str], CatalogRecord]]:
        rows = [row for t in types for row in mirror.all_rows(t)]
        held = set(exclude) | {
            row.key for row in rows if row.meta.action == RowAction.SKIP
        }

        snapshot: list[CatalogRecord] = []
        for entity_type in types:
            adapter = self.adapters[entity_type]
            raw_records = retry.execute(
                functools.partial(
                    adapter.fetch, self.client, updated_at_min=since
                ),
                label=f"fetch {entity_type.value}s",
            )
            for raw in raw_records:
                try:
                    record = adapter.transform(raw)
                except (KeyError, ValueError) as exc:
                    # Keep the mirrored row untouched
                    held.add((entity_type, str(raw.get("id"))))
                    logger.warning(
                        "Ignoring malformed remote %s %s: %s",
                        entity_type.value,
                        raw.get("id"),
                        exc,
                    )
                    continue
                if (record.entity_type, record.id) not in held:
                    snapshot.append(record)

        mirrored = [
            row
            for row in rows
            if row.meta.hash is not None and row.key not in held
        ]
        changes = self.detector.classify(snapshot, mirrored)
        if since:
            changes.to_delete = []
        previous = {row.key: row.record for row in rows}
        return changes, previous

    # ------------------------------------------------------------------
    # Resume
    # ------------------------------------------------------------------

    def _resume(self, session: ExportSession) -> SyncReport:
        started = self._clock()
        audit = AuditLogger(session.session_id, self.store, clock=self._clock)
        session.invocations += 1
        audit.log(
            AuditLevel.INFO,
            "session_resume",
            f"Resuming session from {session.status.value} "
            f"(invocation {session.invocations})",
            {"batches_completed": session.batches_completed},
        )

        if self._read_only():
            error = ReadOnlyModeError(
                "Read-only mode is active; resume refused"
            )
            audit.log_error(error, {"state": session.status.value})
            session.status = SessionStatus.INTERRUPTED
            session.updated_at = iso_timestamp(self._clock())
            self.store.save_session(session)
            audit.flush()
            return self._report(
                session, started, message=error.message, resumed=True,
                remaining=self._snapshot_size(session),
            )

        try:
            if session.queue_snapshot is None:
                raise StateCorruptionError("Session has no queue snapshot")
            queue = PriorityQueue.from_dict(
                session.queue_snapshot, clock=self._clock_ms
            )
            mirror = self.mirror_store.load(list(session.entity_types))
        except (StateCorruptionError, OSError, csv.Error) as exc:
            logger.warning(
                "Discarding unusable session %s: %s", session.session_id, exc
            )
            audit.log_warning(f"Session state discarded: {exc}")
            session.status = SessionStatus.FAILED
            session.errors.append(f"State discarded: {exc}")
            self.store.finish_session(session)
            audit.flush()
            return self._start(
                SyncMode(session.direction),
                list(session.entity_types) or self._entity_types(None),
                False,
                session.scope.get("since"),
            )

        retry = RetryManager(
            self.settings,
            self.store,
            session.session_id,
            sleep=self._sleep,
            clock=self._clock,
        )
        inv = _Invocation(
            session=session,
            mirror=mirror,
            queue=queue,
            audit=audit,
            retry=retry,
            started=started,
            deadline=self._deadline(started),
            resumed=True,
        )
        return self._process(inv)

    # ------------------------------------------------------------------
    # Processing
    # ------------------------------------------------------------------

    def _process(self, inv: _Invocation) -> SyncReport:
        session = inv.session
        self._transition(session, SessionStatus.PROCESSING, _PROGRESS_QUEUED)
        processor = BatchProcessor(
            client=self.client,
            mirror=inv.mirror,
            retry=inv.retry,
            audit=inv.audit,
            adapters=self.adapters,
            detector=self.detector,
            cache=OperationCache(self.settings.cache_ttl_seconds, clock=self._clock),
            sizer=AdaptiveBatchSizer(
                self.settings.batch_sizes, self.settings.grow_after
            ),
            clock=self._clock,
            deadline=inv.deadline,
        )
        promote_after_ms = int(self.settings.promote_after_seconds * 1000)
        done_before = sum(session.processed.values())
        total = done_before + len(inv.queue)
        since_checkpoint = 0

        while not inv.queue.is_empty():
            if self._clock() >= inv.deadline:
                return self._interrupt(inv)

            inv.queue.promote_aged(promote_after_ms)
            batch = processor.next_batch(
                inv.queue, session.batches_completed + 1
            )
            if batch is None:
                break
            result = processor.process_batch(batch)

            deferred = [
                item
                for item, outcome in zip(batch.items, result.results)
                if outcome.outcome == ItemOutcome.DEFERRED
            ]
            inv.queue.requeue(deferred)
            for outcome in result.results:
                if outcome.outcome == ItemOutcome.DEFERRED:
                    continue
                inv.results.append(outcome)
                self._count(session, outcome.outcome)
                if outcome.error and len(session.errors) < ERROR_SUMMARY_LIMIT:
                    session.errors.append(f"{outcome.key}: {outcome.error}")
            inv.remote_calls += result.remote_calls

            if result.interrupted:
                return self._interrupt(inv)
            if result.aborted:
                session.status = SessionStatus.FAILED
                session.errors.append(f"Session aborted: {result.abort_reason}")
                self._checkpoint(inv)
                return self._finish(inv, message=result.abort_reason)

            session.batches_completed += 1
            inv.batches += 1
            since_checkpoint += 1
            if since_checkpoint >= self.settings.checkpoint_every_batches:
                self._checkpoint(inv)
                since_checkpoint = 0

            done = sum(session.processed.values())
            pct = _PROGRESS_QUEUED + int(
                (100 - _PROGRESS_QUEUED) * done / max(total, 1)
            )
            self._progress(
                f"Batch {batch.number}: {done}/{total} items processed",
                min(pct, 99),
            )

        session.status = SessionStatus.COMPLETED
        self._checkpoint(inv)
        return self._finish(inv)

    def _interrupt(self, inv: _Invocation) -> SyncReport:
        session = inv.session
        session.status = SessionStatus.INTERRUPTED
        self._checkpoint(inv)
        message = (
            f"Time budget reached after {inv.batches} batches; "
            f"{len(inv.queue)} items remain"
        )
        inv.audit.log_warning(message, {"remaining": len(inv.queue)})
        inv.audit.flush()
        self._progress(message, self._percentage(session, len(inv.queue)))
        logger.info("Session %s interrupted: %s", session.session_id, message)
        return self._report(
            session,
            inv.started,
            results=inv.results,
            planned=inv.planned,
            remaining=len(inv.queue),
            remote_calls=inv.remote_calls,
            batches=inv.batches,
            resumed=inv.resumed,
            message=message,
        )

    def _finish(self, inv: _Invocation, message: str | None = None) -> SyncReport:
        session = inv.session
        now = iso_timestamp(self._clock())
        session.completed_at = now
        session.updated_at = now
        self.store.finish_session(session)
        inv.audit.log_metrics(
            {
                "status": session.status.value,
                "processed": dict(session.processed),
                "batches_completed": session.batches_completed,
                "remote_calls": inv.remote_calls,
                "remaining": len(inv.queue),
            }
        )
        self._progress(
            f"Sync {session.status.value}",
            100 if session.status == SessionStatus.COMPLETED else
            self._percentage(session, len(inv.queue)),
        )
        return self._report(
            session,
            inv.started,
            results=inv.results,
            planned=inv.planned,
            remaining=len(inv.queue),
            remote_calls=inv.remote_calls,
            batches=inv.batches,
            resumed=inv.resumed,
            message=message,
        )

    def _fail(
        self,
        session: ExportSession,
        audit: AuditLogger,
        started: float,
        message: str,
        persist: SessionStore | None,
    ) -> SyncReport:
        session.status = SessionStatus.FAILED
        session.errors.append(message)
        session.completed_at = iso_timestamp(self._clock())
        if persist is not None:
            persist.finish_session(session)
        audit.flush()
        self._progress(f"Sync failed: {message}", 100)
        return self._report(session, started, message=message)

    def _checkpoint(self, inv: _Invocation) -> None:
        """Persist the mirror, then the session and its queue snapshot."""
        self.mirror_store.save(inv.mirror)
        inv.session.queue_snapshot = inv.queue.to_dict()
        inv.session.updated_at = iso_timestamp(self._clock())
        self.store.save_session(inv.session)
        inv.audit.flush()
        logger.debug(
            "Checkpointed session %s (%d queued)",
            inv.session.session_id,
            len(inv.queue),
        )

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _transition(
        self, session: ExportSession, status: SessionStatus, percentage: int
    ) -> None:
        logger.debug(
            "Session %s: %s -> %s",
            session.session_id,
            session.status.value,
            status.value,
        )
        session.status = status
        self._progress(f"Sync {status.value.replace('_', ' ')}", percentage)

    def _report(
        self,
        session: ExportSession,
        started: float,
        results: list[ItemResult] | None = None,
        planned: list[SyncItem] | None = None,
        remaining: int = 0,
        remote_calls: int = 0,
        batches: int = 0,
        resumed: bool = False,
        message: str | None = None,
    ) -> SyncReport:
        return SyncReport(
            session_id=session.session_id,
            direction=session.direction,
            status=session.status,
            resumed=resumed,
            results=results or [],
            planned=planned or [],
            remaining=remaining,
            remote_calls=remote_calls,
            batches=batches,
            started_at=iso_timestamp(started),
            completed_at=iso_timestamp(self._clock()),
            message=message,
        )

    def _deadline(self, started: float) -> float:
        return (
            started
            + self.settings.time_budget_seconds
            - self.settings.checkpoint_margin_seconds
        )

    def _clock_ms(self) -> int:
        return int(self._clock() * 1000)

    def _new_session_id(self, started: float) -> str:
        stamp = datetime.fromtimestamp(started, timezone.utc).strftime(
            "%Y%m%dT%H%M%S"
        )
        return f"{stamp}-{uuid.uuid4().hex[:8]}"

    @staticmethod
    def _entity_types(
        entity_types: Iterable[EntityType | str] | None,
    ) -> list[EntityType]:
        if not entity_types:
            return list(EntityType)
        requested = {EntityType(t) for t in entity_types}
        # Parents before children
        return [t for t in EntityType if t in requested]

    @staticmethod
    def _count(session: ExportSession, outcome: ItemOutcome) -> None:
        session.processed[outcome.value] = (
            session.processed.get(outcome.value, 0) + 1
        )

    @staticmethod
    def _percentage(session: ExportSession, remaining: int) -> int:
        done = sum(session.processed.values())
        total = done + remaining
        if not total:
            return 100
        return _PROGRESS_QUEUED + int((100 - _PROGRESS_QUEUED) * done / total)

    @staticmethod
    def _snapshot_size(session: ExportSession) -> int:
        snapshot = session.queue_snapshot or {}
        return len(snapshot.get("items", []))

    @staticmethod
    def _drop_result(row: MirrorRow) -> ItemResult:
        return ItemResult(
            key=f"{row.record.entity_type.value}:{row.record.id}",
            operation=Operation.DELETE,
            direction=SyncDirection.PUSH,
            outcome=ItemOutcome.SKIPPED,
            error="Row marked for deletion was never synced; removed locally",
        )


def build_orchestrator(
    config: Config,
    client: CatalogClient | None = None,
    progress: ProgressCallback | None = None,
    read_only: Callable[[], bool] | None = None,
    credentials: Callable[[], ShopCredentials] | None = None,
) -> SyncOrchestrator:
    """Wire a ``SyncOrchestrator`` from configuration and optional hooks."""
    return SyncOrchestrator(
        config=config,
        client=client or CatalogClient(config, credentials=credentials),
        store=SessionStore(Path(config.sync.state_dir)),
        mirror_store=MirrorStore(Path(config.sync.mirror_dir)),
        progress=progress,
        read_only=read_only,
    )
