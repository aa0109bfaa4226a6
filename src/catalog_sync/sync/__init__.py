"""Differential catalog sync engine.

Public API for synchronising a local tabular mirror of a product catalog
(``products.csv`` / ``variants.csv``) with a remote e-commerce store.

Architecture
------------
Every record carries a content hash of its sync-relevant fields.  The
``ChangeDetector`` compares a fresh snapshot against the hashes stored in
the mirror and classifies records into adds, updates and deletes; only
that diff is enqueued.  Work drains from a ``PriorityQueue`` in batches
through the ``BatchProcessor``, which folds variant writes into bulk calls.
The ``SyncOrchestrator`` checkpoints after every batch so a run that hits
its time budget resumes in the next invocation without repeating work.

Modules:

- ``orchestrator`` -- ``SyncOrchestrator``: session state machine.
- ``detector``     -- ``ChangeDetector``: hashing and classification.
- ``queue``        -- ``PriorityQueue``: tiered, aging, serializable queue.
- ``batch``        -- ``BatchProcessor``: batching, bulk folding, TTL cache.
- ``retry``        -- ``RetryManager``: backoff and persisted attempts.
- ``audit``        -- ``AuditLogger``: append-only session audit trail.
- ``store``        -- ``SessionStore``: persisted sessions and checkpoints.
- ``models``       -- ``SyncItem``, ``ExportSession``, ``SyncReport`` etc.
- ``reporter``     -- Human-readable and JSON report formatting.

Usage example
-------------
::

    from catalog_sync.config import load_config
    from catalog_sync.sync import build_orchestrator, format_sync_report

    orchestrator = build_orchestrator(load_config())

    # Preview first
    preview = orchestrator.run(direction="push", dry_run=True)
    print(format_sync_report(preview))

    # Execute (resumes an interrupted session first, if any)
    report = orchestrator.run(direction="push")
    print(format_sync_report(report))
"""

from .audit import AuditLogger, AuditReport, build_report
from .batch import Batch, BatchProcessor, OperationCache
from .detector import ChangeDetector
from .models import (
    AuditLogEntry,
    BatchResult,
    ChangeSet,
    ExportSession,
    ItemOutcome,
    ItemResult,
    Operation,
    Priority,
    SessionStatus,
    SyncDirection,
    SyncItem,
    SyncMode,
    SyncReport,
)
from .orchestrator import SyncOrchestrator, build_orchestrator
from .queue import PriorityQueue
from .reporter import (
    format_audit_report,
    format_dry_run_preview,
    format_session_status,
    format_sync_report,
    report_to_json,
)
from .retry import RetryManager
from .store import SessionStore

__all__ = [
    "AuditLogEntry",
    "AuditLogger",
    "AuditReport",
    "Batch",
    "BatchProcessor",
    "BatchResult",
    "ChangeDetector",
    "ChangeSet",
    "ExportSession",
    "ItemOutcome",
    "ItemResult",
    "Operation",
    "OperationCache",
    "Priority",
    "PriorityQueue",
    "RetryManager",
    "SessionStatus",
    "SessionStore",
    "SyncDirection",
    "SyncItem",
    "SyncMode",
    "SyncOrchestrator",
    "SyncReport",
    "build_orchestrator",
    "build_report",
    "format_audit_report",
    "format_dry_run_preview",
    "format_session_status",
    "format_sync_report",
    "report_to_json",
]
