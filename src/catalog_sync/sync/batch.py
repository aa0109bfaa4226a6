"""Batch dispatch of queued sync items.

``BatchProcessor`` carves the queue into batches of items sharing
``(entity_type, operation, direction)``, sized per operation by an
``AdaptiveBatchSizer``, and dispatches them:

* **push** items become remote writes through the rate-limited client.
  Variant writes that share a parent product are folded into one GraphQL
  bulk mutation; everything else is one REST call per item.
* **pull** items are applied to the mirror; they never touch the remote.

Variant creates and updates are followed by inventory writes: the unit cost
goes to the inventory item and the stock quantity is set as the available
level at the inventory location.

Every idempotent remote write first consults an ``OperationCache`` keyed by
the canonical ``(method, endpoint, payload)`` signature; creates never do,
since two new rows may carry identical payloads.  Each call then goes
through ``RetryManager.execute``.  Failures are isolated per item (or per
bulk group); only session-aborting errors and a backoff that would pass the
invocation deadline stop the batch, and the items not yet resolved are
reported as ``deferred`` so the caller can requeue them.
"""

from __future__ import annotations

import hashlib
import json
import logging
import time
from dataclasses import dataclass, field
from functools import partial
from typing import Any, Callable, Iterable, Sequence

from ..catalog.entities import EntityAdapter, default_adapters, validate_record
from ..catalog.mirror import Mirror
from ..catalog.models import (
    CatalogRecord,
    EntityType,
    RecordMeta,
    RowAction,
    Variant,
    is_provisional,
)
from ..config_schema import BatchSizes
from ..core.client import CatalogClient, from_gid
from ..errors import (
    CatalogSyncError,
    DeadlineReachedError,
    ResourceNotFoundError,
    ThrottledError,
    ValidationError,
)
from .audit import AuditLogger, iso_timestamp
from .detector import ChangeDetector
from .models import (
    BatchResult,
    ItemOutcome,
    ItemResult,
    Operation,
    SyncDirection,
    SyncItem,
)
from .queue import PriorityQueue
from .retry import RetryManager

logger = logging.getLogger(__name__)


# ----------------------------------------------------------------------
# Operation cache
# ----------------------------------------------------------------------


class OperationCache:
    """Short-TTL cache of remote write responses.

    Args:
        ttl_seconds: Lifetime of an entry; ``0`` disables caching.
        clock: Monotonic clock in seconds.
    """

    def __init__(
        self,
        ttl_seconds: float = 30.0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.ttl_seconds = ttl_seconds
        self._clock = clock
        self._entries: dict[str, tuple[float, Any]] = {}

    def __len__(self) -> int:
        return len(self._entries)

    @staticmethod
    def signature(method: str, endpoint: str, payload: Any) -> str:
        canonical = json.dumps(
            [method.upper(), endpoint, payload],
            sort_keys=True,
            separators=(",", ":"),
            default=str,
        )
        return hashlib.sha256(canonical.encode("utf-8")).hexdigest()

    def get(self, signature: str) -> tuple[bool, Any]:
        """Return ``(hit, value)``; expired entries are evicted."""
        entry = self._entries.get(signature)
        if entry is None:
            return False, None
        expires_at, value = entry
        if self._clock() >= expires_at:
            del self._entries[signature]
            return False, None
        return True, value

    def put(self, signature: str, value: Any) -> None:
        if self.ttl_seconds <= 0:
            return
        self._entries[signature] = (self._clock() + self.ttl_seconds, value)


# ----------------------------------------------------------------------
# Adaptive sizing
# ----------------------------------------------------------------------


class AdaptiveBatchSizer:
    """Per-operation batch size that shrinks under throttling.

    A throttled batch halves the size (minimum 1); every ``grow_after``
    consecutive clean batches grow it by one, up to the configured size.
    """

    def __init__(self, sizes: BatchSizes, grow_after: int = 3) -> None:
        self._limits = {
            Operation.CREATE: sizes.create,
            Operation.UPDATE: sizes.update,
            Operation.DELETE: sizes.delete,
        }
        self._current = dict(self._limits)
        self._clean = {op: 0 for op in Operation}
        self._grow_after = grow_after

    def size_for(self, operation: Operation) -> int:
        return self._current[operation]

    def record(self, operation: Operation, throttled: bool) -> int:
        """Feed one batch outcome back; returns the new size."""
        if throttled:
            self._current[operation] = max(1, self._current[operation] // 2)
            self._clean[operation] = 0
            logger.info(
                "Throttled %s batch; batch size now %d",
                operation.value,
                self._current[operation],
            )
        else:
            self._clean[operation] += 1
            if (
                self._clean[operation] >= self._grow_after
                and self._current[operation] < self._limits[operation]
            ):
                self._current[operation] += 1
                self._clean[operation] = 0
        return self._current[operation]


# ----------------------------------------------------------------------
# Batches
# ----------------------------------------------------------------------


@dataclass
class Batch:
    number: int
    entity_type: EntityType
    operation: Operation
    direction: SyncDirection
    items: list[SyncItem]

    def __len__(self) -> int:
        return len(self.items)


def _group_of(item: SyncItem) -> tuple[EntityType, Operation, SyncDirection]:
    return (item.entity_type, item.operation, item.direction)


@dataclass
class _BatchRun:
    """Mutable accumulator for one ``process_batch`` call."""

    results: dict[str, ItemResult] = field(default_factory=dict)
    remote_calls: int = 0
    throttled: bool = False


class BatchProcessor:
    """Dispatch batches of sync items.

    Args:
        client: Rate-limited remote client.
        mirror: In-memory mirror updated as items complete.
        retry: Retry policy wrapped around every remote call.
        audit: Audit trail; optional.
        adapters: Entity adapters; defaults to ``default_adapters()``.
        detector: Hashes records marked as synced.
        cache: Operation cache; ``None`` disables caching.
        sizer: Adaptive batch sizer; defaults to ``BatchSizes()``.
        clock: Epoch-seconds clock.
        deadline: Epoch seconds no retry backoff may sleep past; ``None``
            means unbounded.
    """

    def __init__(
        self,
        client: CatalogClient,
        mirror: Mirror,
        retry: RetryManager,
        audit: AuditLogger | None = None,
        adapters: dict[EntityType, EntityAdapter] | None = None,
        detector: ChangeDetector | None = None,
        cache: OperationCache | None = None,
        sizer: AdaptiveBatchSizer | None = None,
        clock: Callable[[], float] = time.time,
        deadline: float | None = None,
    ) -> None:
        self._client = client
        self._mirror = mirror
        self._retry = retry
        self._audit = audit
        self._adapters = adapters or default_adapters()
        self._detector = detector or ChangeDetector()
        self._cache = cache
        self.sizer = sizer or AdaptiveBatchSizer(BatchSizes())
        self._clock = clock
        self._deadline = deadline
        self._location_id: str | None = None

    # ------------------------------------------------------------------
    # Batching
    # ------------------------------------------------------------------

    def create_batches(
        self,
        items: Iterable[SyncItem],
        size: int | None = None,
        start: int = 1,
    ) -> list[Batch]:
        """Split *items* (already in dispatch order) into batches.

        A batch is a contiguous run sharing entity type, operation and
        direction, capped at *size* or the operation's adaptive size.
        """
        batches: list[Batch] = []
        current: list[SyncItem] = []
        number = start

        def close() -> None:
            nonlocal current, number
            if current:
                head = current[0]
                batches.append(
                    Batch(
                        number=number,
                        entity_type=head.entity_type,
                        operation=head.operation,
                        direction=head.direction,
                        items=current,
                    )
                )
                number += 1
                current = []

        for item in items:
            limit = size or self.sizer.size_for(item.operation)
            if current and (
                _group_of(item) != _group_of(current[0])
                or len(current) >= limit
            ):
                close()
            current.append(item)
        close()
        return batches

    def next_batch(self, queue: PriorityQueue, number: int) -> Batch | None:
        """Take the next batch off the head of *queue*."""
        head = queue.peek()
        if head is None:
            return None
        limit = self.sizer.size_for(head.operation)
        members: list[SyncItem] = []
        for item in queue.ordered():
            if _group_of(item) != _group_of(head):
                break
            members.append(item)
            if len(members) >= limit:
                break
        for item in members:
            queue.remove(item.key_str)
        return Batch(
            number=number,
            entity_type=head.entity_type,
            operation=head.operation,
            direction=head.direction,
            items=members,
        )

    # ------------------------------------------------------------------
    # Processing
    # ------------------------------------------------------------------

    def process_all(self, batches: Sequence[Batch]) -> list[BatchResult]:
        """Process *batches* in order, stopping after an aborted batch."""
        results: list[BatchResult] = []
        for batch in batches:
            result = self.process_batch(batch)
            results.append(result)
            if result.aborted:
                break
        return results

    def process_batch(
        self, batch: Batch, operation: Operation | None = None
    ) -> BatchResult:
        """Dispatch one batch and resolve each of its items.

        Raises:
            ValueError: If *operation* does not match the batch.
        """
        if operation is not None and operation != batch.operation:
            raise ValueError(
                f"Batch {batch.number} holds {batch.operation.value} items, "
                f"not {operation.value}"
            )
        started = self._clock()
        info = {
            "batch_number": batch.number,
            "size": len(batch),
            "entity_type": batch.entity_type.value,
            "operation": batch.operation.value,
            "direction": batch.direction.value,
        }
        if self._audit is not None:
            self._audit.log_batch_start(info)

        run = _BatchRun()
        abort_reason = None
        interrupted = False
        try:
            if batch.direction == SyncDirection.PULL:
                for item in batch.items:
                    self._apply_pull(item, run)
            elif batch.entity_type == EntityType.VARIANT:
                self._push_variants(batch.items, run)
            else:
                for item in batch.items:
                    record = self._prepare(item, run)
                    if record is not None:
                        self._push_single(item, record, run)
        except DeadlineReachedError as exc:
            interrupted = True
            logger.info(
                "Batch %d stopped at the deadline: %s", batch.number, exc.message
            )
        except CatalogSyncError as exc:
            if not exc.aborts_session:
                raise
            abort_reason = f"{type(exc).__name__}: {exc.message}"
            logger.error("Batch %d aborted: %s", batch.number, exc.message)
            if self._audit is not None:
                self._audit.log_error(exc, {"batch_number": batch.number})

        results = []
        for item in batch.items:
            result = run.results.get(item.key_str)
            if result is None:
                result = ItemResult(
                    key=item.key_str,
                    operation=item.operation,
                    direction=item.direction,
                    outcome=ItemOutcome.DEFERRED,
                    attempts=item.attempts,
                    error=item.last_error,
                )
            results.append(result)

        if abort_reason is None:
            self.sizer.record(batch.operation, run.throttled)

        batch_result = BatchResult(
            batch_number=batch.number,
            entity_type=batch.entity_type,
            operation=batch.operation,
            direction=batch.direction,
            results=results,
            remote_calls=run.remote_calls,
            throttled=run.throttled,
            duration_ms=int((self._clock() - started) * 1000),
            abort_reason=abort_reason,
            interrupted=interrupted,
        )
        if self._audit is not None:
            self._audit.log_batch_complete(info, batch_result)
        return batch_result

    # ------------------------------------------------------------------
    # Pull: remote -> mirror
    # ------------------------------------------------------------------

    def _apply_pull(self, item: SyncItem, run: _BatchRun) -> None:
        if item.operation == Operation.DELETE:
            self._mirror.remove(item.entity_type, item.id)
        else:
            existing = self._mirror.get(item.entity_type, item.id)
            meta = existing.meta if existing is not None else RecordMeta()
            self._mirror.upsert(
                item.record,
                meta.model_copy(
                    update={
                        "hash": self._detector.compute_hash(item.record),
                        "last_synced_at": iso_timestamp(self._clock()),
                        "errors": "",
                    }
                ),
            )
        self._resolve(run, item, ItemOutcome.COMPLETED)

    # ------------------------------------------------------------------
    # Push: mirror -> remote
    # ------------------------------------------------------------------

    def _current_record(self, item: SyncItem) -> CatalogRecord:
        """Mirror state wins over the queued payload for creates/updates."""
        if item.operation != Operation.DELETE:
            row = self._mirror.get(item.entity_type, item.id)
            if row is not None:
                return row.record
        return item.record

    def _prepare(self, item: SyncItem, run: _BatchRun) -> CatalogRecord | None:
        """Validate a push item; resolves and returns ``None`` if unfit."""
        record = self._current_record(item)
        if item.operation != Operation.DELETE:
            problems = validate_record(self._adapters[item.entity_type], record)
            if problems:
                self._resolve(
                    run,
                    item,
                    ItemOutcome.FAILED,
                    error="Validation failed: " + "; ".join(problems),
                )
                return None
        if isinstance(record, Variant) and is_provisional(record.product_id):
            self._resolve(
                run,
                item,
                ItemOutcome.SKIPPED,
                error=f"Parent product {record.product_id} has not been "
                "created remotely yet",
            )
            return None
        return record

    def _call(
        self,
        run: _BatchRun,
        method: str,
        endpoint: str,
        payload: Any,
        func: Callable[[], Any],
        items: Sequence[SyncItem],
        cacheable: bool = True,
    ) -> tuple[Any, bool]:
        """Run one remote write through the cache and the retry manager.

        Returns:
            ``(response, from_cache)``
        """
        signature = OperationCache.signature(method, endpoint, payload)
        if cacheable and self._cache is not None:
            hit, value = self._cache.get(signature)
            if hit:
                logger.debug("Cache hit for %s %s", method, endpoint)
                return value, True

        def attempt() -> Any:
            run.remote_calls += 1
            try:
                return func()
            except ThrottledError:
                run.throttled = True
                raise

        value = self._retry.execute(
            attempt,
            items,
            label=f"{method} {endpoint}",
            deadline=self._deadline,
        )
        if cacheable and self._cache is not None:
            self._cache.put(signature, value)
        return value, False

    def _single_call(
        self, item: SyncItem, record: CatalogRecord
    ) -> tuple[str, str, Any, Callable[[], Any]]:
        """Return ``(method, endpoint, payload, call)`` for one REST write."""
        adapter = self._adapters[item.entity_type]
        client = self._client
        op = item.operation
        if item.entity_type == EntityType.PRODUCT:
            if op == Operation.CREATE:
                payload = adapter.to_payload(record)
                return (
                    "POST",
                    "products.json",
                    payload,
                    partial(client.create_product, payload),
                )
            if op == Operation.UPDATE:
                payload = adapter.to_payload(record)
                return (
                    "PUT",
                    f"products/{record.id}.json",
                    payload,
                    partial(client.update_product, record.id, payload),
                )
            return (
                "DELETE",
                f"products/{record.id}.json",
                None,
                partial(client.delete_product, record.id),
            )

        if op == Operation.CREATE:
            payload = adapter.to_payload(record)
            return (
                "POST",
                f"products/{record.product_id}/variants.json",
                payload,
                partial(client.create_variant, record.product_id, payload),
            )
        if op == Operation.UPDATE:
            payload = adapter.to_payload(record)
            return (
                "PUT",
                f"variants/{record.id}.json",
                payload,
                partial(client.update_variant, record.id, payload),
            )
        return (
            "DELETE",
            f"products/{record.product_id}/variants/{record.id}.json",
            None,
            partial(client.delete_variant, record.product_id, record.id),
        )

    def _push_single(
        self, item: SyncItem, record: CatalogRecord, run: _BatchRun
    ) -> None:
        method, endpoint, payload, func = self._single_call(item, record)
        try:
            response, cached = self._call(
                run,
                method,
                endpoint,
                payload,
                func,
                [item],
                cacheable=item.operation != Operation.CREATE,
            )
        except CatalogSyncError as exc:
            if _stops_batch(exc):
                raise
            self._resolve_error(run, item, exc)
            return

        remote_id = None
        if item.operation == Operation.CREATE:
            remote_id = str((response or {}).get("id") or "") or None
            if remote_id is None:
                self._resolve(
                    run,
                    item,
                    ItemOutcome.FAILED,
                    error="Remote create returned no id",
                )
                return
        if isinstance(record, Variant) and item.operation != Operation.DELETE:
            inventory_item_id = (response or {}).get("inventory_item_id")
            self._push_inventory(
                run, item, record, remote_id, cached, inventory_item_id
            )
            return
        self._on_pushed(run, item, record, remote_id, cached)

    def _push_variants(self, items: Sequence[SyncItem], run: _BatchRun) -> None:
        """Group variant items by parent product and dispatch each group."""
        groups: dict[str, list[tuple[SyncItem, Variant]]] = {}
        for item in items:
            record = self._prepare(item, run)
            if record is None:
                continue
            groups.setdefault(record.product_id, []).append((item, record))

        for product_id, members in groups.items():
            if len(members) == 1:
                self._push_single(members[0][0], members[0][1], run)
            else:
                self._push_bulk(product_id, members, run)

    def _push_bulk(
        self,
        product_id: str,
        members: list[tuple[SyncItem, Variant]],
        run: _BatchRun,
    ) -> None:
        adapter = self._adapters[EntityType.VARIANT]
        client = self._client
        items = [item for item, _ in members]
        operation = items[0].operation

        try:
            if operation == Operation.CREATE:
                location_id = None
                if any(r.inventory_quantity is not None for _, r in members):
                    location_id = self._location()
                inputs = [
                    adapter.to_bulk_input(
                        r, include_id=False, location_id=location_id
                    )
                    for _, r in members
                ]
                mutation = "productVariantsBulkCreate"
                func = partial(client.bulk_create_variants, product_id, inputs)
            elif operation == Operation.UPDATE:
                inputs = [
                    adapter.to_bulk_input(r, include_id=True)
                    for _, r in members
                ]
                mutation = "productVariantsBulkUpdate"
                func = partial(client.bulk_update_variants, product_id, inputs)
            else:
                inputs = [r.id for _, r in members]
                mutation = "productVariantsBulkDelete"
                func = partial(client.bulk_delete_variants, product_id, inputs)

            logger.debug(
                "Folding %d variant %ss of product %s into %s",
                len(members),
                operation.value,
                product_id,
                mutation,
            )
            response, cached = self._call(
                run,
                "POST",
                f"graphql:{mutation}",
                {"productId": product_id, "variants": inputs},
                func,
                items,
                cacheable=operation != Operation.CREATE,
            )
        except CatalogSyncError as exc:
            if _stops_batch(exc):
                raise
            for item in items:
                self._resolve_error(run, item, exc)
            return

        per_item, general = _user_errors(response.get("userErrors") or [])
        if general:
            for item in items:
                self._resolve(
                    run, item, ItemOutcome.FAILED, error="; ".join(general)
                )
            return

        nodes = response.get("productVariants") or []
        created = iter(nodes)
        updated = {
            from_gid(node["id"]): node for node in nodes if node.get("id")
        }
        for index, (item, record) in enumerate(members):
            if index in per_item:
                self._resolve(
                    run, item, ItemOutcome.FAILED, error=per_item[index]
                )
                continue
            if operation == Operation.DELETE:
                self._on_pushed(run, item, record, None, cached)
            elif operation == Operation.CREATE:
                node = next(created, None)
                if not node or not node.get("id"):
                    self._resolve(
                        run,
                        item,
                        ItemOutcome.FAILED,
                        error="Remote bulk create returned no id",
                    )
                    continue
                inventory_item_id = _node_inventory_item(node)
                if inventory_item_id:
                    record = record.model_copy(
                        update={"inventory_item_id": inventory_item_id}
                    )
                self._on_pushed(run, item, record, from_gid(node["id"]), cached)
            else:
                # Bulk updates take cost but not stock; set levels per item
                self._push_inventory(
                    run,
                    item,
                    record,
                    None,
                    cached,
                    _node_inventory_item(updated.get(record.id) or {}),
                    include_cost=False,
                )

    # ------------------------------------------------------------------
    # Inventory: stock levels and unit cost
    # ------------------------------------------------------------------

    def _location(self) -> str:
        """Resolve the inventory location once per processor.

        Raises:
            ValidationError: If the shop has no usable location.
        """
        if self._location_id is None:
            location_id = self._retry.execute(
                self._client.primary_location_id,
                label="inventory location lookup",
                deadline=self._deadline,
            )
            if not location_id:
                raise ValidationError("No inventory location to set stock at")
            self._location_id = str(location_id)
        return self._location_id

    def _push_inventory(
        self,
        run: _BatchRun,
        item: SyncItem,
        record: Variant,
        remote_id: str | None,
        from_cache: bool,
        inventory_item_id: Any,
        include_cost: bool = True,
    ) -> None:
        """Write stock and cost once the variant itself was saved."""
        if inventory_item_id:
            record = record.model_copy(
                update={"inventory_item_id": str(inventory_item_id)}
            )
        adapter = self._adapters[EntityType.VARIANT]
        client = self._client
        try:
            wants_stock = record.inventory_quantity is not None
            if wants_stock or (include_cost and record.cost):
                if not record.inventory_item_id:
                    raise ValidationError(
                        "Remote variant has no inventory item"
                    )
                writes = adapter.to_inventory_writes(
                    record,
                    record.inventory_item_id,
                    self._location() if wants_stock else None,
                    include_cost=include_cost,
                )
            else:
                writes = []
            for method, endpoint, body in writes:
                if method == "PUT":
                    func = partial(
                        client.update_inventory_item,
                        record.inventory_item_id,
                        body,
                    )
                else:
                    func = partial(client.set_inventory_level, body)
                self._call(run, method, endpoint, body, func, [item])
        except CatalogSyncError as exc:
            # A created variant must keep its remote id even when stopping
            if item.operation == Operation.CREATE or not _stops_batch(exc):
                self._on_inventory_failed(run, item, record, remote_id, exc)
            if _stops_batch(exc):
                raise
            return
        self._on_pushed(run, item, record, remote_id, from_cache)

    def _on_inventory_failed(
        self,
        run: _BatchRun,
        item: SyncItem,
        record: Variant,
        remote_id: str | None,
        error: CatalogSyncError,
    ) -> None:
        """The variant was saved but its stock or cost was not.

        A created row is rekeyed and hashed without stock and cost, so the
        next run classifies it as an update; an updated row keeps its old
        hash for the same reason.
        """
        if item.operation == Operation.CREATE:
            written = record.model_copy(
                update={"inventory_quantity": None, "cost": ""}
            )
            if not self._store_synced(run, item, record, remote_id, written):
                return
        self._resolve(
            run,
            item,
            ItemOutcome.FAILED,
            error=f"Variant saved but inventory not written: {error.message}",
            remote_id=remote_id,
        )

    # ------------------------------------------------------------------
    # Mirror bookkeeping
    # ------------------------------------------------------------------

    def _on_pushed(
        self,
        run: _BatchRun,
        item: SyncItem,
        record: CatalogRecord,
        remote_id: str | None,
        from_cache: bool,
    ) -> None:
        """Reflect a successful remote write in the mirror."""
        if item.operation == Operation.DELETE:
            self._mirror.remove(item.entity_type, item.id)
        elif not self._store_synced(run, item, record, remote_id):
            return
        self._resolve(
            run,
            item,
            ItemOutcome.COMPLETED,
            remote_id=remote_id,
            from_cache=from_cache,
        )

    def _store_synced(
        self,
        run: _BatchRun,
        item: SyncItem,
        record: CatalogRecord,
        remote_id: str | None,
        hashed: CatalogRecord | None = None,
    ) -> bool:
        """Rekey a created row and store *record* with the hash of *hashed*.

        Returns:
            False, with the item resolved as failed, when another row already
            holds *remote_id*.
        """
        if remote_id and remote_id != item.id:
            try:
                self._mirror.rekey(item.entity_type, item.id, remote_id)
            except KeyError:
                self._resolve(
                    run,
                    item,
                    ItemOutcome.FAILED,
                    error=f"Remote id {remote_id} already belongs to "
                    "another mirror row",
                )
                return False
            record = record.model_copy(update={"id": remote_id})
        existing = self._mirror.get(record.entity_type, record.id)
        meta = existing.meta if existing is not None else RecordMeta()
        self._mirror.upsert(
            record,
            meta.model_copy(
                update={
                    "hash": self._detector.compute_hash(hashed or record),
                    "last_synced_at": iso_timestamp(self._clock()),
                    "action": RowAction.NONE,
                    "errors": "",
                }
            ),
        )
        return True

    # ------------------------------------------------------------------
    # Resolution
    # ------------------------------------------------------------------

    def _resolve_error(
        self, run: _BatchRun, item: SyncItem, error: CatalogSyncError
    ) -> None:
        if isinstance(error, ResourceNotFoundError):
            if item.operation == Operation.DELETE:
                # Already gone remotely
                self._mirror.remove(item.entity_type, item.id)
            self._resolve(run, item, ItemOutcome.SKIPPED, error=error.message)
        else:
            self._resolve(run, item, ItemOutcome.FAILED, error=error.message)

    def _resolve(
        self,
        run: _BatchRun,
        item: SyncItem,
        outcome: ItemOutcome,
        error: str | None = None,
        remote_id: str | None = None,
        from_cache: bool = False,
    ) -> None:
        run.results[item.key_str] = ItemResult(
            key=item.key_str,
            operation=item.operation,
            direction=item.direction,
            outcome=outcome,
            attempts=item.attempts,
            error=error,
            remote_id=remote_id,
            from_cache=from_cache,
        )
        self._retry.clear([item])
        if error is None:
            return
        context = {"key": item.key_str, "operation": item.operation.value}
        if item.direction == SyncDirection.PUSH:
            self._mirror.set_error(item.entity_type, remote_id or item.id, error)
        if self._audit is not None:
            if outcome == ItemOutcome.FAILED:
                self._audit.log_error(CatalogSyncError(error), context)
            else:
                self._audit.log_warning(f"Skipped {item.key_str}: {error}", context)
        else:
            logger.warning("%s %s: %s", outcome.value, item.key_str, error)


def _stops_batch(error: CatalogSyncError) -> bool:
    """Errors that end the batch instead of failing one item."""
    return error.aborts_session or isinstance(error, DeadlineReachedError)


def _node_inventory_item(node: dict[str, Any]) -> str | None:
    """REST id of the inventory item in a bulk mutation result node."""
    gid = (node.get("inventoryItem") or {}).get("id")
    return from_gid(gid) if gid else None


def _user_errors(
    user_errors: list[dict[str, Any]],
) -> tuple[dict[int, str], list[str]]:
    """Split GraphQL ``userErrors`` into per-index and general messages.

    ``field`` paths look like ``["variants", "2", "price"]``; the numeric
    element identifies the input the error belongs to.
    """
    per_item: dict[int, str] = {}
    general: list[str] = []
    for err in user_errors:
        message = err.get("message") or "Unknown error"
        path = err.get("field") or []
        index = next(
            (int(p) for p in path[1:2] if str(p).isdigit()), None
        )
        if index is None:
            general.append(message)
        else:
            field_name = ".".join(str(p) for p in path[2:])
            text = f"{field_name}: {message}" if field_name else message
            per_item[index] = (
                f"{per_item[index]}; {text}" if index in per_item else text
            )
    return per_item, general
