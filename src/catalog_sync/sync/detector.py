"""Content hashing and diff classification.

``ChangeDetector.compute_hash()`` digests the allow-listed business fields
of a record after normalisation:

1. Only fields in the entity's ``HASH_FIELDS`` participate.
2. Strings are stripped; blank strings and ``None`` are equivalent.
3. Lists are normalised element-wise and sorted.
4. Numbers are compared by value (``5`` == ``5.0``).
5. The normalised mapping is serialised as canonical JSON (sorted keys)
   and hashed with SHA-256, prefixed by the entity kind.

Hashes are always recomputed from the record as it is *now*.  The stored
hash is only ever the comparison baseline, so out-of-band edits to the
mirror are always visible.
"""

from __future__ import annotations

import hashlib
import json
import logging
from collections.abc import Iterable, Mapping
from typing import Any

from ..catalog.models import (
    RECORD_TYPES,
    CatalogRecord,
    EntityType,
    MirrorRow,
    Product,
    Variant,
)
from .models import ChangeSet, Operation, Priority, SyncDirection, SyncItem

logger = logging.getLogger(__name__)


def _normalise(value: Any) -> Any:
    if value is None:
        return None
    if isinstance(value, bool):
        return value
    if isinstance(value, (int, float)):
        return float(value)
    if isinstance(value, str):
        text = value.strip()
        return text or None
    if isinstance(value, (list, tuple, set)):
        items = [_normalise(v) for v in value]
        items = [v for v in items if v is not None]
        return sorted(items, key=lambda v: json.dumps(v, sort_keys=True))
    if isinstance(value, Mapping):
        return {str(k): _normalise(v) for k, v in value.items()}
    return str(value).strip() or None


def record_key(record: CatalogRecord) -> str:
    """Return ``"<entity>:<id>"`` for *record*."""
    return f"{record.entity_type.value}:{record.id}"


class ChangeDetector:
    """Classify records as new, changed, unchanged or deleted."""

    def compute_hash(
        self,
        record: CatalogRecord | Mapping[str, Any],
        entity_type: EntityType | None = None,
    ) -> str:
        """Return the content hash of *record*.

        Args:
            record: A ``Product``/``Variant`` or a plain field mapping.
            entity_type: Required when *record* is a mapping.

        Returns:
            64-character SHA-256 hex digest.
        """
        if isinstance(record, (Product, Variant)):
            entity_type = record.entity_type
            fields = {
                name: getattr(record, name) for name in record.HASH_FIELDS
            }
        else:
            if entity_type is None:
                raise ValueError(
                    "entity_type is required when hashing a mapping"
                )
            allowed = RECORD_TYPES[entity_type].HASH_FIELDS
            fields = {name: record.get(name) for name in allowed}

        normalised = {name: _normalise(v) for name, v in fields.items()}
        canonical = json.dumps(
            normalised,
            sort_keys=True,
            separators=(",", ":"),
            ensure_ascii=False,
        )
        payload = f"{entity_type.value}|{canonical}"
        return hashlib.sha256(payload.encode("utf-8")).hexdigest()

    def classify(
        self,
        new_records: Iterable[CatalogRecord],
        mirrored: Iterable[MirrorRow],
    ) -> ChangeSet:
        """Diff *new_records* against the stored hashes of *mirrored*.

        - no stored hash (or no mirrored row): ``to_add``
        - recomputed hash differs from the stored hash: ``to_update``
        - mirrored but absent from *new_records*: ``to_delete``
        - otherwise ``unchanged``

        Duplicate keys in *new_records* keep the first occurrence.
        """
        by_key = {row.key: row for row in mirrored}
        changes = ChangeSet()
        seen: set[tuple[EntityType, str]] = set()

        for record in new_records:
            key = (record.entity_type, record.id)
            if key in seen:
                logger.warning(
                    "Duplicate %s id %s in snapshot; keeping first",
                    record.entity_type.value,
                    record.id,
                )
                continue
            seen.add(key)

            digest = self.compute_hash(record)
            changes.hashes[record_key(record)] = digest

            row = by_key.get(key)
            stored = row.meta.hash if row is not None else None
            if stored is None:
                changes.to_add.append(record)
            elif digest != stored:
                changes.to_update.append(record)
            else:
                changes.unchanged.append(record)

        for key, row in by_key.items():
            if key not in seen:
                changes.to_delete.append(row.record)

        logger.debug(
            "Classified %d records: %d add, %d update, %d delete, %d unchanged",
            len(seen),
            len(changes.to_add),
            len(changes.to_update),
            len(changes.to_delete),
            len(changes.unchanged),
        )
        return changes

    # ------------------------------------------------------------------
    # Item construction
    # ------------------------------------------------------------------

    def build_items(
        self,
        changes: ChangeSet,
        direction: SyncDirection,
        previous: Mapping[tuple[EntityType, str], CatalogRecord] | None = None,
    ) -> list[SyncItem]:
        """Turn a ``ChangeSet`` into prioritised ``SyncItem``s.

        Products are emitted before variants within each operation so that
        FIFO order inside a tier keeps parents ahead of children.

        Args:
            changes: Output of ``classify``.
            direction: Where the writes land.
            previous: Prior record state per key, used to detect
                price/inventory/SKU changes on variant updates.
        """
        prev = previous or {}
        items: list[SyncItem] = []
        groups = (
            (Operation.CREATE, changes.to_add),
            (Operation.UPDATE, changes.to_update),
            (Operation.DELETE, changes.to_delete),
        )
        for operation, records in groups:
            ordered = sorted(
                records,
                key=lambda r: 0 if r.entity_type == EntityType.PRODUCT else 1,
            )
            for record in ordered:
                items.append(
                    SyncItem(
                        id=record.id,
                        entity_type=record.entity_type,
                        operation=operation,
                        direction=direction,
                        record=record,
                        priority=self.assign_priority(
                            record,
                            operation,
                            direction,
                            prev.get((record.entity_type, record.id)),
                        ),
                    )
                )
        return items

    @staticmethod
    def assign_priority(
        record: CatalogRecord,
        operation: Operation,
        direction: SyncDirection,
        previous: CatalogRecord | None = None,
    ) -> Priority:
        """Pick a queue tier for one item.

        Remote product creates are critical because their variants need the
        assigned id. Variant updates that touch price, inventory or SKU
        fields are high. Deletes are low. Everything else is normal.
        """
        if operation == Operation.DELETE:
            return Priority.LOW
        if (
            operation == Operation.CREATE
            and direction == SyncDirection.PUSH
            and isinstance(record, Product)
        ):
            return Priority.CRITICAL
        if (
            operation == Operation.UPDATE
            and isinstance(record, Variant)
            and isinstance(previous, Variant)
        ):
            for name in Variant.PRIORITY_FIELDS:
                if _normalise(getattr(record, name)) != _normalise(
                    getattr(previous, name)
                ):
                    return Priority.HIGH
        return Priority.NORMAL
