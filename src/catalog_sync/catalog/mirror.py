"""Tabular mirror of the remote catalog.

The mirror is one CSV file per entity type (``products.csv``,
``variants.csv``) inside ``SyncSettings.mirror_dir``.  Each row holds the
record's business fields followed by the reserved system columns:

* ``_hash``: content hash at the last successful sync (blank = never synced)
* ``_last_synced_at``: ISO 8601 timestamp of the last successful sync
* ``_action``: ``delete`` or ``skip`` requested by the operator
* ``_errors``: last error recorded for the row

Rows without an id are new records; they receive a provisional id
(``new-<n>``) on load which is replaced by the remote id after creation.
Rows that fail validation are preserved verbatim and written back untouched.
"""

from __future__ import annotations

import csv
import logging
import os
import tempfile
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from pydantic import ValidationError as PydanticValidationError

from .models import (
    PROVISIONAL_PREFIX,
    RECORD_TYPES,
    CatalogRecord,
    EntityType,
    MirrorRow,
    RecordMeta,
)

logger = logging.getLogger(__name__)

SYSTEM_COLUMNS = ("_hash", "_last_synced_at", "_action", "_errors")

_FILE_NAMES = {
    EntityType.PRODUCT: "products.csv",
    EntityType.VARIANT: "variants.csv",
}


def record_columns(entity_type: EntityType) -> list[str]:
    """Business columns for *entity_type*, in model declaration order."""
    model = RECORD_TYPES[entity_type]
    return [name for name in model.model_fields if name != "kind"]


def _cell(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, list):
        return ", ".join(str(v) for v in value)
    return str(value)


@dataclass
class Mirror:
    """In-memory view of the mirror, keyed by ``(entity_type, id)``.

    Row order is preserved so a save rewrites the table in the order the
    operator left it.
    """

    rows: dict[EntityType, dict[str, MirrorRow]] = field(default_factory=dict)
    invalid: dict[EntityType, list[dict[str, str]]] = field(
        default_factory=dict
    )

    def table(self, entity_type: EntityType) -> dict[str, MirrorRow]:
        return self.rows.setdefault(entity_type, {})

    def all_rows(self, entity_type: EntityType) -> list[MirrorRow]:
        return list(self.table(entity_type).values())

    def get(self, entity_type: EntityType, record_id: str) -> MirrorRow | None:
        return self.table(entity_type).get(record_id)

    def upsert(self, record: CatalogRecord, meta: RecordMeta) -> None:
        self.table(record.entity_type)[record.id] = MirrorRow(
            record=record, meta=meta
        )

    def remove(self, entity_type: EntityType, record_id: str) -> bool:
        return self.table(entity_type).pop(record_id, None) is not None

    def set_error(
        self, entity_type: EntityType, record_id: str, message: str
    ) -> None:
        row = self.get(entity_type, record_id)
        if row is None:
            return
        self.table(entity_type)[record_id] = MirrorRow(
            record=row.record,
            meta=row.meta.model_copy(update={"errors": message}),
        )

    def rekey(
        self, entity_type: EntityType, old_id: str, new_id: str
    ) -> None:
        """Replace a provisional id with the id assigned remotely.

        Keeps the row in place and re-points child variants of a product.

        Raises:
            KeyError: If another row already holds *new_id*.
        """
        table = self.table(entity_type)
        if old_id not in table:
            return
        if new_id in table:
            raise KeyError(
                f"{entity_type.value} {new_id} already exists in the mirror"
            )
        rebuilt: dict[str, MirrorRow] = {}
        for record_id, row in table.items():
            if record_id == old_id:
                record = row.record.model_copy(update={"id": new_id})
                rebuilt[new_id] = MirrorRow(record=record, meta=row.meta)
            else:
                rebuilt[record_id] = row
        self.rows[entity_type] = rebuilt

        if entity_type == EntityType.PRODUCT:
            variants = self.table(EntityType.VARIANT)
            for record_id, row in list(variants.items()):
                if row.record.product_id == old_id:
                    variants[record_id] = MirrorRow(
                        record=row.record.model_copy(
                            update={"product_id": new_id}
                        ),
                        meta=row.meta,
                    )


class MirrorStore:
    """Read and write the CSV mirror.

    Args:
        mirror_dir: Directory holding one CSV per entity type.
    """

    def __init__(self, mirror_dir: Path) -> None:
        self._mirror_dir = mirror_dir
        self._next_provisional = 1

    def path_for(self, entity_type: EntityType) -> Path:
        return self._mirror_dir / _FILE_NAMES[entity_type]

    # ------------------------------------------------------------------
    # Load
    # ------------------------------------------------------------------

    def load(self, entity_types: list[EntityType]) -> Mirror:
        """Load the tables for *entity_types*.

        Missing files load as empty tables.
        """
        mirror = Mirror()
        for entity_type in entity_types:
            rows, invalid = self._load_table(entity_type)
            mirror.rows[entity_type] = rows
            if invalid:
                mirror.invalid[entity_type] = invalid
        return mirror

    def _load_table(
        self, entity_type: EntityType
    ) -> tuple[dict[str, MirrorRow], list[dict[str, str]]]:
        path = self.path_for(entity_type)
        rows: dict[str, MirrorRow] = {}
        invalid: list[dict[str, str]] = []
        if not path.exists():
            logger.debug("No mirror table at %s", path)
            return rows, invalid

        with open(path, encoding="utf-8", newline="") as fh:
            raw_rows = list(csv.DictReader(fh))

        self._reserve_provisional(raw_rows)
        model = RECORD_TYPES[entity_type]
        for line_no, raw in enumerate(raw_rows, start=2):
            data = {
                k: v
                for k, v in raw.items()
                if k is not None and k not in SYSTEM_COLUMNS
            }
            if not (data.get("id") or "").strip():
                data["id"] = self._provisional_id()
            else:
                data["id"] = data["id"].strip()
            try:
                record = model(**data)
                meta = RecordMeta(
                    hash=raw.get("_hash"),
                    last_synced_at=raw.get("_last_synced_at"),
                    action=raw.get("_action"),
                    errors=raw.get("_errors") or "",
                )
            except PydanticValidationError as exc:
                logger.warning(
                    "Skipping invalid %s row at %s:%d: %s",
                    entity_type.value,
                    path.name,
                    line_no,
                    exc.errors()[0].get("msg", str(exc)),
                )
                invalid.append(dict(raw))
                continue
            if record.id in rows:
                logger.warning(
                    "Duplicate %s id %s at %s:%d; keeping first",
                    entity_type.value,
                    record.id,
                    path.name,
                    line_no,
                )
                invalid.append(dict(raw))
                continue
            rows[record.id] = MirrorRow(record=record, meta=meta)

        logger.debug(
            "Loaded %d %s rows from %s", len(rows), entity_type.value, path
        )
        return rows, invalid

    def _reserve_provisional(self, raw_rows: list[dict[str, str]]) -> None:
        """Advance the provisional counter past ids already in the table."""
        for raw in raw_rows:
            value = (raw.get("id") or "").strip()
            if value.startswith(PROVISIONAL_PREFIX):
                suffix = value[len(PROVISIONAL_PREFIX):]
                if suffix.isdigit():
                    self._next_provisional = max(
                        self._next_provisional, int(suffix) + 1
                    )

    def _provisional_id(self) -> str:
        value = f"{PROVISIONAL_PREFIX}{self._next_provisional}"
        self._next_provisional += 1
        return value

    # ------------------------------------------------------------------
    # Save
    # ------------------------------------------------------------------

    def save(self, mirror: Mirror) -> None:
        """Persist every loaded table atomically."""
        for entity_type in mirror.rows:
            self._save_table(
                entity_type,
                mirror.all_rows(entity_type),
                mirror.invalid.get(entity_type, []),
            )

    def _save_table(
        self,
        entity_type: EntityType,
        rows: list[MirrorRow],
        invalid: list[dict[str, str]],
    ) -> None:
        self._mirror_dir.mkdir(parents=True, exist_ok=True)
        columns = record_columns(entity_type) + list(SYSTEM_COLUMNS)
        target = self.path_for(entity_type)

        fd, tmp_path = tempfile.mkstemp(
            dir=str(self._mirror_dir), suffix=".tmp"
        )
        try:
            with os.fdopen(fd, "w", encoding="utf-8", newline="") as fh:
                writer = csv.DictWriter(
                    fh, fieldnames=columns, extrasaction="ignore"
                )
                writer.writeheader()
                for row in rows:
                    writer.writerow(self._to_cells(row, columns))
                for raw in invalid:
                    writer.writerow(
                        {k: raw.get(k, "") for k in columns}
                    )
            os.replace(tmp_path, target)
        except BaseException:
            try:
                os.unlink(tmp_path)
            except OSError:
                pass
            raise

    @staticmethod
    def _to_cells(row: MirrorRow, columns: list[str]) -> dict[str, str]:
        cells = {
            name: _cell(getattr(row.record, name))
            for name in columns
            if name not in SYSTEM_COLUMNS
        }
        cells["_hash"] = row.meta.hash or ""
        cells["_last_synced_at"] = row.meta.last_synced_at or ""
        cells["_action"] = row.meta.action.value
        cells["_errors"] = row.meta.errors
        return cells
