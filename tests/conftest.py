"""Shared pytest fixtures for catalog-sync tests."""

from __future__ import annotations

import copy
import csv
from pathlib import Path
from typing import Any, Callable

import pytest

from catalog_sync.catalog.mirror import SYSTEM_COLUMNS, record_columns
from catalog_sync.catalog.models import RECORD_TYPES, EntityType
from catalog_sync.config import Config
from catalog_sync.config_schema import SyncSettings
from catalog_sync.core.client import from_gid, to_gid
from catalog_sync.errors import ResourceNotFoundError
from catalog_sync.sync.detector import ChangeDetector

# Deterministic epoch for every fake clock
EPOCH = 1_767_225_600.0


class FakeClock:
    """Manually advanced epoch-seconds clock.

    ``sleep`` advances time instead of blocking and records every delay.
    """

    def __init__(self, start: float = EPOCH) -> None:
        self.now = start
        self.sleeps: list[float] = []

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds

    def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.now += seconds


class FakeCatalogClient:
    """In-memory stand-in for ``CatalogClient``.

    Products and variants live in dicts keyed by id.  Every variant has an
    inventory item; stock is the ``available`` level at ``location_id``.
    ``fail_with`` queues exceptions raised by the next write calls, one per
    call.  ``on_write`` runs before every write (e.g. to advance a fake
    clock).
    """

    def __init__(
        self,
        products: list[dict[str, Any]] | None = None,
        variants: list[dict[str, Any]] | None = None,
        on_write: Callable[[str], None] | None = None,
    ) -> None:
        self.products: dict[str, dict[str, Any]] = {
            str(p["id"]): dict(p) for p in products or []
        }
        self.variants: dict[str, dict[str, Any]] = {
            str(v["id"]): dict(v) for v in variants or []
        }
        self.calls: list[tuple] = []
        self.reads: list[str] = []
        self.fail_with: list[Exception] = []
        self.on_write = on_write
        self.location_id: str | None = "7001"
        self._next_id = 9000
        self._next_item_id = 4000

    @property
    def write_calls(self) -> list[tuple]:
        return self.calls

    def _write(self, name: str, *args: Any) -> None:
        if self.on_write is not None:
            self.on_write(name)
        self.calls.append((name, *args))
        if self.fail_with:
            raise self.fail_with.pop(0)

    def _new_id(self) -> str:
        self._next_id += 1
        return str(self._next_id)

    def _new_item_id(self) -> str:
        self._next_item_id += 1
        return str(self._next_item_id)

    def _variant_for_item(self, inventory_item_id: str) -> dict[str, Any]:
        for variant in self.variants.values():
            if str(variant.get("inventory_item_id")) == str(inventory_item_id):
                return variant
        raise ResourceNotFoundError(
            f"HTTP 404: inventory item {inventory_item_id}", 404
        )

    def add_product(self, product_id: Any, **fields: Any) -> None:
        self.products[str(product_id)] = {"id": int(product_id), **fields}

    def add_variant(self, variant_id: Any, product_id: Any, **fields: Any) -> None:
        fields.setdefault("inventory_item_id", 40000 + int(variant_id))
        self.variants[str(variant_id)] = {
            "id": int(variant_id),
            "product_id": int(product_id),
            **fields,
        }

    # Reads

    def test_connection(self) -> dict[str, Any]:
        self.reads.append("shop")
        return {"name": "Acme", "domain": "acme.myshopify.com"}

    def primary_location_id(self) -> str | None:
        self.reads.append("location")
        return self.location_id

    def list_products(
        self, fields: str | None = None, updated_at_min: str | None = None
    ) -> list[dict[str, Any]]:
        self.reads.append("products")
        return [copy.deepcopy(p) for p in self.products.values()]

    def list_variants(
        self, updated_at_min: str | None = None
    ) -> list[dict[str, Any]]:
        self.reads.append("variants")
        return [copy.deepcopy(v) for v in self.variants.values()]

    # REST writes

    def create_product(self, payload: dict[str, Any]) -> dict[str, Any]:
        self._write("create_product", payload)
        product_id = self._new_id()
        self.products[product_id] = {"id": product_id, **payload}
        return {"id": int(product_id), **payload}

    def update_product(
        self, product_id: str, payload: dict[str, Any]
    ) -> dict[str, Any]:
        self._write("update_product", product_id, payload)
        if product_id not in self.products:
            raise ResourceNotFoundError(f"HTTP 404: product {product_id}", 404)
        self.products[product_id].update(payload)
        return {"id": product_id, **payload}

    def delete_product(self, product_id: str) -> None:
        self._write("delete_product", product_id)
        if self.products.pop(product_id, None) is None:
            raise ResourceNotFoundError(f"HTTP 404: product {product_id}", 404)

    def create_variant(
        self, product_id: str, payload: dict[str, Any]
    ) -> dict[str, Any]:
        self._write("create_variant", product_id, payload)
        variant_id = self._new_id()
        self.variants[variant_id] = {
            "id": variant_id,
            "product_id": product_id,
            "inventory_item_id": self._new_item_id(),
            **payload,
        }
        return {**self.variants[variant_id], "id": int(variant_id)}

    def update_variant(
        self, variant_id: str, payload: dict[str, Any]
    ) -> dict[str, Any]:
        self._write("update_variant", variant_id, payload)
        if variant_id not in self.variants:
            raise ResourceNotFoundError(f"HTTP 404: variant {variant_id}", 404)
        self.variants[variant_id].update(payload)
        return {
            "id": variant_id,
            "inventory_item_id": self.variants[variant_id].get(
                "inventory_item_id"
            ),
            **payload,
        }

    def delete_variant(self, product_id: str, variant_id: str) -> None:
        self._write("delete_variant", product_id, variant_id)
        if self.variants.pop(variant_id, None) is None:
            raise ResourceNotFoundError(f"HTTP 404: variant {variant_id}", 404)

    def update_inventory_item(
        self, inventory_item_id: str, payload: dict[str, Any]
    ) -> dict[str, Any]:
        self._write("update_inventory_item", inventory_item_id, payload)
        self._variant_for_item(inventory_item_id).update(payload)
        return {"id": inventory_item_id, **payload}

    def set_inventory_level(self, payload: dict[str, Any]) -> dict[str, Any]:
        self._write("set_inventory_level", payload)
        variant = self._variant_for_item(payload["inventory_item_id"])
        variant["inventory_quantity"] = payload["available"]
        return dict(payload)

    # GraphQL bulk writes

    def _node(self, variant_id: str) -> dict[str, Any]:
        node = {"id": to_gid("ProductVariant", variant_id)}
        item_id = (self.variants.get(variant_id) or {}).get("inventory_item_id")
        if item_id:
            node["inventoryItem"] = {"id": to_gid("InventoryItem", item_id)}
        return node

    def bulk_create_variants(
        self, product_id: str, variants: list[dict[str, Any]]
    ) -> dict[str, Any]:
        self._write("bulk_create_variants", product_id, variants)
        created = []
        for body in variants:
            variant_id = self._new_id()
            self.variants[variant_id] = {
                "id": variant_id,
                "product_id": product_id,
                "price": body.get("price"),
                "inventory_item_id": self._new_item_id(),
            }
            for level in body.get("inventoryQuantities") or []:
                self.variants[variant_id]["inventory_quantity"] = level[
                    "availableQuantity"
                ]
            created.append(self._node(variant_id))
        return {"productVariants": created, "userErrors": []}

    def bulk_update_variants(
        self, product_id: str, variants: list[dict[str, Any]]
    ) -> dict[str, Any]:
        self._write("bulk_update_variants", product_id, variants)
        return {
            "productVariants": [
                self._node(from_gid(body["id"])) for body in variants
            ],
            "userErrors": [],
        }

    def bulk_delete_variants(
        self, product_id: str, variant_ids: list[str]
    ) -> dict[str, Any]:
        self._write("bulk_delete_variants", product_id, variant_ids)
        for variant_id in variant_ids:
            self.variants.pop(variant_id, None)
        return {"product": {"id": product_id}, "userErrors": []}


# ---------------------------------------------------------------------------
# Mirror files
# ---------------------------------------------------------------------------

_FILE_NAMES = {
    EntityType.PRODUCT: "products.csv",
    EntityType.VARIANT: "variants.csv",
}


class MirrorFiles:
    """Write and read mirror CSVs the way an operator edits them."""

    def __init__(self, mirror_dir: Path) -> None:
        self.dir = mirror_dir
        self._detector = ChangeDetector()

    def path(self, entity_type: EntityType) -> Path:
        return self.dir / _FILE_NAMES[entity_type]

    def hash_of(self, entity_type: EntityType, row: dict[str, Any]) -> str:
        fields = {k: v for k, v in row.items() if not k.startswith("_")}
        fields["id"] = fields.get("id") or "unsaved"
        record = RECORD_TYPES[entity_type](**fields)
        return self._detector.compute_hash(record)

    def write(
        self,
        entity_type: EntityType,
        rows: list[dict[str, Any]],
        synced: bool = False,
    ) -> Path:
        """Write *rows*; missing cells are blank.

        With ``synced=True`` every row without an explicit ``_hash`` gets
        the hash of its current content, as if it had just been synced.
        """
        self.dir.mkdir(parents=True, exist_ok=True)
        columns = record_columns(entity_type) + list(SYSTEM_COLUMNS)
        path = self.path(entity_type)
        with open(path, "w", encoding="utf-8", newline="") as fh:
            writer = csv.DictWriter(fh, fieldnames=columns)
            writer.writeheader()
            for row in rows:
                cells = dict(row)
                if synced and "_hash" not in cells:
                    cells["_hash"] = self.hash_of(entity_type, row)
                writer.writerow({c: cells.get(c, "") for c in columns})
        return path

    def read(self, entity_type: EntityType) -> list[dict[str, str]]:
        with open(self.path(entity_type), encoding="utf-8", newline="") as fh:
            return list(csv.DictReader(fh))

    def by_id(self, entity_type: EntityType) -> dict[str, dict[str, str]]:
        return {row["id"]: row for row in self.read(entity_type)}


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def make_config(tmp_path):
    """Factory for a Config rooted in tmp_path with no call spacing."""

    def factory(**sync_overrides: Any) -> Config:
        settings = SyncSettings(
            **{
                "mirror_dir": str(tmp_path / "mirror"),
                "state_dir": str(tmp_path / "state"),
                "rate_limit_delay_ms": 0,
                **sync_overrides,
            }
        )
        return Config(
            shop_domain="acme.myshopify.com",
            access_token="shpat_test",
            sync=settings,
        )

    return factory


@pytest.fixture
def config(make_config):
    return make_config()


@pytest.fixture
def fake_client():
    return FakeCatalogClient()


@pytest.fixture
def mirror_files(tmp_path):
    return MirrorFiles(tmp_path / "mirror")
