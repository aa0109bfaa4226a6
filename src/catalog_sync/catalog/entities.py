"""Per-entity adapters between the remote API and typed records.

Each adapter implements the small ``EntityAdapter`` interface:

- ``fetch(client, updated_at_min)``: read the remote snapshot
- ``transform(raw)``: remote JSON to a typed record
- ``required_fields()``: fields that must be non-blank before a push
- ``field_validations()``: per-field checks returning an error or ``None``
- ``to_payload(record)`` / ``to_bulk_input(record)``: typed record to
  REST / GraphQL write bodies

Variants add ``to_inventory_writes``: stock levels and unit cost live on the
remote inventory item, not on the variant, and are written separately.

Adapters are composed into the orchestrator by entity type; there is no
shared base class.
"""

from __future__ import annotations

import re
from decimal import Decimal, InvalidOperation
from typing import Any, Callable, Protocol

from ..core.client import CatalogClient, to_gid
from .models import CatalogRecord, EntityType, Product, Variant

FieldCheck = Callable[[Any], "str | None"]

_HANDLE_PATTERN = re.compile(r"^[a-z0-9]+(?:-[a-z0-9]+)*$")


class EntityAdapter(Protocol):
    entity_type: EntityType

    def fetch(
        self, client: CatalogClient, updated_at_min: str | None = None
    ) -> list[dict[str, Any]]: ...

    def transform(self, raw: dict[str, Any]) -> CatalogRecord: ...

    def required_fields(self) -> tuple[str, ...]: ...

    def field_validations(self) -> dict[str, FieldCheck]: ...

    def to_payload(self, record: CatalogRecord) -> dict[str, Any]: ...


# ----------------------------------------------------------------------
# Field checks
# ----------------------------------------------------------------------


def _one_of(*allowed: str) -> FieldCheck:
    def check(value: Any) -> str | None:
        if value in (None, ""):
            return None
        if str(value).lower() not in allowed:
            return f"must be one of {', '.join(allowed)}"
        return None

    return check


def _money(value: Any) -> str | None:
    if value in (None, ""):
        return None
    try:
        amount = Decimal(str(value))
    except InvalidOperation:
        return "must be a decimal amount"
    if amount < 0:
        return "must not be negative"
    return None


def _non_negative(value: Any) -> str | None:
    if value is not None and value < 0:
        return "must not be negative"
    return None


def _handle(value: Any) -> str | None:
    if value and not _HANDLE_PATTERN.match(value):
        return "must be lowercase letters, digits and hyphens"
    return None


def validate_record(adapter: EntityAdapter, record: CatalogRecord) -> list[str]:
    """Return human-readable problems with *record*; empty when valid."""
    problems: list[str] = []
    for name in adapter.required_fields():
        value = getattr(record, name, None)
        if value is None or (isinstance(value, str) and not value.strip()):
            problems.append(f"{name} is required")
    for name, check in adapter.field_validations().items():
        problem = check(getattr(record, name, None))
        if problem:
            problems.append(f"{name} {problem}")
    return problems


# ----------------------------------------------------------------------
# Products
# ----------------------------------------------------------------------


class ProductAdapter:
    entity_type = EntityType.PRODUCT

    def fetch(
        self, client: CatalogClient, updated_at_min: str | None = None
    ) -> list[dict[str, Any]]:
        return client.list_products(updated_at_min=updated_at_min)

    def transform(self, raw: dict[str, Any]) -> Product:
        return Product(
            id=raw["id"],
            title=raw.get("title"),
            handle=raw.get("handle"),
            body_html=raw.get("body_html"),
            vendor=raw.get("vendor"),
            product_type=raw.get("product_type"),
            tags=raw.get("tags"),
            status=raw.get("status"),
            published=bool(raw.get("published_at")),
            published_at=raw.get("published_at"),
            template_suffix=raw.get("template_suffix"),
            seo_title=raw.get("metafields_global_title_tag"),
            seo_description=raw.get("metafields_global_description_tag"),
            created_at=raw.get("created_at"),
            updated_at=raw.get("updated_at"),
        )

    def required_fields(self) -> tuple[str, ...]:
        return Product.REQUIRED_FIELDS

    def field_validations(self) -> dict[str, FieldCheck]:
        return {
            "status": _one_of("active", "draft", "archived"),
            "handle": _handle,
        }

    def to_payload(self, record: Product) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "title": record.title,
            "body_html": record.body_html,
            "vendor": record.vendor,
            "product_type": record.product_type,
            "tags": ", ".join(record.tags),
            "status": record.status,
            "published": record.published,
            "template_suffix": record.template_suffix or None,
            "metafields_global_title_tag": record.seo_title or None,
            "metafields_global_description_tag": record.seo_description
            or None,
        }
        if record.handle:
            payload["handle"] = record.handle
        return payload


# ----------------------------------------------------------------------
# Variants
# ----------------------------------------------------------------------

# Positional option names used when folding variants into bulk mutations
OPTION_NAMES = ("Title", "Option2", "Option3")


class VariantAdapter:
    entity_type = EntityType.VARIANT

    def fetch(
        self, client: CatalogClient, updated_at_min: str | None = None
    ) -> list[dict[str, Any]]:
        return client.list_variants(updated_at_min=updated_at_min)

    def transform(self, raw: dict[str, Any]) -> Variant:
        tracked = bool(raw.get("inventory_management"))
        return Variant(
            id=raw["id"],
            product_id=raw["product_id"],
            title=raw.get("title"),
            option1=raw.get("option1"),
            option2=raw.get("option2"),
            option3=raw.get("option3"),
            sku=raw.get("sku"),
            barcode=raw.get("barcode"),
            price=raw.get("price"),
            compare_at_price=raw.get("compare_at_price"),
            cost=raw.get("cost"),
            weight=raw.get("weight"),
            weight_unit=raw.get("weight_unit"),
            inventory_policy=raw.get("inventory_policy"),
            inventory_management=raw.get("inventory_management"),
            # Stock of untracked items has no level to write back to
            inventory_quantity=(
                raw.get("inventory_quantity") if tracked else None
            ),
            inventory_item_id=raw.get("inventory_item_id"),
            fulfillment_service=raw.get("fulfillment_service"),
            requires_shipping=raw.get("requires_shipping"),
            taxable=raw.get("taxable"),
            tax_code=raw.get("tax_code"),
            created_at=raw.get("created_at"),
            updated_at=raw.get("updated_at"),
        )

    def required_fields(self) -> tuple[str, ...]:
        return Variant.REQUIRED_FIELDS

    def field_validations(self) -> dict[str, FieldCheck]:
        return {
            "price": _money,
            "compare_at_price": _money,
            "cost": _money,
            "weight": _non_negative,
            "weight_unit": _one_of("g", "kg", "oz", "lb"),
            "inventory_policy": _one_of("deny", "continue"),
        }

    def to_payload(self, record: Variant) -> dict[str, Any]:
        """REST body; inventory quantity and cost live on the inventory item
        and are written by ``to_inventory_writes``."""
        payload: dict[str, Any] = {
            "title": record.title or None,
            "option1": record.option1 or None,
            "option2": record.option2 or None,
            "option3": record.option3 or None,
            "sku": record.sku,
            "barcode": record.barcode or None,
            "price": record.price,
            "compare_at_price": record.compare_at_price or None,
            "weight": record.weight,
            "weight_unit": record.weight_unit,
            "inventory_policy": record.inventory_policy,
            "inventory_management": record.inventory_management or None,
            "fulfillment_service": record.fulfillment_service,
            "requires_shipping": record.requires_shipping,
            "taxable": record.taxable,
        }
        if record.tax_code:
            payload["tax_code"] = record.tax_code
        return payload

    def to_inventory_writes(
        self,
        record: Variant,
        inventory_item_id: str,
        location_id: str | None,
        include_cost: bool = True,
    ) -> list[tuple[str, str, dict[str, Any]]]:
        """REST writes carrying stock and cost, as ``(method, endpoint, body)``.

        Cost is written through the inventory item; the quantity is set as
        the ``available`` level at *location_id*.  Bulk inputs already carry
        the cost, so bulk updates pass ``include_cost=False``.
        """
        writes: list[tuple[str, str, dict[str, Any]]] = []
        if include_cost and record.cost:
            writes.append(
                (
                    "PUT",
                    f"inventory_items/{inventory_item_id}.json",
                    {"cost": record.cost},
                )
            )
        if record.inventory_quantity is not None and location_id:
            writes.append(
                (
                    "POST",
                    "inventory_levels/set.json",
                    {
                        "location_id": location_id,
                        "inventory_item_id": inventory_item_id,
                        "available": record.inventory_quantity,
                    },
                )
            )
        return writes

    def to_bulk_input(
        self,
        record: Variant,
        include_id: bool,
        location_id: str | None = None,
    ) -> dict[str, Any]:
        """``ProductVariantsBulkInput`` for GraphQL bulk mutations.

        Initial stock (``inventoryQuantities``) is only accepted on create,
        so it is sent when *include_id* is false and *location_id* is set.
        """
        inventory_item: dict[str, Any] = {
            "sku": record.sku,
            "requiresShipping": record.requires_shipping,
            "tracked": bool(record.inventory_management),
        }
        if record.cost:
            inventory_item["cost"] = record.cost
        if record.weight is not None:
            inventory_item["measurement"] = {
                "weight": {
                    "value": record.weight,
                    "unit": _WEIGHT_UNITS.get(record.weight_unit, "KILOGRAMS"),
                }
            }

        body: dict[str, Any] = {
            "price": record.price,
            "compareAtPrice": record.compare_at_price or None,
            "barcode": record.barcode or None,
            "taxable": record.taxable,
            "inventoryPolicy": record.inventory_policy.upper(),
            "inventoryItem": inventory_item,
        }
        options = [
            {"optionName": name, "name": value}
            for name, value in zip(
                OPTION_NAMES, (record.option1, record.option2, record.option3)
            )
            if value
        ]
        if options:
            body["optionValues"] = options
        if include_id:
            body["id"] = to_gid("ProductVariant", record.id)
        elif record.inventory_quantity is not None and location_id:
            body["inventoryQuantities"] = [
                {
                    "availableQuantity": record.inventory_quantity,
                    "locationId": to_gid("Location", location_id),
                }
            ]
        return body


_WEIGHT_UNITS = {
    "g": "GRAMS",
    "kg": "KILOGRAMS",
    "oz": "OUNCES",
    "lb": "POUNDS",
}


def default_adapters() -> dict[EntityType, EntityAdapter]:
    """Adapter per entity type, in dependency order (parents first)."""
    return {
        EntityType.PRODUCT: ProductAdapter(),
        EntityType.VARIANT: VariantAdapter(),
    }
