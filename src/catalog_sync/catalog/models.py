"""Typed catalog records mirrored between the shop and the local table.

Records form a tagged union over ``kind``:

- ``Product``: parent entity, hashed over its descriptive fields.
- ``Variant``: child entity, hashed over option, price, inventory and SKU
  fields.

Each class declares ``HASH_FIELDS``, the allow-list of business fields that
participate in change detection.  Sync bookkeeping lives in ``RecordMeta``,
never on the record itself, so it can never leak into a hash.
"""

from __future__ import annotations

from enum import Enum
from typing import Annotated, ClassVar, Literal, Union

from pydantic import BaseModel, Field, field_validator

PROVISIONAL_PREFIX = "new-"


class EntityType(str, Enum):
    """Mirrored entity kinds."""

    PRODUCT = "product"
    VARIANT = "variant"


def is_provisional(record_id: str) -> bool:
    """Return True for ids assigned locally to rows not yet created remotely."""
    return record_id.startswith(PROVISIONAL_PREFIX)


def _blank_to_none(value):
    if isinstance(value, str) and not value.strip():
        return None
    return value


def _parse_bool(value):
    if isinstance(value, str):
        text = value.strip().lower()
        if not text:
            return None
        return text in ("true", "1", "yes", "y", "t")
    return value


class Product(BaseModel):
    """A parent catalog entity."""

    HASH_FIELDS: ClassVar[tuple[str, ...]] = (
        "title",
        "handle",
        "body_html",
        "vendor",
        "product_type",
        "tags",
        "status",
        "published",
        "template_suffix",
        "seo_title",
        "seo_description",
    )
    REQUIRED_FIELDS: ClassVar[tuple[str, ...]] = ("title",)

    kind: Literal["product"] = "product"
    id: str
    title: str = ""
    handle: str = ""
    body_html: str = ""
    vendor: str = ""
    product_type: str = ""
    tags: list[str] = Field(default_factory=list)
    status: str = "draft"
    published: bool = False
    published_at: str | None = None
    template_suffix: str = ""
    seo_title: str = ""
    seo_description: str = ""
    created_at: str | None = None
    updated_at: str | None = None

    @property
    def entity_type(self) -> EntityType:
        return EntityType.PRODUCT

    @property
    def parent_id(self) -> str | None:
        return None

    @field_validator("id", mode="before")
    @classmethod
    def _coerce_id(cls, value):
        return str(value)

    @field_validator("tags", mode="before")
    @classmethod
    def _split_tags(cls, value):
        if value is None:
            return []
        if isinstance(value, str):
            return [t.strip() for t in value.split(",") if t.strip()]
        return value

    @field_validator("published", mode="before")
    @classmethod
    def _coerce_published(cls, value):
        value = _parse_bool(value)
        return False if value is None else value

    @field_validator(
        "title",
        "handle",
        "body_html",
        "vendor",
        "product_type",
        "template_suffix",
        "seo_title",
        "seo_description",
        mode="before",
    )
    @classmethod
    def _none_to_empty(cls, value):
        return "" if value is None else value

    @field_validator("status", mode="before")
    @classmethod
    def _default_status(cls, value):
        return value or "draft"

    @field_validator("published_at", "created_at", "updated_at", mode="before")
    @classmethod
    def _blank_timestamps(cls, value):
        return _blank_to_none(value)


class Variant(BaseModel):
    """A child catalog entity belonging to one product."""

    HASH_FIELDS: ClassVar[tuple[str, ...]] = (
        "product_id",
        "title",
        "option1",
        "option2",
        "option3",
        "sku",
        "barcode",
        "price",
        "compare_at_price",
        "cost",
        "weight",
        "weight_unit",
        "inventory_policy",
        "inventory_management",
        "inventory_quantity",
        "fulfillment_service",
        "requires_shipping",
        "taxable",
        "tax_code",
    )
    REQUIRED_FIELDS: ClassVar[tuple[str, ...]] = ("product_id", "price")
    # Changes to these raise queue priority
    PRIORITY_FIELDS: ClassVar[tuple[str, ...]] = (
        "sku",
        "price",
        "compare_at_price",
        "inventory_quantity",
        "inventory_policy",
    )

    kind: Literal["variant"] = "variant"
    id: str
    product_id: str
    title: str = ""
    option1: str = ""
    option2: str = ""
    option3: str = ""
    sku: str = ""
    barcode: str = ""
    price: str = ""
    compare_at_price: str = ""
    cost: str = ""
    weight: float | None = None
    weight_unit: str = "kg"
    inventory_policy: str = "deny"
    inventory_management: str = ""
    inventory_quantity: int | None = None
    inventory_item_id: str | None = None
    fulfillment_service: str = "manual"
    requires_shipping: bool = True
    taxable: bool = True
    tax_code: str = ""
    created_at: str | None = None
    updated_at: str | None = None

    @property
    def entity_type(self) -> EntityType:
        return EntityType.VARIANT

    @property
    def parent_id(self) -> str | None:
        return self.product_id

    @field_validator("id", "product_id", mode="before")
    @classmethod
    def _coerce_ids(cls, value):
        return str(value)

    @field_validator("inventory_item_id", mode="before")
    @classmethod
    def _coerce_optional_id(cls, value):
        value = _blank_to_none(value)
        return None if value is None else str(value)

    @field_validator(
        "price", "compare_at_price", "cost", mode="before"
    )
    @classmethod
    def _money_to_text(cls, value):
        if value is None:
            return ""
        return str(value)

    @field_validator("created_at", "updated_at", mode="before")
    @classmethod
    def _blank_timestamps(cls, value):
        return _blank_to_none(value)

    @field_validator("weight", "inventory_quantity", mode="before")
    @classmethod
    def _blank_numbers(cls, value):
        return _blank_to_none(value)

    @field_validator("requires_shipping", "taxable", mode="before")
    @classmethod
    def _coerce_flags(cls, value):
        value = _parse_bool(value)
        return True if value is None else value

    @field_validator(
        "weight_unit", "inventory_policy", "fulfillment_service", mode="before"
    )
    @classmethod
    def _blank_to_default(cls, value, info):
        if _blank_to_none(value) is None:
            return cls.model_fields[info.field_name].default
        return value

    @field_validator(
        "title",
        "option1",
        "option2",
        "option3",
        "sku",
        "barcode",
        "inventory_management",
        "tax_code",
        mode="before",
    )
    @classmethod
    def _none_to_empty(cls, value):
        return "" if value is None else value


CatalogRecord = Annotated[Union[Product, Variant], Field(discriminator="kind")]

RECORD_TYPES: dict[EntityType, type[Product] | type[Variant]] = {
    EntityType.PRODUCT: Product,
    EntityType.VARIANT: Variant,
}


class RowAction(str, Enum):
    """Values accepted in the ``_action`` system column."""

    NONE = ""
    DELETE = "delete"
    SKIP = "skip"


class RecordMeta(BaseModel):
    """Sync bookkeeping stored beside, never inside, a record.

    Attributes:
        hash: Content hash at the last successful sync, or ``None`` if the
            record has never been synced.
        last_synced_at: ISO 8601 timestamp of the last successful sync.
        action: Pending row-level request (``delete``/``skip``).
        errors: Last error recorded for this row.
    """

    hash: str | None = None
    last_synced_at: str | None = None
    action: RowAction = RowAction.NONE
    errors: str = ""

    @field_validator("hash", "last_synced_at", mode="before")
    @classmethod
    def _blank(cls, value):
        return _blank_to_none(value)

    @field_validator("action", mode="before")
    @classmethod
    def _normalise_action(cls, value):
        if value is None:
            return ""
        if isinstance(value, RowAction):
            return value.value
        return str(value).strip().lower()


class MirrorRow(BaseModel):
    """One row of the tabular mirror: a record plus its metadata."""

    record: CatalogRecord
    meta: RecordMeta = Field(default_factory=RecordMeta)

    @property
    def key(self) -> tuple[EntityType, str]:
        return (self.record.entity_type, self.record.id)
