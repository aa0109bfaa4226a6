"""Catalog records, per-entity adapters and the tabular mirror."""

from .entities import (
    EntityAdapter,
    ProductAdapter,
    VariantAdapter,
    default_adapters,
    validate_record,
)
from .mirror import Mirror, MirrorStore
from .models import (
    CatalogRecord,
    EntityType,
    MirrorRow,
    Product,
    RecordMeta,
    RowAction,
    Variant,
    is_provisional,
)

__all__ = [
    "CatalogRecord",
    "EntityAdapter",
    "EntityType",
    "Mirror",
    "MirrorRow",
    "MirrorStore",
    "Product",
    "ProductAdapter",
    "RecordMeta",
    "RowAction",
    "Variant",
    "VariantAdapter",
    "default_adapters",
    "is_provisional",
    "validate_record",
]
