"""Tests for catalog.entities -- transforms, validation and write bodies."""

import pytest

from catalog_sync.catalog.entities import (
    ProductAdapter,
    VariantAdapter,
    default_adapters,
    validate_record,
)
from catalog_sync.catalog.models import EntityType, Product, Variant


@pytest.fixture
def products():
    return ProductAdapter()


@pytest.fixture
def variants():
    return VariantAdapter()


class TestTransform:
    def test_product_from_remote(self, products):
        record = products.transform(
            {
                "id": 632910392,
                "title": "IPod Nano",
                "handle": "ipod-nano",
                "tags": "Emotive, Flash Memory",
                "status": "active",
                "published_at": "2026-01-01T00:00:00Z",
                "metafields_global_title_tag": "Nano",
                "body_html": None,
            }
        )
        assert record.id == "632910392"
        assert record.tags == ["Emotive", "Flash Memory"]
        assert record.published is True
        assert record.seo_title == "Nano"
        assert record.body_html == ""

    def test_unpublished_product(self, products):
        record = products.transform({"id": 1, "title": "Draft", "status": None})
        assert record.published is False
        assert record.status == "draft"

    def test_variant_from_remote(self, variants):
        record = variants.transform(
            {
                "id": 808950810,
                "product_id": 632910392,
                "price": "199.00",
                "sku": "IPOD2008PINK",
                "weight": 0.2,
                "weight_unit": None,
                "inventory_management": "shopify",
                "inventory_quantity": 10,
                "requires_shipping": None,
            }
        )
        assert record.id == "808950810"
        assert record.product_id == "632910392"
        assert record.weight_unit == "kg"
        assert record.inventory_quantity == 10
        assert record.requires_shipping is True

    def test_untracked_variant_drops_stock(self, variants):
        record = variants.transform(
            {
                "id": 1,
                "product_id": 2,
                "price": "5.00",
                "inventory_management": None,
                "inventory_quantity": -3,
            }
        )
        assert record.inventory_management == ""
        assert record.inventory_quantity is None

    def test_blank_enums_fall_back_to_defaults(self, variants):
        record = variants.transform(
            {
                "id": 1,
                "product_id": 2,
                "price": "5.00",
                "weight_unit": "",
                "inventory_policy": None,
                "fulfillment_service": "  ",
            }
        )
        assert record.weight_unit == "kg"
        assert record.inventory_policy == "deny"
        assert record.fulfillment_service == "manual"

    def test_default_adapters_parents_first(self):
        assert list(default_adapters()) == [EntityType.PRODUCT, EntityType.VARIANT]


class TestValidation:
    def test_valid_records(self, products, variants):
        assert validate_record(products, Product(id="1", title="Shirt")) == []
        assert (
            validate_record(
                variants, Variant(id="1", product_id="1", price="9.99")
            )
            == []
        )

    def test_required_fields(self, products, variants):
        assert validate_record(products, Product(id="1", title="  ")) == [
            "title is required"
        ]
        assert validate_record(variants, Variant(id="1", product_id="1")) == [
            "price is required"
        ]

    @pytest.mark.parametrize(
        "fields,problem",
        [
            ({"price": "abc"}, "price must be a decimal amount"),
            ({"price": "-1"}, "price must not be negative"),
            ({"compare_at_price": "-5"}, "compare_at_price must not be negative"),
            ({"weight": -0.5}, "weight must not be negative"),
            ({"weight_unit": "stone"}, "weight_unit must be one of g, kg, oz, lb"),
            ({"inventory_policy": "maybe"}, "inventory_policy must be one of deny, continue"),
        ],
    )
    def test_variant_field_checks(self, variants, fields, problem):
        record = Variant(id="1", product_id="1", **{"price": "1.00", **fields})
        assert validate_record(variants, record) == [problem]

    @pytest.mark.parametrize(
        "fields,problem",
        [
            ({"status": "live"}, "status must be one of active, draft, archived"),
            ({"handle": "Not A Handle"}, "handle must be lowercase letters, digits and hyphens"),
        ],
    )
    def test_product_field_checks(self, products, fields, problem):
        record = Product(id="1", title="Shirt", **fields)
        assert validate_record(products, record) == [problem]


class TestPayloads:
    def test_product_payload(self, products):
        payload = products.to_payload(
            Product(
                id="1",
                title="Shirt",
                tags=["linen", "summer"],
                handle="shirt",
                seo_title="Linen shirt",
            )
        )
        assert payload["tags"] == "linen, summer"
        assert payload["handle"] == "shirt"
        assert payload["metafields_global_title_tag"] == "Linen shirt"
        assert payload["metafields_global_description_tag"] is None
        assert "id" not in payload

    def test_product_payload_omits_blank_handle(self, products):
        assert "handle" not in products.to_payload(Product(id="1", title="A"))

    def test_variant_payload(self, variants):
        payload = variants.to_payload(
            Variant(id="1", product_id="9", price="5.00", option1="Red")
        )
        assert payload["price"] == "5.00"
        assert payload["option1"] == "Red"
        assert payload["option2"] is None
        assert "inventory_quantity" not in payload
        assert "tax_code" not in payload

    def test_bulk_input(self, variants):
        body = variants.to_bulk_input(
            Variant(
                id="11",
                product_id="9",
                price="5.00",
                sku="SH-1",
                cost="2.50",
                weight=300,
                weight_unit="g",
                inventory_policy="continue",
                inventory_management="shopify",
                option1="Red",
                option2="L",
            ),
            include_id=True,
        )
        assert body["id"] == "gid://shopify/ProductVariant/11"
        assert body["inventoryPolicy"] == "CONTINUE"
        assert body["optionValues"] == [
            {"optionName": "Title", "name": "Red"},
            {"optionName": "Option2", "name": "L"},
        ]
        item = body["inventoryItem"]
        assert item["sku"] == "SH-1"
        assert item["cost"] == "2.50"
        assert item["tracked"] is True
        assert item["measurement"] == {"weight": {"value": 300.0, "unit": "GRAMS"}}

    def test_bulk_input_for_create_has_no_id(self, variants):
        body = variants.to_bulk_input(
            Variant(id="new-1", product_id="9", price="5.00"), include_id=False
        )
        assert "id" not in body
        assert "optionValues" not in body
        assert "measurement" not in body["inventoryItem"]

    def test_variant_payload_never_sends_blank_enums(self, variants):
        # Blank cells typed into the mirror
        record = Variant(
            id="1",
            product_id="9",
            price="5.00",
            weight_unit="",
            inventory_policy="",
            fulfillment_service="",
        )
        payload = variants.to_payload(record)
        assert payload["weight_unit"] == "kg"
        assert payload["inventory_policy"] == "deny"
        assert payload["fulfillment_service"] == "manual"
        body = variants.to_bulk_input(record, include_id=True)
        assert body["inventoryPolicy"] == "DENY"

    def test_bulk_create_carries_initial_stock(self, variants):
        record = Variant(
            id="new-1", product_id="9", price="5.00", inventory_quantity=12
        )
        body = variants.to_bulk_input(record, include_id=False, location_id="7001")
        assert body["inventoryQuantities"] == [
            {
                "availableQuantity": 12,
                "locationId": "gid://shopify/Location/7001",
            }
        ]
        update = variants.to_bulk_input(
            record.model_copy(update={"id": "11"}),
            include_id=True,
            location_id="7001",
        )
        assert "inventoryQuantities" not in update


class TestInventoryWrites:
    def test_cost_and_stock(self, variants):
        record = Variant(
            id="11",
            product_id="9",
            price="5.00",
            cost="2.50",
            inventory_quantity=0,
        )
        assert variants.to_inventory_writes(record, "4011", "7001") == [
            ("PUT", "inventory_items/4011.json", {"cost": "2.50"}),
            (
                "POST",
                "inventory_levels/set.json",
                {
                    "location_id": "7001",
                    "inventory_item_id": "4011",
                    "available": 0,
                },
            ),
        ]

    def test_cost_left_to_bulk_input(self, variants):
        record = Variant(id="11", product_id="9", price="5.00", cost="2.50")
        assert (
            variants.to_inventory_writes(record, "4011", None, include_cost=False)
            == []
        )

    def test_no_location_no_level(self, variants):
        record = Variant(
            id="11", product_id="9", price="5.00", inventory_quantity=4
        )
        assert variants.to_inventory_writes(record, "4011", None) == []
