"""HTTP client for the remote catalog Admin API.

``CatalogClient`` wraps a ``requests.Session`` with:

* an embedded ``RateLimiter`` that spaces every outbound call and cools
  down after throttling responses,
* a single HTTP status to ``CatalogSyncError`` mapping,
* Link-header cursor pagination for collection reads,
* inventory item and inventory level writes (cost and stock),
* GraphQL bulk variant mutations.

The client never retries on its own; ``RetryManager`` owns retry policy.
"""

from __future__ import annotations

import logging
import re
import threading
import time
from typing import Any, Callable, Iterator

import requests

from ..config import Config, ShopCredentials
from ..errors import (
    AuthorizationError,
    CatalogSyncError,
    NetworkError,
    QuotaExceededError,
    ResourceNotFoundError,
    ThrottledError,
    ValidationError,
)

logger = logging.getLogger(__name__)

DEFAULT_RETRY_AFTER_SECONDS = 2.0

# Validation messages that really mean a plan limit was hit
_QUOTA_PATTERN = re.compile(
    r"variant creation limit|maximum number of variants|exceeded .*limit",
    re.IGNORECASE,
)

# Upper bound on ids per inventory_items.json request
_INVENTORY_ID_CHUNK = 100


class RateLimiter:
    """Serialise outbound calls with a minimum spacing.

    After a throttling response the spacing grows exponentially (a
    cool-down penalty) and decays again as calls succeed.

    Args:
        min_interval_ms: Minimum spacing between two calls.
        max_cooldown_ms: Upper bound for the cool-down penalty.
        clock: Monotonic clock in seconds.
        sleep: Sleep function in seconds.
    """

    def __init__(
        self,
        min_interval_ms: int = 500,
        max_cooldown_ms: int = 32000,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.min_interval_ms = min_interval_ms
        self.max_cooldown_ms = max_cooldown_ms
        self.cooldown_ms = 0
        self._clock = clock
        self._sleep = sleep
        self._last_call: float | None = None
        self._lock = threading.Lock()

    @property
    def interval_ms(self) -> int:
        """Current spacing: base interval plus any cool-down."""
        return self.min_interval_ms + self.cooldown_ms

    def acquire(self) -> float:
        """Block until the next call may start.

        Returns:
            Seconds slept.
        """
        with self._lock:
            waited = 0.0
            if self._last_call is not None:
                elapsed = self._clock() - self._last_call
                remaining = self.interval_ms / 1000.0 - elapsed
                if remaining > 0:
                    self._sleep(remaining)
                    waited = remaining
            self._last_call = self._clock()
            return waited

    def record_throttle(self, retry_after: float | None = None) -> None:
        """Grow the cool-down after a throttling response."""
        grown = max(self.cooldown_ms * 2, self.min_interval_ms or 100)
        if retry_after:
            grown = max(grown, int(retry_after * 1000))
        self.cooldown_ms = min(grown, self.max_cooldown_ms)
        logger.warning(
            "Throttled by remote API; call spacing now %dms", self.interval_ms
        )

    def record_success(self) -> None:
        """Decay the cool-down after a successful call."""
        if self.cooldown_ms:
            self.cooldown_ms //= 2
            if self.cooldown_ms < max(self.min_interval_ms, 1):
                self.cooldown_ms = 0


def _error_text(body: Any) -> str:
    """Flatten the ``errors`` member of an API error body."""
    if isinstance(body, dict):
        errors = body.get("errors", body.get("error", body))
    else:
        errors = body
    if isinstance(errors, dict):
        parts = []
        for field_name, messages in errors.items():
            if isinstance(messages, list):
                messages = ", ".join(str(m) for m in messages)
            parts.append(f"{field_name}: {messages}")
        return "; ".join(parts)
    if isinstance(errors, list):
        return "; ".join(str(e) for e in errors)
    return str(errors)


def error_from_response(response: requests.Response) -> CatalogSyncError:
    """Map a non-2xx response to the error taxonomy."""
    status = response.status_code
    try:
        detail = _error_text(response.json())
    except ValueError:
        detail = response.text[:500]
    message = f"HTTP {status}: {detail}" if detail else f"HTTP {status}"

    if status == 429:
        raw = response.headers.get("Retry-After")
        try:
            retry_after = float(raw) if raw else DEFAULT_RETRY_AFTER_SECONDS
        except ValueError:
            retry_after = DEFAULT_RETRY_AFTER_SECONDS
        return ThrottledError(message, retry_after=retry_after)
    if status in (401, 403):
        return AuthorizationError(message, status)
    if status == 404:
        return ResourceNotFoundError(message, status)
    if status == 402:
        return QuotaExceededError(message, status)
    if status in (400, 422):
        if _QUOTA_PATTERN.search(detail):
            return QuotaExceededError(message, status)
        return ValidationError(message, status)
    if status >= 500:
        return NetworkError(message, status)
    return ValidationError(message, status)


def to_gid(resource: str, record_id: str) -> str:
    """Return the GraphQL global id for a REST id."""
    return f"gid://shopify/{resource}/{record_id}"


def from_gid(gid: str) -> str:
    """Return the numeric REST id from a GraphQL global id."""
    return gid.rsplit("/", 1)[-1]


_BULK_CREATE = """
mutation productVariantsBulkCreate($productId: ID!, $variants: [ProductVariantsBulkInput!]!) {
  productVariantsBulkCreate(productId: $productId, variants: $variants) {
    productVariants { id sku inventoryItem { id } }
    userErrors { field message code }
  }
}
"""

_BULK_UPDATE = """
mutation productVariantsBulkUpdate($productId: ID!, $variants: [ProductVariantsBulkInput!]!) {
  productVariantsBulkUpdate(productId: $productId, variants: $variants) {
    productVariants { id sku inventoryItem { id } }
    userErrors { field message code }
  }
}
"""

_BULK_DELETE = """
mutation productVariantsBulkDelete($productId: ID!, $variantsIds: [ID!]!) {
  productVariantsBulkDelete(productId: $productId, variantsIds: $variantsIds) {
    product { id }
    userErrors { field message code }
  }
}
"""


class CatalogClient:
    """Rate-limited client for the catalog Admin API.

    Args:
        config: Runtime configuration.
        rate_limiter: Limiter shared by every call; built from
            ``config.sync.rate_limit_delay_ms`` when omitted.
        credentials: Credential provider hook; defaults to
            ``config.credentials``.
        session: Pre-built ``requests.Session`` (tests).
    """

    def __init__(
        self,
        config: Config,
        rate_limiter: RateLimiter | None = None,
        credentials: Callable[[], ShopCredentials] | None = None,
        session: requests.Session | None = None,
    ) -> None:
        self.config = config
        self.rate_limiter = rate_limiter or RateLimiter(
            min_interval_ms=config.sync.rate_limit_delay_ms,
            max_cooldown_ms=config.sync.backoff_max_ms,
        )
        self._credentials_hook = credentials or config.credentials
        self._credentials: ShopCredentials | None = None
        self._session = session
        self._location_id: str | None = None

    # ------------------------------------------------------------------
    # Plumbing
    # ------------------------------------------------------------------

    @property
    def credentials(self) -> ShopCredentials:
        if self._credentials is None:
            self._credentials = self._credentials_hook()
        return self._credentials

    @property
    def base_url(self) -> str:
        creds = self.credentials
        return f"https://{creds.shop_domain}/admin/api/{creds.api_version}/"

    def _get_session(self) -> requests.Session:
        if self._session is None:
            session = requests.Session()
            session.headers.update(
                {
                    "X-Shopify-Access-Token": self.credentials.access_token,
                    "Content-Type": "application/json",
                    "Accept": "application/json",
                }
            )
            self._session = session
        return self._session

    def _send(
        self,
        method: str,
        url: str,
        params: dict[str, Any] | None = None,
        payload: dict[str, Any] | None = None,
    ) -> requests.Response:
        """Issue one rate-limited request and map failures to errors."""
        self.rate_limiter.acquire()
        logger.debug("%s %s", method, url)
        try:
            response = self._get_session().request(
                method,
                url,
                params=params,
                json=payload,
                timeout=(10, self.config.timeout_seconds),
            )
        except (requests.ConnectionError, requests.Timeout) as exc:
            raise NetworkError(f"{method} {url} failed: {exc}") from exc

        if response.status_code == 429:
            error = error_from_response(response)
            self.rate_limiter.record_throttle(error.retry_after)
            raise error
        if response.status_code >= 400:
            error = error_from_response(response)
            logger.debug("API error on %s %s: %s", method, url, error)
            raise error

        self.rate_limiter.record_success()
        return response

    def request(
        self,
        method: str,
        endpoint: str,
        params: dict[str, Any] | None = None,
        payload: dict[str, Any] | None = None,
    ) -> dict[str, Any]:
        """Call ``endpoint`` (relative to the API root) and decode JSON."""
        response = self._send(method, self.base_url + endpoint, params, payload)
        if not response.content:
            return {}
        return response.json()

    def paginate(
        self,
        endpoint: str,
        key: str,
        params: dict[str, Any] | None = None,
    ) -> Iterator[list[dict[str, Any]]]:
        """Yield pages of ``key`` following ``Link: rel="next"`` cursors.

        The next-page URL already carries the cursor and limit, so no other
        query parameters are resent after the first page.
        """
        url: str | None = self.base_url + endpoint
        query = dict(params or {})
        query.setdefault("limit", self.config.sync.page_size)
        while url:
            response = self._send("GET", url, params=query)
            page = response.json().get(key, [])
            yield page
            url = response.links.get("next", {}).get("url")
            query = None

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def test_connection(self) -> dict[str, Any]:
        """Read ``shop.json``; raises on failure.

        Returns:
            The ``shop`` object (name, domain, plan, ...).
        """
        shop = self.request("GET", "shop.json").get("shop", {})
        logger.info(
            "Connected to %s (%s)", shop.get("name"), shop.get("domain")
        )
        return shop

    def list_products(
        self,
        fields: str | None = None,
        updated_at_min: str | None = None,
    ) -> list[dict[str, Any]]:
        """Return every product, following pagination."""
        params: dict[str, Any] = {}
        if fields:
            params["fields"] = fields
        if updated_at_min:
            params["updated_at_min"] = updated_at_min
        products: list[dict[str, Any]] = []
        for page in self.paginate("products.json", "products", params):
            products.extend(page)
            logger.debug("Fetched %d products so far", len(products))
        return products

    def list_variants(
        self, updated_at_min: str | None = None
    ) -> list[dict[str, Any]]:
        """Return every variant, each tagged with its ``product_id``.

        The unit ``cost`` lives on the inventory item and is merged in.
        """
        variants: list[dict[str, Any]] = []
        for product in self.list_products(
            fields="id,variants", updated_at_min=updated_at_min
        ):
            for variant in product.get("variants") or []:
                variant = dict(variant)
                variant["product_id"] = product["id"]
                variants.append(variant)

        item_ids = [
            str(v["inventory_item_id"])
            for v in variants
            if v.get("inventory_item_id")
        ]
        costs = {
            str(item["id"]): item.get("cost")
            for item in self.list_inventory_items(item_ids)
        }
        for variant in variants:
            item_id = str(variant.get("inventory_item_id") or "")
            if item_id in costs:
                variant["cost"] = costs[item_id]
        return variants

    def list_inventory_items(
        self, inventory_item_ids: list[str]
    ) -> list[dict[str, Any]]:
        """Return inventory items by id, at most 100 ids per request."""
        items: list[dict[str, Any]] = []
        for start in range(0, len(inventory_item_ids), _INVENTORY_ID_CHUNK):
            chunk = inventory_item_ids[start : start + _INVENTORY_ID_CHUNK]
            for page in self.paginate(
                "inventory_items.json",
                "inventory_items",
                {"ids": ",".join(chunk)},
            ):
                items.extend(page)
        return items

    def list_locations(self) -> list[dict[str, Any]]:
        return self.request("GET", "locations.json").get("locations", [])

    def primary_location_id(self) -> str | None:
        """Location whose ``available`` level mirrors a variant's stock.

        ``sync.inventory_location_id`` wins; otherwise the shop's primary
        location, falling back to the first active location.  Cached for
        the lifetime of the client.
        """
        if self._location_id is None:
            configured = self.config.sync.inventory_location_id
            if configured:
                self._location_id = str(configured)
            else:
                shop = self.request("GET", "shop.json").get("shop", {})
                location_id = shop.get("primary_location_id")
                if not location_id:
                    active = [
                        loc
                        for loc in self.list_locations()
                        if loc.get("active", True)
                    ]
                    location_id = active[0]["id"] if active else None
                if location_id:
                    self._location_id = str(location_id)
            logger.debug("Inventory location: %s", self._location_id)
        return self._location_id

    # ------------------------------------------------------------------
    # Writes (REST)
    # ------------------------------------------------------------------

    def create_product(self, payload: dict[str, Any]) -> dict[str, Any]:
        return self.request(
            "POST", "products.json", payload={"product": payload}
        )["product"]

    def update_product(
        self, product_id: str, payload: dict[str, Any]
    ) -> dict[str, Any]:
        return self.request(
            "PUT",
            f"products/{product_id}.json",
            payload={"product": {"id": product_id, **payload}},
        )["product"]

    def delete_product(self, product_id: str) -> None:
        self.request("DELETE", f"products/{product_id}.json")

    def create_variant(
        self, product_id: str, payload: dict[str, Any]
    ) -> dict[str, Any]:
        return self.request(
            "POST",
            f"products/{product_id}/variants.json",
            payload={"variant": payload},
        )["variant"]

    def update_variant(
        self, variant_id: str, payload: dict[str, Any]
    ) -> dict[str, Any]:
        return self.request(
            "PUT",
            f"variants/{variant_id}.json",
            payload={"variant": {"id": variant_id, **payload}},
        )["variant"]

    def delete_variant(self, product_id: str, variant_id: str) -> None:
        self.request(
            "DELETE", f"products/{product_id}/variants/{variant_id}.json"
        )

    def update_inventory_item(
        self, inventory_item_id: str, payload: dict[str, Any]
    ) -> dict[str, Any]:
        return self.request(
            "PUT",
            f"inventory_items/{inventory_item_id}.json",
            payload={"inventory_item": {"id": inventory_item_id, **payload}},
        )["inventory_item"]

    def set_inventory_level(self, payload: dict[str, Any]) -> dict[str, Any]:
        """Set the ``available`` quantity of one item at one location.

        Args:
            payload: ``{"location_id", "inventory_item_id", "available"}``.
        """
        return self.request(
            "POST", "inventory_levels/set.json", payload=payload
        )["inventory_level"]

    # ------------------------------------------------------------------
    # Writes (GraphQL bulk)
    # ------------------------------------------------------------------

    def graphql(
        self, query: str, variables: dict[str, Any] | None = None
    ) -> dict[str, Any]:
        """Run a GraphQL operation and return its ``data`` member.

        Raises:
            ThrottledError: When the cost-based limiter rejected the call.
            ValidationError: For any other top-level GraphQL error.
        """
        response = self._send(
            "POST",
            self.base_url + "graphql.json",
            payload={"query": query, "variables": variables or {}},
        )
        body = response.json()
        errors = body.get("errors")
        if errors:
            codes = {
                (e.get("extensions") or {}).get("code")
                for e in errors
                if isinstance(e, dict)
            }
            message = _error_text({"errors": [
                e.get("message", e) if isinstance(e, dict) else e
                for e in errors
            ]})
            if "THROTTLED" in codes:
                self.rate_limiter.record_throttle()
                raise ThrottledError(
                    f"GraphQL throttled: {message}",
                    retry_after=DEFAULT_RETRY_AFTER_SECONDS,
                )
            if "ACCESS_DENIED" in codes:
                raise AuthorizationError(f"GraphQL: {message}", 403)
            raise ValidationError(f"GraphQL: {message}")
        return body.get("data") or {}

    def bulk_create_variants(
        self, product_id: str, variants: list[dict[str, Any]]
    ) -> dict[str, Any]:
        """Create several variants of one product in one call.

        Returns:
            ``{"productVariants": [...], "userErrors": [...]}``
        """
        data = self.graphql(
            _BULK_CREATE,
            {"productId": to_gid("Product", product_id), "variants": variants},
        )
        return data.get("productVariantsBulkCreate") or {}

    def bulk_update_variants(
        self, product_id: str, variants: list[dict[str, Any]]
    ) -> dict[str, Any]:
        """Update several variants of one product in one call."""
        data = self.graphql(
            _BULK_UPDATE,
            {"productId": to_gid("Product", product_id), "variants": variants},
        )
        return data.get("productVariantsBulkUpdate") or {}

    def bulk_delete_variants(
        self, product_id: str, variant_ids: list[str]
    ) -> dict[str, Any]:
        """Delete several variants of one product in one call."""
        data = self.graphql(
            _BULK_DELETE,
            {
                "productId": to_gid("Product", product_id),
                "variantsIds": [
                    to_gid("ProductVariant", v) for v in variant_ids
                ],
            },
        )
        return data.get("productVariantsBulkDelete") or {}
