"""Commerce backend collaborators: catalog fetch, draft order creation, catalog cache.

Talks to the Shopify Admin REST API with httpx. Every non-success response or
transport failure is raised as UpstreamCatalogOrOrderError so callers have one
exception type to convert into a user-facing apology.
"""

from __future__ import annotations

import logging
import re
from dataclasses import asdict, dataclass, field
from typing import Any, Dict, List, Optional

import httpx

from .errors import UpstreamCatalogOrOrderError
from .session_store import SessionStore
from .utils import now_ms

logger = logging.getLogger("packageha.commerce")

API_VERSION = "2024-01"
ORDER_TAG = "studium-ai-generated"


@dataclass
class CatalogVariant:
    id: int
    title: str
    price: str


@dataclass
class CatalogItem:
    id: int
    title: str
    variants: List[CatalogVariant] = field(default_factory=list)


@dataclass
class CustomLineItem:
    title: str
    price: str
    quantity: int = 1


@dataclass
class DraftOrder:
    order_id: int
    admin_url: str
    invoice_url: Optional[str] = None


def clean_shop_domain(shop_url: str) -> str:
    """Strip the scheme and trailing slash from a shop URL."""
    return re.sub(r"/$", "", re.sub(r"^(\w+:|)//", "", shop_url.strip()))


def catalog_from_payload(products: List[Dict[str, Any]]) -> List[CatalogItem]:
    items: List[CatalogItem] = []
    for product in products:
        if not isinstance(product, dict) or product.get("id") is None:
            continue
        raw_variants = product.get("variants")
        variants = [
            CatalogVariant(id=variant["id"], title=str(variant.get("title", "")), price=str(variant.get("price", "")))
            for variant in (raw_variants if isinstance(raw_variants, list) else [])
            if isinstance(variant, dict) and variant.get("id") is not None
        ]
        items.append(CatalogItem(id=product["id"], title=str(product.get("title", "")), variants=variants))
    return items


def _json_body(response: httpx.Response, action: str) -> Dict[str, Any]:
    """Decode a 2xx Admin API body, raising UpstreamCatalogOrOrderError unless it is a JSON object."""
    try:
        body = response.json()
    except ValueError as exc:
        logger.error("%s failed reason=non_json_body status=%s", action, response.status_code)
        raise UpstreamCatalogOrOrderError(f"Shopify returned a non-JSON body for {action}") from exc
    if not isinstance(body, dict):
        logger.error("%s failed reason=unexpected_body type=%s", action, type(body).__name__)
        raise UpstreamCatalogOrOrderError(f"Shopify returned an unexpected body for {action}")
    return body


class CatalogProvider:
    """Fetches the active package catalog from the shop."""

    def __init__(self, timeout: float = 30.0) -> None:
        self._timeout = timeout

    def fetch_active_catalog(self, shop_url: str, access_token: str) -> List[CatalogItem]:
        """Purpose: Fetch active products with their variants.
        Inputs/Outputs: Inputs are shop URL and access token; output is a CatalogItem list.
        Side Effects / State: One HTTP GET against the Admin API.
        Dependencies: httpx.Client.
        Failure Modes: Non-2xx, transport errors and non-object bodies raise
            UpstreamCatalogOrOrderError.
        If Removed: Discovery has nothing to match against.
        Testing Notes: Patch httpx.Client and verify status handling.
        """
        # Request active products only; the first page is enough for matching.
        shop = clean_shop_domain(shop_url)
        url = f"https://{shop}/admin/api/{API_VERSION}/products.json"
        headers = {"X-Shopify-Access-Token": access_token, "Content-Type": "application/json"}
        try:
            with httpx.Client(timeout=self._timeout) as client:
                response = client.get(url, headers=headers, params={"status": "active", "limit": 50})
        except httpx.HTTPError as exc:
            logger.error("catalog fetch failed shop=%s error=%s", shop, exc)
            raise UpstreamCatalogOrOrderError(f"Failed to fetch products: {exc}") from exc
        if response.status_code >= 300:
            logger.error("catalog fetch failed shop=%s status=%s", shop, response.status_code)
            raise UpstreamCatalogOrOrderError(
                f"Shopify API Error {response.status_code}: {response.text}", status_code=response.status_code
            )
        products = _json_body(response, "catalog fetch").get("products")
        return catalog_from_payload(products if isinstance(products, list) else [])


class OrderService:
    """Creates draft orders that carry the collected project brief."""

    def __init__(self, timeout: float = 30.0) -> None:
        self._timeout = timeout

    def create_order(
        self,
        shop_url: str,
        access_token: str,
        variant_id: Optional[int],
        quantity: int,
        note: str = "",
        custom_line_items: Optional[List[CustomLineItem]] = None,
    ) -> DraftOrder:
        """Purpose: Create a draft order from a variant and/or custom line items.
        Inputs/Outputs: Inputs are shop credentials, optional variant id, quantity,
            brief note and custom items; output is a DraftOrder.
        Side Effects / State: One HTTP POST against the Admin API.
        Dependencies: httpx.Client.
        Failure Modes: Zero line items raise before any network call; non-2xx, transport
            errors, non-object bodies and a missing order id raise UpstreamCatalogOrOrderError.
        If Removed: Flows cannot complete.
        Testing Notes: Verify no HTTP client is created for an empty order.
        """
        # Build line items first so an empty order never reaches the network.
        line_items: List[Dict[str, Any]] = []
        if variant_id:
            line_items.append({"variant_id": variant_id, "quantity": quantity})
        for item in custom_line_items or []:
            line_items.append(asdict(item))
        if not line_items:
            raise UpstreamCatalogOrOrderError("At least one line item (package variant or custom item) is required")

        shop = clean_shop_domain(shop_url)
        url = f"https://{shop}/admin/api/{API_VERSION}/draft_orders.json"
        payload = {"draft_order": {"line_items": line_items, "note": note.strip(), "tags": ORDER_TAG}}
        headers = {"X-Shopify-Access-Token": access_token, "Content-Type": "application/json"}
        try:
            with httpx.Client(timeout=self._timeout) as client:
                response = client.post(url, headers=headers, json=payload)
        except httpx.HTTPError as exc:
            logger.error("draft order failed shop=%s error=%s", shop, exc)
            raise UpstreamCatalogOrOrderError(f"Failed to create draft order: {exc}") from exc
        if response.status_code >= 300:
            logger.error("draft order failed shop=%s status=%s", shop, response.status_code)
            raise UpstreamCatalogOrOrderError(
                f"Shopify API Error {response.status_code}: {response.text}", status_code=response.status_code
            )
        draft = _json_body(response, "draft order").get("draft_order")
        if not isinstance(draft, dict):
            draft = {}
        order_id = draft.get("id")
        if not order_id:
            raise UpstreamCatalogOrOrderError("No draft order ID returned from Shopify")
        logger.info("draft order created shop=%s order_id=%s", shop, order_id)
        return DraftOrder(
            order_id=order_id,
            admin_url=f"https://{shop}/admin/draft_orders/{order_id}",
            invoice_url=draft.get("invoice_url"),
        )


class Storefront:
    """Shop-bound facade: per-session catalog cache plus draft order creation."""

    def __init__(
        self,
        provider: CatalogProvider,
        orders: OrderService,
        store: SessionStore,
        shop_url: str,
        access_token: str,
        ttl_ms: int = 5 * 60 * 1000,
    ) -> None:
        self._provider = provider
        self._orders = orders
        self._store = store
        self._shop_url = shop_url
        self._access_token = access_token
        self._ttl_ms = ttl_ms

    def get_catalog(self, session_id: str) -> List[CatalogItem]:
        """Purpose: Return the session's cached catalog, refreshing it when expired.
        Inputs/Outputs: Input is the session id; output is a CatalogItem list.
        Side Effects / State: Rewrites the cache entry and its timestamp on refresh.
        Dependencies: CatalogProvider and SessionStore.
        Failure Modes: Provider errors propagate as UpstreamCatalogOrOrderError.
        If Removed: Every discovery turn refetches the catalog.
        Testing Notes: Freeze now_ms and verify one fetch inside the TTL window.
        """
        # Serve from cache while fresh, otherwise fetch and rewrite both keys.
        cache_key = f"{session_id}:products_cache"
        stamp_key = f"{session_id}:products_cache_timestamp"
        cached = self._store.get(cache_key)
        stamp = self._store.get(stamp_key)
        if isinstance(cached, list) and isinstance(stamp, (int, float)) and now_ms() - stamp < self._ttl_ms:
            logger.debug("catalog cache hit session=%s", session_id)
            return catalog_from_payload(cached)

        logger.info("catalog cache refresh session=%s", session_id)
        items = self._provider.fetch_active_catalog(self._shop_url, self._access_token)
        self._store.put(cache_key, [asdict(item) for item in items])
        self._store.put(stamp_key, now_ms())
        return items

    def create_order(
        self,
        variant_id: Optional[int],
        quantity: int,
        note: str,
        custom_line_items: Optional[List[CustomLineItem]] = None,
    ) -> DraftOrder:
        return self._orders.create_order(self._shop_url, self._access_token, variant_id, quantity, note, custom_line_items)
