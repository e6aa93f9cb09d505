"""
Shopify Admin API service (per-tenant store credentials)
"""
import logging
from typing import Any, Optional

import httpx

from oms.config import settings
from oms.errors import UpstreamError
from oms.models import Client, PaymentMode, ShippingMethod
from oms.services.credentials import get_shopify_credentials
from oms.services.http_client import get_with_retry
from oms.services.shiprocket_service import DEFAULT_DIMENSIONS_CM, DEFAULT_WEIGHT_KG
from oms.services.status_mapper import map_commerce_status

logger = logging.getLogger(__name__)


def _shop_domain(store_id: str) -> str:
    # Handle both formats: "store.myshopify.com" or "store"
    store_id = (store_id or "").strip().rstrip("/")
    if store_id.startswith("https://"):
        store_id = store_id[len("https://"):]
    if not store_id.endswith(".myshopify.com"):
        store_id = f"{store_id}.myshopify.com"
    return store_id


def _to_float(value: Any) -> float:
    try:
        return float(value or 0)
    except (TypeError, ValueError):
        return 0.0


def transform_to_order(raw_order: dict, client: Client) -> dict:
    """
    Convert a Shopify order to the order shape used by OrderStorage.create_order.
    Shopify line items carry no parcel measurements, so dimensions and weight
    are defaults (10x10x10 cm, 0.5 kg) until someone annotates them.
    """
    order_id = str(raw_order.get("id") or "").strip()
    if not order_id:
        raise ValueError("Shopify order has no id")
    shipping_address = raw_order.get("shipping_address") or {}
    customer = raw_order.get("customer") or {}
    line_items = [li for li in (raw_order.get("line_items") or []) if isinstance(li, dict)]
    first_item = line_items[0] if line_items else {}
    total_quantity = sum(int(li.get("quantity") or 0) for li in line_items)

    name = (
        shipping_address.get("name")
        or f"{customer.get('first_name') or ''} {customer.get('last_name') or ''}".strip()
        or "Unknown Customer"
    )
    financial_status = raw_order.get("financial_status")

    return {
        "order_id": order_id,
        "client_id": client.client_id,
        "shopify_store_id": client.shopify_store_id,
        "fulfillment_status": map_commerce_status(raw_order.get("fulfillment_status"), financial_status),
        "pickup_date": None,
        "shipping_details": {
            "name": name,
            "phone_1": shipping_address.get("phone") or customer.get("phone") or "",
            "email": raw_order.get("email") or customer.get("email") or "",
            "address": ", ".join(
                part for part in (shipping_address.get("address1"), shipping_address.get("address2")) if part
            ),
            "pincode": shipping_address.get("zip") or "",
            "city": shipping_address.get("city") or "",
            "state": shipping_address.get("province") or "",
            "shipping_method": ShippingMethod.EXPRESS.value,
            "payment_mode": PaymentMode.PREPAID.value if financial_status == "paid" else PaymentMode.COD.value,
            "amount": _to_float(raw_order.get("total_price")),
        },
        "product_details": {
            "category": first_item.get("product_type") or "General",
            "product_name": first_item.get("title") or "Product",
            "quantity": total_quantity or 1,
            "dimensions": list(DEFAULT_DIMENSIONS_CM),
            "weight": DEFAULT_WEIGHT_KG,
        },
        "courier": None,
        "awb": None,
    }


class ShopifyService:
    def __init__(
        self,
        client: Client,
        timeout: Optional[float] = None,
        max_retries: Optional[int] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.client = client
        creds = get_shopify_credentials(client)
        self.shop = _shop_domain(creds["store_id"])
        self.base_url = f"https://{self.shop}/admin/api/{settings.SHOPIFY_API_VERSION}"
        self.headers = {"Content-Type": "application/json"}
        self.auth = None
        if creds["access_token"]:
            self.headers["X-Shopify-Access-Token"] = creds["access_token"]
        elif creds["api_key"] and creds["api_secret"]:
            # Private app credentials: HTTP basic auth with key/secret
            self.auth = (creds["api_key"], creds["api_secret"])
        self.timeout = timeout if timeout is not None else settings.HTTP_TIMEOUT_SEC
        self.max_retries = max_retries if max_retries is not None else settings.HTTP_MAX_RETRIES
        self.transport = transport
        # Set when the last fetch failed; an empty list alone does not mean "no orders"
        self.last_error: Optional[str] = None

    async def _get(self, url: str, params: Optional[dict] = None) -> httpx.Response:
        resp = await get_with_retry(
            url,
            params=params,
            headers=self.headers,
            auth=self.auth,
            timeout=self.timeout,
            max_retries=self.max_retries,
            transport=self.transport,
        )
        resp.raise_for_status()
        return resp

    async def _get_paginated(self, path: str, key: str, params: dict, max_pages: int) -> list:
        """Follow Link: rel="next" cursors up to max_pages."""
        items: list = []
        url: Optional[str] = f"{self.base_url}/{path}"
        page_params: Optional[dict] = params
        for _ in range(max_pages):
            resp = await self._get(url, params=page_params)
            data = resp.json()
            batch = data.get(key) if isinstance(data, dict) else None
            if not isinstance(batch, list):
                raise UpstreamError(f"Shopify {path}: response has no '{key}' list", status_code=resp.status_code)
            items.extend(batch)
            url = resp.links.get("next", {}).get("url")
            if not url:
                break
            # The next URL already carries page_info and limit
            page_params = None
        return items

    async def get_orders(
        self,
        created_at_min: Optional[str] = None,
        fulfillment_status: Optional[str] = None,
        limit: Optional[int] = None,
        max_pages: Optional[int] = None,
    ) -> list:
        """
        Get orders from Shopify, newest window only when created_at_min is given.
        Returns [] on any upstream failure so one tenant cannot abort a sync pass;
        the failure is logged and kept in last_error.
        """
        params = {"status": "any", "limit": limit or settings.SHOPIFY_PAGE_LIMIT}
        if created_at_min:
            params["created_at_min"] = created_at_min
        if fulfillment_status:
            params["fulfillment_status"] = fulfillment_status
        self.last_error = None
        try:
            return await self._get_paginated(
                "orders.json", "orders", params, max_pages or settings.SHOPIFY_MAX_PAGES
            )
        except (httpx.HTTPStatusError, UpstreamError, ValueError) as e:
            self.last_error = str(e)
            logger.warning("Shopify get_orders failed for %s: %s", self.client.client_id, e)
            return []

    async def get_products(self, limit: Optional[int] = None, max_pages: Optional[int] = None) -> list:
        """Get products from Shopify; same failure policy as get_orders"""
        params = {"limit": limit or settings.SHOPIFY_PAGE_LIMIT}
        self.last_error = None
        try:
            return await self._get_paginated(
                "products.json", "products", params, max_pages or settings.SHOPIFY_MAX_PAGES
            )
        except (httpx.HTTPStatusError, UpstreamError, ValueError) as e:
            self.last_error = str(e)
            logger.warning("Shopify get_products failed for %s: %s", self.client.client_id, e)
            return []

    def transform_to_order(self, raw_order: dict) -> dict:
        return transform_to_order(raw_order, self.client)

    async def test_connection(self) -> bool:
        """True when /shop.json answers with these credentials"""
        try:
            resp = await self._get(f"{self.base_url}/shop.json")
            data = resp.json()
            return isinstance(data, dict) and isinstance(data.get("shop"), dict)
        except (httpx.HTTPStatusError, UpstreamError, ValueError) as e:
            logger.warning("Shopify connection test failed for %s: %s", self.client.client_id, e)
            return False
