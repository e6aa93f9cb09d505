"""
Reconciliation engine: upserts Shopify/Shiprocket orders into local storage and
refreshes delivery status from Shiprocket tracking.

Failure isolation:
- one tenant failing never stops the all-tenant pass
- one AWB failing never stops the status refresh
- storage failures skip the record for this pass
"""
import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Awaitable, Callable, Optional

from oms.config import settings
from oms.errors import (
    AuthenticationError,
    CourierReconnectRequiredError,
    NotFoundError,
    OmsError,
    StorageError,
)
from oms.models import Client, Order, OrderStatus
from oms.services.shiprocket_service import (
    ShiprocketService,
    TrackingResult,
    get_shiprocket_client,
    shiprocket_order_to_order,
)
from oms.services.shopify_service import ShopifyService
from oms.services.storage import OrderStorage

logger = logging.getLogger(__name__)

DEFAULT_COURIER_KEY = "__default__"
# Upstream measurements are never real; once stored, keep what we have
STICKY_PRODUCT_KEYS = ("dimensions", "weight")


def _is_blank(value: Any) -> bool:
    if value is None:
        return True
    if isinstance(value, str):
        return not value.strip()
    if isinstance(value, (list, dict, tuple)):
        return len(value) == 0
    return False


def merge_details(stored: Optional[dict], incoming: Optional[dict], sticky: tuple = ()) -> dict:
    """Key-wise merge: blank incoming values never erase stored ones; sticky keys keep stored values."""
    merged = dict(stored or {})
    for key, value in (incoming or {}).items():
        if _is_blank(value):
            continue
        if key in sticky and not _is_blank(merged.get(key)):
            continue
        merged[key] = value
    return merged


def merge_order_fields(existing: Order, incoming: dict) -> dict:
    """
    Changes to apply to an existing order from a newer upstream copy.
    - an incoming Pending never downgrades a status we already advanced
    - awb/courier are sticky: blank incoming values never clear them
    - delivery_status and scan breadcrumbs belong to courier polling and are never touched here
    """
    changes: dict = {}

    if incoming.get("fulfillment_status") is not None:
        status = OrderStatus.parse(incoming["fulfillment_status"])
        current = existing.fulfillment_status
        downgrade = status == OrderStatus.PENDING and current not in (None, OrderStatus.PENDING)
        if status != current and not downgrade:
            changes["fulfillment_status"] = status

    shipping = merge_details(existing.shipping_details, incoming.get("shipping_details"))
    if shipping != (existing.shipping_details or {}):
        changes["shipping_details"] = shipping
    product = merge_details(existing.product_details, incoming.get("product_details"), sticky=STICKY_PRODUCT_KEYS)
    if product != (existing.product_details or {}):
        changes["product_details"] = product

    for key in ("awb", "courier", "shopify_store_id"):
        value = incoming.get(key)
        if isinstance(value, str):
            value = value.strip()
        if not _is_blank(value) and value != getattr(existing, key):
            changes[key] = value

    if incoming.get("pickup_date") is not None and existing.pickup_date != incoming["pickup_date"]:
        changes["pickup_date"] = incoming["pickup_date"]

    return changes


@dataclass
class SyncResult:
    client_id: str
    source: str = "shopify"
    fetched: int = 0
    created: int = 0
    updated: int = 0
    unchanged: int = 0
    failed: int = 0
    success: bool = True
    error: Optional[str] = None

    def to_dict(self) -> dict:
        return {
            "clientId": self.client_id,
            "source": self.source,
            "fetched": self.fetched,
            "created": self.created,
            "updated": self.updated,
            "unchanged": self.unchanged,
            "failed": self.failed,
            "success": self.success,
            "error": self.error,
        }


@dataclass
class RefreshResult:
    total: int = 0
    updated: int = 0
    not_found: int = 0
    failed: int = 0
    errors: list = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            "total": self.total,
            "updated": self.updated,
            "notFound": self.not_found,
            "failed": self.failed,
            "errors": self.errors[:50],
        }


@dataclass
class TrackingLookup:
    """Answer for the public tracking page: live courier data or the last stored scan."""

    source: str  # "api" | "database"
    awb: str
    status: Optional[OrderStatus]
    location: Optional[str] = None
    timestamp: Optional[datetime] = None
    remark: Optional[str] = None
    history: list = field(default_factory=list)
    order: Optional[Order] = None
    client: Optional[Client] = None

    @classmethod
    def from_order(cls, order: Order, client: Optional[Client]) -> "TrackingLookup":
        return cls(
            source="database",
            awb=order.awb,
            status=order.delivery_status,
            location=order.last_scan_location,
            timestamp=order.last_timestamp,
            remark=order.last_remark,
            order=order,
            client=client,
        )

    def to_dict(self) -> dict:
        order = self.order
        shipping = (order.shipping_details or {}) if order else {}
        product = (order.product_details or {}) if order else {}
        return {
            "source": self.source,
            "order": {
                "order_id": order.order_id,
                "awb": order.awb,
                "customer_name": shipping.get("name"),
                "delivery_address": shipping.get("address"),
                "city": shipping.get("city"),
                "state": shipping.get("state"),
                "pincode": shipping.get("pincode"),
                "amount": shipping.get("amount"),
                "payment_mode": shipping.get("payment_mode"),
                "product_name": product.get("product_name"),
                "quantity": product.get("quantity"),
            } if order else None,
            "tracking": {
                "awb": self.awb,
                "status": self.status.value if self.status else None,
                "last_update": self.timestamp.isoformat() if self.timestamp else None,
                "last_location": self.location,
                "last_remark": self.remark,
                "tracking_history": self.history,
            },
            "client": {
                "name": self.client.client_name if self.client else "",
                "logo": (self.client.logo_url or "") if self.client else "",
            },
        }


class ReconciliationEngine:
    """Orchestrates Shopify/Shiprocket clients, status mapping and OrderStorage."""

    def __init__(
        self,
        storage: OrderStorage,
        commerce_factory: Optional[Callable[[Client], ShopifyService]] = None,
        courier_factory: Optional[Callable[[Optional[Client]], ShiprocketService]] = None,
        lookback_days: Optional[int] = None,
        tracking_concurrency: Optional[int] = None,
        client_concurrency: Optional[int] = None,
        courier_cache: Optional[dict] = None,
    ):
        self.storage = storage
        self.commerce_factory = commerce_factory or ShopifyService
        self.courier_factory = courier_factory or get_shiprocket_client
        self.lookback_days = lookback_days if lookback_days is not None else settings.SYNC_LOOKBACK_DAYS
        self.tracking_concurrency = max(1, tracking_concurrency or settings.TRACKING_CONCURRENCY)
        self.client_concurrency = max(1, client_concurrency or settings.SYNC_CLIENT_CONCURRENCY)
        self._couriers: dict[str, ShiprocketService] = courier_cache if courier_cache is not None else {}
        self._clients: dict[str, Optional[Client]] = {}

    # --- clients ------------------------------------------------------

    def courier_for(self, client: Optional[Client]) -> ShiprocketService:
        """One courier client per credential set, reused for the engine's lifetime."""
        if client is not None and client.has_courier_credentials:
            key = client.client_id
        else:
            key, client = DEFAULT_COURIER_KEY, None
        if key not in self._couriers:
            self._couriers[key] = self.courier_factory(client)
        return self._couriers[key]

    def _client_for(self, client_id: str) -> Optional[Client]:
        if client_id not in self._clients:
            self._clients[client_id] = self.storage.get_client_by_client_id(client_id)
        return self._clients[client_id]

    async def _with_reauth(self, courier: ShiprocketService, call: Callable[[], Awaitable[Any]]) -> Any:
        """Run a courier call; on AuthenticationError refresh the token once and retry once."""
        try:
            return await call()
        except AuthenticationError:
            logger.info("Shiprocket auth failed (%s); refreshing token and retrying once", courier.label)
            courier.refresh_token()
        try:
            return await call()
        except AuthenticationError as e:
            raise CourierReconnectRequiredError() from e

    # --- order upsert -------------------------------------------------

    def upsert_order(self, data: dict, courier_sourced: bool = False) -> tuple[Order, str]:
        """
        Insert or merge one order. Returns (order, "created" | "updated" | "unchanged").
        Lookup by order_id; courier-sourced data may also match on AWB.
        """
        existing = self.storage.get_order_by_order_id(data.get("order_id"))
        if existing is None and courier_sourced and data.get("awb"):
            existing = self.storage.get_order_by_awb(data["awb"])

        if existing is None:
            return self.storage.create_order(data), "created"

        if courier_sourced:
            # Store linkage comes from Shopify only
            data = {k: v for k, v in data.items() if k != "shopify_store_id"}

        if data.get("client_id") and existing.client_id != data["client_id"]:
            logger.warning(
                "Order %s arrived for client %s but is stored under %s; keeping stored owner",
                existing.order_id, data["client_id"], existing.client_id,
            )
        changes = merge_order_fields(existing, data)
        if not changes:
            return existing, "unchanged"
        return self.storage.update_order(existing.id, changes), "updated"

    def _apply(self, result: SyncResult, data: dict, courier_sourced: bool) -> None:
        try:
            _, outcome = self.upsert_order(data, courier_sourced=courier_sourced)
        except (StorageError, ValueError) as e:
            result.failed += 1
            logger.warning("Upsert failed for order %s (%s): %s", data.get("order_id"), result.client_id, e)
            return
        if outcome == "created":
            result.created += 1
        elif outcome == "updated":
            result.updated += 1
        else:
            result.unchanged += 1

    # --- Shopify sync -------------------------------------------------

    async def sync_client_orders(self, client: Client) -> SyncResult:
        """Pull the lookback window of Shopify orders for one tenant and upsert them."""
        result = SyncResult(client_id=client.client_id, source="shopify")
        service = self.commerce_factory(client)
        created_at_min = (datetime.now(timezone.utc) - timedelta(days=self.lookback_days)).isoformat()
        raw_orders = await service.get_orders(created_at_min=created_at_min)
        result.fetched = len(raw_orders)

        if getattr(service, "last_error", None):
            # An empty list here means "could not ask", not "no orders"
            result.success = False
            result.error = "Shopify fetch failed"
            logger.warning("Shopify fetch failed for %s; stored orders left untouched", client.client_id)
        elif not raw_orders:
            logger.info("No Shopify orders for %s in the last %s days", client.client_id, self.lookback_days)

        for raw in raw_orders:
            try:
                data = service.transform_to_order(raw)
            except (KeyError, TypeError, ValueError) as e:
                result.failed += 1
                logger.warning("Could not transform Shopify order %s for %s: %s", raw.get("id"), client.client_id, e)
                continue
            self._apply(result, data, courier_sourced=False)

        logger.info(
            "Shopify sync %s: fetched=%s created=%s updated=%s failed=%s",
            client.client_id, result.fetched, result.created, result.updated, result.failed,
        )
        return result

    async def _sync_one_client(self, client: Client) -> SyncResult:
        try:
            return await self.sync_client_orders(client)
        except Exception as e:
            logger.exception("Order sync crashed for client %s", client.client_id)
            return SyncResult(client_id=client.client_id, success=False, error=f"Sync failed ({type(e).__name__})")

    async def sync_all_clients(self) -> list[SyncResult]:
        """Sync every active tenant; a failing tenant is logged and the pass moves on."""
        clients = self.storage.get_all_clients()
        if self.client_concurrency <= 1:
            results = []
            for client in clients:
                results.append(await self._sync_one_client(client))
        else:
            semaphore = asyncio.Semaphore(self.client_concurrency)

            async def bounded(client: Client) -> SyncResult:
                async with semaphore:
                    return await self._sync_one_client(client)

            results = list(await asyncio.gather(*(bounded(c) for c in clients)))
        logger.info(
            "Synced orders for %s clients (%s failed)",
            len(results), sum(1 for r in results if not r.success),
        )
        return results

    # --- Shiprocket order import -------------------------------------

    async def sync_courier_orders(self, client: Optional[Client] = None, pages: int = 1, page_size: int = 50) -> SyncResult:
        """
        Import orders listed in a Shiprocket account. Orders booked directly in
        Shiprocket may not share an order_id with Shopify, so AWB is the fallback key.
        """
        client_id = client.client_id if client is not None else settings.SHIPROCKET_DEFAULT_CLIENT_ID
        result = SyncResult(client_id=client_id, source="shiprocket")
        courier = self.courier_for(client)
        page = 1
        while page <= pages:
            try:
                paged = await self._with_reauth(courier, lambda p=page: courier.get_all_orders(p, page_size))
            except OmsError as e:
                result.success = False
                result.error = f"Shiprocket orders page {page} failed ({type(e).__name__})"
                logger.warning("Shiprocket order import for %s stopped at page %s: %s", client_id, page, e)
                break
            result.fetched += len(paged.items)
            for raw in paged.items:
                try:
                    data = shiprocket_order_to_order(raw, client_id)
                except (KeyError, TypeError, ValueError, AttributeError) as e:
                    result.failed += 1
                    logger.warning("Could not convert Shiprocket order %s for %s: %s", raw.get("id"), client_id, e)
                    continue
                if not data["order_id"]:
                    result.failed += 1
                    logger.warning("Shiprocket order without an id skipped (%s)", client_id)
                    continue
                self._apply(result, data, courier_sourced=True)
            if page >= paged.total_pages:
                break
            page += 1
        logger.info(
            "Shiprocket import %s: fetched=%s created=%s updated=%s failed=%s",
            client_id, result.fetched, result.created, result.updated, result.failed,
        )
        return result

    # --- tracking -----------------------------------------------------

    def _store_scan(self, order: Order, tracking: TrackingResult) -> Order:
        # Latest scan only; a scan without location/remark keeps the previous values
        return self.storage.update_order(
            order.id,
            {
                "delivery_status": tracking.status,
                "last_scan_location": tracking.location or order.last_scan_location,
                "last_timestamp": tracking.timestamp or order.last_timestamp,
                "last_remark": tracking.remark or order.last_remark,
            },
        )

    async def refresh_order_status(self, order: Order) -> TrackingResult:
        """Poll the courier for one order and overwrite its latest-scan fields."""
        courier = self.courier_for(self._client_for(order.client_id))
        tracking = await self._with_reauth(courier, lambda: courier.track_shipment(order.awb))
        self._store_scan(order, tracking)
        return tracking

    async def refresh_all_statuses(self, client_id: Optional[str] = None) -> RefreshResult:
        """Refresh every order with an AWB, at most tracking_concurrency requests in flight."""
        orders = self.storage.get_orders_with_awb(client_id)
        result = RefreshResult(total=len(orders))
        semaphore = asyncio.Semaphore(self.tracking_concurrency)
        disconnected: set[int] = set()

        async def refresh(order: Order) -> None:
            async with semaphore:
                courier = self.courier_for(self._client_for(order.client_id))
                if id(courier) in disconnected:
                    result.failed += 1
                    return
                try:
                    await self.refresh_order_status(order)
                    result.updated += 1
                except NotFoundError as e:
                    result.not_found += 1
                    logger.info("AWB %s (order %s) not found at courier: %s", order.awb, order.order_id, e)
                except CourierReconnectRequiredError:
                    disconnected.add(id(courier))
                    result.failed += 1
                    result.errors.append(f"{order.awb}: courier account needs reconnecting ({courier.label})")
                    logger.error("Shiprocket account %s needs reconnecting; skipping its remaining AWBs", courier.label)
                except OmsError as e:
                    result.failed += 1
                    result.errors.append(f"{order.awb}: {type(e).__name__}")
                    logger.warning("Tracking refresh failed for AWB %s: %s", order.awb, e)
                except Exception:
                    result.failed += 1
                    result.errors.append(f"{order.awb}: unexpected error")
                    logger.exception("Tracking refresh crashed for AWB %s", order.awb)

        await asyncio.gather(*(refresh(order) for order in orders))
        logger.info(
            "Status refresh: total=%s updated=%s not_found=%s failed=%s",
            result.total, result.updated, result.not_found, result.failed,
        )
        return result

    async def track_awb(self, awb: str) -> TrackingLookup:
        """
        Public tracking: live courier lookup first, stored scan on any failure.
        NotFoundError only when neither the courier nor storage knows the AWB.
        """
        awb = (awb or "").strip()
        order = self.storage.get_order_by_awb(awb)
        client = self._client_for(order.client_id) if order is not None else None
        courier = self.courier_for(client)

        try:
            if not courier.has_credentials():
                raise AuthenticationError("No Shiprocket credentials configured", status_code=None)
            tracking = await self._with_reauth(courier, lambda: courier.track_shipment(awb))
        except OmsError as e:
            if order is None:
                raise NotFoundError(f"Shipment {awb} not found") from e
            logger.info("Live tracking for %s unavailable (%s); answering from database", awb, type(e).__name__)
            return TrackingLookup.from_order(order, client)

        if order is not None:
            try:
                self._store_scan(order, tracking)
            except StorageError as e:
                logger.warning("Could not store live scan for %s: %s", awb, e)

        return TrackingLookup(
            source="api",
            awb=awb,
            status=tracking.status,
            location=tracking.location,
            timestamp=tracking.timestamp,
            remark=tracking.remark,
            history=tracking.activities,
            order=order,
            client=client,
        )
