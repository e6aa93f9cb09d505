"""
Bulk AWB assignment and bulk order updates.

Every batch is validated as a whole (shape, then tenant scope) before the first
write, then applied inside one OrderStorage.transaction(). Order ids that do not
exist are skipped and reported, never fatal.
"""
import logging
from dataclasses import dataclass, field
from typing import Any, Iterable, Optional

from oms.errors import NotFoundError, PermissionDeniedError, StorageError, ValidationError
from oms.models import Order, OrderStatus
from oms.services.reconciliation import merge_details
from oms.services.shiprocket_service import parse_courier_datetime
from oms.services.storage import OrderStorage

logger = logging.getLogger(__name__)

UPDATABLE_FIELDS = frozenset(
    {
        "fulfillment_status",
        "delivery_status",
        "pickup_date",
        "shipping_details",
        "product_details",
        "courier",
        "awb",
    }
)
DETAIL_FIELDS = ("shipping_details", "product_details")
FIELD_ALIASES = {
    "fulfillmentStatus": "fulfillment_status",
    "deliveryStatus": "delivery_status",
    "pickupDate": "pickup_date",
    "shippingDetails": "shipping_details",
    "productDetails": "product_details",
}


@dataclass
class BatchResult:
    updated: list = field(default_factory=list)
    skipped: list = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            "updated": len(self.updated),
            "skipped": len(self.skipped),
            "updatedOrderIds": self.updated,
            "skippedOrderIds": self.skipped,
        }


def _order_id_of(item: Any, index: int) -> str:
    if not isinstance(item, dict):
        raise ValidationError(f"Item {index} must be an object")
    order_id = item.get("orderId", item.get("order_id"))
    if order_id is None or not str(order_id).strip():
        raise ValidationError(f"Item {index} is missing orderId")
    return str(order_id).strip()


def _clean_fields(data: Any, index: int) -> dict:
    """Normalize one update payload: aliases, whitelist, status and date parsing."""
    if not isinstance(data, dict) or not data:
        raise ValidationError(f"Item {index} has no fields to update")
    fields = {}
    for key, value in data.items():
        name = FIELD_ALIASES.get(key, key)
        if name not in UPDATABLE_FIELDS:
            raise ValidationError(f"Field '{key}' cannot be updated")
        fields[name] = value

    for name in ("fulfillment_status", "delivery_status"):
        if fields.get(name) is not None:
            try:
                fields[name] = OrderStatus.parse(fields[name])
            except ValueError as e:
                raise ValidationError(f"Item {index}: {e}") from e
    if fields.get("pickup_date") is not None:
        parsed = parse_courier_datetime(fields["pickup_date"])
        if parsed is None:
            raise ValidationError(f"Item {index}: invalid pickup_date")
        fields["pickup_date"] = parsed
    for name in DETAIL_FIELDS:
        if name in fields and not isinstance(fields[name], dict):
            raise ValidationError(f"Item {index}: {name} must be an object")
    for name in ("awb", "courier"):
        if isinstance(fields.get(name), str):
            fields[name] = fields[name].strip() or None
    return fields


class BatchMutationService:
    def __init__(self, storage: OrderStorage):
        self.storage = storage

    def _check_scope(self, orders: Iterable[Order], caller) -> None:
        """Tenant-scoped callers may only touch their own orders; one foreign order rejects the batch."""
        if caller is None or caller.is_cross_tenant:
            return
        if not caller.client_id:
            raise PermissionDeniedError("Caller is not linked to a client")
        foreign = sorted({o.order_id for o in orders if o.client_id != caller.client_id})
        if foreign:
            logger.warning(
                "Rejected batch from %s (%s): orders %s belong to another client",
                caller.username, caller.client_id, foreign,
            )
            raise PermissionDeniedError(f"Access denied to orders: {', '.join(foreign)}")

    def _resolve(self, order_ids: list, result: BatchResult) -> dict:
        found = {}
        for order_id in order_ids:
            order = self.storage.get_order_by_order_id(order_id)
            if order is None:
                result.skipped.append(order_id)
            else:
                found[order_id] = order
        return found

    def _apply(self, plan: list, result: BatchResult) -> None:
        """plan: [(order, fields)]; all or nothing."""
        with self.storage.transaction():
            for order, fields in plan:
                self.storage.update_order(order.id, fields)
                result.updated.append(order.order_id)

    def assign_awb(self, assignments: list, caller=None) -> BatchResult:
        """Set AWB (and optionally courier) per order and move it to In-Process."""
        if not isinstance(assignments, list) or not assignments:
            raise ValidationError("assignments must be a non-empty list")
        pairs = []
        seen_awbs = set()
        for index, item in enumerate(assignments):
            order_id = _order_id_of(item, index)
            awb = str(item.get("awb") or "").strip()
            if not awb:
                raise ValidationError(f"Item {index} is missing awb")
            if awb in seen_awbs:
                raise ValidationError(f"AWB {awb} appears more than once in the batch")
            seen_awbs.add(awb)
            fields = {"awb": awb, "fulfillment_status": OrderStatus.INPROCESS}
            courier = str(item.get("courier") or "").strip()
            if courier:
                fields["courier"] = courier
            pairs.append((order_id, fields))

        result = BatchResult()
        found = self._resolve([order_id for order_id, _ in pairs], result)
        self._check_scope(found.values(), caller)
        plan = [(found[order_id], fields) for order_id, fields in pairs if order_id in found]
        self._apply(plan, result)
        if result.skipped:
            logger.info("AWB assignment skipped unknown orders: %s", result.skipped)
        logger.info("Assigned AWBs to %s orders", len(result.updated))
        return result

    def assign_awb_pairs(self, order_ids: list, awbs: list, caller=None) -> BatchResult:
        """Parallel-array form of assign_awb; lengths must match."""
        if len(order_ids) != len(awbs):
            raise ValidationError(
                f"order_ids and awbs must have the same length ({len(order_ids)} != {len(awbs)})"
            )
        return self.assign_awb(
            [{"orderId": order_id, "awb": awb} for order_id, awb in zip(order_ids, awbs)],
            caller=caller,
        )

    def _plan_update(self, order: Order, fields: dict) -> dict:
        changes = dict(fields)
        for name in DETAIL_FIELDS:
            if name in changes:
                changes[name] = merge_details(getattr(order, name), changes[name])
        return changes

    def bulk_update_orders(self, updates: list, caller=None) -> BatchResult:
        """Partial-field merge per order; JSON detail fields are merged key by key."""
        if not isinstance(updates, list) or not updates:
            raise ValidationError("updates must be a non-empty list")
        # Repeated orderIds fold into one update, later entries winning per key
        folded: dict = {}
        for index, item in enumerate(updates):
            order_id = _order_id_of(item, index)
            fields = _clean_fields(item.get("data"), index)
            pending = folded.setdefault(order_id, {})
            for name, value in fields.items():
                if name in DETAIL_FIELDS and isinstance(pending.get(name), dict):
                    value = {**pending[name], **value}
                pending[name] = value
        cleaned = list(folded.items())

        result = BatchResult()
        found = self._resolve([order_id for order_id, _ in cleaned], result)
        self._check_scope(found.values(), caller)
        plan = [
            (found[order_id], self._plan_update(found[order_id], fields))
            for order_id, fields in cleaned
            if order_id in found
        ]
        self._apply(plan, result)
        logger.info("Bulk updated %s orders (%s skipped)", len(result.updated), len(result.skipped))
        return result

    def update_order(self, order_id: str, data: dict, caller=None) -> Order:
        """Single-order partial update with the same validation as bulk updates."""
        fields = _clean_fields(data, 0)
        order = self.storage.get_order_by_order_id(order_id)
        if order is None:
            raise NotFoundError(f"Order {order_id} not found", status_code=None)
        self._check_scope([order], caller)
        try:
            return self.storage.update_order(order.id, self._plan_update(order, fields))
        except StorageError:
            logger.error("Update of order %s failed", order_id)
            raise
