"""
Map Shopify and Shiprocket status vocabularies to the internal OrderStatus.

Both mappers are total: any input, including None, yields an OrderStatus.
Never store raw upstream strings in fulfillment_status / delivery_status.
"""
import re
from typing import Optional

from oms.models import OrderStatus

# Unmatched courier statuses fall back to Pending: it claims no movement of the parcel.
DEFAULT_COURIER_STATUS = OrderStatus.PENDING

# Exact labels (lower-cased) as returned by Shiprocket tracking and order listing
SHIPROCKET_TO_INTERNAL = {
    "new": OrderStatus.PENDING,
    "pending": OrderStatus.PENDING,
    "ready to ship": OrderStatus.PENDING,
    "awb assigned": OrderStatus.PENDING,
    "label generated": OrderStatus.PENDING,
    "manifest generated": OrderStatus.PENDING,
    "pickup scheduled": OrderStatus.INPROCESS,
    "pickup generated": OrderStatus.INPROCESS,
    "pickup queued": OrderStatus.INPROCESS,
    "pickup booked": OrderStatus.INPROCESS,
    "picked up": OrderStatus.INPROCESS,
    "shipped": OrderStatus.INPROCESS,
    "dispatched": OrderStatus.INPROCESS,
    "in transit": OrderStatus.INPROCESS,
    "reached at destination hub": OrderStatus.INPROCESS,
    "out for delivery": OrderStatus.INPROCESS,
    "delivered": OrderStatus.DELIVERED,
    "rto initiated": OrderStatus.RTO,
    "rto in transit": OrderStatus.RTO,
    "rto delivered": OrderStatus.RTO,
    "rto ofd": OrderStatus.RTO,
    "return initiated": OrderStatus.RTO,
    "pickup error": OrderStatus.NDR,
    "pickup exception": OrderStatus.NDR,
    "undelivered": OrderStatus.NDR,
    "ndr": OrderStatus.NDR,
    "cancelled": OrderStatus.LOST,
    "canceled": OrderStatus.LOST,
    "lost": OrderStatus.LOST,
    "damaged": OrderStatus.LOST,
    "destroyed": OrderStatus.LOST,
}

# Underscore form (IN_TRANSIT, RTO_DELIVERED) as seen in webhook payloads
for _k, _v in list(SHIPROCKET_TO_INTERNAL.items()):
    SHIPROCKET_TO_INTERNAL.setdefault(_k.replace(" ", "_"), _v)

# Substring rules for labels not in the table, checked in order.
# RTO/return and undelivered must win over anything containing "delivered".
_SUBSTRING_RULES = (
    (("rto", "return"), OrderStatus.RTO),
    (("undelivered", "pickup error", "pickup exception", "ndr", "failed delivery", "delivery attempt"), OrderStatus.NDR),
    (("cancel", "lost", "damage", "destroy"), OrderStatus.LOST),
    (("delivered",), OrderStatus.DELIVERED),
    (("out for delivery", "in transit", "transit", "pickup", "picked", "shipped", "dispatch"), OrderStatus.INPROCESS),
)
# Needles must start a word: "rto" matches "RTO initiated" but not "Porto"
_SUBSTRING_PATTERNS = tuple(
    (re.compile(r"\b(?:" + "|".join(re.escape(n) for n in needles) + ")"), status)
    for needles, status in _SUBSTRING_RULES
)


def map_courier_status(raw_status: Optional[str]) -> OrderStatus:
    """Map a Shiprocket shipment status label to OrderStatus (case-insensitive)."""
    if not raw_status or not isinstance(raw_status, str):
        return DEFAULT_COURIER_STATUS
    normalized = " ".join(raw_status.strip().lower().replace("_", " ").split())
    if not normalized:
        return DEFAULT_COURIER_STATUS
    exact = SHIPROCKET_TO_INTERNAL.get(normalized)
    if exact is not None:
        return exact
    for pattern, status in _SUBSTRING_PATTERNS:
        if pattern.search(normalized):
            return status
    return DEFAULT_COURIER_STATUS


def map_commerce_status(fulfillment_status: Optional[str], financial_status: Optional[str]) -> OrderStatus:
    """Map a Shopify (fulfillment_status, financial_status) pair to OrderStatus."""
    fulfillment = (fulfillment_status or "").strip().lower() if isinstance(fulfillment_status, str) else ""
    financial = (financial_status or "").strip().lower() if isinstance(financial_status, str) else ""
    if fulfillment == "fulfilled":
        return OrderStatus.DELIVERED
    if fulfillment == "partial":
        return OrderStatus.INPROCESS
    if financial == "paid" and not fulfillment:
        return OrderStatus.PENDING
    if financial == "pending":
        return OrderStatus.PENDING
    if financial == "refunded":
        return OrderStatus.RTO
    return OrderStatus.PENDING
