"""
Shiprocket integration (external API v1):
- Auth: POST /auth/login with {email, password} (or {api_key}) → bearer token, valid ~10 days
- Tracking: GET /courier/track/awb/{awb} → tracking_data.shipment_track[], shipment_track_activities[]
- Orders: GET /orders?page=&per_page= (envelope shape has changed over time, see ORDER_LIST_PARSERS)

One ShiprocketService instance owns one credential set and its CourierSession.
Instances are never shared between tenants with different credentials.
"""
import asyncio
import logging
import time
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Optional

import httpx

from oms.config import settings
from oms.errors import (
    AuthenticationError,
    ProtocolError,
    NotFoundError,
    RateLimitedError,
    UpstreamError,
    UpstreamUnavailableError,
    error_for_status,
)
from oms.models import OrderStatus, PaymentMode, ShippingMethod
from oms.services.credentials import get_shiprocket_credentials
from oms.services.http_client import get_with_retry, post_no_retry
from oms.services.status_mapper import map_courier_status

logger = logging.getLogger(__name__)

DEFAULT_DIMENSIONS_CM = [10, 10, 10]
DEFAULT_WEIGHT_KG = 0.5

_DATE_FORMATS = (
    "%Y-%m-%d %H:%M:%S",
    "%Y-%m-%d %H:%M",
    "%d %b %Y, %I:%M %p",
    "%d %b %Y %H:%M",
    "%d-%m-%Y %H:%M:%S",
    "%Y-%m-%d",
)


def parse_courier_datetime(value: Any) -> Optional[datetime]:
    """Best-effort parse of the date strings Shiprocket returns; None when unparsable."""
    if not value or not isinstance(value, str):
        return None
    text = value.strip()
    try:
        return datetime.fromisoformat(text.replace("Z", "+00:00"))
    except ValueError:
        pass
    for fmt in _DATE_FORMATS:
        try:
            return datetime.strptime(text, fmt)
        except ValueError:
            continue
    return None


@dataclass
class CourierSession:
    """Cached login token and its expiry (epoch seconds)."""

    token: str
    expiry: float

    def is_valid(self, now: Optional[float] = None) -> bool:
        return bool(self.token) and self.expiry > (now if now is not None else time.time())


@dataclass
class TrackingResult:
    """Normalized latest scan for one AWB."""

    awb: str
    raw_status: Optional[str]
    status: OrderStatus
    location: Optional[str] = None
    timestamp: Optional[datetime] = None
    remark: Optional[str] = None
    activities: list = field(default_factory=list)
    track_url: Optional[str] = None

    def to_dict(self) -> dict:
        return {
            "awb": self.awb,
            "raw_status": self.raw_status,
            "status": self.status.value,
            "last_location": self.location,
            "last_update": self.timestamp.isoformat() if self.timestamp else None,
            "last_remark": self.remark,
            "tracking_history": self.activities,
            "track_url": self.track_url,
        }


def _page_number(value: Any, default: int) -> int:
    if value in (None, ""):
        return default
    try:
        return int(value)
    except (TypeError, ValueError) as e:
        raise ProtocolError(f"Shiprocket pagination value {value!r} is not a number") from e


def _text(value: Any) -> Optional[str]:
    """Stripped string form of a scalar; None when blank"""
    if value is None or isinstance(value, (dict, list)):
        return None
    return str(value).strip() or None


def _quantity(value: Any) -> int:
    try:
        return int(value or 0)
    except (TypeError, ValueError):
        pass
    try:
        return int(float(value))
    except (TypeError, ValueError):
        return 0


@dataclass
class PagedResult:
    items: list
    total_pages: int
    current_page: int


def _parse_nested_orders(data: Any, page: int) -> Optional[PagedResult]:
    """{"data": {"orders": [...], "total_pages": n, "current_page": p}}"""
    if not isinstance(data, dict) or not isinstance(data.get("data"), dict):
        return None
    inner = data["data"]
    orders = inner.get("orders")
    if not isinstance(orders, list):
        return None
    return PagedResult(
        items=orders,
        total_pages=_page_number(inner.get("total_pages"), 1),
        current_page=_page_number(inner.get("current_page"), page),
    )


def _parse_data_array(data: Any, page: int) -> Optional[PagedResult]:
    """{"data": [...], "meta": {"pagination": {"total_pages": n, "current_page": p}}}"""
    if not isinstance(data, dict) or not isinstance(data.get("data"), list):
        return None
    meta = data.get("meta") if isinstance(data.get("meta"), dict) else {}
    pagination = meta.get("pagination") if isinstance(meta.get("pagination"), dict) else {}
    return PagedResult(
        items=data["data"],
        total_pages=_page_number(pagination.get("total_pages"), 1),
        current_page=_page_number(pagination.get("current_page"), page),
    )


def _parse_bare_list(data: Any, page: int) -> Optional[PagedResult]:
    """[...] with no pagination metadata"""
    if not isinstance(data, list):
        return None
    return PagedResult(items=data, total_pages=page, current_page=page)


# Tried in order; the first parser that recognises the envelope wins.
ORDER_LIST_PARSERS: tuple[Callable[[Any, int], Optional[PagedResult]], ...] = (
    _parse_nested_orders,
    _parse_data_array,
    _parse_bare_list,
)


def parse_orders_page(data: Any, page: int = 1) -> PagedResult:
    """Normalize an /orders response through ORDER_LIST_PARSERS; ProtocolError if none match."""
    for parser in ORDER_LIST_PARSERS:
        result = parser(data, page)
        if result is None:
            continue
        if not all(isinstance(item, dict) for item in result.items):
            raise ProtocolError(f"Shiprocket orders page {page}: items are not objects")
        return result
    raise ProtocolError(f"Shiprocket orders page {page}: unrecognized response shape")


def parse_tracking_response(awb: str, data: Any) -> TrackingResult:
    """
    Normalize GET /courier/track/awb/{awb}.
    Latest scan: shipment_track_activities[0] (newest first), falling back to shipment_track[0].
    """
    if isinstance(data, dict) and isinstance(data.get(awb), dict):
        data = data[awb]
    tracking = data.get("tracking_data") if isinstance(data, dict) else None
    if not isinstance(tracking, dict):
        raise ProtocolError(f"Tracking response for {awb} has no tracking_data")

    tracks = tracking.get("shipment_track") if isinstance(tracking.get("shipment_track"), list) else []
    activities = (
        tracking.get("shipment_track_activities")
        if isinstance(tracking.get("shipment_track_activities"), list)
        else []
    )
    if not tracks and not activities and tracking.get("error"):
        raise NotFoundError(f"AWB {awb}: {tracking.get('error')}", status_code=None)

    track = tracks[0] if tracks and isinstance(tracks[0], dict) else {}
    latest = activities[0] if activities and isinstance(activities[0], dict) else {}

    raw_status = track.get("current_status")
    if not isinstance(raw_status, str) or not raw_status.strip():
        raw_status = tracking.get("shipment_status") if isinstance(tracking.get("shipment_status"), str) else None
    if not raw_status:
        raw_status = latest.get("sr-status-label") or latest.get("activity")

    return TrackingResult(
        awb=awb,
        raw_status=raw_status,
        status=map_courier_status(raw_status),
        location=latest.get("location") or track.get("location") or track.get("destination"),
        timestamp=parse_courier_datetime(latest.get("date") or track.get("date") or track.get("updated_time")),
        remark=latest.get("activity") or track.get("status_detail"),
        activities=[a for a in activities if isinstance(a, dict)],
        track_url=tracking.get("track_url"),
    )


def shiprocket_order_to_order(raw: dict, client_id: str) -> dict:
    """
    Convert one Shiprocket /orders item to the order shape used by OrderStorage.create_order.
    Shiprocket does not expose parcel measurements here; dimensions/weight are defaults.
    """
    shipments = raw.get("shipments") if isinstance(raw.get("shipments"), list) else []
    shipment = shipments[0] if shipments and isinstance(shipments[0], dict) else {}
    awb = _text(raw.get("awb_code")) or _text(shipment.get("awb"))
    courier = _text(raw.get("courier_name")) or _text(shipment.get("courier"))
    payment = str(raw.get("payment_method") or "").lower()
    try:
        amount = float(raw.get("total") or 0)
    except (TypeError, ValueError):
        amount = 0.0
    products = raw.get("products") if isinstance(raw.get("products"), list) else []
    first = products[0] if products and isinstance(products[0], dict) else {}
    quantity = sum(_quantity(p.get("quantity")) for p in products if isinstance(p, dict)) or 1
    order_id = _text(raw.get("channel_order_id")) or _text(raw.get("order_id")) or _text(raw.get("id")) or ""

    return {
        "order_id": order_id,
        "client_id": client_id,
        "shopify_store_id": str(raw.get("channel") or raw.get("channel_name") or "shiprocket"),
        "fulfillment_status": map_courier_status(raw.get("status")),
        "pickup_date": parse_courier_datetime(raw.get("pickup_date") or shipment.get("pickup_scheduled_date")),
        "shipping_details": {
            "name": raw.get("customer_name") or raw.get("shipping_customer_name") or "",
            "phone_1": raw.get("customer_phone") or raw.get("shipping_phone") or "",
            "email": raw.get("customer_email") or raw.get("shipping_email") or "",
            "address": raw.get("customer_address") or raw.get("shipping_address") or "",
            "pincode": str(raw.get("customer_pincode") or raw.get("shipping_pincode") or ""),
            "city": raw.get("customer_city") or raw.get("shipping_city") or "",
            "state": raw.get("customer_state") or raw.get("shipping_state") or "",
            "shipping_method": ShippingMethod.SURFACE.value,
            "payment_mode": PaymentMode.COD.value if payment == "cod" else PaymentMode.PREPAID.value,
            "amount": amount,
        },
        "product_details": {
            "category": first.get("category") or "General",
            "product_name": first.get("name") or f"Order from {raw.get('channel') or 'Shiprocket'}",
            "quantity": quantity,
            "dimensions": list(DEFAULT_DIMENSIONS_CM),
            "weight": DEFAULT_WEIGHT_KG,
        },
        "awb": awb,
        "courier": courier,
    }


class ShiprocketService:
    """
    Shiprocket API client for one credential set.
    - authenticate(): cached CourierSession, re-login only after expiry or refresh_token()
    - track_shipment(awb): normalized TrackingResult
    - get_all_orders(page, page_size): PagedResult via ORDER_LIST_PARSERS
    """

    def __init__(
        self,
        email: Optional[str] = None,
        password: Optional[str] = None,
        api_key: Optional[str] = None,
        base_url: Optional[str] = None,
        timeout: Optional[float] = None,
        max_retries: Optional[int] = None,
        token_ttl_days: Optional[int] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        label: str = "default",
    ):
        self.email = (email or "").strip() or None
        self.password = password or None
        self.api_key = (api_key or "").strip() or None
        self.base_url = (base_url or settings.SHIPROCKET_API_BASE_URL).rstrip("/")
        self.timeout = timeout if timeout is not None else settings.HTTP_TIMEOUT_SEC
        self.max_retries = max_retries if max_retries is not None else settings.HTTP_MAX_RETRIES
        self.token_ttl_days = token_ttl_days if token_ttl_days is not None else settings.SHIPROCKET_TOKEN_TTL_DAYS
        self.transport = transport
        self.label = label
        self.session: Optional[CourierSession] = None
        self._login_lock = asyncio.Lock()

    def has_credentials(self) -> bool:
        return bool((self.email and self.password) or self.api_key)

    def _login_payload(self) -> dict:
        if self.email and self.password:
            return {"email": self.email, "password": self.password}
        return {"api_key": self.api_key}

    async def _login(self) -> CourierSession:
        if not self.has_credentials():
            raise AuthenticationError(f"Shiprocket credentials not set ({self.label})", status_code=None)
        url = f"{self.base_url}/auth/login"
        resp = await post_no_retry(
            url,
            json=self._login_payload(),
            headers={"Content-Type": "application/json"},
            timeout=self.timeout,
            transport=self.transport,
        )
        if resp.status_code in (400, 401, 403, 422):
            raise AuthenticationError(
                f"Shiprocket rejected credentials ({self.label})",
                status_code=resp.status_code,
                reason="invalid_credentials",
            )
        if resp.status_code == 429:
            raise RateLimitedError(f"Shiprocket login rate limited ({self.label})")
        if resp.status_code >= 500:
            raise UpstreamUnavailableError(
                f"Shiprocket login unavailable ({self.label})", status_code=resp.status_code
            )
        if resp.status_code >= 400:
            raise UpstreamError(f"Shiprocket login failed ({self.label})", status_code=resp.status_code)
        try:
            data = resp.json()
        except ValueError as e:
            raise ProtocolError("Shiprocket login returned non-JSON body", status_code=resp.status_code) from e
        token = data.get("token") if isinstance(data, dict) else None
        if not token:
            raise ProtocolError("Shiprocket login response has no token", status_code=resp.status_code)
        return CourierSession(token=token, expiry=time.time() + self.token_ttl_days * 86400)

    async def authenticate(self) -> str:
        """Return the cached token while valid, otherwise log in and cache a new session."""
        if self.session is not None and self.session.is_valid():
            return self.session.token
        async with self._login_lock:
            # Another caller may have logged in while we waited
            if self.session is None or not self.session.is_valid():
                self.session = await self._login()
                logger.info("Shiprocket session established (%s)", self.label)
            return self.session.token

    def refresh_token(self) -> None:
        """Drop the cached session; the next call logs in again."""
        self.session = None

    async def _get_json(self, path: str, params: Optional[dict] = None) -> Any:
        token = await self.authenticate()
        headers = {"Content-Type": "application/json", "Authorization": f"Bearer {token}"}
        resp = await get_with_retry(
            f"{self.base_url}{path}",
            params=params,
            headers=headers,
            timeout=self.timeout,
            max_retries=self.max_retries,
            transport=self.transport,
        )
        if resp.status_code == 401:
            # Force a fresh login next time; the caller decides whether to retry
            self.refresh_token()
            raise AuthenticationError(f"Shiprocket session rejected for {path}", status_code=401, reason="session_expired")
        if resp.status_code >= 400:
            raise error_for_status(resp.status_code, f"Shiprocket GET {path} failed with HTTP {resp.status_code}")
        try:
            return resp.json()
        except ValueError as e:
            raise ProtocolError(f"Shiprocket GET {path} returned non-JSON body", status_code=resp.status_code) from e

    async def track_shipment(self, awb: str) -> TrackingResult:
        """Latest tracking scan for one AWB."""
        awb = (awb or "").strip()
        if not awb:
            raise NotFoundError("Empty AWB", status_code=None)
        data = await self._get_json(f"/courier/track/awb/{awb}")
        return parse_tracking_response(awb, data)

    async def get_all_orders(self, page: int = 1, page_size: int = 20) -> PagedResult:
        """One page of Shiprocket orders, normalized to PagedResult."""
        data = await self._get_json("/orders", params={"page": page, "per_page": page_size})
        return parse_orders_page(data, page)

    async def test_authentication(self) -> bool:
        """Log in with a fresh session. True on success; credential errors return False."""
        self.refresh_token()
        try:
            await self.authenticate()
        except AuthenticationError as e:
            logger.warning("Shiprocket credential check failed (%s): %s", self.label, e)
            return False
        return True


def get_shiprocket_client(client: Any = None, transport: Optional[httpx.AsyncBaseTransport] = None) -> ShiprocketService:
    """
    Return a Shiprocket client.
    - Client row with courier credentials: tenant-specific instance.
    - Otherwise: the shared default account from SHIPROCKET_EMAIL/PASSWORD or SHIPROCKET_API_KEY.
    """
    if client is not None and client.has_courier_credentials:
        creds = get_shiprocket_credentials(client)
        return ShiprocketService(
            email=creds["email"],
            password=creds["password"],
            api_key=creds["api_key"],
            transport=transport,
            label=client.client_id,
        )
    return ShiprocketService(
        email=settings.SHIPROCKET_EMAIL,
        password=settings.SHIPROCKET_PASSWORD,
        api_key=settings.SHIPROCKET_API_KEY,
        transport=transport,
        label="default",
    )
