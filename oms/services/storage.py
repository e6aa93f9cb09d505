"""
Order/Client persistence used by the reconciliation engine, batch mutations and routes.

Every call either succeeds or raises StorageError. Outside transaction() each
write commits on its own; inside transaction() writes are only flushed and the
whole block commits or rolls back together.
"""
import logging
from contextlib import contextmanager
from typing import Any, Iterator, Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from oms.errors import StorageError
from oms.models import Client, Order, OrderStatus
from oms.services.credentials import encrypt_token

logger = logging.getLogger(__name__)

ORDER_FIELDS = frozenset(
    {
        "order_id",
        "client_id",
        "shopify_store_id",
        "fulfillment_status",
        "delivery_status",
        "pickup_date",
        "shipping_details",
        "product_details",
        "courier",
        "awb",
        "last_scan_location",
        "last_timestamp",
        "last_remark",
    }
)
ENCRYPTED_CLIENT_FIELDS = ("shopify_api_secret", "shopify_access_token", "shiprocket_api_key", "shiprocket_password")
CLIENT_FIELDS = frozenset(
    {
        "client_id",
        "client_name",
        "shopify_store_id",
        "shopify_api_key",
        "shopify_api_secret",
        "shopify_access_token",
        "shiprocket_api_key",
        "shiprocket_email",
        "shiprocket_password",
        "logo_url",
        "is_active",
    }
)


def _normalize_order_fields(fields: dict) -> dict:
    unknown = set(fields) - ORDER_FIELDS
    if unknown:
        raise StorageError(f"Unknown order fields: {sorted(unknown)}")
    data = dict(fields)
    for key in ("fulfillment_status", "delivery_status"):
        if data.get(key) is not None:
            try:
                data[key] = OrderStatus.parse(data[key])
            except ValueError as e:
                raise StorageError(str(e)) from e
    return data


class OrderStorage:
    def __init__(self, db: Session):
        self.db = db
        self._in_transaction = False

    # --- transactions -------------------------------------------------

    def _commit(self) -> None:
        try:
            if self._in_transaction:
                self.db.flush()
            else:
                self.db.commit()
        except SQLAlchemyError as e:
            if not self._in_transaction:
                self.db.rollback()
            raise StorageError(f"Database write failed: {e}") from e

    @contextmanager
    def transaction(self) -> Iterator["OrderStorage"]:
        """All writes inside the block commit together or not at all."""
        if self._in_transaction:
            yield self
            return
        self._in_transaction = True
        try:
            yield self
            self.db.commit()
        except SQLAlchemyError as e:
            self.db.rollback()
            raise StorageError(f"Transaction failed: {e}") from e
        except BaseException:
            self.db.rollback()
            raise
        finally:
            self._in_transaction = False

    def _query(self, fn):
        try:
            return fn()
        except SQLAlchemyError as e:
            raise StorageError(f"Database read failed: {e}") from e

    # --- orders -------------------------------------------------------

    def get_order(self, id: str) -> Optional[Order]:
        return self._query(lambda: self.db.query(Order).filter(Order.id == id).first())

    def get_order_by_order_id(self, order_id: str) -> Optional[Order]:
        if not order_id:
            return None
        return self._query(lambda: self.db.query(Order).filter(Order.order_id == str(order_id)).first())

    def get_order_by_awb(self, awb: str) -> Optional[Order]:
        awb = (awb or "").strip()
        if not awb:
            return None
        return self._query(lambda: self.db.query(Order).filter(Order.awb == awb).first())

    def create_order(self, data: dict) -> Order:
        fields = _normalize_order_fields(data)
        if not fields.get("order_id") or not fields.get("client_id"):
            raise StorageError("order_id and client_id are required")
        fields.setdefault("fulfillment_status", OrderStatus.PENDING)
        fields.setdefault("shipping_details", {})
        fields.setdefault("product_details", {})
        fields.setdefault("shopify_store_id", "")
        order = Order(**fields)
        self.db.add(order)
        self._commit()
        if not self._in_transaction:
            self.db.refresh(order)
        return order

    def update_order(self, id: str, fields: dict) -> Order:
        order = self.get_order(id)
        if order is None:
            raise StorageError(f"Order {id} not found")
        for key, value in _normalize_order_fields(fields).items():
            setattr(order, key, value)
        self._commit()
        return order

    def _orders(self, *criteria, client_id: Optional[str] = None) -> list[Order]:
        def run():
            query = self.db.query(Order)
            if client_id:
                query = query.filter(Order.client_id == client_id)
            for criterion in criteria:
                query = query.filter(criterion)
            return query.order_by(Order.created_at.desc(), Order.order_id).all()

        return self._query(run)

    def get_all_orders(self, client_id: Optional[str] = None) -> list[Order]:
        return self._orders(client_id=client_id)

    def get_pending_orders(self, client_id: Optional[str] = None) -> list[Order]:
        return self._orders(Order.fulfillment_status == OrderStatus.PENDING, client_id=client_id)

    def get_orders_by_status(self, status: Any, client_id: Optional[str] = None) -> list[Order]:
        return self._orders(Order.fulfillment_status == OrderStatus.parse(status), client_id=client_id)

    def get_orders_with_awb(self, client_id: Optional[str] = None) -> list[Order]:
        return self._orders(Order.awb.isnot(None), Order.awb != "", client_id=client_id)

    # --- clients ------------------------------------------------------

    def get_client_by_client_id(self, client_id: str) -> Optional[Client]:
        if not client_id:
            return None
        return self._query(lambda: self.db.query(Client).filter(Client.client_id == client_id).first())

    def get_all_clients(self, active_only: bool = True) -> list[Client]:
        def run():
            query = self.db.query(Client)
            if active_only:
                query = query.filter(Client.is_active.is_(True))
            return query.order_by(Client.client_id).all()

        return self._query(run)

    def create_client(self, data: dict) -> Client:
        unknown = set(data) - CLIENT_FIELDS
        if unknown:
            raise StorageError(f"Unknown client fields: {sorted(unknown)}")
        fields = dict(data)
        for key in ENCRYPTED_CLIENT_FIELDS:
            if key in fields:
                fields[key] = encrypt_token(fields[key])
        client = Client(**fields)
        self.db.add(client)
        self._commit()
        if not self._in_transaction:
            self.db.refresh(client)
        return client
