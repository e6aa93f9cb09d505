"""
SQLAlchemy models for tenants (clients) and orders.
All model and enum definitions live here for simplicity and to avoid circular imports.
"""
from sqlalchemy import Column, String, Boolean, DateTime, Enum as SQLEnum, JSON, Index
from sqlalchemy.sql import func
from oms.database import Base
import enum
import uuid


def _enum_values(enum_cls):
    return [member.value for member in enum_cls]


# Enums
class UserRole(str, enum.Enum):
    BFAST_ADMIN = "bfast_admin"
    BFAST_EXECUTIVE = "bfast_executive"
    CLIENT_ADMIN = "client_admin"
    CLIENT_EXECUTIVE = "client_executive"


CROSS_TENANT_ROLES = (UserRole.BFAST_ADMIN, UserRole.BFAST_EXECUTIVE)


class OrderStatus(str, enum.Enum):
    PENDING = "Pending"
    INPROCESS = "In-Process"
    DELIVERED = "Delivered"
    RTO = "RTO"
    NDR = "NDR"
    LOST = "Lost"

    @classmethod
    def parse(cls, value) -> "OrderStatus":
        """Accept an enum member, its value ("In-Process") or its name ("INPROCESS")."""
        if isinstance(value, cls):
            return value
        text = str(value or "").strip()
        for member in cls:
            if text.lower() in (member.value.lower(), member.name.lower()):
                return member
        raise ValueError(f"Unknown order status: {value!r}")


class ShippingMethod(str, enum.Enum):
    EXPRESS = "Express"
    SURFACE = "Surface"


class PaymentMode(str, enum.Enum):
    COD = "COD"
    PREPAID = "Prepaid"


# Models
class Client(Base):
    __tablename__ = "clients"

    id = Column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    client_id = Column("client_id", String, unique=True, nullable=False, index=True)
    client_name = Column("client_name", String, nullable=False)
    shopify_store_id = Column("shopify_store_id", String, nullable=False)
    shopify_api_key = Column("shopify_api_key", String, nullable=True)
    shopify_api_secret = Column("shopify_api_secret", String, nullable=True)  # Encrypted
    shopify_access_token = Column("shopify_access_token", String, nullable=True)  # Encrypted
    shiprocket_api_key = Column("shiprocket_api_key", String, nullable=True)  # Encrypted
    shiprocket_email = Column("shiprocket_email", String, nullable=True)
    shiprocket_password = Column("shiprocket_password", String, nullable=True)  # Encrypted
    logo_url = Column("logo_url", String, nullable=True)
    is_active = Column("is_active", Boolean, default=True, nullable=False)
    created_at = Column("created_at", DateTime, server_default=func.now())

    @property
    def has_courier_credentials(self) -> bool:
        return bool((self.shiprocket_email and self.shiprocket_password) or self.shiprocket_api_key)


class Order(Base):
    __tablename__ = "orders"

    id = Column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    # Natural key shared with Shopify / Shiprocket; unique across all tenants
    order_id = Column("order_id", String, unique=True, nullable=False, index=True)
    client_id = Column("client_id", String, nullable=False, index=True)
    shopify_store_id = Column("shopify_store_id", String, nullable=False)
    fulfillment_status = Column(
        "fulfillment_status",
        SQLEnum(OrderStatus, values_callable=_enum_values, native_enum=False, length=20),
        nullable=False,
        default=OrderStatus.PENDING,
    )
    delivery_status = Column(
        "delivery_status",
        SQLEnum(OrderStatus, values_callable=_enum_values, native_enum=False, length=20),
        nullable=True,
    )
    pickup_date = Column("pickup_date", DateTime, nullable=True)
    shipping_details = Column("shipping_details", JSON, nullable=False, default=dict)
    product_details = Column("product_details", JSON, nullable=False, default=dict)
    courier = Column("courier", String, nullable=True)
    awb = Column("awb", String, nullable=True, index=True)
    last_scan_location = Column("last_scan_location", String, nullable=True)
    last_timestamp = Column("last_timestamp", DateTime, nullable=True)
    last_remark = Column("last_remark", String, nullable=True)
    created_at = Column("created_at", DateTime, server_default=func.now())
    updated_at = Column("updated_at", DateTime, server_default=func.now(), onupdate=func.now())

    __table_args__ = (
        Index("ix_orders_client_status", "client_id", "fulfillment_status"),
    )

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "order_id": self.order_id,
            "client_id": self.client_id,
            "shopify_store_id": self.shopify_store_id,
            "fulfillment_status": self.fulfillment_status.value if self.fulfillment_status else None,
            "delivery_status": self.delivery_status.value if self.delivery_status else None,
            "pickup_date": self.pickup_date.isoformat() if self.pickup_date else None,
            "shipping_details": self.shipping_details or {},
            "product_details": self.product_details or {},
            "courier": self.courier,
            "awb": self.awb,
            "last_scan_location": self.last_scan_location,
            "last_timestamp": self.last_timestamp.isoformat() if self.last_timestamp else None,
            "last_remark": self.last_remark,
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }
