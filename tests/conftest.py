"""
Shared fixtures: in-memory SQLite sessions, seeded clients/orders and fake upstream HTTP.
"""
import os

# Settings are read at import time; keep tests off Postgres and the background scheduler
os.environ["DATABASE_URL"] = "sqlite://"
os.environ["SCHEDULER_ENABLED"] = "false"
os.environ["HTTP_MAX_RETRIES"] = "0"
for _name in ("SHIPROCKET_EMAIL", "SHIPROCKET_PASSWORD", "SHIPROCKET_API_KEY"):
    os.environ[_name] = ""
os.environ.setdefault("JWT_SECRET", "test-secret")

import pytest

from fakes import FakeUpstream
from oms.database import Base, make_engine
from oms.models import OrderStatus
from oms.services.storage import OrderStorage
from sqlalchemy.orm import sessionmaker


@pytest.fixture
def db_session():
    engine = make_engine("sqlite://")
    Base.metadata.create_all(bind=engine)
    TestingSessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)
    session = TestingSessionLocal()
    try:
        yield session
    finally:
        session.close()
        engine.dispose()


@pytest.fixture
def storage(db_session):
    return OrderStorage(db_session)


@pytest.fixture
def acme_client(storage):
    return storage.create_client(
        {
            "client_id": "ACME001",
            "client_name": "Acme Retail",
            "shopify_store_id": "acme-store",
            "shopify_access_token": "shpat_acme",
            "logo_url": "https://cdn.example.com/acme.png",
        }
    )


@pytest.fixture
def other_client(storage):
    return storage.create_client(
        {
            "client_id": "OTHER002",
            "client_name": "Other Goods",
            "shopify_store_id": "other-goods",
            "shopify_access_token": "shpat_other",
            "shiprocket_email": "ops@other.example",
            "shiprocket_password": "other-pass",
        }
    )


@pytest.fixture
def make_order(storage):
    def _make(order_id: str, client_id: str = "ACME001", **fields):
        data = {
            "order_id": order_id,
            "client_id": client_id,
            "shopify_store_id": "acme-store",
            "fulfillment_status": OrderStatus.PENDING,
            "shipping_details": {"name": "Asha Rao", "city": "Pune", "payment_mode": "Prepaid", "amount": 499.0},
            "product_details": {"product_name": "Tote Bag", "quantity": 1, "dimensions": [10, 10, 10], "weight": 0.5},
        }
        data.update(fields)
        return storage.create_order(data)

    return _make


@pytest.fixture
def upstream():
    return FakeUpstream()
