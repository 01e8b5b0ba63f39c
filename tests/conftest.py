"""
Shared fixtures: in-memory SQLite store, fake storefront and carrier clients, a fixed clock.
"""
import os

# Must be set before app.config / app.database are imported
os.environ["DATABASE_URL"] = "sqlite://"
os.environ["SYNC_ENABLED"] = "false"
os.environ.setdefault("ENCRYPTION_KEY", "test-encryption-key-for-the-suite")

import asyncio
from datetime import datetime, timedelta
from typing import Optional

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from app.config import Settings
from app.database import Base
from app.models import IntegrationStatus, Operation, ShopifyIntegration
from app.services.carrier_service import CarrierAPIError
from app.services.credentials import encrypt_token
from app.services.order_import import parse_source_datetime

NOW = datetime(2026, 3, 2, 10, 0, 0)
OPERATION_ID = "op-italia"
SHOP_DOMAIN = "loja-italia.myshopify.com"
WEBHOOK_SECRET = "whsec_test_secret"


class FakeStorefront:
    """Serves orders filtered by created_at bounds, oldest first, like the Admin API with order=created_at asc."""

    def __init__(self, orders=None, fail_on_call: Optional[int] = None):
        self.orders = list(orders or [])
        self.fail_on_call = fail_on_call
        self.calls = []
        self.entered: Optional[asyncio.Event] = None
        self.gate: Optional[asyncio.Event] = None

    async def list_orders(self, credentials, params):
        self.calls.append(dict(params))
        if self.entered is not None:
            self.entered.set()
        if self.gate is not None:
            await self.gate.wait()
        if self.fail_on_call == len(self.calls):
            return {"success": False, "error": "Shopify HTTP 503"}
        low = parse_source_datetime(params["created_at_min"])
        high = parse_source_datetime(params["created_at_max"])
        window = sorted(
            (o for o in self.orders if low <= parse_source_datetime(o["created_at"]) <= high),
            key=lambda o: parse_source_datetime(o["created_at"]),
        )
        return {"success": True, "orders": window[: params["limit"]]}


class FakeCarrier:
    """Carrier client double; list_leads(None) is the unfiltered listing."""

    def __init__(self, leads=None, by_country=None, details=None, error: Optional[str] = None):
        self.leads = list(leads or [])
        self.by_country = dict(by_country or {})
        self.details = dict(details or {})
        self.error = error
        self.list_calls = []
        self.status_calls = []

    async def list_leads(self, country=None):
        self.list_calls.append(country)
        if self.error:
            raise CarrierAPIError(self.error)
        if country is None:
            return list(self.leads)
        return list(self.by_country.get(country, []))

    async def get_lead_status(self, lead_number):
        self.status_calls.append(lead_number)
        if self.error:
            raise CarrierAPIError(self.error)
        return self.details.get(lead_number)

    def factory(self, db, operation_id):
        return self


@pytest.fixture
def settings():
    """Small windows and pages so walks stay short: 90 days of history in 30-day windows."""
    s = Settings()
    s.IMPORT_HISTORY_DAYS = 90
    s.IMPORT_WINDOW_DAYS = 30
    s.IMPORT_PAGE_LIMIT = 2
    s.IMPORT_MAX_PAGES = 50
    s.MATCH_BATCH_SIZE = 2
    s.CARRIER_COUNTRY_FILTERS = ["ITALY", "Italy", "italy", "IT"]
    s.SYNC_CYCLE_TIMEOUT_SEC = 5.0
    s.SYNC_FIRST_DELAY_SEC = 0
    return s


@pytest.fixture
def clock():
    return lambda: NOW


@pytest.fixture
def engine():
    eng = create_engine("sqlite://", connect_args={"check_same_thread": False}, poolclass=StaticPool)
    Base.metadata.create_all(bind=eng)
    yield eng
    Base.metadata.drop_all(bind=eng)
    eng.dispose()


@pytest.fixture
def session_factory(engine):
    return sessionmaker(autocommit=False, autoflush=False, bind=engine)


@pytest.fixture
def db_session(session_factory):
    session = session_factory()
    yield session
    session.close()


@pytest.fixture
def operation(db_session):
    """One active operation with an active Shopify integration."""
    op = Operation(id=OPERATION_ID, name="Loja Itália", is_active=True, created_at=NOW - timedelta(days=400))
    db_session.add(op)
    db_session.add(ShopifyIntegration(
        operation_id=OPERATION_ID,
        shop_domain=SHOP_DOMAIN,
        access_token=encrypt_token("shpat_test_token"),
        webhook_secret=encrypt_token(WEBHOOK_SECRET),
        status=IntegrationStatus.ACTIVE,
    ))
    db_session.commit()
    return op


@pytest.fixture
def shopify_order():
    """Builder for Shopify order payloads; created_at defaults to ten days before NOW."""
    def build(order_id, *, phone="+39 333 1234567", first_name="Maria", last_name="Silva",
              created_at=None, fulfillment_status=None, financial_status="pending", **extra):
        created = created_at or (NOW - timedelta(days=10))
        payload = {
            "id": order_id,
            "name": f"#{order_id}",
            "email": f"cliente{order_id}@example.com",
            "created_at": created.strftime("%Y-%m-%dT%H:%M:%S+00:00"),
            "total_price": "49.90",
            "currency": "EUR",
            "financial_status": financial_status,
            "fulfillment_status": fulfillment_status,
            "payment_gateway_names": ["Cash on Delivery (COD)"],
            "shipping_address": {
                "first_name": first_name,
                "last_name": last_name,
                "phone": phone,
                "address1": "Via Roma 1",
                "city": "Milano",
                "province": "MI",
                "country_code": "IT",
                "zip": "20121",
            },
            "line_items": [{"sku": "SKU-1", "title": "Crema", "quantity": 1, "price": "49.90", "variant_id": 77}],
        }
        payload.update(extra)
        return payload
    return build


@pytest.fixture
def storefront():
    return FakeStorefront()


@pytest.fixture
def carrier():
    return FakeCarrier()
