"""
Pytest configuration and shared fixtures for the billing gateway tests.
"""
import hashlib
import hmac
import json
import os
import time

os.environ.setdefault("STRIPE_SECRET_KEY", "sk_test_dummy")
os.environ.pop("DATABASE_URL", None)

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.pool import StaticPool

from app import create_app
from billing.catalog import RawPrice, RawProduct
from config import Settings
from db import build_session_factory, create_tables

WEBHOOK_SECRET = "whsec_test_secret"


class FakeGateway:
    """In-memory catalogue source counting how often it is asked for data."""

    def __init__(self, products=None, prices=None):
        self.products = list(products or [])
        self.prices = list(prices or [])
        self.product_calls = 0
        self.price_calls = 0
        self.error = None
        self.gates = []

    async def list_active_products(self):
        self.product_calls += 1
        products = list(self.products)
        error = self.error
        gate = self.gates.pop(0) if self.gates else None
        if gate is not None:
            await gate.wait()
        if error is not None:
            raise error
        return products

    async def list_active_prices(self):
        self.price_calls += 1
        return list(self.prices)


def build_products():
    return [
        RawProduct(
            id="prod_basic",
            name="Basic",
            description="Starter listing tools",
            metadata={"plan_id": "basic", "display_order": "2", "features": '["5 listings"]'},
        ),
        RawProduct(
            id="prod_pro",
            name="Pro Plan",
            description="Everything in Basic and more",
            metadata={"display_order": "1", "features": '["Unlimited listings", "Priority support"]'},
        ),
    ]


def build_prices():
    return [
        RawPrice(id="price_basic_month", product_id="prod_basic", unit_amount=1900, currency="usd", interval="month", interval_count=1),
        RawPrice(id="price_basic_year", product_id="prod_basic", unit_amount=19000, currency="usd", interval="year", interval_count=1),
        RawPrice(id="price_pro_month", product_id="prod_pro", unit_amount=4900, currency="usd", interval="month", interval_count=1),
        RawPrice(id="price_pro_setup", product_id="prod_pro", unit_amount=9900, currency="usd"),
    ]


@pytest.fixture
def gateway():
    return FakeGateway(build_products(), build_prices())


@pytest.fixture
def empty_gateway():
    return FakeGateway()


@pytest.fixture
def session_factory():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    create_tables(bind=engine)
    yield build_session_factory(engine)
    engine.dispose()


@pytest.fixture
def settings():
    return Settings(
        stripe_secret_key="sk_test_dummy",
        stripe_webhook_secret=WEBHOOK_SECRET,
        database_url="sqlite://",
        rate_limit="1000 per minute",
        app_env="development",
        enable_debug_endpoints=True,
    )


@pytest.fixture
def app(settings, gateway, session_factory):
    return create_app(settings, gateway=gateway, session_factory=session_factory)


@pytest.fixture
def client(app):
    """TestClient with the lifespan (and its initial catalogue refresh) running."""

    with TestClient(app) as test_client:
        yield test_client


@pytest.fixture
def sign_payload():
    def _sign(payload, secret=WEBHOOK_SECRET, timestamp=None):
        timestamp = int(time.time()) if timestamp is None else timestamp
        signed = f"{timestamp}.{payload}".encode("utf-8")
        signature = hmac.new(secret.encode("utf-8"), signed, hashlib.sha256).hexdigest()
        return f"t={timestamp},v1={signature}"

    return _sign


@pytest.fixture
def make_event():
    def _make(event_type, data_object):
        return json.dumps(
            {
                "id": "evt_test",
                "object": "event",
                "type": event_type,
                "data": {"object": data_object},
            }
        )

    return _make

