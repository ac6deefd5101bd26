import dataclasses
from datetime import datetime
from unittest.mock import patch

import pytest
from fastapi.testclient import TestClient
from sqlalchemy.exc import OperationalError

from app import create_app
from billing.catalog_cache import CatalogCache
from billing.webhooks import handle_event, is_catalog_event
from models import BusinessProfile, BusinessSubscription, SubscriptionPlan

PERIOD_START = 1_700_000_000
PERIOD_END = 1_702_592_000


def _subscription(status="active", **metadata):
    return {
        "id": "sub_123",
        "object": "subscription",
        "customer": "cus_123",
        "status": status,
        "current_period_start": PERIOD_START,
        "current_period_end": PERIOD_END,
        "metadata": metadata,
    }


def _post_event(client, sign_payload, payload):
    return client.post(
        "/webhook",
        content=payload,
        headers={"Stripe-Signature": sign_payload(payload), "Content-Type": "application/json"},
    )


def test_price_event_triggers_exactly_one_refresh(client, gateway, sign_payload, make_event):
    before = gateway.product_calls

    response = _post_event(client, sign_payload, make_event("price.updated", {"id": "price_1", "object": "price"}))

    assert response.status_code == 200
    assert response.json() == {"received": True}
    assert gateway.product_calls == before + 1


def test_subscription_event_triggers_no_refresh(client, gateway, sign_payload, make_event):
    before = gateway.product_calls

    response = _post_event(client, sign_payload, make_event("customer.subscription.updated", _subscription()))

    assert response.status_code == 200
    assert gateway.product_calls == before


def test_refresh_failure_is_acknowledged(client, gateway, sign_payload, make_event):
    gateway.error = RuntimeError("stripe unavailable")

    response = _post_event(client, sign_payload, make_event("product.deleted", {"id": "prod_1", "object": "product"}))

    assert response.status_code == 200
    assert response.json() == {"received": True}


def test_subscription_created_is_mirrored(client, session_factory, sign_payload, make_event):
    payload = make_event(
        "customer.subscription.created",
        _subscription(userId="user_1", planName="Pro Plan", billingCycle="yearly"),
    )

    response = _post_event(client, sign_payload, payload)

    assert response.status_code == 200
    with session_factory() as session:
        record = session.query(BusinessSubscription).filter_by(stripe_subscription_id="sub_123").one()
        plan = session.query(SubscriptionPlan).filter_by(slug="pro-plan").one()
        profile = session.query(BusinessProfile).filter_by(user_id="user_1").one()

        assert record.status == "active"
        assert record.user_id == "user_1"
        assert record.billing_cycle == "yearly"
        assert record.stripe_customer_id == "cus_123"
        assert record.plan_id == plan.plan_id
        assert record.start_date is not None
        assert record.current_period_start.replace(tzinfo=None) == datetime(2023, 11, 14, 22, 13, 20)
        assert record.next_billing_date == record.current_period_end
        assert profile.subscription_status == "active"
        assert profile.subscription_id == "sub_123"
        assert profile.stripe_customer_id == "cus_123"


def test_subscription_lifecycle_updates_existing_record(client, session_factory, sign_payload, make_event):
    _post_event(client, sign_payload, make_event("customer.subscription.created", _subscription(status="incomplete", userId="user_1")))
    _post_event(client, sign_payload, make_event("customer.subscription.updated", _subscription(status="past_due", userId="user_1")))

    with session_factory() as session:
        records = session.query(BusinessSubscription).all()
        profile = session.query(BusinessProfile).filter_by(user_id="user_1").one()
        assert len(records) == 1
        assert records[0].status == "past_due"
        assert records[0].plan_id is None
        assert records[0].billing_cycle == "monthly"
        assert profile.subscription_status == "past_due"

    _post_event(client, sign_payload, make_event("customer.subscription.deleted", _subscription(status="canceled", userId="user_1")))

    with session_factory() as session:
        record = session.query(BusinessSubscription).one()
        profile = session.query(BusinessProfile).filter_by(user_id="user_1").one()
        assert record.status == "canceled"
        assert profile.subscription_status == "canceled"
        assert profile.subscription_id is None
        assert profile.is_active is False


def test_subscription_without_user_is_ignored(client, session_factory, sign_payload, make_event):
    response = _post_event(client, sign_payload, make_event("customer.subscription.created", _subscription()))

    assert response.status_code == 200
    with session_factory() as session:
        assert session.query(BusinessSubscription).count() == 0


def test_profile_store_failure_returns_500(client, sign_payload, make_event):
    payload = make_event("customer.subscription.updated", _subscription(userId="user_1"))

    with patch(
        "billing.webhooks.upsert_subscription",
        side_effect=OperationalError("UPDATE", {}, Exception("database is locked")),
    ):
        response = _post_event(client, sign_payload, payload)

    assert response.status_code == 500
    assert response.json() == {"error": "Webhook handler failed"}


def test_invalid_signature_is_rejected(client, sign_payload, make_event):
    payload = make_event("price.updated", {"id": "price_1", "object": "price"})

    response = client.post(
        "/webhook",
        content=payload,
        headers={"Stripe-Signature": sign_payload(payload, secret="whsec_other")},
    )

    assert response.status_code == 400


def test_missing_signature_header_is_rejected(client, make_event):
    response = client.post("/webhook", content=make_event("price.updated", {"id": "price_1"}))

    assert response.status_code == 400


def test_missing_webhook_secret_is_rejected(settings, gateway, session_factory, sign_payload, make_event):
    app = create_app(
        dataclasses.replace(settings, stripe_webhook_secret=None),
        gateway=gateway,
        session_factory=session_factory,
    )
    payload = make_event("price.updated", {"id": "price_1"})

    with TestClient(app) as client:
        response = client.post("/webhook", content=payload, headers={"Stripe-Signature": sign_payload(payload)})

    assert response.status_code == 400
    assert "secret not configured" in response.text


def test_unhandled_event_is_acknowledged(client, gateway, sign_payload, make_event):
    before = gateway.product_calls

    response = _post_event(client, sign_payload, make_event("invoice.paid", {"id": "in_1", "object": "invoice"}))

    assert response.status_code == 200
    assert gateway.product_calls == before


@pytest.mark.parametrize(
    "event_type, expected",
    [
        ("product.created", True),
        ("price.deleted", True),
        ("customer.subscription.updated", False),
        ("invoice.payment_succeeded", False),
        (None, False),
    ],
)
def test_is_catalog_event(event_type, expected):
    assert is_catalog_event(event_type) is expected


@pytest.mark.asyncio
async def test_handle_event_without_store_skips_subscription_events(gateway):
    cache = CatalogCache(gateway)
    event = {"type": "customer.subscription.created", "data": {"object": _subscription(userId="user_1")}}

    await handle_event(event, catalog_cache=cache, session_factory=None)

    assert gateway.product_calls == 0


@pytest.mark.asyncio
async def test_handle_event_refreshes_catalogue_once(gateway):
    cache = CatalogCache(gateway)
    event = {"type": "product.updated", "data": {"object": {"id": "prod_basic"}}}

    await handle_event(event, catalog_cache=cache)

    assert gateway.product_calls == 1
    assert cache.snapshot.populated
