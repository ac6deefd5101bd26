"""Stripe webhook parsing and dispatch for catalogue and subscription events."""

from __future__ import annotations

import logging
from typing import Any, Callable, Optional

import stripe
from fastapi import HTTPException
from sqlalchemy.orm import Session
from starlette.concurrency import run_in_threadpool

from core.datetime_utils import from_unix_timestamp
from services.profiles import SubscriptionMirror, upsert_profile, upsert_subscription

from .catalog_cache import CatalogCache
from .stripe_client import stripe_field, subscription_period

logger = logging.getLogger(__name__)

CATALOG_EVENT_TYPES = frozenset(
    {
        "product.created",
        "product.updated",
        "product.deleted",
        "price.created",
        "price.updated",
        "price.deleted",
    }
)
SUBSCRIPTION_CREATED = "customer.subscription.created"
SUBSCRIPTION_UPDATED = "customer.subscription.updated"
SUBSCRIPTION_DELETED = "customer.subscription.deleted"

UNKNOWN_PLAN_NAME = "Unknown Plan"
DEFAULT_BILLING_CYCLE = "monthly"


def is_catalog_event(event_type: Optional[str]) -> bool:
    return event_type in CATALOG_EVENT_TYPES


def parse_event(payload: bytes, signature_header: str, signing_secret: str) -> stripe.Event:
    """Validate and parse a Stripe webhook event."""

    try:
        event = stripe.Webhook.construct_event(
            payload=payload,
            sig_header=signature_header,
            secret=signing_secret,
        )
    except stripe.SignatureVerificationError as exc:
        logger.warning("Invalid Stripe signature: %s", exc)
        raise HTTPException(status_code=400, detail=f"Webhook Error: {exc}") from exc
    except ValueError as exc:
        logger.error("Failed to parse Stripe webhook: %s", exc)
        raise HTTPException(status_code=400, detail=f"Webhook Error: {exc}") from exc

    return event


def _event_object(event: Any) -> Any:
    return event["data"]["object"]


def _subscription_user_id(subscription_data: Any) -> Optional[str]:
    metadata = stripe_field(subscription_data, "metadata", {})
    return stripe_field(metadata, "userId") or None


def mirror_from_subscription(subscription_data: Any, *, status: Optional[str] = None) -> SubscriptionMirror:
    metadata = stripe_field(subscription_data, "metadata", {})
    period = subscription_period(subscription_data)
    period_end = from_unix_timestamp(period["end"])
    return SubscriptionMirror(
        subscription_id=stripe_field(subscription_data, "id"),
        customer_id=stripe_field(subscription_data, "customer"),
        status=status or stripe_field(subscription_data, "status", "incomplete"),
        plan_name=stripe_field(metadata, "planName") or UNKNOWN_PLAN_NAME,
        billing_cycle=stripe_field(metadata, "billingCycle") or DEFAULT_BILLING_CYCLE,
        current_period_start=from_unix_timestamp(period["start"]),
        current_period_end=period_end,
        next_billing_date=period_end,
    )


def handle_subscription_created(session: Session, event: stripe.Event) -> None:
    subscription_data = _event_object(event)
    user_id = _subscription_user_id(subscription_data)
    if not user_id:
        logger.info("Subscription %s carries no userId metadata", stripe_field(subscription_data, "id"))
        return

    mirror = mirror_from_subscription(subscription_data)
    upsert_subscription(session, user_id, mirror)
    upsert_profile(
        session,
        user_id,
        subscription_status=mirror.status,
        subscription_id=mirror.subscription_id,
        stripe_customer_id=mirror.customer_id,
    )


def handle_subscription_updated(session: Session, event: stripe.Event) -> None:
    subscription_data = _event_object(event)
    user_id = _subscription_user_id(subscription_data)
    if not user_id:
        logger.info("Subscription %s carries no userId metadata", stripe_field(subscription_data, "id"))
        return

    mirror = mirror_from_subscription(subscription_data)
    upsert_subscription(session, user_id, mirror)
    upsert_profile(session, user_id, subscription_status=mirror.status)


def handle_subscription_deleted(session: Session, event: stripe.Event) -> None:
    subscription_data = _event_object(event)
    user_id = _subscription_user_id(subscription_data)
    if not user_id:
        logger.info("Subscription %s carries no userId metadata", stripe_field(subscription_data, "id"))
        return

    mirror = mirror_from_subscription(subscription_data, status="canceled")
    upsert_subscription(session, user_id, mirror)
    upsert_profile(session, user_id, subscription_status="canceled", subscription_id=None)


SUBSCRIPTION_HANDLERS = {
    SUBSCRIPTION_CREATED: handle_subscription_created,
    SUBSCRIPTION_UPDATED: handle_subscription_updated,
    SUBSCRIPTION_DELETED: handle_subscription_deleted,
}


async def refresh_catalog_for_event(catalog_cache: CatalogCache, event_type: str) -> bool:
    """Force one catalogue refresh; failures are logged and reported as False."""

    logger.info("Product/price catalogue changed: %s", event_type)
    try:
        await catalog_cache.refresh()
    except Exception:
        logger.exception("Failed to refresh product catalogue after %s", event_type)
        return False
    logger.info("Product catalogue refreshed due to webhook event")
    return True


async def handle_event(
    event: stripe.Event,
    *,
    catalog_cache: CatalogCache,
    session_factory: Optional[Callable[[], Session]] = None,
) -> None:
    """Dispatch a verified webhook event.

    Profile-store errors propagate so the endpoint can answer with a 5xx and
    Stripe retries the delivery.
    """

    event_type = event["type"]

    if is_catalog_event(event_type):
        await refresh_catalog_for_event(catalog_cache, event_type)
        return

    handler = SUBSCRIPTION_HANDLERS.get(event_type)
    if handler is None:
        logger.info("Unhandled Stripe webhook event type: %s", event_type)
        return

    logger.info("Stripe %s: %s", event_type, stripe_field(_event_object(event), "id"))
    if session_factory is None:
        logger.warning("Profile store not configured; skipping %s", event_type)
        return

    def _run() -> None:
        with session_factory() as session:
            handler(session, event)

    await run_in_threadpool(_run)
