"""Stripe integration helpers for the catalogue and subscription relay."""

from __future__ import annotations

import logging
import os
from functools import lru_cache
from typing import Any, Dict, List, Mapping, Optional

import stripe
from starlette.concurrency import run_in_threadpool

from .catalog import RawPrice, RawProduct, product_reference

logger = logging.getLogger(__name__)

APP_NAME = "Billing Gateway"
APP_VERSION = "1.0.0"
DEFAULT_MAX_NETWORK_RETRIES = 2
LIST_PAGE_SIZE = 100


def _get_required_env(name: str) -> str:
    value = os.getenv(name)
    if not value:
        raise RuntimeError(f"Environment variable {name} is required for billing.")
    return value


@lru_cache(maxsize=1)
def _configure_stripe() -> None:
    stripe.api_key = _get_required_env("STRIPE_SECRET_KEY")
    stripe.max_network_retries = int(
        os.getenv("STRIPE_MAX_NETWORK_RETRIES", str(DEFAULT_MAX_NETWORK_RETRIES))
    )
    stripe.app_info = {
        "name": APP_NAME,
        "version": APP_VERSION,
    }


def stripe_field(obj: Any, name: str, default: Any = None) -> Any:
    """Read ``name`` from a Stripe object, a plain mapping or an attribute bag.

    Item access comes first so keys such as ``items`` resolve to the Stripe
    field and not to a ``dict`` method.
    """

    if obj is None or isinstance(obj, (str, bytes)):
        return default
    if isinstance(obj, Mapping) or hasattr(obj, "__getitem__"):
        try:
            value = obj[name]
        except (KeyError, IndexError, TypeError):
            value = default
    else:
        value = getattr(obj, name, default)
    return default if value is None else value


def _metadata(obj: Any) -> Dict[str, str]:
    raw = stripe_field(obj, "metadata")
    if raw is None:
        return {}
    if not isinstance(raw, Mapping) and hasattr(raw, "to_dict"):
        raw = raw.to_dict()
    if not isinstance(raw, Mapping):
        return {}
    return {str(key): str(value) for key, value in raw.items() if value is not None}


def raw_product_from_stripe(product: Any) -> RawProduct:
    return RawProduct(
        id=stripe_field(product, "id", ""),
        name=stripe_field(product, "name", ""),
        description=stripe_field(product, "description"),
        active=bool(stripe_field(product, "active", True)),
        metadata=_metadata(product),
    )


def raw_price_from_stripe(price: Any) -> RawPrice:
    recurring = stripe_field(price, "recurring")
    return RawPrice(
        id=stripe_field(price, "id", ""),
        product_id=product_reference(stripe_field(price, "product")),
        unit_amount=stripe_field(price, "unit_amount"),
        currency=stripe_field(price, "currency", ""),
        active=bool(stripe_field(price, "active", True)),
        interval=stripe_field(recurring, "interval"),
        interval_count=stripe_field(recurring, "interval_count"),
    )


def _list_active_products() -> List[RawProduct]:
    _configure_stripe()
    listing = stripe.Product.list(active=True, limit=LIST_PAGE_SIZE)
    return [raw_product_from_stripe(product) for product in listing.auto_paging_iter()]


def _list_active_prices() -> List[RawPrice]:
    _configure_stripe()
    listing = stripe.Price.list(active=True, limit=LIST_PAGE_SIZE)
    return [raw_price_from_stripe(price) for price in listing.auto_paging_iter()]


class StripeCatalogGateway:
    """Catalogue source backed by the Stripe API.

    The SDK is blocking, so listings run in the threadpool to keep the event
    loop serving readers while a refresh is in flight.
    """

    async def list_active_products(self) -> List[RawProduct]:
        products = await run_in_threadpool(_list_active_products)
        logger.debug("Fetched %s active products from Stripe", len(products))
        return products

    async def list_active_prices(self) -> List[RawPrice]:
        prices = await run_in_threadpool(_list_active_prices)
        logger.debug("Fetched %s active prices from Stripe", len(prices))
        return prices


def create_or_retrieve_customer(*, email: str, user_id: Optional[str] = None) -> stripe.Customer:
    """Return the first Stripe customer registered with ``email`` or create one."""

    _configure_stripe()

    existing = stripe.Customer.list(email=email, limit=1)
    data = stripe_field(existing, "data", [])
    if data:
        customer = data[0]
        logger.info("Found existing customer %s for %s", customer.id, email)
        return customer

    metadata: Dict[str, str] = {}
    if user_id:
        metadata["userId"] = user_id
    customer = stripe.Customer.create(email=email, metadata=metadata)
    logger.info("Created customer %s for %s", customer.id, email)
    return customer


def create_subscription(
    *,
    customer_id: str,
    price_id: str,
    metadata: Optional[Dict[str, str]] = None,
) -> stripe.Subscription:
    """Create an incomplete subscription whose first invoice the client confirms."""

    _configure_stripe()

    return stripe.Subscription.create(
        customer=customer_id,
        items=[{"price": price_id}],
        payment_behavior="default_incomplete",
        payment_settings={"save_default_payment_method": "on_subscription"},
        expand=["latest_invoice.payment_intent"],
        metadata=metadata or {},
    )


def create_payment_intent(
    *,
    amount: int,
    currency: str,
    customer_id: str,
    metadata: Optional[Dict[str, str]] = None,
) -> stripe.PaymentIntent:
    _configure_stripe()

    return stripe.PaymentIntent.create(
        amount=amount,
        currency=currency,
        customer=customer_id,
        setup_future_usage="off_session",
        metadata=metadata or {},
    )


def cancel_subscription(*, subscription_id: str) -> stripe.Subscription:
    """Schedule cancellation at the end of the current billing period."""

    _configure_stripe()

    return stripe.Subscription.modify(subscription_id, cancel_at_period_end=True)


def retrieve_subscription(*, subscription_id: str) -> stripe.Subscription:
    _configure_stripe()

    return stripe.Subscription.retrieve(
        subscription_id,
        expand=["default_payment_method", "items.data.price.product"],
    )


def subscription_items(subscription: Any) -> List[Any]:
    items = stripe_field(subscription, "items")
    return list(stripe_field(items, "data", []) or [])


def subscription_period(subscription: Any) -> Dict[str, Optional[int]]:
    """Return the current period bounds as unix timestamps.

    Newer API versions report the period on each subscription item instead of
    the subscription itself; the first item is used in that case.
    """

    start = stripe_field(subscription, "current_period_start")
    end = stripe_field(subscription, "current_period_end")
    if start is None or end is None:
        items = subscription_items(subscription)
        if items:
            start = start if start is not None else stripe_field(items[0], "current_period_start")
            end = end if end is not None else stripe_field(items[0], "current_period_end")
    return {"start": start, "end": end}


def latest_client_secret(subscription: Any) -> Optional[str]:
    invoice = stripe_field(subscription, "latest_invoice")
    payment_intent = stripe_field(invoice, "payment_intent")
    return stripe_field(payment_intent, "client_secret")
