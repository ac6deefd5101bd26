"""FastAPI router relaying subscription and payment operations to Stripe."""

from __future__ import annotations

import logging
from typing import Any, Callable, Dict, Literal, Optional

import stripe
from fastapi import APIRouter, Depends, status
from fastapi.responses import JSONResponse
from pydantic import BaseModel, ConfigDict, Field, field_validator
from sqlalchemy.orm import Session
from starlette.concurrency import run_in_threadpool

from billing.catalog_cache import CatalogCache
from billing.stripe_client import (
    cancel_subscription,
    create_or_retrieve_customer,
    create_payment_intent,
    create_subscription,
    latest_client_secret,
    retrieve_subscription,
    stripe_field,
    subscription_items,
    subscription_period,
)
from routers.deps import get_catalog_cache, get_session_factory
from services.profiles import find_profile, latest_subscription, payment_status, upsert_profile

logger = logging.getLogger(__name__)

router = APIRouter()

EMAIL_PATTERN = r"^[^@\s]+@[^@\s]+\.[^@\s]+$"
MIN_PAYMENT_AMOUNT = 50


class _CamelModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True, str_strip_whitespace=True)


class _CustomerFields(_CamelModel):
    email: str = Field(..., pattern=EMAIL_PATTERN, max_length=254)
    user_id: Optional[str] = Field(default=None, alias="userId")
    plan_id: str = Field(..., alias="planId", min_length=1)
    plan_name: str = Field(..., alias="planName", min_length=1)
    billing_cycle: Literal["monthly", "yearly"] = Field(..., alias="billingCycle")

    @field_validator("email")
    @classmethod
    def _normalize_email(cls, value: str) -> str:
        return value.lower()


class CreateSubscriptionPayload(_CustomerFields):
    price_id: str = Field(..., alias="priceId", min_length=1)


class CreatePaymentIntentPayload(_CustomerFields):
    amount: int = Field(..., ge=MIN_PAYMENT_AMOUNT)
    currency: Literal["usd"]


class CancelSubscriptionPayload(_CamelModel):
    subscription_id: str = Field(..., alias="subscriptionId", min_length=1)
    user_id: Optional[str] = Field(default=None, alias="userId")


def _error_type(exc: Exception) -> str:
    if isinstance(exc, stripe.StripeError):
        return type(exc).__name__
    return "server_error"


def _stripe_error_response(exc: Exception, default_message: str) -> JSONResponse:
    if isinstance(exc, stripe.CardError):
        message = exc.user_message or str(exc)
    elif isinstance(exc, stripe.InvalidRequestError):
        message = "Invalid payment information provided"
    else:
        message = default_message
    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content={"error": message, "type": _error_type(exc)},
    )


async def _record_profile(
    session_factory: Optional[Callable[[], Session]],
    user_id: Optional[str],
    **fields: Any,
) -> None:
    """Best-effort profile update; failures are logged and never surface."""

    if not user_id:
        return
    if session_factory is None:
        logger.warning("Profile store not configured, skipping profile update for %s", user_id)
        return

    def _write() -> None:
        with session_factory() as session:
            upsert_profile(session, user_id, **fields)

    try:
        await run_in_threadpool(_write)
    except Exception as exc:
        logger.warning("Failed to update business profile for %s: %s", user_id, exc)


def _relay_metadata(payload: _CustomerFields, source: str) -> Dict[str, str]:
    return {
        "userId": payload.user_id or "",
        "planId": payload.plan_id,
        "planName": payload.plan_name,
        "billingCycle": payload.billing_cycle,
        "source": source,
    }


@router.post("/create-subscription")
async def create_subscription_endpoint(
    payload: CreateSubscriptionPayload,
    cache: CatalogCache = Depends(get_catalog_cache),
    session_factory=Depends(get_session_factory),
):
    logger.info(
        "Creating subscription for %s with plan %s (%s)",
        payload.email,
        payload.plan_id,
        payload.billing_cycle,
    )

    try:
        valid_price_id = await cache.validate_price(payload.plan_id, payload.billing_cycle)
    except Exception as exc:
        logger.exception("Error fetching product catalogue for price validation")
        return JSONResponse(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            content={"error": "Failed to fetch product catalog", "message": str(exc)},
        )

    if valid_price_id is None or valid_price_id != payload.price_id:
        logger.warning(
            "Invalid price id %s for plan %s (%s)",
            payload.price_id,
            payload.plan_id,
            payload.billing_cycle,
        )
        return JSONResponse(
            status_code=status.HTTP_400_BAD_REQUEST,
            content={
                "error": "Invalid price ID for the selected plan",
                "availablePlans": list(cache.snapshot.prices.keys()),
            },
        )

    try:
        customer = await run_in_threadpool(
            create_or_retrieve_customer, email=payload.email, user_id=payload.user_id
        )
    except Exception as exc:
        logger.exception("Error creating or retrieving customer for %s", payload.email)
        return _stripe_error_response(exc, "Failed to process customer information")

    try:
        subscription = await run_in_threadpool(
            create_subscription,
            customer_id=customer.id,
            price_id=payload.price_id,
            metadata=_relay_metadata(payload, "mobile_app"),
        )
    except Exception as exc:
        logger.exception("Error creating subscription for %s", payload.email)
        return _stripe_error_response(exc, "Failed to create subscription")

    logger.info("Subscription created: %s for customer %s", subscription.id, customer.id)

    await _record_profile(
        session_factory,
        payload.user_id,
        stripe_customer_id=customer.id,
        subscription_id=subscription.id,
        subscription_status=subscription.status,
        plan_id=payload.plan_id,
        plan_name=payload.plan_name,
        billing_cycle=payload.billing_cycle,
    )

    response: Dict[str, Any] = {
        "subscriptionId": subscription.id,
        "customerId": customer.id,
        "status": subscription.status,
        "clientSecret": latest_client_secret(subscription),
        "planId": payload.plan_id,
        "planName": payload.plan_name,
        "billingCycle": payload.billing_cycle,
    }
    if subscription.status == "incomplete":
        response["requiresAction"] = True
    return response


@router.post("/create-payment-intent")
async def create_payment_intent_endpoint(payload: CreatePaymentIntentPayload):
    logger.info("Creating payment intent for %s - amount %s %s", payload.email, payload.amount, payload.currency)

    try:
        customer = await run_in_threadpool(
            create_or_retrieve_customer, email=payload.email, user_id=payload.user_id
        )
        intent = await run_in_threadpool(
            create_payment_intent,
            amount=payload.amount,
            currency=payload.currency,
            customer_id=customer.id,
            metadata=_relay_metadata(payload, "mobile_app_platform_pay"),
        )
    except Exception as exc:
        logger.exception("Error creating payment intent for %s", payload.email)
        return _stripe_error_response(exc, "Failed to create payment intent")

    logger.info("Payment intent created: %s", intent.id)
    return {
        "clientSecret": intent.client_secret,
        "customerId": customer.id,
        "paymentIntentId": intent.id,
    }


@router.post("/cancel-subscription")
async def cancel_subscription_endpoint(
    payload: CancelSubscriptionPayload,
    session_factory=Depends(get_session_factory),
):
    logger.info("Canceling subscription: %s", payload.subscription_id)

    try:
        subscription = await run_in_threadpool(cancel_subscription, subscription_id=payload.subscription_id)
    except Exception as exc:
        logger.exception("Error canceling subscription %s", payload.subscription_id)
        return _stripe_error_response(exc, "Failed to cancel subscription")

    await _record_profile(session_factory, payload.user_id, subscription_status="canceled")

    return {
        "subscriptionId": subscription.id,
        "status": subscription.status,
        "cancelAtPeriodEnd": bool(stripe_field(subscription, "cancel_at_period_end", False)),
        "currentPeriodEnd": subscription_period(subscription)["end"],
    }


def _serialize_subscription_item(item: Any) -> Dict[str, Any]:
    price = stripe_field(item, "price")
    product = stripe_field(price, "product")
    recurring = stripe_field(price, "recurring")
    return {
        "id": stripe_field(item, "id"),
        "priceId": stripe_field(price, "id"),
        "productName": stripe_field(product, "name"),
        "unitAmount": stripe_field(price, "unit_amount"),
        "currency": stripe_field(price, "currency"),
        "interval": stripe_field(recurring, "interval"),
    }


@router.get("/subscription/{subscription_id}")
async def get_subscription(subscription_id: str):
    try:
        subscription = await run_in_threadpool(retrieve_subscription, subscription_id=subscription_id)
    except Exception as exc:
        logger.exception("Error retrieving subscription %s", subscription_id)
        return _stripe_error_response(exc, "Failed to retrieve subscription")

    period = subscription_period(subscription)
    return {
        "id": subscription.id,
        "status": subscription.status,
        "currentPeriodStart": period["start"],
        "currentPeriodEnd": period["end"],
        "cancelAtPeriodEnd": bool(stripe_field(subscription, "cancel_at_period_end", False)),
        "items": [_serialize_subscription_item(item) for item in subscription_items(subscription)],
    }


@router.get("/payment-status/{user_id}")
async def get_payment_status(user_id: str, session_factory=Depends(get_session_factory)):
    if session_factory is None:
        return JSONResponse(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            content={
                "error": "Database not configured",
                "message": "Profile store integration is not available",
            },
        )

    def _read() -> Dict[str, Any]:
        with session_factory() as session:
            return payment_status(find_profile(session, user_id), latest_subscription(session, user_id))

    try:
        report = await run_in_threadpool(_read)
    except Exception as exc:
        logger.exception("Error getting payment status for %s", user_id)
        return JSONResponse(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            content={
                "status": "error",
                "message": "❌ Failed to check payment status. Please try again.",
                "error": str(exc),
            },
        )

    logger.info("Payment status for %s: %s", user_id, report["status"])
    return report
