"""Profile-store access for business profiles and subscription mirrors."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, Optional

from sqlalchemy.orm import Session

from core.datetime_utils import isoformat_or_none, utcnow
from models import BusinessProfile, BusinessSubscription, SubscriptionPlan

logger = logging.getLogger(__name__)

PROFILE_FIELDS = frozenset(
    {
        "business_status",
        "is_active",
        "stripe_customer_id",
        "subscription_id",
        "subscription_status",
        "plan_id",
        "plan_name",
        "billing_cycle",
    }
)

PAYMENT_STATUS_MESSAGES = {
    "success": "🎉 Payment successful! Your business profile has been activated and is ready to use.",
    "pending": "⏳ Payment is being processed. Please wait for confirmation.",
    "past_due": "❌ Payment failed. Your business profile has been deactivated. Please update your payment method.",
    "canceled": "⚠️ Subscription has been canceled. Your business profile is inactive.",
    "no_profile": "⚠️ No business profile found. Please create a business profile first.",
}


@dataclass(frozen=True)
class SubscriptionMirror:
    """Provider-reported subscription state copied into the profile store."""

    subscription_id: str
    customer_id: Optional[str]
    status: str
    plan_name: str
    billing_cycle: str
    current_period_start: Optional[datetime] = None
    current_period_end: Optional[datetime] = None
    next_billing_date: Optional[datetime] = None


def find_profile(session: Session, user_id: str) -> Optional[BusinessProfile]:
    return (
        session.query(BusinessProfile)
        .filter(BusinessProfile.user_id == user_id)
        .one_or_none()
    )


def find_plan_by_name(session: Session, name: str) -> Optional[SubscriptionPlan]:
    return (
        session.query(SubscriptionPlan)
        .filter(SubscriptionPlan.name == name)
        .first()
    )


def find_subscription(session: Session, stripe_subscription_id: str) -> Optional[BusinessSubscription]:
    return (
        session.query(BusinessSubscription)
        .filter(BusinessSubscription.stripe_subscription_id == stripe_subscription_id)
        .one_or_none()
    )


def latest_subscription(session: Session, user_id: str) -> Optional[BusinessSubscription]:
    return (
        session.query(BusinessSubscription)
        .filter(BusinessSubscription.user_id == user_id)
        .order_by(BusinessSubscription.created_at.desc(), BusinessSubscription.id.desc())
        .first()
    )


def payment_status(
    profile: Optional[BusinessProfile],
    subscription: Optional[BusinessSubscription],
) -> Dict[str, Any]:
    """Summarise a user's payment state for the mobile client.

    Read-only: the profile and subscription rows are reported as stored.
    """

    status = "no_subscription"
    message = "No subscription found"
    is_active = False

    if profile is not None and subscription is not None:
        is_active = bool(profile.is_active) and profile.business_status == "Active"
        if subscription.status == "active" and is_active:
            status, message = "success", PAYMENT_STATUS_MESSAGES["success"]
        elif subscription.status == "incomplete":
            status, message = "pending", PAYMENT_STATUS_MESSAGES["pending"]
        elif subscription.status == "past_due":
            status, message = "error", PAYMENT_STATUS_MESSAGES["past_due"]
        elif subscription.status == "canceled":
            status, message = "canceled", PAYMENT_STATUS_MESSAGES["canceled"]
        else:
            status = "error"
            message = (
                f"❌ Subscription status: {subscription.status}. "
                f"Business profile status: {profile.business_status}"
            )
    elif profile is None:
        status, message = "no_profile", PAYMENT_STATUS_MESSAGES["no_profile"]

    return {
        "status": status,
        "message": message,
        "isActive": is_active,
        "businessProfile": None
        if profile is None
        else {
            "businessStatus": profile.business_status,
            "isActive": bool(profile.is_active),
            "hasStripeCustomer": bool(profile.stripe_customer_id),
        },
        "subscription": None
        if subscription is None
        else {
            "status": subscription.status,
            "stripeSubscriptionId": subscription.stripe_subscription_id,
            "planId": subscription.plan_id,
            "billingCycle": subscription.billing_cycle,
            "startDate": isoformat_or_none(subscription.start_date),
        },
    }


def upsert_profile(session: Session, user_id: str, *, commit: bool = True, **fields: Any) -> BusinessProfile:
    """Create or update the business profile keyed by ``user_id``.

    Only the columns named in ``fields`` are written; unknown names raise
    ``ValueError`` before anything touches the session.
    """

    unknown = set(fields) - PROFILE_FIELDS
    if unknown:
        raise ValueError(f"Unknown business profile fields: {', '.join(sorted(unknown))}")

    profile = find_profile(session, user_id)
    if profile is None:
        profile = BusinessProfile(user_id=user_id)
        session.add(profile)

    for name, value in fields.items():
        setattr(profile, name, value)
    profile.updated_at = utcnow()

    if commit:
        session.commit()
    else:
        session.flush()

    logger.info("Updated business profile for user %s (%s)", user_id, ", ".join(sorted(fields)))
    return profile


def upsert_subscription(
    session: Session,
    user_id: str,
    mirror: SubscriptionMirror,
    *,
    commit: bool = True,
) -> BusinessSubscription:
    """Insert or update the subscription mirror keyed by the Stripe subscription id."""

    profile = find_profile(session, user_id)

    plan = find_plan_by_name(session, mirror.plan_name)
    if plan is None:
        logger.warning(
            "Plan not found in database: %s. Storing subscription %s without plan reference.",
            mirror.plan_name,
            mirror.subscription_id,
        )

    now = utcnow()
    record = find_subscription(session, mirror.subscription_id)
    if record is None:
        record = BusinessSubscription(
            stripe_subscription_id=mirror.subscription_id,
            start_date=now,
        )
        session.add(record)

    record.business_id = profile.business_id if profile is not None else None
    record.plan_id = plan.plan_id if plan is not None else None
    record.user_id = user_id
    record.status = mirror.status
    record.billing_cycle = mirror.billing_cycle
    record.stripe_customer_id = mirror.customer_id
    record.next_billing_date = mirror.next_billing_date
    record.current_period_start = mirror.current_period_start or now
    record.current_period_end = mirror.current_period_end
    record.updated_at = now

    if commit:
        session.commit()
    else:
        session.flush()

    logger.info("Stored subscription %s for user %s (%s)", mirror.subscription_id, user_id, mirror.status)
    return record
