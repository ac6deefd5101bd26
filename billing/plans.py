"""Mirror of the Stripe plan catalogue into the ``plans`` table."""

from __future__ import annotations

import logging
from typing import Callable, Dict, Iterable, List, Mapping, Optional

from sqlalchemy.orm import Session
from starlette.concurrency import run_in_threadpool

from models import SubscriptionPlan

from .catalog import CatalogSnapshot, Plan, PriceVariant

logger = logging.getLogger(__name__)


def sync_plan_catalogue(
    session: Session,
    plans: Iterable[Plan],
    *,
    prices: Optional[Mapping[str, Mapping[str, PriceVariant]]] = None,
    allow_updates: bool = True,
    commit: bool = True,
) -> List[SubscriptionPlan]:
    """Ensure each catalogue plan exists in the database.

    Parameters
    ----------
    session:
        Open SQLAlchemy session.
    plans:
        Organised plans, usually the ones of the snapshot just published.
    prices:
        The snapshot's ``plan_id -> prices`` lookup. When several plans share a
        ``plan_id`` the one whose prices the lookup holds is mirrored; without
        it the last plan for that ``plan_id`` wins.
    allow_updates:
        When True, existing rows are updated to match the catalogue and rows
        whose plan no longer appears in it are marked inactive.
    commit:
        Whether to commit the session before returning.

    Returns
    -------
    List[SubscriptionPlan]
        The persisted plan records, in catalogue order.
    """

    persisted: List[SubscriptionPlan] = []

    latest: Dict[str, Plan] = {}
    for plan in plans:
        kept = latest.get(plan.plan_id)
        if kept is not None and prices is not None and kept.prices is prices.get(plan.plan_id):
            continue
        latest[plan.plan_id] = plan
    seen = set(latest)

    for plan in latest.values():
        record = (
            session.query(SubscriptionPlan)
            .filter(SubscriptionPlan.slug == plan.plan_id)
            .one_or_none()
        )

        if record is None:
            record = SubscriptionPlan(
                slug=plan.plan_id,
                name=plan.name,
                description=plan.description,
                plan_type=plan.plan_type,
                stripe_product_id=plan.product_id,
                display_order=plan.display_order,
                is_active=True,
            )
            session.add(record)
        elif allow_updates:
            record.name = plan.name
            record.description = plan.description
            record.plan_type = plan.plan_type
            record.stripe_product_id = plan.product_id
            record.display_order = plan.display_order
            record.is_active = True

        persisted.append(record)

    if allow_updates:
        query = session.query(SubscriptionPlan).filter(SubscriptionPlan.is_active.is_(True))
        if seen:
            query = query.filter(SubscriptionPlan.slug.notin_(sorted(seen)))
        for stale in query.all():
            stale.is_active = False

    if commit:
        session.commit()
    else:
        session.flush()

    return persisted


def plan_mirror_listener(session_factory: Callable[[], Session]):
    """Return a catalogue refresh listener that mirrors plans into the database."""

    def _sync(snapshot: CatalogSnapshot) -> int:
        with session_factory() as session:
            return len(sync_plan_catalogue(session, snapshot.plans, prices=snapshot.prices))

    async def _on_refresh(snapshot: CatalogSnapshot) -> None:
        count = await run_in_threadpool(_sync, snapshot)
        logger.info("Mirrored %s catalogue plans into the profile store", count)

    return _on_refresh
