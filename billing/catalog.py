"""Product catalogue organisation for Stripe products and prices.

Turns the raw, loosely-typed product/price listings returned by Stripe into the
plan-indexed structure the rest of the service addresses. Everything in this
module is pure: no network calls and no dependency on cache state.
"""

from __future__ import annotations

import json
import re
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from types import MappingProxyType
from typing import Any, Dict, Iterable, List, Mapping, Optional, Sequence, Tuple

from core.datetime_utils import isoformat_or_none
from core.numeric_utils import leading_int

__all__ = [
    "BILLING_CYCLES",
    "DEFAULT_CACHE_TTL_SECONDS",
    "DEFAULT_DISPLAY_ORDER",
    "DEFAULT_PLAN_TYPE",
    "CatalogMetadataError",
    "CatalogSnapshot",
    "Plan",
    "PriceVariant",
    "RawPrice",
    "RawProduct",
    "billing_cycle_for",
    "derive_plan_id",
    "derive_plan_type",
    "organize_catalog",
    "parse_display_order",
    "parse_features",
    "product_reference",
    "serialize_plan",
    "serialize_price_map",
    "serialize_price_variant",
]

BILLING_CYCLES = ("monthly", "yearly", "one_time")
DEFAULT_PLAN_TYPE = "subscription"
DEFAULT_DISPLAY_ORDER = 999
DEFAULT_CACHE_TTL_SECONDS = 5 * 60

_WHITESPACE = re.compile(r"\s+")


class CatalogMetadataError(ValueError):
    """Raised when product metadata cannot be interpreted (e.g. malformed JSON)."""

    def __init__(self, product_id: str, key: str, reason: str) -> None:
        super().__init__(f"Invalid '{key}' metadata on product {product_id}: {reason}")
        self.product_id = product_id
        self.key = key
        self.reason = reason


@dataclass(frozen=True)
class RawProduct:
    id: str
    name: str
    description: Optional[str] = None
    active: bool = True
    metadata: Mapping[str, str] = field(default_factory=dict)


@dataclass(frozen=True)
class RawPrice:
    id: str
    product_id: str
    unit_amount: Optional[int]
    currency: str
    active: bool = True
    interval: Optional[str] = None
    interval_count: Optional[int] = None

    @property
    def recurring(self) -> bool:
        return self.interval is not None


@dataclass(frozen=True)
class PriceVariant:
    price_id: str
    unit_amount: Optional[int]
    currency: str
    interval: Optional[str] = None
    interval_count: Optional[int] = None


@dataclass(frozen=True)
class Plan:
    product_id: str
    name: str
    description: Optional[str]
    plan_id: str
    plan_type: str
    display_order: int
    features: Tuple[str, ...]
    prices: Mapping[str, PriceVariant]
    active: bool = True


@dataclass(frozen=True)
class CatalogSnapshot:
    """One fully organised catalogue state; replaced wholesale, never mutated."""

    plans: Tuple[Plan, ...]
    prices: Mapping[str, Mapping[str, PriceVariant]]
    created_at: Optional[float]
    ttl_seconds: float = DEFAULT_CACHE_TTL_SECONDS

    @classmethod
    def empty(cls, ttl_seconds: float = DEFAULT_CACHE_TTL_SECONDS) -> "CatalogSnapshot":
        return cls(plans=(), prices=MappingProxyType({}), created_at=None, ttl_seconds=ttl_seconds)

    @property
    def populated(self) -> bool:
        return self.created_at is not None

    def is_stale(self, now: Optional[float] = None) -> bool:
        if self.created_at is None:
            return True
        current = time.time() if now is None else now
        return current - self.created_at > self.ttl_seconds

    @property
    def last_updated(self) -> Optional[str]:
        if self.created_at is None:
            return None
        return isoformat_or_none(datetime.fromtimestamp(self.created_at, tz=timezone.utc))


def product_reference(value: Any) -> str:
    """Return the product identifier for a price's ``product`` field.

    Stripe returns a bare ``"prod_..."`` string unless the listing was expanded,
    in which case the field holds a product object (or dict) carrying ``id``.
    """

    if value is None:
        return ""
    if isinstance(value, str):
        return value
    if isinstance(value, Mapping):
        return str(value.get("id") or "")
    identifier = getattr(value, "id", None)
    return str(identifier) if identifier else ""


def derive_plan_id(product: RawProduct) -> str:
    explicit = product.metadata.get("plan_id")
    if explicit:
        return explicit
    return _WHITESPACE.sub("-", (product.name or "").lower())


def derive_plan_type(product: RawProduct) -> str:
    return product.metadata.get("plan_type") or DEFAULT_PLAN_TYPE


def parse_display_order(value: Any) -> int:
    parsed = leading_int(value)
    if parsed is None:
        return DEFAULT_DISPLAY_ORDER
    return parsed


def billing_cycle_for(price: RawPrice) -> str:
    """Map a price onto its billing-cycle key.

    Recurring prices fold onto two keys only: ``month`` is monthly and every
    other interval (including ``day`` and ``week``) is stored as yearly.
    """

    if not price.recurring:
        return "one_time"
    return "monthly" if price.interval == "month" else "yearly"


def parse_features(product: RawProduct) -> Tuple[str, ...]:
    raw = product.metadata.get("features")
    if not raw:
        return ()
    try:
        decoded = json.loads(raw)
    except (TypeError, ValueError) as exc:
        raise CatalogMetadataError(product.id, "features", str(exc)) from exc
    if not isinstance(decoded, list):
        raise CatalogMetadataError(product.id, "features", "expected a JSON array")
    return tuple(str(item) for item in decoded)


def _price_variant(price: RawPrice) -> PriceVariant:
    if price.recurring:
        return PriceVariant(
            price_id=price.id,
            unit_amount=price.unit_amount,
            currency=price.currency,
            interval=price.interval,
            interval_count=price.interval_count,
        )
    return PriceVariant(price_id=price.id, unit_amount=price.unit_amount, currency=price.currency)


def organize_catalog(
    products: Iterable[RawProduct],
    prices: Iterable[RawPrice],
) -> Tuple[List[Plan], Dict[str, Mapping[str, PriceVariant]]]:
    """Build the ordered plan list and the ``plan_id -> prices`` lookup.

    Raises
    ------
    CatalogMetadataError
        When any product carries malformed ``features`` metadata. No partial
        result is returned.
    """

    price_list: Sequence[RawPrice] = [price for price in prices if price.active]
    plans: List[Plan] = []
    lookup: Dict[str, Mapping[str, PriceVariant]] = {}

    for product in products:
        if not product.active:
            continue
        plan_id = derive_plan_id(product)

        variants: Dict[str, PriceVariant] = {}
        for price in price_list:
            if price.product_id != product.id:
                continue
            # later prices for the same cycle win
            variants[billing_cycle_for(price)] = _price_variant(price)

        plan_prices = MappingProxyType(variants)
        plans.append(
            Plan(
                product_id=product.id,
                name=product.name,
                description=product.description,
                plan_id=plan_id,
                plan_type=derive_plan_type(product),
                display_order=parse_display_order(product.metadata.get("display_order")),
                features=parse_features(product),
                prices=plan_prices,
                active=product.active,
            )
        )
        lookup[plan_id] = plan_prices

    plans.sort(key=lambda plan: plan.display_order)
    return plans, lookup


def serialize_price_variant(variant: PriceVariant) -> Dict[str, Any]:
    payload: Dict[str, Any] = {
        "priceId": variant.price_id,
        "unitAmount": variant.unit_amount,
        "currency": variant.currency,
    }
    if variant.interval is not None:
        payload["interval"] = variant.interval
        payload["intervalCount"] = variant.interval_count
    return payload


def serialize_price_map(prices: Mapping[str, PriceVariant]) -> Dict[str, Any]:
    return {cycle: serialize_price_variant(variant) for cycle, variant in prices.items()}


def serialize_plan(plan: Plan) -> Dict[str, Any]:
    return {
        "id": plan.product_id,
        "name": plan.name,
        "description": plan.description,
        "planId": plan.plan_id,
        "planType": plan.plan_type,
        "displayOrder": plan.display_order,
        "features": list(plan.features),
        "prices": serialize_price_map(plan.prices),
        "active": plan.active,
    }
