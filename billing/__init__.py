"""Billing utilities for the Stripe product catalogue and subscription relay."""

from .catalog import (
    CatalogMetadataError,
    CatalogSnapshot,
    Plan,
    PriceVariant,
    RawPrice,
    RawProduct,
    organize_catalog,
    serialize_plan,
    serialize_price_map,
)
from .catalog_cache import CatalogCache, CatalogGateway
from .plans import plan_mirror_listener, sync_plan_catalogue
from .stripe_client import (
    StripeCatalogGateway,
    cancel_subscription,
    create_or_retrieve_customer,
    create_payment_intent,
    create_subscription,
    retrieve_subscription,
)
from .webhooks import (
    CATALOG_EVENT_TYPES,
    handle_event,
    handle_subscription_created,
    handle_subscription_deleted,
    handle_subscription_updated,
    is_catalog_event,
    parse_event,
)

__all__ = [
    "CatalogMetadataError",
    "CatalogSnapshot",
    "Plan",
    "PriceVariant",
    "RawPrice",
    "RawProduct",
    "organize_catalog",
    "serialize_plan",
    "serialize_price_map",
    "CatalogCache",
    "CatalogGateway",
    "plan_mirror_listener",
    "sync_plan_catalogue",
    "StripeCatalogGateway",
    "cancel_subscription",
    "create_or_retrieve_customer",
    "create_payment_intent",
    "create_subscription",
    "retrieve_subscription",
    "CATALOG_EVENT_TYPES",
    "handle_event",
    "handle_subscription_created",
    "handle_subscription_deleted",
    "handle_subscription_updated",
    "is_catalog_event",
    "parse_event",
]
