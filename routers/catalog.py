"""FastAPI router for product catalogue reads and refreshes."""

from __future__ import annotations

import logging
from typing import Any, Dict, List

from fastapi import APIRouter, Depends, Request, status
from fastapi.responses import JSONResponse

from billing.catalog import (
    CatalogMetadataError,
    CatalogSnapshot,
    derive_plan_id,
    organize_catalog,
    serialize_plan,
    serialize_price_map,
)
from billing.catalog_cache import CatalogCache
from config import Settings
from core.datetime_utils import isoformat_or_none, utcnow
from routers.deps import get_catalog_cache, get_settings

logger = logging.getLogger(__name__)

router = APIRouter()
debug_router = APIRouter()


def _catalog_error(error: str, exc: Exception) -> JSONResponse:
    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content={"error": error, "message": str(exc)},
    )


def _serialize_prices(snapshot: CatalogSnapshot) -> Dict[str, Any]:
    return {plan_id: serialize_price_map(prices) for plan_id, prices in snapshot.prices.items()}


@router.get("/health")
async def health(
    cache: CatalogCache = Depends(get_catalog_cache),
    settings: Settings = Depends(get_settings),
):
    snapshot = cache.snapshot
    return {
        "status": "healthy",
        "timestamp": isoformat_or_none(utcnow()),
        "version": settings.version,
        "environment": settings.app_env,
        "productCacheStatus": {
            "lastUpdated": snapshot.last_updated,
            "productsCount": len(snapshot.plans),
            "pricesCount": len(snapshot.prices),
            "stale": cache.is_stale(),
            "refreshing": cache.refreshing,
            "cacheTtlSeconds": cache.ttl_seconds,
        },
    }


@router.get("/products")
async def list_products(refresh: bool = False, cache: CatalogCache = Depends(get_catalog_cache)):
    try:
        snapshot = await cache.get(force_refresh=refresh)
    except Exception as exc:
        logger.exception("Error fetching product catalogue")
        return _catalog_error("Failed to fetch product catalog", exc)

    return {
        "products": [serialize_plan(plan) for plan in snapshot.plans],
        "lastUpdated": snapshot.last_updated,
        "cacheTtlSeconds": snapshot.ttl_seconds,
    }


@router.get("/products/{plan_id}")
async def get_product(plan_id: str, cache: CatalogCache = Depends(get_catalog_cache)):
    try:
        plan = await cache.find_plan(plan_id)
    except Exception as exc:
        logger.exception("Error fetching product details for %s", plan_id)
        return _catalog_error("Failed to fetch product details", exc)

    if plan is None:
        return JSONResponse(
            status_code=status.HTTP_404_NOT_FOUND,
            content={"error": "Product not found", "planId": plan_id},
        )
    return serialize_plan(plan)


@router.get("/price-ids")
async def list_price_ids(
    cache: CatalogCache = Depends(get_catalog_cache),
    settings: Settings = Depends(get_settings),
):
    try:
        snapshot = await cache.get()
    except Exception as exc:
        logger.exception("Error fetching price ids")
        return _catalog_error("Failed to fetch price IDs", exc)

    return {
        "priceIds": _serialize_prices(snapshot),
        "environment": settings.app_env,
        "lastUpdated": snapshot.last_updated,
    }


@router.post("/refresh-catalog")
async def refresh_catalog(cache: CatalogCache = Depends(get_catalog_cache)):
    logger.info("Manual catalogue refresh requested")
    try:
        snapshot = await cache.refresh()
    except Exception as exc:
        logger.exception("Error refreshing product catalogue")
        return _catalog_error("Failed to refresh product catalog", exc)

    return {
        "message": "Product catalog refreshed successfully",
        "productsCount": len(snapshot.plans),
        "pricesCount": len(snapshot.prices),
        "lastUpdated": snapshot.last_updated,
    }


@debug_router.get("/debug-catalog")
async def debug_catalog(request: Request):
    """Fetch and organise the catalogue step by step without touching the cache."""

    logger.info("Debug catalogue endpoint requested")
    gateway = request.app.state.catalog_gateway
    try:
        products = await gateway.list_active_products()
        prices = await gateway.list_active_prices()
    except Exception as exc:
        logger.exception("Debug catalogue fetch failed")
        return _catalog_error("Debug failed", exc)

    steps: List[Dict[str, Any]] = []
    for product in products:
        matched = [price for price in prices if price.product_id == product.id]
        steps.append(
            {
                "productName": product.name,
                "productId": product.id,
                "generatedPlanId": derive_plan_id(product),
                "metadata": dict(product.metadata),
                "foundPricesCount": len(matched),
                "priceDetails": [
                    {
                        "priceId": price.id,
                        "interval": price.interval,
                        "unitAmount": price.unit_amount,
                        "active": price.active,
                    }
                    for price in matched
                ],
            }
        )

    try:
        plans, lookup = organize_catalog(products, prices)
        final_result: Dict[str, Any] = {
            "plans": [serialize_plan(plan) for plan in plans],
            "priceIds": {plan_id: serialize_price_map(variants) for plan_id, variants in lookup.items()},
        }
    except CatalogMetadataError as exc:
        final_result = {"error": str(exc)}

    return {
        "rawData": {
            "productsCount": len(products),
            "pricesCount": len(prices),
            "products": [
                {"id": product.id, "name": product.name, "metadata": dict(product.metadata)}
                for product in products
            ],
            "prices": [
                {
                    "id": price.id,
                    "product": price.product_id,
                    "unitAmount": price.unit_amount,
                    "currency": price.currency,
                    "interval": price.interval,
                    "intervalCount": price.interval_count,
                }
                for price in prices
            ],
        },
        "organizationSteps": steps,
        "finalResult": final_result,
    }
