"""FastAPI router for the Stripe webhook endpoint."""

from __future__ import annotations

import logging

from fastapi import APIRouter, Depends, HTTPException, Request, status
from fastapi.responses import JSONResponse, PlainTextResponse

from billing.catalog_cache import CatalogCache
from billing.webhooks import handle_event, parse_event
from config import Settings
from routers.deps import get_catalog_cache, get_session_factory, get_settings

logger = logging.getLogger(__name__)

router = APIRouter()


@router.post("/webhook")
async def stripe_webhook(
    request: Request,
    cache: CatalogCache = Depends(get_catalog_cache),
    settings: Settings = Depends(get_settings),
    session_factory=Depends(get_session_factory),
):
    if not settings.stripe_webhook_secret:
        logger.warning("Webhook endpoint secret not configured")
        return PlainTextResponse("Webhook endpoint secret not configured", status_code=status.HTTP_400_BAD_REQUEST)

    payload = await request.body()
    signature = request.headers.get("stripe-signature")
    if not signature:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Missing Stripe signature header.")

    event = parse_event(payload, signature, settings.stripe_webhook_secret)
    logger.info("Stripe webhook received: %s", event["type"])

    try:
        await handle_event(event, catalog_cache=cache, session_factory=session_factory)
    except Exception:
        logger.exception("Webhook handler failed for %s", event["type"])
        return JSONResponse(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            content={"error": "Webhook handler failed"},
        )

    return JSONResponse(content={"received": True})
