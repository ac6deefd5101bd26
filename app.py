import logging
from contextlib import asynccontextmanager
from typing import Callable, Optional

from fastapi import FastAPI, Request
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session

import db
from billing import CatalogCache, CatalogGateway, StripeCatalogGateway, plan_mirror_listener
from config import Settings, load_settings
from core.rate_limit import setup_rate_limiting
from routers.catalog import debug_router as catalog_debug_router
from routers.catalog import router as catalog_router
from routers.payments import router as payments_router
from routers.webhooks import router as webhooks_router

logger = logging.getLogger(__name__)


def _configure_logging(level: str) -> None:
    logging.basicConfig(
        level=getattr(logging, level, logging.INFO),
        format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
    )


def create_app(
    settings: Optional[Settings] = None,
    gateway: Optional[CatalogGateway] = None,
    session_factory: Optional[Callable[[], Session]] = None,
) -> FastAPI:
    """Build the billing gateway application.

    ``gateway`` and ``session_factory`` default to the Stripe-backed catalogue
    source and the ``DATABASE_URL`` profile store; tests pass their own.
    """

    settings = settings or load_settings()
    _configure_logging(settings.log_level)

    manage_schema = session_factory is None
    if session_factory is None:
        session_factory = db.SessionLocal

    gateway = gateway or StripeCatalogGateway()
    catalog_cache = CatalogCache(gateway, ttl_seconds=settings.catalog_cache_ttl_seconds)
    if session_factory is not None:
        catalog_cache.add_refresh_listener(plan_mirror_listener(session_factory))

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        logger.info("Billing gateway starting (environment: %s)", settings.app_env)
        logger.info("Profile store integration: %s", "enabled" if session_factory else "disabled")
        if manage_schema and session_factory is not None:
            try:
                db.create_tables()
            except Exception as exc:
                logger.error("Database initialization failed: %s", exc)

        logger.info("Initializing product catalogue on startup")
        try:
            snapshot = await catalog_cache.refresh()
            logger.info("Product catalogue initialized with %s plans", len(snapshot.plans))
        except Exception:
            logger.exception("Failed to initialize product catalogue")

        yield
        logger.info("Billing gateway shutting down")

    app = FastAPI(title="Billing Gateway", version=settings.version, lifespan=lifespan)
    app.state.settings = settings
    app.state.catalog_gateway = gateway
    app.state.catalog_cache = catalog_cache
    app.state.session_factory = session_factory

    app.add_middleware(
        CORSMiddleware,
        allow_origins=list(settings.allowed_origins),
        allow_credentials=True,
        allow_methods=["GET", "POST"],
        allow_headers=["*"],
    )
    setup_rate_limiting(app, settings.rate_limit)

    @app.middleware("http")
    async def log_requests(request: Request, call_next):
        client = request.client.host if request.client else "-"
        logger.info(
            "%s %s (client=%s, agent=%s)",
            request.method,
            request.url.path,
            client,
            request.headers.get("user-agent"),
        )
        return await call_next(request)

    @app.exception_handler(RequestValidationError)
    async def invalid_input_handler(request: Request, exc: RequestValidationError):
        logger.warning("Validation errors on %s: %s", request.url.path, exc.errors())
        return JSONResponse(
            status_code=400,
            content={"error": "Invalid input data", "details": jsonable_encoder(exc.errors())},
        )

    @app.exception_handler(404)
    async def not_found_handler(request: Request, exc):
        return JSONResponse(
            status_code=404,
            content={"error": "Endpoint not found", "path": request.url.path, "method": request.method},
        )

    @app.exception_handler(Exception)
    async def unhandled_error_handler(request: Request, exc: Exception):
        logger.error("Unhandled error on %s %s", request.method, request.url.path, exc_info=exc)
        message = str(exc) if settings.is_development else "Something went wrong"
        return JSONResponse(
            status_code=500,
            content={"error": "Internal server error", "message": message},
        )

    app.include_router(catalog_router)
    app.include_router(payments_router)
    app.include_router(webhooks_router)
    if settings.enable_debug_endpoints:
        app.include_router(catalog_debug_router)

    return app


app = create_app()
