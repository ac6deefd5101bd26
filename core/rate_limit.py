"""Per-client rate limiting using slowapi."""

from __future__ import annotations

import logging

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from slowapi import Limiter
from slowapi.errors import RateLimitExceeded
from slowapi.middleware import SlowAPIMiddleware
from slowapi.util import get_remote_address

logger = logging.getLogger(__name__)


def setup_rate_limiting(app: FastAPI, default_limit: str) -> Limiter:
    """Attach a limiter applying ``default_limit`` to every route of ``app``."""

    limiter = Limiter(
        key_func=get_remote_address,
        default_limits=[default_limit],
        storage_uri="memory://",
    )
    app.state.limiter = limiter
    app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded)
    app.add_middleware(SlowAPIMiddleware)
    logger.info("Rate limiting enabled: %s", default_limit)
    return limiter


async def _rate_limit_exceeded(request: Request, exc: RateLimitExceeded) -> JSONResponse:
    logger.warning(
        "Rate limit exceeded for %s on %s %s (%s)",
        get_remote_address(request),
        request.method,
        request.url.path,
        exc.detail,
    )
    return JSONResponse(
        status_code=429,
        content={
            "error": "Too many requests from this IP, please try again later.",
            "detail": str(exc.detail),
        },
    )
