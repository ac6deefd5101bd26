"""Runtime configuration read from the environment (and a local ``.env``)."""

from __future__ import annotations

import os
from dataclasses import dataclass
from typing import Optional, Tuple

from dotenv import load_dotenv

load_dotenv()

DEFAULT_RATE_LIMIT = "100 per 15 minutes"
TRUTHY = {"1", "true", "yes", "on"}


def _env_flag(name: str, default: bool = False) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() in TRUTHY


def _env_list(name: str, default: str) -> Tuple[str, ...]:
    raw = os.getenv(name) or default
    return tuple(item.strip() for item in raw.split(",") if item.strip())


@dataclass(frozen=True)
class Settings:
    stripe_secret_key: Optional[str]
    stripe_webhook_secret: Optional[str]
    database_url: Optional[str]
    allowed_origins: Tuple[str, ...] = ("*",)
    catalog_cache_ttl_seconds: float = 300.0
    rate_limit: str = DEFAULT_RATE_LIMIT
    app_env: str = "development"
    log_level: str = "INFO"
    enable_debug_endpoints: bool = False
    version: str = "1.0.0"

    @property
    def is_development(self) -> bool:
        return self.app_env == "development"

    @property
    def profile_store_enabled(self) -> bool:
        return bool(self.database_url)


def load_settings() -> Settings:
    return Settings(
        stripe_secret_key=os.getenv("STRIPE_SECRET_KEY"),
        stripe_webhook_secret=os.getenv("STRIPE_WEBHOOK_SECRET"),
        database_url=os.getenv("DATABASE_URL"),
        allowed_origins=_env_list("ALLOWED_ORIGINS", "*"),
        catalog_cache_ttl_seconds=float(os.getenv("CATALOG_CACHE_TTL_SECONDS", "300")),
        rate_limit=os.getenv("RATE_LIMIT", DEFAULT_RATE_LIMIT),
        app_env=os.getenv("APP_ENV", "development"),
        log_level=os.getenv("LOG_LEVEL", "INFO").upper(),
        enable_debug_endpoints=_env_flag("ENABLE_DEBUG_ENDPOINTS"),
    )
