"""Request-scoped accessors for the objects owned by the application."""

from __future__ import annotations

from typing import Callable, Optional

from fastapi import Request
from sqlalchemy.orm import Session

from billing.catalog_cache import CatalogCache
from config import Settings


def get_catalog_cache(request: Request) -> CatalogCache:
    return request.app.state.catalog_cache


def get_settings(request: Request) -> Settings:
    return request.app.state.settings


def get_session_factory(request: Request) -> Optional[Callable[[], Session]]:
    return request.app.state.session_factory
