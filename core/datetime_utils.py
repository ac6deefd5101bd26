from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Optional

__all__ = ["from_unix_timestamp", "isoformat_or_none", "utcnow"]


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def from_unix_timestamp(value: Any) -> Optional[datetime]:
    """Convert a Stripe epoch-seconds value into an aware UTC datetime."""

    if value is None or value == "":
        return None
    try:
        return datetime.fromtimestamp(int(value), tz=timezone.utc)
    except (TypeError, ValueError, OverflowError, OSError):
        return None


def isoformat_or_none(value: Optional[datetime]) -> Optional[str]:
    if value is None:
        return None
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.isoformat()
