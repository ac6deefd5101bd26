"""Numeric helper utilities."""

from __future__ import annotations

import re
from typing import Any, Optional

__all__ = ["leading_int"]

_LEADING_INT = re.compile(r"\s*([+-]?\d+)")


def leading_int(value: Any) -> Optional[int]:
    """Parse the leading integer of *value* returning None when there is none.

    Mirrors how loosely-typed metadata strings such as ``"2"`` or ``"10 (pro)"``
    are read; ``"abc"`` and ``None`` yield None.
    """

    if value is None:
        return None
    if isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value

    match = _LEADING_INT.match(str(value))
    if not match:
        return None
    return int(match.group(1))
