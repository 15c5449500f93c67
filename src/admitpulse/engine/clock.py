"""Time source for the engine; every timestamp it produces is timezone-aware UTC."""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Callable

Clock = Callable[[], datetime]


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        raise ValueError(f"naive timestamp not allowed: {value.isoformat()}")
    return value.astimezone(timezone.utc)
