"""
core/clock.py -- Injectable time source.

Every expiry and lockout decision in auth/ compares timestamps against
Clock.now(). Components accept a Clock so tests can freeze or advance time
instead of sleeping. All timestamps are timezone-aware UTC.
"""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Protocol


class Clock(Protocol):
    def now(self) -> datetime: ...


class SystemClock:
    """Wall-clock time in UTC."""

    def now(self) -> datetime:
        return datetime.now(timezone.utc)


def to_utc(value: datetime) -> datetime:
    """Return value as an aware UTC datetime. Naive values are assumed UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)
