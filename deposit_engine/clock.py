"""
Clock Module

Injectable time source. Engines never call datetime.now() directly so quarter
eligibility, FD maturity and premature-close day counts can be tested against
a controlled clock.
"""

from abc import ABC, abstractmethod
from datetime import datetime, timedelta, timezone
from typing import Optional


class Clock(ABC):
    """Abstract time source returning timezone-aware UTC datetimes"""

    @abstractmethod
    def now(self) -> datetime:
        ...


class SystemClock(Clock):
    """Wall-clock time in UTC"""

    def now(self) -> datetime:
        return datetime.now(timezone.utc)


class DeterministicClock(Clock):
    """
    Controlled clock for tests

    now() keeps returning the same instant until set_time() or advance()
    is called.
    """

    def __init__(self, fixed_time: Optional[datetime] = None):
        self._current = ensure_utc(fixed_time or datetime(2024, 1, 1, 12, 0, 0, tzinfo=timezone.utc))

    def now(self) -> datetime:
        return self._current

    def set_time(self, time: datetime) -> None:
        self._current = ensure_utc(time)

    def advance(self, days: int = 0, seconds: int = 0) -> datetime:
        self._current = self._current + timedelta(days=days, seconds=seconds)
        return self._current


def ensure_utc(value: datetime) -> datetime:
    """Treat naive datetimes as UTC and normalize aware ones to UTC"""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def parse_datetime(value) -> Optional[datetime]:
    """Parse an ISO timestamp from a stored document"""
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return ensure_utc(value)
    return ensure_utc(datetime.fromisoformat(value))
