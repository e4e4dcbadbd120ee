"""Injectable time source so rule windows and expiry can be tested deterministically.

All timestamps are naive UTC, matching how the models store them.
"""

from datetime import date, datetime, timedelta, timezone
from typing import Optional


class Clock:
    def now(self) -> datetime:
        raise NotImplementedError

    def today(self) -> date:
        return self.now().date()


class SystemClock(Clock):
    def now(self) -> datetime:
        return datetime.now(timezone.utc).replace(tzinfo=None)


class FixedClock(Clock):
    """Returns the same instant until moved with ``advance`` or ``set``."""

    def __init__(self, fixed: Optional[datetime] = None):
        self._now = fixed or datetime(2025, 1, 15, 12, 0, 0)

    def now(self) -> datetime:
        return self._now

    def set(self, when: datetime) -> None:
        self._now = when

    def advance(self, **delta) -> None:
        self._now = self._now + timedelta(**delta)


def utcnow() -> datetime:
    return SystemClock().now()
