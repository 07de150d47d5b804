"""
Clock and calendar helpers.

All timestamps stored by the engine are naive UTC, matching the
`DateTime` columns in `newsimpact.db.models`. The clock is injected into
every service so tests can pin "now".
"""

from datetime import date, datetime, time, timedelta, timezone
from typing import Protocol, Tuple


def utc_now() -> datetime:
    """Current time as naive UTC."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def to_naive_utc(value: datetime) -> datetime:
    """Normalize aware datetimes to naive UTC; naive values are assumed UTC."""
    if value.tzinfo is None:
        return value
    return value.astimezone(timezone.utc).replace(tzinfo=None)


def day_bounds(day: date) -> Tuple[datetime, datetime]:
    """Closed-open window [00:00, next day 00:00) for a calendar date."""
    start = datetime.combine(day, time.min)
    return start, start + timedelta(days=1)


class Clock(Protocol):
    def now(self) -> datetime:
        ...


class SystemClock:
    """Wall clock."""

    def now(self) -> datetime:
        return utc_now()


class FixedClock:
    """Clock pinned to a given instant; `advance` moves it forward."""

    def __init__(self, current: datetime):
        self.current = to_naive_utc(current)

    def now(self) -> datetime:
        return self.current

    def advance(self, **kwargs) -> datetime:
        self.current = self.current + timedelta(**kwargs)
        return self.current
