"""Injectable time source.

All timestamps inside the engine are naive UTC datetimes, matching the
database columns.
"""

from datetime import datetime, timezone
from typing import Protocol


class Clock(Protocol):
    """Anything that can tell the current time."""

    def now(self) -> datetime: ...


class SystemClock:
    """Wall-clock time in naive UTC."""

    def now(self) -> datetime:
        return datetime.now(timezone.utc).replace(tzinfo=None)


system_clock = SystemClock()


def to_naive_utc(value: datetime) -> datetime:
    """Convert an offset-aware datetime to naive UTC; naive values are assumed UTC."""
    if value.tzinfo is None:
        return value
    return value.astimezone(timezone.utc).replace(tzinfo=None)
