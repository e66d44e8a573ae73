"""Time source and calendar helpers.

Nothing in the consent engine reads the wall clock. HTTP handlers and jobs ask
a ``Clock`` for "now" once per logical operation and pass that instant down.
"""
import calendar
from datetime import datetime, timezone
from typing import Protocol, runtime_checkable

@runtime_checkable
class Clock(Protocol):
    def now(self) -> datetime: ...

class SystemClock:
    def now(self) -> datetime:
        return datetime.now(timezone.utc)

class FixedClock:
    """Always returns the same instant. Used by tests and replays."""

    def __init__(self, instant: datetime):
        self.instant = as_utc(instant)

    def now(self) -> datetime:
        return self.instant

system_clock = SystemClock()

def get_clock() -> Clock:
    return system_clock

def as_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)

def add_months(value: datetime, months: int) -> datetime:
    """Shift by calendar months, clamping the day to the end of the target month."""
    month_index = value.month - 1 + months
    year = value.year + month_index // 12
    month = month_index % 12 + 1
    day = min(value.day, calendar.monthrange(year, month)[1])
    return value.replace(year=year, month=month, day=day)
