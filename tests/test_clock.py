from datetime import datetime, timedelta, timezone

import pytest

from consentvault.core.clock import FixedClock, add_months, as_utc

def utc(*args) -> datetime:
    return datetime(*args, tzinfo=timezone.utc)

@pytest.mark.parametrize("start, months, expected", [
    (utc(2024, 1, 15), 12, utc(2025, 1, 15)),
    (utc(2024, 11, 30), 3, utc(2025, 2, 28)),
    (utc(2024, 1, 31), 1, utc(2024, 2, 29)),   # leap year
    (utc(2025, 1, 31), 1, utc(2025, 2, 28)),
    (utc(2024, 8, 31), 1, utc(2024, 9, 30)),
    (utc(2024, 12, 1), 1, utc(2025, 1, 1)),
    (utc(2024, 2, 29), 60, utc(2029, 2, 28)),
])
def test_add_months_clamps_to_month_end(start, months, expected):
    assert add_months(start, months) == expected

def test_add_months_keeps_time_of_day():
    assert add_months(utc(2025, 1, 10, 14, 30, 5), 6) == utc(2025, 7, 10, 14, 30, 5)

def test_as_utc_converts_offsets_and_tags_naive_values():
    plus_two = timezone(timedelta(hours=2))
    assert as_utc(datetime(2025, 1, 1, 2, tzinfo=plus_two)) == utc(2025, 1, 1)
    assert as_utc(datetime(2025, 1, 1)).tzinfo is timezone.utc

def test_fixed_clock_is_adjustable():
    clock = FixedClock(datetime(2024, 12, 15))
    assert clock.now() == utc(2024, 12, 15)
    clock.instant = utc(2025, 1, 10)
    assert clock.now() == utc(2025, 1, 10)
