from datetime import datetime, timedelta, timezone

import pytest

from consentvault.modules.consent.reminders import auto_renewal_due, reminder_due
from consentvault.modules.consent.schemas import (
    ConsentPolicy, ConsentRecord, ConsentStatus, ReminderOffset,
)

def utc(*args) -> datetime:
    return datetime(*args, tzinfo=timezone.utc)

@pytest.mark.parametrize("days, expected", [
    (30, ReminderOffset.DAYS_30),
    (17, ReminderOffset.DAYS_30),
    (15, ReminderOffset.DAYS_30),
    (14, ReminderOffset.DAYS_14),
    (8, ReminderOffset.DAYS_14),
    (7, ReminderOffset.DAYS_7),
    (2, ReminderOffset.DAYS_7),
    (1, ReminderOffset.DAYS_1),
])
def test_expiring_buckets(days, expected):
    assert reminder_due(days, ConsentStatus.EXPIRING, None) is expected

def test_grace_and_expiry_events():
    assert reminder_due(-3, ConsentStatus.GRACE, ReminderOffset.DAYS_1) is ReminderOffset.GRACE_ENTRY
    assert reminder_due(-40, ConsentStatus.EXPIRED, ReminderOffset.GRACE_ENTRY) is ReminderOffset.GRACE_EXPIRY

@pytest.mark.parametrize("status, days", [
    (ConsentStatus.ACTIVE, 90),
    (ConsentStatus.ACTIVE, None),
    (ConsentStatus.WITHDRAWN, None),
    (ConsentStatus.NEVER_GIVEN, None),
])
def test_nothing_due_outside_the_reminder_window(status, days):
    assert reminder_due(days, status, None) is None

def test_same_bucket_is_never_resignalled():
    first = reminder_due(20, ConsentStatus.EXPIRING, None)
    assert first is ReminderOffset.DAYS_30
    for days in (20, 19, 16, 15):
        assert reminder_due(days, ConsentStatus.EXPIRING, first) is None

def test_later_bucket_fires_after_earlier_one():
    assert reminder_due(14, ConsentStatus.EXPIRING, ReminderOffset.DAYS_30) is ReminderOffset.DAYS_14
    assert reminder_due(10, ConsentStatus.EXPIRING, ReminderOffset.DAYS_7) is None

def test_skipped_buckets_are_not_backfilled():
    # scheduler was down from 30 days out until 5 days out
    assert reminder_due(5, ConsentStatus.EXPIRING, None) is ReminderOffset.DAYS_7
    assert reminder_due(5, ConsentStatus.EXPIRING, ReminderOffset.DAYS_7) is None

def test_grace_expiry_fires_once():
    assert reminder_due(-45, ConsentStatus.EXPIRED, ReminderOffset.GRACE_EXPIRY) is None

# ---- auto-renewal ----

NOW = utc(2024, 12, 27)

def _record(**overrides) -> ConsentRecord:
    data = dict(given=True, given_at=utc(2024, 1, 1), expires_at=utc(2025, 1, 1), auto_renew=True)
    data.update(overrides)
    return ConsentRecord(**data)

ALLOWING = ConsentPolicy(allow_auto_renewal=True)

def test_auto_renewal_due_inside_window():
    assert auto_renewal_due(_record(), ALLOWING, NOW) is True
    assert auto_renewal_due(_record(), ALLOWING, utc(2025, 1, 1)) is True

def test_auto_renewal_not_due_outside_window():
    assert auto_renewal_due(_record(), ALLOWING, utc(2024, 12, 24)) is False
    assert auto_renewal_due(_record(), ALLOWING, utc(2025, 1, 1) + timedelta(seconds=1)) is False

def test_auto_renewal_requires_both_opt_ins():
    assert auto_renewal_due(_record(auto_renew=False), ALLOWING, NOW) is False
    assert auto_renewal_due(_record(), ConsentPolicy(allow_auto_renewal=False), NOW) is False

def test_auto_renewal_never_for_withdrawn_or_perpetual():
    assert auto_renewal_due(_record(withdrawn_at=utc(2024, 12, 1)), ALLOWING, NOW) is False
    assert auto_renewal_due(_record(expires_at=None), ALLOWING, NOW) is False
