"""Policies the external scheduler consults: expiry reminders and auto-renewal.

Both are pure. Delivery, batching and cron cadence live in ``jobs``.
"""
from datetime import datetime, timedelta
from consentvault.core.clock import as_utc
from consentvault.modules.consent.schemas import (
    ConsentPolicy, ConsentRecord, ConsentStatus, ReminderOffset,
)

_ORDER = list(ReminderOffset)

_DAY_OFFSETS = (
    (1, ReminderOffset.DAYS_1),
    (7, ReminderOffset.DAYS_7),
    (14, ReminderOffset.DAYS_14),
    (30, ReminderOffset.DAYS_30),
)

def _current_bucket(days_remaining: int | None, status: ConsentStatus) -> ReminderOffset | None:
    if status is ConsentStatus.GRACE:
        return ReminderOffset.GRACE_ENTRY
    if status is ConsentStatus.EXPIRED:
        return ReminderOffset.GRACE_EXPIRY
    if status is ConsentStatus.EXPIRING and days_remaining is not None:
        for days, offset in _DAY_OFFSETS:
            if days_remaining <= days:
                return offset
    return None

def reminder_due(
    days_remaining: int | None,
    status: ConsentStatus,
    last_sent: ReminderOffset | None,
) -> ReminderOffset | None:
    """Return the reminder bucket to signal now, or None.

    Buckets fire in ``ReminderOffset`` order and at most once each: anything at or
    before ``last_sent`` is suppressed, so repeated calls with the same
    ``last_sent`` never re-signal. Missed buckets are not back-filled.
    """
    due = _current_bucket(days_remaining, status)
    if due is None:
        return None
    if last_sent is not None and _ORDER.index(due) <= _ORDER.index(last_sent):
        return None
    return due

def auto_renewal_due(
    record: ConsentRecord,
    policy: ConsentPolicy,
    now: datetime,
    window_days: int = 7,
) -> bool:
    if not (record.auto_renew and policy.allow_auto_renewal):
        return False
    if not record.given or record.withdrawn_at is not None or record.expires_at is None:
        return False
    now = as_utc(now)
    return now <= record.expires_at <= now + timedelta(days=window_days)
