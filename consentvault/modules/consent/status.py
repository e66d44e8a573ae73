"""Consent status calculator.

``compute_status`` turns the persisted consent fields, the template's policy and
an explicit ``now`` into a complete ``StatusView``. It never reads the clock,
does no I/O and does not raise for structurally valid input. Every read path
recomputes status through it; status itself is never stored.

Timeline for a time-bound consent::

    given ... [expires - 30d: EXPIRING] ... [expires: GRACE] ... [expires + grace: EXPIRED]

Withdrawal can happen at any point and takes precedence over all of it.
"""
from datetime import datetime, timedelta
from consentvault.core.clock import as_utc
from consentvault.modules.consent.schemas import (
    ConsentPolicy, ConsentRecord, ConsentStatus, RenewalUrgency, StatusView,
)

# not configurable per template
EXPIRING_WARNING_DAYS = 30

ACCESSIBLE_STATUSES = frozenset({ConsentStatus.ACTIVE, ConsentStatus.EXPIRING, ConsentStatus.GRACE})

_DAY = timedelta(days=1)

def days_until(target: datetime, now: datetime) -> int:
    """ceil((target - now) / 1 day), in exact integer arithmetic."""
    return -((now - target) // _DAY)

def format_date(value: datetime) -> str:
    return f"{value.day} {value:%b %Y}"

def _days(n: int) -> str:
    return f"{n} day" if abs(n) == 1 else f"{n} days"

def _urgency(status: ConsentStatus, days_remaining: int | None) -> RenewalUrgency:
    if status is ConsentStatus.EXPIRED:
        return RenewalUrgency.CRITICAL
    if status is ConsentStatus.GRACE:
        return RenewalUrgency.HIGH
    if status is ConsentStatus.EXPIRING and days_remaining is not None:
        if days_remaining <= 7:
            return RenewalUrgency.HIGH
        if days_remaining <= 14:
            return RenewalUrgency.MEDIUM
        return RenewalUrgency.LOW
    return RenewalUrgency.NONE

def compute_status(record: ConsentRecord, policy: ConsentPolicy, now: datetime) -> StatusView:
    now = as_utc(now)

    # 1. withdrawal wins over everything, including expiry and given=False
    if record.withdrawn_at is not None:
        return StatusView(
            status=ConsentStatus.WITHDRAWN,
            is_accessible=False,
            days_remaining=None,
            expires_at=record.expires_at,
            grace_period_ends_at=None,
            can_renew=False,
            renewal_urgency=RenewalUrgency.NONE,
            message=f"Consent was withdrawn on {format_date(record.withdrawn_at)}",
        )

    # 2. never given
    if not record.given:
        return StatusView(
            status=ConsentStatus.NEVER_GIVEN,
            is_accessible=False,
            days_remaining=None,
            expires_at=None,
            grace_period_ends_at=None,
            can_renew=False,
            renewal_urgency=RenewalUrgency.NONE,
            message="Consent has never been given",
        )

    # 3. not time-bound
    if record.expires_at is None:
        return StatusView(
            status=ConsentStatus.ACTIVE,
            is_accessible=True,
            days_remaining=None,
            expires_at=None,
            grace_period_ends_at=None,
            can_renew=False,
            renewal_urgency=RenewalUrgency.NONE,
            message="Consent is active (no expiry set)",
        )

    # 4. time-bound
    expires_at = record.expires_at
    grace_period_ends_at = expires_at + timedelta(days=policy.grace_period_days)
    days_remaining = days_until(expires_at, now)

    if days_remaining > EXPIRING_WARNING_DAYS:
        status = ConsentStatus.ACTIVE
        message = f"Consent is active until {format_date(expires_at)}"
    elif days_remaining > 0:
        status = ConsentStatus.EXPIRING
        message = f"Consent expires in {_days(days_remaining)}"
    elif now <= grace_period_ends_at:
        status = ConsentStatus.GRACE
        message = (
            f"Consent expired on {format_date(expires_at)}, "
            f"grace period ends in {_days(days_until(grace_period_ends_at, now))}"
        )
    else:
        status = ConsentStatus.EXPIRED
        message = (
            f"Consent expired on {format_date(expires_at)} and the grace period "
            f"ended on {format_date(grace_period_ends_at)}"
        )

    return StatusView(
        status=status,
        is_accessible=status in ACCESSIBLE_STATUSES,
        days_remaining=days_remaining,
        expires_at=expires_at,
        grace_period_ends_at=grace_period_ends_at,
        can_renew=status is not ConsentStatus.ACTIVE,
        renewal_urgency=_urgency(status, days_remaining),
        message=message,
    )
