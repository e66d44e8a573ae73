"""Renewal and withdrawal transitions.

Each operation has a pure planning step (``plan_renewal``/``plan_withdrawal``)
that validates legality against ``compute_status`` and returns the next
``ConsentRecord``, and exactly one handler that commits the plan through the
store's compare-and-swap on ``(expires_at, withdrawn_at, renewal_count)``.
Patient requests and the auto-renewal job both go through these handlers.
"""
import logging
import uuid
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Protocol, assert_never
from consentvault.core.clock import add_months, as_utc
from consentvault.modules.consent.errors import (
    ConsentNotFound, DurationOutOfRange, InvalidTransition, StaleConsentState,
)
from consentvault.modules.consent.schemas import (
    ConsentPolicy, ConsentRecord, ConsentStatus, ConsentVersion, StatusView,
)
from consentvault.modules.consent.status import compute_status

log = logging.getLogger(__name__)

# fields a transition is allowed to write
_MUTABLE_FIELDS = (
    "expires_at", "withdrawn_at", "withdrawal_reason", "duration_months",
    "renewed_at", "renewal_count", "last_reminder_offset",
)

class ConsentStore(Protocol):
    async def load(self, org_id: uuid.UUID, consent_id: uuid.UUID) -> tuple[ConsentRecord, ConsentPolicy] | None: ...

    async def compare_and_swap(
        self,
        org_id: uuid.UUID,
        consent_id: uuid.UUID,
        expected: ConsentVersion,
        changes: dict[str, Any],
    ) -> bool: ...

@dataclass(frozen=True)
class TransitionResult:
    before: ConsentRecord
    after: ConsentRecord
    view: StatusView
    applied: bool
    duration_months: int | None = None

# ---- Planning ----

def resolve_duration(record: ConsentRecord, policy: ConsentPolicy, requested: int | None) -> int:
    lo, hi = policy.min_consent_duration, policy.max_consent_duration
    if requested is not None:
        if not lo <= requested <= hi:
            raise DurationOutOfRange(requested, lo, hi)
        return requested
    implicit = record.duration_months or policy.default_consent_duration
    return min(max(implicit, lo), hi)

def plan_renewal(
    record: ConsentRecord,
    policy: ConsentPolicy,
    now: datetime,
    requested_duration_months: int | None = None,
) -> tuple[ConsentRecord, int]:
    now = as_utc(now)
    view = compute_status(record, policy, now)
    match view.status:
        case ConsentStatus.EXPIRING | ConsentStatus.GRACE | ConsentStatus.EXPIRED:
            pass
        case ConsentStatus.ACTIVE:
            raise InvalidTransition("renew", "consent is active and not yet due for renewal")
        case ConsentStatus.NEVER_GIVEN:
            raise InvalidTransition("renew", "consent was never given")
        case ConsentStatus.WITHDRAWN:
            raise InvalidTransition("renew", "consent has been withdrawn")
        case _:
            assert_never(view.status)
    months = resolve_duration(record, policy, requested_duration_months)
    # EXPIRING, GRACE and EXPIRED all imply a set expires_at
    base = max(now, record.expires_at)
    after = record.model_copy(update={
        "expires_at": add_months(base, months),
        "duration_months": months,
        "renewed_at": now,
        "renewal_count": record.renewal_count + 1,
        "last_reminder_offset": None,
    })
    return after, months

def plan_withdrawal(record: ConsentRecord, now: datetime, reason: str | None = None) -> ConsentRecord | None:
    """Next record, or None when the consent is already withdrawn (no-op)."""
    if record.withdrawn_at is not None:
        return None
    if not record.given:
        raise InvalidTransition("withdraw", "consent was never given")
    return record.model_copy(update={"withdrawn_at": as_utc(now), "withdrawal_reason": reason})

def _changes(before: ConsentRecord, after: ConsentRecord) -> dict[str, Any]:
    out = {}
    for name in _MUTABLE_FIELDS:
        value = getattr(after, name)
        if value != getattr(before, name):
            out[name] = value.value if hasattr(value, "value") else value
    return out

# ---- Handlers ----

class _GuardedHandler:
    operation = ""

    def __init__(self, store: ConsentStore, max_attempts: int = 1):
        self.store = store
        self.max_attempts = max(1, max_attempts)

    async def _load(self, org_id: uuid.UUID, consent_id: uuid.UUID) -> tuple[ConsentRecord, ConsentPolicy]:
        loaded = await self.store.load(org_id, consent_id)
        if loaded is None:
            raise ConsentNotFound(consent_id)
        return loaded

    async def _commit(self, org_id: uuid.UUID, consent_id: uuid.UUID, before: ConsentRecord, after: ConsentRecord) -> bool:
        ok = await self.store.compare_and_swap(org_id, consent_id, before.version, _changes(before, after))
        if not ok:
            log.warning("CAS conflict on %s for consent %s", self.operation, consent_id)
        return ok

class RenewalHandler(_GuardedHandler):
    operation = "renew"

    async def renew(
        self,
        org_id: uuid.UUID,
        consent_id: uuid.UUID,
        now: datetime,
        requested_duration_months: int | None = None,
    ) -> TransitionResult:
        for _ in range(self.max_attempts):
            record, policy = await self._load(org_id, consent_id)
            # legality is re-checked against the fresh read on every attempt
            after, months = plan_renewal(record, policy, now, requested_duration_months)
            if await self._commit(org_id, consent_id, record, after):
                log.info(
                    "Renewed consent %s: %s -> %s (%s months, renewal #%s)",
                    consent_id, record.expires_at, after.expires_at, months, after.renewal_count,
                )
                return TransitionResult(
                    before=record,
                    after=after,
                    view=compute_status(after, policy, now),
                    applied=True,
                    duration_months=months,
                )
        raise StaleConsentState(consent_id)

class WithdrawalHandler(_GuardedHandler):
    operation = "withdraw"

    async def withdraw(
        self,
        org_id: uuid.UUID,
        consent_id: uuid.UUID,
        now: datetime,
        reason: str | None = None,
    ) -> TransitionResult:
        for _ in range(self.max_attempts):
            record, policy = await self._load(org_id, consent_id)
            after = plan_withdrawal(record, now, reason)
            if after is None:
                log.info("Consent %s already withdrawn; nothing to do", consent_id)
                return TransitionResult(
                    before=record,
                    after=record,
                    view=compute_status(record, policy, now),
                    applied=False,
                )
            if await self._commit(org_id, consent_id, record, after):
                log.info("Withdrew consent %s", consent_id)
                return TransitionResult(before=record, after=after, view=compute_status(after, policy, now), applied=True)
        raise StaleConsentState(consent_id)
