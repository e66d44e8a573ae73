import uuid
import logging
from datetime import datetime
from fastapi import Request
from sqlalchemy.ext.asyncio import AsyncSession
from consentvault.core.clock import add_months, as_utc
from consentvault.core.config import settings
from consentvault.modules.audit.service import AuditService
from consentvault.modules.consent.errors import ConsentError, ConsentNotFound, TemplateNotFound
from consentvault.modules.consent.models import Consent, ConsentTemplate
from consentvault.modules.consent.presentation import status_badge
from consentvault.modules.consent.repository import (
    ConsentRepository, ConsentTemplateRepository, ConsentRenewalRepository, to_policy, to_record,
)
from consentvault.modules.consent.schemas import (
    ConsentCreate, ConsentOut, ConsentRecord, ConsentStatus, ConsentSummary,
    ConsentTemplateCreate, RenewalUrgency,
)
from consentvault.modules.consent.status import compute_status
from consentvault.modules.consent.transitions import (
    RenewalHandler, TransitionResult, WithdrawalHandler, resolve_duration,
)
from consentvault.modules.events.outbox import (
    OutboxRepository, OutboxService, CONSENT_CAPTURED, CONSENT_RENEWED, CONSENT_WITHDRAWN,
)

log = logging.getLogger(__name__)

def _iso(value: datetime | None) -> str | None:
    return value.isoformat() if value else None

def consent_out(consent: Consent, template: ConsentTemplate, now: datetime) -> ConsentOut:
    record = to_record(consent)
    view = compute_status(record, to_policy(template), now)
    return ConsentOut(
        id=consent.id,
        org_id=consent.org_id,
        patient_id=consent.patient_id,
        template_id=consent.template_id,
        given=record.given,
        given_at=record.given_at,
        expires_at=record.expires_at,
        withdrawn_at=record.withdrawn_at,
        withdrawal_reason=record.withdrawal_reason,
        duration_months=record.duration_months,
        auto_renew=record.auto_renew,
        renewed_at=record.renewed_at,
        renewal_count=record.renewal_count,
        clause_version=record.clause_version,
        view=view,
        badge=status_badge(view.status),
    )

class ConsentService:
    def __init__(self, session: AsyncSession, max_attempts: int | None = None):
        self.session = session
        self.templates = ConsentTemplateRepository(session)
        self.consents = ConsentRepository(session)
        self.renewals = ConsentRenewalRepository(session)
        attempts = max_attempts or settings.CONSENT_CAS_MAX_ATTEMPTS
        # the only write paths for renewal and withdrawal
        self.renewal_handler = RenewalHandler(self.consents, max_attempts=attempts)
        self.withdrawal_handler = WithdrawalHandler(self.consents, max_attempts=attempts)

    # ---- Templates ----
    async def create_template(self, org_id: uuid.UUID, payload: ConsentTemplateCreate) -> ConsentTemplate:
        obj = await self.templates.create(org_id, **payload.model_dump())
        await self.session.commit()
        return obj

    async def list_templates(self, org_id: uuid.UUID):
        return await self.templates.list(org_id)

    # ---- Capture ----
    async def capture(self, org_id: uuid.UUID, payload: ConsentCreate, now: datetime, actor_id: uuid.UUID, request: Request | None = None) -> ConsentOut:
        now = as_utc(now)
        template = await self.templates.get(org_id, payload.template_id)
        if not template:
            raise TemplateNotFound(payload.template_id)
        policy = to_policy(template)

        data = dict(patient_id=payload.patient_id, template_id=template.id, clause_version=payload.clause_version)
        if payload.given:
            months = resolve_duration(ConsentRecord(), policy, payload.duration_months)
            data.update(
                given=True,
                given_at=now,
                expires_at=add_months(now, months),
                duration_months=months,
                auto_renew=payload.auto_renew and policy.allow_auto_renewal,
            )
        else:
            data.update(given=False, auto_renew=False)
        obj = await self.consents.create(org_id, **data)

        await OutboxService(self.session).enqueue(
            org_id, CONSENT_CAPTURED, "consent", obj.id,
            {"patient_id": str(obj.patient_id), "template_id": str(template.id), "given": obj.given,
             "expires_at": _iso(obj.expires_at), "clause_version": obj.clause_version},
            occurred_at=now,
        )
        await AuditService(self.session).log(org_id, actor_id, "capture", "consent", obj.id, request=request)
        await self.session.commit()
        return consent_out(obj, template, now)

    # ---- Reads ----
    async def get(self, org_id: uuid.UUID, consent_id: uuid.UUID, now: datetime, actor_id: uuid.UUID | None = None, request: Request | None = None) -> ConsentOut:
        row = await self.consents.get_with_template(org_id, consent_id)
        if not row:
            raise ConsentNotFound(consent_id)
        out = consent_out(row[0], row[1], now)
        if actor_id is not None:
            await AuditService(self.session).log(org_id, actor_id, "read", "consent", consent_id, purpose=out.view.status.value, request=request)
            await self.session.commit()
        return out

    async def list_for_patient(self, org_id: uuid.UUID, patient_id: uuid.UUID, now: datetime) -> list[ConsentOut]:
        rows = await self.consents.list_for_patient(org_id, patient_id)
        return [consent_out(c, t, now) for c, t in rows]

    async def summary(self, org_id: uuid.UUID, patient_id: uuid.UUID, now: datetime) -> ConsentSummary:
        outs = await self.list_for_patient(org_id, patient_id, now)
        by_status = {s: 0 for s in ConsentStatus}
        for o in outs:
            by_status[o.view.status] += 1
        expiries = [o.view.expires_at for o in outs if o.view.is_accessible and o.view.expires_at]
        return ConsentSummary(
            patient_id=patient_id,
            total=len(outs),
            by_status=by_status,
            accessible=sum(1 for o in outs if o.view.is_accessible),
            urgent_renewals=sum(1 for o in outs if o.view.renewal_urgency in (RenewalUrgency.HIGH, RenewalUrgency.CRITICAL)),
            earliest_expiry=min(expiries) if expiries else None,
        )

    async def is_allowed(self, org_id: uuid.UUID, patient_id: uuid.UUID, now: datetime, template_id: uuid.UUID | None = None) -> bool:
        # True if any consent for the patient (optionally for one template) is accessible at `now`
        rows = await self.consents.list_for_patient(org_id, patient_id, template_id=template_id)
        return any(compute_status(to_record(c), to_policy(t), now).is_accessible for c, t in rows)

    async def renewal_history(self, org_id: uuid.UUID, consent_id: uuid.UUID):
        if not await self.consents.get_with_template(org_id, consent_id):
            raise ConsentNotFound(consent_id)
        return await self.renewals.list_for_consent(org_id, consent_id)

    async def events(self, org_id: uuid.UUID, consent_id: uuid.UUID):
        # lifecycle events emitted for this consent, oldest first, with relay state
        if not await self.consents.get_with_template(org_id, consent_id):
            raise ConsentNotFound(consent_id)
        return await OutboxRepository(self.session).list_for_subject(org_id, "consent", str(consent_id))

    # ---- Transitions ----
    async def _reject(self, org_id: uuid.UUID, actor_id: uuid.UUID, action: str, consent_id: uuid.UUID, error: ConsentError, request: Request | None):
        await self.session.rollback()
        await AuditService(self.session).log(org_id, actor_id, action, "consent", consent_id, success=False, detail=str(error), request=request)
        await self.session.commit()

    async def withdraw(self, org_id: uuid.UUID, consent_id: uuid.UUID, now: datetime, actor_id: uuid.UUID, reason: str | None = None, request: Request | None = None) -> ConsentOut:
        now = as_utc(now)
        try:
            result = await self.withdrawal_handler.withdraw(org_id, consent_id, now, reason)
        except ConsentError as e:
            await self._reject(org_id, actor_id, "withdraw", consent_id, e, request)
            raise
        if result.applied:
            await OutboxService(self.session).enqueue(
                org_id, CONSENT_WITHDRAWN, "consent", consent_id,
                {"withdrawn_at": _iso(result.after.withdrawn_at), "reason": reason},
                occurred_at=now,
            )
            await AuditService(self.session).log(org_id, actor_id, "withdraw", "consent", consent_id, detail=reason, request=request)
            await self.session.commit()
        return await self.get(org_id, consent_id, now)

    async def renew(self, org_id: uuid.UUID, consent_id: uuid.UUID, now: datetime, actor_id: uuid.UUID,
                    duration_months: int | None = None, renewed_by: str = "patient", request: Request | None = None) -> ConsentOut:
        now = as_utc(now)
        try:
            result = await self.renewal_handler.renew(org_id, consent_id, now, duration_months)
        except ConsentError as e:
            await self._reject(org_id, actor_id, "renew", consent_id, e, request)
            raise
        await self._record_renewal(org_id, consent_id, now, actor_id, result, renewed_by, request)
        await self.session.commit()
        return await self.get(org_id, consent_id, now)

    async def _record_renewal(self, org_id: uuid.UUID, consent_id: uuid.UUID, now: datetime, actor_id: uuid.UUID,
                              result: TransitionResult, renewed_by: str, request: Request | None) -> None:
        await self.renewals.create(
            org_id,
            consent_id=consent_id,
            renewed_at=now,
            previous_expires_at=result.before.expires_at,
            new_expires_at=result.after.expires_at,
            renewed_by=renewed_by,
            duration_months=result.duration_months,
        )
        await OutboxService(self.session).enqueue(
            org_id, CONSENT_RENEWED, "consent", consent_id,
            {"previous_expires_at": _iso(result.before.expires_at), "new_expires_at": _iso(result.after.expires_at),
             "duration_months": result.duration_months, "renewal_count": result.after.renewal_count,
             "renewed_by": renewed_by},
            occurred_at=now,
        )
        await AuditService(self.session).log(
            org_id, actor_id, "renew", "consent", consent_id,
            detail=f"{renewed_by}: {result.duration_months} months", request=request,
        )
