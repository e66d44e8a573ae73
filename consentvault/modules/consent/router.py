import uuid
from fastapi import APIRouter, Depends, HTTPException, Query, Request, status
from sqlalchemy.ext.asyncio import AsyncSession
from consentvault.core.clock import Clock, get_clock
from consentvault.core.db import get_session
from consentvault.core.security import CONSENT_CRON, CONSENT_READ, CONSENT_WRITE, get_principal, Principal, require_scopes
from consentvault.modules.consent import jobs
from consentvault.modules.consent.errors import (
    ConsentError, ConsentNotFound, DurationOutOfRange, InvalidTransition, StaleConsentState, TemplateNotFound,
)
from consentvault.modules.consent.schemas import (
    ConsentCreate, ConsentEventOut, ConsentOut, ConsentRenew, ConsentRenewalOut, ConsentSummary, ConsentTemplateCreate,
    ConsentTemplateOut, ConsentWithdraw, JobReport,
)
from consentvault.modules.consent.service import ConsentService

router = APIRouter()

def svc(session: AsyncSession = Depends(get_session)) -> ConsentService:
    return ConsentService(session)

def _http_error(e: ConsentError) -> HTTPException:
    if isinstance(e, (ConsentNotFound, TemplateNotFound)):
        return HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e))
    if isinstance(e, DurationOutOfRange):
        return HTTPException(
            status_code=422,
            detail={"code": "duration_out_of_range", "message": str(e), "minimum": e.minimum, "maximum": e.maximum},
        )
    if isinstance(e, StaleConsentState):
        return HTTPException(status_code=status.HTTP_409_CONFLICT, detail={"code": "stale_consent_state", "message": str(e)})
    if isinstance(e, InvalidTransition):
        return HTTPException(status_code=status.HTTP_409_CONFLICT, detail={"code": "invalid_transition", "message": str(e)})
    return HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))

# ---- Templates ----

@router.post("/consent-templates", response_model=ConsentTemplateOut, dependencies=[Depends(require_scopes(CONSENT_WRITE))])
async def create_template(
    payload: ConsentTemplateCreate,
    principal: Principal = Depends(get_principal),
    service: ConsentService = Depends(svc),
):
    return await service.create_template(principal.org_id, payload)

@router.get("/consent-templates", response_model=list[ConsentTemplateOut], dependencies=[Depends(require_scopes(CONSENT_READ))])
async def list_templates(
    principal: Principal = Depends(get_principal),
    service: ConsentService = Depends(svc),
):
    return await service.list_templates(principal.org_id)

# ---- Consents ----

@router.post("/consents", response_model=ConsentOut, status_code=status.HTTP_201_CREATED, dependencies=[Depends(require_scopes(CONSENT_WRITE))])
async def capture_consent(
    payload: ConsentCreate,
    request: Request,
    principal: Principal = Depends(get_principal),
    service: ConsentService = Depends(svc),
    clock: Clock = Depends(get_clock),
):
    try:
        return await service.capture(principal.org_id, payload, clock.now(), principal.user_id, request=request)
    except ConsentError as e:
        raise _http_error(e)

@router.get("/consents/{consent_id}", response_model=ConsentOut, dependencies=[Depends(require_scopes(CONSENT_READ))])
async def get_consent(
    consent_id: uuid.UUID,
    request: Request,
    principal: Principal = Depends(get_principal),
    service: ConsentService = Depends(svc),
    clock: Clock = Depends(get_clock),
):
    try:
        return await service.get(principal.org_id, consent_id, clock.now(), actor_id=principal.user_id, request=request)
    except ConsentError as e:
        raise _http_error(e)

@router.get("/consents/{consent_id}/renewals", response_model=list[ConsentRenewalOut], dependencies=[Depends(require_scopes(CONSENT_READ))])
async def list_renewals(
    consent_id: uuid.UUID,
    principal: Principal = Depends(get_principal),
    service: ConsentService = Depends(svc),
):
    try:
        return await service.renewal_history(principal.org_id, consent_id)
    except ConsentError as e:
        raise _http_error(e)

@router.get("/consents/{consent_id}/events", response_model=list[ConsentEventOut], dependencies=[Depends(require_scopes(CONSENT_READ))])
async def list_events(
    consent_id: uuid.UUID,
    principal: Principal = Depends(get_principal),
    service: ConsentService = Depends(svc),
):
    try:
        return await service.events(principal.org_id, consent_id)
    except ConsentError as e:
        raise _http_error(e)

@router.post("/consents/{consent_id}/withdraw", response_model=ConsentOut, dependencies=[Depends(require_scopes(CONSENT_WRITE))])
async def withdraw_consent(
    consent_id: uuid.UUID,
    payload: ConsentWithdraw,
    request: Request,
    principal: Principal = Depends(get_principal),
    service: ConsentService = Depends(svc),
    clock: Clock = Depends(get_clock),
):
    try:
        return await service.withdraw(principal.org_id, consent_id, clock.now(), principal.user_id, reason=payload.reason, request=request)
    except ConsentError as e:
        raise _http_error(e)

@router.post("/consents/{consent_id}/renew", response_model=ConsentOut, dependencies=[Depends(require_scopes(CONSENT_WRITE))])
async def renew_consent(
    consent_id: uuid.UUID,
    payload: ConsentRenew,
    request: Request,
    principal: Principal = Depends(get_principal),
    service: ConsentService = Depends(svc),
    clock: Clock = Depends(get_clock),
):
    try:
        return await service.renew(principal.org_id, consent_id, clock.now(), principal.user_id,
                                   duration_months=payload.duration_months, renewed_by=principal.renewal_actor, request=request)
    except ConsentError as e:
        raise _http_error(e)

# ---- Patient views ----

@router.get("/patients/{patient_id}/consents", response_model=list[ConsentOut], dependencies=[Depends(require_scopes(CONSENT_READ))])
async def list_consents(
    patient_id: uuid.UUID,
    principal: Principal = Depends(get_principal),
    service: ConsentService = Depends(svc),
    clock: Clock = Depends(get_clock),
):
    return await service.list_for_patient(principal.org_id, patient_id, clock.now())

@router.get("/patients/{patient_id}/consents/summary", response_model=ConsentSummary, dependencies=[Depends(require_scopes(CONSENT_READ))])
async def consent_summary(
    patient_id: uuid.UUID,
    principal: Principal = Depends(get_principal),
    service: ConsentService = Depends(svc),
    clock: Clock = Depends(get_clock),
):
    return await service.summary(principal.org_id, patient_id, clock.now())

@router.get("/patients/{patient_id}/access", dependencies=[Depends(require_scopes(CONSENT_READ))])
async def check_access(
    patient_id: uuid.UUID,
    template_id: uuid.UUID | None = Query(None),
    principal: Principal = Depends(get_principal),
    service: ConsentService = Depends(svc),
    clock: Clock = Depends(get_clock),
):
    allowed = await service.is_allowed(principal.org_id, patient_id, clock.now(), template_id=template_id)
    return {"patient_id": patient_id, "template_id": template_id, "allowed": allowed}

# ---- Scheduler entry points ----

@router.post("/cron/consent/auto-renew", response_model=JobReport, dependencies=[Depends(require_scopes(CONSENT_CRON))])
async def cron_auto_renew(
    dry_run: bool = Query(False),
    principal: Principal = Depends(get_principal),
    session: AsyncSession = Depends(get_session),
    clock: Clock = Depends(get_clock),
):
    return await jobs.run_auto_renewals(session, principal.org_id, clock.now(), dry_run=dry_run)

@router.post("/cron/consent/reminders", response_model=JobReport, dependencies=[Depends(require_scopes(CONSENT_CRON))])
async def cron_reminders(
    dry_run: bool = Query(False),
    principal: Principal = Depends(get_principal),
    session: AsyncSession = Depends(get_session),
    clock: Clock = Depends(get_clock),
):
    return await jobs.run_expiry_reminders(session, principal.org_id, clock.now(), dry_run=dry_run)
