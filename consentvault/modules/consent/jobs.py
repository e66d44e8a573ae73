"""Batch passes for the external scheduler.

The consent engine owns no timers. A cron (or any other caller) runs these once
per period; both are safe to repeat. Auto-renewal goes through the same
``ConsentService.renew`` entry point as a patient, so it shares the CAS guard.
"""
import uuid
import logging
from datetime import datetime, timedelta
from sqlalchemy.ext.asyncio import AsyncSession
from consentvault.core.clock import as_utc
from consentvault.core.config import settings
from consentvault.modules.audit.service import SYSTEM_ACTOR
from consentvault.modules.consent.errors import ConsentError
from consentvault.modules.consent.repository import ConsentRepository, to_policy, to_record
from consentvault.modules.consent.reminders import auto_renewal_due, reminder_due
from consentvault.modules.consent.schemas import JobItem, JobReport
from consentvault.modules.consent.service import ConsentService
from consentvault.modules.consent.status import compute_status
from consentvault.modules.consent.transitions import plan_renewal
from consentvault.modules.events.outbox import OutboxService, CONSENT_REMINDER_DUE

log = logging.getLogger(__name__)

def _report(dry_run: bool, items: list[JobItem]) -> JobReport:
    applied = sum(1 for i in items if i.applied)
    failed = sum(1 for i in items if not i.applied and i.detail) if not dry_run else 0
    return JobReport(dry_run=dry_run, processed=len(items), applied=applied, failed=failed, items=items)

async def run_auto_renewals(session: AsyncSession, org_id: uuid.UUID, now: datetime, dry_run: bool = False, batch_size: int = 500) -> JobReport:
    now = as_utc(now)
    window = settings.CONSENT_AUTO_RENEW_WINDOW_DAYS
    repo = ConsentRepository(session)
    # collected up front: renewing moves expires_at, which is the paging key
    candidates = []
    async for consent, template in repo.iter_time_bound(
        org_id,
        batch_size=batch_size,
        expires_after=now,
        expires_before=now + timedelta(days=window),
        auto_renew_only=True,
    ):
        record, policy = to_record(consent), to_policy(template)
        if auto_renewal_due(record, policy, now, window_days=window):
            candidates.append((record, policy))
    log.info("Auto-renewal pass at %s: %d candidates (dry_run=%s)", now.isoformat(), len(candidates), dry_run)

    service = ConsentService(session)
    items: list[JobItem] = []
    for record, policy in candidates:
        if dry_run:
            after, _ = plan_renewal(record, policy, now)
            log.info("[DryRun] Would auto-renew %s: %s -> %s", record.id, record.expires_at, after.expires_at)
            items.append(JobItem(consent_id=record.id, applied=False,
                                 previous_expires_at=record.expires_at, new_expires_at=after.expires_at))
            continue
        try:
            out = await service.renew(org_id, record.id, now, SYSTEM_ACTOR, renewed_by="auto")
        except ConsentError as e:
            log.warning("Auto-renewal of %s failed: %s", record.id, e)
            items.append(JobItem(consent_id=record.id, applied=False, detail=str(e),
                                 previous_expires_at=record.expires_at))
            continue
        items.append(JobItem(consent_id=record.id, applied=True,
                             previous_expires_at=record.expires_at, new_expires_at=out.expires_at))

    report = _report(dry_run, items)
    log.info("Auto-renewal pass complete: renewed=%d failed=%d", report.applied, report.failed)
    return report

async def run_expiry_reminders(session: AsyncSession, org_id: uuid.UUID, now: datetime, dry_run: bool = False, batch_size: int = 500) -> JobReport:
    now = as_utc(now)
    repo = ConsentRepository(session)
    outbox = OutboxService(session)

    items: list[JobItem] = []
    async for consent, template in repo.iter_time_bound(org_id, batch_size=batch_size, reminders_pending=True):
        record = to_record(consent)
        view = compute_status(record, to_policy(template), now)
        offset = reminder_due(view.days_remaining, view.status, record.last_reminder_offset)
        if offset is None:
            continue
        if dry_run:
            log.info("[DryRun] Would send %s reminder for %s", offset.value, record.id)
            items.append(JobItem(consent_id=record.id, applied=False, offset=offset))
            continue
        # claim the bucket first; a concurrent run that already claimed it wins
        if not await repo.mark_reminder(org_id, record.id, record.last_reminder_offset, offset, record.expires_at):
            log.info("Reminder %s for %s already claimed or consent changed since listing", offset.value, record.id)
            continue
        await outbox.enqueue(
            org_id, CONSENT_REMINDER_DUE, "consent", record.id,
            {"patient_id": str(consent.patient_id), "template_title": template.title, "offset": offset.value,
             "status": view.status.value, "urgency": view.renewal_urgency.value,
             "days_remaining": view.days_remaining, "message": view.message},
            occurred_at=now,
        )
        await session.commit()
        items.append(JobItem(consent_id=record.id, applied=True, offset=offset))

    report = _report(dry_run, items)
    log.info("Reminder pass complete: signalled=%d (dry_run=%s)", report.applied, dry_run)
    return report
