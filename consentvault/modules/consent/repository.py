import uuid
from typing import Any, AsyncIterator, Sequence
from datetime import datetime
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy import select, update, and_, or_
from consentvault.modules.consent.models import Consent, ConsentTemplate, ConsentRenewal
from consentvault.modules.consent.schemas import (
    ConsentPolicy, ConsentRecord, ConsentVersion, ReminderOffset,
)

def _same(column, value):
    # NULL-safe equality for the CAS predicate
    return column.is_(None) if value is None else column == value

def to_record(obj: Consent) -> ConsentRecord:
    return ConsentRecord.model_validate(obj)

def to_policy(obj: ConsentTemplate) -> ConsentPolicy:
    return ConsentPolicy.model_validate(obj)

class ConsentTemplateRepository:
    def __init__(self, session: AsyncSession):
        self.session = session

    async def create(self, org_id: uuid.UUID, **data) -> ConsentTemplate:
        obj = ConsentTemplate(org_id=org_id, **data)
        self.session.add(obj)
        await self.session.flush()
        return obj

    async def get(self, org_id: uuid.UUID, template_id: uuid.UUID) -> ConsentTemplate | None:
        q = select(ConsentTemplate).where(
            ConsentTemplate.id == template_id,
            ConsentTemplate.org_id == org_id,
            ConsentTemplate.deleted_at.is_(None),
        )
        res = await self.session.execute(q)
        return res.scalar_one_or_none()

    async def list(self, org_id: uuid.UUID) -> Sequence[ConsentTemplate]:
        q = select(ConsentTemplate).where(
            ConsentTemplate.org_id == org_id,
            ConsentTemplate.deleted_at.is_(None),
        ).order_by(ConsentTemplate.created_at.asc())
        res = await self.session.execute(q)
        return res.scalars().all()

class ConsentRepository:
    def __init__(self, session: AsyncSession):
        self.session = session

    async def create(self, org_id: uuid.UUID, **data) -> Consent:
        obj = Consent(org_id=org_id, **data)
        self.session.add(obj)
        await self.session.flush()
        return obj

    async def get_with_template(self, org_id: uuid.UUID, consent_id: uuid.UUID) -> tuple[Consent, ConsentTemplate] | None:
        q = (
            select(Consent, ConsentTemplate)
            .join(ConsentTemplate, ConsentTemplate.id == Consent.template_id)
            .where(
                Consent.id == consent_id,
                Consent.org_id == org_id,
                Consent.deleted_at.is_(None),
            )
            # CAS writes bypass the identity map; always re-read the row
            .execution_options(populate_existing=True)
        )
        res = await self.session.execute(q)
        row = res.first()
        return (row[0], row[1]) if row else None

    async def list_for_patient(
        self,
        org_id: uuid.UUID,
        patient_id: uuid.UUID,
        template_id: uuid.UUID | None = None,
    ) -> Sequence[tuple[Consent, ConsentTemplate]]:
        conditions = [
            Consent.org_id == org_id,
            Consent.patient_id == patient_id,
            Consent.deleted_at.is_(None),
        ]
        if template_id:
            conditions.append(Consent.template_id == template_id)
        q = (
            select(Consent, ConsentTemplate)
            .join(ConsentTemplate, ConsentTemplate.id == Consent.template_id)
            .where(and_(*conditions))
            .order_by(Consent.created_at.desc())
            .execution_options(populate_existing=True)
        )
        res = await self.session.execute(q)
        return [(c, t) for c, t in res.all()]

    async def list_time_bound(
        self,
        org_id: uuid.UUID,
        *,
        expires_before: datetime | None = None,
        expires_after: datetime | None = None,
        auto_renew_only: bool = False,
        reminders_pending: bool = False,
        after: tuple[datetime, uuid.UUID] | None = None,
        limit: int = 500,
    ) -> Sequence[tuple[Consent, ConsentTemplate]]:
        """Given, not withdrawn, time-bound consents; candidates for the scheduler jobs.

        Ordered by ``(expires_at, id)``. Pass the last row's key as ``after`` to
        fetch the next page.
        """
        conditions = [
            Consent.org_id == org_id,
            Consent.deleted_at.is_(None),
            Consent.given.is_(True),
            Consent.withdrawn_at.is_(None),
            Consent.expires_at.is_not(None),
        ]
        if expires_before is not None: conditions.append(Consent.expires_at <= expires_before)
        if expires_after is not None:  conditions.append(Consent.expires_at >= expires_after)
        if auto_renew_only:
            conditions.append(Consent.auto_renew.is_(True))
            conditions.append(ConsentTemplate.allow_auto_renewal.is_(True))
        if reminders_pending:
            # grace_expiry is the last bucket; nothing more will ever fire for these
            conditions.append(or_(
                Consent.last_reminder_offset.is_(None),
                Consent.last_reminder_offset != ReminderOffset.GRACE_EXPIRY.value,
            ))
        if after is not None:
            last_expiry, last_id = after
            conditions.append(or_(
                Consent.expires_at > last_expiry,
                and_(Consent.expires_at == last_expiry, Consent.id > last_id),
            ))
        q = (
            select(Consent, ConsentTemplate)
            .join(ConsentTemplate, ConsentTemplate.id == Consent.template_id)
            .where(and_(*conditions))
            .order_by(Consent.expires_at.asc(), Consent.id.asc())
            .limit(limit)
            .execution_options(populate_existing=True)
        )
        res = await self.session.execute(q)
        return [(c, t) for c, t in res.all()]

    async def iter_time_bound(self, org_id: uuid.UUID, *, batch_size: int = 500, **filters) -> AsyncIterator[tuple[Consent, ConsentTemplate]]:
        """Every candidate matching ``filters``, fetched one keyset page at a time."""
        after = None
        while True:
            page = await self.list_time_bound(org_id, after=after, limit=batch_size, **filters)
            for row in page:
                yield row
            if len(page) < batch_size:
                return
            last = page[-1][0]
            after = (last.expires_at, last.id)

    # ---- ConsentStore ----

    async def load(self, org_id: uuid.UUID, consent_id: uuid.UUID) -> tuple[ConsentRecord, ConsentPolicy] | None:
        row = await self.get_with_template(org_id, consent_id)
        if row is None:
            return None
        consent, template = row
        return to_record(consent), to_policy(template)

    async def compare_and_swap(
        self,
        org_id: uuid.UUID,
        consent_id: uuid.UUID,
        expected: ConsentVersion,
        changes: dict[str, Any],
    ) -> bool:
        q = (
            update(Consent)
            .where(
                Consent.id == consent_id,
                Consent.org_id == org_id,
                Consent.deleted_at.is_(None),
                _same(Consent.expires_at, expected.expires_at),
                _same(Consent.withdrawn_at, expected.withdrawn_at),
                Consent.renewal_count == expected.renewal_count,
            )
            .values(**changes, version=Consent.version + 1)
            .execution_options(synchronize_session=False)
        )
        res = await self.session.execute(q)
        return res.rowcount == 1

    async def mark_reminder(
        self,
        org_id: uuid.UUID,
        consent_id: uuid.UUID,
        expected: ReminderOffset | None,
        offset: ReminderOffset,
        expires_at: datetime,
    ) -> bool:
        """Record a signalled reminder bucket, only if the grant is still live and its last bucket is unchanged."""
        q = (
            update(Consent)
            .where(
                Consent.id == consent_id,
                Consent.org_id == org_id,
                Consent.expires_at == expires_at,
                Consent.withdrawn_at.is_(None),
                Consent.deleted_at.is_(None),
                _same(Consent.last_reminder_offset, expected.value if expected else None),
            )
            .values(last_reminder_offset=offset.value)
            .execution_options(synchronize_session=False)
        )
        res = await self.session.execute(q)
        return res.rowcount == 1

class ConsentRenewalRepository:
    def __init__(self, session: AsyncSession):
        self.session = session

    async def create(self, org_id: uuid.UUID, **data) -> ConsentRenewal:
        obj = ConsentRenewal(org_id=org_id, **data)
        self.session.add(obj)
        await self.session.flush()
        return obj

    async def list_for_consent(self, org_id: uuid.UUID, consent_id: uuid.UUID) -> Sequence[ConsentRenewal]:
        q = select(ConsentRenewal).where(
            ConsentRenewal.org_id == org_id,
            ConsentRenewal.consent_id == consent_id,
            ConsentRenewal.deleted_at.is_(None),
        ).order_by(ConsentRenewal.renewed_at.asc())
        res = await self.session.execute(q)
        return res.scalars().all()
