"""Transactional outbox for consent lifecycle events.

Services enqueue events in the same transaction as the state change they
describe; ``run_outbox_relay`` publishes committed rows to the event bus and
retries failures with capped exponential backoff.
"""
import uuid
import asyncio
import logging
from datetime import datetime, timedelta, timezone

from sqlalchemy.orm import Mapped, mapped_column
from sqlalchemy import String, Integer, Text, JSON, select, and_
from sqlalchemy.ext.asyncio import AsyncSession

from consentvault.core.base import Base, TimestampedTenantMixin, UTCDateTime, utcnow
from consentvault.core.db import SessionLocal
from consentvault.platform.provider_registry import registry

log = logging.getLogger("event.outbox")

TOPIC = "consent.events"

# event types
CONSENT_CAPTURED = "CONSENT_CAPTURED"
CONSENT_RENEWED = "CONSENT_RENEWED"
CONSENT_WITHDRAWN = "CONSENT_WITHDRAWN"
CONSENT_REMINDER_DUE = "CONSENT_REMINDER_DUE"

class EventOutbox(Base, TimestampedTenantMixin):
    event_type: Mapped[str] = mapped_column(String(64))
    subject_type: Mapped[str] = mapped_column(String(32))
    subject_id: Mapped[str] = mapped_column(String(64))
    payload: Mapped[dict] = mapped_column(JSON)

    occurred_at: Mapped[datetime] = mapped_column(UTCDateTime(), default=utcnow)

    status: Mapped[str] = mapped_column(String(16), default="pending")  # pending | processing | sent
    attempts: Mapped[int] = mapped_column(Integer, default=0)
    next_attempt_at: Mapped[datetime] = mapped_column(UTCDateTime(), default=utcnow)
    last_error: Mapped[str | None] = mapped_column(Text, nullable=True)

def backoff_seconds(attempts: int) -> int:
    return min(60, 2 ** min(attempts, 6))  # 2,4,8,16,32,60s

class OutboxRepository:
    def __init__(self, session: AsyncSession):
        self.session = session

    async def enqueue(self, org_id: uuid.UUID, *, event_type: str, subject_type: str, subject_id: str, payload: dict, occurred_at: datetime | None = None) -> EventOutbox:
        now = utcnow()
        obj = EventOutbox(
            org_id=org_id,
            event_type=event_type,
            subject_type=subject_type,
            subject_id=str(subject_id),
            payload=payload,
            occurred_at=occurred_at or now,
            status="pending",
            attempts=0,
            next_attempt_at=now,
        )
        self.session.add(obj)
        await self.session.flush()
        return obj

    async def list_for_subject(self, org_id: uuid.UUID, subject_type: str, subject_id: str) -> list[EventOutbox]:
        q = select(EventOutbox).where(
            EventOutbox.org_id == org_id,
            EventOutbox.subject_type == subject_type,
            EventOutbox.subject_id == str(subject_id),
            EventOutbox.deleted_at.is_(None),
        ).order_by(EventOutbox.occurred_at.asc())
        res = await self.session.execute(q)
        return list(res.scalars().all())

    async def claim_batch(self, limit: int = 50) -> list[EventOutbox]:
        # SELECT ... FOR UPDATE SKIP LOCKED
        q = (
            select(EventOutbox)
            .where(
                and_(
                    EventOutbox.deleted_at.is_(None),
                    EventOutbox.status == "pending",
                    EventOutbox.next_attempt_at <= utcnow(),
                )
            )
            .order_by(EventOutbox.occurred_at.asc())
            .limit(limit)
            .with_for_update(skip_locked=True)
        )
        res = await self.session.execute(q)
        rows = list(res.scalars().all())
        for r in rows:
            r.status = "processing"
        await self.session.flush()
        return rows

    async def mark_sent(self, obj: EventOutbox):
        obj.status = "sent"
        obj.last_error = None
        await self.session.flush()

    async def mark_failed(self, obj: EventOutbox, error: str):
        obj.status = "pending"  # retry
        obj.attempts = (obj.attempts or 0) + 1
        obj.next_attempt_at = utcnow() + timedelta(seconds=backoff_seconds(obj.attempts))
        obj.last_error = error[:2000]
        await self.session.flush()

class OutboxService:
    def __init__(self, session: AsyncSession):
        self.session = session
        self.repo = OutboxRepository(session)

    async def enqueue(self, org_id: uuid.UUID, event_type: str, subject_type: str, subject_id: str | uuid.UUID, payload: dict, occurred_at: datetime | None = None) -> EventOutbox:
        return await self.repo.enqueue(org_id, event_type=event_type, subject_type=subject_type, subject_id=str(subject_id), payload=payload, occurred_at=occurred_at)

def envelope(ev: EventOutbox) -> dict:
    return {
        "org_id": str(ev.org_id),
        "event_type": ev.event_type,
        "subject": {"type": ev.subject_type, "id": ev.subject_id},
        "payload": ev.payload,
        "occurred_at": ev.occurred_at.astimezone(timezone.utc).isoformat(),
        "outbox_id": str(ev.id),
    }

async def relay_once(session: AsyncSession, limit: int = 50) -> int:
    """Publish one claimed batch. Returns the number of rows claimed."""
    bus = registry.event_bus()
    repo = OutboxRepository(session)
    batch = await repo.claim_batch(limit=limit)
    for ev in batch:
        try:
            await bus.publish(topic=TOPIC, key=ev.subject_id or "-", value=envelope(ev))
            await repo.mark_sent(ev)
        except Exception as ex:  # noqa: BLE001 - bus failures are retried, not fatal
            log.exception("Publish failed for outbox row %s", ev.id)
            await repo.mark_failed(ev, error=str(ex))
    await session.commit()
    return len(batch)

# ---- Background relay ----

async def run_outbox_relay(poll_interval_seconds: float = 1.0):
    log.info("Outbox relay started with bus=%s", registry.event_bus().__class__.__name__)
    try:
        while True:
            async with SessionLocal() as session:
                try:
                    claimed = await relay_once(session)
                except Exception:
                    log.exception("Outbox relay iteration failed")
                    await session.rollback()
                    claimed = 0
            if not claimed:
                await asyncio.sleep(poll_interval_seconds)
            else:
                await asyncio.sleep(0)  # yield
    except asyncio.CancelledError:
        log.info("Outbox relay cancelled; shutting down")
        raise
