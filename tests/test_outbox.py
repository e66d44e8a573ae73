import uuid

import pytest

from consentvault.core.config import settings
from consentvault.modules.events.outbox import (
    CONSENT_WITHDRAWN, TOPIC, OutboxRepository, OutboxService, backoff_seconds, relay_once,
)
from consentvault.platform.adapters.bus_noop import NoopEventBus
from consentvault.platform.provider_registry import registry

pytestmark = pytest.mark.anyio

ORG_ID = uuid.UUID(settings.DEFAULT_ORG_ID)

class FlakyBus(NoopEventBus):
    async def publish(self, topic, key, value, headers=None):
        raise ConnectionError("stream unavailable")

@pytest.fixture
def bus():
    bus = NoopEventBus()
    registry.use_event_bus(bus)
    yield bus
    registry.use_event_bus(None)

def test_backoff_is_capped():
    assert [backoff_seconds(n) for n in (1, 2, 3, 5, 6, 10)] == [2, 4, 8, 32, 60, 60]

async def test_relay_publishes_committed_events(session, bus):
    subject = uuid.uuid4()
    await OutboxService(session).enqueue(ORG_ID, CONSENT_WITHDRAWN, "consent", subject, {"reason": "moved"})
    await session.commit()

    assert await relay_once(session) == 1
    assert len(bus.published) == 1
    message = bus.published[0]
    assert message["topic"] == TOPIC
    assert message["key"] == str(subject)
    assert message["value"]["event_type"] == CONSENT_WITHDRAWN
    assert message["value"]["payload"] == {"reason": "moved"}

    rows = await OutboxRepository(session).list_for_subject(ORG_ID, "consent", str(subject))
    assert [r.status for r in rows] == ["sent"]
    assert await relay_once(session) == 0

async def test_relay_failure_schedules_retry(session):
    registry.use_event_bus(FlakyBus())
    try:
        subject = uuid.uuid4()
        await OutboxService(session).enqueue(ORG_ID, CONSENT_WITHDRAWN, "consent", subject, {})
        await session.commit()
        assert await relay_once(session) == 1
    finally:
        registry.use_event_bus(None)

    row = (await OutboxRepository(session).list_for_subject(ORG_ID, "consent", str(subject)))[0]
    assert row.status == "pending"
    assert row.attempts == 1
    assert "stream unavailable" in row.last_error
    # backed off, so not claimable right away
    assert await relay_once(session) == 0
