import uuid
from datetime import datetime, timezone

import pytest

from consentvault.modules.consent.repository import ConsentRepository, to_record
from consentvault.modules.consent.schemas import ConsentVersion, ReminderOffset
from consentvault.core.config import settings

ORG_ID = uuid.UUID(settings.DEFAULT_ORG_ID)

def utc(*args) -> datetime:
    return datetime(*args, tzinfo=timezone.utc)

pytestmark = pytest.mark.anyio

async def test_load_maps_row_and_policy(session, template, make_consent):
    consent = await make_consent(clause_version="v2")
    record, policy = await ConsentRepository(session).load(ORG_ID, consent.id)
    assert record.id == consent.id
    assert record.expires_at == utc(2025, 1, 1)
    assert record.clause_version == "v2"
    assert (policy.min_consent_duration, policy.max_consent_duration) == (6, 24)
    assert policy.allow_auto_renewal is True

async def test_load_is_tenant_scoped(session, make_consent):
    consent = await make_consent()
    assert await ConsentRepository(session).load(uuid.uuid4(), consent.id) is None

async def test_compare_and_swap_applies_on_matching_version(session, make_consent):
    consent = await make_consent()
    repo = ConsentRepository(session)
    expected = ConsentVersion(utc(2025, 1, 1), None, 0)
    ok = await repo.compare_and_swap(ORG_ID, consent.id, expected, {"expires_at": utc(2026, 1, 1), "renewal_count": 1})
    assert ok is True
    await session.commit()

    row, _ = await repo.get_with_template(ORG_ID, consent.id)
    assert row.expires_at == utc(2026, 1, 1)
    assert row.renewal_count == 1
    assert row.version == 2

async def test_compare_and_swap_rejects_stale_version(session, make_consent):
    consent = await make_consent()
    repo = ConsentRepository(session)
    first = ConsentVersion(utc(2025, 1, 1), None, 0)
    assert await repo.compare_and_swap(ORG_ID, consent.id, first, {"renewal_count": 1, "expires_at": utc(2026, 1, 1)})
    # a second writer still holding the original snapshot
    assert not await repo.compare_and_swap(ORG_ID, consent.id, first, {"withdrawn_at": utc(2024, 12, 15)})
    await session.commit()

    record = to_record((await repo.get_with_template(ORG_ID, consent.id))[0])
    assert record.withdrawn_at is None
    assert record.renewal_count == 1

async def test_compare_and_swap_compares_nulls(session, make_consent):
    consent = await make_consent(withdrawn_at=utc(2024, 6, 1))
    repo = ConsentRepository(session)
    assert not await repo.compare_and_swap(
        ORG_ID, consent.id, ConsentVersion(utc(2025, 1, 1), None, 0), {"renewal_count": 1},
    )
    assert await repo.compare_and_swap(
        ORG_ID, consent.id, ConsentVersion(utc(2025, 1, 1), utc(2024, 6, 1), 0), {"withdrawal_reason": "late note"},
    )

async def test_mark_reminder_claims_each_bucket_once(session, make_consent):
    consent = await make_consent()
    repo = ConsentRepository(session)
    assert await repo.mark_reminder(ORG_ID, consent.id, None, ReminderOffset.DAYS_30, utc(2025, 1, 1))
    assert not await repo.mark_reminder(ORG_ID, consent.id, None, ReminderOffset.DAYS_30, utc(2025, 1, 1))
    assert await repo.mark_reminder(ORG_ID, consent.id, ReminderOffset.DAYS_30, ReminderOffset.DAYS_14, utc(2025, 1, 1))
    await session.commit()

    record, _ = await repo.load(ORG_ID, consent.id)
    assert record.last_reminder_offset is ReminderOffset.DAYS_14

async def test_mark_reminder_refuses_after_renewal(session, make_consent):
    consent = await make_consent()
    repo = ConsentRepository(session)
    await repo.compare_and_swap(
        ORG_ID, consent.id, ConsentVersion(utc(2025, 1, 1), None, 0), {"expires_at": utc(2026, 1, 1), "renewal_count": 1},
    )
    assert not await repo.mark_reminder(ORG_ID, consent.id, None, ReminderOffset.DAYS_7, utc(2025, 1, 1))

async def test_list_time_bound_filters_candidates(session, template, make_consent):
    due = await make_consent(expires_at=utc(2024, 12, 20), auto_renew=True)
    await make_consent(expires_at=utc(2025, 6, 1), auto_renew=True)
    await make_consent(expires_at=utc(2024, 12, 21), auto_renew=False)
    await make_consent(expires_at=utc(2024, 12, 22), auto_renew=True, withdrawn_at=utc(2024, 12, 1))
    await make_consent(expires_at=None, auto_renew=True)
    await make_consent(given=False, given_at=None, expires_at=None)

    repo = ConsentRepository(session)
    window = await repo.list_time_bound(
        ORG_ID, expires_after=utc(2024, 12, 15), expires_before=utc(2024, 12, 22), auto_renew_only=True,
    )
    assert [c.id for c, _ in window] == [due.id]

    everything = await repo.list_time_bound(ORG_ID)
    assert len(everything) == 3
    assert [c.expires_at for c, _ in everything] == sorted(c.expires_at for c, _ in everything)

async def test_mark_reminder_refuses_withdrawn_or_deleted(session, make_consent):
    withdrawn = await make_consent()
    deleted = await make_consent(deleted_at=utc(2024, 12, 1))
    repo = ConsentRepository(session)
    await repo.compare_and_swap(
        ORG_ID, withdrawn.id, ConsentVersion(utc(2025, 1, 1), None, 0), {"withdrawn_at": utc(2024, 12, 15)},
    )
    assert not await repo.mark_reminder(ORG_ID, withdrawn.id, None, ReminderOffset.DAYS_30, utc(2025, 1, 1))
    assert not await repo.mark_reminder(ORG_ID, deleted.id, None, ReminderOffset.DAYS_30, utc(2025, 1, 1))

async def test_list_time_bound_skips_fully_reminded(session, make_consent):
    await make_consent(expires_at=utc(2021, 1, 1), last_reminder_offset=ReminderOffset.GRACE_EXPIRY.value)
    entered_grace = await make_consent(expires_at=utc(2021, 2, 1), last_reminder_offset=ReminderOffset.GRACE_ENTRY.value)
    fresh = await make_consent()

    rows = await ConsentRepository(session).list_time_bound(ORG_ID, reminders_pending=True)
    assert [c.id for c, _ in rows] == [entered_grace.id, fresh.id]

async def test_iter_time_bound_pages_by_expiry_then_id(session, make_consent):
    same_day = [await make_consent(expires_at=utc(2025, 1, 1)) for _ in range(3)]
    later = await make_consent(expires_at=utc(2025, 2, 1))

    repo = ConsentRepository(session)
    seen = [c.id async for c, _ in repo.iter_time_bound(ORG_ID, batch_size=2)]
    assert len(seen) == len(set(seen)) == 4
    assert set(seen[:3]) == {c.id for c in same_day}
    assert seen[3] == later.id
