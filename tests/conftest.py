import os

# must be set before consentvault.core.config is imported
os.environ.setdefault("POSTGRES_DSN", "sqlite+aiosqlite://")
os.environ.setdefault("ENV", "local")

import uuid
from datetime import datetime, timezone

import httpx
import pytest
from sqlalchemy.ext.asyncio import async_sessionmaker, create_async_engine, AsyncSession
from sqlalchemy.pool import StaticPool

from consentvault.core.base import Base
from consentvault.core.clock import FixedClock, get_clock
from consentvault.core.config import settings
from consentvault.core.db import get_session
from consentvault.modules.consent import models as _consent_models  # noqa: F401
from consentvault.modules.audit import models as _audit_models  # noqa: F401
from consentvault.modules.events import outbox as _outbox  # noqa: F401
from consentvault.modules.consent.models import Consent, ConsentTemplate

ORG_ID = uuid.UUID(settings.DEFAULT_ORG_ID)

def utc(*args) -> datetime:
    return datetime(*args, tzinfo=timezone.utc)

@pytest.fixture
def anyio_backend():
    return "asyncio"

@pytest.fixture
async def engine():
    eng = create_async_engine(
        "sqlite+aiosqlite://",
        poolclass=StaticPool,
        connect_args={"check_same_thread": False},
    )
    async with eng.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield eng
    await eng.dispose()

@pytest.fixture
def sessionmaker(engine):
    return async_sessionmaker(engine, expire_on_commit=False, class_=AsyncSession)

@pytest.fixture
async def session(sessionmaker):
    async with sessionmaker() as s:
        yield s

@pytest.fixture
def clock():
    return FixedClock(utc(2024, 12, 15))

@pytest.fixture
async def template(session):
    obj = ConsentTemplate(
        org_id=ORG_ID,
        title="New patient intake",
        grace_period_days=30,
        default_consent_duration=12,
        min_consent_duration=6,
        max_consent_duration=24,
        allow_auto_renewal=True,
    )
    session.add(obj)
    await session.commit()
    return obj

@pytest.fixture
def make_consent(session, template):
    """Insert a consent row directly, bypassing capture, for time-travel setups."""
    async def _make(**fields) -> Consent:
        data = dict(
            org_id=ORG_ID,
            patient_id=uuid.uuid4(),
            template_id=template.id,
            given=True,
            given_at=utc(2024, 1, 1),
            expires_at=utc(2025, 1, 1),
            duration_months=12,
        )
        data.update(fields)
        obj = Consent(**data)
        session.add(obj)
        await session.commit()
        return obj
    return _make

@pytest.fixture
async def client(sessionmaker, clock):
    from consentvault.main import app

    async def _session():
        async with sessionmaker() as s:
            yield s

    app.dependency_overrides[get_session] = _session
    app.dependency_overrides[get_clock] = lambda: clock
    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://test") as c:
        yield c
    app.dependency_overrides.clear()
