import uuid

import pytest
from fastapi import HTTPException

from consentvault.core.security import (
    AUDIT_READ, CONSENT_CRON, CONSENT_READ, CONSENT_WRITE, Principal, require_scopes,
)

def principal(**fields) -> Principal:
    data = dict(user_id=uuid.uuid4(), org_id=uuid.uuid4())
    data.update(fields)
    return Principal(**data)

def test_scopes_must_all_be_present():
    p = principal(scopes=[CONSENT_READ, CONSENT_WRITE])
    assert p.has_scopes(CONSENT_READ)
    assert p.has_scopes(CONSENT_READ, CONSENT_WRITE)
    assert not p.has_scopes(CONSENT_READ, CONSENT_CRON)
    assert not p.has_scopes(AUDIT_READ)

def test_wildcard_grants_everything():
    assert principal(scopes=["*"]).has_scopes(CONSENT_CRON, AUDIT_READ)

def test_require_scopes_rejects_missing_scope():
    dep = require_scopes(CONSENT_CRON)
    with pytest.raises(HTTPException) as exc:
        dep(principal(scopes=[CONSENT_READ]))
    assert exc.value.status_code == 403
    p = principal(scopes=[CONSENT_CRON])
    assert dep(p) is p

def test_renewal_actor_follows_roles():
    assert principal(roles=["provider"]).renewal_actor == "provider"
    assert principal(roles=["admin"]).renewal_actor == "patient"
    assert principal().renewal_actor == "patient"
