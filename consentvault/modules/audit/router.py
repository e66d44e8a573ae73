from fastapi import APIRouter, Depends, Query
from sqlalchemy.ext.asyncio import AsyncSession
from consentvault.core.db import get_session
from consentvault.core.security import AUDIT_READ, get_principal, Principal, require_scopes
from consentvault.modules.audit.service import AuditService

router = APIRouter()

@router.get("/audit", dependencies=[Depends(require_scopes(AUDIT_READ))])
async def list_audit(
    principal: Principal = Depends(get_principal),
    session: AsyncSession = Depends(get_session),
    resource_type: str | None = Query(None),
    resource_id: str | None = Query(None),
    limit: int = Query(50, ge=1, le=200),
):
    rows = await AuditService(session).list(principal.org_id, resource_type=resource_type, resource_id=resource_id, limit=limit)
    # Return raw dicts for simplicity
    return [
        {
            "id": row.id,
            "org_id": row.org_id,
            "actor_user_id": row.actor_user_id,
            "action": row.action,
            "resource_type": row.resource_type,
            "resource_id": row.resource_id,
            "purpose": row.purpose,
            "detail": row.detail,
            "success": row.success,
            "occurred_at": row.occurred_at,
        }
        for row in rows
    ]
