import uuid
from fastapi import Request
from sqlalchemy import select, desc
from sqlalchemy.ext.asyncio import AsyncSession
from consentvault.modules.audit.models import AuditEvent

# actor for scheduler-driven changes
SYSTEM_ACTOR = uuid.UUID(int=0)

class AuditService:
    """Append-only audit trail. Rows join the caller's transaction; callers commit."""

    def __init__(self, session: AsyncSession):
        self.session = session

    async def log(self,
                  org_id: uuid.UUID,
                  actor_user_id: uuid.UUID,
                  action: str,
                  resource_type: str,
                  resource_id: str | uuid.UUID,
                  purpose: str | None = None,
                  request: Request | None = None,
                  success: bool = True,
                  detail: str | None = None) -> AuditEvent:
        ev = AuditEvent(
            org_id=org_id,
            actor_user_id=actor_user_id,
            action=action,
            resource_type=resource_type,
            resource_id=str(resource_id),
            purpose=purpose,
            detail=detail[:500] if detail else None,
            success=success,
            client_ip=(request.client.host if request and request.client else None),
            user_agent=(request.headers.get("user-agent") if request else None),
        )
        self.session.add(ev)
        await self.session.flush()
        return ev

    async def list(self, org_id: uuid.UUID, *, resource_type: str | None = None, resource_id: str | None = None, limit: int = 50) -> list[AuditEvent]:
        conditions = [AuditEvent.org_id == org_id, AuditEvent.deleted_at.is_(None)]
        if resource_type: conditions.append(AuditEvent.resource_type == resource_type)
        if resource_id:   conditions.append(AuditEvent.resource_id == resource_id)
        q = select(AuditEvent).where(*conditions).order_by(desc(AuditEvent.occurred_at)).limit(limit)
        res = await self.session.execute(q)
        return list(res.scalars().all())
