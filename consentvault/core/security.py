import uuid
from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials
from jose import jwt, JWTError
from pydantic import BaseModel
from consentvault.core.config import settings

http_bearer = HTTPBearer(auto_error=False)

# Scopes carried in the token:
#   consent:read   view consents, status, renewal history, patient access checks
#   consent:write  capture, renew and withdraw consents; manage templates
#   consent:cron   trigger the auto-renewal and reminder passes
#   audit:read     list the audit trail
CONSENT_READ = "consent:read"
CONSENT_WRITE = "consent:write"
CONSENT_CRON = "consent:cron"
AUDIT_READ = "audit:read"

class Principal(BaseModel):
    """Caller identity. "*" in scopes grants everything (local dev admin)."""
    user_id: uuid.UUID
    org_id: uuid.UUID
    roles: list[str] = []
    scopes: list[str] = []

    def has_scopes(self, *needed: str) -> bool:
        return "*" in self.scopes or set(needed).issubset(set(self.scopes))

    @property
    def renewal_actor(self) -> str:
        # recorded on ConsentRenewal.renewed_by
        return "provider" if "provider" in self.roles else "patient"

def _decode_token(token: str) -> dict:
    try:
        return jwt.decode(token, settings.JWT_SECRET, algorithms=[settings.JWT_ALG], audience=settings.REQUIRED_AUDIENCE)
    except JWTError as e:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail=f"Invalid token: {e}")

async def get_principal(creds: HTTPAuthorizationCredentials | None = Depends(http_bearer)) -> Principal:
    # In local/dev, allow missing token and use default org
    if creds is None and settings.ENV == "local":
        return Principal(user_id=uuid.UUID(int=0), org_id=uuid.UUID(settings.DEFAULT_ORG_ID), roles=["admin"], scopes=["*"])
    if creds is None:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Missing token")

    data = _decode_token(creds.credentials)
    user_id = uuid.UUID(str(data.get("sub") or data.get("user_id")))
    org_id = uuid.UUID(str(data.get("org_id") or settings.DEFAULT_ORG_ID))
    return Principal(user_id=user_id, org_id=org_id, roles=data.get("roles", []), scopes=data.get("scopes", []))

def require_scopes(*needed: str):
    def dep(principal: Principal = Depends(get_principal)) -> Principal:
        if not principal.has_scopes(*needed):
            raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Insufficient scopes")
        return principal
    return dep
