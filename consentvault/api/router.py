from fastapi import APIRouter
from consentvault.modules.consent.router import router as consent_router
from consentvault.modules.audit.router import router as audit_router

api_router = APIRouter()
api_router.include_router(consent_router, tags=["consent"])
api_router.include_router(audit_router, tags=["audit"])

@api_router.get("/health", tags=["health"])
async def health():
    return {"status": "ok"}
