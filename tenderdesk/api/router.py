"""
Main API router. Mounts all sub-routers.
"""

from fastapi import APIRouter

router = APIRouter()


# ── Health (no auth) ─────────────────────────────────────────────────

@router.get("/health")
async def health():
    return {"status": "ok", "service": "tenderdesk"}


# ── Auth config (no auth) ───────────────────────────────────────────

@router.get("/auth/config")
async def auth_config():
    from ..core.config import get_settings
    from ..core.flags import get_flags

    flags = get_flags()
    if not flags.use_auth0:
        return {"auth_enabled": False, "message": "Dev mode, no auth required"}

    settings = get_settings()
    return {
        "auth_enabled": True,
        "domain": settings.auth0_domain,
        "audience": settings.auth0_audience,
    }


# ── V1 routes ────────────────────────────────────────────────────────
# Auth is per-route: document reads also serve visitors of published tenders.

from .documents import documents_router
from .uploads import uploads_router
from .usage import usage_router

router.include_router(documents_router, prefix="/v1")
router.include_router(uploads_router, prefix="/v1")
router.include_router(usage_router, prefix="/v1")
