import time

from fastapi import APIRouter, Depends

from bulkops.auth import public_auth_config, require_console_user
from bulkops.state import AppState


def create_health_router(state: AppState) -> APIRouter:
    """Unauthenticated liveness plus the authenticated analytics views."""
    router = APIRouter(prefix="/api")

    @router.get("/health")
    async def health():
        active = state.tracker.active()
        return {
            "success": True,
            "status": "ok",
            "uptime_seconds": int(time.time() - state.start_time),
            "token": state.tokens.status(),
            "settings_missing": state.settings.missing_required(),
            "active_operations": [{"id": s.id, "type": s.metadata.get("type"), "percentage": s.percentage} for s in active],
            "analytics": state.metrics.summary(),
            "auth": public_auth_config(state.auth_config),
        }

    analytics = APIRouter(prefix="/analytics", dependencies=[Depends(require_console_user(state.auth_config))])

    @analytics.get("")
    async def analytics_snapshot():
        return {"success": True, "summary": state.metrics.summary(), **state.metrics.snapshot()}

    @analytics.delete("")
    async def analytics_reset():
        state.metrics.reset()
        return {"success": True, "message": "Analytics reset"}

    router.include_router(analytics)
    return router
