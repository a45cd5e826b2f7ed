from fastapi import APIRouter, Depends, Request

from bulkops.auth import require_console_user
from bulkops.responses import error_response


def create_settings_router(state) -> APIRouter:
    router = APIRouter(prefix="/api/settings", dependencies=[Depends(require_console_user(state.auth_config))])

    @router.get("")
    async def settings_get():
        return {"success": True, "settings": state.settings.snapshot()}

    @router.post("")
    async def settings_update(request: Request):
        try:
            payload = await request.json()
        except Exception as e:
            return error_response(f"Invalid JSON: {e}", "VALIDATION_ERROR", 400)
        if not isinstance(payload, dict):
            return error_response("Settings payload must be a JSON object", "VALIDATION_ERROR", 400)
        try:
            snapshot = state.settings.update(payload)
        except ValueError as e:
            return error_response(str(e), "VALIDATION_ERROR", 400)
        # New credentials or region invalidate whatever token we hold.
        state.apply_settings()
        return {"success": True, "message": "Settings saved", "settings": snapshot}

    return router
