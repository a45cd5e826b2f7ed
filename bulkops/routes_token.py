from fastapi import APIRouter, Depends

from bulkops.auth import require_console_user
from bulkops.config import dlog
from bulkops.responses import error_response, upstream_error_response
from bulkops.token_service import CredentialsError, TokenError


def create_token_router(state) -> APIRouter:
    router = APIRouter(prefix="/api/token", dependencies=[Depends(require_console_user(state.auth_config))])

    @router.get("/status")
    def token_status():
        status = state.tokens.status()
        warmup_error = None
        if not (status["has_token"] and status["is_valid"]):
            # One-shot warm-up so the console shows a usable token after startup.
            try:
                state.tokens.get_token()
            except CredentialsError as e:
                return error_response("Settings incomplete. Please update the settings.", "SETTINGS_INCOMPLETE", 400, {"missing": e.missing})
            except TokenError as e:
                dlog("token_warmup_failed", str(e))
                warmup_error = str(e)
            status = state.tokens.status()
        return {
            "success": True,
            "message": "Token is valid" if status["is_valid"] else "Token is invalid or expired",
            "data": status,
            "warmup_error": warmup_error,
        }

    @router.post("/refresh")
    def token_refresh():
        try:
            state.tokens.refresh()
        except TokenError as e:
            return upstream_error_response(e)
        return {"success": True, "message": "Token refreshed", "data": state.tokens.status()}

    @router.delete("")
    def token_clear():
        state.tokens.clear()
        return {"success": True, "message": "Token cleared", "data": state.tokens.status()}

    return router
