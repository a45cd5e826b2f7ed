from typing import Optional

from fastapi import APIRouter, Depends, Request
from fastapi.responses import JSONResponse

from bulkops.auth import require_console_user
from bulkops.responses import error_response


def create_history_router(state) -> APIRouter:
    router = APIRouter(prefix="/api/history", dependencies=[Depends(require_console_user(state.auth_config))])

    @router.get("")
    async def history_list(type: Optional[str] = None, status: Optional[str] = None, limit: int = 50, offset: int = 0):
        page = state.history.list(type=type, status=status, limit=limit, offset=offset)
        return {"success": True, **page, "filters": {"type": type, "status": status}}

    @router.get("/{entry_id}")
    async def history_detail(entry_id: int):
        entry = state.history.get(entry_id)
        if entry is None:
            return error_response("Operation not found", "NOT_FOUND", 404)
        return {"success": True, "operation": entry.to_dict()}

    @router.post("")
    async def history_add(request: Request):
        try:
            body = await request.json()
        except Exception as e:
            return error_response(f"Invalid JSON: {e}", "VALIDATION_ERROR", 400)
        if not isinstance(body, dict):
            return error_response("History entry must be a JSON object", "VALIDATION_ERROR", 400)
        allowed = (
            "type",
            "status",
            "population_id",
            "population_name",
            "records_processed",
            "records_successful",
            "records_errors",
            "duration_ms",
            "filename",
            "error",
        )
        try:
            entry = state.history.add(**{k: body.get(k) for k in allowed})
        except (TypeError, ValueError) as e:
            return error_response(str(e), "VALIDATION_ERROR", 400)
        return JSONResponse({"success": True, "operation": entry.to_dict()}, status_code=201)

    @router.delete("/{entry_id}")
    async def history_delete(entry_id: int):
        removed = state.history.delete(entry_id)
        if removed is None:
            return error_response("Operation not found", "NOT_FOUND", 404)
        return {"success": True, "id": entry_id, "operation": removed.to_dict()}

    @router.delete("")
    async def history_clear(type: Optional[str] = None, status: Optional[str] = None):
        removed = state.history.clear(type=type, status=status)
        return {"success": True, "message": f"Removed {removed} operations from history", "removed_count": removed}

    return router
