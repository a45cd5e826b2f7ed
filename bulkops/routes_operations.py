from __future__ import annotations

import csv
import json
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, BackgroundTasks, Depends, Request
from fastapi.responses import JSONResponse, Response

from bulkops.auth import require_console_user, truthy
from bulkops.config import dlog
from bulkops.operations import EXPORT_FORMATS, new_operation_id
from bulkops.progress import CANCELLED
from bulkops.records import parse_csv, parse_json_records, resolve_fields
from bulkops.responses import error_response
from bulkops.state import AppState


def _records_from_body(body: Dict[str, Any]) -> List[Dict[str, Any]]:
    """Accept records as a JSON list, CSV text, or JSON text; raises ValueError otherwise."""
    if isinstance(body.get("records"), list):
        records = body["records"]
        if not all(isinstance(r, dict) for r in records):
            raise ValueError("'records' must be a list of objects")
        return records
    if isinstance(body.get("csv"), str):
        delimiter = body.get("delimiter") or ","
        if not isinstance(delimiter, str) or len(delimiter) != 1:
            raise ValueError("'delimiter' must be a single character")
        try:
            _, rows = parse_csv(body["csv"], delimiter=delimiter)
        except (csv.Error, TypeError) as e:
            raise ValueError(f"Invalid CSV: {e}") from e
        return rows
    if isinstance(body.get("json"), str):
        try:
            return parse_json_records(body["json"])
        except json.JSONDecodeError as e:
            raise ValueError(f"Invalid JSON records: {e}") from e
    return []


def _flag(body: Dict[str, Any], key: str, default: bool) -> bool:
    """Read a boolean option; accepts JSON booleans and "true"/"false" style strings."""
    value = body.get(key)
    if value is None:
        return default
    if isinstance(value, bool):
        return value
    if isinstance(value, str) and value.strip().lower() in {"1", "true", "yes", "on", "0", "false", "no", "off"}:
        return truthy(value)
    raise ValueError(f"'{key}' must be a boolean")


async def _read_body(request: Request) -> Dict[str, Any]:
    raw = await request.body()
    if not raw:
        return {}
    body = json.loads(raw)
    if not isinstance(body, dict):
        raise ValueError("Request body must be a JSON object")
    return body


def create_operations_router(state: AppState) -> APIRouter:
    router = APIRouter(prefix="/api/operations", dependencies=[Depends(require_console_user(state.auth_config))])

    def launch(kind: str, background: BackgroundTasks, fn, kwargs: Dict[str, Any]) -> JSONResponse:
        operation_id = new_operation_id(kind)
        holder = state.reserve(kind, operation_id)
        if holder:
            return error_response(
                f"{kind.capitalize()} operation already running",
                "OPERATION_RUNNING",
                409,
                {"operation_id": holder},
            )
        background.add_task(state.execute, kind, operation_id, fn, kwargs)
        dlog("operation_queued", {"type": kind, "id": operation_id})
        return JSONResponse(
            {"success": True, "message": f"{kind.capitalize()} operation started", "operation_id": operation_id, "status": "running"},
            status_code=202,
        )

    async def parse(request: Request):
        try:
            body = await _read_body(request)
            return body, _records_from_body(body)
        except ValueError as e:
            return None, error_response(str(e), "VALIDATION_ERROR", 400)

    def population_for(body: Dict[str, Any]) -> Optional[str]:
        return body.get("population_id") or state.settings.get("default_population_id")

    @router.post("/import")
    async def start_import(request: Request, background: BackgroundTasks):
        body, records = await parse(request)
        if body is None:
            return records
        if not records:
            return error_response("No records to import", "VALIDATION_ERROR", 400)
        try:
            skip_duplicates = _flag(body, "skip_duplicates", True)
        except ValueError as e:
            return error_response(str(e), "VALIDATION_ERROR", 400)
        kwargs = {
            "rows": records,
            "population_id": population_for(body),
            "skip_duplicates": skip_duplicates,
            "filename": body.get("filename"),
        }
        return launch("import", background, state.operations.run_import, kwargs)

    @router.post("/export")
    async def start_export(request: Request, background: BackgroundTasks):
        body, records_or_error = await parse(request)
        if body is None:
            return records_or_error
        fmt = body.get("format") or "csv"
        if fmt not in EXPORT_FORMATS:
            return error_response(f"Unsupported export format: {fmt}", "VALIDATION_ERROR", 400)
        fields = body.get("fields") or "basic"
        try:
            resolve_fields(fields)
            include_disabled = _flag(body, "include_disabled", True)
        except ValueError as e:
            return error_response(str(e), "VALIDATION_ERROR", 400)
        kwargs = {
            "population_id": body.get("population_id"),
            "fields": fields,
            "fmt": fmt,
            "include_disabled": include_disabled,
        }
        return launch("export", background, state.operations.run_export, kwargs)

    @router.post("/modify")
    async def start_modify(request: Request, background: BackgroundTasks):
        body, records = await parse(request)
        if body is None:
            return records
        if not records:
            return error_response("No records to modify", "VALIDATION_ERROR", 400)
        try:
            create_if_missing = _flag(body, "create_if_missing", False)
        except ValueError as e:
            return error_response(str(e), "VALIDATION_ERROR", 400)
        kwargs = {
            "rows": records,
            "create_if_missing": create_if_missing,
            "population_id": body.get("population_id"),
            "filename": body.get("filename"),
        }
        return launch("modify", background, state.operations.run_modify, kwargs)

    @router.post("/delete")
    async def start_delete(request: Request, background: BackgroundTasks):
        body, records = await parse(request)
        if body is None:
            return records
        population_id = body.get("population_id")
        if not records and not population_id:
            return error_response("Delete needs records or a population_id", "VALIDATION_ERROR", 400)
        kwargs = {"rows": records or None, "population_id": population_id, "filename": body.get("filename")}
        return launch("delete", background, state.operations.run_delete, kwargs)

    @router.get("")
    async def list_operations():
        with state.lock:
            running = dict(state.running)
            results = dict(state.results)
        return {
            "success": True,
            "operations": [
                {**s.to_dict(), "result": results[s.id].to_dict() if s.id in results else None}
                for s in sorted(state.tracker.all(), key=lambda s: s.start_time, reverse=True)
            ],
            "running": running,
        }

    @router.delete("/completed")
    async def clear_completed():
        removed = state.tracker.clear_completed()
        with state.lock:
            live = {s.id for s in state.tracker.all()}
            for op_id in [k for k in state.results if k not in live]:
                del state.results[op_id]
        return {"success": True, "removed": removed}

    @router.get("/{operation_id}")
    async def get_operation(operation_id: str):
        progress = state.tracker.get(operation_id)
        with state.lock:
            result = state.results.get(operation_id)
            queued = operation_id in state.running.values()
        if progress is None:
            if queued:
                return {"success": True, "operation": {"id": operation_id, "status": "queued"}, "result": None}
            return error_response("Operation not found", "NOT_FOUND", 404)
        return {
            "success": True,
            "operation": progress.to_dict(),
            "result": result.to_dict() if result else None,
        }

    @router.get("/{operation_id}/download")
    async def download(operation_id: str):
        with state.lock:
            result = state.results.get(operation_id)
        if result is None or result.content is None:
            return error_response("No downloadable content for this operation", "NOT_FOUND", 404)
        extension = "json" if result.content_type == "application/json" else "csv"
        return Response(
            content=result.content,
            media_type=result.content_type or "text/csv",
            headers={"Content-Disposition": f'attachment; filename="{operation_id}.{extension}"'},
        )

    @router.post("/{operation_id}/cancel")
    async def cancel(operation_id: str):
        current = state.tracker.get(operation_id)
        if current is None:
            return error_response("Operation not found", "NOT_FOUND", 404)
        if current.finished and current.status != CANCELLED:
            return error_response(f"Operation already {current.status}", "OPERATION_FINISHED", 409)
        cancelled = state.tracker.cancel(operation_id)
        return {"success": True, "message": "Operation cancelled", "operation": cancelled.to_dict()}

    return router
