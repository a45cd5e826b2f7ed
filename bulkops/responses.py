from typing import Any, Dict, Optional

from fastapi.responses import JSONResponse

from bulkops.pingone_client import PingOneApiError
from bulkops.token_service import TokenError, map_token_error


def error_body(message: str, code: str, details: Optional[Any] = None) -> Dict[str, Any]:
    body: Dict[str, Any] = {"success": False, "error": message, "code": code}
    if details is not None:
        body["details"] = details
    return body


def error_response(message: str, code: str, status_code: int, details: Optional[Any] = None) -> JSONResponse:
    return JSONResponse(error_body(message, code, details), status_code=status_code)


def upstream_error_response(exc: Exception) -> JSONResponse:
    """Map token and PingOne API failures onto client-facing error responses."""
    if isinstance(exc, TokenError):
        http, code, message = map_token_error(exc)
        return error_response(message, code, http)
    if isinstance(exc, PingOneApiError):
        if exc.status_code is None:
            return error_response("Network error contacting PingOne. Please check connectivity.", "NETWORK_ERROR", 503)
        if exc.status_code == 404:
            return error_response(exc.message, "NOT_FOUND", 404)
        if exc.status_code == 429:
            return error_response("PingOne rate limit reached. Please wait and try again.", "RATE_LIMIT", 429)
        return error_response(exc.message, "UPSTREAM_ERROR", 502, {"upstream_status": exc.status_code})
    raise exc
