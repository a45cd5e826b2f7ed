from contextlib import asynccontextmanager
from typing import Optional

from dotenv import load_dotenv
from fastapi import FastAPI
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException

from bulkops.config import dlog
from bulkops.responses import error_body
from bulkops.routes_health import create_health_router
from bulkops.routes_history import create_history_router
from bulkops.routes_operations import create_operations_router
from bulkops.routes_populations import create_populations_router
from bulkops.routes_settings import create_settings_router
from bulkops.routes_token import create_token_router
from bulkops.state import AppState, build_state


load_dotenv()


def create_app(state: Optional[AppState] = None) -> FastAPI:
    state = state or build_state()

    @asynccontextmanager
    async def lifespan(_app: FastAPI):
        yield
        state.tokens.shutdown()

    app = FastAPI(title="PingOne bulk user operations", lifespan=lifespan)
    app.state.bulkops = state

    app.include_router(create_health_router(state))
    app.include_router(create_token_router(state))
    app.include_router(create_settings_router(state))
    app.include_router(create_populations_router(state))
    app.include_router(create_operations_router(state))
    app.include_router(create_history_router(state))

    @app.exception_handler(HTTPException)
    async def http_error(request, exc: HTTPException):
        return JSONResponse(
            error_body(str(exc.detail), f"HTTP_{exc.status_code}"),
            status_code=exc.status_code,
            headers=getattr(exc, "headers", None),
        )

    @app.exception_handler(RequestValidationError)
    async def validation_error(request, exc: RequestValidationError):
        errors = exc.errors()
        first = errors[0] if errors else {}
        where = ".".join(str(part) for part in first.get("loc", ()))
        message = f"Invalid request: {where} {first.get('msg', '')}".strip() if first else "Invalid request"
        return JSONResponse(
            error_body(message, "VALIDATION_ERROR", jsonable_encoder(errors)),
            status_code=400,
        )

    if state.auth_config.disabled_reason:
        dlog("console_auth_disabled", state.auth_config.disabled_reason)
    return app


app = create_app()


if __name__ == "__main__":
    # Convenience for local runs: python bulkops_server.py --bulkops-debug
    import uvicorn
    import os

    host = os.environ.get("HOST", "127.0.0.1")
    port = int(os.environ.get("PORT", "18080"))
    uvicorn.run("bulkops_server:app", host=host, port=port, reload=False)
