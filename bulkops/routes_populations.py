from fastapi import APIRouter, Depends

from bulkops.auth import require_console_user
from bulkops.pingone_client import PingOneApiError
from bulkops.responses import upstream_error_response
from bulkops.token_service import TokenError


def create_populations_router(state) -> APIRouter:
    router = APIRouter(prefix="/api/populations", dependencies=[Depends(require_console_user(state.auth_config))])

    @router.get("")
    def populations_list():
        try:
            populations = state.client.list_populations()
        except (TokenError, PingOneApiError) as e:
            return upstream_error_response(e)
        default_id = state.settings.get("default_population_id")
        return {
            "success": True,
            "populations": [
                {
                    "id": p.get("id"),
                    "name": p.get("name"),
                    "description": p.get("description"),
                    "user_count": p.get("userCount"),
                    "default": p.get("id") == default_id or bool(p.get("default")),
                }
                for p in populations
            ],
            "default_population_id": default_id,
        }

    return router
