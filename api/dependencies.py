"""
api/dependencies.py -- FastAPI Depends() helpers for the terminal API.

The trading terminal is the only caller. It authenticates with a shared
secret in the X-Service-Token header, compared in constant time against
Settings.service_token. There are no end-user credentials on this surface:
users prove who they are by redeeming a one-time token.

get_core() hands route handlers the SecurityCore built in the lifespan.
"""

from __future__ import annotations

from fastapi import HTTPException, Request

from api.models import ErrorDetail
from auth.core import SecurityCore
from auth.tokens import constant_time_equals

SERVICE_TOKEN_HEADER = "X-Service-Token"


def require_service_token(request: Request) -> None:
    """Reject the request with 401 unless it carries the configured service token.

    Use as a router-level dependency:
        router = APIRouter(dependencies=[Depends(require_service_token)])
    """
    presented = request.headers.get(SERVICE_TOKEN_HEADER, "")
    expected = request.app.state.core.settings.service_token
    if not presented or not constant_time_equals(presented, expected):
        raise HTTPException(
            status_code=401,
            detail=ErrorDetail(code="unauthorized", message="Missing or invalid service token.").model_dump(),
        )


def get_core(request: Request) -> SecurityCore:
    return request.app.state.core
