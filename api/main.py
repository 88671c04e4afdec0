"""
api/main.py -- FastAPI application entry point for the Ace Trade terminal API.

The trading terminal calls this service to redeem one-time login tokens that
the Telegram bot hands out, and to read or change a user's session state.

Run with:      uvicorn asgi:app --reload

Middleware stack (outermost to innermost):
  1. SlowAPIMiddleware -- enforces per-route rate limits from api.limiter
  2. log_requests      -- one access-log line per request with latency

Lifespan handles startup (settings, store, SecurityCore, cleanup task) and
shutdown (cancel cleanup task, close DB engine) symmetrically.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

from fastapi import FastAPI, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from slowapi.errors import RateLimitExceeded
from slowapi.middleware import SlowAPIMiddleware

from api.limiter import limiter
from api.models import ErrorDetail, ErrorResponse, HealthResponse
from api.routes.v1.sessions import router as sessions_router
from api.routes.v1.users import router as users_router
from auth.core import SecurityCore
from auth.store import SecurityStore
from core.config import get_settings
from core.errors import SecurityError

API_VERSION = "0.1.0"

# ---------------------------------------------------------------------------
# Logging
# ---------------------------------------------------------------------------

logging.basicConfig(
    level=get_settings().log_level.upper(),
    format="%(asctime)s %(levelname)-5s %(name)s %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
)
logger = logging.getLogger("acetrade.api")

# ---------------------------------------------------------------------------
# Background cleanup task
# ---------------------------------------------------------------------------


async def _cleanup_loop(app: FastAPI, interval_seconds: int) -> None:
    """Delete expired one-time tokens every ``interval_seconds``.

    run_cleanup() is blocking database work, so it runs in the default
    executor. A failed pass is logged and the loop carries on; the next pass
    catches up. CancelledError from task.cancel() during shutdown propagates
    out of asyncio.sleep and unwinds the coroutine.
    """
    while True:
        await asyncio.sleep(interval_seconds)
        try:
            await asyncio.to_thread(app.state.core.run_cleanup)
        except SecurityError as exc:
            logger.warning("Scheduled cleanup failed (%s); retrying next interval", exc.code)


# ---------------------------------------------------------------------------
# Lifespan
# ---------------------------------------------------------------------------


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Build the store and SecurityCore, start cleanup, tear both down on exit."""
    settings = get_settings()
    logger.info("Ace Trade API starting up")
    store = SecurityStore(settings.database_url, timeout=settings.db_timeout_seconds)
    app.state.store = store
    app.state.core = SecurityCore(store, settings)
    logger.info("Security store initialized")
    app.state.cleanup_task = asyncio.create_task(_cleanup_loop(app, settings.cleanup_interval_seconds))

    yield

    app.state.cleanup_task.cancel()
    store.close()
    logger.info("Ace Trade API shutdown complete")


# ---------------------------------------------------------------------------
# App instantiation
# ---------------------------------------------------------------------------

app = FastAPI(
    title="Ace Trade API",
    description="One-time session redemption and account security state for the trading terminal.",
    version=API_VERSION,
    lifespan=lifespan,
    # Service-to-service API; no public schema browsing.
    docs_url=None,
    redoc_url=None,
)

app.add_middleware(SlowAPIMiddleware)

# SlowAPI looks for app.state.limiter by convention.
app.state.limiter = limiter


@app.middleware("http")
async def log_requests(request: Request, call_next):
    start = time.perf_counter()
    response = await call_next(request)
    ms = (time.perf_counter() - start) * 1000
    # request.url.path only: the redeem token travels in the body, never the URL.
    logger.info(
        "%s %s %d %.1fms %s",
        request.method,
        request.url.path,
        response.status_code,
        ms,
        request.client.host if request.client else "unknown",
    )
    return response


# ---------------------------------------------------------------------------
# Router registration
# ---------------------------------------------------------------------------

app.include_router(sessions_router, prefix="/api/v1", tags=["Sessions"])
app.include_router(users_router, prefix="/api/v1", tags=["Users"])


# ---------------------------------------------------------------------------
# Exception handlers
#
# All handlers return the same ErrorResponse envelope so the terminal can
# parse errors uniformly without inspecting status codes to choose a schema.
# ---------------------------------------------------------------------------

# SecurityError.code -> HTTP status. Codes missing here fall back to 400.
_STATUS_BY_CODE: dict[str, int] = {
    "not_found": 404,
    "rate_limited": 429,
    "invalid_token": 401,
    "already_used": 409,
    "expired_token": 410,
    "invalid_2fa_code": 401,
    "2fa_required": 409,
    "account_locked": 423,
    "conflict": 409,
    "transient": 503,
    "datastore_error": 500,
}


@app.exception_handler(SecurityError)
async def security_error_handler(request: Request, exc: SecurityError) -> JSONResponse:
    """Map a typed core outcome to its HTTP status with the standard envelope."""
    status = _STATUS_BY_CODE.get(exc.code, 400)
    response = JSONResponse(
        status_code=status,
        content=ErrorResponse(error=ErrorDetail(code=exc.code, message=exc.message)).model_dump(),
    )
    if exc.retryable:
        response.headers["Retry-After"] = "1"
    return response


@app.exception_handler(RateLimitExceeded)
async def rate_limit_handler(request: Request, exc: RateLimitExceeded) -> JSONResponse:
    """Return 429 with a structured error when a slowapi limit is exceeded."""
    retry_after = int(getattr(exc, "retry_after", 60))
    response = JSONResponse(
        status_code=429,
        content=ErrorResponse(
            error=ErrorDetail(
                code="rate_limited",
                message="Too many requests.",
                detail=str(exc),
            )
        ).model_dump(),
    )
    response.headers["Retry-After"] = str(retry_after)
    return response


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    """Return 422 with structured error when request body or path params fail validation."""
    return JSONResponse(
        status_code=422,
        content=ErrorResponse(
            error=ErrorDetail(
                code="validation_error",
                message="Request validation failed.",
                detail=str(exc.errors()),
            )
        ).model_dump(),
    )


@app.exception_handler(HTTPException)
async def http_exception_handler(request: Request, exc: HTTPException) -> JSONResponse:
    """Return a structured error for all FastAPI/Starlette HTTP exceptions.

    Dependencies raise HTTPException with detail=ErrorDetail(...).model_dump().
    When detail is already a structured dict, use it directly as the error field.
    """
    if isinstance(exc.detail, dict):
        return JSONResponse(status_code=exc.status_code, content={"error": exc.detail})
    return JSONResponse(
        status_code=exc.status_code,
        content=ErrorResponse(
            error=ErrorDetail(
                code=f"http_{exc.status_code}",
                message=str(exc.detail),
            )
        ).model_dump(),
    )


@app.exception_handler(Exception)
async def generic_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Catch-all handler for unexpected server errors.

    The raw exception goes to the log only, never to the response body.
    """
    logger.exception("Unhandled exception on %s %s", request.method, request.url.path)
    return JSONResponse(
        status_code=500,
        content=ErrorResponse(
            error=ErrorDetail(
                code="internal_error",
                message="An unexpected error occurred.",
            )
        ).model_dump(),
    )


# ---------------------------------------------------------------------------
# Health endpoint
#
# Defined directly in main.py (not in a router) so it is always reachable.
# No service token and no rate limit: load balancers must not be throttled.
# ---------------------------------------------------------------------------


@app.get("/api/v1/health", include_in_schema=True, tags=["Health"])
def health(request: Request) -> HealthResponse:
    """Return API liveness, version, and datastore reachability."""
    db_ok = request.app.state.store.ping()
    return HealthResponse(
        status="healthy" if db_ok else "degraded",
        version=API_VERSION,
        components={"app": "ok", "database": "ok" if db_ok else "error"},
    )
