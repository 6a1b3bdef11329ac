"""
api/main.py -- FastAPI application entry point for the LabGate auth service.

Exposes the auth core (login, sessions, user registry, runtime security
policy) over HTTP for the laboratory front-ends.

Run with:      uvicorn asgi:app --reload

Middleware stack (outermost to innermost):
  1. CORSMiddleware        -- adds CORS headers for allowed browser origins
  2. SlowAPIMiddleware     -- enforces per-route rate limits from api.limiter

Lifespan handles startup (auth DB, notifier, session reaper) and shutdown
(cancel reaper, dispose engine) symmetrically.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from datetime import datetime, timedelta, timezone

from fastapi import FastAPI, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from slowapi.errors import RateLimitExceeded
from slowapi.middleware import SlowAPIMiddleware
from sqlalchemy import text

from api.limiter import limiter
from api.models import ErrorDetail, ErrorResponse, HealthResponse
from api.notifications import LogNotifier
from api.routes.v1.auth import router as auth_router
from api.routes.v1.config import router as config_router
from api.routes.v1.users import router as users_router
from auth.errors import (
    AccountLockedError,
    AuthError,
    ConfigInvalidError,
    DuplicateIdentityError,
    WeakCredentialError,
)
from auth.hashing import BcryptHasher
from auth.service import AuthService
from core.config import get_settings

API_VERSION = "0.1.0"

# ---------------------------------------------------------------------------
# Logging
# ---------------------------------------------------------------------------

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s %(levelname)-5s %(name)s %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
)
logger = logging.getLogger("labgate.api")

# AuthError.code -> HTTP status. Codes not listed fall back to 400.
_STATUS_BY_CODE = {
    "duplicate": 409,
    "weak_password": 422,
    "invalid_credentials": 401,
    "locked": 423,
    "inactive": 403,
    "session_expired": 401,
    "not_found": 404,
    "config_invalid": 422,
}

# ---------------------------------------------------------------------------
# Background reaper task
# ---------------------------------------------------------------------------


async def _reap_loop(app: FastAPI, interval: int, retention: timedelta) -> None:
    """Purge expired sessions and aged-out login attempts every `interval` seconds.

    Expired sessions are already rejected on lookup; reaping only keeps the
    tables small. A failed pass is logged and retried on the next tick. The
    deletes are blocking SQLAlchemy calls, so they run in a worker thread.
    """
    while True:
        await asyncio.sleep(interval)
        try:
            await asyncio.to_thread(app.state.auth.reap, datetime.now(timezone.utc), retention)
        except Exception:
            logger.exception("Reaper pass failed")


# ---------------------------------------------------------------------------
# Lifespan
# ---------------------------------------------------------------------------


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Build the AuthService before the first request and tear it down on exit.

    The reaper task starts last because it references app.state.auth.
    """
    settings = get_settings()
    logger.info("LabGate auth API starting up")
    app.state.auth = AuthService.from_url(
        settings.database_url,
        settings.secret_key,
        BcryptHasher(rounds=settings.bcrypt_rounds),
        settings.login_lock_stripes,
    )
    app.state.notifier = LogNotifier()
    if not app.state.auth.users.has_users():
        logger.warning("No users exist yet. Create the first admin with: python main.py create-admin")
    app.state.reap_task = asyncio.create_task(
        _reap_loop(
            app,
            settings.session_reap_interval_seconds,
            timedelta(days=settings.attempt_retention_days),
        )
    )

    yield

    app.state.reap_task.cancel()
    app.state.auth.close()
    logger.info("LabGate auth API shutdown complete")


# ---------------------------------------------------------------------------
# App instantiation
# ---------------------------------------------------------------------------

app = FastAPI(
    title="LabGate Auth API",
    description="Authentication, sessions, lockout and role permissions for laboratory staff and clients.",
    version=API_VERSION,
    lifespan=lifespan,
)

# ---------------------------------------------------------------------------
# Middleware stack
# ---------------------------------------------------------------------------

app.add_middleware(
    CORSMiddleware,
    allow_origins=["http://localhost", "http://localhost:3000", "http://127.0.0.1"],
    allow_credentials=True,
    allow_methods=["GET", "POST", "PUT", "PATCH", "DELETE"],
    allow_headers=["Content-Type", "Authorization"],
    max_age=3600,
)

app.add_middleware(SlowAPIMiddleware)

# SlowAPI looks for app.state.limiter by convention.
app.state.limiter = limiter


@app.middleware("http")
async def log_requests(request: Request, call_next):
    start = time.perf_counter()
    response = await call_next(request)
    ms = (time.perf_counter() - start) * 1000
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

app.include_router(auth_router, prefix="/api/v1", tags=["Auth"])
app.include_router(users_router, prefix="/api/v1", tags=["Users"])
app.include_router(config_router, prefix="/api/v1", tags=["Security Config"])


# ---------------------------------------------------------------------------
# Exception handlers
#
# All handlers return the same ErrorResponse envelope so API clients can parse
# errors uniformly without inspecting status codes to choose a schema.
# ---------------------------------------------------------------------------


@app.exception_handler(AuthError)
async def auth_error_handler(request: Request, exc: AuthError) -> JSONResponse:
    """Render auth core errors. `code` (mirrored as `kind`) is the stable outcome clients switch on."""
    extra: dict = {}
    if isinstance(exc, AccountLockedError):
        extra["unlocks_at"] = exc.unlocks_at
    elif isinstance(exc, WeakCredentialError):
        extra["violations"] = exc.violations
    elif isinstance(exc, ConfigInvalidError):
        extra["violations"] = exc.errors
    elif isinstance(exc, DuplicateIdentityError):
        extra["detail"] = exc.field

    detail = ErrorDetail(code=exc.code, kind=exc.code, message=str(exc), **extra)
    response = JSONResponse(
        status_code=_STATUS_BY_CODE.get(exc.code, 400),
        content=ErrorResponse(error=detail).model_dump(mode="json", exclude_none=True),
    )
    response.headers["Cache-Control"] = "no-store"
    return response


@app.exception_handler(RateLimitExceeded)
async def rate_limit_handler(request: Request, exc: RateLimitExceeded) -> JSONResponse:
    """Return 429 with a structured error when a rate limit is exceeded."""
    retry_after = int(getattr(exc, "retry_after", 60))
    response = JSONResponse(
        status_code=429,
        content=ErrorResponse(
            error=ErrorDetail(
                code="rate_limited",
                message="Too many requests.",
                detail=str(exc),
            )
        ).model_dump(mode="json", exclude_none=True),
    )
    response.headers["Retry-After"] = str(retry_after)
    return response


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    """Return 422 with structured error when request body or query params fail validation."""
    return JSONResponse(
        status_code=422,
        content=ErrorResponse(
            error=ErrorDetail(
                code="validation_error",
                message="Request validation failed.",
                detail=str(exc.errors()),
            )
        ).model_dump(mode="json", exclude_none=True),
    )


@app.exception_handler(HTTPException)
async def http_exception_handler(request: Request, exc: HTTPException) -> JSONResponse:
    """Return a structured error for all FastAPI/Starlette HTTP exceptions.

    Route handlers raise HTTPException with detail={"code": ..., "message": ...}.
    A dict detail is used directly as the error field.
    """
    if isinstance(exc.detail, dict):
        return JSONResponse(
            status_code=exc.status_code,
            content={"error": exc.detail},
            headers=exc.headers,
        )
    return JSONResponse(
        status_code=exc.status_code,
        content=ErrorResponse(
            error=ErrorDetail(
                code=f"http_{exc.status_code}",
                message=str(exc.detail),
            )
        ).model_dump(mode="json", exclude_none=True),
        headers=exc.headers,
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
        ).model_dump(mode="json", exclude_none=True),
    )


# ---------------------------------------------------------------------------
# Health endpoint
#
# Defined directly in main.py so it is always reachable regardless of router
# registration state. Not rate limited.
# ---------------------------------------------------------------------------


@app.get("/api/v1/health", tags=["Health"])
def health(request: Request) -> HealthResponse:
    """Return liveness, version and auth database reachability."""
    components: dict[str, str] = {}
    try:
        with request.app.state.auth.engine.connect() as conn:
            conn.execute(text("SELECT 1"))
        components["database"] = "ok"
    except Exception:
        logger.exception("Health check: auth database unreachable")
        components["database"] = "unavailable"
    status = "healthy" if components["database"] == "ok" else "degraded"
    return HealthResponse(status=status, version=API_VERSION, components=components)
