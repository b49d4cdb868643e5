"""
api/main.py -- FastAPI application entry point for the TaskFlow auth service.

Exposes the auth core (token issuance and rotation, MFA, password policy,
audit views) over HTTP for the TaskFlow client.

Run with:      uvicorn asgi:app --reload

Middleware stack (outermost to innermost):
  1. log_requests        -- method, path, status, latency, client
  2. SlowAPIMiddleware   -- enforces per-route rate limits from api.limiter

Lifespan builds every auth component from Settings once and stores it on
app.state; it also starts the retention sweep and tears both down
symmetrically on shutdown.
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
from sqlalchemy.exc import SQLAlchemyError

from api.limiter import limiter
from api.models import ErrorDetail, ErrorResponse, HealthResponse
from api.routes.v1.auth import router as auth_router
from api.routes.v1.mfa import router as mfa_router
from api.routes.v1.security import router as security_router
from auth.errors import (
    AccountDisabled,
    AccountLocked,
    AuthError,
    EmailAlreadyRegistered,
    InvalidCredential,
    MfaChallengeInvalid,
    PolicyViolation,
    RefreshFailed,
    TokenInvalid,
)
from auth.service import AuthComponents, build_components
from core.config import get_settings

API_VERSION = "1.0.0"
PURGE_INTERVAL_SECONDS = 6 * 60 * 60

# ---------------------------------------------------------------------------
# Logging
# ---------------------------------------------------------------------------

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s %(levelname)-5s %(name)s %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
)
logger = logging.getLogger("taskflow.api")

# ---------------------------------------------------------------------------
# Background retention sweep
# ---------------------------------------------------------------------------


async def _purge_loop(app: FastAPI) -> None:
    """Purge expired refresh tokens and aged-out audit entries every 6 hours.

    Runs as a background asyncio task started in lifespan startup.
    CancelledError from task.cancel() during shutdown propagates out of
    asyncio.sleep and unwinds the coroutine cleanly. A failed sweep is logged
    and retried on the next tick.
    """
    while True:
        await asyncio.sleep(PURGE_INTERVAL_SECONDS)
        components: AuthComponents = app.state.components
        try:
            components.run_retention(app.state.settings.audit_retention_days)
        except SQLAlchemyError:
            logger.exception("Retention sweep failed")


# ---------------------------------------------------------------------------
# Lifespan
# ---------------------------------------------------------------------------


def attach_components(app: FastAPI, components: AuthComponents) -> None:
    """Expose each component on app.state under the name auth.dependencies reads."""
    app.state.components = components
    app.state.store = components.store
    app.state.password_policy = components.policy
    app.state.audit_log = components.audit
    app.state.token_issuer = components.tokens
    app.state.mfa_engine = components.mfa
    app.state.auth_service = components.service


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Manage application-level resources across the full server lifetime.

    Everything before yield runs on startup; everything after yield runs on
    shutdown. Settings are read here and nowhere below the edge.
    """
    settings = get_settings()
    logger.info("TaskFlow auth API starting up")
    app.state.settings = settings
    limiter.enabled = settings.rate_limit_enabled
    attach_components(app, build_components(settings))
    logger.info("Auth components initialized (rate limiting=%s)", settings.rate_limit_enabled)
    app.state.purge_task = asyncio.create_task(_purge_loop(app))

    yield

    app.state.purge_task.cancel()
    app.state.components.close()
    logger.info("TaskFlow auth API shutdown complete")


# ---------------------------------------------------------------------------
# App instantiation
# ---------------------------------------------------------------------------

app = FastAPI(
    title="TaskFlow Auth API",
    description="Authentication and session security: tokens, MFA, password policy and audit.",
    version=API_VERSION,
    lifespan=lifespan,
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
app.include_router(mfa_router, prefix="/api/v1", tags=["MFA"])
app.include_router(security_router, prefix="/api/v1", tags=["Security"])


# ---------------------------------------------------------------------------
# Exception handlers
#
# All handlers return the same ErrorResponse envelope so API clients can parse
# errors uniformly without inspecting status codes to choose a schema.
# ---------------------------------------------------------------------------

# Most specific class wins; anything unlisted is a 400.
_AUTH_ERROR_STATUS: dict[type[AuthError], int] = {
    InvalidCredential: 401,
    TokenInvalid: 401,
    RefreshFailed: 401,
    MfaChallengeInvalid: 401,
    AccountDisabled: 403,
    EmailAlreadyRegistered: 409,
    AccountLocked: 423,
}


def _status_for(exc: AuthError) -> int:
    for cls in type(exc).__mro__:
        if cls in _AUTH_ERROR_STATUS:
            return _AUTH_ERROR_STATUS[cls]
    return 400


@app.exception_handler(AuthError)
async def auth_error_handler(request: Request, exc: AuthError) -> JSONResponse:
    """Render a domain failure with its stable code.

    RefreshFailed carries its kind for logs only; the body is identical for
    every kind. PolicyViolation lists every failing rule in detail.
    """
    status_code = _status_for(exc)
    detail = exc.violations if isinstance(exc, PolicyViolation) else None
    response = JSONResponse(
        status_code=status_code,
        content=ErrorResponse(error=ErrorDetail(code=exc.code, message=exc.message, detail=detail)).model_dump(),
    )
    response.headers["Cache-Control"] = "no-store"
    if status_code == 401:
        response.headers["WWW-Authenticate"] = "Bearer"
    if isinstance(exc, AccountLocked) and exc.retry_after_minutes:
        response.headers["Retry-After"] = str(exc.retry_after_minutes * 60)
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
                detail=str(exc.detail),
            )
        ).model_dump(),
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
        ).model_dump(),
    )


@app.exception_handler(HTTPException)
async def http_exception_handler(request: Request, exc: HTTPException) -> JSONResponse:
    """Return a structured error for all FastAPI/Starlette HTTP exceptions.

    When detail is already a structured dict, use it directly as the error
    field rather than stringifying it.
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
        ).model_dump(),
        headers=exc.headers,
    )


@app.exception_handler(Exception)
async def generic_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Catch-all handler for unexpected server errors.

    The raw exception is written to the log only, never to the response body.
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
# Defined directly in main.py (not in a router) so it is always reachable
# regardless of router registration state. No rate limit applied.
# ---------------------------------------------------------------------------


@app.get("/api/v1/health", include_in_schema=True, tags=["Health"])
def health(request: Request) -> HealthResponse:
    """Return API liveness, version and per-component status."""
    components = {"app": "ok", "database": "ok"}
    try:
        request.app.state.store.ping()
    except SQLAlchemyError:
        logger.warning("Health check: database unreachable", exc_info=True)
        components["database"] = "error"
    status = "healthy" if all(v == "ok" for v in components.values()) else "degraded"
    return HealthResponse(status=status, version=API_VERSION, components=components)
