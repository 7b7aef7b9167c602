"""
api/main.py -- FastAPI application entry point for Hanashi.

Exposes the identity layer over HTTP: login/logout with an httpOnly session
cookie, session rotation, email confirmation, password reset, and admin-only
account management.

Run with:      uvicorn asgi:app --reload

Middleware stack (outermost to innermost):
  1. log_requests      -- one log line per request with latency
  2. SlowAPIMiddleware -- enforces per-route rate limits from api.limiter

Lifespan builds the IdentityStore and the services on startup and closes the
store on shutdown. Every route reads its collaborators from app.state; none
of them calls get_settings() or constructs a store itself.
"""

from __future__ import annotations

import logging
import time
from collections.abc import AsyncIterator, Callable
from contextlib import asynccontextmanager
from datetime import datetime

from fastapi import FastAPI, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from slowapi.errors import RateLimitExceeded as SlowapiRateLimitExceeded
from slowapi.middleware import SlowAPIMiddleware

from api.limiter import limiter
from api.models import ErrorDetail, ErrorResponse, HealthResponse
from api.routes.v1.auth import router as auth_router
from api.routes.v1.users import router as users_router
from auth.accounts import UserLifecycle
from auth.errors import HanashiError, InfrastructureError
from auth.groups import GroupChecker
from auth.secret_tokens import SecretTokenStore
from auth.sessions import SessionManager
from auth.store import IdentityStore
from core.config import Settings, get_settings
from notify.email import Mailer, build_mailer

API_VERSION = "0.1.0"

# ---------------------------------------------------------------------------
# Logging
# ---------------------------------------------------------------------------

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s %(levelname)-5s %(name)s %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
)
logger = logging.getLogger("hanashi.api")


# ---------------------------------------------------------------------------
# Service wiring
# ---------------------------------------------------------------------------


def attach_services(
    app: FastAPI,
    store: IdentityStore,
    settings: Settings,
    mailer: Mailer | None = None,
    clock: Callable[[], datetime] | None = None,
) -> None:
    """Build the identity services around `store` and publish them on app.state.

    Shared by the real lifespan and the test fixtures so both wire the app
    the same way. `clock` replaces the wall clock in every time-dependent
    service (tests use it to move past the 24h reset window).
    """
    timed = {"clock": clock} if clock is not None else {}
    groups = GroupChecker(store)
    lifecycle = UserLifecycle(store, groups, **timed)

    app.state.settings = settings
    app.state.store = store
    app.state.groups = groups
    app.state.lifecycle = lifecycle
    app.state.sessions = SessionManager(store, **timed)
    app.state.secrets = SecretTokenStore(store, lifecycle, **timed)
    app.state.mailer = mailer or build_mailer(
        site_name=settings.site_name,
        site_link=settings.site_link,
        from_address=settings.email_from_address,
        from_name=settings.email_from_name,
        host=settings.email_server,
        port=settings.email_port,
        username=settings.email_username,
        password=settings.email_password,
        starttls=settings.email_starttls,
    )


# ---------------------------------------------------------------------------
# Lifespan -- modern startup / shutdown pattern (replaces @app.on_event)
# ---------------------------------------------------------------------------


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Manage application-level resources across the full server lifetime.

    Everything before yield runs on startup; everything after yield runs on
    shutdown. Settings are read exactly once here. A missing pepper outside
    debug mode fails startup with a clear message instead of failing later
    on the first login.
    """
    settings = get_settings()
    logger.info("Hanashi API starting up (debug=%s)", settings.debug)
    store = IdentityStore(settings.database_url)
    attach_services(app, store, settings)
    created = app.state.groups.ensure_groups()
    logger.info("Identity store ready (%d group(s) created)", len(created))

    yield

    store.close()
    logger.info("Hanashi API shutdown complete")


# ---------------------------------------------------------------------------
# App instantiation
# ---------------------------------------------------------------------------

app = FastAPI(
    title="Hanashi API",
    description="Accounts, sessions, email confirmation and password reset for Hanashi.",
    version=API_VERSION,
    lifespan=lifespan,
)

app.add_middleware(SlowAPIMiddleware)

# SlowAPI looks for app.state.limiter by convention.
app.state.limiter = limiter


# ---------------------------------------------------------------------------
# Request logging middleware
#
# Pattern: Interceptor / Chain of Responsibility. Every request passes through
# this coroutine before reaching any route handler.
# ---------------------------------------------------------------------------


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


# ---------------------------------------------------------------------------
# Exception handlers
#
# All handlers return the same ErrorResponse envelope so API clients can parse
# errors uniformly without inspecting status codes to choose a schema.
# ---------------------------------------------------------------------------


def _error(status_code: int, code: str, message: str, detail: str | None = None) -> JSONResponse:
    return JSONResponse(
        status_code=status_code,
        content=ErrorResponse(error=ErrorDetail(code=code, message=message, detail=detail)).model_dump(),
    )


@app.exception_handler(HanashiError)
async def domain_error_handler(request: Request, exc: HanashiError) -> JSONResponse:
    """Map an expected domain outcome to its status code. Not logged as a fault."""
    logger.debug("%s on %s %s", type(exc).__name__, request.method, request.url.path)
    return _error(exc.status_code, exc.code, exc.message)


@app.exception_handler(InfrastructureError)
async def infrastructure_error_handler(request: Request, exc: InfrastructureError) -> JSONResponse:
    """Store or transport fault: log the chained cause, answer with a generic 500."""
    logger.error(
        "Infrastructure failure on %s %s: %s",
        request.method,
        request.url.path,
        exc,
        exc_info=exc,
    )
    return _error(500, "internal_error", "An unexpected error occurred.")


@app.exception_handler(SlowapiRateLimitExceeded)
def rate_limit_handler(request: Request, exc: SlowapiRateLimitExceeded) -> JSONResponse:
    """Return 429 with a structured error when a rate limit is exceeded.

    Retry-After tells clients how many seconds to wait before retrying.
    Kept synchronous: SlowAPIMiddleware calls it directly and returns the
    result as the response.
    """
    retry_after = int(getattr(exc, "retry_after", 60))
    response = _error(429, "rate_limited", "Too many requests.", str(exc))
    response.headers["Retry-After"] = str(retry_after)
    return response


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    """Malformed request bodies are a bad request, like any other parse failure."""
    return _error(400, "bad_request", "Can't parse the request.", str(exc.errors()))


@app.exception_handler(HTTPException)
async def http_exception_handler(request: Request, exc: HTTPException) -> JSONResponse:
    """Return a structured error for all FastAPI/Starlette HTTP exceptions.

    Route handlers raise HTTPException with detail={"code": ..., "message": ...}.
    When detail is already a structured dict, use it directly as the error
    field rather than stringifying it.
    """
    if isinstance(exc.detail, dict):
        return JSONResponse(status_code=exc.status_code, content={"error": exc.detail})
    return _error(exc.status_code, f"http_{exc.status_code}", str(exc.detail))


@app.exception_handler(Exception)
async def generic_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Catch-all handler for unexpected server errors.

    The raw exception goes to the server log only, never to the response body.
    """
    logger.exception("Unhandled exception on %s %s", request.method, request.url.path)
    return _error(500, "internal_error", "An unexpected error occurred.")


# ---------------------------------------------------------------------------
# Health endpoint
#
# Defined directly in main.py (not in a router) so it is always reachable
# regardless of router registration state. No rate limit applied.
# ---------------------------------------------------------------------------


@app.get("/api/v1/health", include_in_schema=True, tags=["Health"])
def health(request: Request) -> HealthResponse:
    """Return API liveness, version, and database reachability."""
    store: IdentityStore = request.app.state.store
    database = "ok" if store.ping() else "error"
    return HealthResponse(
        status="healthy" if database == "ok" else "degraded",
        version=API_VERSION,
        components={"app": "ok", "database": database},
    )
