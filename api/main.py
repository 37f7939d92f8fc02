"""
api/main.py -- FastAPI application entry point for LedgerGuard.

Exposes the authentication and access-control core over HTTP: token login,
CSRF issuance, registration, password-reset intake and the operator routes.

Run with:      uvicorn asgi:app --reload

Middleware stack (outermost to innermost):
  1. security_headers     -- X-Request-ID, nosniff/DENY/no-store, HSTS, X-RateLimit-* on success
  2. log_requests         -- one access-log line per request with latency
  3. TrustedHostMiddleware -- rejects requests with unexpected Host headers
  4. CORSMiddleware        -- adds CORS headers for allowed browser origins
  5. SessionMiddleware     -- signed session cookie carrying the CSRF session id

Per-route guards (rate limit, CSRF, token) are dependencies, see api/guards.py.

Lifespan builds every store and service once (api/services.py), publishes
them on app.state, starts the periodic expiry sweep, and tears everything
down symmetrically on shutdown.
"""

from __future__ import annotations

import asyncio
import logging
import re
import secrets
import time
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.middleware.trustedhost import TrustedHostMiddleware
from fastapi.responses import JSONResponse
from sqlalchemy.exc import SQLAlchemyError
from starlette.exceptions import HTTPException as StarletteHTTPException
from starlette.middleware.sessions import SessionMiddleware

from api.models import ErrorEnvelope, HealthResponse
from api.routes.v1.admin import router as admin_router
from api.routes.v1.auth import router as auth_router
from api.services import Services, build_services
from core.config import get_settings
from core.error_handler import ErrorHandler
from core.errors import AppError
from security.csrf import HEADER_NAME

__version__ = "0.1.0"

# ---------------------------------------------------------------------------
# Logging
# ---------------------------------------------------------------------------

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s %(levelname)-5s %(name)s %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
)
logger = logging.getLogger("ledgerguard.api")

_REQUEST_ID = re.compile(r"^[A-Za-z0-9_\-]{8,64}$")

# ---------------------------------------------------------------------------
# Service wiring
# ---------------------------------------------------------------------------


def attach_services(app: FastAPI, services: Services) -> None:
    """Publish every service on app.state under the names routes and guards read."""
    app.state.services = services
    app.state.user_store = services.user_store
    app.state.secret_provider = services.secret_provider
    app.state.token_service = services.token_service
    app.state.rate_limiter = services.rate_limiter
    app.state.csrf_guard = services.csrf_guard
    app.state.error_log = services.error_log
    app.state.error_handler = services.error_handler


# ---------------------------------------------------------------------------
# Background sweep task
# ---------------------------------------------------------------------------


async def _sweep_loop(app: FastAPI, interval: int) -> None:
    """Purge expired rate windows, CSRF tokens and error records every interval seconds.

    Runs as a background asyncio task started in lifespan startup. The sweep
    itself is blocking database work, so it runs in a worker thread.
    CancelledError from task.cancel() during shutdown propagates out of
    asyncio.sleep and unwinds the coroutine cleanly. A failed sweep is
    logged and retried on the next tick.
    """
    while True:
        await asyncio.sleep(interval)
        try:
            await asyncio.to_thread(app.state.services.sweep)
        except SQLAlchemyError:
            logger.exception("Expiry sweep failed; retrying in %ds", interval)


# ---------------------------------------------------------------------------
# Lifespan
# ---------------------------------------------------------------------------


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Manage application-level resources across the full server lifetime.

    Startup order matters:
      1. Services -- every store creates its tables on construction.
      2. Signing secret -- loaded (or generated) once so the first request
         does not pay for it, and a degraded store is reported at boot.
      3. Sweep task last -- references app.state.services.
    """
    settings = get_settings()
    logger.info("LedgerGuard API starting up")
    services = build_services(settings=settings)
    attach_services(app, services)
    services.secret_provider.get_secret()
    if services.secret_provider.degraded:
        logger.critical("Started with the fallback signing secret -- settings store unreachable")
    logger.info("Auth initialized (users_present=%s)", services.user_store.has_users())
    app.state.sweep_task = asyncio.create_task(_sweep_loop(app, settings.sweep_interval_seconds))

    yield

    app.state.sweep_task.cancel()
    services.close()
    logger.info("LedgerGuard API shutdown complete")


# ---------------------------------------------------------------------------
# App instantiation
# ---------------------------------------------------------------------------

_settings = get_settings()

app = FastAPI(
    title="LedgerGuard API",
    description="Authentication, rate limiting, CSRF protection and secure error handling.",
    version=__version__,
    lifespan=lifespan,
    docs_url="/docs" if _settings.debug else None,
    redoc_url=None,
)

# ---------------------------------------------------------------------------
# Middleware stack
#
# Starlette wraps middleware in reverse registration order: the LAST
# add_middleware() call is the outermost layer. Sessions sit innermost so
# every route sees request.session.
# ---------------------------------------------------------------------------

app.add_middleware(SessionMiddleware, secret_key=_settings.session_secret_key, https_only=_settings.secure_cookies)

app.add_middleware(
    CORSMiddleware,
    allow_origins=_settings.allowed_origins,
    allow_credentials=True,
    allow_methods=["GET", "POST", "PUT", "PATCH", "DELETE"],
    allow_headers=["Content-Type", "Authorization", HEADER_NAME, "X-Request-ID"],
    expose_headers=["X-Request-ID", "X-RateLimit-Limit", "X-RateLimit-Remaining", "X-RateLimit-Reset", "Retry-After"],
    max_age=3600,
)

app.add_middleware(TrustedHostMiddleware, allowed_hosts=_settings.allowed_hosts)


# ---------------------------------------------------------------------------
# Request logging middleware
#
# Every request passes through this coroutine before reaching any route
# handler. Wall-clock time before and after call_next gives the latency.
# ---------------------------------------------------------------------------


@app.middleware("http")
async def log_requests(request: Request, call_next):
    start = time.perf_counter()
    response = await call_next(request)
    ms = (time.perf_counter() - start) * 1000
    logger.info(
        "%s %s %d %.1fms %s %s",
        request.method,
        request.url.path,
        response.status_code,
        ms,
        request.client.host if request.client else "unknown",
        getattr(request.state, "request_id", "-"),
    )
    return response


# ---------------------------------------------------------------------------
# Security headers middleware (outermost)
# ---------------------------------------------------------------------------


@app.middleware("http")
async def security_headers(request: Request, call_next):
    """Tag the request with an id and harden every response.

    A client-supplied X-Request-ID is kept only if it looks like an id.
    Accepted rate-limited requests get the informational X-RateLimit-*
    headers here; rejections already carry them from the error envelope.
    """
    incoming = request.headers.get("X-Request-ID", "")
    request_id = incoming if _REQUEST_ID.match(incoming) else secrets.token_hex(8)
    request.state.request_id = request_id

    response = await call_next(request)

    headers = response.headers
    headers["X-Request-ID"] = request_id
    headers["X-Content-Type-Options"] = "nosniff"
    headers["X-Frame-Options"] = "DENY"
    headers["Referrer-Policy"] = "strict-origin-when-cross-origin"
    headers["Permissions-Policy"] = "geolocation=(), microphone=(), camera=()"
    headers["Cache-Control"] = "no-store"
    if _settings.secure_cookies:
        headers["Strict-Transport-Security"] = "max-age=31536000; includeSubDomains"

    decision = getattr(request.state, "rate_decision", None)
    if decision is not None and "X-RateLimit-Limit" not in headers:
        headers["X-RateLimit-Limit"] = str(decision.limit)
        headers["X-RateLimit-Remaining"] = str(decision.remaining)
        headers["X-RateLimit-Reset"] = str(decision.reset_at)
    return response


# ---------------------------------------------------------------------------
# Router registration
# ---------------------------------------------------------------------------

app.include_router(auth_router, prefix="/api/v1", tags=["Auth"])
app.include_router(admin_router, prefix="/api/v1", tags=["Admin"])


# ---------------------------------------------------------------------------
# Exception handlers
#
# Every handler delegates to the ErrorHandler so API clients parse one
# envelope regardless of where the failure happened. The handlers are sync:
# Starlette runs them in its thread pool, and the error log write is
# blocking database I/O.
# ---------------------------------------------------------------------------


def _error_context(request: Request) -> dict:
    principal = getattr(request.state, "principal", None)
    return {
        "method": request.method,
        "path": request.url.path,
        "client": request.client.host if request.client else "unknown",
        "request_id": getattr(request.state, "request_id", None),
        "user_id": principal.subject_id if principal is not None else None,
        "user_agent": request.headers.get("user-agent", "")[:200],
    }


def _error_response(request: Request, exc: Exception) -> JSONResponse:
    handler: ErrorHandler | None = getattr(request.app.state, "error_handler", None)
    if handler is None:
        # Request arrived before lifespan startup finished.
        handler = ErrorHandler()
    outcome = handler.handle(exc, _error_context(request))
    body = ErrorEnvelope.model_validate(outcome.body).model_dump(exclude_none=True)
    return JSONResponse(status_code=outcome.status, content=body, headers=outcome.headers)


@app.exception_handler(AppError)
def app_error_handler(request: Request, exc: AppError) -> JSONResponse:
    """Typed failures raised by guards, dependencies and routes."""
    return _error_response(request, exc)


@app.exception_handler(RequestValidationError)
def validation_error_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    """Query/path parameter type errors from FastAPI, mapped to VALIDATION_ERROR (400)."""
    return _error_response(request, exc)


@app.exception_handler(StarletteHTTPException)
def http_exception_handler(request: Request, exc: StarletteHTTPException) -> JSONResponse:
    """404/405 from routing and any HTTPException raised by framework code."""
    return _error_response(request, exc)


@app.exception_handler(SQLAlchemyError)
def database_error_handler(request: Request, exc: SQLAlchemyError) -> JSONResponse:
    """Storage failures: fixed message, correlation id, detail in the error log only."""
    return _error_response(request, exc)


@app.exception_handler(Exception)
def generic_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Catch-all for unexpected server errors.

    The raw exception and traceback go to the server log and the error log
    under the correlation id, never to the response body.
    """
    return _error_response(request, exc)


# ---------------------------------------------------------------------------
# Health endpoint
#
# Defined directly in main.py (not in a router) so it is always reachable
# regardless of router registration state. No rate limit applied -- health
# checks from load balancers and monitoring systems must not be throttled.
# ---------------------------------------------------------------------------


@app.get("/api/v1/health", include_in_schema=True, tags=["Health"])
def health(request: Request) -> HealthResponse:
    """Return liveness, version, database reachability and signing-secret mode."""
    services: Services = request.app.state.services
    database_ok = services.user_store.ping()
    services.secret_provider.get_secret()
    degraded = services.secret_provider.degraded
    return HealthResponse(
        status="ok" if database_ok and not degraded else "degraded",
        version=__version__,
        database="ok" if database_ok else "unreachable",
        signing_secret="degraded" if degraded else "ok",
    )
