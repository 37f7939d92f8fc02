"""
api/routes/v1/admin.py -- Operator endpoints (admin role only).

Routes:
  POST /api/v1/admin/secret/rotate        -- replace the signing secret
  GET  /api/v1/admin/security/status      -- rate-limit, CSRF, secret and error-log snapshot
  GET  /api/v1/admin/errors/{error_id}    -- look up a logged error by correlation id

Rotation invalidates every outstanding token, including the caller's own.
Error lookups return the redacted record only; the raw detail never leaves
the server (use `python main.py show-error` on the host).
"""

from __future__ import annotations

import logging

from fastapi import APIRouter, Depends, Request
from fastapi.responses import JSONResponse

from api.guards import API, client_address, csrf_protect, current_session_id, rate_limit
from api.models import ErrorRecordResponse, SecretRotationResponse, SecurityStatusResponse
from auth.dependencies import require_admin
from auth.models import TokenClaims
from auth.secret_provider import SecretProvider
from core.error_handler import ErrorHandler, ErrorLogStore
from core.errors import NotFound
from core.validation import TextRule, validate
from security.csrf import CSRFGuard
from security.ratelimit import RateLimiter

logger = logging.getLogger("ledgerguard.api")

STATUS_QUERY_SCHEMA = {
    "address": TextRule(required=False, max_length=45, allowed_chars=r"[0-9A-Fa-f:.]+"),
}
ERROR_ID_SCHEMA = {
    "error_id": TextRule(max_length=32, allowed_chars=r"err_\d{8}_[0-9a-f]{12}"),
}

# Auth policy: every route requires admin (require_admin). State-changing
# routes also go through csrf_protect, which exempts bearer-header callers.
router = APIRouter()


@router.post(
    "/admin/secret/rotate",
    response_model=SecretRotationResponse,
    dependencies=[Depends(rate_limit(API)), Depends(csrf_protect)],
)
def rotate_secret(request: Request, admin: TokenClaims = Depends(require_admin)) -> JSONResponse:
    """Replace the signing secret. Every token issued before this call stops verifying."""
    provider: SecretProvider = request.app.state.secret_provider
    version = provider.rotate()
    logger.warning("Signing secret rotated by user_id=%s (version %d)", admin.subject_id, version)
    resp = JSONResponse(content=SecretRotationResponse(version=version).model_dump())
    resp.headers["Cache-Control"] = "no-store"
    return resp


@router.get(
    "/admin/security/status",
    response_model=SecurityStatusResponse,
    dependencies=[Depends(rate_limit(API))],
)
def security_status(
    request: Request,
    address: str | None = None,
    admin: TokenClaims = Depends(require_admin),
) -> SecurityStatusResponse:
    """Monitoring snapshot. ?address= inspects another client's address-keyed windows."""
    result = validate({"address": address}, STATUS_QUERY_SCHEMA)
    result.raise_for_errors()
    target = result.values["address"] or client_address(request)
    # Fingerprint windows only match when inspecting the caller itself.
    agent = request.headers.get("user-agent", "") if result.values["address"] is None else ""

    limiter: RateLimiter = request.app.state.rate_limiter
    guard: CSRFGuard = request.app.state.csrf_guard
    provider: SecretProvider = request.app.state.secret_provider
    error_log: ErrorLogStore = request.app.state.error_log
    return SecurityStatusResponse(
        signing_secret_degraded=provider.degraded,
        signing_secret_version=provider.version(),
        rate_limits=limiter.status(target, agent),
        csrf=guard.stats(current_session_id(request)),
        errors=error_log.stats(hours=24),
    )


@router.get(
    "/admin/errors/{error_id}",
    response_model=ErrorRecordResponse,
    dependencies=[Depends(rate_limit(API))],
)
def get_error(request: Request, error_id: str, admin: TokenClaims = Depends(require_admin)) -> ErrorRecordResponse:
    """Return the redacted view of one error-log record."""
    validate({"error_id": error_id}, ERROR_ID_SCHEMA).raise_for_errors()
    handler: ErrorHandler = request.app.state.error_handler
    record = handler.lookup(error_id)
    if record is None:
        raise NotFound(detail=f"error record {error_id} not found")
    return ErrorRecordResponse(
        error_id=record.error_id,
        timestamp=record.timestamp,
        classification=record.classification,
        status=record.status,
        message=record.redacted_message,
        context=record.context,
    )
