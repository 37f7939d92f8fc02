"""
api/guards.py -- Per-route request guards, applied as FastAPI dependencies.

Every protected route lists its guards in the order they must run:

    @router.post(
        "/auth/login",
        dependencies=[Depends(rate_limit(AUTH)), Depends(csrf_protect)],
    )
    def login(request: Request, payload: dict = Depends(request_payload)): ...

FastAPI resolves route-level dependencies first and in list order, then the
endpoint's own parameters (authentication, then body validation inside the
handler). That gives the fixed control flow:

    rate limit -> CSRF (state-changing verbs) -> token -> validation -> handler

Guards raise core.errors exceptions; the ErrorHandler renders them.

Bodies over MAX_REQUEST_BYTES are refused with 413 before anything parses
them. The rate-limit guard reads the body leniently, so a request whose body
does not parse is still counted before its 400 is raised.

The guards are plain `def` functions: FastAPI runs them in its thread pool,
so the synchronous store round trips never block the event loop. Only
request_payload is async, because reading the body is.

Rate-limit headers for accepted requests are attached by the response
middleware in api/main.py from request.state.rate_decision.
"""

from __future__ import annotations

import json
import secrets
from collections.abc import Callable
from typing import Any

from fastapi import Depends, Request, Response

from auth.dependencies import bearer_token
from core.config import get_settings
from core.errors import PayloadTooLarge, ValidationFailed
from security.csrf import COOKIE_NAME, FIELD_NAME, HEADER_NAME, CSRFGuard
from security.rate_store import RateDecision
from security.ratelimit import RateLimiter

AUTH = "auth"
API = "api"
PASSWORD_RESET = "password-reset"
REGISTRATION = "registration"

SESSION_KEY = "csrf_sid"

_POLICIES: dict[str, Callable[[RateLimiter, str, str, dict[str, Any]], RateDecision | None]] = {
    AUTH: lambda limiter, address, agent, payload: limiter.check_auth(address, agent),
    API: lambda limiter, address, agent, payload: limiter.check_api(address, agent),
    PASSWORD_RESET: lambda limiter, address, agent, payload: limiter.check_password_reset(
        str(payload.get("email") or ""), address
    ),
    REGISTRATION: lambda limiter, address, agent, payload: limiter.check_registration(address),
}


# ---------------------------------------------------------------------------
# Request helpers
# ---------------------------------------------------------------------------


def client_address(request: Request) -> str:
    return request.client.host if request.client else "unknown"


def _max_request_bytes(request: Request) -> int:
    return request.app.state.services.settings.max_request_bytes


async def read_body(request: Request) -> bytes:
    """Read the raw body, refusing anything over MAX_REQUEST_BYTES with 413.

    A declared Content-Length over the limit is refused before the body is
    read. The length actually received is checked as well, since chunked
    requests declare none.
    """
    limit = _max_request_bytes(request)
    declared = request.headers.get("content-length")
    if declared is not None:
        try:
            length = int(declared)
        except ValueError:
            raise ValidationFailed({"body": "Invalid Content-Length header."}) from None
        if length > limit:
            raise PayloadTooLarge(limit, detail=f"declared content-length={length}")
    body = await request.body()
    if len(body) > limit:
        raise PayloadTooLarge(limit, detail=f"received {len(body)} bytes")
    return body


async def request_payload(request: Request) -> dict[str, Any]:
    """Return the request body as a flat dict (JSON object or form fields).

    Cached per request by FastAPI's dependency cache, so the CSRF guard and
    the handler share one parse. An empty body yields {}.
    """
    body = await read_body(request)
    if not body:
        return {}
    content_type = request.headers.get("content-type", "").split(";")[0].strip().lower()
    if content_type in ("application/x-www-form-urlencoded", "multipart/form-data"):
        form = await request.form()
        return {key: value for key, value in form.items() if isinstance(value, str)}
    if content_type not in ("", "application/json"):
        raise ValidationFailed({"body": "Unsupported content type."})
    try:
        data = json.loads(body)
    except (ValueError, RecursionError):
        raise ValidationFailed({"body": "Request body must be valid JSON."}) from None
    if not isinstance(data, dict):
        raise ValidationFailed({"body": "Request body must be a JSON object."})
    return data


async def lenient_payload(request: Request) -> dict[str, Any]:
    """request_payload for the rate-limit guard: a body that does not parse reads as {}.

    Malformed requests are still counted against the caller's quota; the
    parse error itself is raised by the next dependency that needs the body.
    Oversized bodies are refused here as well.
    """
    try:
        return await request_payload(request)
    except ValidationFailed:
        return {}


# ---------------------------------------------------------------------------
# Session id (binds CSRF tokens to a browser session)
# ---------------------------------------------------------------------------


def current_session_id(request: Request) -> str | None:
    return request.session.get(SESSION_KEY)


def ensure_session_id(request: Request) -> str:
    session_id = current_session_id(request)
    if not session_id:
        session_id = secrets.token_hex(16)
        request.session[SESSION_KEY] = session_id
    return session_id


def regenerate_session_id(request: Request) -> str:
    """Drop the old session's CSRF tokens and start a fresh session id (login)."""
    guard: CSRFGuard = request.app.state.csrf_guard
    guard.clear_session(current_session_id(request))
    session_id = secrets.token_hex(16)
    request.session[SESSION_KEY] = session_id
    return session_id


def set_csrf_cookie(response: Response, token: str, max_age: int) -> None:
    """Double-submit cookie. httpOnly: clients echo the token from the JSON body, not from JS."""
    response.set_cookie(
        COOKIE_NAME,
        value=token,
        httponly=True,
        samesite="strict",
        secure=get_settings().secure_cookies,
        max_age=max_age,
    )


# ---------------------------------------------------------------------------
# Guards
# ---------------------------------------------------------------------------


def rate_limit(policy: str) -> Callable[..., RateDecision | None]:
    """Build the rate-limit guard for a named policy.

    Every guarded request also passes the distributed-attack breaker and the
    suspicious user-agent check.
    """
    if policy not in _POLICIES:
        raise ValueError(f"Unknown rate-limit policy {policy!r}")
    check = _POLICIES[policy]

    def guard(request: Request, payload: dict[str, Any] = Depends(lenient_payload)) -> RateDecision | None:
        limiter: RateLimiter = request.app.state.rate_limiter
        address = client_address(request)
        agent = request.headers.get("user-agent", "")
        limiter.check_distributed()
        limiter.check_suspicious(address, agent)
        decision = check(limiter, address, agent, payload)
        request.state.rate_decision = decision
        return decision

    guard.__name__ = f"rate_limit_{policy.replace('-', '_')}"
    return guard


def csrf_protect(request: Request, payload: dict[str, Any] = Depends(request_payload)) -> None:
    """Require a valid CSRF token on POST/PUT/PATCH/DELETE.

    Requests authenticating with an Authorization: Bearer header are exempt:
    a cross-site form cannot attach that header, so the credential is not
    ambient. Cookie-authenticated and anonymous requests are checked.
    """
    if not CSRFGuard.needs_protection(request.method):
        return
    if bearer_token(request):
        return
    guard: CSRFGuard = request.app.state.csrf_guard
    presented = request.headers.get(HEADER_NAME) or payload.get(FIELD_NAME)
    if not isinstance(presented, str):
        presented = None
    guard.enforce(
        current_session_id(request),
        presented,
        cookie_value=request.cookies.get(COOKIE_NAME),
        origin=request.headers.get("origin"),
    )
