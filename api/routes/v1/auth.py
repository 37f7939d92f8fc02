"""
api/routes/v1/auth.py -- Authentication REST endpoints.

Routes:
  GET  /api/v1/auth/csrf            -- issue a CSRF token for the caller's session
  POST /api/v1/auth/login           -- password login; returns a bearer token and sets the cookie
  POST /api/v1/auth/logout          -- clears cookie and session CSRF tokens
  POST /api/v1/auth/register        -- self-service account creation (role "user")
  POST /api/v1/auth/password-reset  -- request a reset; always the same answer
  GET  /api/v1/auth/me              -- current principal (requires auth)

Security:
  Guards run in the order rate limit -> CSRF -> token -> validation (api/guards.py).
  authenticate_user() provides timing equalization -- use it, never inline.
  Login and password-reset failures return one generic answer, so neither
  endpoint reveals whether an email is registered.
  Login regenerates the CSRF session id (session fixation).
  Cache-Control: no-store on every response carrying a credential.
"""

from __future__ import annotations

import logging
from typing import Any

from fastapi import APIRouter, Depends, Request
from fastapi.responses import JSONResponse
from sqlalchemy.exc import IntegrityError

from api.guards import (
    API,
    AUTH,
    PASSWORD_RESET,
    REGISTRATION,
    csrf_protect,
    current_session_id,
    ensure_session_id,
    rate_limit,
    regenerate_session_id,
    request_payload,
    set_csrf_cookie,
)
from api.models import CsrfTokenResponse, LoginResponse, MeResponse, MessageResponse, RegisterResponse
from auth.dependencies import get_current_principal
from auth.models import TokenClaims, User
from auth.store import UserStore
from auth.tokens import TokenService, authenticate_user, clear_auth_cookie, hash_password, set_auth_cookie
from core.errors import AuthenticationFailed, ValidationFailed
from core.validation import EmailRule, PasswordRule, validate
from security.csrf import COOKIE_NAME, HEADER_NAME, CSRFGuard

logger = logging.getLogger("ledgerguard.auth")

LOGIN_SCHEMA = {
    "email": EmailRule(),
    "password": PasswordRule(min_length=1, complexity=False),
}
REGISTER_SCHEMA = {
    "email": EmailRule(),
    "password": PasswordRule(),
}
PASSWORD_RESET_SCHEMA = {
    "email": EmailRule(),
}

_DUPLICATE_EMAIL = "An account with this email already exists."
_RESET_ACCEPTED = "If an account exists for that email, password reset instructions have been sent."

# Auth policy:
# - GET  /api/v1/auth/csrf:            public, api rate limit
# - POST /api/v1/auth/login:           public, auth rate limit + CSRF
# - POST /api/v1/auth/logout:          public, CSRF (clearing a cookie needs no prior auth)
# - POST /api/v1/auth/register:        public, registration rate limit + CSRF
# - POST /api/v1/auth/password-reset:  public, password-reset rate limit + CSRF
# - GET  /api/v1/auth/me:              requires auth (get_current_principal)
router = APIRouter()


def _no_store(response: JSONResponse) -> JSONResponse:
    response.headers["Cache-Control"] = "no-store"
    return response


# ---------------------------------------------------------------------------
# Public endpoints
# ---------------------------------------------------------------------------


@router.get("/auth/csrf", response_model=CsrfTokenResponse, dependencies=[Depends(rate_limit(API))])
def issue_csrf_token(request: Request) -> JSONResponse:
    """Issue a single-use CSRF token bound to the caller's session.

    The token is also set as the csrf_token cookie so clients without a
    session (double-submit mode) can echo it back in X-CSRF-Token.
    """
    guard: CSRFGuard = request.app.state.csrf_guard
    token = guard.issue(ensure_session_id(request))
    resp = JSONResponse(
        content=CsrfTokenResponse(csrf_token=token, csrf_header=HEADER_NAME, expires_in=guard.lifetime).model_dump()
    )
    set_csrf_cookie(resp, token, guard.lifetime)
    return _no_store(resp)


@router.post(
    "/auth/login",
    response_model=LoginResponse,
    dependencies=[Depends(rate_limit(AUTH)), Depends(csrf_protect)],
)
def login(request: Request, payload: dict[str, Any] = Depends(request_payload)) -> JSONResponse:
    """Authenticate with email and password; return a bearer token and set the cookie."""
    result = validate(payload, LOGIN_SCHEMA)
    result.raise_for_errors()
    email, password = result.values["email"], result.values["password"]

    user_store: UserStore = request.app.state.user_store
    user = authenticate_user(user_store, email, password)
    if user is None:
        raise AuthenticationFailed(detail=f"password login rejected for {email}")

    token_service: TokenService = request.app.state.token_service
    token = token_service.issue(user)
    user_store.update_last_login(user.id)
    regenerate_session_id(request)
    logger.info("Login succeeded for user_id=%s", user.id)

    resp = JSONResponse(
        content=LoginResponse(
            access_token=token,
            expires_in=token_service.default_ttl,
            user_id=user.id,
            email=user.email,
            role=user.role,
        ).model_dump()
    )
    set_auth_cookie(resp, token, token_service.default_ttl)
    return _no_store(resp)


@router.post("/auth/logout", response_model=MessageResponse, dependencies=[Depends(csrf_protect)])
def logout(request: Request) -> JSONResponse:
    """Clear the auth cookie, the session and every CSRF token bound to it."""
    guard: CSRFGuard = request.app.state.csrf_guard
    guard.clear_session(current_session_id(request))
    request.session.clear()
    resp = JSONResponse(content=MessageResponse(message="Logged out.").model_dump())
    clear_auth_cookie(resp)
    resp.delete_cookie(COOKIE_NAME)
    return _no_store(resp)


@router.post(
    "/auth/register",
    response_model=RegisterResponse,
    status_code=201,
    dependencies=[Depends(rate_limit(REGISTRATION)), Depends(csrf_protect)],
)
def register(request: Request, payload: dict[str, Any] = Depends(request_payload)) -> JSONResponse:
    """Create a "user" account. Password complexity is enforced by PasswordRule."""
    result = validate(payload, REGISTER_SCHEMA)
    result.raise_for_errors()
    email = result.values["email"]

    user_store: UserStore = request.app.state.user_store
    if user_store.get_by_email(email) is not None:
        raise ValidationFailed({"email": _DUPLICATE_EMAIL})
    try:
        user_id = user_store.create_user(
            User(email=email, role="user", hashed_password=hash_password(result.values["password"]))
        )
    except IntegrityError:
        # Lost a race with a concurrent registration for the same email.
        raise ValidationFailed({"email": _DUPLICATE_EMAIL}) from None
    logger.info("Registered user_id=%s", user_id)

    resp = JSONResponse(
        status_code=201,
        content=RegisterResponse(user_id=user_id, email=email.lower(), role="user").model_dump(),
    )
    return _no_store(resp)


@router.post(
    "/auth/password-reset",
    response_model=MessageResponse,
    dependencies=[Depends(rate_limit(PASSWORD_RESET)), Depends(csrf_protect)],
)
def request_password_reset(request: Request, payload: dict[str, Any] = Depends(request_payload)) -> JSONResponse:
    """Accept a reset request. Delivery belongs to the mail service; the answer never varies."""
    result = validate(payload, PASSWORD_RESET_SCHEMA)
    result.raise_for_errors()

    user_store: UserStore = request.app.state.user_store
    user = user_store.get_by_email(result.values["email"])
    if user is not None and user.is_active:
        logger.info("Password reset requested for user_id=%s", user.id)
    return _no_store(JSONResponse(content=MessageResponse(message=_RESET_ACCEPTED).model_dump()))


# ---------------------------------------------------------------------------
# Authenticated endpoints
# ---------------------------------------------------------------------------


@router.get("/auth/me", response_model=MeResponse, dependencies=[Depends(rate_limit(API))])
def me(principal: TokenClaims = Depends(get_current_principal)) -> MeResponse:
    """Return identity information for the currently authenticated principal."""
    return MeResponse(
        user_id=principal.subject_id,
        email=principal.email,
        role=principal.role,
        expires_at=principal.expires_at,
    )
