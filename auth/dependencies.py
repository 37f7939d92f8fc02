"""
auth/dependencies.py -- FastAPI Depends() helpers for authentication.

Two token transports are checked in priority order:
  1. Authorization: Bearer <token> header -- API clients.
  2. "access_token" httpOnly cookie -- set by POST /auth/login for browsers.

Both converge on TokenService.verify(), which re-validates the principal
against the store on every request.

try_get_current_principal() is the soft variant (returns None on failure).
get_current_principal() wraps it and raises AuthenticationFailed / InvalidToken (401).
require_admin() wraps get_current_principal() and raises AccessDenied (403).

These raise core.errors exceptions rather than HTTPException so every auth
failure flows through the ErrorHandler and gets the uniform envelope with
one generic message.

Layer rule: no imports from api/ or security/.
  auth/dependencies.py may import from fastapi (for Request) because this
  module is part of the FastAPI dependency injection system.
"""

from __future__ import annotations

from fastapi import Request

from auth.models import TokenClaims
from auth.tokens import TokenService
from core.errors import AccessDenied, AuthenticationFailed, InvalidToken


def bearer_token(request: Request) -> str | None:
    """Return the token from the Authorization header, if one is present."""
    auth_header = request.headers.get("Authorization", "")
    if auth_header[:7].lower() == "bearer ":
        token = auth_header[7:].strip()
        return token or None
    return None


def presented_token(request: Request) -> str | None:
    """Return the bearer token from the header, falling back to the cookie."""
    return bearer_token(request) or request.cookies.get("access_token") or None


def try_get_current_principal(request: Request) -> TokenClaims | None:
    """Verify the presented token. Returns TokenClaims on success, None otherwise.

    Never raises for a bad token. Store failures propagate to the ErrorHandler.
    """
    token = presented_token(request)
    if not token:
        return None
    token_service: TokenService = request.app.state.token_service
    claims = token_service.verify(token)
    if claims is not None:
        request.state.principal = claims
    return claims


def get_current_principal(request: Request) -> TokenClaims:
    """Require authentication.

    Use as a FastAPI dependency:
        @router.get("/protected")
        async def route(principal: TokenClaims = Depends(get_current_principal)): ...
    """
    if not presented_token(request):
        raise AuthenticationFailed(detail="no credentials presented")
    claims = try_get_current_principal(request)
    if claims is None:
        raise InvalidToken(detail="token failed verification")
    return claims


def require_admin(request: Request) -> TokenClaims:
    """Require the admin role. 401 if unauthenticated, 403 if not admin."""
    claims = get_current_principal(request)
    if claims.role != "admin":
        raise AccessDenied(detail=f"user {claims.subject_id} lacks admin role")
    return claims
