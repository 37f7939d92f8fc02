"""
auth/tokens.py -- Bearer tokens, password hashing, and login helpers.

Security design decisions:
  Tokens: compact JWS (python-jose, HS256). The signature is HMAC-SHA256 over
       base64url(header) + "." + base64url(claims), keyed with the secret from
       SecretProvider. Claims carry user_id, role, iat, and exp.

  Verification is four checks, in order:
       1. exactly three dot-separated segments          (MALFORMED)
       2. signature matches under the current secret    (BAD_SIGNATURE)
       3. now < exp                                     (EXPIRED)
       4. principal still exists and is active          (REVOKED_OR_MISSING)
       Callers only ever see None for a failure -- never which check failed --
       so the endpoint cannot be used as an oracle. The reason is logged.
       Check 4 costs one store lookup per request and is what makes a
       self-contained bearer token revocable.

  Rotation: issue() and check 2 first call SecretProvider.sync(), a
       single-column version read, so a secret rotated by another process
       is in force here before the next token is signed or checked.

  Passwords: bcrypt directly (no passlib wrapper). The _DUMMY_HASH constant
       enables timing equalization in authenticate_user() so response time
       does not reveal whether an email is registered.

Layer rule: no imports from api/ or security/. Import from core/ is allowed.
"""

from __future__ import annotations

import json
import logging
import time
from collections.abc import Callable
from enum import Enum
from typing import TYPE_CHECKING

import bcrypt
from jose import jws, jwt
from jose.exceptions import JWSError, JWSSignatureError

from auth.models import TokenClaims, User
from core.config import get_settings

if TYPE_CHECKING:
    from auth.secret_provider import SecretProvider
    from auth.store import PrincipalStore, UserStore

logger = logging.getLogger("ledgerguard.auth")

_ALGORITHM = "HS256"

# ---------------------------------------------------------------------------
# Password hashing (bcrypt -- direct usage, no passlib wrapper)
# ---------------------------------------------------------------------------


def hash_password(plain: str) -> str:
    """Return a bcrypt hash of the given plaintext password.

    bcrypt only looks at the first 72 bytes. PasswordRule caps passwords at
    128 characters at the validation layer, which keeps abuse bounded.
    """
    return bcrypt.hashpw(plain.encode("utf-8"), bcrypt.gensalt()).decode("utf-8")


def verify_password(plain: str, hashed: str) -> bool:
    """Return True if the plaintext password matches the bcrypt hash."""
    try:
        return bcrypt.checkpw(plain.encode("utf-8"), hashed.encode("utf-8"))
    except ValueError:
        # Malformed stored hash, or a password bcrypt refuses (> 72 bytes on bcrypt 5).
        return False


# Computed once at module load so the first login attempt is not measurably
# slower than subsequent ones.
_DUMMY_HASH: str = hash_password("ledgerguard_timing_dummy")


def authenticate_user(store: UserStore, email: str, password: str) -> User | None:
    """Authenticate an email/password login with timing equalization.

    Always runs bcrypt whether or not the user exists:
    - Unknown email: bcrypt runs against _DUMMY_HASH (same cost as a real check)
    - Wrong password: bcrypt runs against the real hash (same cost)

    Returns the User on success, None on any failure.
    """
    user = store.get_by_email(email)
    if user is None or user.hashed_password is None:
        verify_password(password, _DUMMY_HASH)
        return None
    if not verify_password(password, user.hashed_password):
        return None
    if not user.is_active:
        return None
    return user


# ---------------------------------------------------------------------------
# Token service
# ---------------------------------------------------------------------------


class TokenFailure(str, Enum):
    """Why a token was rejected. Server-side logging only; never sent to clients."""

    MALFORMED = "malformed"
    BAD_SIGNATURE = "bad_signature"
    EXPIRED = "expired"
    REVOKED_OR_MISSING = "revoked_or_missing"


class TokenService:
    """Issues and verifies signed, time-bounded bearer tokens.

    Usage:
        service = TokenService(secret_provider, user_store)
        token = service.issue(user)               # default ttl (30 days)
        token = service.issue(user, ttl=900)      # step-up token
        claims = service.verify(token)            # TokenClaims or None

    clock returns the current UNIX time in seconds; tests inject a fake one.
    """

    def __init__(
        self,
        secret_provider: SecretProvider,
        principals: PrincipalStore,
        default_ttl: int | None = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._secrets = secret_provider
        self._principals = principals
        self.default_ttl = default_ttl or get_settings().token_expire_seconds
        self._clock = clock

    def issue(self, principal: User, ttl: int | None = None) -> str:
        """Return a signed token for principal, valid for ttl seconds."""
        duration = self.default_ttl if ttl is None else ttl
        if duration <= 0:
            raise ValueError("Token ttl must be a positive number of seconds.")
        if principal.id is None:
            raise ValueError("Cannot issue a token for a principal without an id.")
        now = int(self._clock())
        claims = {
            "sub": str(principal.id),
            "user_id": principal.id,
            "role": principal.role,
            "iat": now,
            "exp": now + duration,
        }
        self._secrets.sync()
        return jwt.encode(claims, self._secrets.get_secret(), algorithm=_ALGORITHM)

    def verify(self, token: str) -> TokenClaims | None:
        """Return the validated claims, or None if any of the four checks fails.

        Store errors during the principal lookup propagate: an unreachable
        principal store is an infrastructure fault, not an invalid token.
        """
        claims, failure = self._check_token(token)
        if failure is not None:
            self._reject(failure, claims)
            return None

        user = self._principals.get_by_id(claims["user_id"])
        if user is None or not user.is_active:
            self._reject(TokenFailure.REVOKED_OR_MISSING, claims)
            return None

        return TokenClaims(
            subject_id=user.id,
            role=user.role,
            issued_at=int(claims.get("iat", 0)),
            expires_at=int(claims["exp"]),
            email=user.email,
        )

    def _check_token(self, token: str) -> tuple[dict, TokenFailure | None]:
        """Run the stateless checks (segments, signature, expiry)."""
        if not isinstance(token, str) or len(token.split(".")) != 3:
            return {}, TokenFailure.MALFORMED

        self._secrets.sync()
        try:
            # Constant-time HMAC comparison happens inside jose's HMACKey.verify.
            payload = jws.verify(token, self._secrets.get_secret(), algorithms=[_ALGORITHM])
        except JWSSignatureError:
            return {}, TokenFailure.BAD_SIGNATURE
        except JWSError:
            return {}, TokenFailure.MALFORMED

        try:
            claims = json.loads(payload)
        except (TypeError, ValueError):
            return {}, TokenFailure.MALFORMED
        if not isinstance(claims, dict) or not isinstance(claims.get("user_id"), int):
            return {}, TokenFailure.MALFORMED
        exp = claims.get("exp")
        if not isinstance(exp, (int, float)) or isinstance(exp, bool):
            return claims, TokenFailure.MALFORMED

        if self._clock() >= exp:
            return claims, TokenFailure.EXPIRED
        return claims, None

    @staticmethod
    def _reject(reason: TokenFailure, claims: dict) -> None:
        logger.info("Bearer token rejected: reason=%s user_id=%s", reason.value, claims.get("user_id", "-"))


# ---------------------------------------------------------------------------
# Cookie helpers
# ---------------------------------------------------------------------------


def set_auth_cookie(response, token: str, expire_seconds: int = 0) -> None:
    """Write the bearer token as an httpOnly cookie on the response.

    httponly=True: JS cannot read the cookie (XSS mitigation).
    samesite="lax": not sent on cross-site POST. State-changing requests that
        rely on this cookie still need a CSRF token (see security/csrf.py).
    secure: only sent over HTTPS when SECURE_COOKIES=true (set in production).
    max_age: matches the token expiry so both expire together.
    """
    settings = get_settings()
    duration = expire_seconds if expire_seconds > 0 else settings.token_expire_seconds
    response.set_cookie(
        "access_token",
        value=token,
        httponly=True,
        samesite="lax",
        secure=settings.secure_cookies,
        max_age=duration,
    )


def clear_auth_cookie(response) -> None:
    response.delete_cookie("access_token")
