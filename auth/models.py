"""
auth/models.py -- Domain dataclasses for authentication entities.

Pattern: Data class (pure data container, zero logic). Stores and services
do the work; these classes only own the shape.

Layer rule: no imports from api/ or security/.
"""

from __future__ import annotations

from dataclasses import dataclass


@dataclass
class User:
    """A principal: the identity a bearer token stands for.

    The principal table is owned by the surrounding application. The auth
    core reads id/role/is_active on every token verification, so a user who
    is deactivated or deleted loses access immediately, long before their
    token's exp claim.

    hashed_password is a bcrypt hash; None for accounts that cannot log in
    with a password (service principals).
    """

    email: str
    role: str  # "admin", "user"
    id: int | None = None
    hashed_password: str | None = None
    created_at: str | None = None
    last_login: str | None = None
    is_active: bool = True


@dataclass(frozen=True)
class TokenClaims:
    """The validated claim set returned by TokenService.verify().

    Only produced after signature, expiry, and live principal checks all
    passed. role is the principal's CURRENT role from the store, not the role
    baked into the token at issue time.
    """

    subject_id: int
    role: str
    issued_at: int
    expires_at: int
    email: str = ""
