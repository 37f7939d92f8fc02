"""
security/csrf.py -- CSRF token lifecycle for cookie-authenticated, state-changing requests.

Two modes:
  Session-bound (default): issue() stores a random token in csrf_tokens tied
      to the caller's session id. validate() consumes it: the token works
      exactly once and only for that session. Consumption is ONE statement,
          DELETE FROM csrf_tokens WHERE value=? AND session_id=? AND expires_at > now
      and success means exactly one row was deleted, so two concurrent
      requests presenting the same token cannot both pass.

  Double-submit: for clients without a server session. The token is sent
      both as the csrf_token cookie and in the X-CSRF-Token header (or the
      csrf_token body field); the two must be equal. No store lookup.

Token sources, in order: X-CSRF-Token header, csrf_token body field.
Expired tokens are deleted when encountered and by the periodic sweep.

Layer rule: no imports from api/ or auth/.
"""

from __future__ import annotations

import hmac
import logging
import secrets
import time
from collections.abc import Callable, Iterable

from sqlalchemy import Column, Float, Index, MetaData, String, Table, func, select
from sqlalchemy.engine import Engine

from core.config import get_settings
from core.db import make_engine
from core.errors import CsrfRejected

logger = logging.getLogger("ledgerguard.security")

HEADER_NAME = "X-CSRF-Token"
FIELD_NAME = "csrf_token"
COOKIE_NAME = "csrf_token"
PROTECTED_METHODS = frozenset({"POST", "PUT", "PATCH", "DELETE"})

# ---------------------------------------------------------------------------
# Schema
# ---------------------------------------------------------------------------

_metadata = MetaData()

_csrf_tokens = Table(
    "csrf_tokens",
    _metadata,
    Column("value", String(64), primary_key=True),
    Column("session_id", String(64), nullable=False),
    Column("created_at", Float, nullable=False),
    Column("expires_at", Float, nullable=False),
    Index("ix_csrf_tokens_session", "session_id"),
    Index("ix_csrf_tokens_expires", "expires_at"),
)


class CSRFTokenStore:
    """Repository for csrf_tokens rows. Timestamps are UNIX seconds."""

    def __init__(self, db_url: str | None = None) -> None:
        self.engine: Engine = make_engine(db_url or get_settings().database_url)
        _metadata.create_all(self.engine)

    def add(self, value: str, session_id: str, created_at: float, expires_at: float) -> None:
        with self.engine.begin() as conn:
            conn.execute(
                _csrf_tokens.insert().values(
                    value=value, session_id=session_id, created_at=created_at, expires_at=expires_at
                )
            )

    def consume(self, value: str, session_id: str, now: float) -> bool:
        """Delete the live token for session_id. True only for the caller that deleted it."""
        with self.engine.begin() as conn:
            result = conn.execute(
                _csrf_tokens.delete().where(
                    _csrf_tokens.c.value == value,
                    _csrf_tokens.c.session_id == session_id,
                    _csrf_tokens.c.expires_at > now,
                )
            )
        return result.rowcount == 1

    def is_live(self, value: str, session_id: str, now: float) -> bool:
        with self.engine.connect() as conn:
            row = conn.execute(
                select(_csrf_tokens.c.value).where(
                    _csrf_tokens.c.value == value,
                    _csrf_tokens.c.session_id == session_id,
                    _csrf_tokens.c.expires_at > now,
                )
            ).first()
        return row is not None

    def delete_if_expired(self, value: str, now: float) -> bool:
        with self.engine.begin() as conn:
            result = conn.execute(
                _csrf_tokens.delete().where(_csrf_tokens.c.value == value, _csrf_tokens.c.expires_at <= now)
            )
        return result.rowcount > 0

    def clear_session(self, session_id: str) -> int:
        with self.engine.begin() as conn:
            result = conn.execute(_csrf_tokens.delete().where(_csrf_tokens.c.session_id == session_id))
        return result.rowcount

    def count_active(self, session_id: str, now: float) -> int:
        with self.engine.connect() as conn:
            total = conn.execute(
                select(func.count())
                .select_from(_csrf_tokens)
                .where(_csrf_tokens.c.session_id == session_id, _csrf_tokens.c.expires_at > now)
            ).scalar()
        return total or 0

    def purge_expired(self, now: float) -> int:
        """Delete all expired tokens. Returns number of rows removed."""
        with self.engine.begin() as conn:
            result = conn.execute(_csrf_tokens.delete().where(_csrf_tokens.c.expires_at <= now))
        return result.rowcount

    def close(self) -> None:
        self.engine.dispose()


# ---------------------------------------------------------------------------
# Guard
# ---------------------------------------------------------------------------


class CSRFGuard:
    """Issues and checks CSRF tokens.

    Usage:
        guard = CSRFGuard(CSRFTokenStore())
        token = guard.issue(session_id)
        guard.enforce(session_id, presented=token, cookie_value=None, origin=None)  # raises CsrfRejected
    """

    def __init__(
        self,
        store: CSRFTokenStore,
        lifetime: int | None = None,
        allowed_origins: Iterable[str] | None = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        settings = get_settings()
        self._store = store
        self.lifetime = lifetime or settings.csrf_token_lifetime_seconds
        self._allowed_origins = list(settings.allowed_origins if allowed_origins is None else allowed_origins)
        self._clock = clock

    @staticmethod
    def needs_protection(method: str) -> bool:
        return method.upper() in PROTECTED_METHODS

    def issue(self, session_id: str) -> str:
        """Create a single-use token bound to session_id."""
        now = self._clock()
        token = secrets.token_hex(32)
        self._store.add(token, session_id, now, now + self.lifetime)
        return token

    def validate(self, session_id: str | None, presented: str | None, consume: bool = True) -> bool:
        """Return True if presented is a live token issued to session_id.

        consume=True (the default) spends the token. consume=False only
        checks it, for flows that validate before a later consuming step.
        """
        if not presented or not session_id:
            _violation("no CSRF token or session")
            return False
        now = self._clock()
        if consume:
            ok = self._store.consume(presented, session_id, now)
        else:
            ok = self._store.is_live(presented, session_id, now)
        if not ok:
            expired = self._store.delete_if_expired(presented, now)
            _violation("expired CSRF token" if expired else "unknown, reused or foreign-session CSRF token")
        return ok

    @staticmethod
    def validate_double_submit(cookie_value: str | None, presented: str | None) -> bool:
        if not cookie_value or not presented:
            return False
        return hmac.compare_digest(cookie_value.encode("utf-8"), presented.encode("utf-8"))

    def validate_origin(self, origin: str | None, allowed: Iterable[str] | None = None) -> bool:
        """An absent Origin passes (same-origin navigations omit it); a present one must be allowed."""
        if not origin:
            return True
        permitted = self._allowed_origins if allowed is None else list(allowed)
        if origin not in permitted:
            _violation(f"origin not allowed: {origin[:100]}")
            return False
        return True

    def enforce(
        self,
        session_id: str | None,
        presented: str | None,
        cookie_value: str | None = None,
        origin: str | None = None,
    ) -> None:
        """Raise CsrfRejected unless the request carries a valid token.

        A request with a server session must present a session-bound token.
        Without a session, the double-submit cookie is accepted instead.
        """
        if not self.validate_origin(origin):
            raise CsrfRejected(detail="origin not allowed")
        if not presented:
            _violation("no CSRF token provided")
            raise CsrfRejected(required=True, detail="no CSRF token provided")
        if session_id:
            if not self.validate(session_id, presented):
                raise CsrfRejected(detail="session token rejected")
            return
        if not self.validate_double_submit(cookie_value, presented):
            _violation("double-submit cookie mismatch")
            raise CsrfRejected(detail="double-submit cookie mismatch")

    def clear_session(self, session_id: str | None) -> int:
        """Drop every token of session_id. Called on login and logout."""
        if not session_id:
            return 0
        return self._store.clear_session(session_id)

    def stats(self, session_id: str | None) -> dict:
        active = self._store.count_active(session_id, self._clock()) if session_id else 0
        return {"active_tokens": active, "token_lifetime": self.lifetime}

    def purge_expired(self) -> int:
        removed = self._store.purge_expired(self._clock())
        if removed:
            logger.info("CSRF sweep removed %d expired tokens", removed)
        return removed


def _violation(reason: str) -> None:
    logger.warning("CSRF violation: %s", reason)
