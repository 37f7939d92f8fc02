"""
security/rate_store.py -- Sliding-window storage backends for the rate limiter.

A rate check is (scope, identifier, max_attempts, window_seconds). The store
owns the read-prune-append sequence and must run it atomically per
(scope, identifier): two simultaneous requests must never both take the last
free slot in a window.

Backends:
  SQLRateWindowStore (default) -- two tables in DATABASE_URL.
      rate_windows  one anchor row per (scope, identifier). Every attempt
                    starts its transaction with an upsert on this row, which
                    takes the row lock on PostgreSQL/MySQL and the database
                    write lock on SQLite before anything is read.
      rate_attempts one row per accepted attempt (the sliding-window log).

  LimitsRateWindowStore -- the `limits` library's moving-window strategy over
      any limits storage URI that supports it (memory://, redis://,
      mongodb://). Atomicity is provided by the storage (a Lua script on Redis).

Both return a RateDecision, which carries everything the X-RateLimit-* and
Retry-After headers need.

Layer rule: no imports from api/ or auth/.
"""

from __future__ import annotations

import math
from dataclasses import dataclass
from typing import Protocol

from limits import RateLimitItemPerSecond
from limits.storage import storage_from_string
from limits.strategies import MovingWindowRateLimiter
from sqlalchemy import Column, Float, Index, Integer, MetaData, String, Table, and_, func, select
from sqlalchemy.engine import Engine

from core.config import get_settings
from core.db import make_engine, upsert


@dataclass(frozen=True)
class RateDecision:
    """Outcome of one rate check.

    reset_at is a UNIX timestamp: when the oldest attempt in the window
    expires. retry_after is 0 for an accepted attempt, otherwise the whole
    seconds (at least 1) until a slot frees up.
    """

    allowed: bool
    limit: int
    remaining: int
    reset_at: int
    retry_after: int = 0


def _decision(
    max_attempts: int, window: int, count: int, oldest: float | None, now: float, allowed: bool
) -> RateDecision:
    """Build a RateDecision from the window contents after the check."""
    reset_at = (oldest if oldest is not None else now) + window
    if allowed:
        return RateDecision(True, max_attempts, max(0, max_attempts - count), math.ceil(reset_at), 0)
    retry_after = max(1, math.ceil(reset_at - now))
    return RateDecision(False, max_attempts, 0, math.ceil(reset_at), retry_after)


class RateWindowStore(Protocol):
    """What RateLimiter needs from a window backend."""

    def attempt(self, scope: str, identifier: str, max_attempts: int, window: int, now: float) -> RateDecision:
        """Atomically prune, count and (if under the limit) record one attempt."""
        ...

    def peek(self, scope: str, identifier: str, max_attempts: int, window: int, now: float) -> RateDecision:
        """Report the window state without recording anything."""
        ...

    def volume(self, window: int, now: float) -> int:
        """Total attempts recorded in the last window seconds, across all scopes and identifiers."""
        ...

    def purge_expired(self, retention: int, now: float) -> int:
        """Drop window data older than retention seconds. Returns rows removed."""
        ...

    def close(self) -> None: ...


# ---------------------------------------------------------------------------
# SQL backend
# ---------------------------------------------------------------------------

_metadata = MetaData()

_rate_windows = Table(
    "rate_windows",
    _metadata,
    Column("scope", String(32), primary_key=True),
    Column("identifier", String(255), primary_key=True),
    Column("updated_at", Float, nullable=False),
)

_rate_attempts = Table(
    "rate_attempts",
    _metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("scope", String(32), nullable=False),
    Column("identifier", String(255), nullable=False),
    Column("attempted_at", Float, nullable=False),
    Index("ix_rate_attempts_key_time", "scope", "identifier", "attempted_at"),
    Index("ix_rate_attempts_time", "attempted_at"),
)


class SQLRateWindowStore:
    """Rate windows in the shared SQL database.

    Usage:
        store = SQLRateWindowStore()
        decision = store.attempt("auth-burst", "203.0.113.9:ab12...", 3, 60, time.time())
    """

    def __init__(self, db_url: str | None = None) -> None:
        self.engine: Engine = make_engine(db_url or get_settings().database_url)
        _metadata.create_all(self.engine)

    @staticmethod
    def _key(scope: str, identifier: str):
        return and_(_rate_attempts.c.scope == scope, _rate_attempts.c.identifier == identifier)

    def attempt(self, scope: str, identifier: str, max_attempts: int, window: int, now: float) -> RateDecision:
        with self.engine.begin() as conn:
            # Lock first: the anchor upsert is the first statement of the
            # transaction, so the prune/count/insert below run serialized
            # for this (scope, identifier).
            upsert(
                conn,
                _rate_windows,
                {"scope": scope, "identifier": identifier, "updated_at": now},
                key_columns=["scope", "identifier"],
                update_values={"updated_at": now},
            )
            key = self._key(scope, identifier)
            conn.execute(_rate_attempts.delete().where(key, _rate_attempts.c.attempted_at <= now - window))
            count, oldest = conn.execute(
                select(func.count(), func.min(_rate_attempts.c.attempted_at)).where(key)
            ).one()
            if count >= max_attempts:
                return _decision(max_attempts, window, count, oldest, now, allowed=False)
            conn.execute(_rate_attempts.insert().values(scope=scope, identifier=identifier, attempted_at=now))
        return _decision(max_attempts, window, count + 1, oldest if oldest is not None else now, now, allowed=True)

    def peek(self, scope: str, identifier: str, max_attempts: int, window: int, now: float) -> RateDecision:
        with self.engine.connect() as conn:
            count, oldest = conn.execute(
                select(func.count(), func.min(_rate_attempts.c.attempted_at)).where(
                    self._key(scope, identifier), _rate_attempts.c.attempted_at > now - window
                )
            ).one()
        return _decision(max_attempts, window, count, oldest, now, allowed=count < max_attempts)

    def volume(self, window: int, now: float) -> int:
        with self.engine.connect() as conn:
            total = conn.execute(
                select(func.count()).select_from(_rate_attempts).where(_rate_attempts.c.attempted_at > now - window)
            ).scalar()
        return total or 0

    def purge_expired(self, retention: int, now: float) -> int:
        """Delete attempts and idle anchor rows older than retention seconds.

        Safe under live traffic: an anchor row touched by a concurrent attempt
        has a fresh updated_at and no longer matches the delete.
        """
        cutoff = now - retention
        with self.engine.begin() as conn:
            attempts = conn.execute(_rate_attempts.delete().where(_rate_attempts.c.attempted_at < cutoff))
            windows = conn.execute(_rate_windows.delete().where(_rate_windows.c.updated_at < cutoff))
        return attempts.rowcount + windows.rowcount

    def close(self) -> None:
        self.engine.dispose()


# ---------------------------------------------------------------------------
# limits backend
# ---------------------------------------------------------------------------

# Upper bound for the global volume counter. Far above any sane ceiling so
# the counter never saturates before the breaker trips.
_VOLUME_CAPACITY = 1_000_000


class LimitsRateWindowStore:
    """Rate windows in a `limits` storage (Redis in production, memory:// in tests).

    The library's moving-window strategy is the same sliding-window log the
    SQL backend keeps. Every accepted attempt also hits one global counter
    keyed "volume", which backs the distributed-attack breaker. That counter
    only tracks volume_window seconds; volume() rejects any other window.

    limits timestamps come from its own clock, so the now arguments are only
    used to turn reset times into retry-after values.
    """

    def __init__(self, storage_uri: str, volume_window: int | None = None) -> None:
        self._storage = storage_from_string(storage_uri)
        self._limiter = MovingWindowRateLimiter(self._storage)
        self._volume_window = volume_window or get_settings().distributed_window_seconds
        self._volume_item = RateLimitItemPerSecond(_VOLUME_CAPACITY, self._volume_window)

    def attempt(self, scope: str, identifier: str, max_attempts: int, window: int, now: float) -> RateDecision:
        item = RateLimitItemPerSecond(max_attempts, window)
        accepted = self._limiter.hit(item, scope, identifier)
        if accepted:
            self._limiter.hit(self._volume_item, "volume")
        return self._decision_from_stats(item, scope, identifier, now, accepted)

    def peek(self, scope: str, identifier: str, max_attempts: int, window: int, now: float) -> RateDecision:
        item = RateLimitItemPerSecond(max_attempts, window)
        return self._decision_from_stats(item, scope, identifier, now, self._limiter.test(item, scope, identifier))

    def volume(self, window: int, now: float) -> int:
        if window != self._volume_window:
            raise ValueError(f"This store only tracks volume over {self._volume_window}s windows, not {window}s.")
        stats = self._limiter.get_window_stats(self._volume_item, "volume")
        return _VOLUME_CAPACITY - stats.remaining

    def purge_expired(self, retention: int, now: float) -> int:
        # Storage entries carry their own expiry; nothing to sweep.
        return 0

    def close(self) -> None:
        # Shared storage: other workers still use it, so nothing is reset here.
        return None

    def _decision_from_stats(self, item, scope: str, identifier: str, now: float, allowed: bool) -> RateDecision:
        stats = self._limiter.get_window_stats(item, scope, identifier)
        reset_at = math.ceil(stats.reset_time)
        if allowed:
            return RateDecision(True, item.amount, stats.remaining, reset_at, 0)
        return RateDecision(False, item.amount, 0, reset_at, max(1, math.ceil(stats.reset_time - now)))


def make_rate_store(settings=None, db_url: str | None = None) -> RateWindowStore:
    """Return the backend selected by RATE_LIMIT_STORAGE_URI (empty means SQL in db_url or DATABASE_URL)."""
    settings = settings or get_settings()
    if settings.rate_limit_storage_uri:
        return LimitsRateWindowStore(settings.rate_limit_storage_uri, settings.distributed_window_seconds)
    return SQLRateWindowStore(db_url or settings.database_url)
