"""
auth/secret_provider.py -- The single signing secret for every token.

All worker processes must sign and verify with the SAME secret at every
instant. The secret therefore lives in one shared settings row
(app_settings.key = "signing_secret"), and each process holds a read-through
copy that is dropped only by an explicit rotate() or invalidate() call.

First use (no row yet):
    Several workers can race to create the secret. Each generates a
    candidate and runs an insert-if-absent; exactly one insert wins. Every
    worker then re-reads the row and caches what was COMMITTED, never its own
    candidate, so all of them converge on the winner.

Rotation:
    rotate() replaces the row in one upsert (value + version bump), clears
    this process's cache and re-reads. Other processes pick the change up
    through sync(): the cached copy remembers the version it was read at,
    and TokenService calls sync() before it signs or verifies. When the
    stored version has moved on, the cached secret is dropped and reloaded,
    so a rotation made by one worker (or by `main.py rotate-secret`) reaches
    every worker on its next token operation. No read path ever rotates.

    The version is read BEFORE the value. A rotation landing between the two
    reads leaves a new value tagged with the old version, which the next
    sync() reloads harmlessly; the reverse order could pin an old value to
    the new version for good.

Degraded mode (settings store unreachable):
    get_secret() returns derive_fallback_secret(seed) -- SHA-256 of a fixed
    seed. Every process computes the identical value with no coordination, so
    tokens keep verifying across workers during the outage. Anyone who knows
    the seed can forge tokens, so this is logged at CRITICAL for alerting and
    exposed through .degraded. The fallback is not cached: the next call
    retries the store.

derive_fallback_secret() is the only fallback derivation in the codebase.
Do not add another.

Layer rule: no imports from api/ or security/.
"""

from __future__ import annotations

import hashlib
import logging
import secrets
import threading
from datetime import datetime, timezone

from sqlalchemy import Column, Integer, MetaData, String, Table, Text, select
from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError

from core.config import get_settings
from core.db import insert_if_absent, make_engine, upsert

logger = logging.getLogger("ledgerguard.auth.secret")

SIGNING_SECRET_KEY = "signing_secret"
_SECRET_BYTES = 32

# ---------------------------------------------------------------------------
# Schema
# ---------------------------------------------------------------------------

_metadata = MetaData()

_app_settings = Table(
    "app_settings",
    _metadata,
    Column("key", String(64), primary_key=True),
    Column("value", Text, nullable=False),
    Column("version", Integer, nullable=False, server_default="1"),
    Column("updated_at", String(32), nullable=False),
)


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def derive_fallback_secret(seed: str) -> bytes:
    """Return the degraded-mode signing secret for seed.

    Pure function of its input: every process, on every host, derives the
    same bytes from the same seed.
    """
    return hashlib.sha256(f"ledgerguard:fallback-signing-secret:{seed}".encode("utf-8")).digest()


# ---------------------------------------------------------------------------
# Settings row repository
# ---------------------------------------------------------------------------


class SettingsStore:
    """Key/value settings rows. Values are text; callers own the encoding."""

    def __init__(self, db_url: str | None = None) -> None:
        self.engine: Engine = make_engine(db_url or get_settings().database_url)
        _metadata.create_all(self.engine)

    def get(self, key: str) -> str | None:
        with self.engine.connect() as conn:
            return conn.execute(select(_app_settings.c.value).where(_app_settings.c.key == key)).scalar()

    def get_version(self, key: str) -> int | None:
        with self.engine.connect() as conn:
            return conn.execute(select(_app_settings.c.version).where(_app_settings.c.key == key)).scalar()

    def insert_if_absent(self, key: str, value: str) -> str:
        """Store value under key unless the key already exists. Returns the committed value."""
        with self.engine.begin() as conn:
            insert_if_absent(
                conn,
                _app_settings,
                {"key": key, "value": value, "version": 1, "updated_at": _now_iso()},
                key_columns=["key"],
            )
        committed = self.get(key)
        if committed is None:
            # Only possible if the row was deleted between our insert and read.
            raise SQLAlchemyError(f"settings row {key!r} vanished after insert")
        return committed

    def replace(self, key: str, value: str) -> int:
        """Atomically set key to value, bumping its version. Returns the new version."""
        with self.engine.begin() as conn:
            upsert(
                conn,
                _app_settings,
                {"key": key, "value": value, "version": 1, "updated_at": _now_iso()},
                key_columns=["key"],
                update_values={
                    "value": value,
                    "version": _app_settings.c.version + 1,
                    "updated_at": _now_iso(),
                },
            )
        return self.get_version(key) or 1

    def close(self) -> None:
        self.engine.dispose()


# ---------------------------------------------------------------------------
# Provider
# ---------------------------------------------------------------------------


class SecretProvider:
    """Supplies the signing secret, reading through a process-local cache.

    Pass one instance to TokenService (and anything else that signs); do not
    reach for a module-level global.

    Usage:
        provider = SecretProvider(SettingsStore(db_url))
        key = provider.get_secret()   # bytes
        provider.rotate()             # admin operation
    """

    def __init__(self, store: SettingsStore, fallback_seed: str | None = None) -> None:
        self._store = store
        self._fallback_seed = fallback_seed or get_settings().fallback_secret_seed
        self._cached: bytes | None = None
        self._cached_version: int | None = None
        self._degraded = False
        self._lock = threading.Lock()

    @property
    def degraded(self) -> bool:
        """True when the last get_secret() call had to use the fallback secret."""
        return self._degraded

    @property
    def cached_version(self) -> int | None:
        """Version of the secret this process currently holds (None if nothing cached)."""
        return self._cached_version

    def get_secret(self) -> bytes:
        cached = self._cached
        if cached is not None:
            return cached
        with self._lock:
            if self._cached is not None:
                return self._cached
            try:
                version = self._store.get_version(SIGNING_SECRET_KEY)
                value = self._store.get(SIGNING_SECRET_KEY)
                if value is None:
                    # version stays None, so the first sync() re-reads once.
                    value = self._store.insert_if_absent(SIGNING_SECRET_KEY, secrets.token_hex(_SECRET_BYTES))
                    logger.info("Signing secret generated and persisted")
            except SQLAlchemyError as exc:
                self._degraded = True
                logger.critical(
                    "Settings store unreachable (%s); signing with the deterministic fallback secret. "
                    "Token security is DEGRADED until the store recovers.",
                    exc.__class__.__name__,
                )
                return derive_fallback_secret(self._fallback_seed)
            self._cached = _decode(value)
            self._cached_version = version
            self._degraded = False
            return self._cached

    def sync(self) -> bool:
        """Reload the secret if the stored version differs from the cached one.

        Returns True when a reload happened. Nothing cached means the next
        get_secret() reads the store anyway. If the version check itself
        fails, the cached secret stays in use, as it does for get_secret().
        """
        if self._cached is None:
            return False
        held = self._cached_version
        try:
            stored = self._store.get_version(SIGNING_SECRET_KEY)
        except SQLAlchemyError as exc:
            logger.warning(
                "Signing secret version check failed (%s); keeping the cached secret", exc.__class__.__name__
            )
            return False
        if stored == held:
            return False
        with self._lock:
            if self._cached_version == held:
                self._cached = None
                self._cached_version = None
        logger.info("Signing secret version changed (%s -> %s); reloading", held, stored)
        self.get_secret()
        return True

    def rotate(self) -> int:
        """Replace the signing secret and reload it. Returns the new secret version.

        Every token issued before the rotation stops verifying in this process
        immediately. Store failures propagate -- a rotation that did not
        commit must not look like it succeeded.
        """
        with self._lock:
            version = self._store.replace(SIGNING_SECRET_KEY, secrets.token_hex(_SECRET_BYTES))
            self._cached = None
            self._cached_version = None
        logger.warning("Signing secret rotated (version %d); previously issued tokens are now invalid", version)
        self.get_secret()
        return version

    def invalidate(self) -> None:
        """Drop the cached secret so the next get_secret() re-reads the store."""
        with self._lock:
            self._cached = None
            self._cached_version = None

    def version(self) -> int | None:
        return self._store.get_version(SIGNING_SECRET_KEY)


def _decode(value: str) -> bytes:
    """Stored values are hex; anything else (hand-edited rows) is used as UTF-8 bytes."""
    try:
        return bytes.fromhex(value)
    except ValueError:
        return value.encode("utf-8")
