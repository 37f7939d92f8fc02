"""
security/ratelimit.py -- Multi-tier sliding-window rate limiting.

RateLimiter turns named policies (chains of Quotas) into store checks and
raises RateLimited (429) or ServiceUnavailable (503) for the ErrorHandler.
All window state lives in a RateWindowStore (security/rate_store.py), so any
number of workers share one view of every window.

Policies:
  auth            3/60s and 5/900s per client fingerprint, 10/3600s per address
  api             20/60s and 100/3600s per client fingerprint
  password-reset  3/3600s per email (hashed), 5/3600s per address
  registration    1/300s and 3/3600s per address
  suspicious      1/3600s per address, for user agents that look like tooling

A chain runs in order and stops at the first rejection. Checks that passed
before the rejection keep their recorded attempt.

Client fingerprint: "<address>:<first 16 hex of sha256(user agent)>". An
attacker rotating user agents on one address still hits the per-address
quota; one rotating addresses still needs a new fingerprint per address.

Distributed-attack breaker: when more than DISTRIBUTED_CEILING attempts were
recorded across ALL identifiers in DISTRIBUTED_WINDOW_SECONDS, a shared
lockdown marker is written and every request gets 503 with Retry-After until
DISTRIBUTED_COOLDOWN_SECONDS have passed.

Layer rule: no imports from api/ or auth/.
"""

from __future__ import annotations

import hashlib
import logging
import re
import time
from collections.abc import Callable, Mapping, Sequence
from dataclasses import dataclass
from enum import Enum

from core.config import Settings, get_settings
from core.errors import RateLimited, ServiceUnavailable
from security.rate_store import RateDecision, RateWindowStore

logger = logging.getLogger("ledgerguard.security")


class Scope(str, Enum):
    AUTH_BURST = "auth-burst"
    AUTH_SUSTAINED = "auth-sustained"
    AUTH_IP = "auth-ip"
    API = "api"
    API_BURST = "api-burst"
    PASSWORD_RESET = "password-reset"
    PASSWORD_RESET_IP = "password-reset-ip"
    REGISTRATION = "registration"
    REGISTRATION_BURST = "registration-burst"
    SUSPICIOUS = "suspicious"
    LOCKDOWN = "lockdown"


class KeyBy(str, Enum):
    """Which request attribute a quota counts against."""

    FINGERPRINT = "fingerprint"
    ADDRESS = "address"
    EMAIL = "email"


@dataclass(frozen=True)
class Quota:
    scope: Scope
    max_attempts: int
    window: int
    key_by: KeyBy = KeyBy.FINGERPRINT


AUTH_POLICY: tuple[Quota, ...] = (
    Quota(Scope.AUTH_BURST, 3, 60),
    Quota(Scope.AUTH_SUSTAINED, 5, 900),
    Quota(Scope.AUTH_IP, 10, 3600, KeyBy.ADDRESS),
)
API_POLICY: tuple[Quota, ...] = (
    Quota(Scope.API_BURST, 20, 60),
    Quota(Scope.API, 100, 3600),
)
PASSWORD_RESET_POLICY: tuple[Quota, ...] = (
    Quota(Scope.PASSWORD_RESET, 3, 3600, KeyBy.EMAIL),
    Quota(Scope.PASSWORD_RESET_IP, 5, 3600, KeyBy.ADDRESS),
)
REGISTRATION_POLICY: tuple[Quota, ...] = (
    Quota(Scope.REGISTRATION_BURST, 1, 300, KeyBy.ADDRESS),
    Quota(Scope.REGISTRATION, 3, 3600, KeyBy.ADDRESS),
)
SUSPICIOUS_QUOTA = Quota(Scope.SUSPICIOUS, 1, 3600, KeyBy.ADDRESS)

_SUSPICIOUS_AGENTS: tuple[re.Pattern[str], ...] = (
    re.compile(r"bot|crawler|spider|scraper", re.IGNORECASE),
    re.compile(r"^.{0,10}$", re.DOTALL),
    re.compile(r"sqlmap|nikto|nessus|openvas|w3af", re.IGNORECASE),
)

_LOCKDOWN_KEY = "*"


def client_fingerprint(address: str, user_agent: str) -> str:
    """Return the composite identifier for a client: address plus a user-agent hash."""
    digest = hashlib.sha256((user_agent or "").encode("utf-8")).hexdigest()[:16]
    return f"{address}:{digest}"


def email_key(email: str) -> str:
    """Hash an email so raw addresses never land in the rate tables."""
    return hashlib.sha256(email.strip().lower().encode("utf-8")).hexdigest()


def suspicious_agent_pattern(user_agent: str | None) -> str | None:
    """Return the first suspicious pattern user_agent matches, or None."""
    for pattern in _SUSPICIOUS_AGENTS:
        if pattern.search(user_agent or ""):
            return pattern.pattern
    return None


class RateLimiter:
    """Entry point for every rate check.

    Usage:
        limiter = RateLimiter(make_rate_store())
        decision = limiter.check_auth(address, user_agent)   # raises RateLimited on rejection
        limiter.check_distributed()                         # raises ServiceUnavailable in lockdown

    Checks return the tightest RateDecision of the chain (fewest remaining
    attempts) for the X-RateLimit-* headers, or None when the request was not
    counted (limiting disabled, or a trusted address).
    """

    def __init__(
        self,
        store: RateWindowStore,
        settings: Settings | None = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._store = store
        self._settings = settings or get_settings()
        self._clock = clock

    @property
    def enabled(self) -> bool:
        return self._settings.rate_limiting_enabled

    def is_trusted(self, address: str | None) -> bool:
        return bool(address) and address in self._settings.trusted_addresses

    # ------------------------------------------------------------------
    # Primitive
    # ------------------------------------------------------------------

    def check(self, scope: Scope | str, identifier: str, max_attempts: int, window: int) -> RateDecision:
        """Record one attempt for (scope, identifier), or raise RateLimited."""
        scope_name = scope.value if isinstance(scope, Scope) else scope
        decision = self._store.attempt(scope_name, identifier, max_attempts, window, self._clock())
        if not decision.allowed:
            logger.warning(
                "Rate limit exceeded: scope=%s identifier=%s limit=%d window=%ds retry_after=%ds",
                scope_name,
                identifier,
                max_attempts,
                window,
                decision.retry_after,
            )
            raise RateLimited(
                limit=max_attempts,
                window=window,
                retry_after=decision.retry_after,
                reset_at=decision.reset_at,
                scope=scope_name,
            )
        return decision

    def check_chain(self, quotas: Sequence[Quota], keys: Mapping[KeyBy, str]) -> RateDecision | None:
        """Run quotas in order; all must pass. keys maps each KeyBy to its identifier."""
        tightest: RateDecision | None = None
        for quota in quotas:
            decision = self.check(quota.scope, keys[quota.key_by], quota.max_attempts, quota.window)
            if tightest is None or decision.remaining < tightest.remaining:
                tightest = decision
        return tightest

    def _keys(self, address: str, user_agent: str = "", email: str = "") -> dict[KeyBy, str]:
        return {
            KeyBy.FINGERPRINT: client_fingerprint(address, user_agent),
            KeyBy.ADDRESS: address,
            KeyBy.EMAIL: email_key(email),
        }

    def _skip(self, address: str) -> bool:
        return not self.enabled or self.is_trusted(address)

    # ------------------------------------------------------------------
    # Policies
    # ------------------------------------------------------------------

    def check_auth(self, address: str, user_agent: str = "") -> RateDecision | None:
        if self._skip(address):
            return None
        return self.check_chain(AUTH_POLICY, self._keys(address, user_agent))

    def check_api(self, address: str, user_agent: str = "") -> RateDecision | None:
        if self._skip(address):
            return None
        return self.check_chain(API_POLICY, self._keys(address, user_agent))

    def check_password_reset(self, email: str, address: str) -> RateDecision | None:
        if self._skip(address):
            return None
        return self.check_chain(PASSWORD_RESET_POLICY, self._keys(address, email=email))

    def check_registration(self, address: str) -> RateDecision | None:
        if self._skip(address):
            return None
        return self.check_chain(REGISTRATION_POLICY, self._keys(address))

    def check_suspicious(self, address: str, user_agent: str | None) -> RateDecision | None:
        """Throttle user agents that look like bots or attack tools to 1 request/hour per address."""
        if self._skip(address):
            return None
        pattern = suspicious_agent_pattern(user_agent)
        if pattern is None:
            return None
        logger.warning(
            "Security threat: suspicious_user_agent address=%s user_agent=%r pattern=%s",
            address,
            (user_agent or "")[:200],
            pattern,
        )
        return self.check_chain((SUSPICIOUS_QUOTA,), self._keys(address))

    def check_distributed(self) -> None:
        """Raise ServiceUnavailable while the global lockdown is active, or when this call trips it."""
        if not self.enabled:
            return
        settings = self._settings
        now = self._clock()
        cooldown = settings.distributed_cooldown_seconds
        lockdown = self._store.peek(Scope.LOCKDOWN.value, _LOCKDOWN_KEY, 1, cooldown, now)
        if not lockdown.allowed:
            raise ServiceUnavailable(lockdown.retry_after, detail="distributed-attack lockdown active")

        volume = self._store.volume(settings.distributed_window_seconds, now)
        if volume <= settings.distributed_ceiling:
            return
        logger.critical(
            "Security threat: distributed_attack total_attempts=%d window=%ds ceiling=%d; "
            "rejecting all traffic for %ds",
            volume,
            settings.distributed_window_seconds,
            settings.distributed_ceiling,
            cooldown,
        )
        marker = self._store.attempt(Scope.LOCKDOWN.value, _LOCKDOWN_KEY, 1, cooldown, now)
        # Another worker may have tripped it first; honour its expiry.
        retry_after = cooldown if marker.allowed else marker.retry_after
        raise ServiceUnavailable(retry_after, detail=f"distributed-attack lockdown tripped at volume {volume}")

    # ------------------------------------------------------------------
    # Monitoring and maintenance
    # ------------------------------------------------------------------

    def status(self, address: str, user_agent: str = "") -> dict:
        """Snapshot of the auth and api windows for one client. Records nothing."""
        now = self._clock()
        keys = self._keys(address, user_agent)
        quotas = []
        for quota in AUTH_POLICY + API_POLICY:
            decision = self._store.peek(quota.scope.value, keys[quota.key_by], quota.max_attempts, quota.window, now)
            quotas.append(
                {
                    "scope": quota.scope.value,
                    "limit": quota.max_attempts,
                    "window": quota.window,
                    "remaining": decision.remaining,
                    "reset_at": decision.reset_at,
                }
            )
        cooldown = self._settings.distributed_cooldown_seconds
        lockdown = self._store.peek(Scope.LOCKDOWN.value, _LOCKDOWN_KEY, 1, cooldown, now)
        return {
            "address": address,
            "trusted": self.is_trusted(address),
            "enabled": self.enabled,
            "lockdown_active": not lockdown.allowed,
            "global_volume": self._store.volume(self._settings.distributed_window_seconds, now),
            "quotas": quotas,
        }

    def purge_expired(self) -> int:
        """Sweep window data past the retention period. Safe to run alongside live traffic."""
        removed = self._store.purge_expired(self._settings.rate_window_retention_seconds, self._clock())
        if removed:
            logger.info("Rate window sweep removed %d rows", removed)
        return removed
