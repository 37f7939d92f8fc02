"""
api/services.py -- Builds and tears down the stores and services the app runs on.

One place constructs the object graph, so the FastAPI lifespan, the admin
CLI and the test fixtures all wire SecretProvider -> TokenService ->
RateLimiter -> CSRFGuard -> ErrorHandler the same way:

    services = build_services()            # DATABASE_URL from settings
    services = build_services("sqlite:///file:t?mode=memory&cache=shared&uri=true")
    services.sweep()                       # out-of-band expiry sweep
    services.close()

Nothing here is a module-level singleton; callers own the instance.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass

from auth.secret_provider import SecretProvider, SettingsStore
from auth.store import UserStore
from auth.tokens import TokenService
from core.config import Settings, get_settings
from core.error_handler import ErrorHandler, ErrorLogStore
from security.csrf import CSRFGuard, CSRFTokenStore
from security.rate_store import RateWindowStore, make_rate_store
from security.ratelimit import RateLimiter

logger = logging.getLogger("ledgerguard.api")


@dataclass
class Services:
    settings: Settings
    user_store: UserStore
    settings_store: SettingsStore
    secret_provider: SecretProvider
    token_service: TokenService
    rate_store: RateWindowStore
    rate_limiter: RateLimiter
    csrf_store: CSRFTokenStore
    csrf_guard: CSRFGuard
    error_log: ErrorLogStore
    error_handler: ErrorHandler

    def sweep(self) -> dict[str, int]:
        """Delete expired rate windows, CSRF tokens and error records. Safe under live traffic."""
        removed = {
            "rate_windows": self.rate_limiter.purge_expired(),
            "csrf_tokens": self.csrf_guard.purge_expired(),
            "error_log": self.error_handler.purge_expired(),
        }
        logger.info(
            "Sweep complete (rate_windows=%d csrf_tokens=%d error_log=%d)",
            removed["rate_windows"],
            removed["csrf_tokens"],
            removed["error_log"],
        )
        return removed

    def close(self) -> None:
        self.user_store.close()
        self.settings_store.close()
        self.rate_store.close()
        self.csrf_store.close()
        self.error_log.close()


def build_services(db_url: str | None = None, settings: Settings | None = None) -> Services:
    """Construct every store against db_url (default: DATABASE_URL)."""
    settings = settings or get_settings()
    url = db_url or settings.database_url
    rate_store = make_rate_store(settings, url)
    user_store = UserStore(url)
    settings_store = SettingsStore(url)
    secret_provider = SecretProvider(settings_store, settings.fallback_secret_seed)
    csrf_store = CSRFTokenStore(url)
    error_log = ErrorLogStore(url)
    return Services(
        settings=settings,
        user_store=user_store,
        settings_store=settings_store,
        secret_provider=secret_provider,
        token_service=TokenService(secret_provider, user_store, settings.token_expire_seconds),
        rate_store=rate_store,
        rate_limiter=RateLimiter(rate_store, settings),
        csrf_store=csrf_store,
        csrf_guard=CSRFGuard(csrf_store, settings.csrf_token_lifetime_seconds, settings.allowed_origins),
        error_log=error_log,
        error_handler=ErrorHandler(error_log, settings),
    )
