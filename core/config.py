"""
core/config.py -- Centralized application configuration via pydantic-settings.

All environment variable reads for LedgerGuard happen here. No module should
call os.getenv() or os.environ.get() directly -- import get_settings() instead.

Design patterns used:
  Singleton via lru_cache: get_settings() instantiates Settings once at first
      call and returns the cached instance on every subsequent call. This is
      the official FastAPI dependency injection pattern for config.

  BaseSettings (pydantic-settings): Reads values from environment variables
      and an optional .env file automatically. Field names map to env var names
      (e.g. session_secret_key -> SESSION_SECRET_KEY). Type coercion and
      validation are built in. List fields take JSON (ALLOWED_ORIGINS='["https://a"]').

  @model_validator(mode="after"): Runs cross-field validation after all fields
      are resolved from environment. Used for the DEBUG-conditional
      SESSION_SECRET_KEY logic: dev mode generates a key with a warning,
      production mode refuses to start without one.

The token signing secret is NOT configured here. It lives in the database
settings row and is owned by auth/secret_provider.py, so every worker process
signs and verifies with the same value. Only the seed for the degraded-mode
fallback derivation is configurable.

Layer rule: core/ is the kernel. This module may not import from api/, auth/,
or security/.
"""

import logging
import secrets
from functools import lru_cache
from pathlib import Path

from pydantic import model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

logger = logging.getLogger("ledgerguard.config")

_DEFAULT_DB_URL = f"sqlite:///{Path(__file__).resolve().parent.parent / 'ledgerguard.db'}"


class Settings(BaseSettings):
    """Application settings loaded from environment variables and .env file.

    All fields have defaults so Settings() can be instantiated in test
    environments without a real .env file. The model_validator enforces
    production-safety rules at startup.
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # ------------------------------------------------------------------
    # Core
    # ------------------------------------------------------------------

    debug: bool = False
    database_url: str = _DEFAULT_DB_URL
    # Signs the Starlette session cookie that carries the CSRF session id.
    # Empty string is the sentinel for "not configured"; see the validator.
    session_secret_key: str = ""

    allowed_hosts: list[str] = ["localhost", "127.0.0.1", "*.localhost"]
    allowed_origins: list[str] = ["http://localhost:3000", "http://localhost:8000"]
    # Bodies above this are refused with 413 before any parsing.
    max_request_bytes: int = 1024 * 1024

    # ------------------------------------------------------------------
    # Tokens
    # ------------------------------------------------------------------

    secure_cookies: bool = False
    # 30 days -- the product offers "remember me" sessions by default.
    # Step-up and test flows pass a shorter ttl to TokenService.issue().
    token_expire_seconds: int = 30 * 24 * 3600
    # Input to the one and only fallback-secret derivation. Every process
    # derives the same value from it while the settings store is unreachable.
    fallback_secret_seed: str = "ledgerguard-signing-fallback-v1"

    # ------------------------------------------------------------------
    # CSRF
    # ------------------------------------------------------------------

    csrf_token_lifetime_seconds: int = 3600

    # ------------------------------------------------------------------
    # Rate limiting
    # ------------------------------------------------------------------

    rate_limiting_enabled: bool = True
    # Empty = SQL-backed windows in DATABASE_URL. Otherwise any `limits`
    # storage URI, e.g. "redis://localhost:6379" or "memory://".
    rate_limit_storage_uri: str = ""
    trusted_addresses: list[str] = ["127.0.0.1", "::1"]
    distributed_ceiling: int = 500
    distributed_window_seconds: int = 300
    distributed_cooldown_seconds: int = 300
    rate_window_retention_seconds: int = 24 * 3600

    # ------------------------------------------------------------------
    # Errors and maintenance
    # ------------------------------------------------------------------

    error_message_max_length: int = 200
    error_log_retention_days: int = 30
    sweep_interval_seconds: int = 6 * 3600

    # ------------------------------------------------------------------
    # Validators
    # ------------------------------------------------------------------

    @model_validator(mode="after")
    def validate_session_secret_key(self) -> "Settings":
        """Enforce the SESSION_SECRET_KEY policy.

        Dev mode (DEBUG=true): auto-generate a random key with a warning.
            Sessions (and the CSRF tokens bound to them) will not survive a
            restart -- acceptable for local dev.

        Production mode (DEBUG=false or not set): refuse to start if the key
            is missing. Each worker would otherwise generate its own key and
            reject session cookies issued by its siblings.

        Both modes: reject keys shorter than 32 characters.
        """
        if not self.session_secret_key:
            if self.debug:
                self.session_secret_key = secrets.token_hex(32)
                logger.warning(
                    "WARNING: Using auto-generated SESSION_SECRET_KEY. " "Sessions will not persist across restarts."
                )
            else:
                raise ValueError(
                    "SESSION_SECRET_KEY is required in production mode. "
                    "Set SESSION_SECRET_KEY in your environment or .env file. "
                    "To run in development mode, set DEBUG=true."
                )
        if len(self.session_secret_key) < 32:
            raise ValueError("SESSION_SECRET_KEY must be at least 32 characters.")
        return self


@lru_cache
def get_settings() -> Settings:
    """Return the application Settings singleton.

    Uses lru_cache so Settings() is instantiated exactly once -- at first call.
    All modules should call get_settings() rather than constructing Settings() directly.

    In tests: call get_settings.cache_clear() between test cases if you need
    to inject different environment variables.
    """
    return Settings()
