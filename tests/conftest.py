"""
tests/conftest.py -- Shared test fixtures for LedgerGuard.

This module provides:
  - db_url(): named shared-memory SQLite URL for one test database
  - make_services(): the full service graph on an isolated database, with
    optional Settings overrides (e.g. a tiny distributed-attack ceiling)
  - _patch_lifespan(): wires prebuilt services into app.state, bypassing real startup
  - FakeClock: controllable time source for tokens, rate windows and CSRF expiry
  - api_client: TestClient + services + admin token, rate limiting bypassed
  - limited_client: TestClient with the production rate-limit policies active

Design: Named shared-memory SQLite URIs (not plain :memory:) are required
because TestClient runs route handlers in a thread pool. Plain :memory: DBs
are per-connection and would present a blank schema to each worker thread.
The named URI format (file:name?mode=memory&cache=shared&uri=true) shares
one in-memory instance across all connections in the same process.

DEBUG and ALLOWED_HOSTS must be set before any core import so get_settings()
auto-generates SESSION_SECRET_KEY and TrustedHostMiddleware accepts the
TestClient's "testserver" host.

TestClient's default User-Agent ("testclient") is short enough to match the
suspicious-agent rule, so every client here sends a browser-like agent.
"""

from __future__ import annotations

import asyncio
import os
import uuid
from collections.abc import Generator
from contextlib import asynccontextmanager

# CRITICAL: Set before any core/api import so get_settings() sees them.
os.environ.setdefault("DEBUG", "true")
os.environ.setdefault("ALLOWED_HOSTS", '["testserver", "localhost", "127.0.0.1"]')

import pytest
from fastapi.testclient import TestClient

from api.main import app, attach_services
from api.services import Services, build_services
from auth.models import User
from auth.tokens import hash_password
from core.config import get_settings

BROWSER_AGENT = "Mozilla/5.0 (X11; Linux x86_64) LedgerGuardTests/1.0"
ADMIN_EMAIL = "admin@example.com"
ADMIN_PASSWORD = "Adm1n!Passw0rd"
USER_EMAIL = "user@example.com"
USER_PASSWORD = "Us3r!Passw0rd"


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def db_url(name: str) -> str:
    """Return a named shared-memory SQLite URL unique to this test run."""
    return f"sqlite:///file:test_{name}_{uuid.uuid4().hex[:8]}?mode=memory&cache=shared&uri=true"


def make_services(name: str, **overrides) -> Services:
    """Build the full service graph on an isolated in-memory database."""
    settings = get_settings().model_copy(update=overrides)
    return build_services(db_url(name), settings)


class FakeClock:
    """Callable time source. Starts at a fixed instant; advance() moves it forward."""

    def __init__(self, start: float = 1_800_000_000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


def _patch_lifespan(services: Services):
    """Return an async context manager that replaces the real lifespan.

    Wires prebuilt test services into app.state so TestClient routes see
    isolated test DBs rather than the production database.

    The sweep_task is a long-sleeping coroutine that keeps asyncio happy
    (a real asyncio.Task is required; a mock would fail on .cancel()).
    """

    @asynccontextmanager
    async def test_lifespan(app):
        attach_services(app, services)
        app.state.sweep_task = asyncio.create_task(asyncio.sleep(99999))
        yield
        app.state.sweep_task.cancel()

    return test_lifespan


def _seed_users(services: Services) -> tuple[int, int]:
    admin_id = services.user_store.create_user(
        User(email=ADMIN_EMAIL, role="admin", hashed_password=hash_password(ADMIN_PASSWORD))
    )
    user_id = services.user_store.create_user(
        User(email=USER_EMAIL, role="user", hashed_password=hash_password(USER_PASSWORD))
    )
    return admin_id, user_id


def csrf_token(client: TestClient) -> str:
    """Fetch a fresh single-use CSRF token for the client's session."""
    resp = client.get("/api/v1/auth/csrf")
    assert resp.status_code == 200, resp.text
    return resp.json()["csrf_token"]


# ---------------------------------------------------------------------------
# Module-scoped fixtures -- one TestClient per test module for speed
# ---------------------------------------------------------------------------


@pytest.fixture(scope="module")
def api_client() -> Generator[tuple[TestClient, Services, str], None, None]:
    """Yield (client, services, admin_token) for API integration tests.

    The TestClient's address ("testclient") is trusted, so per-client rate
    limits do not interfere with functional tests. The admin and a regular
    user are created before the client starts; the admin token is issued
    directly by the token service for use in Authorization headers.
    """
    services = make_services("api", trusted_addresses=["testclient"])
    admin_id, _ = _seed_users(services)
    admin = services.user_store.get_by_id(admin_id)
    token = services.token_service.issue(admin, ttl=3600)

    app.router.lifespan_context = _patch_lifespan(services)

    with TestClient(app, headers={"user-agent": BROWSER_AGENT}, raise_server_exceptions=False) as client:
        yield client, services, token

    services.close()


@pytest.fixture(scope="module")
def limited_client() -> Generator[tuple[TestClient, Services], None, None]:
    """Yield (client, services) with the production rate-limit policies in force."""
    services = make_services("limited", trusted_addresses=[])
    _seed_users(services)

    app.router.lifespan_context = _patch_lifespan(services)

    with TestClient(app, headers={"user-agent": BROWSER_AGENT}, raise_server_exceptions=False) as client:
        yield client, services

    services.close()
