"""
tests/test_health.py -- Integration tests for GET /api/v1/health.

Covers:
  - 200 response with status, version, database and signing_secret fields
  - No authentication, CSRF or rate limit applied
  - Security headers present on every response
  - "degraded" when the settings store is unreachable and the fallback secret is in use
  - "degraded" with database "unreachable" when the ping fails
"""

from __future__ import annotations

from sqlalchemy.exc import OperationalError

from api.main import __version__


def test_health_ok(api_client):
    """Health endpoint returns 200 with every component healthy."""
    client, _, _ = api_client
    resp = client.get("/api/v1/health")
    assert resp.status_code == 200
    assert resp.json() == {
        "status": "ok",
        "version": __version__,
        "database": "ok",
        "signing_secret": "ok",
    }


def test_health_no_auth_required(api_client):
    client, _, _ = api_client
    client.cookies.clear()
    resp = client.get("/api/v1/health", headers={})
    assert resp.status_code == 200


def test_health_security_headers(api_client):
    client, _, _ = api_client
    resp = client.get("/api/v1/health")
    assert resp.headers["X-Content-Type-Options"] == "nosniff"
    assert resp.headers["X-Frame-Options"] == "DENY"
    assert resp.headers["Cache-Control"] == "no-store"
    assert "X-Request-ID" in resp.headers
    # Not rate limited, so no quota headers.
    assert "X-RateLimit-Limit" not in resp.headers


def test_health_reports_degraded_secret(api_client, monkeypatch):
    """With the settings store down, the provider signs with the fallback and health says so."""
    client, services, _ = api_client
    provider = services.secret_provider

    def outage(key):
        raise OperationalError("SELECT value FROM app_settings", {}, Exception("unable to open database file"))

    monkeypatch.setattr(services.settings_store, "get", outage)
    provider.invalidate()
    data = client.get("/api/v1/health").json()
    assert data["status"] == "degraded"
    assert data["signing_secret"] == "degraded"

    monkeypatch.undo()
    provider.invalidate()
    data = client.get("/api/v1/health").json()
    assert data["status"] == "ok"
    assert data["signing_secret"] == "ok"


def test_health_reports_unreachable_database(api_client, monkeypatch):
    client, services, _ = api_client
    monkeypatch.setattr(services.user_store, "ping", lambda: False)
    resp = client.get("/api/v1/health")
    assert resp.status_code == 200
    assert resp.json()["status"] == "degraded"
    assert resp.json()["database"] == "unreachable"
