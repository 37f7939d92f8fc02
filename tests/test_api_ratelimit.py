"""
tests/test_api_ratelimit.py -- Rate limiting as seen over HTTP.

Uses limited_client, whose address is not trusted, so the production
policies apply. Tests share one rate store and run in file order; each one
uses its own policy scope (or user agent) so earlier tests do not eat into
later quotas.

Covers:
  - X-RateLimit-* headers on accepted requests
  - Login burst (3/min per fingerprint) -> 429 with Retry-After
  - Registration burst (1 per 5 minutes per address)
  - Password-reset quota keyed by the submitted email
  - Suspicious user agents: one request per hour, normal agents unaffected
  - Requests whose body does not parse are counted before the 400
"""

from __future__ import annotations

from fastapi.testclient import TestClient

from api.services import Services
from conftest import ADMIN_EMAIL, USER_EMAIL, csrf_token


def _post(client: TestClient, path: str, payload: dict):
    return client.post(path, json=payload, headers={"X-CSRF-Token": csrf_token(client)})


def test_accepted_request_carries_rate_headers(limited_client: tuple[TestClient, Services]) -> None:
    client, _services = limited_client
    resp = client.get("/api/v1/auth/csrf")
    assert resp.status_code == 200
    assert resp.headers["X-RateLimit-Limit"] == "20"
    assert int(resp.headers["X-RateLimit-Remaining"]) < 20
    assert int(resp.headers["X-RateLimit-Reset"]) > 0


def test_login_burst(limited_client: tuple[TestClient, Services]) -> None:
    """Three attempts a minute per fingerprint; the fourth is rejected before CSRF or credentials."""
    client, _services = limited_client
    payload = {"email": ADMIN_EMAIL, "password": "Wr0ng!password"}
    for _ in range(3):
        assert _post(client, "/api/v1/auth/login", payload).status_code == 401

    resp = client.post("/api/v1/auth/login", json=payload)
    assert resp.status_code == 429
    assert 0 < int(resp.headers["Retry-After"]) <= 60
    assert resp.headers["X-RateLimit-Remaining"] == "0"
    error = resp.json()["error"]
    assert error["code"] == "RATE_LIMIT_EXCEEDED"
    assert error["data"]["retry_after"] == int(resp.headers["Retry-After"])


def test_registration_burst(limited_client: tuple[TestClient, Services]) -> None:
    client, _services = limited_client
    first = _post(client, "/api/v1/auth/register", {"email": "first@example.com", "password": "F1rst!member"})
    assert first.status_code == 201
    second = _post(client, "/api/v1/auth/register", {"email": "second@example.com", "password": "S3cond!member"})
    assert second.status_code == 429
    assert second.json()["error"]["code"] == "RATE_LIMIT_EXCEEDED"


def test_password_reset_is_keyed_by_email(limited_client: tuple[TestClient, Services]) -> None:
    client, _services = limited_client
    for _ in range(3):
        assert _post(client, "/api/v1/auth/password-reset", {"email": USER_EMAIL}).status_code == 200
    assert _post(client, "/api/v1/auth/password-reset", {"email": USER_EMAIL}).status_code == 429
    # Another mailbox from the same address still has its own quota.
    assert _post(client, "/api/v1/auth/password-reset", {"email": "other@example.com"}).status_code == 200


def test_suspicious_user_agent(limited_client: tuple[TestClient, Services]) -> None:
    client, _services = limited_client
    scanner = {"user-agent": "sqlmap/1.7.2#stable (https://sqlmap.org)"}
    assert client.get("/api/v1/auth/csrf", headers=scanner).status_code == 200
    blocked = client.get("/api/v1/auth/csrf", headers=scanner)
    assert blocked.status_code == 429
    assert int(blocked.headers["Retry-After"]) > 3000

    assert client.get("/api/v1/auth/csrf").status_code == 200


def test_health_is_never_limited(limited_client: tuple[TestClient, Services]) -> None:
    client, _services = limited_client
    for _ in range(25):
        assert client.get("/api/v1/health").status_code == 200


def test_malformed_body_still_counts(limited_client: tuple[TestClient, Services]) -> None:
    """A body that does not parse is rejected with 400 but still uses up the login quota."""
    client, _services = limited_client
    headers = {"user-agent": "Mozilla/5.0 (X11; Linux x86_64) MalformedBody/1.0", "Content-Type": "application/json"}
    for _ in range(3):
        resp = client.post("/api/v1/auth/login", content="{not json", headers=headers)
        assert resp.status_code == 400
        assert "body" in resp.json()["error"]["data"]["validation_errors"]

    resp = client.post("/api/v1/auth/login", content="{not json", headers=headers)
    assert resp.status_code == 429
    assert resp.json()["error"]["code"] == "RATE_LIMIT_EXCEEDED"
