"""Tests for the HTTP surface: login start, OAuth callback, stats and audit views."""
from urllib.parse import parse_qs, urlparse

import pytest
from fastapi.testclient import TestClient

from drivebot_auth.errors import InvalidGrant, TransientProviderError
from drivebot_auth.main import create_app

ADMIN_TOKEN = "test-admin-token"
ADMIN_HEADERS = {"X-Admin-Token": ADMIN_TOKEN}


@pytest.fixture
def client(services):
    return TestClient(create_app(services, admin_token=ADMIN_TOKEN))


def _start(client, services, subject="u1"):
    token = services.csrf.issue(subject)
    return client.post(f"/auth/start/{subject}", headers={"X-CSRF-Token": token})


def _state_from(response):
    return parse_qs(urlparse(response.json()["auth_url"]).query)["state"][0]


def test_health(client):
    r = client.get("/health")
    assert r.status_code == 200
    assert r.json().get("service") == "drivebot_auth"


def test_start_login_returns_auth_url(client, services):
    r = _start(client, services)
    assert r.status_code == 200
    body = r.json()
    assert body["expires_in"] == 900
    assert _state_from(r).startswith("u1:")


def test_start_login_requires_csrf_token(client):
    r = client.post("/auth/start/u1")
    assert r.status_code == 403
    assert r.json()["error"] == "csrf_validation_failed"


def test_start_login_rejects_token_of_other_user(client, services):
    token = services.csrf.issue("u2")
    r = client.post("/auth/start/u1", headers={"X-CSRF-Token": token})
    assert r.status_code == 403


def test_start_login_rate_limited(client, services):
    for _ in range(5):
        assert _start(client, services).status_code == 200
    r = _start(client, services)
    assert r.status_code == 429
    assert r.json()["error"] == "rate_limit_exceeded"
    assert int(r.headers["Retry-After"]) == 900


def test_start_login_invalid_subject(client, services):
    r = _start(client, services, subject="a:b")
    assert r.status_code == 400


def test_full_login_flow(client, services, cipher):
    state = _state_from(_start(client, services))
    r = client.get("/oauth/callback", params={"code": "auth-code", "state": state})
    assert r.status_code == 200
    assert "Connected to Google Drive" in r.text
    assert "user@example.com" in r.text
    assert "access-1" not in r.text

    stored = services.credentials.get("u1")
    assert stored.is_active is True
    assert cipher.decrypt(stored.encrypted_refresh_token) == "refresh-1"


def test_callback_missing_state(client):
    r = client.get("/oauth/callback", params={"code": "auth-code"})
    assert r.status_code == 400
    assert "state" in r.text.lower()


def test_callback_replay_fails(client, services):
    state = _state_from(_start(client, services))
    assert client.get("/oauth/callback", params={"code": "c", "state": state}).status_code == 200
    r = client.get("/oauth/callback", params={"code": "c", "state": state})
    assert r.status_code == 400
    assert "expired" in r.text.lower()


def test_forged_state_does_not_lock_out_user(client, services):
    state = _state_from(_start(client, services))
    for _ in range(6):
        r = client.get("/oauth/callback", params={"code": "c", "state": "u1:" + "0" * 64})
        assert r.status_code == 400
    assert services.login_guard.check("u1").remaining_attempts == 5
    assert len([e for e in services.events.events() if e.type == "invalid_state"]) == 6

    r = client.get("/oauth/callback", params={"code": "auth-code", "state": state})
    assert r.status_code == 200
    assert "Connected to Google Drive" in r.text


def test_failed_exchange_with_genuine_state_counts_as_failed_login(client, services, provider):
    provider.exchange_error = InvalidGrant("bad code")
    state = _state_from(_start(client, services))
    r = client.get("/oauth/callback", params={"code": "c", "state": state})
    assert r.status_code == 400
    assert services.login_guard.check("u1").remaining_attempts == 4


def test_locked_user_genuine_callback_refused(client, services):
    for _ in range(5):
        services.login_guard.record_failure("u1")
    state = _state_from(_start(client, services))
    r = client.get("/oauth/callback", params={"code": "c", "state": state})
    assert r.status_code == 429
    assert "Too many failed login attempts" in r.text


def test_callback_provider_error(client, services):
    state = _state_from(_start(client, services))
    r = client.get("/oauth/callback", params={"error": "access_denied", "state": state})
    assert r.status_code == 400
    assert "denied" in r.text.lower()
    assert services.flow.pending.peek("u1") is None


def test_forged_provider_error_keeps_pending_login(client, services):
    state = _state_from(_start(client, services))
    r = client.get("/oauth/callback", params={"error": "access_denied", "state": "u1:forged"})
    assert r.status_code == 400

    r = client.get("/oauth/callback", params={"code": "auth-code", "state": state})
    assert r.status_code == 200
    assert "Connected to Google Drive" in r.text


def test_callback_provider_unavailable_not_counted(client, services, provider):
    provider.exchange_error = TransientProviderError("timeout")
    state = _state_from(_start(client, services))
    r = client.get("/oauth/callback", params={"code": "c", "state": state})
    assert r.status_code == 503
    assert services.login_guard.check("u1").remaining_attempts == 5


def test_callback_escapes_html(client, services, provider):
    provider.identity.email = "<script>alert(1)</script>@example.com"
    state = _state_from(_start(client, services))
    r = client.get("/oauth/callback", params={"code": "c", "state": state})
    assert r.status_code == 200
    assert "<script>" not in r.text


def test_security_stats(client, services):
    client.post("/auth/start/u1")
    r = client.get("/security/stats", headers=ADMIN_HEADERS)
    assert r.status_code == 200
    body = r.json()
    assert body["events_by_type"]["csrf_violation"] == 1
    assert body["locked_accounts"] == 0
    assert body["recent_events"][0]["subject"] == "u1"


@pytest.mark.parametrize("path", ["/security/stats", "/audit"])
def test_operational_views_require_admin_token(client, path):
    assert client.get(path).status_code == 403
    assert client.get(path, headers={"X-Admin-Token": "wrong"}).status_code == 403
    assert client.get(path, headers=ADMIN_HEADERS).status_code == 200


def test_operational_views_disabled_without_configured_token(services):
    client = TestClient(create_app(services, admin_token=""))
    assert client.get("/audit", headers={"X-Admin-Token": ""}).status_code == 403
    assert client.get("/security/stats", headers=ADMIN_HEADERS).status_code == 403


def test_audit_lists_login(client, services):
    state = _state_from(_start(client, services))
    client.get("/oauth/callback", params={"code": "c", "state": state})
    r = client.get("/audit", params={"subject_id": "u1"}, headers=ADMIN_HEADERS)
    assert r.status_code == 200
    rows = r.json()
    assert rows[0]["event_type"] == "oauth_login"
    assert rows[0]["outcome"] == "success"
    assert rows[0]["provider_account"] == "user@example.com"
