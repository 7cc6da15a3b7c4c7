"""
tests/test_auth.py -- Password login, bootstrap, and session token tests.

Covers:
  - Login success shape, case-insensitive usernames, last_login_at stamping
  - Unknown user and wrong password are indistinguishable (same 401 body)
  - Timing equalization: unknown usernames still run a bcrypt check
  - Disabled accounts: 403 only once the password verified
  - Environment-credential bootstrap on first login
  - POST /auth/bootstrap: 201 once, 403 afterwards
  - Token re-validation against live user state on every request
  - Missing signing secret surfaces as 500, not 401
  - Session length taken from settings and clamped
  - [H2] credential endpoints answer 429 once the per-IP budget is spent
"""

from __future__ import annotations

from unittest.mock import patch

import pytest
from jose import jwt

from api.limiter import limiter
from auth.tokens import clamp_session_hours
from conftest import ADMIN_PASSWORD, auth_headers, make_user
from core.config import get_settings

# ---------------------------------------------------------------------------
# Login
# ---------------------------------------------------------------------------


class TestLogin:
    def test_login_returns_token_and_public_user(self, client, admin):
        resp = client.post("/api/auth/login", json={"username": "alice", "password": ADMIN_PASSWORD})
        assert resp.status_code == 200, resp.text
        body = resp.json()
        assert body["token"]
        assert body["user"]["username"] == "alice"
        assert body["user"]["role"] == "admin"
        assert "passwordHash" not in body["user"]
        assert "password_hash" not in body["user"]
        assert resp.headers["Cache-Control"] == "no-store"

    def test_login_is_case_insensitive_on_username(self, client, admin):
        resp = client.post("/api/auth/login", json={"username": "  ALICE ", "password": ADMIN_PASSWORD})
        assert resp.status_code == 200

    def test_legacy_login_path(self, client, admin):
        resp = client.post("/api/login", json={"username": "alice", "password": ADMIN_PASSWORD})
        assert resp.status_code == 200
        assert resp.json()["user"]["id"] == admin.id

    def test_login_stamps_last_login(self, client, admin, user_store):
        assert user_store.get_by_id(admin.id).last_login_at is None
        client.post("/api/auth/login", json={"username": "alice", "password": ADMIN_PASSWORD})
        assert user_store.get_by_id(admin.id).last_login_at is not None

    def test_wrong_password_and_unknown_user_look_identical(self, client, admin):
        wrong = client.post("/api/auth/login", json={"username": "alice", "password": "not-the-password"})
        unknown = client.post("/api/auth/login", json={"username": "nobody", "password": "not-the-password"})
        assert wrong.status_code == unknown.status_code == 401
        assert wrong.json() == unknown.json()
        assert wrong.json()["error"]["message"] == "Invalid credentials"

    def test_unknown_user_runs_dummy_bcrypt_check(self, client, admin):
        with patch("auth.service.burn_password_check") as burn:
            client.post("/api/auth/login", json={"username": "ghost", "password": "whatever-123"})
        burn.assert_called_once_with("whatever-123")

    def test_missing_fields_is_400(self, client):
        resp = client.post("/api/auth/login", json={"username": "alice"})
        assert resp.status_code == 400
        assert resp.json()["error"]["message"] == "Missing credentials"

    def test_disabled_account_with_correct_password_is_403(self, client, user_store):
        make_user(user_store, "carol", "carol-password-1", is_active=False)
        resp = client.post("/api/auth/login", json={"username": "carol", "password": "carol-password-1"})
        assert resp.status_code == 403
        assert resp.json()["error"]["code"] == "account_disabled"

    def test_disabled_account_with_wrong_password_is_plain_401(self, client, user_store):
        make_user(user_store, "carol", "carol-password-1", is_active=False)
        resp = client.post("/api/auth/login", json={"username": "carol", "password": "wrong-password"})
        assert resp.status_code == 401, "a disabled account must not be revealed without the password"

    def test_session_length_comes_from_settings(self, client, admin):
        client.app.state.settings_store.update({"sessionDurationHours": 2}, role="admin")
        token = client.post(
            "/api/auth/login", json={"username": "alice", "password": ADMIN_PASSWORD}
        ).json()["token"]
        claims = jwt.get_unverified_claims(token)
        assert claims["exp"] - claims["iat"] == 2 * 3600
        assert claims["sub"] == admin.id
        assert claims["role"] == "admin"
        assert claims["username"] == "alice"


# ---------------------------------------------------------------------------
# Environment-credential bootstrap
# ---------------------------------------------------------------------------


class TestEnvBootstrapLogin:
    """With no users, ADMIN_USERNAME / ADMIN_PASSWORD logs in by creating that admin."""

    def test_first_login_with_env_credentials_creates_admin(self, client, user_store):
        assert not user_store.has_users()
        resp = client.post("/api/auth/login", json={"username": "OWNER", "password": "owner-password-1"})
        assert resp.status_code == 200, resp.text
        user = resp.json()["user"]
        assert user["username"] == "owner"
        assert user["role"] == "admin"
        assert user["displayName"] == "Owner"
        assert user["lastLoginAt"] is not None
        assert len(user_store.list_users()) == 1

    def test_wrong_env_password_creates_nothing(self, client, user_store):
        resp = client.post("/api/auth/login", json={"username": "owner", "password": "guess-guess"})
        assert resp.status_code == 401
        assert not user_store.has_users()

    def test_env_credentials_ignored_once_users_exist(self, client, admin, user_store):
        resp = client.post("/api/auth/login", json={"username": "owner", "password": "owner-password-1"})
        assert resp.status_code == 401
        assert user_store.get_by_username("owner") is None


# ---------------------------------------------------------------------------
# Bootstrap endpoint
# ---------------------------------------------------------------------------


class TestBootstrapEndpoint:
    def test_status_reports_no_users(self, client):
        assert client.get("/api/auth/bootstrap-status").json() == {"hasUsers": False}

    def test_bootstrap_creates_admin_then_locks(self, client):
        resp = client.post(
            "/api/auth/bootstrap",
            json={"username": "Dana", "password": "dana-password-1", "displayName": "  dana "},
        )
        assert resp.status_code == 201, resp.text
        user = resp.json()["user"]
        assert user["username"] == "dana"
        assert user["displayName"] == "Dana"
        assert user["role"] == "admin"
        assert client.get("/api/auth/bootstrap-status").json() == {"hasUsers": True}

        again = client.post("/api/auth/bootstrap", json={"username": "eve", "password": "eve-password-1"})
        assert again.status_code == 403

    def test_bootstrap_defaults_to_env_credentials(self, client):
        resp = client.post("/api/auth/bootstrap", json={})
        assert resp.status_code == 201
        assert resp.json()["user"]["username"] == "owner"

    def test_bootstrap_rejects_short_password(self, client):
        resp = client.post("/api/auth/bootstrap", json={"username": "dana", "password": "short"})
        assert resp.status_code == 400
        assert resp.json()["error"]["message"] == "Password must be at least 8 characters"

    def test_bootstrap_forbidden_when_users_exist(self, client, admin):
        resp = client.post("/api/auth/bootstrap", json={"username": "eve", "password": "eve-password-1"})
        assert resp.status_code == 403


# ---------------------------------------------------------------------------
# Session tokens
# ---------------------------------------------------------------------------


class TestSessionTokens:
    def test_no_header_is_401(self, client):
        assert client.get("/api/users/me").status_code == 401

    def test_garbage_token_is_401(self, client):
        resp = client.get("/api/users/me", headers={"Authorization": "Bearer not.a.jwt"})
        assert resp.status_code == 401

    def test_disabled_user_rejected_with_valid_token(self, client, member, member_headers, user_store):
        assert client.get("/api/users/me", headers=member_headers).status_code == 200
        user_store.update_user(member.id, is_active=False)
        resp = client.get("/api/users/me", headers=member_headers)
        assert resp.status_code == 403, "token must be re-checked against the live account"
        assert resp.json()["error"]["code"] == "account_disabled"

    def test_deleted_user_token_is_401(self, client, engine, member, member_headers):
        from auth.store import users_table

        with engine.begin() as conn:
            conn.execute(users_table.delete().where(users_table.c.id == member.id))
        assert client.get("/api/users/me", headers=member_headers).status_code == 401

    def test_non_admin_on_admin_route_is_403(self, client, member_headers):
        assert client.get("/api/users", headers=member_headers).status_code == 403

    def test_missing_secret_is_server_error(self, client, admin, monkeypatch):
        headers = auth_headers(admin)
        monkeypatch.setattr(get_settings(), "jwt_secret", "")
        resp = client.get("/api/users/me", headers=headers)
        assert resp.status_code == 500
        assert resp.json()["error"]["code"] == "misconfigured"

        login = client.post("/api/auth/login", json={"username": "alice", "password": ADMIN_PASSWORD})
        assert login.status_code == 500


class TestClampSessionHours:
    def test_bounds_and_rounding(self):
        assert clamp_session_hours(0) == 1
        assert clamp_session_hours(-5) == 1
        assert clamp_session_hours(30) == 24
        assert clamp_session_hours(5.6) == 6
        assert clamp_session_hours(12) == 12

    def test_non_numeric_falls_back_to_default(self):
        assert clamp_session_hours("8") == 12
        assert clamp_session_hours(None) == 12
        assert clamp_session_hours(True) == 12
        assert clamp_session_hours(float("nan")) == 12


# ---------------------------------------------------------------------------
# Rate limiting [H2]
# ---------------------------------------------------------------------------


@pytest.fixture
def rate_limited(monkeypatch):
    """Turn the shared limiter on (the suite runs with RATE_LIMIT_ENABLED=false)."""
    monkeypatch.setattr(limiter, "enabled", True)
    limiter.reset()
    yield
    limiter.reset()


class TestCredentialRateLimit:
    def test_login_is_limited_per_ip(self, client, admin, rate_limited):
        statuses = [
            client.post("/api/auth/login", json={"username": "alice", "password": "wrong-password"}).status_code
            for _ in range(11)
        ]
        assert statuses[:10] == [401] * 10
        assert statuses[10] == 429

        resp = client.post("/api/auth/login", json={"username": "alice", "password": ADMIN_PASSWORD})
        assert resp.status_code == 429, "a correct password must not bypass an exhausted budget"
        assert resp.json()["error"]["code"] == "rate_limited"
        assert int(resp.headers["Retry-After"]) > 0

    def test_legacy_login_path_is_limited(self, client, admin, rate_limited):
        statuses = [
            client.post("/api/login", json={"username": "alice", "password": "wrong-password"}).status_code
            for _ in range(11)
        ]
        assert statuses[-1] == 429

    def test_reset_endpoints_are_limited(self, client, rate_limited):
        statuses = [
            client.post("/api/auth/reset", json={"token": "f" * 64, "newPassword": "brand-new-pass"}).status_code
            for _ in range(11)
        ]
        assert statuses[:10] == [400] * 10
        assert statuses[10] == 429

    def test_unlimited_when_disabled(self, client, admin):
        statuses = {
            client.post("/api/auth/login", json={"username": "alice", "password": "wrong-password"}).status_code
            for _ in range(12)
        }
        assert statuses == {401}
