"""
tests/test_oidc.py -- OpenID Connect login / link flows.

Network-facing pieces are replaced at the bridge seam: get_provider() returns
fixed metadata and _exchange_code() returns a subject, so these tests drive
the real routes, transaction store and identity reconciliation without an
identity provider. id_token verification is exercised separately against a
locally generated RSA key.

Covers:
  - Transaction store: single-use pop, TTL expiry, sweep on put
  - Discovery cache keyed by (issuer, client id, secret presence, redirect URI)
  - id_token checks: issuer, audience, nonce
  - start: 400 when unconfigured, PKCE S256 authorize URL otherwise
  - callback outcomes: invalid / expired (provider never contacted), failed,
    unlinked, linked, linked_conflict, inactive, token on success
  - Replay of a consumed state is "invalid"
  - Discovery failure: start redirects with oidc=failed, link answers 502
"""

from __future__ import annotations

import asyncio
import time
from unittest.mock import AsyncMock, MagicMock, patch
from urllib.parse import parse_qs, urlparse

import httpx
import pytest
from authlib.integrations.base_client import OAuthError
from authlib.jose import JsonWebKey
from authlib.jose import jwt as jose_jwt
from authlib.jose.errors import JoseError

from auth.oidc import (
    PURPOSE_LINK,
    PURPOSE_LOGIN,
    CallbackOutcome,
    CallbackResult,
    InMemoryOidcStateStore,
    OidcBridge,
    OidcConfig,
    OidcTransaction,
    ProviderMetadata,
)
from core.errors import ProviderError

ISSUER = "https://idp.example"
CLIENT_ID = "app-budget"

PROVIDER = ProviderMetadata(
    issuer=ISSUER,
    authorization_endpoint=f"{ISSUER}/authorize",
    token_endpoint=f"{ISSUER}/token",
    jwks_uri=f"{ISSUER}/jwks",
)

CONFIG = OidcConfig(
    enabled=True,
    issuer=ISSUER,
    client_id=CLIENT_ID,
    client_secret="client-secret",
    redirect_uri="http://api.test/api/auth/oidc/callback",
    provider_name="Authentik",
)


class FakeClock:
    def __init__(self, start: float = 1000.0) -> None:
        self.value = start

    def __call__(self) -> float:
        return self.value


def _txn(clock: FakeClock, purpose: str = PURPOSE_LOGIN) -> OidcTransaction:
    return OidcTransaction(purpose=purpose, code_verifier="v" * 64, nonce="n", created_at=clock())


def _query(url: str) -> dict[str, str]:
    return {k: v[0] for k, v in parse_qs(urlparse(url).query).items()}


# ---------------------------------------------------------------------------
# Transaction store
# ---------------------------------------------------------------------------


class TestStateStore:
    def test_pop_is_single_use(self):
        clock = FakeClock()
        store = InMemoryOidcStateStore(ttl_seconds=600, clock=clock)
        store.put("s1", _txn(clock))
        assert store.pop("s1") is not None
        assert store.pop("s1") is None

    def test_expiry_uses_ttl(self):
        clock = FakeClock()
        store = InMemoryOidcStateStore(ttl_seconds=600, clock=clock)
        txn = _txn(clock)
        clock.value += 600
        assert not store.is_expired(txn)
        clock.value += 1
        assert store.is_expired(txn)

    def test_put_sweeps_expired_entries(self):
        clock = FakeClock()
        store = InMemoryOidcStateStore(ttl_seconds=60, clock=clock)
        store.put("old", _txn(clock))
        clock.value += 120
        store.put("new", _txn(clock))
        assert len(store) == 1
        assert store.pop("old") is None
        assert store.pop("new") is not None

    def test_sweep_reports_removed(self):
        clock = FakeClock()
        store = InMemoryOidcStateStore(ttl_seconds=60, clock=clock)
        store.put("a", _txn(clock))
        store.put("b", _txn(clock))
        clock.value += 61
        assert store.sweep() == 2
        assert len(store) == 0


class TestConfigAndResult:
    def test_configured_requires_core_fields(self):
        assert CONFIG.configured
        assert OidcConfig(enabled=True, issuer=ISSUER, client_id=CLIENT_ID, redirect_uri="x").configured
        assert not OidcConfig(enabled=False, issuer=ISSUER, client_id=CLIENT_ID, redirect_uri="x").configured
        assert not OidcConfig(enabled=True, issuer=ISSUER, redirect_uri="x").configured
        assert not OidcConfig(enabled=True, issuer=ISSUER, client_id=CLIENT_ID).configured

    def test_query_params(self):
        assert CallbackResult(token="abc").query_params() == {"token": "abc"}
        assert CallbackResult(CallbackOutcome.LINKED).query_params() == {"oidc": "linked"}
        assert CallbackResult().query_params() == {"oidc": "failed"}


# ---------------------------------------------------------------------------
# Discovery cache
# ---------------------------------------------------------------------------


class TestProviderCache:
    def _bridge(self) -> OidcBridge:
        return OidcBridge(MagicMock(), InMemoryOidcStateStore())

    def test_same_config_discovers_once(self):
        bridge = self._bridge()
        with patch.object(OidcBridge, "_discover", new=AsyncMock(return_value=PROVIDER)) as discover:
            asyncio.run(bridge.get_provider(CONFIG))
            asyncio.run(bridge.get_provider(CONFIG))
            # Rotating the secret keeps it present: same key.
            asyncio.run(bridge.get_provider(OidcConfig(**{**CONFIG.__dict__, "client_secret": "rotated"})))
        assert discover.await_count == 1

    def test_key_change_rediscovers(self):
        bridge = self._bridge()
        with patch.object(OidcBridge, "_discover", new=AsyncMock(return_value=PROVIDER)) as discover:
            asyncio.run(bridge.get_provider(CONFIG))
            public_client = OidcConfig(**{**CONFIG.__dict__, "client_secret": ""})
            asyncio.run(bridge.get_provider(public_client))
            # A trailing slash on the issuer is the same provider.
            asyncio.run(bridge.get_provider(OidcConfig(**{**public_client.__dict__, "issuer": ISSUER + "/"})))
        assert discover.await_count == 2

    def test_discovery_failure_is_provider_error_and_not_cached(self):
        bridge = self._bridge()
        failing = AsyncMock(side_effect=httpx.ConnectError("unreachable"))
        with patch.object(OidcBridge, "_discover", new=failing):
            with pytest.raises(ProviderError):
                asyncio.run(bridge.get_provider(CONFIG))
        with patch.object(OidcBridge, "_discover", new=AsyncMock(return_value=PROVIDER)) as discover:
            asyncio.run(bridge.get_provider(CONFIG))
        assert discover.await_count == 1


# ---------------------------------------------------------------------------
# id_token verification
# ---------------------------------------------------------------------------


@pytest.fixture(scope="module")
def signing_key():
    return JsonWebKey.generate_key("RSA", 2048, is_private=True, options={"kid": "k1"})


@pytest.fixture
def provider_with_jwks(signing_key) -> ProviderMetadata:
    public = signing_key.as_dict(is_private=False)
    public["kid"] = "k1"
    return ProviderMetadata(**{**PROVIDER.__dict__, "jwks": {"keys": [public]}})


def _id_token(signing_key, **overrides) -> str:
    now = int(time.time())
    claims = {"iss": ISSUER, "aud": CLIENT_ID, "sub": "subject-1", "iat": now, "exp": now + 300, "nonce": "n-1"}
    claims.update(overrides)
    token = jose_jwt.encode({"alg": "RS256", "kid": "k1"}, claims, signing_key)
    return token.decode() if isinstance(token, bytes) else token


class TestIdTokenVerification:
    def _verify(self, provider, id_token, nonce="n-1"):
        bridge = OidcBridge(MagicMock(), InMemoryOidcStateStore())
        return bridge._verify_id_token(CONFIG, provider, id_token, nonce, None)

    def test_valid_token(self, signing_key, provider_with_jwks):
        claims = self._verify(provider_with_jwks, _id_token(signing_key))
        assert claims["sub"] == "subject-1"

    def test_wrong_nonce(self, signing_key, provider_with_jwks):
        with pytest.raises(JoseError):
            self._verify(provider_with_jwks, _id_token(signing_key), nonce="other")

    def test_wrong_audience(self, signing_key, provider_with_jwks):
        with pytest.raises(JoseError):
            self._verify(provider_with_jwks, _id_token(signing_key, aud="someone-else"))

    def test_wrong_issuer(self, signing_key, provider_with_jwks):
        with pytest.raises(JoseError):
            self._verify(provider_with_jwks, _id_token(signing_key, iss="https://evil.example"))

    def test_expired(self, signing_key, provider_with_jwks):
        past = int(time.time()) - 3600
        with pytest.raises(JoseError):
            self._verify(provider_with_jwks, _id_token(signing_key, iat=past - 300, exp=past))


# ---------------------------------------------------------------------------
# HTTP flows
# ---------------------------------------------------------------------------


@pytest.fixture
def oidc_enabled(client):
    client.app.state.settings_store.update(
        {
            "oidcEnabled": True,
            "oidcProviderName": CONFIG.provider_name,
            "oidcIssuer": CONFIG.issuer,
            "oidcClientId": CONFIG.client_id,
            "oidcClientSecret": CONFIG.client_secret,
            "oidcRedirectUri": CONFIG.redirect_uri,
        },
        role="admin",
    )
    return client


@pytest.fixture
def provider():
    with patch.object(OidcBridge, "get_provider", new=AsyncMock(return_value=PROVIDER)):
        yield PROVIDER


@pytest.fixture
def exchange():
    mock = AsyncMock(return_value="subject-1")
    with patch.object(OidcBridge, "_exchange_code", new=mock):
        yield mock


def _start_login(client) -> str:
    resp = client.get("/api/auth/oidc/start")
    assert resp.status_code == 302, resp.text
    return _query(resp.headers["location"])["state"]


def _start_link(client, headers) -> str:
    resp = client.post("/api/auth/oidc/link", headers=headers)
    assert resp.status_code == 200, resp.text
    return _query(resp.json()["url"])["state"]


def _callback(client, **params) -> dict[str, str]:
    resp = client.get("/api/auth/oidc/callback", params=params)
    assert resp.status_code == 302
    location = resp.headers["location"]
    assert location.startswith("http://frontend.test/?")
    return _query(location)


class TestOidcConfigEndpoint:
    def test_disabled_by_default(self, client):
        assert client.get("/api/auth/oidc/config").json() == {"enabled": False, "providerName": "SSO"}

    def test_enabled_when_configured(self, oidc_enabled):
        body = oidc_enabled.get("/api/auth/oidc/config").json()
        assert body == {"enabled": True, "providerName": "Authentik"}

    def test_config_never_leaks_secret(self, oidc_enabled):
        assert "client-secret" not in oidc_enabled.get("/api/auth/oidc/config").text


class TestOidcStart:
    def test_unconfigured_start_is_400(self, client):
        resp = client.get("/api/auth/oidc/start")
        assert resp.status_code == 400
        assert resp.json()["error"]["code"] == "misconfigured"

    def test_unconfigured_link_is_400(self, client, member_headers):
        assert client.post("/api/auth/oidc/link", headers=member_headers).status_code == 400

    def test_start_redirects_with_pkce(self, oidc_enabled, provider):
        resp = oidc_enabled.get("/api/auth/oidc/start")
        assert resp.status_code == 302
        location = resp.headers["location"]
        assert location.startswith(PROVIDER.authorization_endpoint)
        query = _query(location)
        assert query["client_id"] == CLIENT_ID
        assert query["response_type"] == "code"
        assert query["code_challenge_method"] == "S256"
        assert query["code_challenge"]
        assert query["nonce"]
        assert query["redirect_uri"] == CONFIG.redirect_uri
        assert "openid" in query["scope"].split()
        assert len(oidc_enabled.app.state.oidc_states) == 1

    def test_link_requires_auth(self, oidc_enabled, provider):
        assert oidc_enabled.post("/api/auth/oidc/link").status_code == 401

    def test_discovery_failure_on_start_redirects_failed(self, oidc_enabled):
        with patch.object(OidcBridge, "get_provider", new=AsyncMock(side_effect=ProviderError())):
            resp = oidc_enabled.get("/api/auth/oidc/start")
        assert resp.status_code == 302
        assert _query(resp.headers["location"]) == {"oidc": "failed"}

    def test_discovery_failure_on_link_is_502(self, oidc_enabled, member_headers):
        with patch.object(OidcBridge, "get_provider", new=AsyncMock(side_effect=ProviderError())):
            resp = oidc_enabled.post("/api/auth/oidc/link", headers=member_headers)
        assert resp.status_code == 502


class TestOidcCallback:
    def test_unknown_state_is_invalid_without_exchange(self, oidc_enabled, provider, exchange):
        assert _callback(oidc_enabled, state="made-up", code="c") == {"oidc": "invalid"}
        exchange.assert_not_awaited()

    def test_missing_state_is_invalid(self, oidc_enabled, provider, exchange):
        assert _callback(oidc_enabled, code="c") == {"oidc": "invalid"}

    def test_expired_state_without_exchange(self, oidc_enabled, provider, exchange):
        states = oidc_enabled.app.state.oidc_states
        states.put(
            "stale",
            OidcTransaction(
                purpose=PURPOSE_LOGIN,
                code_verifier="v" * 64,
                nonce="n",
                created_at=states.now() - states.ttl_seconds - 1,
            ),
        )
        assert _callback(oidc_enabled, state="stale", code="c") == {"oidc": "expired"}
        exchange.assert_not_awaited()

    def test_provider_error_param_is_failed(self, oidc_enabled, provider, exchange):
        state = _start_login(oidc_enabled)
        assert _callback(oidc_enabled, state=state, error="access_denied") == {"oidc": "failed"}
        exchange.assert_not_awaited()

    def test_exchange_failure_is_failed(self, oidc_enabled, provider):
        failing = AsyncMock(side_effect=OAuthError(error="invalid_grant"))
        with patch.object(OidcBridge, "_exchange_code", new=failing):
            state = _start_login(oidc_enabled)
            assert _callback(oidc_enabled, state=state, code="c") == {"oidc": "failed"}

    def test_unlinked_identity(self, oidc_enabled, provider, exchange, member):
        state = _start_login(oidc_enabled)
        assert _callback(oidc_enabled, state=state, code="c") == {"oidc": "unlinked"}

    def test_replayed_state_is_invalid(self, oidc_enabled, provider, exchange, member):
        state = _start_login(oidc_enabled)
        _callback(oidc_enabled, state=state, code="c")
        assert _callback(oidc_enabled, state=state, code="c") == {"oidc": "invalid"}
        assert exchange.await_count == 1

    def test_link_then_login(self, oidc_enabled, provider, exchange, member, member_headers, user_store):
        state = _start_link(oidc_enabled, member_headers)
        assert _callback(oidc_enabled, state=state, code="c") == {"oidc": "linked"}
        identity = user_store.get_identity(ISSUER, "subject-1")
        assert identity.user_id == member.id
        assert identity.provider == "oidc"

        state = _start_login(oidc_enabled)
        result = _callback(oidc_enabled, state=state, code="c")
        assert set(result) == {"token"}

        me = oidc_enabled.get("/api/users/me", headers={"Authorization": f"Bearer {result['token']}"})
        assert me.status_code == 200
        assert me.json()["user"]["id"] == member.id
        assert user_store.get_by_id(member.id).last_login_at is not None

    def test_relinking_same_identity_is_linked(self, oidc_enabled, provider, exchange, member_headers):
        _callback(oidc_enabled, state=_start_link(oidc_enabled, member_headers), code="c")
        again = _callback(oidc_enabled, state=_start_link(oidc_enabled, member_headers), code="c")
        assert again == {"oidc": "linked"}

    def test_identity_bound_to_other_user_conflicts(
        self, oidc_enabled, provider, exchange, admin_headers, member_headers, admin, user_store
    ):
        _callback(oidc_enabled, state=_start_link(oidc_enabled, admin_headers), code="c")
        result = _callback(oidc_enabled, state=_start_link(oidc_enabled, member_headers), code="c")
        assert result == {"oidc": "linked_conflict"}
        assert user_store.get_identity(ISSUER, "subject-1").user_id == admin.id

    def test_second_identity_same_issuer_conflicts(self, oidc_enabled, provider, member_headers, member, user_store):
        with patch.object(OidcBridge, "_exchange_code", new=AsyncMock(return_value="subject-1")):
            _callback(oidc_enabled, state=_start_link(oidc_enabled, member_headers), code="c")
        with patch.object(OidcBridge, "_exchange_code", new=AsyncMock(return_value="subject-2")):
            result = _callback(oidc_enabled, state=_start_link(oidc_enabled, member_headers), code="c")
        assert result == {"oidc": "linked_conflict"}
        assert [i.subject for i in user_store.list_identities(member.id)] == ["subject-1"]

    def test_inactive_user_login(self, oidc_enabled, provider, exchange, member, member_headers, user_store):
        _callback(oidc_enabled, state=_start_link(oidc_enabled, member_headers), code="c")
        user_store.update_user(member.id, is_active=False)
        state = _start_login(oidc_enabled)
        assert _callback(oidc_enabled, state=state, code="c") == {"oidc": "inactive"}

    def test_disabled_between_start_and_callback_is_failed(self, oidc_enabled, provider, exchange):
        state = _start_login(oidc_enabled)
        oidc_enabled.app.state.settings_store.update({"oidcEnabled": False}, role="admin")
        assert _callback(oidc_enabled, state=state, code="c") == {"oidc": "failed"}

    def test_callback_redirect_is_not_cached(self, oidc_enabled, provider, exchange):
        resp = oidc_enabled.get("/api/auth/oidc/callback", params={"state": "x"})
        assert resp.headers["Cache-Control"] == "no-store"

    def test_link_transaction_carries_user(self, oidc_enabled, provider, member, member_headers):
        state = _start_link(oidc_enabled, member_headers)
        txn = oidc_enabled.app.state.oidc_states.pop(state)
        assert txn.purpose == PURPOSE_LINK
        assert txn.user_id == member.id
