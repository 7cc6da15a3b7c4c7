"""
auth/oidc.py -- External identity bridge (OpenID Connect, authorization code + PKCE).

Flow per attempt:
  start     -- generate state, nonce and a PKCE verifier; park them in the
               transaction store under the state value; hand back the
               provider's authorization URL (login: the route redirects,
               link: the route returns it as JSON).
  callback  -- pop the transaction by state (single use, so replay and CSRF
               both fail as "invalid"); reject it if older than the TTL;
               exchange the code with the stored verifier; verify the
               id_token (issuer, audience, expiry, nonce, at_hash); then
               reconcile the asserted subject against local identity links.

Login never provisions accounts: an identity must have been linked to an
existing local user first (link flow, started by an authenticated user).

Transaction state is held server-side in an injected OidcStateStore rather
than in a session cookie. The default InMemoryOidcStateStore is process-
local: a flow started on one instance cannot finish on another, and a restart
invalidates every in-flight flow. Multi-instance deployments would need a
shared implementation of the same interface.

Provider configuration comes from the settings document, so it can change at
runtime. Discovery metadata and JWKS are cached keyed by
(issuer, client id, secret presence, redirect URI) and rebuilt only when that
key changes. The OAuth client itself is cheap and built per call with the
current secret.

Libraries: authlib's httpx-based AsyncOAuth2Client (PKCE, token exchange)
and authlib.jose / authlib.oidc.core for id_token verification.

Layer rule: imports only core/ and auth/.
"""

from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable, Optional, Protocol

import httpx
from authlib.common.security import generate_token
from authlib.integrations.base_client import OAuthError
from authlib.integrations.httpx_client import AsyncOAuth2Client
from authlib.jose import JsonWebKey
from authlib.jose import jwt as jose_jwt
from authlib.jose.errors import JoseError
from authlib.oidc.core import CodeIDToken
from sqlalchemy.exc import IntegrityError

from auth.models import ExternalIdentity
from auth.store import UserStore
from auth.tokens import create_access_token
from core.errors import MisconfigurationError, ProviderError

logger = logging.getLogger("appbudget.auth.oidc")

_SCOPES = "openid profile email"
_HTTP_TIMEOUT = 10.0

PURPOSE_LOGIN = "login"
PURPOSE_LINK = "link"


# ---------------------------------------------------------------------------
# Configuration
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class OidcConfig:
    """Provider settings as edited by an admin in the settings document."""

    enabled: bool = False
    issuer: str = ""
    client_id: str = ""
    client_secret: str = ""
    redirect_uri: str = ""
    provider_name: str = "SSO"

    @property
    def configured(self) -> bool:
        """Usable only when the flag, issuer, client id and redirect URI are all set.

        The client secret is optional: public clients rely on PKCE alone.
        """
        return bool(self.enabled and self.issuer and self.client_id and self.redirect_uri)

    @property
    def cache_key(self) -> tuple[str, str, bool, str]:
        return (self.issuer.rstrip("/"), self.client_id, bool(self.client_secret), self.redirect_uri)


# ---------------------------------------------------------------------------
# Transaction state
# ---------------------------------------------------------------------------


@dataclass
class OidcTransaction:
    purpose: str  # PURPOSE_LOGIN | PURPOSE_LINK
    code_verifier: str
    nonce: str
    created_at: float
    user_id: str | None = None  # set for PURPOSE_LINK


class OidcStateStore(Protocol):
    """Keyed single-use store for in-flight OIDC transactions."""

    def put(self, state: str, transaction: OidcTransaction) -> None: ...

    def pop(self, state: str) -> Optional[OidcTransaction]: ...

    def is_expired(self, transaction: OidcTransaction) -> bool: ...


class InMemoryOidcStateStore:
    """Process-local OidcStateStore with TTL eviction.

    Expired entries are swept opportunistically whenever a new transaction
    is stored -- there is no timer. pop() removes the entry whether or not it
    has expired, so a state value can never be presented twice.

    Handlers run both on the event loop and in the threadpool, hence the lock.
    """

    def __init__(self, ttl_seconds: int = 600, clock: Callable[[], float] = time.monotonic) -> None:
        self.ttl_seconds = ttl_seconds
        self._clock = clock
        self._entries: dict[str, OidcTransaction] = {}
        self._lock = threading.Lock()

    def now(self) -> float:
        return self._clock()

    def put(self, state: str, transaction: OidcTransaction) -> None:
        with self._lock:
            self._sweep_locked()
            self._entries[state] = transaction

    def pop(self, state: str) -> Optional[OidcTransaction]:
        with self._lock:
            return self._entries.pop(state, None)

    def is_expired(self, transaction: OidcTransaction) -> bool:
        return self._clock() - transaction.created_at > self.ttl_seconds

    def sweep(self) -> int:
        """Drop every expired entry. Returns the number removed."""
        with self._lock:
            return self._sweep_locked()

    def _sweep_locked(self) -> int:
        expired = [s for s, txn in self._entries.items() if self.is_expired(txn)]
        for state in expired:
            del self._entries[state]
        return len(expired)

    def __len__(self) -> int:
        return len(self._entries)


# ---------------------------------------------------------------------------
# Callback outcomes
# ---------------------------------------------------------------------------


class CallbackOutcome(str, Enum):
    EXPIRED = "expired"
    INVALID = "invalid"
    LINKED = "linked"
    LINKED_CONFLICT = "linked_conflict"
    UNLINKED = "unlinked"
    INACTIVE = "inactive"
    FAILED = "failed"


@dataclass
class CallbackResult:
    """Terminal state of a callback. Exactly one of token / outcome is set."""

    outcome: CallbackOutcome | None = None
    token: str | None = None

    def query_params(self) -> dict[str, str]:
        if self.token:
            return {"token": self.token}
        return {"oidc": (self.outcome or CallbackOutcome.FAILED).value}


# ---------------------------------------------------------------------------
# Provider metadata cache
# ---------------------------------------------------------------------------


@dataclass
class ProviderMetadata:
    issuer: str
    authorization_endpoint: str
    token_endpoint: str
    jwks_uri: str
    jwks: dict = field(default_factory=dict)


def _metadata_from_discovery(document: dict) -> ProviderMetadata:
    try:
        return ProviderMetadata(
            issuer=document["issuer"],
            authorization_endpoint=document["authorization_endpoint"],
            token_endpoint=document["token_endpoint"],
            jwks_uri=document["jwks_uri"],
        )
    except KeyError as e:
        raise ProviderError(f"Discovery document is missing {e.args[0]!r}") from e


# ---------------------------------------------------------------------------
# Bridge
# ---------------------------------------------------------------------------


class OidcBridge:
    """Runs OIDC login/link flows against the configured provider.

    Usage:
        bridge = OidcBridge(user_store, InMemoryOidcStateStore(ttl_seconds=600))
        url = await bridge.start(config, PURPOSE_LOGIN)
        result = await bridge.handle_callback(config, state, code, None, session_hours=12)
    """

    def __init__(self, user_store: UserStore, state_store: OidcStateStore) -> None:
        self.user_store = user_store
        self.state_store = state_store
        self._cached_key: tuple | None = None
        self._cached_metadata: ProviderMetadata | None = None

    # ------------------------------------------------------------------
    # Provider plumbing
    # ------------------------------------------------------------------

    def _client(self, config: OidcConfig) -> AsyncOAuth2Client:
        return AsyncOAuth2Client(
            client_id=config.client_id,
            client_secret=config.client_secret or None,
            token_endpoint_auth_method="client_secret_post" if config.client_secret else "none",
            scope=_SCOPES,
            redirect_uri=config.redirect_uri,
            code_challenge_method="S256",
            timeout=_HTTP_TIMEOUT,
        )

    async def _discover(self, config: OidcConfig) -> ProviderMetadata:
        """Fetch the discovery document and JWKS for the configured issuer."""
        url = config.issuer.rstrip("/") + "/.well-known/openid-configuration"
        async with self._client(config) as client:
            resp = await client.get(url)
            resp.raise_for_status()
            metadata = _metadata_from_discovery(resp.json())
            jwks_resp = await client.get(metadata.jwks_uri)
            jwks_resp.raise_for_status()
            metadata.jwks = jwks_resp.json()
        return metadata

    async def get_provider(self, config: OidcConfig) -> ProviderMetadata:
        """Return cached provider metadata, re-discovering only when the config key changed.

        Raises:
            ProviderError: discovery failed (network, HTTP status, bad document).
        """
        key = config.cache_key
        if self._cached_metadata is not None and self._cached_key == key:
            return self._cached_metadata
        try:
            metadata = await self._discover(config)
        except (httpx.HTTPError, ValueError) as e:
            logger.warning("OIDC discovery failed for %s: %s", config.issuer, e)
            raise ProviderError() from e
        self._cached_key = key
        self._cached_metadata = metadata
        logger.info("OIDC provider metadata loaded for %s", metadata.issuer)
        return metadata

    # ------------------------------------------------------------------
    # start
    # ------------------------------------------------------------------

    async def start(self, config: OidcConfig, purpose: str, user_id: str | None = None) -> str:
        """Create a transaction and return the provider authorization URL.

        Raises:
            MisconfigurationError: OIDC is disabled or incomplete (caller-fixable, 400).
            ProviderError: discovery failed.
        """
        if not config.configured:
            raise MisconfigurationError("OIDC is not configured", caller_fixable=True)
        if purpose == PURPOSE_LINK and not user_id:
            raise ValueError("link transactions require a user id")
        provider = await self.get_provider(config)

        state = generate_token(32)
        nonce = generate_token(32)
        code_verifier = generate_token(64)
        client = self._client(config)
        try:
            url, _ = client.create_authorization_url(
                provider.authorization_endpoint,
                state=state,
                code_verifier=code_verifier,
                nonce=nonce,
            )
        finally:
            await client.aclose()
        self.state_store.put(
            state,
            OidcTransaction(
                purpose=purpose,
                code_verifier=code_verifier,
                nonce=nonce,
                created_at=self._now(),
                user_id=user_id,
            ),
        )
        return url

    def _now(self) -> float:
        now = getattr(self.state_store, "now", None)
        return now() if callable(now) else time.monotonic()

    # ------------------------------------------------------------------
    # callback
    # ------------------------------------------------------------------

    async def handle_callback(
        self,
        config: OidcConfig,
        state: str | None,
        code: str | None,
        error: str | None,
        session_hours: int,
    ) -> CallbackResult:
        """Resolve a provider callback into a terminal CallbackResult. Never raises.

        The transaction is removed from the store before anything else, so
        every branch below -- success or failure -- leaves nothing to replay.
        An unknown state returns before the provider is contacted.
        """
        transaction = self.state_store.pop(state) if state else None
        if transaction is None:
            return CallbackResult(CallbackOutcome.INVALID)
        if self.state_store.is_expired(transaction):
            return CallbackResult(CallbackOutcome.EXPIRED)
        if error or not code:
            logger.info("OIDC callback returned without a code (error=%s)", error)
            return CallbackResult(CallbackOutcome.FAILED)
        if not config.configured:
            return CallbackResult(CallbackOutcome.FAILED)

        try:
            provider = await self.get_provider(config)
            subject = await self._exchange_code(config, provider, transaction, code)
        except (ProviderError, OAuthError, JoseError, httpx.HTTPError, ValueError, KeyError) as e:
            logger.warning("OIDC code exchange failed: %s", e)
            return CallbackResult(CallbackOutcome.FAILED)

        if transaction.purpose == PURPOSE_LINK:
            return self._complete_link(provider.issuer, subject, transaction.user_id)
        return self._complete_login(provider.issuer, subject, session_hours)

    async def _exchange_code(
        self,
        config: OidcConfig,
        provider: ProviderMetadata,
        transaction: OidcTransaction,
        code: str,
    ) -> str:
        """Trade the code for tokens and return the verified subject identifier."""
        async with self._client(config) as client:
            token = await client.fetch_token(
                provider.token_endpoint,
                code=code,
                code_verifier=transaction.code_verifier,
                redirect_uri=config.redirect_uri,
            )
        id_token = token.get("id_token")
        if not id_token:
            raise ValueError("token response carries no id_token")
        claims = self._verify_id_token(config, provider, id_token, transaction.nonce, token.get("access_token"))
        subject = claims.get("sub")
        if not subject:
            raise ValueError("id_token has no subject")
        return str(subject)

    def _verify_id_token(
        self,
        config: OidcConfig,
        provider: ProviderMetadata,
        id_token: str,
        nonce: str,
        access_token: str | None,
    ) -> CodeIDToken:
        claims_params = {"nonce": nonce, "client_id": config.client_id}
        if access_token:
            claims_params["access_token"] = access_token
        claims = jose_jwt.decode(
            id_token,
            key=JsonWebKey.import_key_set(provider.jwks),
            claims_cls=CodeIDToken,
            claims_options={
                "iss": {"essential": True, "values": [provider.issuer]},
                "aud": {"essential": True, "values": [config.client_id]},
            },
            claims_params=claims_params,
        )
        claims.validate(leeway=60)
        return claims

    # ------------------------------------------------------------------
    # Reconciliation against local identity links
    # ------------------------------------------------------------------

    def _complete_login(self, issuer: str, subject: str, session_hours: int) -> CallbackResult:
        identity = self.user_store.get_identity(issuer, subject)
        if identity is None:
            return CallbackResult(CallbackOutcome.UNLINKED)
        user = self.user_store.get_by_id(identity.user_id)
        if user is None:
            return CallbackResult(CallbackOutcome.UNLINKED)
        if not user.is_active:
            return CallbackResult(CallbackOutcome.INACTIVE)
        try:
            token = create_access_token(user, session_hours)
        except MisconfigurationError:
            logger.error("OIDC login succeeded but JWT_SECRET is not configured")
            return CallbackResult(CallbackOutcome.FAILED)
        self.user_store.update_last_login(user.id)
        logger.info("OIDC login for user %s", user.id)
        return CallbackResult(token=token)

    def _complete_link(self, issuer: str, subject: str, user_id: str | None) -> CallbackResult:
        user = self.user_store.get_by_id(user_id) if user_id else None
        if user is None:
            return CallbackResult(CallbackOutcome.FAILED)
        if not user.is_active:
            return CallbackResult(CallbackOutcome.INACTIVE)

        existing = self.user_store.get_identity(issuer, subject)
        if existing is not None:
            if existing.user_id == user.id:
                return CallbackResult(CallbackOutcome.LINKED)
            logger.warning("OIDC link conflict: identity already bound to another user")
            return CallbackResult(CallbackOutcome.LINKED_CONFLICT)
        if self.user_store.get_identity_for_user(issuer, user.id) is not None:
            # One identity per issuer per user.
            return CallbackResult(CallbackOutcome.LINKED_CONFLICT)

        try:
            self.user_store.link_identity(
                ExternalIdentity(provider="oidc", issuer=issuer, subject=subject, user_id=user.id)
            )
        except IntegrityError:
            return CallbackResult(CallbackOutcome.LINKED_CONFLICT)
        logger.info("OIDC identity linked to user %s", user.id)
        return CallbackResult(CallbackOutcome.LINKED)
