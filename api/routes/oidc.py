"""
api/routes/oidc.py -- OpenID Connect login and account-linking endpoints.

Routes:
  GET  /api/auth/oidc/config    -- public; {enabled, providerName} for the login page
  GET  /api/auth/oidc/start     -- public; 302 to the provider (login flow)
  POST /api/auth/oidc/link      -- authenticated; {url} to send the browser to (link flow)
  GET  /api/auth/oidc/callback  -- provider redirect target; always 302s to the frontend

The callback is a browser-facing redirect target, so it never answers with an
error status. Every outcome, including a conflicting link, becomes a query
marker on FRONTEND_BASE_URL: ?token=<jwt> or ?oidc=<outcome>.

Provider configuration is read from the settings document on every request;
the bridge caches discovery per configuration key.
"""

from __future__ import annotations

from typing import Optional
from urllib.parse import urlencode

from fastapi import APIRouter, Depends, Request
from fastapi.responses import RedirectResponse

from api.models import OidcLinkResponse, OidcPublicConfig
from appsettings.models import AppSettings
from auth.dependencies import get_current_user
from auth.models import User
from auth.oidc import PURPOSE_LINK, PURPOSE_LOGIN, CallbackOutcome, OidcBridge, OidcConfig
from core.config import get_settings
from core.errors import ProviderError

router = APIRouter()


def _oidc_config(app_settings: AppSettings) -> OidcConfig:
    return OidcConfig(
        enabled=app_settings.oidc_enabled,
        issuer=app_settings.oidc_issuer,
        client_id=app_settings.oidc_client_id,
        client_secret=app_settings.oidc_client_secret,
        redirect_uri=app_settings.oidc_redirect_uri,
        provider_name=app_settings.oidc_provider_name,
    )


def _frontend_redirect(params: dict[str, str]) -> RedirectResponse:
    base = get_settings().frontend_base_url.rstrip("/")
    resp = RedirectResponse(f"{base}/?{urlencode(params)}", status_code=302)
    resp.headers["Cache-Control"] = "no-store"
    return resp


@router.get("/auth/oidc/config", response_model=OidcPublicConfig)
def oidc_public_config(request: Request) -> OidcPublicConfig:
    """Tell the login page whether to render the SSO button, and its label."""
    config = _oidc_config(request.app.state.settings_store.get())
    return OidcPublicConfig(enabled=config.configured, provider_name=config.provider_name)


@router.get("/auth/oidc/start")
async def oidc_start(request: Request) -> RedirectResponse:
    """Begin a login flow. An unreachable provider sends the browser back with ?oidc=failed."""
    config = _oidc_config(request.app.state.settings_store.get())
    bridge: OidcBridge = request.app.state.oidc
    try:
        url = await bridge.start(config, PURPOSE_LOGIN)
    except ProviderError:
        return _frontend_redirect({"oidc": CallbackOutcome.FAILED.value})
    return RedirectResponse(url, status_code=302)


@router.post("/auth/oidc/link", response_model=OidcLinkResponse)
async def oidc_link(request: Request, current_user: User = Depends(get_current_user)) -> OidcLinkResponse:
    """Begin linking the caller's account to an external identity.

    Raises 400 misconfigured when OIDC is off or incomplete and 502 when
    the provider cannot be discovered.
    """
    config = _oidc_config(request.app.state.settings_store.get())
    bridge: OidcBridge = request.app.state.oidc
    url = await bridge.start(config, PURPOSE_LINK, user_id=current_user.id)
    return OidcLinkResponse(url=url)


@router.get("/auth/oidc/callback")
async def oidc_callback(
    request: Request,
    state: Optional[str] = None,
    code: Optional[str] = None,
    error: Optional[str] = None,
) -> RedirectResponse:
    app_settings = request.app.state.settings_store.get()
    bridge: OidcBridge = request.app.state.oidc
    result = await bridge.handle_callback(
        _oidc_config(app_settings),
        state,
        code,
        error,
        session_hours=app_settings.session_duration_hours,
    )
    return _frontend_redirect(result.query_params())
