"""
api/routes/auth.py -- Password login, first-run bootstrap, and password reset endpoints.

Routes:
  POST /api/auth/login              -- password login; returns {token, user}
  POST /api/login                   -- same handler, legacy path
  POST /api/auth/bootstrap          -- create the first admin; 403 once any user exists
  GET  /api/auth/bootstrap-status   -- {hasUsers}
  POST /api/auth/request-reset      -- issue a reset token (same key set either way)
  POST /api/auth/reset              -- consume a reset token and set a new password
  POST /api/auth/change-password    -- authenticated; requires the current password

Security:
  [H2] Credential endpoints are rate-limited per IP (LOGIN_RATE_LIMIT).
  [C1] service.login() provides timing equalization -- use it, never inline.
  [M5] Cache-Control: no-store on login responses.

Handlers that hash passwords are plain `def`: FastAPI runs them in its
threadpool so bcrypt never blocks the event loop.
"""

from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Depends, Request
from fastapi.responses import JSONResponse

from api.limiter import CREDENTIAL_LIMIT, limiter
from api.models import (
    BootstrapRequest,
    BootstrapStatusResponse,
    ChangePasswordRequest,
    LoginRequest,
    LoginResponse,
    OkResponse,
    ResetConsumeRequest,
    ResetRequest,
    ResetRequestResponse,
    UserEnvelope,
    UserOut,
)
from auth import service
from auth.dependencies import get_current_user
from auth.models import User
from auth.store import UserStore

# Auth policy:
# - POST /api/auth/login, /api/login:      public
# - POST /api/auth/bootstrap:              public, only while no users exist
# - GET  /api/auth/bootstrap-status:       public
# - POST /api/auth/request-reset, /reset:  public
# - POST /api/auth/change-password:        requires auth (get_current_user)
router = APIRouter()


def _session_hours(request: Request) -> int:
    return request.app.state.settings_store.get().session_duration_hours


# ---------------------------------------------------------------------------
# Login
# ---------------------------------------------------------------------------


@router.post("/auth/login", response_model=LoginResponse)
@router.post("/login", response_model=LoginResponse, include_in_schema=False)
@limiter.limit(CREDENTIAL_LIMIT)  # [H2] must stay below the @router decorators
def login(request: Request, body: LoginRequest) -> JSONResponse:
    """Authenticate with username and password.

    Unknown usernames and wrong passwords share one 401 ("Invalid
    credentials"). When no account exists yet, the ADMIN_USERNAME /
    ADMIN_PASSWORD pair logs in by creating that admin.
    """
    user_store: UserStore = request.app.state.user_store
    result = service.login(user_store, body.username, body.password, _session_hours(request))
    resp = JSONResponse(
        content=LoginResponse(token=result.token, user=UserOut.from_user(result.user)).model_dump(by_alias=True)
    )
    resp.headers["Cache-Control"] = "no-store"  # [M5]
    return resp


# ---------------------------------------------------------------------------
# First-run bootstrap
# ---------------------------------------------------------------------------


@router.post("/auth/bootstrap", response_model=UserEnvelope, status_code=201)
@limiter.limit(CREDENTIAL_LIMIT)
def bootstrap(request: Request, body: Optional[BootstrapRequest] = None) -> UserEnvelope:
    """Create the first admin account. Fields left out default to ADMIN_USERNAME / ADMIN_PASSWORD."""
    user_store: UserStore = request.app.state.user_store
    body = body or BootstrapRequest()
    user = service.bootstrap_admin(user_store, body.username, body.password, body.display_name)
    return UserEnvelope(user=UserOut.from_user(user))


@router.get("/auth/bootstrap-status", response_model=BootstrapStatusResponse)
def bootstrap_status(request: Request) -> BootstrapStatusResponse:
    user_store: UserStore = request.app.state.user_store
    return BootstrapStatusResponse(has_users=user_store.has_users())


# ---------------------------------------------------------------------------
# Password reset / change
# ---------------------------------------------------------------------------


@router.post("/auth/request-reset", response_model=ResetRequestResponse)
@limiter.limit(CREDENTIAL_LIMIT)
def request_reset(request: Request, body: ResetRequest) -> ResetRequestResponse:
    """Issue a one-time reset token for an active account.

    The response carries the same keys whether or not the login matched.
    There is no outbound e-mail: with RESET_TOKEN_IN_RESPONSE on, the raw
    token is returned here and delivery is up to the caller.
    """
    user_store: UserStore = request.app.state.user_store
    issued = service.request_reset(user_store, body.login)
    return ResetRequestResponse(reset_token=issued.token, expires_at=issued.expires_at)


@router.post("/auth/reset", response_model=OkResponse)
@limiter.limit(CREDENTIAL_LIMIT)
def reset_password(request: Request, body: ResetConsumeRequest) -> OkResponse:
    user_store: UserStore = request.app.state.user_store
    service.consume_reset(user_store, body.token, body.new_password)
    return OkResponse()


@router.post("/auth/change-password", response_model=OkResponse)
def change_password(
    request: Request,
    body: ChangePasswordRequest,
    current_user: User = Depends(get_current_user),
) -> OkResponse:
    user_store: UserStore = request.app.state.user_store
    service.change_password(user_store, current_user.id, body.current_password, body.new_password)
    return OkResponse()
