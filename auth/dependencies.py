"""
auth/dependencies.py -- FastAPI Depends() helpers for authentication.

Clients authenticate with `Authorization: Bearer <token>`. The token alone is
never trusted: every request re-reads the user so that a disabled account is
rejected even while it still holds an unexpired, validly-signed token.

Failure classes (distinguishable to the caller only by status):
  500 misconfigured     -- JWT_SECRET unset (raised by auth.tokens)
  401 unauthorized      -- header missing, token invalid/expired, user gone
  403 account_disabled  -- user exists but is_active is false
  403 forbidden         -- authenticated, but not an admin (require_admin)

get_current_user() is the hard variant used by protected routes.
require_admin() wraps it and adds the role check.

Layer rule: may import from fastapi because this module is part of the
FastAPI dependency injection system. No imports from api/.
"""

from __future__ import annotations

from fastapi import Request

from auth.models import User
from auth.store import UserStore
from auth.tokens import decode_access_token
from core.errors import AccountDisabledError, AuthError, ForbiddenError


def _bearer_token(request: Request) -> str | None:
    header = request.headers.get("Authorization", "")
    scheme, _, token = header.partition(" ")
    if scheme != "Bearer" or not token.strip():
        return None
    return token.strip()


def get_current_user(request: Request) -> User:
    """Require a valid session. Raises AuthError / AccountDisabledError otherwise.

    Use as a FastAPI dependency:
        @router.get("/protected")
        def route(user: User = Depends(get_current_user)): ...
    """
    token = _bearer_token(request)
    if token is None:
        raise AuthError()
    payload = decode_access_token(token)
    if payload is None:
        raise AuthError()
    user_store: UserStore = request.app.state.user_store
    user = user_store.get_by_id(payload["sub"])
    if user is None:
        raise AuthError()
    if not user.is_active:
        raise AccountDisabledError()
    return user


def require_admin(request: Request) -> User:
    """Require admin role. 401/403 from get_current_user, then 403 if not admin."""
    user = get_current_user(request)
    if user.role != "admin":
        raise ForbiddenError("Admin access required.")
    return user
