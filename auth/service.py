"""
auth/service.py -- Password authentication, account provisioning, and reset flow.

Everything here is synchronous and CPU-heavy (bcrypt). Routes that call into
this module are plain `def` endpoints so FastAPI runs them in its worker
threadpool and a slow hash never blocks unrelated requests.

Provisioning paths for local accounts:
  1. bootstrap_admin()  -- explicit first-run endpoint, only while no users exist.
  2. login()            -- when no users exist and the presented credentials
                           exactly match ADMIN_USERNAME / ADMIN_PASSWORD, that
                           admin is created and logged in by the same call.
  3. create_user()      -- admin-issued.

Enumeration resistance:
  login() answers unknown usernames and wrong passwords with the same
  AuthError("Invalid credentials") after the same bcrypt work [C1]. The
  disabled-account error is only reported once the password has verified,
  so it reveals nothing to a caller who does not already hold the password.

  request_reset() returns the same key set whether or not the login matched.

Layer rule: imports only core/ and auth/.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone

from sqlalchemy.exc import IntegrityError

from auth.models import ROLES, User
from auth.store import UserStore, normalize_login
from auth.tokens import (
    burn_password_check,
    create_access_token,
    generate_reset_token,
    hash_password,
    hash_reset_token,
    verify_password,
)
from core.config import get_settings
from core.errors import AccountDisabledError, AuthError, ConflictError, ForbiddenError, NotFoundError, ValidationError

logger = logging.getLogger("appbudget.auth")

_INVALID_CREDENTIALS = "Invalid credentials"


@dataclass
class LoginResult:
    token: str
    user: User


@dataclass
class ResetIssue:
    """Outcome of a reset request. token/expires_at are None when nothing was issued."""

    token: str | None = None
    expires_at: str | None = None


# ---------------------------------------------------------------------------
# Normalization and policy
# ---------------------------------------------------------------------------


def capitalize_first(value: str) -> str:
    return value[:1].upper() + value[1:] if value else value


def normalize_display_name(value: str | None) -> str | None:
    trimmed = (value or "").strip()
    if not trimmed:
        return None
    return capitalize_first(trimmed)


def validate_password(password: str | None) -> None:
    """Enforce the only structural password rule: a minimum length.

    Shared by bootstrap, admin creation, reset, and change-password.
    """
    min_length = get_settings().password_min_length
    if not password or len(password) < min_length:
        raise ValidationError(f"Password must be at least {min_length} characters")


# ---------------------------------------------------------------------------
# Provisioning
# ---------------------------------------------------------------------------


def create_user(
    store: UserStore,
    username: str | None,
    password: str | None,
    display_name: str | None = None,
    role: str = "user",
) -> User:
    """Create a local account (admin-issued). Raises ConflictError on a duplicate username."""
    normalized = normalize_login(username)
    if not normalized or not password:
        raise ValidationError("Missing credentials")
    validate_password(password)
    resolved_role = role if role in ROLES else "user"
    user = User(
        username=normalized,
        display_name=normalize_display_name(display_name) or capitalize_first(normalized),
        password_hash=hash_password(password),
        role=resolved_role,
    )
    try:
        user_id = store.create_user(user)
    except IntegrityError as exc:
        raise ConflictError("A user with that username already exists.") from exc
    logger.info("User created: %s (role=%s)", normalized, resolved_role)
    return store.get_by_id(user_id)


def bootstrap_admin(
    store: UserStore,
    username: str | None = None,
    password: str | None = None,
    display_name: str | None = None,
) -> User:
    """Create the first admin account. Only allowed while no users exist.

    Missing fields default to ADMIN_USERNAME / ADMIN_PASSWORD.

    Raises:
        ForbiddenError: at least one user already exists (including when a
            concurrent bootstrap won the race).
        ValidationError: no usable credentials or password too short.
    """
    settings = get_settings()
    if store.has_users():
        raise ForbiddenError("Bootstrap already completed")
    bootstrap_username = normalize_login(username or settings.admin_username)
    bootstrap_password = password or settings.admin_password
    if not bootstrap_username or not bootstrap_password:
        raise ValidationError("Missing credentials")
    validate_password(bootstrap_password)
    candidate = User(
        username=bootstrap_username,
        display_name=normalize_display_name(display_name) or capitalize_first(bootstrap_username),
        password_hash=hash_password(bootstrap_password),
        role="admin",
    )
    try:
        user_id = store.create_first_admin(candidate)
    except IntegrityError:
        user_id = None
    if user_id is None:
        raise ForbiddenError("Bootstrap already completed")
    logger.info("Bootstrap admin created: %s", bootstrap_username)
    return store.get_by_id(user_id)


def _maybe_bootstrap_from_env(store: UserStore, username: str, password: str) -> User | None:
    """Create the env-configured admin on its first login, if no users exist yet.

    Only an exact match of both ADMIN_USERNAME (case-insensitive) and
    ADMIN_PASSWORD qualifies. Returns None in every other case so the caller
    falls through to the generic invalid-credentials answer.
    """
    settings = get_settings()
    if not settings.admin_username or not settings.admin_password:
        return None
    if normalize_login(username) != normalize_login(settings.admin_username):
        return None
    if password != settings.admin_password:
        return None
    candidate = User(
        username=settings.admin_username,
        display_name=capitalize_first(normalize_login(settings.admin_username)),
        password_hash=hash_password(settings.admin_password),
        role="admin",
    )
    try:
        user_id = store.create_first_admin(candidate)
    except IntegrityError:
        return None
    if user_id is None:
        return None
    logger.info("Admin account provisioned from environment credentials on first login")
    return store.get_by_id(user_id)


# ---------------------------------------------------------------------------
# Login
# ---------------------------------------------------------------------------


def authenticate(store: UserStore, username: str | None, password: str | None) -> User:
    """Verify a username/password pair and return the User.

    Raises:
        ValidationError: a field is missing.
        AuthError: unknown user or wrong password (indistinguishable).
        AccountDisabledError: correct password for a disabled account.
    """
    if not username or not password:
        raise ValidationError("Missing credentials")
    user = store.get_by_username(username)
    if user is None:
        user = _maybe_bootstrap_from_env(store, username, password)
    if user is None:
        # Equalize timing -- do NOT return early before running bcrypt [C1]
        burn_password_check(password)
        raise AuthError(_INVALID_CREDENTIALS)
    if not verify_password(password, user.password_hash):
        raise AuthError(_INVALID_CREDENTIALS)
    if not user.is_active:
        raise AccountDisabledError()
    return user


def login(store: UserStore, username: str | None, password: str | None, session_hours: int) -> LoginResult:
    """Authenticate, stamp last_login_at, and issue a session token.

    session_hours comes from the settings document; the token service clamps it.
    """
    user = authenticate(store, username, password)
    store.update_last_login(user.id)
    token = create_access_token(user, session_hours)
    return LoginResult(token=token, user=store.get_by_id(user.id) or user)


# ---------------------------------------------------------------------------
# Password reset / change
# ---------------------------------------------------------------------------


def issue_reset_token(store: UserStore, user: User) -> ResetIssue:
    """Persist the hash of a fresh token and return the raw value once."""
    ttl_minutes = get_settings().password_reset_token_ttl_minutes
    raw_token = generate_reset_token()
    expires_at = (datetime.now(timezone.utc) + timedelta(minutes=ttl_minutes)).isoformat()
    store.create_reset_token(user.id, hash_reset_token(raw_token), expires_at)
    return ResetIssue(token=raw_token, expires_at=expires_at)


def request_reset(store: UserStore, login_value: str | None) -> ResetIssue:
    """Issue a reset token for an active account matching `login_value`.

    The caller always receives a ResetIssue; it is empty when no active user
    matched, and also empty when RESET_TOKEN_IN_RESPONSE is off (the token
    is still issued and can be handed out by an admin).
    """
    if not login_value:
        raise ValidationError("Missing login")
    user = store.get_by_username(login_value)
    if user is None or not user.is_active:
        return ResetIssue()
    issued = issue_reset_token(store, user)
    logger.info("Password reset token issued for user %s", user.id)
    if not get_settings().reset_token_in_response:
        return ResetIssue()
    return issued


def admin_issue_reset(store: UserStore, user_id: str) -> ResetIssue:
    """Issue a reset token on an admin's behalf for any active user."""
    user = store.get_by_id(user_id)
    if user is None:
        raise NotFoundError("User not found")
    if not user.is_active:
        raise ValidationError("User is disabled")
    return issue_reset_token(store, user)


def consume_reset(store: UserStore, raw_token: str | None, new_password: str | None) -> None:
    """Set a new password using a one-time reset token.

    "Wrong token", "expired token" and "already used" all produce the same
    ValidationError so the caller learns nothing about which it was.
    """
    if not raw_token or not new_password:
        raise ValidationError("Missing token or password")
    validate_password(new_password)
    record = store.find_active_reset_token(hash_reset_token(raw_token))
    if record is None:
        raise ValidationError("Invalid or expired token")
    if not store.consume_reset_token(record.id, record.user_id, hash_password(new_password)):
        raise ValidationError("Invalid or expired token")
    logger.info("Password reset completed for user %s", record.user_id)


def change_password(store: UserStore, user_id: str, current_password: str | None, new_password: str | None) -> None:
    """Change the caller's own password after re-verifying the current one."""
    if not current_password or not new_password:
        raise ValidationError("Missing password")
    validate_password(new_password)
    user = store.get_by_id(user_id)
    if user is None:
        raise NotFoundError("User not found")
    if not verify_password(current_password, user.password_hash):
        raise AuthError(_INVALID_CREDENTIALS)
    store.update_user(user_id, password_hash=hash_password(new_password))
