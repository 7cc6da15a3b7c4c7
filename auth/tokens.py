"""
auth/tokens.py -- Session tokens, password hashing, and reset-token utilities.

Security design decisions:
  JWT: python-jose with HS256. Tokens are signed with JWT_SECRET and carry
       the user id (sub), username, role, and expiry. Verification returns
       None on any failure -- the dependency layer turns that into a 401.
       A missing JWT_SECRET raises MisconfigurationError instead: that is a
       server fault (500), not a client one, and must not be masked as 401.

  Session length: taken from the settings document at issue time and
       clamped to [1, 24] hours (default 12). Callers cannot mint longer
       tokens by passing a larger value.

  Passwords: bcrypt directly (no passlib wrapper). Bcrypt's cost factor is
       the right tool for low-entropy secrets. _DUMMY_HASH enables timing
       equalization in the login path so response time does not reveal
       whether a username exists [C1].

  Reset tokens: secrets.token_hex(32) gives 256 bits of entropy. Only the
       sha256 digest is stored; a fast deterministic hash is enough for a
       high-entropy one-time value and allows O(1) lookup by hash.

Layer rule: no imports from api/, appsettings/, budget/, or backup/. Import
from core/ is allowed -- core/ is the kernel and has no reverse dependencies.
"""

from __future__ import annotations

import hashlib
import logging
import secrets
from datetime import datetime, timedelta, timezone
from typing import TYPE_CHECKING, Any

import bcrypt
from jose import JWTError, jwt

from core.config import get_settings
from core.errors import MisconfigurationError

if TYPE_CHECKING:
    from auth.models import User

logger = logging.getLogger("appbudget.auth")

_ALGORITHM = "HS256"

DEFAULT_SESSION_HOURS = 12
MIN_SESSION_HOURS = 1
MAX_SESSION_HOURS = 24

# ---------------------------------------------------------------------------
# Password hashing (bcrypt -- direct usage, no passlib wrapper)
# ---------------------------------------------------------------------------


def hash_password(plain: str) -> str:
    """Return a bcrypt hash of the given plaintext password.

    Passwords longer than 72 bytes are truncated by bcrypt. The API layer
    caps password fields at 128 characters; multi-byte input beyond the
    72-byte mark is accepted but only its prefix is significant.
    """
    return bcrypt.hashpw(plain.encode("utf-8")[:72], bcrypt.gensalt()).decode("utf-8")


def verify_password(plain: str, hashed: str) -> bool:
    """Return True if the plaintext password matches the bcrypt hash."""
    try:
        return bcrypt.checkpw(plain.encode("utf-8")[:72], hashed.encode("utf-8"))
    except (ValueError, TypeError):
        # Malformed stored hash (e.g. a hand-edited backup) never matches.
        return False


# Timing equalization dummy hash [C1].
# Computed once at module load so the first login attempt is not measurably
# slower than subsequent ones.
_DUMMY_HASH: str = hash_password("appbudget_timing_dummy")


def burn_password_check(plain: str) -> None:
    """Run one bcrypt verification against the dummy hash and discard the result.

    Called on every unknown-username branch so that path costs the same as
    a wrong-password check [C1].
    """
    verify_password(plain, _DUMMY_HASH)


# ---------------------------------------------------------------------------
# JWT encode / decode
# ---------------------------------------------------------------------------


def clamp_session_hours(value: Any) -> int:
    """Coerce a configured session duration into the allowed [1, 24] window.

    Non-numeric input (including booleans) yields the 12h default; numeric
    input is rounded, then clamped.
    """
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return DEFAULT_SESSION_HOURS
    if value != value:  # NaN
        return DEFAULT_SESSION_HOURS
    return max(MIN_SESSION_HOURS, min(MAX_SESSION_HOURS, int(round(value))))


def _signing_key() -> str:
    secret = get_settings().jwt_secret
    if not secret:
        raise MisconfigurationError("Auth not configured")
    return secret


def create_access_token(user: User, session_hours: Any = DEFAULT_SESSION_HOURS) -> str:
    """Encode a signed JWT bound to the user's id, username and role.

    Args:
        user:          The authenticated User (must have an id).
        session_hours: Configured session length; clamped to [1, 24].

    Raises:
        MisconfigurationError: JWT_SECRET is not configured.
    """
    now = datetime.now(timezone.utc)
    expire = now + timedelta(hours=clamp_session_hours(session_hours))
    payload = {
        "sub": user.id,
        "username": user.username,
        "role": user.role,
        "iat": now,
        "exp": expire,
    }
    return jwt.encode(payload, _signing_key(), algorithm=_ALGORITHM)


def decode_access_token(token: str) -> dict | None:
    """Decode and verify a JWT. Returns the claims dict or None on any failure.

    Returning None (rather than raising) keeps the caller simple: any invalid,
    expired, or malformed token is unauthenticated. The reason is logged at
    DEBUG and never sent to the client.

    Raises:
        MisconfigurationError: JWT_SECRET is not configured.
    """
    key = _signing_key()
    try:
        payload = jwt.decode(token, key, algorithms=[_ALGORITHM])
    except JWTError as e:
        logger.debug("Rejected session token: %s", e)
        return None
    if not payload.get("sub") or "role" not in payload:
        return None
    return payload


# ---------------------------------------------------------------------------
# Password reset tokens
# ---------------------------------------------------------------------------


def generate_reset_token() -> str:
    """Return a 64-hex-char random token (256 bits of entropy)."""
    return secrets.token_hex(32)


def hash_reset_token(raw_token: str) -> str:
    return hashlib.sha256(raw_token.encode("utf-8")).hexdigest()
