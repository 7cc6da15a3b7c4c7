"""
auth/models.py -- Domain dataclasses for authentication entities.

Pattern: Data class (pure data container, zero logic). Stores and services
do the work; these dataclasses own the domain shape.

Layer rule: no imports from api/, appsettings/, budget/, or backup/.
"""

from __future__ import annotations

from dataclasses import dataclass

ROLES = ("admin", "user")
THEMES = ("light", "dark")


@dataclass
class User:
    """A local account.

    username is stored normalized (trimmed, lower-case), which is what makes
    uniqueness case-insensitive. id is a UUID4 string assigned by the store
    and never changes -- tokens and identity links reference it.

    password_hash is always present: external identities are linked to an
    existing local account, never provisioned from scratch.
    """

    username: str
    password_hash: str
    role: str = "user"  # "admin" | "user"
    id: str | None = None
    display_name: str | None = None
    avatar_url: str | None = None
    theme_preference: str = "light"  # "light" | "dark"
    is_active: bool = True
    created_at: str | None = None
    updated_at: str | None = None
    last_login_at: str | None = None


@dataclass
class ExternalIdentity:
    """Binds one (issuer, subject) pair from an OIDC provider to a local user.

    Both (issuer, subject) and (issuer, user_id) are unique: one identity maps
    to at most one user, and a user links at most one identity per issuer.
    Rows are never updated; they disappear only through a full restore.
    """

    provider: str
    issuer: str
    subject: str
    user_id: str
    id: str | None = None
    created_at: str | None = None


@dataclass
class PasswordResetToken:
    """A one-time credential-recovery artifact.

    Only token_hash (sha256 of the raw token) is persisted. The raw token is
    returned once at issuance and is unrecoverable afterward.
    """

    user_id: str
    token_hash: str
    expires_at: str
    id: str | None = None
    used_at: str | None = None
    created_at: str | None = None
