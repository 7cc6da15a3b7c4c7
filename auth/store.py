"""
auth/store.py -- SQLAlchemy Core persistence layer for auth entities.

Pattern: Repository + Data Mapper. UserStore is the repository; the
_row_to_* functions are the mappers. Route and service code never touches
SQL directly.

Tables (registered on the shared core.db.metadata so the restore engine can
replace them inside one transaction with the rest of the database):
  users                  -- local accounts
  oauth_accounts         -- external identity links, FK -> users
  password_reset_tokens  -- hashed one-time tokens, FK -> users

Security:
  All queries use bound parameters. No f-strings in SQL.

  Username lookups compare lower(username) against the normalized login, so
  uniqueness and lookup are both case-insensitive even for rows restored
  from a backup that predates normalization.

  UNIQUE(issuer, subject) and UNIQUE(issuer, user_id) are enforced by the
  database. Link races surface as IntegrityError to the caller.

Layer rule: imports only core/ and auth/models.
"""

from __future__ import annotations

import uuid
from datetime import datetime, timezone

from sqlalchemy import (
    Boolean,
    Column,
    ForeignKey,
    Index,
    String,
    Table,
    Text,
    UniqueConstraint,
    func,
    select,
)
from sqlalchemy.engine import Engine

from auth.models import ExternalIdentity, PasswordResetToken, User
from core.db import metadata, now_iso, parse_iso

# ---------------------------------------------------------------------------
# Schema
# ---------------------------------------------------------------------------

users_table = Table(
    "users",
    metadata,
    Column("id", String(36), primary_key=True),
    Column("username", String(255), nullable=False, unique=True),
    Column("display_name", String(255)),
    Column("avatar_url", Text),
    Column("theme_preference", String(10), nullable=False, server_default="light"),
    Column("password_hash", Text, nullable=False),
    Column("role", String(10), nullable=False, server_default="user"),
    Column("is_active", Boolean, nullable=False, server_default="1"),
    Column("created_at", String(40), nullable=False),
    Column("updated_at", String(40), nullable=False),
    Column("last_login_at", String(40)),
)

oauth_accounts_table = Table(
    "oauth_accounts",
    metadata,
    Column("id", String(36), primary_key=True),
    Column("provider", String(100), nullable=False),
    Column("issuer", Text, nullable=False),
    Column("subject", Text, nullable=False),
    Column("user_id", String(36), ForeignKey("users.id", ondelete="CASCADE"), nullable=False),
    Column("created_at", String(40), nullable=False),
    UniqueConstraint("issuer", "subject", name="uq_oauth_issuer_subject"),
    UniqueConstraint("issuer", "user_id", name="uq_oauth_issuer_user"),
)

reset_tokens_table = Table(
    "password_reset_tokens",
    metadata,
    Column("id", String(36), primary_key=True),
    Column("user_id", String(36), ForeignKey("users.id", ondelete="CASCADE"), nullable=False),
    Column("token_hash", String(64), nullable=False),
    Column("expires_at", String(40), nullable=False),
    Column("used_at", String(40)),
    Column("created_at", String(40), nullable=False),
    Index("idx_password_reset_tokens_user_id", "user_id"),
    Index("idx_password_reset_tokens_token_hash", "token_hash"),
)

_TABLES = [users_table, oauth_accounts_table, reset_tokens_table]

# Columns a caller may change through update_user(). id, username and the
# timestamps are managed by the store itself.
_MUTABLE_USER_FIELDS = {"display_name", "avatar_url", "theme_preference", "password_hash", "role", "is_active"}


def normalize_login(value: str | None) -> str:
    return (value or "").strip().lower()


# ---------------------------------------------------------------------------
# Repository
# ---------------------------------------------------------------------------


class UserStore:
    """Repository for User, ExternalIdentity and PasswordResetToken entities.

    Usage:
        store = UserStore(engine)
        uid = store.create_user(User(username="alice", password_hash=hash_password("secret123")))
        user = store.get_by_username("Alice")
    """

    def __init__(self, engine: Engine) -> None:
        self.engine = engine
        metadata.create_all(self.engine, tables=_TABLES)

    # ------------------------------------------------------------------
    # User queries
    # ------------------------------------------------------------------

    def has_users(self) -> bool:
        """Return True if at least one user record exists.

        Gates the bootstrap endpoint and the env-credential bootstrap login.
        """
        with self.engine.connect() as conn:
            row = conn.execute(select(users_table.c.id).limit(1)).first()
        return row is not None

    def create_user(self, user: User) -> str:
        """Insert a new user and return its assigned id.

        Raises sqlalchemy.exc.IntegrityError if the username already exists.
        Callers catch it as a signal that a concurrent request won the race.
        """
        user_id = str(uuid.uuid4())
        now = now_iso()
        with self.engine.begin() as conn:
            conn.execute(
                users_table.insert().values(
                    id=user_id,
                    username=normalize_login(user.username),
                    display_name=user.display_name,
                    avatar_url=user.avatar_url,
                    theme_preference=user.theme_preference,
                    password_hash=user.password_hash,
                    role=user.role,
                    is_active=user.is_active,
                    created_at=now,
                    updated_at=now,
                )
            )
        return user_id

    def create_first_admin(self, user: User) -> str | None:
        """Create `user` as an admin only if the users table is empty.

        The emptiness check and the insert share one transaction, which
        narrows (but on SQLite cannot fully close) the window where two
        bootstrap requests both see an empty table. The UNIQUE username
        constraint catches the remaining same-name race; callers treat
        IntegrityError exactly like a None return.
        """
        user_id = str(uuid.uuid4())
        now = now_iso()
        with self.engine.begin() as conn:
            if conn.execute(select(users_table.c.id).limit(1)).first() is not None:
                return None
            conn.execute(
                users_table.insert().values(
                    id=user_id,
                    username=normalize_login(user.username),
                    display_name=user.display_name,
                    theme_preference=user.theme_preference,
                    password_hash=user.password_hash,
                    role="admin",
                    is_active=True,
                    created_at=now,
                    updated_at=now,
                )
            )
        return user_id

    def get_by_username(self, username: str) -> User | None:
        """Case-insensitive lookup by login. Returns None if not found."""
        normalized = normalize_login(username)
        if not normalized:
            return None
        with self.engine.connect() as conn:
            row = conn.execute(
                users_table.select().where(func.lower(users_table.c.username) == normalized).limit(1)
            ).first()
        return _row_to_user(row) if row is not None else None

    def get_by_id(self, user_id: str) -> User | None:
        with self.engine.connect() as conn:
            row = conn.execute(users_table.select().where(users_table.c.id == user_id)).first()
        return _row_to_user(row) if row is not None else None

    def list_users(self) -> list[User]:
        """Return all users in creation order. Admin-only operation."""
        with self.engine.connect() as conn:
            rows = conn.execute(users_table.select().order_by(users_table.c.created_at)).fetchall()
        return [_row_to_user(r) for r in rows]

    def update_user(self, user_id: str, **fields) -> bool:
        """Update mutable fields on an existing user and stamp updated_at.

        Returns True if a row was updated, False if user_id was not found.
        Raises ValueError for fields outside _MUTABLE_USER_FIELDS.
        """
        unknown = set(fields) - _MUTABLE_USER_FIELDS
        if unknown:
            raise ValueError(f"Unknown user fields: {unknown!r}")
        with self.engine.begin() as conn:
            result = conn.execute(
                users_table.update().where(users_table.c.id == user_id).values(**fields, updated_at=now_iso())
            )
        return result.rowcount > 0

    def count_active_admins(self) -> int:
        """Return the number of active admin users.

        Used by PATCH /users/{id} to prevent removing the last admin [M4].
        """
        with self.engine.connect() as conn:
            result = conn.execute(
                select(func.count())
                .select_from(users_table)
                .where((users_table.c.role == "admin") & (users_table.c.is_active.is_(True)))
            ).scalar()
        return result or 0

    def update_last_login(self, user_id: str) -> None:
        """Stamp last_login_at on every successful authentication (password or OIDC)."""
        now = now_iso()
        with self.engine.begin() as conn:
            conn.execute(
                users_table.update().where(users_table.c.id == user_id).values(last_login_at=now, updated_at=now)
            )

    # ------------------------------------------------------------------
    # External identity links
    # ------------------------------------------------------------------

    def get_identity(self, issuer: str, subject: str) -> ExternalIdentity | None:
        with self.engine.connect() as conn:
            row = conn.execute(
                oauth_accounts_table.select().where(
                    (oauth_accounts_table.c.issuer == issuer) & (oauth_accounts_table.c.subject == subject)
                )
            ).first()
        return _row_to_identity(row) if row is not None else None

    def get_identity_for_user(self, issuer: str, user_id: str) -> ExternalIdentity | None:
        with self.engine.connect() as conn:
            row = conn.execute(
                oauth_accounts_table.select().where(
                    (oauth_accounts_table.c.issuer == issuer) & (oauth_accounts_table.c.user_id == user_id)
                )
            ).first()
        return _row_to_identity(row) if row is not None else None

    def list_identities(self, user_id: str) -> list[ExternalIdentity]:
        with self.engine.connect() as conn:
            rows = conn.execute(
                oauth_accounts_table.select()
                .where(oauth_accounts_table.c.user_id == user_id)
                .order_by(oauth_accounts_table.c.created_at)
            ).fetchall()
        return [_row_to_identity(r) for r in rows]

    def link_identity(self, identity: ExternalIdentity) -> str:
        """Insert an identity link and return its id.

        Raises sqlalchemy.exc.IntegrityError when either uniqueness rule is
        violated (identity already linked, or user already linked for this
        issuer). The OIDC bridge checks both first; the constraint is the
        backstop for concurrent callbacks.
        """
        link_id = str(uuid.uuid4())
        with self.engine.begin() as conn:
            conn.execute(
                oauth_accounts_table.insert().values(
                    id=link_id,
                    provider=identity.provider,
                    issuer=identity.issuer,
                    subject=identity.subject,
                    user_id=identity.user_id,
                    created_at=now_iso(),
                )
            )
        return link_id

    # ------------------------------------------------------------------
    # Password reset tokens
    # ------------------------------------------------------------------

    def create_reset_token(self, user_id: str, token_hash: str, expires_at: str) -> str:
        token_id = str(uuid.uuid4())
        with self.engine.begin() as conn:
            conn.execute(
                reset_tokens_table.insert().values(
                    id=token_id,
                    user_id=user_id,
                    token_hash=token_hash,
                    expires_at=expires_at,
                    created_at=now_iso(),
                )
            )
        return token_id

    def find_active_reset_token(self, token_hash: str) -> PasswordResetToken | None:
        """Return the newest unconsumed, unexpired token with this hash, or None.

        Expiry is compared as parsed datetimes rather than in SQL so rows
        restored with a different ISO 8601 layout still compare correctly.
        """
        with self.engine.connect() as conn:
            rows = conn.execute(
                reset_tokens_table.select()
                .where((reset_tokens_table.c.token_hash == token_hash) & (reset_tokens_table.c.used_at.is_(None)))
                .order_by(reset_tokens_table.c.created_at.desc())
            ).fetchall()
        now = datetime.now(timezone.utc)
        for row in rows:
            expires_at = parse_iso(row.expires_at)
            if expires_at is not None and expires_at > now:
                return _row_to_reset_token(row)
        return None

    def consume_reset_token(self, token_id: str, user_id: str, password_hash: str) -> bool:
        """Mark the token used and store the new password hash atomically.

        The used_at IS NULL guard makes the mark a compare-and-set: of two
        concurrent consumers only one sees rowcount == 1; the other returns
        before touching the password.

        Returns True on success, False if the token was already consumed.
        """
        now = now_iso()
        with self.engine.begin() as conn:
            marked = conn.execute(
                reset_tokens_table.update()
                .where((reset_tokens_table.c.id == token_id) & (reset_tokens_table.c.used_at.is_(None)))
                .values(used_at=now)
            )
            if marked.rowcount != 1:
                return False
            conn.execute(
                users_table.update()
                .where(users_table.c.id == user_id)
                .values(password_hash=password_hash, updated_at=now)
            )
        return True


# ---------------------------------------------------------------------------
# Row mappers (Data Mapper pattern)
# ---------------------------------------------------------------------------


def _row_to_user(row) -> User:
    return User(
        id=row.id,
        username=row.username,
        display_name=row.display_name,
        avatar_url=row.avatar_url,
        theme_preference=row.theme_preference or "light",
        password_hash=row.password_hash,
        role=row.role,
        is_active=bool(row.is_active),
        created_at=row.created_at,
        updated_at=row.updated_at,
        last_login_at=row.last_login_at,
    )


def _row_to_identity(row) -> ExternalIdentity:
    return ExternalIdentity(
        id=row.id,
        provider=row.provider,
        issuer=row.issuer,
        subject=row.subject,
        user_id=row.user_id,
        created_at=row.created_at,
    )


def _row_to_reset_token(row) -> PasswordResetToken:
    return PasswordResetToken(
        id=row.id,
        user_id=row.user_id,
        token_hash=row.token_hash,
        expires_at=row.expires_at,
        used_at=row.used_at,
        created_at=row.created_at,
    )
