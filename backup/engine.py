"""
backup/engine.py -- Snapshot export and all-or-nothing restore.

Snapshot document (version 1):
    {
      "version": 1,
      "exportedAt": "...",
      "includesUsers": true,
      "settings": {"data": {...}, "updatedAt": "..."},
      "months": [{"monthKey", "data", "createdAt", "updatedAt"}, ...],
      "users": [{"id", "username", "displayName", "avatarUrl", "themePreference",
                 "passwordHash", "role", "isActive", "createdAt", "updatedAt",
                 "lastLoginAt"}, ...],                       # only with users
      "oauthAccounts": [{"id", "provider", "issuer", "subject", "userId",
                         "createdAt"}, ...]                  # only with users
    }

Restore is a full replace. RESTORE_STEPS lists the tables in insert order
(parents before children). Deletes walk the same list backwards, so
children go before parents. Steps marked user_scoped only take part when
the snapshot carries users; otherwise the accounts in place are left alone.

Every row is validated and converted BEFORE the transaction opens. Any bad
record raises ValidationError and nothing is touched. Inside the
transaction, a constraint violation (duplicate username, duplicate identity
link) also aborts everything: engine.begin() rolls back on the way out.

Layer rule: imports core/ and the store modules that own the tables.
"""

from __future__ import annotations

import json
import logging
import uuid
from dataclasses import dataclass
from typing import Any, Callable

from sqlalchemy import Table
from sqlalchemy.engine import Engine
from sqlalchemy.exc import IntegrityError

from appsettings.store import SETTINGS_ROW_ID, app_settings_table
from appsettings.validation import default_document
from auth.models import ROLES, THEMES
from auth.store import normalize_login, oauth_accounts_table, reset_tokens_table, users_table
from budget.store import is_valid_month_key, monthly_budgets_table
from core.db import now_iso
from core.errors import ValidationError

logger = logging.getLogger("appbudget.backup")

SNAPSHOT_VERSION = 1
IMPORT_MODES = ("replace",)


# ---------------------------------------------------------------------------
# Export
# ---------------------------------------------------------------------------


def _loads_object(text: str | None) -> dict:
    try:
        value = json.loads(text) if text else {}
    except ValueError:
        return {}
    return value if isinstance(value, dict) else {}


def export_snapshot(engine: Engine, include_users: bool = False) -> dict:
    """Read the whole persisted state into one snapshot document.

    All reads share one connection (and so one transaction) so the snapshot
    is internally consistent.
    """
    with engine.connect() as conn:
        settings_row = conn.execute(
            app_settings_table.select().where(app_settings_table.c.id == SETTINGS_ROW_ID)
        ).first()
        month_rows = conn.execute(monthly_budgets_table.select().order_by(monthly_budgets_table.c.month_key)).fetchall()
        user_rows = link_rows = []
        if include_users:
            user_rows = conn.execute(users_table.select().order_by(users_table.c.created_at)).fetchall()
            link_rows = conn.execute(oauth_accounts_table.select().order_by(oauth_accounts_table.c.created_at)).fetchall()

    snapshot: dict[str, Any] = {
        "version": SNAPSHOT_VERSION,
        "exportedAt": now_iso(),
        "includesUsers": include_users,
        "settings": {
            "data": _loads_object(settings_row.data) if settings_row is not None else default_document(),
            "updatedAt": settings_row.updated_at if settings_row is not None else None,
        },
        "months": [
            {
                "monthKey": r.month_key,
                "data": _loads_object(r.data),
                "createdAt": r.created_at,
                "updatedAt": r.updated_at,
            }
            for r in month_rows
        ],
    }
    if include_users:
        snapshot["users"] = [
            {
                "id": r.id,
                "username": r.username,
                "displayName": r.display_name,
                "avatarUrl": r.avatar_url,
                "themePreference": r.theme_preference,
                "passwordHash": r.password_hash,
                "role": r.role,
                "isActive": bool(r.is_active),
                "createdAt": r.created_at,
                "updatedAt": r.updated_at,
                "lastLoginAt": r.last_login_at,
            }
            for r in user_rows
        ]
        snapshot["oauthAccounts"] = [
            {
                "id": r.id,
                "provider": r.provider,
                "issuer": r.issuer,
                "subject": r.subject,
                "userId": r.user_id,
                "createdAt": r.created_at,
            }
            for r in link_rows
        ]
    logger.info(
        "Snapshot exported: %d months, users included=%s", len(snapshot["months"]), include_users
    )
    return snapshot


# ---------------------------------------------------------------------------
# Row builders: snapshot -> validated table rows
# ---------------------------------------------------------------------------


def _require_list(snapshot: dict, key: str) -> list:
    value = snapshot.get(key)
    if not isinstance(value, list):
        raise ValidationError(f"Snapshot field '{key}' must be a list")
    return value


def _text(value: Any) -> str | None:
    return value if isinstance(value, str) and value else None


def _settings_rows(snapshot: dict, now: str) -> list[dict]:
    section = snapshot.get("settings")
    if section is None:
        return [{"id": SETTINGS_ROW_ID, "data": json.dumps(default_document()), "updated_at": now}]
    if not isinstance(section, dict) or not isinstance(section.get("data"), dict):
        raise ValidationError("Snapshot settings must be an object with a 'data' object")
    return [
        {
            "id": SETTINGS_ROW_ID,
            "data": json.dumps(section["data"]),
            "updated_at": _text(section.get("updatedAt")) or now,
        }
    ]


def _month_rows(snapshot: dict, now: str) -> list[dict]:
    rows = []
    seen = set()
    for index, entry in enumerate(_require_list(snapshot, "months")):
        if not isinstance(entry, dict) or not is_valid_month_key(entry.get("monthKey")):
            raise ValidationError(f"Invalid month key in months[{index}]")
        if not isinstance(entry.get("data"), dict):
            raise ValidationError(f"Month data must be an object in months[{index}]")
        if entry["monthKey"] in seen:
            raise ValidationError(f"Duplicate month key {entry['monthKey']}")
        seen.add(entry["monthKey"])
        rows.append(
            {
                "month_key": entry["monthKey"],
                "data": json.dumps(entry["data"]),
                "created_at": _text(entry.get("createdAt")) or now,
                "updated_at": _text(entry.get("updatedAt")) or now,
            }
        )
    return rows


def _user_rows(snapshot: dict, now: str) -> list[dict]:
    rows = []
    for index, entry in enumerate(_require_list(snapshot, "users")):
        if not isinstance(entry, dict):
            raise ValidationError(f"users[{index}] must be an object")
        user_id = _text(entry.get("id"))
        username = normalize_login(entry.get("username") if isinstance(entry.get("username"), str) else "")
        password_hash = _text(entry.get("passwordHash"))
        if not user_id or not username or not password_hash:
            raise ValidationError(f"users[{index}] requires id, username and passwordHash")
        role = entry.get("role", "user")
        if role not in ROLES:
            raise ValidationError(f"users[{index}] has an unknown role")
        theme = entry.get("themePreference")
        rows.append(
            {
                "id": user_id,
                "username": username,
                "display_name": _text(entry.get("displayName")),
                "avatar_url": _text(entry.get("avatarUrl")),
                "theme_preference": theme if theme in THEMES else "light",
                "password_hash": password_hash,
                "role": role,
                "is_active": entry.get("isActive", True) is not False,
                "created_at": _text(entry.get("createdAt")) or now,
                "updated_at": _text(entry.get("updatedAt")) or now,
                "last_login_at": _text(entry.get("lastLoginAt")),
            }
        )
    if not any(r["role"] == "admin" for r in rows):
        raise ValidationError("Snapshot must contain at least one admin user")
    return rows


def _oauth_rows(snapshot: dict, now: str) -> list[dict]:
    entries = snapshot.get("oauthAccounts") or []
    if not isinstance(entries, list):
        raise ValidationError("Snapshot field 'oauthAccounts' must be a list")
    user_ids = {u.get("id") for u in snapshot.get("users") or [] if isinstance(u, dict)}
    rows = []
    for index, entry in enumerate(entries):
        if not isinstance(entry, dict):
            raise ValidationError(f"oauthAccounts[{index}] must be an object")
        issuer = _text(entry.get("issuer"))
        subject = _text(entry.get("subject"))
        user_id = _text(entry.get("userId"))
        if not issuer or not subject or not user_id:
            raise ValidationError(f"oauthAccounts[{index}] requires issuer, subject and userId")
        if user_id not in user_ids:
            raise ValidationError(f"oauthAccounts[{index}] references a user not in the snapshot")
        rows.append(
            {
                "id": _text(entry.get("id")) or str(uuid.uuid4()),
                "provider": _text(entry.get("provider")) or "oidc",
                "issuer": issuer,
                "subject": subject,
                "user_id": user_id,
                "created_at": _text(entry.get("createdAt")) or now,
            }
        )
    return rows


def _no_rows(snapshot: dict, now: str) -> list[dict]:
    return []


# ---------------------------------------------------------------------------
# Restore plan
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class RestoreStep:
    name: str
    table: Table
    build_rows: Callable[[dict, str], list[dict]]
    user_scoped: bool = False


# Insert order. Deletes run in reverse.
RESTORE_STEPS: tuple[RestoreStep, ...] = (
    RestoreStep("settings", app_settings_table, _settings_rows),
    RestoreStep("months", monthly_budgets_table, _month_rows),
    RestoreStep("users", users_table, _user_rows, user_scoped=True),
    # Outstanding reset tokens belong to the replaced accounts: cleared, never restored.
    RestoreStep("password_reset_tokens", reset_tokens_table, _no_rows, user_scoped=True),
    RestoreStep("oauth_accounts", oauth_accounts_table, _oauth_rows, user_scoped=True),
)


def snapshot_includes_users(snapshot: dict) -> bool:
    if snapshot.get("includesUsers") and not isinstance(snapshot.get("users"), list):
        raise ValidationError("Snapshot declares users but carries none")
    return isinstance(snapshot.get("users"), list)


def plan_restore(snapshot: Any) -> list[tuple[RestoreStep, list[dict]]]:
    """Validate the whole snapshot and return (step, rows) pairs in insert order.

    Raises ValidationError on the first problem. Touches no storage.
    """
    if not isinstance(snapshot, dict):
        raise ValidationError("Snapshot must be an object")
    version = snapshot.get("version", SNAPSHOT_VERSION)
    if version != SNAPSHOT_VERSION:
        raise ValidationError(f"Unsupported snapshot version: {version!r}")
    with_users = snapshot_includes_users(snapshot)
    now = now_iso()
    return [
        (step, step.build_rows(snapshot, now))
        for step in RESTORE_STEPS
        if with_users or not step.user_scoped
    ]


def import_snapshot(engine: Engine, snapshot: Any, mode: str = "replace") -> dict[str, int]:
    """Replace the persisted state with `snapshot` in a single transaction.

    Returns the number of rows restored per step.

    Raises:
        ValidationError: unsupported mode, invalid snapshot, or a constraint
            violation during insert. The database is unchanged in every case.
    """
    if mode not in IMPORT_MODES:
        raise ValidationError(f"Unsupported import mode: {mode!r}. Only 'replace' is supported.")
    plan = plan_restore(snapshot)

    try:
        with engine.begin() as conn:
            for step, _ in reversed(plan):
                conn.execute(step.table.delete())
            for step, rows in plan:
                if rows:
                    conn.execute(step.table.insert(), rows)
    except IntegrityError as e:
        logger.warning("Restore aborted by constraint violation: %s", e.orig)
        raise ValidationError("Snapshot violates a uniqueness or reference constraint") from e

    counts = {step.name: len(rows) for step, rows in plan if step.build_rows is not _no_rows}
    logger.info("Snapshot restored (mode=%s): %s", mode, counts)
    return counts
