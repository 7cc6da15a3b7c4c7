"""
appsettings/validation.py -- Field table, per-field validators, and the role projection.

Every updatable key of the settings document is declared once in FIELDS with:
  validate   -- pure function: raw wire value -> normalized value, or DROP
  admin_only -- stripped from reads and from incoming updates for non-admins
  merge      -- how a validated value combines with the stored one

Partial updates are best-effort: unrecognized keys and values that fail their
validator are dropped silently. Only an update that ends up empty is an
error (see SettingsStore.update).

project(document, role) is the one place that knows which keys a role may
see. It runs on the stored document before a read is returned and on the
incoming partial before it is validated, so the two paths cannot drift apart.
"""

from __future__ import annotations

import math
import re
import uuid
from dataclasses import dataclass
from typing import Any, Callable

LANGUAGES = ("fr", "en")
CURRENCIES = ("EUR", "USD")
PERSONS = ("person1", "person2")

MIN_SESSION_HOURS = 1
MAX_SESSION_HOURS = 24
MAX_BANK_ACCOUNTS = 3
DEFAULT_ACCOUNT_COLORS = ("#27A968", "#3867F0", "#E2A13A")

_HEX_COLOR_RE = re.compile(r"^#[0-9a-fA-F]{6}$")
_MAX_ACCOUNT_NAME = 100
_MAX_ACCOUNT_ID = 64


class _Drop:
    def __repr__(self) -> str:
        return "DROP"


DROP: Any = _Drop()


# ---------------------------------------------------------------------------
# Validators (raw value -> normalized value | DROP)
# ---------------------------------------------------------------------------


def enum_of(*choices: str) -> Callable[[Any], Any]:
    def validate(value: Any) -> Any:
        return value if isinstance(value, str) and value in choices else DROP

    return validate


def validate_bool(value: Any) -> Any:
    return value if isinstance(value, bool) else DROP


def text_up_to(max_length: int, empty_default: str | None = None) -> Callable[[Any], Any]:
    def validate(value: Any) -> Any:
        if not isinstance(value, str):
            return DROP
        trimmed = value.strip()
        if len(trimmed) > max_length:
            return DROP
        if not trimmed and empty_default is not None:
            return empty_default
        return trimmed

    return validate


def validate_session_hours(value: Any) -> Any:
    """Accept any finite number (or numeric string), round it, clamp to [1, 24]."""
    if isinstance(value, bool):
        return DROP
    if isinstance(value, str):
        try:
            value = float(value.strip())
        except ValueError:
            return DROP
    if not isinstance(value, (int, float)) or not math.isfinite(value):
        return DROP
    return max(MIN_SESSION_HOURS, min(MAX_SESSION_HOURS, int(round(value))))


def _account_id(raw: Any, seen: set[str]) -> str:
    candidate = raw.strip() if isinstance(raw, str) else ""
    if not candidate or len(candidate) > _MAX_ACCOUNT_ID or candidate in seen:
        candidate = uuid.uuid4().hex[:12]
        while candidate in seen:
            candidate = uuid.uuid4().hex[:12]
    seen.add(candidate)
    return candidate


def normalize_account_list(entries: Any, seen: set[str] | None = None) -> list[dict] | None:
    """Normalize one person's account list. Returns None if `entries` is not a list.

    Entries without a non-empty name are discarded first, then the list is
    capped at MAX_BANK_ACCOUNTS. Ids that are missing or repeat an earlier
    one get a fresh id. Colors that are not #RRGGBB fall back to the
    default palette entry for that position.
    """
    if not isinstance(entries, list):
        return None
    seen = set() if seen is None else seen
    named = [
        e for e in entries
        if isinstance(e, dict) and isinstance(e.get("name"), str) and e["name"].strip()
    ]
    accounts = []
    for index, entry in enumerate(named[:MAX_BANK_ACCOUNTS]):
        color = entry.get("color")
        if not isinstance(color, str) or not _HEX_COLOR_RE.match(color):
            color = DEFAULT_ACCOUNT_COLORS[index % len(DEFAULT_ACCOUNT_COLORS)]
        accounts.append(
            {
                "id": _account_id(entry.get("id"), seen),
                "name": entry["name"].strip()[:_MAX_ACCOUNT_NAME],
                "color": color,
            }
        )
    return accounts


def validate_bank_accounts(value: Any) -> Any:
    """Validate a {person1: [...], person2: [...]} mapping. Either person may be omitted."""
    if not isinstance(value, dict):
        return DROP
    seen: set[str] = set()
    result = {}
    for person in PERSONS:
        if person not in value:
            continue
        accounts = normalize_account_list(value[person], seen)
        if accounts is not None:
            result[person] = accounts
    return result or DROP


# ---------------------------------------------------------------------------
# Merge rules (stored value, validated value -> new stored value)
# ---------------------------------------------------------------------------


def replace(current: Any, value: Any) -> Any:
    return value


def merge_per_person(current: Any, value: dict) -> dict:
    """Lay the submitted persons over the stored ones.

    Account ids stay unique across the merged document: a submitted id that
    a kept (not submitted) person already holds is regenerated.
    """
    base = {person: [] for person in PERSONS}
    if isinstance(current, dict):
        base.update({p: current[p] for p in PERSONS if isinstance(current.get(p), list)})
    seen = {
        account["id"]
        for person in PERSONS
        if person not in value
        for account in base[person]
        if isinstance(account, dict) and isinstance(account.get("id"), str)
    }
    for person, accounts in value.items():
        merged = []
        for account in accounts:
            if account["id"] in seen:
                account = {**account, "id": _account_id(None, seen)}
            else:
                seen.add(account["id"])
            merged.append(account)
        base[person] = merged
    return base


# ---------------------------------------------------------------------------
# Field table
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class FieldSpec:
    key: str
    default: Callable[[], Any]
    validate: Callable[[Any], Any]
    admin_only: bool = False
    merge: Callable[[Any, Any], Any] = replace


FIELDS: tuple[FieldSpec, ...] = (
    FieldSpec("languagePreference", lambda: "fr", enum_of(*LANGUAGES)),
    FieldSpec("currencyPreference", lambda: "EUR", enum_of(*CURRENCIES)),
    FieldSpec("sessionDurationHours", lambda: 12, validate_session_hours),
    FieldSpec("sortByCost", lambda: False, validate_bool),
    FieldSpec("jointAccountEnabled", lambda: True, validate_bool),
    FieldSpec("bankAccountsEnabled", lambda: False, validate_bool),
    FieldSpec(
        "bankAccounts",
        lambda: {person: [] for person in PERSONS},
        validate_bank_accounts,
        merge=merge_per_person,
    ),
    FieldSpec("oidcEnabled", lambda: False, validate_bool, admin_only=True),
    FieldSpec("oidcProviderName", lambda: "SSO", text_up_to(100, empty_default="SSO"), admin_only=True),
    FieldSpec("oidcIssuer", lambda: "", text_up_to(500), admin_only=True),
    FieldSpec("oidcClientId", lambda: "", text_up_to(500), admin_only=True),
    FieldSpec("oidcClientSecret", lambda: "", text_up_to(500), admin_only=True),
    FieldSpec("oidcRedirectUri", lambda: "", text_up_to(500), admin_only=True),
)

FIELDS_BY_KEY = {entry.key: entry for entry in FIELDS}
ADMIN_ONLY_KEYS = frozenset(entry.key for entry in FIELDS if entry.admin_only)


def default_document() -> dict:
    return {entry.key: entry.default() for entry in FIELDS}


# ---------------------------------------------------------------------------
# Projection and update validation
# ---------------------------------------------------------------------------


def project(document: dict, role: str | None) -> dict:
    """Return the view of `document` that a caller with `role` may see or write.

    Admins get the document unchanged; everyone else loses the admin-only keys.
    """
    if role == "admin":
        return dict(document)
    return {k: v for k, v in document.items() if k not in ADMIN_ONLY_KEYS}


def validate_update(partial: dict, current: dict) -> dict:
    """Validate each recognized key of `partial` and merge it with `current`.

    Returns only the keys that survived, already merged, ready to be laid
    over the stored document.
    """
    updates = {}
    for key, raw in partial.items():
        entry = FIELDS_BY_KEY.get(key)
        if entry is None:
            continue
        value = entry.validate(raw)
        if value is DROP:
            continue
        updates[key] = entry.merge(current.get(key), value)
    return updates


def coerce(document: dict) -> dict:
    """Return a fully-populated, valid document: defaults for missing or invalid keys.

    Used when reading a stored document that may predate a field or come
    from a hand-edited backup.
    """
    result = {}
    for entry in FIELDS:
        value = entry.validate(document[entry.key]) if entry.key in document else DROP
        if value is DROP:
            value = entry.default()
        elif entry.merge is merge_per_person:
            value = merge_per_person(None, value)
        result[entry.key] = value
    return result
