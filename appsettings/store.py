"""
appsettings/store.py -- SQLAlchemy Core persistence for the settings document.

Pattern: Repository. The document lives in a single row (id = 1) of
app_settings as JSON text. The row is created lazily with defaults the first
time anything reads it, so callers can always assume it exists.

Concurrency: last write wins. update() reads and writes inside one
transaction, merging the validated partial onto whatever is stored at that
moment; there is no version check.

Unknown keys already in the stored document (e.g. from a newer client or a
restored backup) are kept on merge and returned to admins.

Layer rule: imports only core/ and appsettings/.
"""

from __future__ import annotations

import json
import logging

from sqlalchemy import Column, Integer, String, Table, Text
from sqlalchemy.engine import Connection, Engine
from sqlalchemy.exc import IntegrityError

from appsettings.models import AppSettings
from appsettings.validation import default_document, project, validate_update
from core.db import metadata, now_iso
from core.errors import ValidationError

logger = logging.getLogger("appbudget.settings")

SETTINGS_ROW_ID = 1

app_settings_table = Table(
    "app_settings",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=False),
    Column("data", Text, nullable=False),
    Column("updated_at", String(40), nullable=False),
)


def _load(conn: Connection) -> dict | None:
    row = conn.execute(app_settings_table.select().where(app_settings_table.c.id == SETTINGS_ROW_ID)).first()
    if row is None:
        return None
    try:
        data = json.loads(row.data)
    except (TypeError, ValueError):
        logger.error("Stored settings document is not valid JSON; falling back to defaults")
        return default_document()
    return data if isinstance(data, dict) else default_document()


class SettingsStore:
    """Repository for the singleton settings document.

    Usage:
        store = SettingsStore(engine)
        doc = store.read(role="user")            # OIDC fields stripped
        doc = store.update({"sortByCost": True}, role="admin")
        hours = store.get().session_duration_hours
    """

    def __init__(self, engine: Engine) -> None:
        self.engine = engine
        metadata.create_all(self.engine, tables=[app_settings_table])

    def _ensure(self) -> dict:
        with self.engine.connect() as conn:
            data = _load(conn)
        if data is not None:
            return data
        defaults = default_document()
        try:
            with self.engine.begin() as conn:
                conn.execute(
                    app_settings_table.insert().values(
                        id=SETTINGS_ROW_ID, data=json.dumps(defaults), updated_at=now_iso()
                    )
                )
            logger.info("Settings document created with defaults")
        except IntegrityError:
            # A concurrent first read inserted it; use theirs.
            with self.engine.connect() as conn:
                return _load(conn) or defaults
        return defaults

    def document(self) -> dict:
        """Return the full stored document with defaults filled in for missing keys."""
        return {**default_document(), **self._ensure()}

    def get(self) -> AppSettings:
        return AppSettings.from_document(self._ensure())

    def read(self, role: str | None) -> dict:
        return project(self.document(), role)

    def update(self, partial: dict, role: str | None) -> dict:
        """Merge a validated partial update and return the caller's view of the result.

        Raises:
            ValidationError("No updates provided"): nothing in `partial` was both
                visible to `role` and valid.
        """
        if not isinstance(partial, dict):
            raise ValidationError("No updates provided")
        self._ensure()
        allowed = project(partial, role)
        with self.engine.begin() as conn:
            current = {**default_document(), **(_load(conn) or {})}
            updates = validate_update(allowed, current)
            if not updates:
                raise ValidationError("No updates provided")
            merged = {**current, **updates}
            conn.execute(
                app_settings_table.update()
                .where(app_settings_table.c.id == SETTINGS_ROW_ID)
                .values(data=json.dumps(merged), updated_at=now_iso())
            )
        if role == "admin" and any(k.startswith("oidc") for k in updates):
            logger.info("OIDC settings updated: %s", sorted(k for k in updates if k.startswith("oidc")))
        return project(merged, role)
