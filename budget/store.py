"""
budget/store.py -- SQLAlchemy Core persistence for monthly budget documents.

Pattern: Repository + Data Mapper. One row per month, keyed by "YYYY-MM";
the payload is an arbitrary JSON object owned by the frontend.

The key format is checked here as well as in the routes: the backup engine
writes through the same table and relies on is_valid_month_key().

Layer rule: imports only core/.
"""

from __future__ import annotations

import json
import re
from dataclasses import dataclass

from sqlalchemy import Column, String, Table, Text
from sqlalchemy.engine import Engine

from core.db import metadata, now_iso
from core.errors import ValidationError

MONTH_KEY_RE = re.compile(r"^\d{4}-(0[1-9]|1[0-2])$", re.ASCII)

monthly_budgets_table = Table(
    "monthly_budgets",
    metadata,
    Column("month_key", String(7), primary_key=True),
    Column("data", Text, nullable=False),
    Column("created_at", String(40), nullable=False),
    Column("updated_at", String(40), nullable=False),
)


def is_valid_month_key(value) -> bool:
    return isinstance(value, str) and MONTH_KEY_RE.fullmatch(value) is not None


def require_month_key(value) -> str:
    if not is_valid_month_key(value):
        raise ValidationError("Invalid month key")
    return value


@dataclass
class Month:
    month_key: str
    data: dict
    created_at: str | None = None
    updated_at: str | None = None


class MonthStore:
    """Repository for Month documents.

    Usage:
        store = MonthStore(engine)
        store.upsert("2026-03", {"incomes": [], "expenses": []})
        month = store.get("2026-03")
    """

    def __init__(self, engine: Engine) -> None:
        self.engine = engine
        metadata.create_all(self.engine, tables=[monthly_budgets_table])

    def list_months(self) -> list[Month]:
        with self.engine.connect() as conn:
            rows = conn.execute(monthly_budgets_table.select().order_by(monthly_budgets_table.c.month_key)).fetchall()
        return [_row_to_month(r) for r in rows]

    def get(self, month_key: str) -> Month | None:
        require_month_key(month_key)
        with self.engine.connect() as conn:
            row = conn.execute(
                monthly_budgets_table.select().where(monthly_budgets_table.c.month_key == month_key)
            ).first()
        return _row_to_month(row) if row is not None else None

    def upsert(self, month_key: str, data: dict) -> None:
        """Insert or replace the payload for `month_key`. created_at survives replacement."""
        require_month_key(month_key)
        if not isinstance(data, dict):
            raise ValidationError("Invalid payload")
        payload = json.dumps(data)
        now = now_iso()
        with self.engine.begin() as conn:
            updated = conn.execute(
                monthly_budgets_table.update()
                .where(monthly_budgets_table.c.month_key == month_key)
                .values(data=payload, updated_at=now)
            )
            if updated.rowcount == 0:
                conn.execute(
                    monthly_budgets_table.insert().values(
                        month_key=month_key, data=payload, created_at=now, updated_at=now
                    )
                )

    def delete(self, month_key: str) -> bool:
        """Delete a month. Returns False when there was nothing to delete."""
        require_month_key(month_key)
        with self.engine.begin() as conn:
            result = conn.execute(
                monthly_budgets_table.delete().where(monthly_budgets_table.c.month_key == month_key)
            )
        return result.rowcount > 0


def _row_to_month(row) -> Month:
    try:
        data = json.loads(row.data)
    except (TypeError, ValueError):
        data = {}
    return Month(
        month_key=row.month_key,
        data=data if isinstance(data, dict) else {},
        created_at=row.created_at,
        updated_at=row.updated_at,
    )
