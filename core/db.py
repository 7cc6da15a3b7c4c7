"""
core/db.py -- Shared SQLAlchemy Core plumbing for every store.

All stores register their tables on the single `metadata` object defined here
and share one Engine. Sharing matters for the restore engine: a full-database
replace must run as ONE transaction across users, settings, and month data,
which is only possible when every table lives behind the same connection.

SQLite connections get two PRAGMAs on connect:
  journal_mode=WAL  -- readers proceed while a writer holds the lock.
  foreign_keys=ON   -- SQLite ignores FK constraints unless asked, and the
                       reset-token / identity-link tables rely on them.

PostgreSQL needs neither; swapping backends is a connection string change.

Layer rule: core/ is the kernel. No imports from the rest of the project.
"""

from __future__ import annotations

from datetime import datetime, timezone

from sqlalchemy import MetaData, create_engine, event
from sqlalchemy.engine import Engine

metadata = MetaData()


def _set_sqlite_pragmas(dbapi_conn, connection_record) -> None:
    """Enable WAL journal mode and FK enforcement.

    Set per-connection because SQLite PRAGMAs are not inherited by new
    connections from the pool.
    """
    cursor = dbapi_conn.cursor()
    cursor.execute("PRAGMA journal_mode=WAL")
    cursor.execute("PRAGMA foreign_keys=ON")
    cursor.close()


def create_db_engine(db_url: str, **engine_kwargs) -> Engine:
    """Build the process-wide Engine for the given SQLAlchemy URL.

    Extra keyword arguments go straight to create_engine() (the test suite
    passes poolclass=StaticPool to share one in-memory database across threads).
    """
    connect_args: dict = {}
    if db_url.startswith("sqlite"):
        # TestClient and the FastAPI threadpool hand connections across threads.
        connect_args["check_same_thread"] = False
    engine_kwargs.setdefault("pool_pre_ping", not db_url.startswith("sqlite"))
    engine = create_engine(db_url, connect_args=connect_args, **engine_kwargs)
    if db_url.startswith("sqlite"):
        event.listen(engine, "connect", _set_sqlite_pragmas)
    return engine


def now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def parse_iso(value: str | None) -> datetime | None:
    """Parse an ISO 8601 timestamp, treating naive values as UTC.

    Returns None for empty or malformed input so callers can treat an
    unreadable expiry as "not valid" without a try/except of their own.
    """
    if not value:
        return None
    try:
        dt = datetime.fromisoformat(value)
    except ValueError:
        return None
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt
