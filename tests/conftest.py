"""
tests/conftest.py -- Shared test fixtures for App Budget integration tests.

This module provides:
  - _make_engine(): a fresh in-memory SQLite engine per test
  - _patch_lifespan(): wires stores built on that engine into app.state,
    bypassing the real startup (which would open the configured database)
  - client: TestClient with follow_redirects=False
  - admin / member users and their Authorization headers

Design: StaticPool (one DBAPI connection shared by every checkout) is what
keeps a plain "sqlite://" database alive and identical across the threads
TestClient runs sync handlers in. Each test gets its own engine, so nothing
leaks between tests.

Environment variables must be set before any app/core import: get_settings()
is cached on first call and api.limiter / api.main read it at import time.
"""

from __future__ import annotations

import os
import tempfile
from collections.abc import Generator
from contextlib import asynccontextmanager

# CRITICAL: set before any api/auth/core import (see module docstring).
os.environ["DEBUG"] = "true"
os.environ["JWT_SECRET"] = "test-signing-key-" + "0123456789abcdef" * 3
os.environ["ADMIN_USERNAME"] = "owner"
os.environ["ADMIN_PASSWORD"] = "owner-password-1"
os.environ["RATE_LIMIT_ENABLED"] = "false"
os.environ["FRONTEND_BASE_URL"] = "http://frontend.test"
os.environ["UPLOADS_DIR"] = tempfile.mkdtemp(prefix="appbudget-test-uploads-")
os.environ["VERSION_REGISTRY_URL"] = ""

import pytest
from fastapi.testclient import TestClient
from sqlalchemy.engine import Engine
from sqlalchemy.pool import StaticPool

from api.main import app, init_state
from auth.models import User
from auth.store import UserStore
from auth.tokens import create_access_token, hash_password
from core.db import create_db_engine

ADMIN_PASSWORD = "alice-password-1"
MEMBER_PASSWORD = "bob-password-1"


# ---------------------------------------------------------------------------
# Engine / lifespan helpers
# ---------------------------------------------------------------------------


def _make_engine() -> Engine:
    return create_db_engine("sqlite://", poolclass=StaticPool)


def _patch_lifespan(engine: Engine):
    """Return an async context manager that replaces the real lifespan.

    Uses the same init_state() as production so the wiring under test is
    the real one; only the engine differs.
    """

    @asynccontextmanager
    async def test_lifespan(app):
        init_state(app, engine)
        yield

    return test_lifespan


# ---------------------------------------------------------------------------
# User helpers
# ---------------------------------------------------------------------------


def make_user(
    store: UserStore,
    username: str,
    password: str,
    role: str = "user",
    is_active: bool = True,
    display_name: str | None = None,
) -> User:
    uid = store.create_user(
        User(
            username=username,
            password_hash=hash_password(password),
            role=role,
            is_active=is_active,
            display_name=display_name or username.capitalize(),
        )
    )
    return store.get_by_id(uid)


def auth_headers(user: User) -> dict[str, str]:
    return {"Authorization": f"Bearer {create_access_token(user, 1)}"}


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def engine() -> Generator[Engine, None, None]:
    eng = _make_engine()
    yield eng
    eng.dispose()


@pytest.fixture
def client(engine: Engine) -> Generator[TestClient, None, None]:
    """TestClient over the real app with a patched lifespan.

    follow_redirects=False is essential for the OIDC tests: they assert on
    redirect *locations*, which are invisible once the client follows them.
    """
    app.router.lifespan_context = _patch_lifespan(engine)
    with TestClient(app, follow_redirects=False, raise_server_exceptions=True) as c:
        yield c


@pytest.fixture
def user_store(client: TestClient) -> UserStore:
    return app.state.user_store


@pytest.fixture
def admin(user_store: UserStore) -> User:
    return make_user(user_store, "alice", ADMIN_PASSWORD, role="admin")


@pytest.fixture
def member(user_store: UserStore) -> User:
    return make_user(user_store, "bob", MEMBER_PASSWORD)


@pytest.fixture
def admin_headers(admin: User) -> dict[str, str]:
    return auth_headers(admin)


@pytest.fixture
def member_headers(member: User) -> dict[str, str]:
    return auth_headers(member)
