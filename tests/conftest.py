"""
tests/conftest.py -- Shared test fixtures for the portal auth core.

This module provides:
  - FakeClock: a controllable clock injected into every component
  - engine: a fresh file-backed SQLite database per test
  - service: an AuthService wired to that engine and clock
  - make_user: helper that registers a user and returns its id
  - api_client: TestClient with a patched lifespan and a pre-created admin

Design: file-backed SQLite under tmp_path rather than :memory:. TestClient
runs sync route handlers in a thread pool and the concurrency tests start
their own threads; a plain :memory: DB is per-connection and would present a
blank schema to each of them. A WAL file DB is shared and lets writers queue
on the lock instead of failing.

DEBUG and BCRYPT_ROUNDS must be set before any auth/core import:
get_settings() auto-generates SECRET_KEY only in dev mode, and the minimum
bcrypt cost keeps the suite fast.
"""

from __future__ import annotations

import asyncio
import os
from collections.abc import Generator
from contextlib import asynccontextmanager
from datetime import datetime, timedelta, timezone

# CRITICAL: Set before any auth/core import.
os.environ.setdefault("DEBUG", "true")
os.environ.setdefault("BCRYPT_ROUNDS", "4")

import pytest
from fastapi.testclient import TestClient

from api.main import app
from auth.db import create_db_engine
from auth.models import Role
from auth.service import AuthService
from core.config import get_settings

STRONG_PASSWORD = "Str0ng!Pass"


class FakeClock:
    """Callable clock whose time only moves when a test says so."""

    def __init__(self, start: datetime | None = None) -> None:
        self.now = start or datetime.now(timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now += timedelta(**kwargs)


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def engine(tmp_path):
    eng = create_db_engine(f"sqlite:///{tmp_path / 'auth.db'}")
    yield eng
    eng.dispose()


@pytest.fixture
def service(engine, clock) -> Generator[AuthService, None, None]:
    svc = AuthService(engine, get_settings(), clock=clock)
    yield svc
    svc.audit.close()


@pytest.fixture
def make_user(service):
    """Register a user and return its id. Defaults to an EDITOR with STRONG_PASSWORD."""

    def _make(email: str = "a@x.gov", password: str = STRONG_PASSWORD, role: Role = Role.EDITOR) -> str:
        return service.register(email, password, role)

    return _make


# ---------------------------------------------------------------------------
# HTTP fixtures
# ---------------------------------------------------------------------------


def _patch_lifespan(service: AuthService):
    """Return an async context manager that replaces the real lifespan.

    Wires the test AuthService into app.state so TestClient routes use the
    isolated test DB. The purge_task is a long-sleeping coroutine so shutdown
    has a real asyncio.Task to cancel.
    """

    @asynccontextmanager
    async def test_lifespan(app):
        app.state.auth_service = service
        app.state.purge_task = asyncio.create_task(asyncio.sleep(99999))
        yield
        app.state.purge_task.cancel()

    return test_lifespan


@pytest.fixture
def api_client(tmp_path) -> Generator[tuple[TestClient, AuthService], None, None]:
    """Yield (client, service) for API integration tests.

    An ADMIN user admin@x.gov / "Str0ng!Pass" exists before the client
    starts. Function-scoped: every test gets its own database, so lockout
    state from one test never leaks into another (all TestClient requests
    share the "testclient" origin).
    """
    svc = AuthService(create_db_engine(f"sqlite:///{tmp_path / 'api.db'}"), get_settings())
    svc.register("admin@x.gov", STRONG_PASSWORD, Role.ADMIN)
    app.router.lifespan_context = _patch_lifespan(svc)

    with TestClient(app, raise_server_exceptions=True) as client:
        yield client, svc

    svc.close()
