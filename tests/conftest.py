"""
tests/conftest.py -- Shared test fixtures for the Sprue credential core and API.

This module provides:
  - make_settings(): Settings with fixed test secrets and cheap bcrypt rounds
  - shared_memory_url(): a named shared-memory SQLite URL unique per call
  - db / service: function-scoped store handle and AuthService for unit tests
  - _patch_lifespan(): wires a test AuthService into app.state, bypassing real startup
  - api_client: TestClient against the real app for API integration tests

Design: Named shared-memory SQLite URIs (not plain :memory:) are required
because TestClient runs sync route handlers in a thread pool. Plain :memory:
DBs are per-connection and would present a blank schema to each worker
thread. The named URI format (file:name?mode=memory&cache=shared&uri=true)
shares one in-memory instance across all connections in the same process.

The DEBUG env var must be set before any api/core import so get_settings()
auto-generates the signing secrets in dev mode rather than raising ValueError
when api.main reads the CORS origins at import time.
"""

from __future__ import annotations

import asyncio
import os
import uuid
from collections.abc import Generator
from contextlib import asynccontextmanager

# CRITICAL: Set DEBUG before any auth/core import so get_settings() can
# auto-generate the token secrets in dev mode instead of raising ValueError.
os.environ.setdefault("DEBUG", "true")

import pytest
from fastapi.testclient import TestClient

from api.limiter import limiter
from api.main import app
from auth.service import AuthService
from auth.store import Database
from core.config import Settings

TEST_ACCESS_SECRET = "test-access-secret-" + "a" * 32
TEST_REFRESH_SECRET = "test-refresh-secret-" + "r" * 32


# ---------------------------------------------------------------------------
# Builders
# ---------------------------------------------------------------------------


def make_settings(**overrides) -> Settings:
    """Settings for tests: distinct fixed secrets, bcrypt at its minimum cost."""
    values = {
        "debug": True,
        "access_token_secret": TEST_ACCESS_SECRET,
        "refresh_token_secret": TEST_REFRESH_SECRET,
        "bcrypt_rounds": 4,
    }
    values.update(overrides)
    return Settings(**values)


def shared_memory_url(prefix: str) -> str:
    """Return a fresh named shared-memory SQLite URL.

    The random suffix keeps test modules and function-scoped fixtures from
    seeing each other's rows.
    """
    return f"sqlite:///file:test_{prefix}_{uuid.uuid4().hex}?mode=memory&cache=shared&uri=true"


def _patch_lifespan(service: AuthService):
    """Return an async context manager that replaces the real lifespan.

    Wires the pre-built test AuthService into app.state so TestClient routes
    see an isolated test DB rather than the configured database.

    The purge_task is a long-sleeping coroutine that keeps asyncio happy
    (a real asyncio.Task is required; MagicMock would fail on .cancel()).
    """

    @asynccontextmanager
    async def test_lifespan(app):
        app.state.auth = service
        app.state.purge_task = asyncio.create_task(asyncio.sleep(99999))
        yield
        app.state.purge_task.cancel()

    return test_lifespan


# ---------------------------------------------------------------------------
# Function-scoped fixtures -- unit tests of the credential core
# ---------------------------------------------------------------------------


@pytest.fixture
def settings() -> Settings:
    return make_settings()


@pytest.fixture
def db() -> Generator[Database, None, None]:
    database = Database(shared_memory_url("unit"))
    yield database
    database.close()


@pytest.fixture
def service(settings, db) -> AuthService:
    return AuthService(settings, db)


# ---------------------------------------------------------------------------
# Module-scoped fixtures -- one TestClient per test module for speed
# ---------------------------------------------------------------------------


@pytest.fixture(scope="module")
def api_client() -> Generator[tuple[TestClient, AuthService], None, None]:
    """Yield (client, service) for API integration tests.

    The TestClient uses the real FastAPI app with a patched lifespan so
    tests hit real route handlers but use an isolated in-memory store.
    Rate limiting is switched off: every test module signs up and logs in
    from the same client address.
    """
    database = Database(shared_memory_url("api"))
    service = AuthService(make_settings(), database)

    original_lifespan = app.router.lifespan_context
    app.router.lifespan_context = _patch_lifespan(service)
    limiter.enabled = False

    with TestClient(app, raise_server_exceptions=True) as client:
        yield client, service

    app.router.lifespan_context = original_lifespan
    limiter.enabled = True
    database.close()
