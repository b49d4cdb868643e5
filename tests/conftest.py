"""
tests/conftest.py -- Shared test fixtures for the TaskFlow auth tests.

This module provides:
  - FakeClock: a settable clock injected into every component
  - settings / clock / components: unit-test graph over an in-memory store
  - register_user(): helper that creates an account through AuthService
  - _make_test_components(): isolated named shared-memory DB for API tests
  - _patch_lifespan(): wires test components into app.state, bypassing real startup
  - api_client: TestClient against the real app with rate limiting disabled

Design: Named shared-memory SQLite URIs (not plain :memory:) are required for
the API tests because TestClient runs sync route handlers in a thread pool.
Plain :memory: DBs are per-connection and would present a blank schema to
each worker thread. Unit tests run on one thread and use plain :memory:.

The DEBUG env var must be set before any app import so get_settings()
auto-generates SECRET_KEY in dev mode rather than raising ValueError.
"""

from __future__ import annotations

import asyncio
import os
from collections.abc import Generator
from contextlib import asynccontextmanager
from datetime import datetime, timedelta, timezone

# CRITICAL: Set DEBUG before any auth/core import so get_settings() can
# auto-generate SECRET_KEY in dev mode instead of raising ValueError.
os.environ.setdefault("DEBUG", "true")

import pytest
from fastapi.testclient import TestClient

from api.limiter import limiter
from api.main import app, attach_components
from auth.models import User
from auth.service import AuthComponents, build_components
from core.config import Settings

TEST_SECRET_KEY = "test-secret-key-0123456789abcdef0123456789abcdef"
STRONG_PASSWORD = "Tr0ub4dor&Zebra!"


class FakeClock:
    """Callable clock that only moves when a test moves it."""

    def __init__(self, start: datetime | None = None) -> None:
        self.now = start or datetime(2026, 1, 15, 12, 0, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now += timedelta(**kwargs)
        return self.now


def make_settings(database_url: str = "sqlite:///:memory:", **overrides) -> Settings:
    values = {
        "debug": True,
        "secret_key": TEST_SECRET_KEY,
        "database_url": database_url,
        "bcrypt_rounds": 4,
        "rate_limit_enabled": False,
    }
    values.update(overrides)
    return Settings(**values)


def register_user(
    components: AuthComponents,
    email: str = "alice@example.com",
    name: str = "Alice Example",
    password: str = STRONG_PASSWORD,
    ip: str | None = "203.0.113.10",
) -> User:
    user, _tokens = components.service.register(email, name, password, ip=ip, user_agent="pytest")
    return user


# ---------------------------------------------------------------------------
# Unit-test fixtures -- one fresh in-memory store per test
# ---------------------------------------------------------------------------


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def settings() -> Settings:
    return make_settings()


@pytest.fixture
def components(settings: Settings, clock: FakeClock) -> Generator[AuthComponents, None, None]:
    built = build_components(settings, clock=clock)
    yield built
    built.close()


@pytest.fixture
def file_components(tmp_path, clock: FakeClock) -> Generator[AuthComponents, None, None]:
    """Components on a SQLite file, so separate threads get separate connections."""
    built = build_components(make_settings(f"sqlite:///{tmp_path / 'auth.db'}"), clock=clock)
    yield built
    built.close()


@pytest.fixture
def user(components: AuthComponents) -> User:
    return register_user(components)


@pytest.fixture
def strong_password() -> str:
    return STRONG_PASSWORD


@pytest.fixture
def make_user(components: AuthComponents):
    """Factory fixture: make_user(email=..., name=..., password=..., ip=...) -> User."""

    def _make(**kwargs) -> User:
        return register_user(components, **kwargs)

    return _make


# ---------------------------------------------------------------------------
# API fixtures
# ---------------------------------------------------------------------------


def _make_test_components(db_suffix: str) -> tuple[Settings, AuthComponents]:
    """Create an isolated named shared-memory SQLite store for test isolation.

    Args:
        db_suffix: Unique string appended to the DB name so test modules
                   don't share state (e.g. 'api', 'health').
    """
    url = f"sqlite:///file:test_auth_{db_suffix}?mode=memory&cache=shared&uri=true"
    test_settings = make_settings(url)
    return test_settings, build_components(test_settings)


def _patch_lifespan(test_settings: Settings, components: AuthComponents):
    """Return an async context manager that replaces the real lifespan.

    The purge_task is a long-sleeping coroutine that keeps asyncio happy
    (a real asyncio.Task is required; MagicMock would fail on .cancel()).
    """

    @asynccontextmanager
    async def test_lifespan(app):
        app.state.settings = test_settings
        attach_components(app, components)
        app.state.purge_task = asyncio.create_task(asyncio.sleep(99999))
        yield
        app.state.purge_task.cancel()

    return test_lifespan


@pytest.fixture(scope="module")
def api_client(request) -> Generator[tuple[TestClient, AuthComponents], None, None]:
    """Yield (client, components) for API integration tests.

    Uses the real FastAPI app with a patched lifespan so tests hit real route
    handlers against an isolated store named after the test module. The
    shared limiter is disabled so tests can log in as often as they like.
    """
    test_settings, components = _make_test_components(request.module.__name__.rsplit(".", 1)[-1])
    app.router.lifespan_context = _patch_lifespan(test_settings, components)
    limiter.enabled = False

    with TestClient(app, raise_server_exceptions=True) as client:
        yield client, components

    components.close()
