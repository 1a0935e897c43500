"""
tests/conftest.py -- Shared test fixtures for Health Diary auth tests.

This module provides:
  - make_store(): isolated named shared-memory SQLite credential store
  - _patch_lifespan(): wires test components into app.state, bypassing real startup
  - FakeClock / FakeMonotonic: controllable clocks for expiry and window tests
  - service: AuthService over a fresh in-memory store with fake clocks
  - api_client: TestClient with an admin access token for API integration tests

Design: Named shared-memory SQLite URIs (not plain :memory:) are used for the
API client because TestClient runs sync route handlers in a thread pool.
Plain :memory: DBs are per-connection and would present a blank schema to
each worker thread. Unit tests run on one thread and use plain :memory:.

The DEBUG env var must be set before any auth module import so get_settings()
auto-generates SECRET_KEY in dev mode rather than raising ValueError. The
Argon2 cost parameters are lowered for the same reason they are configurable:
hashing at production cost in every test would make the suite crawl.
ALLOWED_HOSTS is narrowed to the TestClient's "testserver" host so the
trusted-host middleware stays on under test without widening the default.

Stores use StaticPool: one connection, shared across the TestClient's
worker threads, so every thread sees the same in-memory schema.
"""

from __future__ import annotations

import asyncio
import itertools
import os
from collections.abc import Generator
from contextlib import asynccontextmanager
from datetime import datetime, timedelta, timezone

# CRITICAL: set before any auth/core import -- get_settings() is cached on
# first call and auth/passwords.py builds its hasher at import time.
os.environ.setdefault("DEBUG", "true")
os.environ.setdefault("ARGON2_TIME_COST", "1")
os.environ.setdefault("ARGON2_MEMORY_COST", "1024")
os.environ.setdefault("ARGON2_PARALLELISM", "1")
os.environ.setdefault("ALLOWED_HOSTS", '["testserver"]')

import pytest
from fastapi.testclient import TestClient
from sqlalchemy.pool import StaticPool

from api.limiter import limiter
from api.main import app
from auth.rate_limit import RateLimiter
from auth.service import AuthService
from auth.store import CredentialStore
from auth.tokens import TokenService
from core.config import get_settings

# The coarse per-route slowapi ceiling would trip during long test modules.
# The login limiter under test is a separate component and stays on.
limiter.enabled = False

_db_counter = itertools.count()

ADMIN_EMAIL = "admin@example.com"
ADMIN_PASSWORD = "adminpass123"


# ---------------------------------------------------------------------------
# Clocks
# ---------------------------------------------------------------------------


class FakeClock:
    """Wall clock returning an aware UTC datetime that only moves when told to."""

    def __init__(self, start: datetime | None = None) -> None:
        self.now = start or datetime(2026, 1, 1, 12, 0, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now += timedelta(**kwargs)


class FakeMonotonic:
    """Monotonic clock in seconds for RateLimiter."""

    def __init__(self, start: float = 1000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


# ---------------------------------------------------------------------------
# Store helpers
# ---------------------------------------------------------------------------


def make_store(name: str | None = None) -> CredentialStore:
    """Create an isolated named shared-memory SQLite store.

    Args:
        name: Unique database name so test modules don't share state.
              Defaults to a fresh counter-based name.
    """
    name = name or f"test_auth_{next(_db_counter)}"
    return CredentialStore(db_url=f"sqlite:///file:{name}?mode=memory&cache=shared&uri=true", poolclass=StaticPool)


def _patch_lifespan(store: CredentialStore, service: AuthService, login_limiter: RateLimiter):
    """Return an async context manager that replaces the real lifespan.

    The sweep_task is a long-sleeping coroutine that keeps asyncio happy
    (a real asyncio.Task is required; MagicMock would fail on .cancel()).
    """

    @asynccontextmanager
    async def test_lifespan(app):
        app.state.store = store
        app.state.limiter_store = login_limiter
        app.state.auth_service = service
        app.state.sweep_task = asyncio.create_task(asyncio.sleep(99999))
        yield
        app.state.sweep_task.cancel()

    return test_lifespan


# ---------------------------------------------------------------------------
# Unit-test fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def monotonic() -> FakeMonotonic:
    return FakeMonotonic()


@pytest.fixture
def store() -> Generator[CredentialStore, None, None]:
    s = CredentialStore("sqlite:///:memory:", poolclass=StaticPool)
    yield s
    s.close()


@pytest.fixture
def service(store: CredentialStore, clock: FakeClock, monotonic: FakeMonotonic) -> AuthService:
    """AuthService over an in-memory store with both clocks under test control."""
    settings = get_settings()
    return AuthService(
        store=store,
        tokens=TokenService(settings, clock=clock),
        limiter=RateLimiter(window_seconds=settings.login_window_seconds, clock=monotonic),
        settings=settings,
        clock=clock,
    )


@pytest.fixture
def admin(service: AuthService):
    return service.create_admin(ADMIN_EMAIL, "admin", "Admin", ADMIN_PASSWORD)


# ---------------------------------------------------------------------------
# Module-scoped API fixture -- one TestClient per test module for speed
# ---------------------------------------------------------------------------


@pytest.fixture(scope="module")
def api_client() -> Generator[tuple[TestClient, str, int], None, None]:
    """Yield (client, admin_token, admin_id) for API integration tests.

    The TestClient uses the real FastAPI app with a patched lifespan so tests
    hit real route handlers but use an isolated in-memory store. The admin is
    bootstrapped the way the CLI does it and its access token is minted
    directly for use in Authorization headers.
    """
    settings = get_settings()
    store = make_store()
    tokens = TokenService(settings)
    login_limiter = RateLimiter(window_seconds=settings.login_window_seconds)
    service = AuthService(store, tokens, login_limiter, settings)

    admin_user = service.create_admin(ADMIN_EMAIL, "admin", "Admin", ADMIN_PASSWORD)
    token = tokens.issue_access_token(admin_user).token

    app.router.lifespan_context = _patch_lifespan(store, service, login_limiter)

    with TestClient(app, raise_server_exceptions=True) as client:
        yield client, token, admin_user.id

    store.close()
