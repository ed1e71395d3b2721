"""
tests/conftest.py -- Shared test fixtures for CodeGuard tests.

This module provides:
  - memory_url(): a named shared-memory SQLite URL for one test scope
  - make_user(): creates a user in a store and returns (id, bearer headers)
  - FakeClock / FakeMonotonic: controllable clocks for window and expiry tests
  - RecordingTransport: email transport that keeps what it is sent
  - _make_test_services(): a Services container on an isolated in-memory DB
  - _patch_lifespan(): wires test services into app.state, bypassing real startup
  - api_env: TestClient plus services and one user per role

Design: Named shared-memory SQLite URIs (not plain :memory:) are required
because TestClient runs route handlers in a thread pool. Plain :memory: DBs
are per-connection and would present a blank schema to each worker thread.
The named URI format (file:name?mode=memory&cache=shared&uri=true) shares
one in-memory instance across all connections in the same process.

DEBUG and ALLOWED_HOSTS must be set before any core/auth import so
get_settings() auto-generates SECRET_KEY in dev mode and TestClient's
"testserver" Host header passes TrustedHostMiddleware.
"""

from __future__ import annotations

import asyncio
import os
import uuid
from collections.abc import Generator
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone

# CRITICAL: Set before any core/auth import so get_settings() sees them.
os.environ.setdefault("DEBUG", "true")
os.environ.setdefault("ALLOWED_HOSTS", '["localhost","127.0.0.1","testserver"]')

import pytest
from fastapi.testclient import TestClient

from api.limiter import limiter as login_limiter
from api.main import app
from api.services import Services, build_services
from auth.models import User
from auth.store import UserStore
from auth.tokens import create_access_token, hash_password
from core.config import get_settings
from registry.email import EmailMessage

# Generous per-action limits so functional tests never trip them; rate-limit
# behaviour has its own tests with tight limits.
_RELAXED_LIMITS = {
    "code_issue_rate_limit": "1000/minute",
    "verify_rate_limit": "1000/minute",
    "redeem_rate_limit": "1000/minute",
    "usage_history_rate_limit": "1000/minute",
    "share_email_rate_limit": "1000/minute",
    "default_action_rate_limit": "1000/minute",
}


def memory_url(name: str) -> str:
    return f"sqlite:///file:test_{name}_{uuid.uuid4().hex[:8]}?mode=memory&cache=shared&uri=true"


def auth_headers(user_id: int, username: str, role: str) -> dict[str, str]:
    token = create_access_token(user_id=user_id, username=username, role=role, expire_seconds=3600)
    return {"Authorization": f"Bearer {token}"}


def make_user(
    store: UserStore, username: str, role: str, password: str = "testpass123", is_active: bool = True
) -> tuple[int, dict[str, str]]:
    """Create a user and return (id, Authorization headers)."""
    uid = store.create_user(
        User(username=username, role=role, hashed_password=hash_password(password), is_active=is_active)
    )
    return uid, auth_headers(uid, username, role)


class FakeClock:
    """Wall clock for expiry and audit-window tests. Call to read, advance() to move."""

    def __init__(self, start: datetime | None = None) -> None:
        self.now = start or datetime(2025, 3, 1, 9, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now += timedelta(**kwargs)


class FakeMonotonic:
    """Monotonic seconds for RateLimiter and harness timeout tests."""

    def __init__(self) -> None:
        self.value = 1000.0

    def __call__(self) -> float:
        return self.value

    def advance(self, seconds: float) -> None:
        self.value += seconds


class RecordingTransport:
    """Email transport that keeps every message it is handed."""

    def __init__(self) -> None:
        self.sent: list[EmailMessage] = []

    def send(self, message: EmailMessage) -> None:
        self.sent.append(message)


@pytest.fixture
def db_url() -> str:
    """A fresh named in-memory DB per test."""
    return memory_url("unit")


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def monotonic() -> FakeMonotonic:
    return FakeMonotonic()


# ---------------------------------------------------------------------------
# Services and lifespan
# ---------------------------------------------------------------------------


def _make_test_services(db_suffix: str, **settings_overrides) -> Services:
    """Build a full Services container on an isolated named in-memory DB.

    Args:
        db_suffix: Unique string in the DB name so test modules don't share state.
        settings_overrides: Settings fields to replace (e.g. tighter limits).
    """
    settings = get_settings().model_copy(update={**_RELAXED_LIMITS, **settings_overrides})
    return build_services(settings, db_url=memory_url(db_suffix), transport=RecordingTransport())


def _patch_lifespan(services: Services):
    """Return an async context manager that replaces the real lifespan.

    The sweep_task is a long-sleeping coroutine so shutdown's .cancel() has a
    real asyncio.Task to act on.
    """

    @asynccontextmanager
    async def test_lifespan(app):
        app.state.services = services
        app.state.sweep_task = asyncio.create_task(asyncio.sleep(99999))
        yield
        app.state.sweep_task.cancel()

    return test_lifespan


@dataclass
class ApiEnv:
    client: TestClient
    services: Services
    ids: dict[str, int] = field(default_factory=dict)
    headers: dict[str, dict[str, str]] = field(default_factory=dict)


# ---------------------------------------------------------------------------
# Module-scoped fixtures -- one TestClient per test module for speed
# ---------------------------------------------------------------------------


@pytest.fixture(scope="module")
def api_env(request) -> Generator[ApiEnv, None, None]:
    """Yield an ApiEnv with users admin, doctor, doctor2, customer and customer2.

    Each user's password is "testpass123". The TestClient uses the real
    FastAPI app with a patched lifespan so tests hit real route handlers but
    use an isolated in-memory store.
    """
    services = _make_test_services(request.module.__name__.rpartition(".")[2])
    env_ids: dict[str, int] = {}
    env_headers: dict[str, dict[str, str]] = {}
    for name, role in (
        ("admin", "admin"),
        ("doctor", "doctor"),
        ("doctor2", "doctor"),
        ("customer", "customer"),
        ("customer2", "customer"),
    ):
        env_ids[name], env_headers[name] = make_user(services.user_store, f"test{name}", role)

    login_limiter.reset()
    app.router.lifespan_context = _patch_lifespan(services)

    with TestClient(app, raise_server_exceptions=True) as client:
        yield ApiEnv(client=client, services=services, ids=env_ids, headers=env_headers)

    services.close()
