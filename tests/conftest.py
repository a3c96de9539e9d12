"""
tests/conftest.py -- Shared test fixtures for StrmAuth unit and integration tests.

This module provides:
  - FakeClock / RecordingMailer: deterministic time and an in-memory outbox
  - make_settings(): Settings with low bcrypt cost, isolated from any .env
  - engine / gateway: a fresh file-backed SQLite database per test
  - make_user: registers and activates an account through the real flow
  - api_client: TestClient wired to a test gateway via a patched lifespan

Design: each test gets its own SQLite file under tmp_path. Shared-cache
in-memory URIs are not used because concurrent writers on a shared-cache
database fail with SQLITE_LOCKED instead of waiting on the busy timeout, and
several tests race threads against one code or one account on purpose.

The DEBUG env var must be set before any api/core import so get_settings()
auto-generates SECRET_KEY in dev mode rather than raising ValueError.
"""

from __future__ import annotations

import asyncio
import os
from collections.abc import Callable, Generator
from contextlib import asynccontextmanager

# CRITICAL: Set DEBUG before any auth/core import so get_settings() can
# auto-generate SECRET_KEY in dev mode instead of raising ValueError.
os.environ.setdefault("DEBUG", "true")

import pytest
from fastapi.testclient import TestClient

from api.limiter import limiter
from api.main import app
from auth.db import create_db_engine
from auth.errors import DispatchFailedError
from auth.gateway import AuthGateway, build_gateway
from auth.models import CodePurpose
from core.config import Settings

TEST_SECRET_KEY = "test-secret-key-0123456789abcdef0123456789"
PASSWORD = "Secret1!pw"


# ---------------------------------------------------------------------------
# Test doubles
# ---------------------------------------------------------------------------


class FakeClock:
    """Callable clock that only moves when told to."""

    def __init__(self, start: float = 1_700_000_000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class RecordingMailer:
    """CodeDispatcher that keeps every message instead of sending it."""

    def __init__(self) -> None:
        self.sent: list[tuple[str, str, CodePurpose]] = []
        self.fail = False

    def send_code(self, email: str, code: str, purpose: CodePurpose, expires_in: int) -> None:
        if self.fail:
            raise DispatchFailedError()
        self.sent.append((email, code, purpose))

    def last_code(self, email: str, purpose: CodePurpose = CodePurpose.ACTIVATION) -> str:
        for sent_email, code, sent_purpose in reversed(self.sent):
            if sent_email == email and sent_purpose is purpose:
                return code
        raise AssertionError(f"no {purpose.value} code sent to {email}")


def make_settings(**overrides) -> Settings:
    """Settings for tests: minimum bcrypt cost, no .env file, fixed secret."""
    values = {
        "debug": True,
        "secret_key": TEST_SECRET_KEY,
        "bcrypt_rounds": 4,
    }
    values.update(overrides)
    return Settings(_env_file=None, **values)


# ---------------------------------------------------------------------------
# Function-scoped fixtures -- every test gets a fresh database
# ---------------------------------------------------------------------------


@pytest.fixture(autouse=True)
def _reset_address_limits() -> None:
    """Clear slowapi's per-address counters so tests cannot throttle each other."""
    limiter.reset()


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def mailer() -> RecordingMailer:
    return RecordingMailer()


@pytest.fixture
def settings() -> Settings:
    return make_settings()


@pytest.fixture
def engine(tmp_path):
    engine = create_db_engine(f"sqlite:///{tmp_path / 'auth.db'}")
    yield engine
    engine.dispose()


@pytest.fixture
def gateway(settings, engine, mailer, clock) -> AuthGateway:
    return build_gateway(settings, engine, mailer=mailer, clock=clock)


@pytest.fixture
def make_user(gateway: AuthGateway, mailer: RecordingMailer) -> Callable[..., int]:
    """Return a helper that registers an active account and returns its id."""

    def _make(username: str = "alice", email: str = "alice@example.com", password: str = PASSWORD) -> int:
        gateway.send_registration_code(email)
        return gateway.register(email, username, password, mailer.last_code(email))

    return _make


# ---------------------------------------------------------------------------
# HTTP fixtures
# ---------------------------------------------------------------------------


def _patch_lifespan(gateway: AuthGateway, engine):
    """Return an async context manager that replaces the real lifespan.

    Wires the test gateway into app.state so TestClient routes see the
    isolated test database and the recording mailer. The purge_task is a
    long-sleeping coroutine (a real asyncio.Task is required for .cancel()).
    """

    @asynccontextmanager
    async def test_lifespan(app):
        app.state.engine = engine
        app.state.gateway = gateway
        app.state.purge_task = asyncio.create_task(asyncio.sleep(99999))
        yield
        app.state.purge_task.cancel()

    return test_lifespan


@pytest.fixture
def api_gateway(settings, engine, mailer) -> AuthGateway:
    """Gateway on the real clock -- HTTP tests mint and check real tokens."""
    return build_gateway(settings, engine, mailer=mailer)


@pytest.fixture
def api_client(api_gateway, engine) -> Generator[TestClient, None, None]:
    """Yield a TestClient running the real app against the test gateway."""
    app.router.lifespan_context = _patch_lifespan(api_gateway, engine)
    with TestClient(app, raise_server_exceptions=True) as client:
        yield client
