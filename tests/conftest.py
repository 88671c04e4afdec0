"""
tests/conftest.py -- Shared test fixtures for the Ace Trade security core.

This module provides:
  - FrozenClock: a controllable clock; advance() walks across expiry windows
  - store: a file-backed SQLite SecurityStore under tmp_path, one per test
  - core: a SecurityCore wired to that store with bcrypt cost 4
  - make_user / enable_2fa: helpers for the common setup steps
  - scripted_core: a SecurityCore whose tokens and account ids can collide
  - api_client: TestClient on the real FastAPI app with a patched lifespan

Design: file-backed SQLite (not shared-cache :memory:) because the concurrency
tests need several connections that wait on the database lock. Shared-cache
in-memory databases fail immediately with SQLITE_LOCKED instead of honouring
the busy timeout.

The DEBUG env var must be set before any core.config import so get_settings()
auto-generates SERVICE_TOKEN rather than raising ValueError.
"""

from __future__ import annotations

import asyncio
import os
from collections.abc import Generator
from contextlib import asynccontextmanager
from datetime import datetime, timedelta, timezone

# CRITICAL: Set DEBUG before any core/auth/api import.
os.environ.setdefault("DEBUG", "true")

import pyotp
import pytest
from fastapi.testclient import TestClient
from sqlalchemy import text

from api.limiter import limiter
from api.main import app
from auth.core import SecurityCore
from auth.models import TwoFactorAction, User
from auth.store import SecurityStore
from core.clock import SecureRandom
from core.config import Settings

SERVICE_TOKEN = "test-service-token-0123456789abcdef0123456789"
TERMINAL_URL = "https://trade.example.com"
START = datetime(2026, 1, 15, 12, 0, 0, tzinfo=timezone.utc)


class FrozenClock:
    """Clock that only moves when told to."""

    def __init__(self, start: datetime = START) -> None:
        self._now = start

    def now(self) -> datetime:
        return self._now

    def advance(self, **kwargs) -> datetime:
        self._now += timedelta(**kwargs)
        return self._now


def make_settings(db_url: str, **overrides) -> Settings:
    values = {
        "debug": True,
        "service_token": SERVICE_TOKEN,
        "database_url": db_url,
        "trade_terminal_url": TERMINAL_URL,
        "recovery_key_rounds": 4,
    }
    values.update(overrides)
    return Settings(**values)


class ScriptedRandom(SecureRandom):
    """SecureRandom that hands out queued tokens and account ids first."""

    def __init__(self, tokens=(), account_ids=()) -> None:
        self._tokens = list(tokens)
        self._account_ids = list(account_ids)

    def token_urlsafe(self, nbytes: int) -> str:
        return self._tokens.pop(0) if self._tokens else super().token_urlsafe(nbytes)

    def token_hex(self, nbytes: int) -> str:
        # Account ids are the only 6 byte hex values.
        if nbytes == 6 and self._account_ids:
            return self._account_ids.pop(0)
        return super().token_hex(nbytes)


# ---------------------------------------------------------------------------
# Core fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def clock() -> FrozenClock:
    return FrozenClock()


@pytest.fixture
def db_url(tmp_path) -> str:
    return f"sqlite:///{tmp_path / 'acetrade_test.db'}"


@pytest.fixture
def store(db_url) -> Generator[SecurityStore, None, None]:
    s = SecurityStore(db_url, timeout=5.0)
    yield s
    s.close()


@pytest.fixture
def settings(db_url) -> Settings:
    return make_settings(db_url)


@pytest.fixture
def core(store, settings, clock) -> SecurityCore:
    return SecurityCore(store, settings, clock=clock)


@pytest.fixture
def scripted_core(store, settings, clock):
    """Factory: a SecurityCore on the same store whose randomness is scripted."""

    def _make(**script) -> SecurityCore:
        return SecurityCore(store, settings, clock=clock, rng=ScriptedRandom(**script))

    return _make


@pytest.fixture
def lock_in_place(store):
    """Flip account_locked without burning pending tokens.

    Mimics a lockdown that commits after a token was issued but while its
    redemption is already under way.
    """

    def _lock(user_id: int) -> None:
        with store.engine.begin() as conn:
            conn.execute(text("UPDATE users SET account_locked = 1 WHERE id = :uid"), {"uid": user_id})

    return _lock


@pytest.fixture
def make_user(core):
    """Factory: register a fresh user and return it."""
    counter = iter(range(1000, 100000))

    def _make(chat_id: int | None = None, referral_code: str | None = None) -> User:
        return core.register_user(chat_id if chat_id is not None else next(counter), referral_code=referral_code)

    return _make


@pytest.fixture
def user(make_user) -> User:
    return make_user(chat_id=555001)


@pytest.fixture
def totp(clock):
    """Current TOTP code for a secret at the frozen clock's time."""

    def _code(secret: str, counter_offset: int = 0) -> str:
        return pyotp.TOTP(secret).at(clock.now(), counter_offset=counter_offset)

    return _code


@pytest.fixture
def enable_2fa(core, totp):
    """Factory: enable 2FA for a user. Returns (secret, recovery_key)."""

    def _enable(user_id: int) -> tuple[str, str]:
        enrollment = core.begin_twofa_enrollment(user_id)
        code = core.issue_twofa_code(user_id, TwoFactorAction.enable)
        key = core.enable_twofa(user_id, enrollment.secret, totp(enrollment.secret), code)
        return enrollment.secret, key

    return _enable


# ---------------------------------------------------------------------------
# API fixtures
# ---------------------------------------------------------------------------


def _patch_lifespan(store: SecurityStore, core: SecurityCore):
    """Return an async context manager that replaces the real lifespan.

    Wires the per-test store and core into app.state so routes hit the test
    database and see the frozen clock. The cleanup task is a long-sleeping
    coroutine so shutdown can still cancel() it.
    """

    @asynccontextmanager
    async def test_lifespan(app):
        app.state.store = store
        app.state.core = core
        app.state.cleanup_task = asyncio.create_task(asyncio.sleep(99999))
        yield
        app.state.cleanup_task.cancel()

    return test_lifespan


@pytest.fixture
def api_client(store, core) -> Generator[TestClient, None, None]:
    """TestClient with the service token header preset."""
    app.router.lifespan_context = _patch_lifespan(store, core)
    limiter.reset()
    with TestClient(app, raise_server_exceptions=True, headers={"X-Service-Token": SERVICE_TOKEN}) as client:
        yield client
