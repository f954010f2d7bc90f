"""
tests/conftest.py -- Shared test fixtures for TokenGate.

This module provides:
  - FakeClock: a controllable epoch clock shared by the codec and the
    in-memory revocation store, so expiry is tested without sleeping
  - codec / store / issuer / gate: the token subsystem wired on that clock
  - api: TestClient with a patched lifespan, an in-memory revocation store and
    an isolated credential store holding one EMAIL user

Design: Named shared-memory SQLite URIs (not plain :memory:) are required
because TestClient runs sync route handlers in a thread pool. Plain :memory:
DBs are per-connection and would present a blank schema to each worker
thread. The named URI format (file:name?mode=memory&cache=shared&uri=true)
shares one in-memory instance across all connections in the same process.

The DEBUG env var must be set before api.main is imported: the module reads
CORS and host settings at import time, and get_settings() only auto-generates
SECRET_KEY in dev mode.
"""

from __future__ import annotations

import os
import uuid
from collections.abc import Generator
from contextlib import asynccontextmanager
from types import SimpleNamespace

# CRITICAL: Set DEBUG before any api/core import so get_settings() can
# auto-generate SECRET_KEY in dev mode instead of raising.
os.environ.setdefault("DEBUG", "true")

import pytest
from fastapi.testclient import TestClient

from api.limiter import limiter
from api.main import app, wire_services
from auth.gate import AuthenticationGate
from auth.issuer import TokenIssuer
from auth.models import Channel, User
from auth.passwords import hash_password
from auth.store import UserStore
from auth.tokens import TokenCodec
from core.config import AuthConfig, load_settings
from revocation.memory import MemoryRevocationStore

TEST_SECRET = "test-secret-key-that-is-long-enough-0123456789"
TEST_PASSWORD = "correct-horse-battery"


class FakeClock:
    """Epoch clock that only moves when told to."""

    def __init__(self, start: float = 1_700_000_000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


# ---------------------------------------------------------------------------
# Token subsystem fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def auth_config() -> AuthConfig:
    return AuthConfig(
        secret_key=TEST_SECRET,
        issuer="tokengate-test",
        access_ttl_seconds=900,
        refresh_ttl_seconds=86400,
    )


@pytest.fixture
def codec(auth_config: AuthConfig, clock: FakeClock) -> TokenCodec:
    return TokenCodec.from_config(auth_config, clock)


@pytest.fixture
def store(clock: FakeClock) -> MemoryRevocationStore:
    return MemoryRevocationStore(clock)


@pytest.fixture
def issuer(codec: TokenCodec, store: MemoryRevocationStore, auth_config: AuthConfig) -> TokenIssuer:
    return TokenIssuer(codec, store, auth_config)


@pytest.fixture
def gate(codec: TokenCodec, store: MemoryRevocationStore) -> AuthenticationGate:
    return AuthenticationGate(codec, store)


@pytest.fixture
def user() -> User:
    return User(id=42, username="alice", user_uuid="6f1c2a8e-0000-4000-8000-000000000042", channel=Channel.EMAIL)


# ---------------------------------------------------------------------------
# API fixture
# ---------------------------------------------------------------------------


def _make_user_store() -> UserStore:
    """Isolated named shared-memory SQLite store, unique per test."""
    name = f"test_auth_{uuid.uuid4().hex}"
    return UserStore(db_url=f"sqlite:///file:{name}?mode=memory&cache=shared&uri=true")


def _patch_lifespan(settings, store, user_store, clock):
    """Return an async context manager that replaces the real lifespan.

    Wires the same object graph the real lifespan builds, but on an in-memory
    revocation store and the test clock, so no Redis is needed.
    """

    @asynccontextmanager
    async def test_lifespan(app):
        wire_services(app, settings, store, user_store, clock)
        yield

    return test_lifespan


@pytest.fixture
def api(clock: FakeClock) -> Generator[SimpleNamespace, None, None]:
    """Yield a namespace with client, store, user_store, clock and the seeded user.

    The seeded user logs in with username "alice" and TEST_PASSWORD. The
    slowapi counters are reset so per-IP limits from earlier tests do not leak.
    """
    settings = load_settings(
        debug=True,
        secret_key=TEST_SECRET,
        token_issuer="tokengate-test",
        access_token_expire_seconds=900,
        refresh_token_expire_seconds=86400,
        redis_url="memory://",
    )
    store = MemoryRevocationStore(clock)
    user_store = _make_user_store()
    user_id = user_store.create_user(
        User(username="alice", user_uuid="", channel=Channel.EMAIL, hashed_password=hash_password(TEST_PASSWORD))
    )
    seeded = user_store.get_by_id(user_id)

    limiter.reset()
    app.router.lifespan_context = _patch_lifespan(settings, store, user_store, clock)

    with TestClient(app, raise_server_exceptions=True) as client:

        def login() -> dict:
            """POST /auth/login as the seeded user and return the token body."""
            resp = client.post("/api/v1/auth/login", json={"username": "alice", "password": TEST_PASSWORD})
            assert resp.status_code == 200, resp.text
            return resp.json()

        yield SimpleNamespace(
            client=client,
            store=store,
            user_store=user_store,
            clock=clock,
            user=seeded,
            password=TEST_PASSWORD,
            login=login,
        )

    user_store.close()
