"""
tests/conftest.py -- Shared test fixtures for Tripwise unit and integration tests.

This module provides:
  - make_store(): isolated named shared-memory SQLite UserStore
  - fake_redis(): isolated fakeredis asyncio client (own FakeServer)
  - services: the full auth-core object graph for async unit tests
  - api_client: TestClient over the real app with a patched lifespan
  - pytest_pyfunc_call: runs `async def` tests with asyncio.run

Design: Named shared-memory SQLite URIs (not plain :memory:) are required
because services run store calls in worker threads (asyncio.to_thread) and
TestClient runs the app in its own thread. Plain :memory: DBs are
per-connection and would present a blank schema to each worker thread.

The environment must be prepared before any project import:
  DEBUG=true                       -- get_settings() auto-generates both JWT secrets
  RATE_LIMIT_STORAGE_URI=memory:// -- no Redis needed for slowapi counters
  BCRYPT_ROUNDS=4                  -- minimum bcrypt cost keeps the suite fast
"""

from __future__ import annotations

import asyncio
import inspect
import os
import uuid
from collections.abc import Generator
from contextlib import asynccontextmanager
from types import SimpleNamespace

# CRITICAL: Set before any api/auth/core import -- get_settings() is cached on first call.
os.environ.setdefault("DEBUG", "true")
os.environ.setdefault("RATE_LIMIT_STORAGE_URI", "memory://")
os.environ.setdefault("LOGIN_RATE_LIMIT", "8/minute")
os.environ.setdefault("AUTH_RATE_LIMIT", "100/minute")
os.environ.setdefault("BCRYPT_ROUNDS", "4")
os.environ.setdefault("PERMISSION_ENGINE", "memory")

import fakeredis  # noqa: E402
import pytest  # noqa: E402
from fastapi.testclient import TestClient  # noqa: E402

from api.limiter import limiter  # noqa: E402
from api.main import app, wire_services  # noqa: E402
from auth.authenticator import Authenticator  # noqa: E402
from auth.permissions import InMemoryPermissionEngine, PermissionService  # noqa: E402
from auth.service import AuthService  # noqa: E402
from auth.store import UserStore  # noqa: E402
from auth.tokens import TokenIssuer  # noqa: E402
from cache.store import RedisCache  # noqa: E402
from core.config import get_settings  # noqa: E402

PASSWORD = "Secret123"


# ---------------------------------------------------------------------------
# Async test support
# ---------------------------------------------------------------------------


def pytest_pyfunc_call(pyfuncitem):
    if inspect.iscoroutinefunction(pyfuncitem.obj):
        call_kwargs = {
            name: pyfuncitem.funcargs[name]
            for name in pyfuncitem._fixtureinfo.argnames
            if name in pyfuncitem.funcargs
        }
        asyncio.run(pyfuncitem.obj(**call_kwargs))
        return True
    return None


# ---------------------------------------------------------------------------
# Builders
# ---------------------------------------------------------------------------


def make_store(name: str) -> UserStore:
    """Isolated named shared-memory SQLite store. The suffix keeps tests from sharing rows."""
    return UserStore(db_url=f"sqlite:///file:test_{name}_{uuid.uuid4().hex}?mode=memory&cache=shared&uri=true")


def fake_redis(server: fakeredis.FakeServer | None = None):
    """fakeredis asyncio client with its own server unless one is passed."""
    return fakeredis.aioredis.FakeRedis(server=server or fakeredis.FakeServer(), decode_responses=True)


def unique_email(prefix: str = "user") -> str:
    return f"{prefix}-{uuid.uuid4().hex[:10]}@example.com"


@pytest.fixture(autouse=True)
def _reset_rate_limits() -> None:
    """Every test starts with empty slowapi counters."""
    limiter.reset()


@pytest.fixture
def settings():
    return get_settings()


@pytest.fixture
def services(settings) -> Generator[SimpleNamespace, None, None]:
    """Full auth-core graph over fakeredis + in-memory engine + SQLite.

    redis_server.connected = False simulates a Redis outage: every command
    then raises redis.ConnectionError.
    """
    store = make_store("svc")
    redis_server = fakeredis.FakeServer()
    cache = RedisCache(settings, client=fake_redis(redis_server))
    engine = InMemoryPermissionEngine()
    permissions = PermissionService(engine, cache)
    tokens = TokenIssuer(settings)
    yield SimpleNamespace(
        settings=settings,
        store=store,
        redis_server=redis_server,
        cache=cache,
        engine=engine,
        permissions=permissions,
        tokens=tokens,
        authenticator=Authenticator(tokens, cache, store, permissions),
        auth=AuthService(settings, store, cache, tokens, permissions),
    )
    store.close()


# ---------------------------------------------------------------------------
# Integration client
# ---------------------------------------------------------------------------


def _patch_lifespan(store: UserStore, redis_server: fakeredis.FakeServer):
    """Return an async context manager that replaces the real lifespan.

    Builds the same object graph as production via wire_services(), but over
    a fakeredis client and the in-memory permission engine, inside the
    TestClient's event loop.

    The purge_task is a long-sleeping coroutine so shutdown can cancel a
    real asyncio.Task.
    """

    @asynccontextmanager
    async def test_lifespan(app):
        cache = RedisCache(get_settings(), client=fake_redis(redis_server))
        wire_services(app, get_settings(), store, cache, InMemoryPermissionEngine())
        app.state.redis_server = redis_server
        app.state.purge_task = asyncio.create_task(asyncio.sleep(99999))
        yield
        app.state.purge_task.cancel()
        await cache.close()

    return test_lifespan


@pytest.fixture(scope="module")
def api_client() -> Generator[TestClient, None, None]:
    """TestClient over the real FastAPI app with isolated stores.

    Tests reach services through client.app.state and run coroutines on
    the app's event loop with client.portal.call(...).
    """
    store = make_store("api")
    app.router.lifespan_context = _patch_lifespan(store, fakeredis.FakeServer())

    with TestClient(app, raise_server_exceptions=True) as client:
        yield client

    store.close()


def register(client: TestClient, email: str | None = None, password: str = PASSWORD) -> dict:
    """Register through the API and return the response `data` payload."""
    resp = client.post("/api/v1/auth/register", json={"email": email or unique_email(), "password": password})
    assert resp.status_code == 201, resp.text
    return resp.json()["data"]


def bearer(token: str) -> dict[str, str]:
    return {"Authorization": f"Bearer {token}"}
