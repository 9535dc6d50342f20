"""
tests/conftest.py -- Shared test fixtures for OrgWarden unit and integration tests.

This module provides:
  - _make_test_stores(): isolated in-memory DBs for principals, tokens and audit
  - _patch_lifespan(): wires test stores into app.state, bypassing real startup
  - api_env: module-scoped TestClient plus seeded principals and their tokens
  - api: per-test view of api_env with cookies and rate-limit buckets reset
  - principal_store / token_store / audit / limiter: per-test unit-test stores

Design: Named shared-memory SQLite URIs (not plain :memory:) are required
because TestClient runs route handlers in a thread pool. Plain :memory: DBs
are per-connection and would present a blank schema to each worker thread.
The named URI format (file:name?mode=memory&cache=shared&uri=true) shares
one in-memory instance across all connections in the same process.

The DEBUG env var must be set before any auth module import so get_settings()
auto-generates SECRET_KEY in dev mode rather than raising ValueError.
"""

from __future__ import annotations

import asyncio
import itertools
import os
from collections.abc import Generator
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from typing import Any

# CRITICAL: Set DEBUG before any auth/core import so get_settings() can
# auto-generate SECRET_KEY in dev mode instead of raising ValueError.
os.environ.setdefault("DEBUG", "true")

import pytest
from fastapi.testclient import TestClient

from api.main import app, wire_components
from audit.recorder import AuditRecorder
from auth.credentials import hash_password
from auth.models import Principal
from auth.ratelimit import RateLimiter
from auth.store import PrincipalStore
from auth.token_store import TokenStore

_db_counter = itertools.count()

# One secret for every seeded principal. bcrypt is slow; hash it once.
TEST_SECRET = "correct-horse-battery"
_TEST_SECRET_HASH = hash_password(TEST_SECRET)


# ---------------------------------------------------------------------------
# Store helpers
# ---------------------------------------------------------------------------


def _memory_url(name: str) -> str:
    return f"sqlite:///file:{name}_{next(_db_counter)}?mode=memory&cache=shared&uri=true"


def _make_test_stores(db_suffix: str) -> tuple[PrincipalStore, TokenStore, AuditRecorder]:
    """Create isolated named shared-memory SQLite stores for test isolation.

    Args:
        db_suffix: String appended to the DB names so test modules never share state.
    """
    principals = PrincipalStore(db_url=_memory_url(f"test_principals_{db_suffix}"))
    tokens = TokenStore(db_url=_memory_url(f"test_tokens_{db_suffix}"))
    audit = AuditRecorder(db_url=_memory_url(f"test_audit_{db_suffix}"))
    return principals, tokens, audit


def _patch_lifespan(principals: PrincipalStore, tokens: TokenStore, audit: AuditRecorder):
    """Return an async context manager that replaces the real lifespan.

    The purge_task is a long-sleeping coroutine; a real asyncio.Task is
    required because shutdown calls .cancel() on it.
    """

    @asynccontextmanager
    async def test_lifespan(app):
        wire_components(app, principals, tokens, audit, RateLimiter.from_uri("memory://"))
        app.state.purge_task = asyncio.create_task(asyncio.sleep(99999))
        yield
        app.state.purge_task.cancel()

    return test_lifespan


def create_principal(store: PrincipalStore, identifier: str, role_name: str | None = None, active: bool = True) -> int:
    """Insert a principal with TEST_SECRET and, optionally, a role by name."""
    pid = store.create_principal(
        Principal(display_identifier=identifier, secret_hash=_TEST_SECRET_HASH, is_active=active)
    )
    if role_name is not None:
        store.assign_role(pid, store.get_role_by_name(role_name).id)
    return pid


# ---------------------------------------------------------------------------
# Integration fixtures
# ---------------------------------------------------------------------------


@dataclass
class ApiEnv:
    client: TestClient
    state: Any
    ids: dict[str, int] = field(default_factory=dict)
    tokens: dict[str, str] = field(default_factory=dict)

    def headers(self, who: str) -> dict[str, str]:
        return {"Authorization": f"Bearer {self.tokens[who]}"}


@pytest.fixture(scope="module")
def api_env(request) -> Generator[ApiEnv, None, None]:
    """Yield an ApiEnv with one principal per default role.

    Principals (all with TEST_SECRET):
      admin     -- Administrator (every permission)
      treasurer -- Treasurer (budgets.approve, no audit.view)
      member    -- Member (members.view, events.view)
    """
    principals, tokens, audit = _make_test_stores(request.module.__name__.rsplit(".", 1)[-1])
    app.router.lifespan_context = _patch_lifespan(principals, tokens, audit)

    with TestClient(app, raise_server_exceptions=True) as client:
        env = ApiEnv(client=client, state=app.state)
        for who, role in (("admin", "Administrator"), ("treasurer", "Treasurer"), ("member", "Member")):
            pid = create_principal(principals, who, role)
            env.ids[who] = pid
            env.tokens[who] = app.state.token_service.issue(principals.get_by_id(pid)).access_token
        yield env

    principals.close()
    tokens.close()
    audit.close()


@pytest.fixture
def api(api_env: ApiEnv) -> ApiEnv:
    """api_env with a clean cookie jar, empty rate-limit buckets and a cold permission cache."""
    api_env.client.cookies.clear()
    api_env.state.rate_limiter.reset()
    api_env.state.resolver.clear_cache()
    return api_env


# ---------------------------------------------------------------------------
# Unit fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def principal_store() -> Generator[PrincipalStore, None, None]:
    store = PrincipalStore(db_url=_memory_url("unit_principals"))
    store.sync_registry()
    store.seed_default_roles()
    yield store
    store.close()


@pytest.fixture
def token_store() -> Generator[TokenStore, None, None]:
    store = TokenStore(db_url=_memory_url("unit_tokens"))
    yield store
    store.close()


@pytest.fixture
def audit() -> Generator[AuditRecorder, None, None]:
    recorder = AuditRecorder(db_url=_memory_url("unit_audit"))
    yield recorder
    recorder.close()


@pytest.fixture
def limiter() -> RateLimiter:
    return RateLimiter.from_uri("memory://")


@pytest.fixture
def make_principal():
    """create_principal(store, identifier, role_name=None, active=True) -> principal id."""
    return create_principal
