"""
tests/conftest.py -- Shared test fixtures for BlogAPI auth tests.

This module provides:
  - FakeClock / clock: a settable clock injected into every time-aware component
  - store, credentials, rbac, issuer, ledger, auth_service: unit-level components
    over a private in-memory SQLite database
  - seed_catalog(): the standard roles (Admin, Author, Moderator, Reader) and
    permission catalog, used by unit and integration tests alike
  - _patch_lifespan(): wires a test store into app.state, bypassing real startup
  - api_client: TestClient + admin access token for API integration tests

Design: Named shared-memory SQLite URIs (not plain :memory:) are required for
the API tests because TestClient runs route handlers in a thread pool. Plain
:memory: DBs are per-connection and would present a blank schema to each
worker thread. The named URI format (file:name?mode=memory&cache=shared&uri=true)
shares one in-memory instance across all connections in the same process.

Environment must be set before any api/core import:
  DEBUG=true               -- get_settings() auto-generates SECRET_KEY
  BCRYPT_ROUNDS=4          -- bcrypt minimum; keeps the suite fast
  RATE_LIMIT_ENABLED=false -- login tests would otherwise trip the limiter
  ALLOWED_HOSTS            -- TestClient sends Host: testserver
"""

from __future__ import annotations

import asyncio
import os
from collections.abc import Generator
from contextlib import asynccontextmanager
from datetime import datetime, timedelta, timezone

# CRITICAL: Set env before any api/core import.
os.environ.setdefault("DEBUG", "true")
os.environ.setdefault("BCRYPT_ROUNDS", "4")
os.environ.setdefault("RATE_LIMIT_ENABLED", "false")
os.environ.setdefault("ALLOWED_HOSTS", '["testserver", "localhost"]')

import pytest
from fastapi.testclient import TestClient

from api.main import app, install_services
from auth.credentials import CredentialStore
from auth.ledger import LedgerConfig, RefreshTokenLedger
from auth.models import Permission, Role, User
from auth.rbac import RbacEvaluator
from auth.service import AuthService
from auth.store import AuthStore
from auth.tokens import TokenConfig, TokenIssuer
from core.config import get_settings

TEST_SECRET = "unit-test-signing-secret-0123456789abcdef"
ADMIN_EMAIL = "admin@blog.test"
ADMIN_PASSWORD = "Admin-pass-123"

ROLE_PERMISSIONS = {
    "Admin": [
        "posts.create",
        "posts.read",
        "posts.update.own",
        "posts.update.any",
        "posts.delete.own",
        "posts.delete.any",
        "posts.publish",
        "users.create",
        "users.read",
        "users.update.own",
        "users.update.any",
        "users.delete",
        "users.manage.roles",
    ],
    "Author": ["posts.create", "posts.read", "posts.update.own", "posts.delete.own", "users.update.own"],
    "Moderator": ["posts.read", "posts.update.any", "posts.delete.any", "posts.publish", "users.read"],
    "Reader": ["posts.read", "users.update.own"],
}


# ---------------------------------------------------------------------------
# Clock
# ---------------------------------------------------------------------------


class FakeClock:
    """Callable clock that only moves when a test says so."""

    def __init__(self, start: datetime | None = None) -> None:
        self.now = start or datetime(2025, 1, 15, 12, 0, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now += timedelta(**kwargs)


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


# ---------------------------------------------------------------------------
# Seed data
# ---------------------------------------------------------------------------


def seed_catalog(store: AuthStore) -> dict[str, dict]:
    """Insert the standard system roles and their permissions.

    Returns {"roles": {name: Role}, "permissions": {name: Permission}}.
    """
    permissions: dict[str, Permission] = {}
    for names in ROLE_PERMISSIONS.values():
        for name in names:
            if name not in permissions:
                resource, action = name.split(".", 1)
                permissions[name] = store.permissions.add(
                    Permission(
                        name=name,
                        resource=resource.capitalize(),
                        action=action.replace(".", "_"),
                        category="Content" if resource == "posts" else "Administration",
                    )
                )
    roles: dict[str, Role] = {}
    for role_name, names in ROLE_PERMISSIONS.items():
        role = store.roles.add(Role(name=role_name, description=f"{role_name} role", is_system=True))
        for name in names:
            store.roles.add_permission(role.id, permissions[name].id)
        roles[role_name] = role
    return {"roles": roles, "permissions": permissions}


def _make_user(
    store: AuthStore, credentials: CredentialStore, username: str, email: str, password: str, *roles: Role
) -> User:
    user = store.users.add(User(username=username, email=email, password_hash=credentials.hash(password)))
    for role in roles:
        store.users.add_role(user.id, role.id)
    return user


# ---------------------------------------------------------------------------
# Unit-level components
# ---------------------------------------------------------------------------


@pytest.fixture
def store(clock: FakeClock) -> Generator[AuthStore, None, None]:
    s = AuthStore("sqlite:///:memory:", clock=clock)
    yield s
    s.close()


@pytest.fixture
def catalog(store: AuthStore) -> dict[str, dict]:
    return seed_catalog(store)


@pytest.fixture(scope="session")
def credentials() -> CredentialStore:
    return CredentialStore(rounds=4)


@pytest.fixture
def make_user(store: AuthStore, credentials: CredentialStore):
    """Factory: make_user(username, email, password, *roles) -> persisted User."""

    def factory(username: str, email: str, password: str = "pass-word-1", *roles: Role) -> User:
        return _make_user(store, credentials, username, email, password, *roles)

    return factory


@pytest.fixture(scope="session")
def role_permissions() -> dict[str, list[str]]:
    return ROLE_PERMISSIONS


@pytest.fixture
def rbac(store: AuthStore) -> RbacEvaluator:
    return RbacEvaluator(store, ["Admin"])


@pytest.fixture
def token_config() -> TokenConfig:
    return TokenConfig(secret=TEST_SECRET, issuer="BlogAPI", audience="BlogAPIUsers", ttl=timedelta(minutes=60))


@pytest.fixture
def issuer(token_config: TokenConfig, clock: FakeClock) -> TokenIssuer:
    return TokenIssuer(token_config, clock=clock)


@pytest.fixture
def ledger(store: AuthStore, clock: FakeClock) -> RefreshTokenLedger:
    return RefreshTokenLedger(store, LedgerConfig(ttl=timedelta(days=30)), clock=clock)


@pytest.fixture
def auth_service(
    store: AuthStore,
    credentials: CredentialStore,
    rbac: RbacEvaluator,
    issuer: TokenIssuer,
    ledger: RefreshTokenLedger,
) -> AuthService:
    return AuthService(store, credentials, rbac, issuer, ledger)


# ---------------------------------------------------------------------------
# API integration
# ---------------------------------------------------------------------------


def _make_test_store(db_suffix: str) -> AuthStore:
    """Create an isolated named shared-memory SQLite store.

    Named URIs allow multiple connections (from different threads in TestClient)
    to access the same in-memory database.

    Args:
        db_suffix: Unique string appended to the DB name so test modules
                   don't share state.
    """
    return AuthStore(f"sqlite:///file:test_auth_{db_suffix}?mode=memory&cache=shared&uri=true")


def _patch_lifespan(store: AuthStore):
    """Return an async context manager that replaces the real lifespan.

    Uses the production install_services() so routes see exactly the wiring
    the real app uses, pointed at the test store. The cleanup_task is a
    long-sleeping coroutine (a real asyncio.Task is required for .cancel()).
    """

    @asynccontextmanager
    async def test_lifespan(app):
        install_services(app, get_settings(), store)
        app.state.cleanup_task = asyncio.create_task(asyncio.sleep(99999))
        yield
        app.state.cleanup_task.cancel()

    return test_lifespan


@pytest.fixture(scope="module")
def api_client(request) -> Generator[tuple[TestClient, str, str], None, None]:
    """Yield (client, admin_token, admin_id) for API integration tests.

    The store is seeded with the standard roles and one Admin user before the
    client starts; the admin token comes from a real POST /api/auth/login.
    """
    store = _make_test_store(request.module.__name__.rsplit(".", 1)[-1])
    catalog = seed_catalog(store)
    admin = _make_user(
        store,
        CredentialStore(rounds=4),
        "siteadmin",
        ADMIN_EMAIL,
        ADMIN_PASSWORD,
        catalog["roles"]["Admin"],
    )

    app.router.lifespan_context = _patch_lifespan(store)

    with TestClient(app, raise_server_exceptions=True) as client:
        resp = client.post("/api/auth/login", json={"email": ADMIN_EMAIL, "password": ADMIN_PASSWORD})
        assert resp.status_code == 200, resp.text
        token = resp.json()["accessToken"]
        yield client, token, admin.id

    store.close()
