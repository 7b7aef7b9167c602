"""
tests/conftest.py -- Shared test fixtures for Hanashi.

This module provides:
  - make_store(): an isolated in-memory IdentityStore per test or module
  - FakeClock: injectable clock so 24h expiry is tested without sleeping
  - FakeTransport: records outgoing email instead of talking SMTP
  - service fixtures (groups, lifecycle, sessions, secret_tokens, mailer)
  - api_client: TestClient over the real app with a patched lifespan

Design: Named shared-memory SQLite URIs (not plain :memory:) are required
because TestClient runs route handlers in a thread pool. Plain :memory: DBs
are per-connection and would present a blank schema to each worker thread.
The named URI format (file:name?mode=memory&cache=shared&uri=true) shares
one in-memory instance across all connections in the same process.

HANASHI_DEBUG must be set before any api/ import: the rate limiter resolves
its limits through get_settings(), which refuses to run without a pepper
outside debug mode.
"""

from __future__ import annotations

import base64
import os
import uuid
from collections.abc import Generator
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone

# CRITICAL: Set DEBUG before any api/core import so get_settings() can
# auto-generate a pepper in dev mode instead of raising ValueError.
os.environ.setdefault("HANASHI_DEBUG", "true")

import pytest
from fastapi.testclient import TestClient

import auth.passwords
from api.limiter import limiter
from api.main import app, attach_services
from auth.accounts import UserLifecycle
from auth.groups import Group, GroupChecker
from auth.secret_tokens import SecretTokenStore
from auth.sessions import SessionManager
from auth.store import IdentityStore
from core.config import Settings
from notify.email import Mailer, TemplateRenderer

# bcrypt at cost 12 makes every create/login take ~250ms. Cost 4 keeps the
# suite fast; the algorithm and code path are identical.
auth.passwords.BCRYPT_ROUNDS = 4

TEST_PEPPER = bytes(range(32))
TEST_PEPPER_B64 = base64.b64encode(TEST_PEPPER).decode("ascii")

ADMIN_EMAIL = "admin@hanashi.test"
ADMIN_PASSWORD = "adminpass123"


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def make_store(name: str | None = None) -> IdentityStore:
    """Create an isolated named shared-memory SQLite store."""
    name = name or uuid.uuid4().hex
    return IdentityStore(f"sqlite:///file:hanashi_{name}?mode=memory&cache=shared&uri=true")


class FakeClock:
    """Callable clock whose time only moves when a test says so."""

    def __init__(self, start: datetime | None = None) -> None:
        self.now = start or datetime(2024, 4, 1, 12, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now += timedelta(**kwargs)
        return self.now


@dataclass
class FakeTransport:
    """EmailTransport that keeps every message in memory."""

    sent: list[dict] = field(default_factory=list)

    def send(self, to: str, from_header: str, subject: str, body: str, subtype: str = "html") -> str:
        self.sent.append({"to": to, "from": from_header, "subject": subject, "body": body, "subtype": subtype})
        return f"<{len(self.sent)}@hanashi.test>"

    def to(self, address: str) -> list[dict]:
        return [m for m in self.sent if m["to"] == address]


def test_settings(database_url: str = "sqlite://") -> Settings:
    return Settings(
        debug=True,
        runtime_pepper=TEST_PEPPER_B64,
        database_url=database_url,
        site_name="hanashi",
        site_link="http://hanashi.test",
        email_from_address="noreply@hanashi.test",
    )


test_settings.__test__ = False  # not a test function, despite the name


# ---------------------------------------------------------------------------
# Function-scoped service fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def pepper() -> bytes:
    return TEST_PEPPER


@pytest.fixture
def store() -> Generator[IdentityStore, None, None]:
    s = make_store()
    yield s
    s.close()


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def groups(store: IdentityStore) -> GroupChecker:
    checker = GroupChecker(store)
    checker.ensure_groups()
    return checker


@pytest.fixture
def lifecycle(store: IdentityStore, groups: GroupChecker, clock: FakeClock) -> UserLifecycle:
    return UserLifecycle(store, groups, clock=clock)


@pytest.fixture
def sessions(store: IdentityStore, clock: FakeClock) -> SessionManager:
    return SessionManager(store, clock=clock)


@pytest.fixture
def secret_tokens(store: IdentityStore, lifecycle: UserLifecycle, clock: FakeClock) -> SecretTokenStore:
    return SecretTokenStore(store, lifecycle, clock=clock)


@pytest.fixture
def transport() -> FakeTransport:
    return FakeTransport()


@pytest.fixture
def mailer(transport: FakeTransport) -> Mailer:
    return Mailer(
        transport,
        TemplateRenderer(),
        site_name="hanashi",
        site_link="http://hanashi.test",
        from_address="noreply@hanashi.test",
    )


# ---------------------------------------------------------------------------
# API fixtures -- one TestClient per test module for speed
# ---------------------------------------------------------------------------


@dataclass
class ApiHarness:
    client: TestClient
    store: IdentityStore
    transport: FakeTransport
    clock: FakeClock
    admin_id: int
    admin_email: str = ADMIN_EMAIL
    admin_password: str = ADMIN_PASSWORD
    pepper: bytes = TEST_PEPPER

    def login(self, email: str = ADMIN_EMAIL, password: str = ADMIN_PASSWORD):
        """Start a fresh cookie jar and log in. Returns the login response."""
        self.client.cookies.clear()
        return self.client.post("/api/v1/auth/login", json={"email": email, "password": password})


def _patch_lifespan(store: IdentityStore, transport: FakeTransport, clock: FakeClock):
    """Return an async context manager that replaces the real lifespan.

    Wires the test store, a recording mail transport and the fake clock into
    app.state through the same attach_services() the real lifespan uses.
    """

    @asynccontextmanager
    async def test_lifespan(app):
        settings = test_settings()
        mailer = Mailer(
            transport,
            TemplateRenderer(),
            site_name=settings.site_name,
            site_link=settings.site_link,
            from_address=settings.email_from_address,
        )
        attach_services(app, store, settings, mailer=mailer, clock=clock)
        yield

    return test_lifespan


@pytest.fixture(scope="module")
def api_client() -> Generator[ApiHarness, None, None]:
    """Yield an ApiHarness for API integration tests.

    The TestClient uses the real FastAPI app with a patched lifespan so tests
    hit real route handlers but use an isolated in-memory store. An admin
    account (member of "admins") exists before the client starts. Per-IP
    rate limiting is off; the test that exercises it turns it back on.
    """
    store = make_store()
    clock = FakeClock()
    transport = FakeTransport()

    checker = GroupChecker(store)
    checker.ensure_groups()
    admin = UserLifecycle(store, checker, clock=clock).create(ADMIN_EMAIL, ADMIN_PASSWORD, TEST_PEPPER)
    checker.join_user_group_by_name(admin.id, Group.ADMINS)

    app.router.lifespan_context = _patch_lifespan(store, transport, clock)
    limiter.enabled = False

    with TestClient(app, raise_server_exceptions=True) as client:
        yield ApiHarness(client=client, store=store, transport=transport, clock=clock, admin_id=admin.id)

    limiter.enabled = True
    store.close()
