"""
tests/conftest.py -- Shared test fixtures for the AAA service tests.

This module provides:
  - FrozenClock: a settable clock injected wherever "now" matters
  - store / audit_store: isolated in-memory credential and audit DBs per test
  - hasher / codec / manager / recorder / service / gate: the real components
    wired to those stores and the frozen clock
  - seed_directory(): roles, permissions, and users most tests need
  - api_client: TestClient over the real app with a patched lifespan

Design: Named shared-memory SQLite URIs (not plain :memory:) are required
because TestClient runs route handlers in a thread pool and the audit recorder
writes from its own worker thread. Plain :memory: DBs are per-connection and
would present a blank schema to each thread. The named URI format
(file:name?mode=memory&cache=shared&uri=true) shares one in-memory instance
across all connections in the same process.

Environment variables must be set before any application import so
get_settings() validates against test values (short bcrypt rounds, a generous
login rate limit, and "testserver" as an allowed host).
"""

from __future__ import annotations

import asyncio
import os
import uuid
from collections.abc import Generator
from contextlib import asynccontextmanager, suppress
from datetime import datetime, timedelta, timezone

# CRITICAL: Set before any api/auth/core import so get_settings() sees them.
os.environ.setdefault("DEBUG", "true")
os.environ.setdefault("SECRET_KEY", "test-secret-key-that-is-long-enough-0123456789")
os.environ.setdefault("BCRYPT_ROUNDS", "4")
os.environ.setdefault("LOGIN_RATE_LIMIT", "1000/minute")
os.environ.setdefault("ALLOWED_HOSTS", '["testserver", "localhost"]')

import pytest
from fastapi.testclient import TestClient

from api.main import app, init_services
from audit.recorder import AuditRecorder
from audit.store import AuditLogStore
from auth.gate import AuthenticationGate
from auth.models import Permission, Role, User
from auth.passwords import PasswordHasher
from auth.refresh import RefreshTokenManager
from auth.service import AuthService
from auth.store import CredentialStore
from auth.tokens import AccessTokenCodec
from core.config import get_settings

TEST_SECRET = "unit-test-signing-key-0123456789abcdef"
TEST_ISSUER = "aaa-test"
PASSWORD = "correct horse battery staple"


# ---------------------------------------------------------------------------
# Clock
# ---------------------------------------------------------------------------


class FrozenClock:
    """Callable clock that only moves when told to."""

    def __init__(self, start: datetime) -> None:
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


@pytest.fixture
def clock() -> FrozenClock:
    return FrozenClock(datetime(2025, 1, 1, 12, 0, 0, tzinfo=timezone.utc))


# ---------------------------------------------------------------------------
# Store helpers
# ---------------------------------------------------------------------------


def memory_url(prefix: str) -> str:
    """Return a unique named shared-memory SQLite URL."""
    return f"sqlite:///file:{prefix}_{uuid.uuid4().hex}?mode=memory&cache=shared&uri=true"


def seed_directory(store: CredentialStore, hasher: PasswordHasher) -> dict[str, int]:
    """Create the roles, permissions, and users shared by most tests.

    ROLE_ADMIN -> user.read, user.write, audit.read
    ROLE_USER  -> user.read
    alice   : ROLE_USER
    admin   : ROLE_ADMIN + ROLE_USER
    mallory : ROLE_USER, disabled
    carol   : no roles

    Every user's password is PASSWORD. Returns {username: user_id}.
    """
    for code in ("user.read", "user.write", "audit.read"):
        store.create_permission(Permission(code=code))
    store.create_role(Role(code="ROLE_ADMIN", name="Administrator"))
    store.create_role(Role(code="ROLE_USER", name="User"))
    for code in ("user.read", "user.write", "audit.read"):
        store.grant_permission("ROLE_ADMIN", code)
    store.grant_permission("ROLE_USER", "user.read")

    digest = hasher.hash(PASSWORD)
    ids = {
        "alice": store.create_user(User(username="alice", email="alice@example.com", password_hash=digest)),
        "admin": store.create_user(User(username="admin", email="admin@example.com", password_hash=digest)),
        "mallory": store.create_user(
            User(username="mallory", email="mallory@example.com", password_hash=digest, enabled=False)
        ),
        "carol": store.create_user(User(username="carol", email="carol@example.com", password_hash=digest)),
    }
    store.assign_role("alice", "ROLE_USER")
    store.assign_role("admin", "ROLE_ADMIN")
    store.assign_role("admin", "ROLE_USER")
    store.assign_role("mallory", "ROLE_USER")
    return ids


# ---------------------------------------------------------------------------
# Component fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def store() -> Generator[CredentialStore, None, None]:
    s = CredentialStore(memory_url("test_auth"))
    yield s
    s.close()


@pytest.fixture
def audit_store() -> Generator[AuditLogStore, None, None]:
    s = AuditLogStore(memory_url("test_audit"))
    yield s
    s.close()


@pytest.fixture(scope="session")
def hasher() -> PasswordHasher:
    return PasswordHasher(rounds=4)


@pytest.fixture
def make_codec(clock: FrozenClock):
    """Factory for codecs on the frozen clock. Defaults match the codec fixture."""

    def _make(secret: str = TEST_SECRET, issuer: str = TEST_ISSUER, **kwargs) -> AccessTokenCodec:
        kwargs.setdefault("clock", clock)
        return AccessTokenCodec(secret, issuer, **kwargs)

    return _make


@pytest.fixture
def codec(make_codec) -> AccessTokenCodec:
    return make_codec()


@pytest.fixture
def password() -> str:
    """The password seed_directory() gives every user."""
    return PASSWORD


@pytest.fixture
def manager(store: CredentialStore, clock: FrozenClock) -> RefreshTokenManager:
    return RefreshTokenManager(store, hash_key=TEST_SECRET, clock=clock)


@pytest.fixture
def recorder(audit_store: AuditLogStore, clock: FrozenClock) -> Generator[AuditRecorder, None, None]:
    r = AuditRecorder(audit_store, clock=clock)
    yield r
    r.shutdown()


@pytest.fixture
def user_ids(store: CredentialStore, hasher: PasswordHasher) -> dict[str, int]:
    return seed_directory(store, hasher)


@pytest.fixture
def service(
    store: CredentialStore,
    hasher: PasswordHasher,
    codec: AccessTokenCodec,
    manager: RefreshTokenManager,
    recorder: AuditRecorder,
    user_ids: dict[str, int],
) -> AuthService:
    return AuthService(store, hasher, codec, manager, recorder)


@pytest.fixture
def gate(
    codec: AccessTokenCodec,
    store: CredentialStore,
    recorder: AuditRecorder,
    clock: FrozenClock,
    user_ids: dict[str, int],
) -> AuthenticationGate:
    return AuthenticationGate(codec, store, recorder, clock=clock)


# ---------------------------------------------------------------------------
# API client
# ---------------------------------------------------------------------------


def _patch_lifespan(store: CredentialStore, audit_store: AuditLogStore):
    """Return an async context manager that replaces the real lifespan.

    Wires pre-created test stores into app.state through the same
    init_services() the real lifespan uses, so TestClient routes see isolated
    test DBs rather than the production databases.

    The housekeeping_task is a long-sleeping coroutine that keeps asyncio happy
    (a real asyncio.Task is required; MagicMock would fail on .cancel()).
    """

    @asynccontextmanager
    async def test_lifespan(app):
        init_services(app, get_settings(), store, audit_store)
        app.state.housekeeping_task = asyncio.create_task(asyncio.sleep(99999))
        yield
        app.state.housekeeping_task.cancel()
        with suppress(asyncio.CancelledError):
            await app.state.housekeeping_task
        app.state.audit_recorder.shutdown()

    return test_lifespan


@pytest.fixture(scope="module")
def api_client() -> Generator[tuple[TestClient, str, int], None, None]:
    """Yield (client, admin_token, admin_user_id) for API integration tests.

    The TestClient uses the real FastAPI app with a patched lifespan so
    tests hit real route handlers and middleware but use isolated in-memory
    stores. The directory is seeded before the client starts, and an access
    token for "admin" is minted with the application's own key and issuer.
    """
    settings = get_settings()
    store = CredentialStore(memory_url("test_api_auth"))
    audit_store = AuditLogStore(memory_url("test_api_audit"))
    ids = seed_directory(store, PasswordHasher(rounds=settings.bcrypt_rounds))

    codec = AccessTokenCodec(settings.secret_key, settings.jwt_issuer)
    token, _ = codec.issue("admin", ["ROLE_ADMIN", "ROLE_USER", "user.read", "user.write", "audit.read"])

    app.router.lifespan_context = _patch_lifespan(store, audit_store)

    with TestClient(app, raise_server_exceptions=True) as client:
        yield client, token, ids["admin"]

    store.close()
    audit_store.close()
