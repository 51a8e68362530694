"""
tests/conftest.py -- Shared test fixtures for accountd.

This module provides:
  - settings:      Settings with a fixed secret and cheap bcrypt rounds
  - store:         fresh in-memory UserStore per test
  - mailer:        MagicMock standing in for notify.email.EmailSender
  - service:       AuthenticationService wired from the three above
  - make_user():   helper creating a principal with a known password
  - api_client:    TestClient on the real app with a patched lifespan

Design: Named shared-memory SQLite URIs (not plain :memory:) are required for
the API client because TestClient runs sync route handlers in a thread pool.
Plain :memory: DBs are per-connection and would present a blank schema to
each worker thread.

The DEBUG env var must be set before any core/api import so get_settings()
auto-generates SECRET_KEY in dev mode rather than raising ValueError.
"""

from __future__ import annotations

import itertools
import os
from collections.abc import Generator
from contextlib import asynccontextmanager
from unittest.mock import MagicMock

# CRITICAL: Set DEBUG before any core/api import so get_settings() can
# auto-generate SECRET_KEY in dev mode instead of raising ValueError.
os.environ.setdefault("DEBUG", "true")

import pytest
from fastapi.testclient import TestClient

from api.limiter import limiter
from api.main import app
from auth.dependencies import AuthorizationGate
from auth.models import Principal, Role, TokenKind
from auth.service import AuthenticationService, build_auth_service
from auth.store import UserStore
from core.config import Settings

TEST_SECRET = "test-secret-key-0123456789abcdef-0123456789"
PASSWORD = "Passw0rd"

_db_counter = itertools.count()


def _make_settings() -> Settings:
    return Settings(debug=True, secret_key=TEST_SECRET, bcrypt_rounds=4)


@pytest.fixture
def settings() -> Settings:
    return _make_settings()


@pytest.fixture
def store() -> Generator[UserStore, None, None]:
    s = UserStore("sqlite:///:memory:")
    yield s
    s.close()


@pytest.fixture
def mailer() -> MagicMock:
    m = MagicMock()
    m.send_password_reset.return_value = True
    m.send_invitation.return_value = True
    return m


@pytest.fixture
def service(settings: Settings, store: UserStore, mailer: MagicMock) -> AuthenticationService:
    return build_auth_service(settings, store, mailer=mailer)


@pytest.fixture
def gate(service: AuthenticationService, store: UserStore) -> AuthorizationGate:
    return AuthorizationGate(service.codec, store)


def create_user(
    service: AuthenticationService,
    email: str,
    password: str | None = PASSWORD,
    **fields,
) -> Principal:
    """Insert a principal directly through the store and return it."""
    password_hash = service.passwords.hash(password) if password is not None else None
    fields.setdefault("name", email.split("@")[0])
    uid = service.store.create_user(Principal(email=email, password_hash=password_hash, **fields))
    return service.store.get_by_id(uid)


@pytest.fixture
def make_user(service: AuthenticationService):
    def _make(email: str, password: str | None = PASSWORD, **fields) -> Principal:
        return create_user(service, email, password, **fields)

    return _make


# ---------------------------------------------------------------------------
# API client
# ---------------------------------------------------------------------------


def _patch_lifespan(store: UserStore, service: AuthenticationService):
    """Return an async context manager that replaces the real lifespan.

    Wires the test store and service into app.state so routes see isolated
    test DBs, a mocked mailer, and no real identity providers.
    """

    @asynccontextmanager
    async def test_lifespan(app):
        app.state.user_store = store
        app.state.auth_service = service
        app.state.gate = AuthorizationGate(service.codec, store)
        yield

    return test_lifespan


@pytest.fixture
def api_client() -> Generator[tuple[TestClient, AuthenticationService], None, None]:
    """Yield (client, service) backed by a fresh shared-memory database.

    Rate limiting is switched off so tests can log in as often as they like;
    the limiter itself is slowapi's concern.
    """
    db_url = f"sqlite:///file:test_accountd_{next(_db_counter)}?mode=memory&cache=shared&uri=true"
    store = UserStore(db_url)
    mailer = MagicMock()
    service = build_auth_service(_make_settings(), store, mailer=mailer)

    app.router.lifespan_context = _patch_lifespan(store, service)
    limiter.enabled = False

    with TestClient(app, raise_server_exceptions=True) as client:
        yield client, service

    limiter.enabled = True
    store.close()


@pytest.fixture
def admin_headers(api_client) -> dict[str, str]:
    """Authorization header for a freshly created ADMIN."""
    _client, service = api_client
    admin = create_user(service, "admin@x.com", role=Role.ADMIN, email_verified=True)
    token = service.codec.issue(admin.id, Role.ADMIN, TokenKind.access)
    return {"Authorization": f"Bearer {token}"}
