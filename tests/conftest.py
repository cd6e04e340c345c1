"""
tests/conftest.py -- Shared test fixtures for civicauth.

This module provides:
  - db_url: a fresh named shared-memory SQLite URI per test
  - store/service fixtures (accounts, refresh_store, audit_store, recorder,
    issuer, verifier, account_service, reset_store, password_reset) for
    unit tests without HTTP
  - client: TestClient over the real ASGI app (api + web guard) with the
    lifespan patched to wire isolated stores

Plain helpers (make_account, basic_header, bearer, PASSWORD) live in
tests/helpers.py.

Design: Named shared-memory SQLite URIs (not plain :memory:) are required
because TestClient runs route handlers in a thread pool and every store owns
its own engine. Plain :memory: DBs are per-connection and would present a
blank schema to each of them. The named URI format
(file:name?mode=memory&cache=shared&uri=true) shares one in-memory instance
across all connections in the same process.

Environment must be set before any civicauth import: get_settings() is
cached and api/main.py reads it at import time.
"""

from __future__ import annotations

import os
import uuid
from collections.abc import Generator
from contextlib import asynccontextmanager
from unittest.mock import MagicMock

# CRITICAL: set before any civicauth import.
os.environ.setdefault("DEBUG", "true")  # auto-generate signing secrets
os.environ.setdefault("ALLOWED_HOSTS", '["*"]')  # TestClient sends Host: testserver
os.environ.setdefault("LOGIN_RATE_LIMIT", "10000/minute")
os.environ.setdefault("REGISTER_RATE_LIMIT", "10000/minute")
os.environ.setdefault("REFRESH_RATE_LIMIT", "10000/minute")
os.environ.setdefault("PASSWORD_RESET_RATE_LIMIT", "10000/minute")
os.environ.setdefault("AUDIT_WORKERS", "0")

import pytest
from fastapi.testclient import TestClient

import auth.tokens as tokens_module
from api.main import close_state, init_state
from asgi import app
from audit.recorder import AuditRecorder
from audit.store import AuditStore
from auth.accounts import AccountService
from auth.credentials import CredentialVerifier
from auth.password_reset import PasswordResetService, PasswordResetStore
from auth.store import AccountStore
from auth.token_store import RefreshTokenStore
from auth.tokens import TokenIssuer
from core.config import Settings, get_settings
from tests.helpers import RecordingNotifier

# Cheap hashes keep the suite fast; cost does not change behaviour.
tokens_module.BCRYPT_ROUNDS = 4

# ---------------------------------------------------------------------------
# Store and service fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def db_url() -> str:
    return f"sqlite:///file:test_{uuid.uuid4().hex}?mode=memory&cache=shared&uri=true"


@pytest.fixture
def settings() -> Settings:
    return get_settings()


@pytest.fixture
def audit_store(db_url: str) -> Generator[AuditStore, None, None]:
    store = AuditStore(db_url)
    yield store
    store.close()


@pytest.fixture
def recorder(audit_store: AuditStore) -> AuditRecorder:
    return AuditRecorder(audit_store)


@pytest.fixture
def accounts(db_url: str) -> Generator[AccountStore, None, None]:
    store = AccountStore(db_url)
    yield store
    store.close()


@pytest.fixture
def refresh_store(db_url: str) -> Generator[RefreshTokenStore, None, None]:
    store = RefreshTokenStore(db_url)
    yield store
    store.close()


@pytest.fixture
def issuer(settings: Settings, accounts: AccountStore, refresh_store: RefreshTokenStore) -> TokenIssuer:
    return TokenIssuer(settings, accounts, refresh_store)


@pytest.fixture
def verifier(accounts: AccountStore, recorder: AuditRecorder) -> CredentialVerifier:
    return CredentialVerifier(accounts, recorder)


@pytest.fixture
def notifier() -> RecordingNotifier:
    return RecordingNotifier()


@pytest.fixture
def account_service(accounts: AccountStore, issuer: TokenIssuer, notifier: RecordingNotifier) -> AccountService:
    return AccountService(accounts, issuer, notifier)


@pytest.fixture
def reset_store(db_url: str) -> Generator[PasswordResetStore, None, None]:
    store = PasswordResetStore(db_url)
    yield store
    store.close()


@pytest.fixture
def password_reset(
    accounts: AccountStore, reset_store: PasswordResetStore, issuer: TokenIssuer, notifier: RecordingNotifier
) -> PasswordResetService:
    return PasswordResetService(accounts, reset_store, issuer, notifier)


# ---------------------------------------------------------------------------
# HTTP client
# ---------------------------------------------------------------------------


def _patch_lifespan(settings: Settings, notifier: RecordingNotifier):
    """Return an async context manager that replaces the real lifespan.

    Wires isolated stores through the real init_state() so routes exercise
    the production wiring. Audit writes run inline (no executor) so tests
    can assert on them right after a response. The OAuth registry is a
    MagicMock; OAuth tests install their own fake client.
    """

    @asynccontextmanager
    async def test_lifespan(app):
        init_state(app, settings, audit_executor=None, oauth_registry=MagicMock(), notifier=notifier)
        yield
        close_state(app)

    return test_lifespan


@pytest.fixture
def client(db_url: str, notifier: RecordingNotifier) -> Generator[TestClient, None, None]:
    """TestClient over the assembled app with a fresh database.

    follow_redirects=False so tests can assert on redirect Location headers.
    """
    settings = get_settings().model_copy(update={"database_url": db_url})
    app.router.lifespan_context = _patch_lifespan(settings, notifier)
    with TestClient(app, follow_redirects=False, raise_server_exceptions=True) as test_client:
        yield test_client
