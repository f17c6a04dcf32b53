"""
tests/conftest.py -- Shared test fixtures for gpt-user-auth.

This module provides:
  - db: an isolated named shared-memory Database per test
  - client: TestClient over the real ASGI app with a patched lifespan
  - make_user / make_client / make_code: factories that write through the stores
  - outbox: the RecordingEmailSender wired into app.state

Design: Named shared-memory SQLite URIs (not plain :memory:) are required
because TestClient runs route handlers in a thread pool. Plain :memory: DBs
are per-connection and would present a blank schema to each worker thread.
The named URI format (file:name?mode=memory&cache=shared&uri=true) shares
one in-memory instance across all connections in the same process.

Environment variables must be set before any core/ import so the cached
get_settings() sees them.
"""

from __future__ import annotations

import os
import uuid
from collections.abc import Generator
from contextlib import asynccontextmanager
from datetime import timedelta

# CRITICAL: set before importing the app so get_settings() picks them up.
os.environ.setdefault("DEBUG", "true")
os.environ["AUTH_BEARER_TOKENS"] = '["test-service-token"]'
os.environ["LOGIN_RATE_LIMIT"] = "1000/minute"
os.environ["SMTP_HOST"] = ""

import pytest
from fastapi.testclient import TestClient

from asgi import app
from auth.models import User, UserStatus
from auth.security import hash_new_passphrase
from auth.sessions import SessionManager
from auth.store import UserStore
from core.config import get_settings
from core.db import Database, now_utc
from core.emails import EmailRenderer, EmailSender, OutgoingEmail
from core.limiter import limiter
from oauth2.models import AuthorizationCode, Client, ClientStatus
from oauth2.store import OAuth2Store

SERVICE_TOKEN = "test-service-token"


class RecordingEmailSender(EmailSender):
    """Keeps every message in memory. Set fail=True to simulate a delivery error."""

    def __init__(self) -> None:
        self.sent: list[OutgoingEmail] = []
        self.fail = False

    def send(self, message: OutgoingEmail) -> bool:
        if self.fail:
            return False
        self.sent.append(message)
        return True


# ---------------------------------------------------------------------------
# Database and stores
# ---------------------------------------------------------------------------


@pytest.fixture
def db() -> Generator[Database, None, None]:
    """Fresh in-memory database with the full schema."""
    name = f"test_{uuid.uuid4().hex}"
    database = Database(f"sqlite:///file:{name}?mode=memory&cache=shared&uri=true")
    yield database
    database.close()


@pytest.fixture
def user_store() -> UserStore:
    return UserStore()


@pytest.fixture
def oauth2_store() -> OAuth2Store:
    return OAuth2Store()


@pytest.fixture
def outbox() -> RecordingEmailSender:
    return RecordingEmailSender()


# ---------------------------------------------------------------------------
# Factories
# ---------------------------------------------------------------------------


@pytest.fixture
def make_user(db: Database, user_store: UserStore):
    """Create a user with a real passphrase hash. Returns the stored User."""

    def _make(
        email: str = "a@b.com",
        passphrase: str = "correct horse",
        status: UserStatus = UserStatus.ACTIVE,
        locale: str | None = "en",
    ) -> User:
        pass_hash, pass_salt = hash_new_passphrase(passphrase)
        with db.transaction() as conn:
            return user_store.create_user(
                conn,
                User(email=email, pass_hash=pass_hash, pass_salt=pass_salt, status=status, locale=locale),
            )

    return _make


@pytest.fixture
def make_client(db: Database, oauth2_store: OAuth2Store):
    """Register an OAuth2 client. Returns the stored Client."""

    def _make(
        client_id: str = "abc",
        client_secret: str = "s3cret",
        name: str = "Test GPT",
        redirect_uri: str = "https://chat.example.com/callback",
        status: ClientStatus = ClientStatus.ACTIVE,
    ) -> Client:
        with db.transaction() as conn:
            return oauth2_store.create_client(
                conn,
                Client(
                    client_id=client_id,
                    client_secret=client_secret,
                    name=name,
                    redirect_uri=redirect_uri,
                    status=status,
                ),
            )

    return _make


@pytest.fixture
def make_code(db: Database, oauth2_store: OAuth2Store):
    """Persist an authorization code expiring `expires_in` seconds from now."""

    def _make(
        client: Client,
        user_ref: int,
        expires_in: int = 3600,
        redirect_uri: str | None = None,
        scope: str | None = None,
    ) -> AuthorizationCode:
        with db.transaction() as conn:
            return oauth2_store.create_code(
                conn,
                AuthorizationCode(
                    client_ref=client.id,
                    user_ref=user_ref,
                    date_expired=now_utc() + timedelta(seconds=expires_in),
                    redirect_uri=redirect_uri if redirect_uri is not None else client.redirect_uri,
                    scope=scope,
                ),
            )

    return _make


# ---------------------------------------------------------------------------
# Application
# ---------------------------------------------------------------------------


def _patch_lifespan(db: Database, user_store: UserStore, oauth2_store: OAuth2Store, sender: EmailSender):
    """Return an async context manager that replaces the real lifespan.

    Wires the per-test database, stores and the recording email sender into
    app.state so routes never touch a real database file or SMTP server.
    """

    @asynccontextmanager
    async def test_lifespan(app):
        settings = get_settings()
        app.state.settings = settings
        app.state.db = db
        app.state.user_store = user_store
        app.state.oauth2_store = oauth2_store
        app.state.sessions = SessionManager(user_store, settings)
        app.state.email_sender = sender
        app.state.email_renderer = EmailRenderer(default_locale=settings.default_locale)
        yield

    return test_lifespan


@pytest.fixture
def client(
    db: Database,
    user_store: UserStore,
    oauth2_store: OAuth2Store,
    outbox: RecordingEmailSender,
) -> Generator[TestClient, None, None]:
    """TestClient over the real app; redirects are not followed.

    Web tests assert on 303 Location headers, which are invisible once the
    client follows the redirect.
    """
    app.router.lifespan_context = _patch_lifespan(db, user_store, oauth2_store, outbox)
    limiter.reset()
    with TestClient(app, follow_redirects=False, raise_server_exceptions=True) as test_client:
        yield test_client


@pytest.fixture
def service_headers() -> dict[str, str]:
    return {"Authorization": f"Bearer {SERVICE_TOKEN}"}
