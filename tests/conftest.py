"""
tests/conftest.py -- Shared test fixtures for credcore.

This module provides:
  - FrozenClock: an injectable Clock that only moves when a test advances it
  - settings / store / service: an isolated AuthService over in-memory SQLite
  - clinician_role / user: the "Clinician" role with "ViewRecords" and one member
  - make_user(): register additional users
  - api_client: TestClient over the real FastAPI app with a patched lifespan

Design: API tests use named shared-memory SQLite URIs (not plain :memory:)
because TestClient runs sync route handlers in a thread pool. Plain :memory:
DBs are per-connection and would present a blank schema to each worker
thread. Unit tests run in one thread, so plain :memory: is enough there.

The DEBUG env var must be set before any auth module import so get_settings()
auto-generates SECRET_KEY in dev mode rather than raising ValueError.
"""

from __future__ import annotations

import os
import uuid
from collections.abc import Generator
from contextlib import asynccontextmanager
from datetime import date, datetime, timedelta, timezone

# CRITICAL: Set DEBUG before any auth/core import so get_settings() can
# auto-generate SECRET_KEY in dev mode instead of raising ValueError.
os.environ.setdefault("DEBUG", "true")

import pytest
from fastapi.testclient import TestClient

from api.main import app
from auth.models import User
from auth.service import AuthService
from auth.store import IdentityStore
from core.config import Settings

START = datetime(2030, 1, 1, 12, 0, tzinfo=timezone.utc)
PASSWORD = "correct-horse-42"
TEST_SECRET_KEY = "k" * 48


class FrozenClock:
    def __init__(self, start: datetime = START) -> None:
        self.current = start

    def now(self) -> datetime:
        return self.current

    def advance(self, **kwargs) -> datetime:
        self.current += timedelta(**kwargs)
        return self.current


# ---------------------------------------------------------------------------
# Core fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def clock() -> FrozenClock:
    return FrozenClock()


@pytest.fixture
def settings() -> Settings:
    return Settings(
        debug=True,
        secret_key=TEST_SECRET_KEY,
        lockout_threshold=5,
        lockout_minutes=15,
        access_token_expire_minutes=15,
        refresh_token_expire_days=7,
        password_reset_expire_minutes=30,
    )


@pytest.fixture
def store() -> Generator[IdentityStore, None, None]:
    s = IdentityStore("sqlite:///:memory:")
    yield s
    s.close()


@pytest.fixture
def service(store: IdentityStore, settings: Settings, clock: FrozenClock) -> AuthService:
    return AuthService(store, settings, clock)


@pytest.fixture
def clinician_role(service: AuthService):
    """Default role "Clinician" holding exactly {"ViewRecords"}."""
    role = service.access.create_role("Clinician", "CLN", "Clinical staff", is_default=True)
    privilege = service.access.create_privilege("ViewRecords")
    service.access.grant(role.id, privilege.id)
    return role


def make_user(
    service: AuthService,
    email: str = "ada@example.com",
    role_id: int | None = None,
    password: str = PASSWORD,
) -> User:
    return service.register(
        full_name="Ada Lovelace",
        phone_number="0912-345-678",
        email=email,
        password=password,
        gender=False,
        identity_number="012345678901",
        date_of_birth=date(1990, 5, 17),
        address="12 Analytical Street",
        role_id=role_id,
    )


@pytest.fixture
def user(service: AuthService, clinician_role) -> User:
    return make_user(service, role_id=clinician_role.id)


# ---------------------------------------------------------------------------
# API fixture
# ---------------------------------------------------------------------------


def _patch_lifespan(store: IdentityStore, service: AuthService, sent_tokens: list):
    """Return an async context manager that replaces the real lifespan.

    Wires the pre-built store and service into app.state so routes see an
    isolated database, and captures reset tokens instead of logging them.
    """

    @asynccontextmanager
    async def test_lifespan(app):
        app.state.user_store = store
        app.state.auth_service = service
        app.state.reset_token_sink = sent_tokens.append
        yield

    return test_lifespan


@pytest.fixture
def api_client(settings: Settings) -> Generator[tuple[TestClient, AuthService, list], None, None]:
    """Yield (client, service, sent_reset_tokens) over a fresh shared-memory DB.

    The service uses the real clock: access tokens are verified by jose
    against wall time, so a frozen clock would fight it.

    Seeds:
      - "Clinician" (default) with ViewRecords
      - "Administrator" with ManageUsers, ManageRoles, ViewRecords
      - ada@example.com (Clinician) and admin@example.com (Administrator)
    """
    db_url = f"sqlite:///file:test_auth_{uuid.uuid4().hex}?mode=memory&cache=shared&uri=true"
    store = IdentityStore(db_url=db_url)
    service = AuthService(store, settings)

    clinician = service.access.create_role("Clinician", "CLN", "Clinical staff", is_default=True)
    admin_role = service.access.create_role("Administrator", "ADM", "System administrators")
    for name, roles in (
        ("ViewRecords", (clinician, admin_role)),
        ("ManageUsers", (admin_role,)),
        ("ManageRoles", (admin_role,)),
    ):
        privilege = service.access.create_privilege(name)
        for role in roles:
            service.access.grant(role.id, privilege.id)
    make_user(service, role_id=clinician.id)
    make_user(service, email="admin@example.com", role_id=admin_role.id)

    sent_tokens: list = []
    app.router.lifespan_context = _patch_lifespan(store, service, sent_tokens)

    with TestClient(app, base_url="http://localhost", raise_server_exceptions=True) as client:
        yield client, service, sent_tokens

    store.close()
