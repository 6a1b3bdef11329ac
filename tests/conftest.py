"""
tests/conftest.py -- Shared test fixtures for LabGate.

This module provides:
  - service: a fresh AuthService on a throwaway SQLite file per test
  - make_user: factory that registers a user through the real UserStore
  - _patch_lifespan(): wires a test AuthService into app.state, bypassing real startup
  - api_client: TestClient with an admin session for API integration tests

Design: file-backed SQLite under tmp_path rather than :memory:. TestClient
runs sync route handlers in a thread pool and every pooled connection must
see the same schema; a file gives that for free and is discarded after the
run.

DEBUG, RATE_LIMIT_ENABLED and BCRYPT_ROUNDS must be set before any auth/core
import: get_settings() is cached on first use and api.limiter reads it at
import time.
"""

from __future__ import annotations

import asyncio
import os
from collections.abc import Generator
from contextlib import asynccontextmanager

# CRITICAL: set before any api/auth/core import.
os.environ.setdefault("DEBUG", "true")
os.environ.setdefault("RATE_LIMIT_ENABLED", "false")
os.environ.setdefault("BCRYPT_ROUNDS", "4")

import pytest
from fastapi.testclient import TestClient

from api.main import app
from auth.hashing import BcryptHasher
from auth.models import LoginSuccess, NewUser, Role, User
from auth.service import AuthService

TEST_SECRET_KEY = "test-secret-key-with-at-least-32-characters"
STRONG_PASSWORD = "StrongP@ss1"


class RecordingNotifier:
    """Notifier double that remembers who it was asked to notify."""

    def __init__(self) -> None:
        self.welcomed: list[str] = []
        self.alerted: list[str] = []

    def send_welcome(self, user: User) -> None:
        self.welcomed.append(user.username)

    def send_security_alert(self, user: User) -> None:
        self.alerted.append(user.username)


def _make_service(db_path) -> AuthService:
    # rounds=4 is the bcrypt minimum; keeps the suite fast.
    return AuthService.from_url(f"sqlite:///{db_path}", TEST_SECRET_KEY, BcryptHasher(rounds=4))


@pytest.fixture
def service(tmp_path) -> Generator[AuthService, None, None]:
    svc = _make_service(tmp_path / "auth.db")
    yield svc
    svc.close()


@pytest.fixture
def make_user(service: AuthService):
    """Return a factory: make_user("alice", role=Role.technician) -> User."""

    def _make(
        username: str,
        role: Role = Role.student,
        password: str = STRONG_PASSWORD,
        email: str | None = None,
        tenant_id: str | None = None,
    ) -> User:
        return service.users.create(
            NewUser(
                username=username,
                email=email or f"{username}@lab.test",
                name=username.title(),
                password=password,
                role=role,
                tenant_id=tenant_id,
            )
        )

    return _make


def _patch_lifespan(service: AuthService, notifier: RecordingNotifier):
    """Return an async context manager that replaces the real lifespan.

    The reap_task is a long-sleeping coroutine so shutdown has a real
    asyncio.Task to cancel.
    """

    @asynccontextmanager
    async def test_lifespan(app):
        app.state.auth = service
        app.state.notifier = notifier
        app.state.reap_task = asyncio.create_task(asyncio.sleep(99999))
        yield
        app.state.reap_task.cancel()

    return test_lifespan


@pytest.fixture(scope="module")
def api_client(tmp_path_factory) -> Generator[tuple[TestClient, str, User], None, None]:
    """Yield (client, session_id, admin) for API integration tests.

    The TestClient uses the real FastAPI app with a patched lifespan so
    tests hit real route handlers against an isolated database. The admin
    ("testadmin" / STRONG_PASSWORD) is created and logged in before the
    client starts; pass the session id as a Bearer token.
    """
    svc = _make_service(tmp_path_factory.mktemp("api") / "auth.db")
    admin = svc.users.create(
        NewUser(
            username="testadmin",
            email="testadmin@lab.test",
            name="Test Admin",
            password=STRONG_PASSWORD,
            role=Role.admin,
        )
    )
    result = svc.authenticator.login("testadmin", STRONG_PASSWORD)
    assert isinstance(result, LoginSuccess)

    notifier = RecordingNotifier()
    app.router.lifespan_context = _patch_lifespan(svc, notifier)

    with TestClient(app, raise_server_exceptions=True) as client:
        yield client, result.session.session_id, admin

    svc.close()
