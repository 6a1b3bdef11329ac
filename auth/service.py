"""
auth/service.py -- Composition root for the auth core.

AuthService wires the repositories together around one Engine. It replaces
any module-level singleton: the API builds one in its lifespan and stores it
on app.state, tests build as many as they like against throwaway databases.

    service = AuthService.from_url("sqlite:///labgate_auth.db", secret_key=key)
    result = service.authenticator.login("alice", "StrongP@ss1")
    service.close()
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta

from sqlalchemy.engine import Engine

from auth.attempts import AttemptTracker
from auth.authenticator import DEFAULT_LOCK_STRIPES, Authenticator
from auth.config_store import SecurityConfigStore
from auth.db import create_auth_engine, ensure_utc
from auth.errors import NotFoundError
from auth.hashing import BcryptHasher, CredentialHasher
from auth.models import User
from auth.sessions import SessionManager
from auth.store import UserStore

logger = logging.getLogger("labgate.auth")


class AuthService:
    def __init__(
        self,
        engine: Engine,
        secret_key: str,
        hasher: CredentialHasher | None = None,
        lock_stripes: int = DEFAULT_LOCK_STRIPES,
    ) -> None:
        self.engine = engine
        self.hasher = hasher or BcryptHasher()
        self.config = SecurityConfigStore(engine)
        self.users = UserStore(engine, self.hasher, self.config.current)
        self.attempts = AttemptTracker(engine, self.config.current)
        self.sessions = SessionManager(engine, secret_key, self.config.current)
        self.authenticator = Authenticator(self.users, self.attempts, self.sessions, self.hasher, lock_stripes)

    @classmethod
    def from_url(
        cls,
        db_url: str,
        secret_key: str,
        hasher: CredentialHasher | None = None,
        lock_stripes: int = DEFAULT_LOCK_STRIPES,
    ) -> AuthService:
        return cls(create_auth_engine(db_url), secret_key, hasher, lock_stripes)

    # ------------------------------------------------------------------
    # Lifecycle operations that span more than one repository
    # ------------------------------------------------------------------

    def deactivate_user(self, user_id: str) -> User:
        """Deactivate a user and end every session they hold."""
        user = self.users.deactivate(user_id)
        self.sessions.revoke_all_for_user(user_id)
        return user

    def delete_user(self, user_id: str) -> None:
        """Remove a user from the registry and end their sessions. Attempt history is kept."""
        if not self.users.delete_user(user_id):
            raise NotFoundError("User not found.")
        self.sessions.revoke_all_for_user(user_id)

    def reap(self, now: datetime, attempt_retention: timedelta) -> tuple[int, int]:
        """Purge expired sessions and attempts older than the retention period.

        Returns (sessions_removed, attempts_removed).
        """
        now = ensure_utc(now)
        removed_sessions = self.sessions.purge_expired(now)
        removed_attempts = self.attempts.prune(now - attempt_retention)
        if removed_sessions or removed_attempts:
            logger.info("Reaped %d expired session(s), %d old login attempt(s)", removed_sessions, removed_attempts)
        return removed_sessions, removed_attempts

    def close(self) -> None:
        self.engine.dispose()
