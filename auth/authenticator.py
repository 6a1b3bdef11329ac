"""
auth/authenticator.py -- Login orchestration.

Order of operations in login() (must not be rearranged):
  1. Lockout check. A locked identity gets AccountLocked and the credential is
     never looked at, so a locked-out attacker learns nothing about whether
     the guess was right.
  2. Resolve + verify. Unknown identity and wrong secret both record a failure
     and return the same InvalidCredentials value. For an unknown identity
     the hasher still runs against a dummy verifier so the two branches cost
     the same bcrypt work.
  3. Inactive account. Only reached with a correct secret. Deactivation is an
     administrative state, not a secret, so it is reported distinctly. It is
     not recorded as a failure: reactivating a user must not leave them
     locked out.
  4. Success. Record it (clearing the failure run), stamp last_login_at and
     issue a session.

Steps 1-4 run under a per-identity lock so two concurrent requests for the
same identity cannot interleave their check and record. Locks are striped
(a fixed table indexed by hash) so memory stays bounded no matter how many
distinct identities an attacker submits. Unrelated identities that share a
stripe only serialize with each other, which costs latency, not correctness.

A stripe is held across the bcrypt verify, so a spray of guesses against many
identities can delay legitimate logins that hash to a busy stripe. Operators
who see login latency climb under such traffic raise LOGIN_LOCK_STRIPES
(default 64); each stripe is one threading.Lock.
"""

from __future__ import annotations

import logging
import threading
from datetime import datetime

from auth.attempts import AttemptTracker
from auth.db import ensure_utc, utcnow
from auth.errors import SessionExpiredError
from auth.hashing import CredentialHasher
from auth.models import (
    AccountInactive,
    AccountLocked,
    InvalidCredentials,
    LoginResult,
    LoginSuccess,
    User,
)
from auth.sessions import SessionManager
from auth.store import UserStore, normalize_identity

logger = logging.getLogger("labgate.auth")

DEFAULT_LOCK_STRIPES = 64


class Authenticator:
    """Checks credentials, enforces lockout and issues sessions."""

    def __init__(
        self,
        users: UserStore,
        attempts: AttemptTracker,
        sessions: SessionManager,
        hasher: CredentialHasher,
        lock_stripes: int = DEFAULT_LOCK_STRIPES,
    ) -> None:
        if lock_stripes < 1:
            raise ValueError("lock_stripes must be at least 1")
        self.users = users
        self.attempts = attempts
        self.sessions = sessions
        self.hasher = hasher
        self._stripes = [threading.Lock() for _ in range(lock_stripes)]

    def _lock_for(self, key: str) -> threading.Lock:
        return self._stripes[hash(key) % len(self._stripes)]

    def login(
        self,
        identity: str,
        credential: str,
        now: datetime | None = None,
        source_address: str | None = None,
        client_agent: str | None = None,
    ) -> LoginResult:
        now = ensure_utc(now) if now is not None else utcnow()
        key = normalize_identity(identity)

        with self._lock_for(key):
            lockout = self.attempts.lockout_state(key, now)
            if lockout is not None:
                logger.info("Login refused for locked identity %s", key)
                return AccountLocked(unlocks_at=lockout.unlocks_at)

            user = self.users.find_by_login_identity(key)
            if user is None:
                self.hasher.dummy_verify(credential)
                self.attempts.record(key, False, now, source_address, client_agent)
                return InvalidCredentials()

            if not self.hasher.verify(credential, user.credential_verifier):
                self.attempts.record(key, False, now, source_address, client_agent)
                return InvalidCredentials()

            if not user.is_active:
                logger.info("Login refused for inactive user %s", user.id)
                return AccountInactive()

            self.attempts.record(key, True, now, source_address, client_agent)
            self.users.update_last_login(user.id, now)
            user.last_login_at = now
            session = self.sessions.issue(user.id, now)

        logger.info("User %s logged in", user.id)
        return LoginSuccess(session=session, user=user)

    def logout(self, session_id: str) -> None:
        self.sessions.revoke(session_id)

    def resolve_session(self, session_id: str, now: datetime | None = None) -> User:
        """Touch session_id and return its user.

        Raises SessionExpiredError if the session is unknown, expired, or
        belongs to a user who no longer exists or has been deactivated. In the
        last two cases the session is revoked on the way out.
        """
        now = ensure_utc(now) if now is not None else utcnow()
        session = self.sessions.get(session_id, now)
        if session is None or not self.sessions.touch(session_id, now):
            raise SessionExpiredError()
        user = self.users.get_by_id(session.user_id)
        if user is None or not user.is_active:
            self.sessions.revoke(session_id)
            raise SessionExpiredError()
        return user
