"""
auth/sessions.py -- Server-side session table with sliding expiry.

A session is valid while now < expires_at. Every authorized request calls
touch(), which moves last_activity_at to now and pushes expires_at out to
now + session_timeout_minutes. A session left untouched for a full timeout is
dead; touch() cannot revive it.

The timeout is read from the live SecurityConfig on issue() and touch(), so a
policy change applies to existing sessions from their next touch onwards.

Identifiers:
  The client holds a random session id. The table is keyed on
  HMAC-SHA256(SECRET_KEY, session_id), so rows read from a backup or a leaked
  DB file cannot be presented as bearer tokens.

Concurrency:
  touch() is one conditional UPDATE (... WHERE expires_at > now) and revoke()
  is one DELETE, so the two cannot interleave into a half-applied state. A
  touch racing a revoke either lands first (and is then deleted) or matches
  no row. Concurrent touches are last-writer-wins on last_activity_at.

Expired rows are harmless but accumulate; purge_expired() is called by the
background reaper in api/main.py.
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta
from typing import Callable

from sqlalchemy.engine import Engine

from auth.db import ensure_utc, from_db_time, sessions, to_db_time
from auth.hashing import generate_session_id, hash_session_id
from auth.models import Session
from auth.policy import SecurityConfig

logger = logging.getLogger("labgate.auth")


class SessionManager:
    """Issue, slide, validate and revoke sessions.

    Usage:
        manager = SessionManager(engine, settings.secret_key, config_store.current)
        session = manager.issue(user.id, now)
        manager.touch(session.session_id, later)
        manager.revoke(session.session_id)
    """

    def __init__(
        self,
        engine: Engine,
        secret_key: str,
        config_source: Callable[[], SecurityConfig],
    ) -> None:
        self.engine = engine
        self._secret_key = secret_key
        self._config_source = config_source

    def _timeout(self) -> timedelta:
        return timedelta(minutes=self._config_source().session_timeout_minutes)

    def _key(self, session_id: str) -> str:
        return hash_session_id(self._secret_key, session_id)

    def issue(self, user_id: str, now: datetime) -> Session:
        now = ensure_utc(now)
        session = Session(
            session_id=generate_session_id(),
            user_id=user_id,
            issued_at=now,
            last_activity_at=now,
            expires_at=now + self._timeout(),
        )
        with self.engine.begin() as conn:
            conn.execute(
                sessions.insert().values(
                    token_hash=self._key(session.session_id),
                    user_id=user_id,
                    issued_at=to_db_time(now),
                    last_activity_at=to_db_time(now),
                    expires_at=to_db_time(session.expires_at),
                )
            )
        return session

    def touch(self, session_id: str, now: datetime) -> bool:
        """Slide the session window to now. Returns False if the session is expired or unknown."""
        now = ensure_utc(now)
        with self.engine.begin() as conn:
            result = conn.execute(
                sessions.update()
                .where((sessions.c.token_hash == self._key(session_id)) & (sessions.c.expires_at > to_db_time(now)))
                .values(
                    last_activity_at=to_db_time(now),
                    expires_at=to_db_time(now + self._timeout()),
                )
            )
        return result.rowcount > 0

    def get(self, session_id: str, now: datetime) -> Session | None:
        """Return the session if it exists and has not expired."""
        now = ensure_utc(now)
        with self.engine.connect() as conn:
            row = conn.execute(sessions.select().where(sessions.c.token_hash == self._key(session_id))).fetchone()
        if row is None:
            return None
        session = Session(
            session_id=session_id,
            user_id=row.user_id,
            issued_at=from_db_time(row.issued_at),
            last_activity_at=from_db_time(row.last_activity_at),
            expires_at=from_db_time(row.expires_at),
        )
        if now >= session.expires_at:
            return None
        return session

    def is_valid(self, session_id: str, now: datetime) -> bool:
        return self.get(session_id, now) is not None

    def revoke(self, session_id: str) -> None:
        """Invalidate a session immediately. Unknown or already-revoked ids are a no-op."""
        with self.engine.begin() as conn:
            conn.execute(sessions.delete().where(sessions.c.token_hash == self._key(session_id)))

    def revoke_all_for_user(self, user_id: str) -> int:
        """Drop every session belonging to user_id. Returns how many were removed."""
        with self.engine.begin() as conn:
            result = conn.execute(sessions.delete().where(sessions.c.user_id == user_id))
        if result.rowcount:
            logger.info("Revoked %d session(s) for user %s", result.rowcount, user_id)
        return result.rowcount

    def purge_expired(self, now: datetime) -> int:
        """Delete sessions whose expiry has passed. Returns rows removed."""
        with self.engine.begin() as conn:
            result = conn.execute(sessions.delete().where(sessions.c.expires_at <= to_db_time(now)))
        return result.rowcount
