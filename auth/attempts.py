"""
auth/attempts.py -- Login attempt log and rolling-window lockout.

Every login attempt is appended to login_attempts, keyed on the normalized
identity the caller submitted -- not on a resolved user id. Unknown
identities are therefore tracked and locked exactly like real ones, and an
attacker cannot tell the two apart by whether lockout ever happens.

Lockout rule, evaluated on read (nothing about lockout is stored):
  failures = consecutive failed attempts after the most recent success,
             counting only attempts inside the 24h rolling window
  locked   = failures >= max_login_attempts
             and now < last_failure + lockout_duration_minutes

locked_at is the timestamp of the most recent failure. While locked, the
authenticator does not record further attempts, so that timestamp is the
failure that reached the threshold. Once the lockout lapses the failure run
is still >= threshold; one more failure re-locks immediately, a success
clears it.

The window is applied in the query, so old rows simply stop counting -- they
are not deleted on read. prune() removes rows past the audit retention period;
the background reaper calls it.

Concurrency: record() is a single INSERT. The check-then-record sequence is
serialized per identity by Authenticator, not here.
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta
from typing import Callable

from sqlalchemy.engine import Engine

from auth.db import ensure_utc, from_db_time, login_attempts, to_db_time
from auth.models import LockoutState, LoginAttempt
from auth.policy import SecurityConfig
from auth.store import normalize_identity

logger = logging.getLogger("labgate.auth")
audit_logger = logging.getLogger("labgate.audit")

LOCKOUT_WINDOW = timedelta(hours=24)


class AttemptTracker:
    """Append-only attempt log plus the lockout decision derived from it.

    Usage:
        tracker = AttemptTracker(engine, config_store.current)
        if not tracker.is_locked("alice", now):
            ...
            tracker.record("alice", success=False, now=now)
    """

    def __init__(self, engine: Engine, config_source: Callable[[], SecurityConfig]) -> None:
        self.engine = engine
        self._config_source = config_source

    # ------------------------------------------------------------------
    # Lockout
    # ------------------------------------------------------------------

    def lockout_state(self, identity: str, now: datetime) -> LockoutState | None:
        """Return the active lockout for identity, or None if it may log in."""
        now = ensure_utc(now)
        policy = self._config_source()
        key = normalize_identity(identity)
        failures, last_failure = self._failure_run(key, now)
        if failures < policy.max_login_attempts or last_failure is None:
            return None
        unlocks_at = last_failure + timedelta(minutes=policy.lockout_duration_minutes)
        if now >= unlocks_at:
            return None
        return LockoutState(identity=key, locked_at=last_failure, unlocks_at=unlocks_at)

    def is_locked(self, identity: str, now: datetime) -> bool:
        return self.lockout_state(identity, now) is not None

    def remaining_attempts(self, identity: str, now: datetime) -> int:
        """Failures left before a lockout starts. 0 means the next failure locks."""
        if self.is_locked(identity, now):
            return 0
        failures, _ = self._failure_run(normalize_identity(identity), now)
        return max(0, self._config_source().max_login_attempts - failures)

    def record(
        self,
        identity: str,
        success: bool,
        now: datetime,
        source_address: str | None = None,
        client_agent: str | None = None,
    ) -> LockoutState | None:
        """Append an attempt. Returns the lockout this failure started, if any."""
        now = ensure_utc(now)
        key = normalize_identity(identity)
        with self.engine.begin() as conn:
            conn.execute(
                login_attempts.insert().values(
                    identity=key,
                    timestamp=to_db_time(now),
                    success=1 if success else 0,
                    source_address=source_address,
                    client_agent=client_agent[:512] if client_agent else None,
                )
            )

        if self._config_source().audit_log_enabled:
            audit_logger.info(
                "login_attempt identity=%s success=%s source=%s",
                key,
                success,
                source_address or "-",
            )

        if success:
            return None
        state = self.lockout_state(key, now)
        if state is not None and state.locked_at == now:
            logger.warning("Identity %s locked until %s", key, state.unlocks_at.isoformat())
            return state
        return None

    # ------------------------------------------------------------------
    # Audit queries
    # ------------------------------------------------------------------

    def attempts_for(self, identity: str, now: datetime) -> list[LoginAttempt]:
        """Attempts for identity inside the rolling window, oldest first."""
        now = ensure_utc(now)
        key = normalize_identity(identity)
        with self.engine.connect() as conn:
            rows = conn.execute(
                login_attempts.select()
                .where(
                    (login_attempts.c.identity == key)
                    & (login_attempts.c.timestamp > to_db_time(now - LOCKOUT_WINDOW))
                    & (login_attempts.c.timestamp <= to_db_time(now))
                )
                .order_by(login_attempts.c.timestamp, login_attempts.c.id)
            ).fetchall()
        return [_row_to_attempt(r) for r in rows]

    def recent_attempts(self, limit: int = 100, identity: str | None = None) -> list[LoginAttempt]:
        """Newest-first audit view across all identities (or one)."""
        query = login_attempts.select().order_by(login_attempts.c.timestamp.desc(), login_attempts.c.id.desc())
        if identity is not None:
            query = query.where(login_attempts.c.identity == normalize_identity(identity))
        with self.engine.connect() as conn:
            rows = conn.execute(query.limit(limit)).fetchall()
        return [_row_to_attempt(r) for r in rows]

    def prune(self, older_than: datetime) -> int:
        """Delete attempts recorded before older_than. Returns rows removed."""
        with self.engine.begin() as conn:
            result = conn.execute(login_attempts.delete().where(login_attempts.c.timestamp < to_db_time(older_than)))
        return result.rowcount

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _failure_run(self, key: str, now: datetime) -> tuple[int, datetime | None]:
        """Count trailing failures (newest first, stopping at a success) in the window."""
        count = 0
        last_failure: datetime | None = None
        for attempt in reversed(self.attempts_for(key, now)):
            if attempt.success:
                break
            count += 1
            if last_failure is None:
                last_failure = attempt.timestamp
        return count, last_failure


def _row_to_attempt(row) -> LoginAttempt:
    return LoginAttempt(
        identity=row.identity,
        timestamp=from_db_time(row.timestamp),
        success=bool(row.success),
        source_address=row.source_address,
        client_agent=row.client_agent,
    )
