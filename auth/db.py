"""
auth/db.py -- Shared SQLAlchemy Core schema and engine factory for the auth DB.

One database holds four logical tables:
  users            -- the registry owned by UserStore
  login_attempts   -- append-only attempt log owned by AttemptTracker
  sessions         -- the session table owned by SessionManager
  security_config  -- single-row policy record owned by SecurityConfigStore

Each repository receives the same Engine so a deployment has one connection
pool and one file. The schema lives here rather than in each repository
because the tables share one MetaData and create_all() call.

Timestamps are stored as fixed-width ISO 8601 UTC strings
(YYYY-MM-DDTHH:MM:SS.ffffff+00:00). Fixed width keeps lexicographic order
equal to chronological order, so range filters can run in SQL.

Security: all queries use bound parameters. No f-strings in SQL.

Layer rule: no imports from api/ or core/.
"""

from __future__ import annotations

import json
from datetime import datetime, timezone

from sqlalchemy import Column, Index, Integer, MetaData, String, Table, Text, create_engine, event, text
from sqlalchemy.engine import Engine

from auth.models import Action, PermissionGrant

metadata = MetaData()

# ---------------------------------------------------------------------------
# Schema
# ---------------------------------------------------------------------------

users = Table(
    "users",
    metadata,
    Column("id", String(32), primary_key=True),
    # username / email are stored normalized; UNIQUE is the last line of
    # defence behind UserStore's in-process lock.
    Column("username", String(255), nullable=False, unique=True),
    Column("email", String(320), nullable=False, unique=True),
    Column("name", String(255), nullable=False),
    Column("credential_verifier", Text, nullable=False),
    Column("role", String(30), nullable=False),
    Column("permissions", Text, nullable=False),  # JSON [{module, actions}]
    Column("is_active", Integer, nullable=False, server_default="1"),
    Column("created_at", String(32), nullable=False),
    Column("last_login_at", String(32)),
    Column("tenant_id", String(64)),
    Column("password_changed_at", String(32)),
)

login_attempts = Table(
    "login_attempts",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("identity", String(320), nullable=False),
    Column("timestamp", String(32), nullable=False),
    Column("success", Integer, nullable=False),
    Column("source_address", String(45)),
    Column("client_agent", String(512)),
    Index("ix_login_attempts_identity_ts", "identity", "timestamp"),
)

sessions = Table(
    "sessions",
    metadata,
    Column("token_hash", String(64), primary_key=True),  # HMAC-SHA256 hex of the session id
    Column("user_id", String(32), nullable=False, index=True),
    Column("issued_at", String(32), nullable=False),
    Column("last_activity_at", String(32), nullable=False),
    Column("expires_at", String(32), nullable=False, index=True),
)

security_config = Table(
    "security_config",
    metadata,
    Column("id", Integer, primary_key=True),  # always 1
    Column("payload", Text, nullable=False),  # JSON SecurityConfig
    Column("updated_at", String(32), nullable=False),
)


# ---------------------------------------------------------------------------
# Engine
# ---------------------------------------------------------------------------


def _set_sqlite_pragmas(dbapi_conn, connection_record) -> None:
    """Enable WAL journal mode and a busy timeout on every new SQLite connection.

    PRAGMAs are per-connection in SQLite, so they are applied from the
    connect event rather than once at startup.
    """
    cursor = dbapi_conn.cursor()
    cursor.execute("PRAGMA journal_mode=WAL")
    cursor.execute("PRAGMA busy_timeout=5000")
    cursor.close()


def create_auth_engine(db_url: str) -> Engine:
    """Create an Engine for db_url and make sure every auth table exists."""
    connect_args: dict = {}
    if db_url.startswith("sqlite"):
        connect_args["check_same_thread"] = False
    engine = create_engine(db_url, connect_args=connect_args)
    if db_url.startswith("sqlite"):
        event.listen(engine, "connect", _set_sqlite_pragmas)
    metadata.create_all(engine)
    if db_url.startswith("sqlite"):
        with engine.begin() as conn:
            _migrate_users_table(conn)
    return engine


def _migrate_users_table(conn) -> None:
    """Add columns introduced after a users table was first created.

    create_all() only creates missing tables, never missing columns. Column
    names are constants here, not input, and SQLite cannot bind identifiers.
    """
    existing = {row[1] for row in conn.execute(text("PRAGMA table_info(users)"))}
    additions = [("password_changed_at", "TEXT")]
    for col, typ in additions:
        if col not in existing:
            conn.execute(text(f"ALTER TABLE users ADD COLUMN {col} {typ}"))  # nosemgrep


# ---------------------------------------------------------------------------
# Column codecs
# ---------------------------------------------------------------------------


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def ensure_utc(value: datetime) -> datetime:
    """Return value as an aware UTC datetime. Naive values are taken to be UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def to_db_time(value: datetime) -> str:
    """Serialize a datetime to fixed-width UTC ISO text."""
    return ensure_utc(value).isoformat(timespec="microseconds")


def from_db_time(value: str | None) -> datetime | None:
    if not value:
        return None
    parsed = datetime.fromisoformat(value)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def dump_grants(grants: list[PermissionGrant]) -> str:
    # Actions are sorted so the stored JSON is stable across runs.
    return json.dumps([{"module": g.module, "actions": sorted(a.value for a in g.actions)} for g in grants])


def load_grants(raw: str | None) -> list[PermissionGrant]:
    if not raw:
        return []
    return [
        PermissionGrant(module=item["module"], actions=frozenset(Action(a) for a in item["actions"]))
        for item in json.loads(raw)
    ]
