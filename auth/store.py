"""
auth/store.py -- SQLAlchemy Core persistence for the user registry.

Pattern: Repository + Data Mapper. UserStore is the repository; _row_to_user
is the mapper. Routes and the authenticator never touch SQL directly.

Identity normalization:
  username and email are trimmed and lower-cased before they are stored or
  compared. Uniqueness is defined over that normalized form across active AND
  inactive users -- deactivating an account does not free its username.

Atomicity:
  create() and e-mail-changing update() run the uniqueness check and the write
  while holding self._write_lock, so two concurrent signups for the same name
  cannot both pass the check. The UNIQUE constraints on the normalized columns
  back this up across processes; an IntegrityError from them is translated to
  DuplicateIdentityError.
  update() writes only the columns a patch names, and deactivate() /
  reactivate() take the same lock, so an edit to one field never writes a
  stale snapshot of another back over a concurrent change.

Credentials:
  create() and password-changing update() take the raw password, check it
  against the live password policy, hand it to the hasher and keep only the
  verifier. Nothing else in this module sees a raw secret.

Security: all queries use bound parameters. No f-strings in SQL.

Layer rule: no imports from api/ or core/.
"""

from __future__ import annotations

import threading
import uuid
from datetime import datetime
from typing import Callable

from sqlalchemy import func, select
from sqlalchemy.engine import Connection, Engine
from sqlalchemy.exc import IntegrityError

from auth.db import dump_grants, from_db_time, load_grants, to_db_time, users, utcnow
from auth.errors import DuplicateIdentityError, NotFoundError, WeakCredentialError
from auth.hashing import CredentialHasher
from auth.models import NewUser, Role, User, UserPatch
from auth.permissions import default_grants_for
from auth.policy import SecurityConfig, validate_password


def normalize_identity(value: str) -> str:
    """Trim and lower-case a username, e-mail or submitted login identity."""
    return value.strip().lower()


class UserStore:
    """Repository for User records.

    Usage:
        store = UserStore(engine, BcryptHasher(), config_store.current)
        user = store.create(NewUser(username="alice", email="alice@lab.test",
                                    name="Alice", password="StrongP@ss1",
                                    role=Role.technician))
        found = store.find_by_login_identity("  ALICE ")
    """

    def __init__(
        self,
        engine: Engine,
        hasher: CredentialHasher,
        config_source: Callable[[], SecurityConfig],
    ) -> None:
        self.engine = engine
        self.hasher = hasher
        self._config_source = config_source
        self._write_lock = threading.Lock()

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def has_users(self) -> bool:
        with self.engine.connect() as conn:
            result = conn.execute(select(func.count()).select_from(users)).scalar()
        return (result or 0) > 0

    def get_by_id(self, user_id: str) -> User | None:
        with self.engine.connect() as conn:
            row = conn.execute(users.select().where(users.c.id == user_id)).fetchone()
        return _row_to_user(row) if row is not None else None

    def find_by_login_identity(self, identity: str) -> User | None:
        """Resolve a login handle: username match first, then e-mail."""
        key = normalize_identity(identity)
        if not key:
            return None
        with self.engine.connect() as conn:
            row = conn.execute(users.select().where(users.c.username == key)).fetchone()
            if row is None:
                row = conn.execute(users.select().where(users.c.email == key)).fetchone()
        return _row_to_user(row) if row is not None else None

    def list_users(self, tenant_id: str | None = None) -> list[User]:
        """Return users ordered by username, optionally restricted to one tenant."""
        query = users.select().order_by(users.c.username)
        if tenant_id is not None:
            query = query.where(users.c.tenant_id == tenant_id)
        with self.engine.connect() as conn:
            rows = conn.execute(query).fetchall()
        return [_row_to_user(r) for r in rows]

    def count_active_admins(self) -> int:
        with self.engine.connect() as conn:
            result = conn.execute(
                select(func.count())
                .select_from(users)
                .where((users.c.role == Role.admin.value) & (users.c.is_active == 1))
            ).scalar()
        return result or 0

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    def create(self, candidate: NewUser) -> User:
        """Register a new user and return it.

        Raises DuplicateIdentityError if the normalized username or e-mail is
        taken, WeakCredentialError if the password breaks the live policy.
        Strength is checked before any hashing or DB work.
        """
        username = normalize_identity(candidate.username)
        email = normalize_identity(candidate.email)
        if not username or not email:
            raise ValueError("username and email must not be blank")

        self._check_strength(candidate.password)

        role = Role(candidate.role)
        grants = list(candidate.permissions) if candidate.permissions is not None else default_grants_for(role)
        now = utcnow()
        user = User(
            id=uuid.uuid4().hex,
            username=username,
            email=email,
            name=candidate.name.strip(),
            role=role,
            credential_verifier=self.hasher.hash(candidate.password),
            permissions=grants,
            is_active=True,
            created_at=now,
            tenant_id=candidate.tenant_id,
            password_changed_at=now,
        )

        with self._write_lock:
            try:
                with self.engine.begin() as conn:
                    self._ensure_unique(conn, username=username, email=email)
                    conn.execute(users.insert().values(**_user_to_row(user)))
            except IntegrityError as exc:
                # Another process won the race between our check and insert.
                raise DuplicateIdentityError("username or email") from exc
        return user

    def update(self, user_id: str, patch: UserPatch) -> User:
        """Apply a partial update and return the updated user.

        Password strength is only re-checked when the patch carries a password.
        A role change without explicit permissions resets grants to the new
        role's defaults.

        Only the columns the patch touches are written. Columns owned by other
        writers (is_active via deactivate(), last_login_at via login) keep
        whatever value they hold at commit time.
        """
        if patch.password is not None:
            self._check_strength(patch.password)

        with self._write_lock:
            current = self.get_by_id(user_id)
            if current is None:
                raise NotFoundError("User not found.")

            changes: dict = {}
            if patch.name is not None:
                changes["name"] = patch.name.strip()
            if patch.email is not None:
                changes["email"] = normalize_identity(patch.email)
            if patch.role is not None:
                changes["role"] = Role(patch.role)
                if patch.permissions is None and changes["role"] != current.role:
                    changes["permissions"] = default_grants_for(changes["role"])
            if patch.permissions is not None:
                changes["permissions"] = list(patch.permissions)
            if patch.tenant_id is not None:
                changes["tenant_id"] = patch.tenant_id
            if patch.is_active is not None:
                changes["is_active"] = patch.is_active
            if patch.password is not None:
                changes["credential_verifier"] = self.hasher.hash(patch.password)
                changes["password_changed_at"] = utcnow()

            if not changes:
                return current

            try:
                with self.engine.begin() as conn:
                    if "email" in changes and changes["email"] != current.email:
                        self._ensure_unique(conn, email=changes["email"], exclude_id=user_id)
                    conn.execute(users.update().where(users.c.id == user_id).values(**_changes_to_row(changes)))
            except IntegrityError as exc:
                raise DuplicateIdentityError("email") from exc
            updated = self.get_by_id(user_id)
        if updated is None:
            raise NotFoundError("User not found.")
        return updated

    def deactivate(self, user_id: str) -> User:
        return self._set_active(user_id, False)

    def reactivate(self, user_id: str) -> User:
        return self._set_active(user_id, True)

    def delete_user(self, user_id: str) -> bool:
        """Remove a user from the registry. Returns False if the id is unknown.

        Login attempt history is keyed on identity strings, not user ids, and
        is left untouched. Callers revoke the user's sessions separately.
        """
        with self._write_lock, self.engine.begin() as conn:
            result = conn.execute(users.delete().where(users.c.id == user_id))
        return result.rowcount > 0

    def update_last_login(self, user_id: str, when: datetime) -> None:
        with self.engine.begin() as conn:
            conn.execute(users.update().where(users.c.id == user_id).values(last_login_at=to_db_time(when)))

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _set_active(self, user_id: str, active: bool) -> User:
        with self._write_lock, self.engine.begin() as conn:
            result = conn.execute(users.update().where(users.c.id == user_id).values(is_active=1 if active else 0))
        if result.rowcount == 0:
            raise NotFoundError("User not found.")
        user = self.get_by_id(user_id)
        if user is None:
            raise NotFoundError("User not found.")
        return user

    def _check_strength(self, password: str) -> None:
        check = validate_password(password, self._config_source())
        if not check.ok:
            raise WeakCredentialError(check.messages)

    @staticmethod
    def _ensure_unique(
        conn: Connection,
        username: str | None = None,
        email: str | None = None,
        exclude_id: str | None = None,
    ) -> None:
        """Raise DuplicateIdentityError if username or email is already taken.

        Both columns are checked against both values: a new username equal to
        somebody's e-mail would make find_by_login_identity() ambiguous.
        """
        for field, value in (("username", username), ("email", email)):
            if value is None:
                continue
            query = select(users.c.id).where((users.c.username == value) | (users.c.email == value))
            if exclude_id is not None:
                query = query.where(users.c.id != exclude_id)
            if conn.execute(query.limit(1)).fetchone() is not None:
                raise DuplicateIdentityError(field)


# ---------------------------------------------------------------------------
# Row mappers (Data Mapper pattern)
# ---------------------------------------------------------------------------


def _user_to_row(user: User) -> dict:
    return {
        "id": user.id,
        "username": user.username,
        "email": user.email,
        "name": user.name,
        "credential_verifier": user.credential_verifier,
        "role": user.role.value,
        "permissions": dump_grants(user.permissions),
        "is_active": 1 if user.is_active else 0,
        "created_at": to_db_time(user.created_at or utcnow()),
        "last_login_at": to_db_time(user.last_login_at) if user.last_login_at else None,
        "tenant_id": user.tenant_id,
        "password_changed_at": to_db_time(user.password_changed_at) if user.password_changed_at else None,
    }


def _changes_to_row(changes: dict) -> dict:
    """Encode a partial update the same way _user_to_row encodes a full user."""
    row = dict(changes)
    if "role" in row:
        row["role"] = row["role"].value
    if "permissions" in row:
        row["permissions"] = dump_grants(row["permissions"])
    if "is_active" in row:
        row["is_active"] = 1 if row["is_active"] else 0
    if "password_changed_at" in row:
        row["password_changed_at"] = to_db_time(row["password_changed_at"])
    return row


def _row_to_user(row) -> User:
    return User(
        id=row.id,
        username=row.username,
        email=row.email,
        name=row.name,
        role=Role(row.role),
        credential_verifier=row.credential_verifier,
        permissions=load_grants(row.permissions),
        is_active=bool(row.is_active),
        created_at=from_db_time(row.created_at),
        last_login_at=from_db_time(row.last_login_at),
        tenant_id=row.tenant_id,
        password_changed_at=from_db_time(row.password_changed_at),
    )
