"""
auth/models.py -- Domain dataclasses for authentication and access control.

Pattern: Data class (pure data container, zero logic). Stores, the
authenticator and routes do the work; these types only own the domain shape.

All timestamps are timezone-aware UTC datetimes. Stores convert them to
fixed-width ISO 8601 text at the persistence boundary.

Secret material (credential verifiers, raw session identifiers) is declared
with repr=False so it never lands in a log line via an accidental %r.

Layer rule: no imports from api/ or core/.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import ClassVar, Union


class Action(str, Enum):
    view = "view"
    create = "create"
    edit = "edit"
    delete = "delete"
    export = "export"
    import_ = "import"
    lock = "lock"
    unlock = "unlock"
    verify = "verify"


class Role(str, Enum):
    admin = "admin"
    dev = "dev"
    manager = "manager"
    receptionist = "receptionist"
    student = "student"
    technician = "technician"
    pathologist = "pathologist"
    accountant = "accountant"
    qc = "qc"
    filemanager = "filemanager"
    backup = "backup"
    analytics = "analytics"
    staff = "staff"
    appointments = "appointments"
    center_manager = "center_manager"


@dataclass(frozen=True)
class PermissionGrant:
    """A (module, action-set) pair. module == "all" matches every module."""

    module: str
    actions: frozenset[Action]


@dataclass
class User:
    """An identity plus the capabilities attached to it.

    username and email are stored normalized (trimmed, lower-cased); the
    uniqueness guarantee is defined over that form. credential_verifier is
    opaque output of the hashing collaborator -- never the raw password.

    tenant_id scopes a user to a single collection center. None means the user
    is not tied to one. password_changed_at drives advisory password expiry.
    """

    id: str
    username: str
    email: str
    name: str
    role: Role
    credential_verifier: str = field(repr=False)
    permissions: list[PermissionGrant] = field(default_factory=list)
    is_active: bool = True
    created_at: datetime | None = None
    last_login_at: datetime | None = None
    tenant_id: str | None = None
    password_changed_at: datetime | None = None


@dataclass
class NewUser:
    """Input to UserStore.create(). password is the raw candidate secret.

    The store checks it against the password policy, hands it to the hasher
    and drops it; only the resulting verifier is persisted.

    permissions=None means "derive from role". An explicit empty list is
    honoured as "no grants".
    """

    username: str
    email: str
    name: str
    password: str = field(repr=False)
    role: Role = Role.student
    tenant_id: str | None = None
    permissions: list[PermissionGrant] | None = None


@dataclass
class UserPatch:
    """Partial update for UserStore.update(). None means "leave unchanged"."""

    name: str | None = None
    email: str | None = None
    role: Role | None = None
    permissions: list[PermissionGrant] | None = None
    tenant_id: str | None = None
    is_active: bool | None = None
    password: str | None = field(default=None, repr=False)


@dataclass(frozen=True)
class LoginAttempt:
    """One row of the append-only login attempt log.

    identity is the normalized identity string the caller submitted, which may
    not correspond to any user.
    """

    identity: str
    timestamp: datetime
    success: bool
    source_address: str | None = None
    client_agent: str | None = None


@dataclass(frozen=True)
class LockoutState:
    """Derived lockout window for an identity. Never persisted."""

    identity: str
    locked_at: datetime
    unlocks_at: datetime


@dataclass
class Session:
    """A login session with a sliding expiry.

    session_id is the bearer secret handed to the client. The sessions table
    only stores its HMAC digest.
    """

    session_id: str = field(repr=False)
    user_id: str
    issued_at: datetime
    last_activity_at: datetime
    expires_at: datetime


# ---------------------------------------------------------------------------
# Login outcomes
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class LoginSuccess:
    kind: ClassVar[str] = "success"

    session: Session
    user: User


@dataclass(frozen=True)
class InvalidCredentials:
    """Unknown identity and wrong secret both produce this exact value."""

    kind: ClassVar[str] = "invalid_credentials"


@dataclass(frozen=True)
class AccountLocked:
    kind: ClassVar[str] = "locked"

    unlocks_at: datetime


@dataclass(frozen=True)
class AccountInactive:
    kind: ClassVar[str] = "inactive"


LoginResult = Union[LoginSuccess, InvalidCredentials, AccountLocked, AccountInactive]
