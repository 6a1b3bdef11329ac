"""
API request and response models for the LabGate REST endpoints.

These Pydantic v2 models define the HTTP transport contract. They are
separate from the dataclasses in auth/models.py, which own the internal domain
representation; route handlers map between the two. In particular no response
model has a field for the credential verifier, so it cannot leak by accident.

Separation of concerns: auth/ models = domain truth; api/ models = API contract.
"""

import re
from datetime import datetime
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

from auth.models import Action, LoginAttempt, PermissionGrant, Role, User

# Deliberately loose: one @, no whitespace, a dot in the domain.
_EMAIL_RE = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")

# ---------------------------------------------------------------------------
# Shared pieces
# ---------------------------------------------------------------------------


class GrantModel(BaseModel):
    """One permission grant. module="all" matches every module."""

    model_config = ConfigDict(str_strip_whitespace=True)

    module: str = Field(min_length=1, max_length=64)
    actions: list[Action] = Field(min_length=1)

    def to_domain(self) -> PermissionGrant:
        return PermissionGrant(module=self.module, actions=frozenset(self.actions))

    @classmethod
    def from_domain(cls, grant: PermissionGrant) -> "GrantModel":
        return cls(module=grant.module, actions=sorted(grant.actions, key=lambda a: a.value))


def _check_email(value: Optional[str]) -> Optional[str]:
    if value is not None and not _EMAIL_RE.match(value):
        raise ValueError("Invalid email address.")
    return value


# ---------------------------------------------------------------------------
# Auth
# ---------------------------------------------------------------------------


class LoginRequest(BaseModel):
    """Body for POST /api/v1/auth/login. identity is a username or e-mail."""

    identity: str = Field(min_length=1, max_length=320)
    # Characters, not bytes: a longer multibyte credential is simply a mismatch.
    credential: str = Field(min_length=1, max_length=72)


class LogoutRequest(BaseModel):
    """Optional body for POST /api/v1/auth/logout when no cookie/bearer is sent."""

    session_id: Optional[str] = Field(default=None, max_length=128)


class PermissionResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    module: str
    action: str
    allowed: bool


class LoginAttemptResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    identity: str
    timestamp: datetime
    success: bool
    source_address: Optional[str] = None
    client_agent: Optional[str] = None

    @classmethod
    def from_domain(cls, attempt: LoginAttempt) -> "LoginAttemptResponse":
        return cls(
            identity=attempt.identity,
            timestamp=attempt.timestamp,
            success=attempt.success,
            source_address=attempt.source_address,
            client_agent=attempt.client_agent,
        )


# ---------------------------------------------------------------------------
# Users
# ---------------------------------------------------------------------------


class UserCreate(BaseModel):
    """Body for POST /api/v1/users.

    permissions is optional; when omitted the role's default grants apply.
    """

    model_config = ConfigDict(str_strip_whitespace=True)

    username: str = Field(min_length=3, max_length=64)
    email: str = Field(min_length=3, max_length=320)
    name: str = Field(min_length=1, max_length=255)
    password: str = Field(min_length=1, max_length=72)
    role: Role
    tenant_id: Optional[str] = Field(default=None, max_length=64)
    permissions: Optional[list[GrantModel]] = None

    @field_validator("email")
    @classmethod
    def validate_email(cls, value: Optional[str]) -> Optional[str]:
        return _check_email(value)


class UserUpdate(BaseModel):
    """Body for PATCH /api/v1/users/{id}. Omitted fields are left unchanged."""

    model_config = ConfigDict(str_strip_whitespace=True)

    name: Optional[str] = Field(default=None, min_length=1, max_length=255)
    email: Optional[str] = Field(default=None, min_length=3, max_length=320)
    role: Optional[Role] = None
    permissions: Optional[list[GrantModel]] = None
    tenant_id: Optional[str] = Field(default=None, max_length=64)
    is_active: Optional[bool] = None
    password: Optional[str] = Field(default=None, min_length=1, max_length=72)

    @field_validator("email")
    @classmethod
    def validate_email(cls, value: Optional[str]) -> Optional[str]:
        return _check_email(value)


class UserResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str
    username: str
    email: str
    name: str
    role: Role
    permissions: list[GrantModel]
    is_active: bool
    created_at: Optional[datetime] = None
    last_login_at: Optional[datetime] = None
    tenant_id: Optional[str] = None
    password_changed_at: Optional[datetime] = None

    @classmethod
    def from_domain(cls, user: User) -> "UserResponse":
        """Factory method -- the mapping lives beside the output model."""
        return cls(
            id=user.id,
            username=user.username,
            email=user.email,
            name=user.name,
            role=user.role,
            permissions=[GrantModel.from_domain(g) for g in user.permissions],
            is_active=user.is_active,
            created_at=user.created_at,
            last_login_at=user.last_login_at,
            tenant_id=user.tenant_id,
            password_changed_at=user.password_changed_at,
        )


class MeResponse(UserResponse):
    """GET /auth/me: the current user plus whether their password is due for rotation."""

    password_expired: bool = False


class LoginResponse(BaseModel):
    """Returned on successful login. session_id is also set as an httpOnly cookie.

    password_expired does not block the login; the client prompts for a new
    password.
    """

    model_config = ConfigDict(frozen=True)

    session_id: str
    expires_at: datetime
    user: UserResponse
    password_expired: bool = False


# ---------------------------------------------------------------------------
# Errors and health
# ---------------------------------------------------------------------------


class ErrorDetail(BaseModel):
    """Machine-readable error payload.

    kind repeats code for auth outcomes (invalid_credentials, locked,
    inactive, duplicate, weak_password, ...) so clients that switch on the
    outcome kind find it under either name. unlocks_at is present only for
    code="locked"; violations only for code="weak_password" and
    code="config_invalid".
    """

    model_config = ConfigDict(frozen=True)

    code: str
    kind: Optional[str] = None
    message: str
    detail: Optional[str] = None
    unlocks_at: Optional[datetime] = None
    violations: Optional[list[str]] = None


class ErrorResponse(BaseModel):
    """Top-level error envelope returned on 4xx/5xx responses."""

    model_config = ConfigDict(frozen=True)

    error: ErrorDetail


class HealthResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    status: str = "healthy"
    version: str
    components: dict[str, str] = Field(default_factory=dict)
