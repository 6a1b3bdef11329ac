"""
auth/errors.py -- Exception taxonomy for the auth core.

Every error carries a stable machine-readable `code`. The API layer maps codes
to HTTP status codes in one place (api/main.py), so stores and services never
think about transport.

Disclosure rules:
  Validation errors (DuplicateIdentityError, WeakCredentialError,
  ConfigInvalidError) carry enough detail for the caller to fix the input.

  InvalidCredentialsError carries nothing: it must not reveal which field was
  wrong or whether the account exists.

  AccountLockedError and AccountInactiveError are not secrets and may say so.

Storage failures are not wrapped here. SQLAlchemy errors propagate unchanged
and become a generic 500 at the HTTP edge.
"""

from __future__ import annotations

from datetime import datetime


class AuthError(Exception):
    """Base class for all auth core errors."""

    code = "auth_error"
    message = "Authentication error."

    def __init__(self, message: str | None = None) -> None:
        super().__init__(message or self.message)


class DuplicateIdentityError(AuthError):
    code = "duplicate"
    message = "A user with that username or email already exists."

    def __init__(self, field: str) -> None:
        self.field = field
        super().__init__(f"A user with that {field} already exists.")


class WeakCredentialError(AuthError):
    code = "weak_password"
    message = "Password does not meet the security policy."

    def __init__(self, violations: list[str]) -> None:
        self.violations = violations
        super().__init__()


class InvalidCredentialsError(AuthError):
    code = "invalid_credentials"
    message = "Invalid username or password."


class AccountLockedError(AuthError):
    code = "locked"
    message = "Account temporarily locked after repeated failed logins."

    def __init__(self, unlocks_at: datetime) -> None:
        self.unlocks_at = unlocks_at
        super().__init__()


class AccountInactiveError(AuthError):
    code = "inactive"
    message = "Account is deactivated."


class SessionExpiredError(AuthError):
    code = "session_expired"
    message = "Session expired or revoked. Please log in again."


class NotFoundError(AuthError):
    code = "not_found"
    message = "Not found."


class ConfigInvalidError(AuthError):
    code = "config_invalid"
    message = "Security configuration rejected."

    def __init__(self, errors: list[str]) -> None:
        self.errors = errors
        super().__init__(f"Security configuration rejected: {'; '.join(errors)}")
