"""
auth/policy.py -- Runtime security policy and password strength rules.

SecurityConfig is a pydantic model so that every path that changes it (the
persisted row on startup, PUT /config/security) goes through the same field
constraints. extra="forbid" makes a misspelled key a validation error instead
of a silently ignored no-op.

validate_password() is pure: no I/O, no logging, no dependence on anything but
its two arguments. It reports every violation so the caller can show a
complete remediation list. It runs on account creation and on credential
changes only -- login verifies, it never re-validates strength.

bcrypt only accepts 72 bytes of input, so the upper bound is counted in UTF-8
bytes, not characters. A 40-character password of accented letters is already
over it.

Layer rule: no imports from api/ or core/.
"""

from __future__ import annotations

import secrets
import string
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum

from pydantic import BaseModel, ConfigDict, Field

from auth.models import User

# Characters that satisfy the special-character rule.
SPECIAL_CHARACTERS = "!@#$%^&*()_+-=[]{};':\"\\|,.<>/?"

MAX_PASSWORD_BYTES = 72


class SecurityConfig(BaseModel):
    """Process-wide security policy. Defaults apply when nothing valid is persisted."""

    model_config = ConfigDict(extra="forbid", validate_assignment=True)

    session_timeout_minutes: int = Field(default=30, ge=1, le=24 * 60)
    max_login_attempts: int = Field(default=5, ge=1, le=100)
    lockout_duration_minutes: int = Field(default=15, ge=1, le=24 * 60)
    password_min_length: int = Field(default=8, ge=1, le=MAX_PASSWORD_BYTES)
    password_expiry_days: int = Field(default=90, ge=1, le=365)
    require_uppercase: bool = True
    require_lowercase: bool = True
    require_number: bool = True
    require_special: bool = True
    audit_log_enabled: bool = True


class Violation(str, Enum):
    too_short = "too_short"
    too_long = "too_long"
    missing_uppercase = "missing_uppercase"
    missing_lowercase = "missing_lowercase"
    missing_number = "missing_number"
    missing_special = "missing_special"


@dataclass(frozen=True)
class PasswordCheck:
    ok: bool
    violations: list[Violation] = field(default_factory=list)
    messages: list[str] = field(default_factory=list)


def validate_password(candidate: str, policy: SecurityConfig) -> PasswordCheck:
    """Check candidate against policy and return every rule it breaks."""
    found: list[tuple[Violation, str]] = []

    if len(candidate) < policy.password_min_length:
        found.append(
            (Violation.too_short, f"Password must be at least {policy.password_min_length} characters long")
        )
    if len(candidate.encode("utf-8")) > MAX_PASSWORD_BYTES:
        found.append((Violation.too_long, f"Password must not exceed {MAX_PASSWORD_BYTES} bytes"))
    if policy.require_uppercase and not any(c.isupper() for c in candidate):
        found.append((Violation.missing_uppercase, "Password must contain at least one uppercase letter"))
    if policy.require_lowercase and not any(c.islower() for c in candidate):
        found.append((Violation.missing_lowercase, "Password must contain at least one lowercase letter"))
    if policy.require_number and not any(c.isdigit() for c in candidate):
        found.append((Violation.missing_number, "Password must contain at least one number"))
    if policy.require_special and not any(c in SPECIAL_CHARACTERS for c in candidate):
        found.append((Violation.missing_special, "Password must contain at least one special character"))

    return PasswordCheck(
        ok=not found,
        violations=[v for v, _ in found],
        messages=[m for _, m in found],
    )


def generate_password(policy: SecurityConfig, length: int = 12) -> str:
    """Return a random password that satisfies policy.

    One character from each required class is placed first, the rest is drawn
    from the full alphabet, then the result is shuffled with a CSPRNG. The
    alphabet is ASCII, so the result is capped at MAX_PASSWORD_BYTES characters.
    """
    required: list[str] = []
    if policy.require_uppercase:
        required.append(string.ascii_uppercase)
    if policy.require_lowercase:
        required.append(string.ascii_lowercase)
    if policy.require_number:
        required.append(string.digits)
    if policy.require_special:
        required.append("!@#$%^&*")

    alphabet = string.ascii_letters + string.digits + "!@#$%^&*"
    size = min(max(length, policy.password_min_length, len(required)), MAX_PASSWORD_BYTES)

    chars = [secrets.choice(pool) for pool in required]
    chars.extend(secrets.choice(alphabet) for _ in range(size - len(chars)))
    secrets.SystemRandom().shuffle(chars)
    return "".join(chars)


def password_expired(user: User, policy: SecurityConfig, now: datetime) -> bool:
    """Return True once user's password is older than policy.password_expiry_days.

    Rows written before password_changed_at existed fall back to created_at.
    Expiry is advisory: login still succeeds and the client is told to rotate.
    """
    changed_at = user.password_changed_at or user.created_at
    if changed_at is None:
        return False
    return now >= changed_at + timedelta(days=policy.password_expiry_days)
