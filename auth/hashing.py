"""
auth/hashing.py -- Credential verifier and session token helpers.

The auth core never stores a raw password. It talks to a CredentialHasher
collaborator that turns a secret into an opaque verifier and checks a secret
against one. BcryptHasher is the production implementation.

Security design decisions:
  Passwords: bcrypt used directly (no passlib wrapper; passlib's wrap-bug check
       trips bcrypt 4.x's 72-byte limit). The cost factor makes brute force
       expensive for low-entropy secrets.

  Timing equalization: BcryptHasher keeps a dummy verifier computed once at
       construction. Authenticator verifies against it when the identity does
       not resolve, so an unknown username costs the same bcrypt work as a
       wrong password and response time does not reveal which happened.

  Session ids: secrets.token_urlsafe(32) gives 256 bits of entropy. The
       sessions table stores HMAC-SHA256(SECRET_KEY, session_id) so a leaked
       table cannot be replayed as live bearer tokens. HMAC (not bcrypt) because
       the input is already high-entropy and lookups must be O(1).

Layer rule: no imports from api/. Import from core/ is not needed here;
callers pass the secret key in.
"""

from __future__ import annotations

import hashlib
import hmac
import logging
import secrets
from typing import Protocol

import bcrypt

from auth.policy import MAX_PASSWORD_BYTES

logger = logging.getLogger("labgate.auth")


class CredentialHasher(Protocol):
    """Turns raw secrets into opaque verifiers and checks them."""

    def hash(self, secret: str) -> str: ...

    def verify(self, secret: str, verifier: str) -> bool: ...

    def dummy_verify(self, secret: str) -> None: ...


class BcryptHasher:
    """CredentialHasher backed by bcrypt.

    bcrypt rejects input over 72 bytes. The password policy refuses such
    passwords before they reach hash(), so verify() treats an over-long
    secret as a plain mismatch: nothing stored can ever equal it.
    """

    def __init__(self, rounds: int = 12) -> None:
        self.rounds = rounds
        self._dummy = self.hash("labgate_timing_dummy")

    def hash(self, secret: str) -> str:
        return bcrypt.hashpw(secret.encode("utf-8"), bcrypt.gensalt(rounds=self.rounds)).decode("utf-8")

    def verify(self, secret: str, verifier: str) -> bool:
        """Return True if secret matches verifier. Malformed verifiers never match."""
        encoded = secret.encode("utf-8")
        if len(encoded) > MAX_PASSWORD_BYTES:
            return False
        try:
            return bcrypt.checkpw(encoded, verifier.encode("utf-8"))
        except ValueError:
            logger.warning("Stored credential verifier is not a valid bcrypt hash")
            return False

    def dummy_verify(self, secret: str) -> None:
        """Spend the same bcrypt work as a real verify; result is discarded."""
        self.verify(secret, self._dummy)


# ---------------------------------------------------------------------------
# Session identifiers
# ---------------------------------------------------------------------------


def generate_session_id() -> str:
    return secrets.token_urlsafe(32)


def hash_session_id(secret_key: str, session_id: str) -> str:
    """Return HMAC-SHA256(secret_key, session_id) as hex."""
    return hmac.new(secret_key.encode(), session_id.encode(), hashlib.sha256).hexdigest()
