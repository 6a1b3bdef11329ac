"""
core/config.py -- Centralized process configuration via pydantic-settings.

All environment variable reads for LabGate happen here. No module should call
os.getenv() or os.environ.get() directly -- import get_settings() instead.

Two layers of configuration exist and must not be confused:
  Settings (this module): process-level knobs fixed at startup -- database URL,
      SECRET_KEY, rate limits, reaper cadence. Changing them needs a restart.
  SecurityConfig (auth/policy.py): the runtime security policy -- lockout
      thresholds, session timeout, password rules. Administrators edit it
      through PUT /api/v1/config/security and it is persisted in the auth DB.

Design patterns used:
  Singleton via lru_cache: get_settings() instantiates Settings once and
      returns the cached instance afterwards (FastAPI's documented pattern).

  @model_validator(mode="after"): dev mode (DEBUG=true) auto-generates a
      SECRET_KEY with a warning; production refuses to start without one.

Security notes:
  SECRET_KEY keys the HMAC that protects session identifiers at rest. Keys
  shorter than 32 characters are rejected outright.

Layer rule: core/ is the kernel. This module may not import from api/ or auth/.
"""

import logging
import secrets
from functools import lru_cache
from pathlib import Path

from pydantic import Field, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

logger = logging.getLogger("labgate.config")

_DEFAULT_DB_URL = f"sqlite:///{Path(__file__).resolve().parent.parent / 'labgate_auth.db'}"


class Settings(BaseSettings):
    """Process settings loaded from environment variables and an optional .env file.

    Every field has a default so Settings() works in tests without a .env
    file. Field names map to upper-cased env vars (database_url -> DATABASE_URL).
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # ------------------------------------------------------------------
    # Core
    # ------------------------------------------------------------------

    debug: bool = False
    # Empty string means "not configured"; the validator below resolves it.
    secret_key: str = ""
    database_url: str = _DEFAULT_DB_URL

    # ------------------------------------------------------------------
    # Auth transport
    # ------------------------------------------------------------------

    secure_cookies: bool = False
    bcrypt_rounds: int = Field(default=12, ge=4, le=31)
    # Per-identity login locks; raise if sprayed logins queue behind each other.
    login_lock_stripes: int = Field(default=64, ge=1, le=4096)

    # ------------------------------------------------------------------
    # Rate limiting
    # ------------------------------------------------------------------

    login_rate_limit: str = "10/minute"
    rate_limit_enabled: bool = True

    # ------------------------------------------------------------------
    # Background maintenance
    # ------------------------------------------------------------------

    session_reap_interval_seconds: int = Field(default=300, ge=1)
    # Login attempts are audit history; the lockout window itself is 24h.
    attempt_retention_days: int = Field(default=90, ge=1)

    @model_validator(mode="after")
    def validate_secret_key(self) -> "Settings":
        """Resolve SECRET_KEY according to the dev/production policy.

        Dev mode (DEBUG=true): generate a random key and warn. Sessions issued
        before a restart stop validating, which is acceptable locally.

        Production mode: a missing key is a hard startup failure.

        Both modes: keys shorter than 32 characters are rejected.
        """
        if not self.secret_key:
            if self.debug:
                self.secret_key = secrets.token_hex(32)
                logger.warning("Using auto-generated SECRET_KEY. Sessions will not survive a restart.")
            else:
                raise ValueError(
                    "SECRET_KEY is required in production mode. "
                    "Set SECRET_KEY in your environment or .env file. "
                    "To run in development mode, set DEBUG=true."
                )
        if len(self.secret_key) < 32:
            raise ValueError("SECRET_KEY must be at least 32 characters.")
        return self


@lru_cache
def get_settings() -> Settings:
    """Return the process Settings singleton.

    In tests: call get_settings.cache_clear() after changing environment
    variables so the next call re-reads them.
    """
    return Settings()
