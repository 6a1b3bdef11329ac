"""
auth/config_store.py -- Persisted, runtime-editable SecurityConfig.

Pattern: single-row settings table, same as an app-settings record -- id=1 is
the only row; it is created on first write.

Loading never fails startup. A missing row, unparseable JSON or a payload
that no longer validates (e.g. a removed field) is logged and replaced by the
defaults in memory. The bad row is left in place so an operator can inspect
it; the next successful update() overwrites it.

Updates are all-or-nothing. The patch is merged with the current config and
the merged dict is validated as a whole. Only a fully valid result is
persisted and swapped in; anything else raises ConfigInvalidError and the
previous config stays live.

Readers call current() on every operation, so a policy change takes effect
on the next login / session check without a restart.
"""

from __future__ import annotations

import json
import logging
import threading

from pydantic import ValidationError
from sqlalchemy import select
from sqlalchemy.engine import Engine

from auth.db import security_config, to_db_time, utcnow
from auth.errors import ConfigInvalidError
from auth.policy import SecurityConfig

logger = logging.getLogger("labgate.config")


class SecurityConfigStore:
    """Holds the live SecurityConfig and persists changes to it.

    Usage:
        store = SecurityConfigStore(engine)
        policy = store.current()
        store.update({"max_login_attempts": 3})
    """

    def __init__(self, engine: Engine) -> None:
        self.engine = engine
        self._lock = threading.Lock()
        self._config = self._load()

    def _load(self) -> SecurityConfig:
        with self.engine.connect() as conn:
            row = conn.execute(select(security_config.c.payload).where(security_config.c.id == 1)).fetchone()
        if row is None:
            return SecurityConfig()
        try:
            return SecurityConfig.model_validate(json.loads(row.payload))
        except (ValueError, ValidationError) as exc:
            # json.JSONDecodeError is a ValueError subclass.
            logger.warning("Persisted security config is invalid, falling back to defaults: %s", exc)
            return SecurityConfig()

    def current(self) -> SecurityConfig:
        """Return the live config. The returned model must be treated as read-only."""
        return self._config

    def update(self, patch: dict) -> SecurityConfig:
        """Merge patch into the current config, validate, persist and return the result.

        Raises ConfigInvalidError (and changes nothing) if the merged config
        does not validate or patch contains unknown keys.
        """
        with self._lock:
            merged = {**self._config.model_dump(), **patch}
            try:
                candidate = SecurityConfig.model_validate(merged)
            except ValidationError as exc:
                errors = [f"{'.'.join(str(p) for p in e['loc'])}: {e['msg']}" for e in exc.errors()]
                raise ConfigInvalidError(errors) from exc
            self._persist(candidate)
            self._config = candidate
        logger.info("Security config updated: %s", sorted(patch))
        return candidate

    def reset(self) -> SecurityConfig:
        """Restore and persist the defaults."""
        with self._lock:
            candidate = SecurityConfig()
            self._persist(candidate)
            self._config = candidate
        logger.info("Security config reset to defaults")
        return candidate

    def _persist(self, config: SecurityConfig) -> None:
        payload = config.model_dump_json()
        now = to_db_time(utcnow())
        with self.engine.begin() as conn:
            updated = conn.execute(
                security_config.update().where(security_config.c.id == 1).values(payload=payload, updated_at=now)
            )
            if updated.rowcount == 0:
                conn.execute(security_config.insert().values(id=1, payload=payload, updated_at=now))
