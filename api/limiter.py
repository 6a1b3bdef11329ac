"""
api/limiter.py -- Shared slowapi rate limiter instance.

Imported by api/main.py (mounted as middleware) and api/routes/v1/auth.py
(per-route limits via @limiter.limit()). A single shared instance means every
route counts against the same in-memory store; separate instances per module
would each keep their own counters and limits would never trigger.

RATE_LIMIT_ENABLED=false turns every limit into a no-op. The integration
tests use it so lockout scenarios are not cut short by HTTP 429.
"""

from slowapi import Limiter
from slowapi.util import get_remote_address

from core.config import get_settings

_settings = get_settings()

limiter = Limiter(
    key_func=get_remote_address,
    storage_uri="memory://",
    enabled=_settings.rate_limit_enabled,
)
