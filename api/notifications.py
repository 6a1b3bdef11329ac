"""
api/notifications.py -- Boundary to the outbound notification service.

Delivering e-mail is not this service's job. After a user is created the
route schedules a welcome message and, for admin/dev accounts, a security
alert to the administrators. Both are best-effort:

  - they run as FastAPI background tasks, after the 201 has been produced,
    so a slow mail relay never delays or fails account creation;
  - notify_user_created() logs and swallows delivery errors, because a user
    that exists must not be rolled back over a lost e-mail.

The raw password is never handed to a Notifier.
"""

from __future__ import annotations

import logging
from typing import Protocol

from auth.models import Role, User

logger = logging.getLogger("labgate.notifications")

# Roles whose creation raises a security alert.
PRIVILEGED_ROLES = frozenset({Role.admin, Role.dev})


class Notifier(Protocol):
    def send_welcome(self, user: User) -> None: ...

    def send_security_alert(self, user: User) -> None: ...


class LogNotifier:
    """Default Notifier: records what would have been sent."""

    def send_welcome(self, user: User) -> None:
        logger.info("Welcome notification queued for user %s <%s>", user.username, user.email)

    def send_security_alert(self, user: User) -> None:
        logger.warning("Security alert: privileged %s account created: %s", user.role.value, user.username)


def notify_user_created(notifier: Notifier, user: User) -> None:
    """Send the post-creation notifications. Never raises."""
    try:
        notifier.send_welcome(user)
    except Exception:
        logger.exception("Welcome notification failed for user %s", user.id)

    if user.role in PRIVILEGED_ROLES:
        try:
            notifier.send_security_alert(user)
        except Exception:
            logger.exception("Security alert failed for user %s", user.id)
