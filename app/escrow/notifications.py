"""
Notification collaborator interface.

The engine only calls notify(recipient_id, title, message, data). Delivery
channels (push, email, SMS) live behind the configured implementation,
selected with the ESCROW_NOTIFIER setting. Notifications are sent after
the financial state has committed; a failure is logged and never undoes
or blocks the settlement.
"""

from __future__ import annotations

import logging
from functools import lru_cache
from typing import Any, Protocol, runtime_checkable

from django.conf import settings
from django.utils.module_loading import import_string

logger = logging.getLogger(__name__)


@runtime_checkable
class Notifier(Protocol):
    """Anything that can deliver a notification to a user."""

    def notify(
        self,
        recipient_id: str,
        title: str,
        message: str,
        data: dict[str, Any] | None = None,
    ) -> None: ...


class LoggingNotifier:
    """Default notifier that records notifications in the application log."""

    def notify(
        self,
        recipient_id: str,
        title: str,
        message: str,
        data: dict[str, Any] | None = None,
    ) -> None:
        logger.info(
            "Notification queued",
            extra={
                "recipient_id": recipient_id,
                "title": title,
                "notification_message": message,
                "data": data or {},
            },
        )


@lru_cache(maxsize=1)
def get_notifier() -> Notifier:
    return import_string(settings.ESCROW_NOTIFIER)()


def notify_safely(
    recipient_id: Any,
    title: str,
    message: str,
    data: dict[str, Any] | None = None,
) -> bool:
    """
    Fire-and-forget notification.

    Returns:
        True if the notifier accepted the notification, False if it raised
    """
    if recipient_id is None:
        return False
    try:
        get_notifier().notify(str(recipient_id), title, message, data or {})
    except Exception:
        logger.warning(
            "Notification delivery failed",
            extra={"recipient_id": str(recipient_id), "title": title},
            exc_info=True,
        )
        return False
    return True
