"""
Notification adapter that writes events to the log.
"""

import logging

from ..services.ports import NotificationEvent

logger = logging.getLogger(__name__)


class LoggingNotifier:
    """Records notifications in the application log instead of delivering them."""

    def __init__(self, level: int = logging.INFO):
        self.level = level

    def notify(self, user_id: str, event: NotificationEvent) -> None:
        logger.log(
            self.level,
            "Notify %s [%s] %s: %s",
            user_id, event.type, event.title, event.message,
        )
