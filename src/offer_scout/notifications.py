"""
Non-blocking notifications surfaced to the driver.

Failures in persistence or in the remote store never interrupt the workflow;
they are posted here for the UI to show as toasts and logged.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Callable, List, Optional

log = logging.getLogger(__name__)


@dataclass
class Notification:
    title: str
    message: str
    level: str = "info"  # "info", "warning" or "error"
    created_at: datetime = field(default_factory=datetime.now)


@dataclass
class Notifier:
    """
    Collects notifications; an optional listener gets each one as it is posted.
    """

    listener: Optional[Callable[[Notification], None]] = None
    notifications: List[Notification] = field(default_factory=list)

    def post(self, title: str, message: str, level: str = "info") -> Notification:
        note = Notification(title=title, message=message, level=level)
        self.notifications.append(note)
        log.log(_LEVELS.get(level, logging.INFO), "%s: %s", title, message)
        if self.listener is not None:
            self.listener(note)
        return note

    def warning(self, title: str, message: str) -> Notification:
        return self.post(title, message, level="warning")

    def error(self, title: str, message: str) -> Notification:
        return self.post(title, message, level="error")

    def drain(self) -> List[Notification]:
        """Return and clear everything posted so far."""
        pending, self.notifications = self.notifications, []
        return pending


_LEVELS = {
    "info": logging.INFO,
    "warning": logging.WARNING,
    "error": logging.ERROR,
}
