"""Operator notification seam.

The engine only asks for an operator to be told about an event; delivery over
e-mail, SMS or in-app channels belongs to the surrounding application, which
plugs in its own :class:`Notifier`.
"""

import logging
import threading
from abc import ABC, abstractmethod
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Deque, Dict, List, Optional

from medsubmit.utils.timeutils import utcnow

logger = logging.getLogger(__name__)


class NotificationType(str, Enum):
    SUBMISSION_SUCCESS = "submission_success"
    SUBMISSION_RETRY = "submission_retry"
    SUBMISSION_FAILURE = "submission_failure"
    MANUAL_ACTION_REQUIRED = "manual_action_required"
    SUBMISSION_SCHEDULED = "submission_scheduled"
    PERIOD_REMINDER = "period_reminder"


# Events that need an operator's attention are logged as warnings
_ATTENTION = {NotificationType.SUBMISSION_FAILURE, NotificationType.MANUAL_ACTION_REQUIRED}


@dataclass(frozen=True)
class NotificationEvent:
    type: NotificationType
    message: str
    batch_id: Optional[str] = None
    context: Dict[str, Any] = field(default_factory=dict)
    created_at: datetime = field(default_factory=utcnow)


class Notifier(ABC):
    @abstractmethod
    def notify(self, event: NotificationEvent) -> None:
        """Deliver ``event``. Must not raise for delivery failures."""


class LoggingNotifier(Notifier):
    """Writes notifications to the application log."""

    def notify(self, event: NotificationEvent) -> None:
        level = logging.WARNING if event.type in _ATTENTION else logging.INFO
        batch = f" batch={event.batch_id}" if event.batch_id else ""
        logger.log(level, f"NOTIFY [{event.type.value}]{batch} | {event.message}")


class NotificationLog(Notifier):
    """Capped in-memory log of recent notifications, newest first."""

    def __init__(self, max_items: int = 100) -> None:
        self._lock = threading.Lock()
        self._items: Deque[NotificationEvent] = deque(maxlen=max_items)

    def notify(self, event: NotificationEvent) -> None:
        with self._lock:
            self._items.appendleft(event)

    def recent(self, limit: Optional[int] = None) -> List[NotificationEvent]:
        with self._lock:
            items = list(self._items)
        return items if limit is None else items[:limit]

    def of_type(self, event_type: NotificationType) -> List[NotificationEvent]:
        return [event for event in self.recent() if event.type == event_type]
