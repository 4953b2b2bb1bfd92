"""Submission queue data models.

A queue item is one scheduled attempt to process a batch. It is distinct from
the batch so that one batch can be attempted several times.
"""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, Optional

from medsubmit.utils.timeutils import from_iso, to_iso, utcnow


class QueuePriority(str, Enum):
    """Queue item priority; high items are drained first."""

    HIGH = "high"
    NORMAL = "normal"
    LOW = "low"

    @property
    def rank(self) -> int:
        return PRIORITY_RANK[self]


PRIORITY_RANK = {QueuePriority.HIGH: 0, QueuePriority.NORMAL: 1, QueuePriority.LOW: 2}


class QueueItemStatus(str, Enum):
    """Queue item lifecycle status."""

    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


@dataclass
class SubmissionQueueItem:
    """A scheduled attempt to submit one batch.

    Attributes:
        id: Unique queue item identifier
        batch_id: Batch this attempt belongs to
        priority: Drain order priority
        scheduled_at: Earliest time the item may be processed (UTC)
        status: pending -> processing -> completed | pending (retry) | failed
        retry_count: Failed attempts recorded against this item
        last_error: Message of the most recent failure
        lock_expires_at: When a processing claim is considered abandoned
        created_at: When the item was queued
        updated_at: Last status change
    """

    id: str
    batch_id: str
    priority: QueuePriority = QueuePriority.NORMAL
    scheduled_at: datetime = field(default_factory=utcnow)
    status: QueueItemStatus = QueueItemStatus.PENDING
    retry_count: int = 0
    last_error: Optional[str] = None
    lock_expires_at: Optional[datetime] = None
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)

    def is_due(self, now: datetime) -> bool:
        return self.status == QueueItemStatus.PENDING and self.scheduled_at <= now

    @property
    def sort_key(self) -> tuple:
        return (self.priority.rank, self.scheduled_at, self.created_at)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "batch_id": self.batch_id,
            "priority": self.priority.value,
            "scheduled_at": to_iso(self.scheduled_at),
            "status": self.status.value,
            "retry_count": self.retry_count,
            "last_error": self.last_error,
            "lock_expires_at": to_iso(self.lock_expires_at),
            "created_at": to_iso(self.created_at),
            "updated_at": to_iso(self.updated_at),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "SubmissionQueueItem":
        return cls(
            id=data["id"],
            batch_id=data["batch_id"],
            priority=QueuePriority(data["priority"]),
            scheduled_at=from_iso(data["scheduled_at"]),
            status=QueueItemStatus(data["status"]),
            retry_count=data.get("retry_count", 0),
            last_error=data.get("last_error"),
            lock_expires_at=from_iso(data.get("lock_expires_at")),
            created_at=from_iso(data["created_at"]),
            updated_at=from_iso(data["updated_at"]),
        )
