"""Submission batch data models.

This module defines the submission batch, its append-only audit log, and the
batch state machine:

    not_ready -> ready -> queued -> submitting -> submitted -> accepted | rejected
                                               -> retry_pending -> submitting (loop)
                                               -> failed
    failed | retry_pending -> queued (manual retry)
    ready | queued | retry_pending | failed -> cancelled (operator)
"""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple

from medsubmit.utils.exceptions import InvalidStateError, ValidationError
from medsubmit.utils.timeutils import from_iso, to_iso, utcnow


class SubmissionStatus(str, Enum):
    """Batch status in the submission state machine."""

    NOT_READY = "not_ready"
    READY = "ready"
    QUEUED = "queued"
    SUBMITTING = "submitting"
    SUBMITTED = "submitted"
    ACCEPTED = "accepted"
    REJECTED = "rejected"
    RETRY_PENDING = "retry_pending"
    FAILED = "failed"
    CANCELLED = "cancelled"


class SubmissionMethod(str, Enum):
    """How a batch was put on the queue."""

    MANUAL = "manual"
    AUTOMATIC = "automatic"
    RETRY = "retry"


class LogAction(str, Enum):
    """Action recorded by a submission log entry."""

    CREATED = "created"
    QUEUED = "queued"
    SUBMITTING = "submitting"
    SUBMITTED = "submitted"
    ACCEPTED = "accepted"
    REJECTED = "rejected"
    FAILED = "failed"
    RETRY_SCHEDULED = "retry_scheduled"
    RETRY_ATTEMPTED = "retry_attempted"
    CANCELLED = "cancelled"


class UserRole(str, Enum):
    """Role of the actor recorded on a log entry."""

    DOCTOR = "doctor"
    NURSE = "nurse"
    ADMIN = "admin"
    SYSTEM = "system"


# Statuses from which the engine never moves a batch on its own
TERMINAL_STATUSES = frozenset(
    {
        SubmissionStatus.SUBMITTED,
        SubmissionStatus.ACCEPTED,
        SubmissionStatus.REJECTED,
        SubmissionStatus.CANCELLED,
    }
)

ALLOWED_TRANSITIONS: Dict[SubmissionStatus, frozenset] = {
    SubmissionStatus.READY: frozenset({SubmissionStatus.QUEUED, SubmissionStatus.CANCELLED}),
    SubmissionStatus.QUEUED: frozenset(
        {SubmissionStatus.QUEUED, SubmissionStatus.SUBMITTING, SubmissionStatus.CANCELLED}
    ),
    # submitting -> submitting happens when the watchdog reclaims an abandoned attempt
    SubmissionStatus.SUBMITTING: frozenset(
        {
            SubmissionStatus.SUBMITTING,
            SubmissionStatus.SUBMITTED,
            SubmissionStatus.RETRY_PENDING,
            SubmissionStatus.FAILED,
        }
    ),
    SubmissionStatus.RETRY_PENDING: frozenset(
        {SubmissionStatus.SUBMITTING, SubmissionStatus.QUEUED, SubmissionStatus.CANCELLED}
    ),
    SubmissionStatus.FAILED: frozenset({SubmissionStatus.QUEUED, SubmissionStatus.CANCELLED}),
    SubmissionStatus.SUBMITTED: frozenset({SubmissionStatus.ACCEPTED, SubmissionStatus.REJECTED}),
}


@dataclass(frozen=True)
class SubmissionError:
    """Failure details attached to a log entry.

    Attributes:
        code: Machine-readable code (e.g., "NETWORK_ERROR", "MAX_RETRIES_EXCEEDED")
        message: Human-readable failure message
        recoverable: Whether the batch will be retried automatically
    """

    code: str
    message: str
    recoverable: bool

    def to_dict(self) -> Dict[str, Any]:
        return {"code": self.code, "message": self.message, "recoverable": self.recoverable}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "SubmissionError":
        return cls(code=data["code"], message=data["message"], recoverable=bool(data["recoverable"]))


@dataclass(frozen=True)
class SubmissionLogEntry:
    """Immutable audit record of one event in a batch's life.

    Attributes:
        timestamp: When the event happened (UTC)
        action: What happened
        status: Snapshot of the batch status at that moment
        details: Human-readable description
        user_id: Actor identifier ("system" for engine-driven events)
        user_role: Actor role
        error: Failure details, if the event is a failure
        metadata: Extra structured context (retry count, references)
    """

    timestamp: datetime
    action: LogAction
    status: SubmissionStatus
    details: str
    user_id: str = "system"
    user_role: UserRole = UserRole.SYSTEM
    error: Optional[SubmissionError] = None
    metadata: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "timestamp": to_iso(self.timestamp),
            "action": self.action.value,
            "status": self.status.value,
            "details": self.details,
            "user_id": self.user_id,
            "user_role": self.user_role.value,
            "error": self.error.to_dict() if self.error else None,
            "metadata": dict(self.metadata),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "SubmissionLogEntry":
        return cls(
            timestamp=from_iso(data["timestamp"]),
            action=LogAction(data["action"]),
            status=SubmissionStatus(data["status"]),
            details=data["details"],
            user_id=data.get("user_id", "system"),
            user_role=UserRole(data.get("user_role", "system")),
            error=SubmissionError.from_dict(data["error"]) if data.get("error") else None,
            metadata=data.get("metadata") or {},
        )


@dataclass
class SubmissionBatch:
    """One unit of work: a fixed set of finalized reports submitted together.

    ``report_ids`` is fixed at creation and ``submission_log`` only ever grows;
    use :meth:`transition` and :meth:`append_log` rather than assigning fields.

    Example:
        >>> batch = SubmissionBatch(
        ...     id="batch-2024-05",
        ...     month="2024-05",
        ...     report_ids=("r1", "r2", "r3"),
        ...     created_by="dr-popescu",
        ...     status=SubmissionStatus.READY,
        ... )
        >>> batch.report_count
        3
    """

    id: str
    month: str
    report_ids: Tuple[str, ...]
    created_by: str
    status: SubmissionStatus = SubmissionStatus.READY
    created_at: datetime = field(default_factory=utcnow)
    submission_method: SubmissionMethod = SubmissionMethod.AUTOMATIC
    retry_count: int = 0
    next_retry_at: Optional[datetime] = None
    queued_at: Optional[datetime] = None
    submitted_at: Optional[datetime] = None
    government_reference: Optional[str] = None
    confirmation_id: Optional[str] = None
    checksum: Optional[str] = None
    notes: Optional[str] = None
    submission_log: List[SubmissionLogEntry] = field(default_factory=list)

    def __post_init__(self) -> None:
        self.report_ids = tuple(self.report_ids)
        if not self.report_ids:
            raise ValidationError(f"Batch {self.id} must reference at least one report")
        if len(set(self.report_ids)) != len(self.report_ids):
            raise ValidationError(f"Batch {self.id} references the same report more than once")
        if self.retry_count < 0:
            raise ValidationError(f"Batch {self.id} has negative retry_count {self.retry_count}")

    @property
    def report_count(self) -> int:
        return len(self.report_ids)

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    @property
    def latest_log_entry(self) -> Optional[SubmissionLogEntry]:
        return self.submission_log[-1] if self.submission_log else None

    def can_transition(self, new_status: SubmissionStatus) -> bool:
        return new_status in ALLOWED_TRANSITIONS.get(self.status, frozenset())

    def transition(self, new_status: SubmissionStatus, entry: SubmissionLogEntry) -> None:
        """Move to ``new_status`` and record ``entry`` in the same step.

        Raises:
            InvalidStateError: If the state machine does not allow the move
        """
        if not self.can_transition(new_status):
            raise InvalidStateError(
                f"Batch {self.id} cannot move from {self.status.value} to {new_status.value}",
                batch_id=self.id,
                status=self.status.value,
            )
        self.status = new_status
        self.submission_log.append(entry)

    def append_log(self, entry: SubmissionLogEntry) -> None:
        """Record an entry that does not change the batch status."""
        self.submission_log.append(entry)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "month": self.month,
            "report_ids": list(self.report_ids),
            "created_by": self.created_by,
            "status": self.status.value,
            "created_at": to_iso(self.created_at),
            "submission_method": self.submission_method.value,
            "retry_count": self.retry_count,
            "next_retry_at": to_iso(self.next_retry_at),
            "queued_at": to_iso(self.queued_at),
            "submitted_at": to_iso(self.submitted_at),
            "government_reference": self.government_reference,
            "confirmation_id": self.confirmation_id,
            "checksum": self.checksum,
            "notes": self.notes,
            "submission_log": [entry.to_dict() for entry in self.submission_log],
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "SubmissionBatch":
        return cls(
            id=data["id"],
            month=data["month"],
            report_ids=tuple(data["report_ids"]),
            created_by=data["created_by"],
            status=SubmissionStatus(data["status"]),
            created_at=from_iso(data["created_at"]),
            submission_method=SubmissionMethod(data.get("submission_method", "automatic")),
            retry_count=data.get("retry_count", 0),
            next_retry_at=from_iso(data.get("next_retry_at")),
            queued_at=from_iso(data.get("queued_at")),
            submitted_at=from_iso(data.get("submitted_at")),
            government_reference=data.get("government_reference"),
            confirmation_id=data.get("confirmation_id"),
            checksum=data.get("checksum"),
            notes=data.get("notes"),
            submission_log=[SubmissionLogEntry.from_dict(e) for e in data.get("submission_log", [])],
        )
