"""Read-side and response data models.

This module defines the government API response, the status view returned to
operators, the status update event pushed to subscribers, and the rolling
submission statistics.
"""

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional

from medsubmit.models.batch import SubmissionLogEntry, SubmissionStatus
from medsubmit.models.receipt import SubmissionReceipt
from medsubmit.utils.timeutils import to_iso


@dataclass(frozen=True)
class GovernmentResponse:
    """Successful answer of the government submission endpoint.

    Attributes:
        reference: Government reference number
        confirmation_id: Confirmation identifier
        submission_id: Submission identifier (generated locally if absent)
        raw: Full decoded response body
        processing_time_ms: Round-trip latency in milliseconds
    """

    reference: str
    confirmation_id: str
    submission_id: str
    raw: Dict[str, Any] = field(default_factory=dict)
    processing_time_ms: int = 0


@dataclass(frozen=True)
class StatusUpdate:
    """Event pushed to subscribers on every transition of a batch."""

    batch_id: str
    status: SubmissionStatus
    log_entry: Optional[SubmissionLogEntry]


@dataclass
class SubmissionStatusView:
    """Point-in-time view of one batch for operators.

    Attributes:
        batch_id: Batch identifier
        status: Current status
        submission_log: Full audit trail
        receipt: Receipt once submitted
        next_retry_at: Next automatic attempt while ``retry_pending``
        retry_count: Retries scheduled so far
    """

    batch_id: str
    status: SubmissionStatus
    submission_log: List[SubmissionLogEntry]
    receipt: Optional[SubmissionReceipt] = None
    next_retry_at: Optional[datetime] = None
    retry_count: int = 0

    @property
    def manual_retry_available(self) -> bool:
        return self.status in (SubmissionStatus.FAILED, SubmissionStatus.RETRY_PENDING)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "batch_id": self.batch_id,
            "status": self.status.value,
            "retry_count": self.retry_count,
            "next_retry_at": to_iso(self.next_retry_at),
            "manual_retry_available": self.manual_retry_available,
            "receipt": self.receipt.to_dict() if self.receipt else None,
            "submission_log": [entry.to_dict() for entry in self.submission_log],
        }


# Status buckets reported by the statistics surface
PENDING_STATUSES = (SubmissionStatus.READY, SubmissionStatus.QUEUED)
SUCCESSFUL_STATUSES = (SubmissionStatus.SUBMITTED, SubmissionStatus.ACCEPTED)


@dataclass
class SubmissionStatistics:
    """Aggregate counts across all batches.

    Built from the store's rolling aggregate, never from the audit logs.

    Attributes:
        total_batches: All batches known to the store
        pending_submissions: ready + queued
        in_progress_submissions: submitting
        successful_submissions: submitted + accepted
        failed_submissions: failed
        retrying_submissions: retry_pending
        rejected_submissions: rejected by the government
        cancelled_submissions: cancelled by an operator
        average_submission_time_seconds: Mean time from first queueing to submission
    """

    total_batches: int = 0
    pending_submissions: int = 0
    in_progress_submissions: int = 0
    successful_submissions: int = 0
    failed_submissions: int = 0
    retrying_submissions: int = 0
    rejected_submissions: int = 0
    cancelled_submissions: int = 0
    average_submission_time_seconds: float = 0.0

    @classmethod
    def from_aggregate(
        cls,
        status_counts: Dict[str, int],
        submission_seconds_total: float,
        submission_count: int,
    ) -> "SubmissionStatistics":
        """Build statistics from per-status counts and submission duration totals."""

        def count(*statuses: SubmissionStatus) -> int:
            return sum(int(status_counts.get(s.value, 0)) for s in statuses)

        average = submission_seconds_total / submission_count if submission_count else 0.0
        return cls(
            total_batches=sum(int(v) for v in status_counts.values()),
            pending_submissions=count(*PENDING_STATUSES),
            in_progress_submissions=count(SubmissionStatus.SUBMITTING),
            successful_submissions=count(*SUCCESSFUL_STATUSES),
            failed_submissions=count(SubmissionStatus.FAILED),
            retrying_submissions=count(SubmissionStatus.RETRY_PENDING),
            rejected_submissions=count(SubmissionStatus.REJECTED),
            cancelled_submissions=count(SubmissionStatus.CANCELLED),
            average_submission_time_seconds=average,
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "total_batches": self.total_batches,
            "pending_submissions": self.pending_submissions,
            "in_progress_submissions": self.in_progress_submissions,
            "successful_submissions": self.successful_submissions,
            "failed_submissions": self.failed_submissions,
            "retrying_submissions": self.retrying_submissions,
            "rejected_submissions": self.rejected_submissions,
            "cancelled_submissions": self.cancelled_submissions,
            "average_submission_time_seconds": round(self.average_submission_time_seconds, 2),
        }
