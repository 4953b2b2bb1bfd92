"""Submission receipt data model.

A receipt is the compliance record of a successful submission. It is created
exactly once per submitted batch and never modified.
"""

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict

from medsubmit.utils.timeutils import from_iso, to_iso


@dataclass(frozen=True)
class SubmissionReceipt:
    """Immutable proof of a successful government submission.

    Attributes:
        batch_id: Submitted batch
        submission_id: Submission identifier returned by the government API
        government_reference: Government reference number
        confirmation_id: Government confirmation identifier
        submitted_at: When the government acknowledged the submission (UTC)
        submitted_by: User who created the batch
        report_count: Number of reports in the submitted payload
        checksum: SHA-256 of the canonical pre-encryption payload
        receipt_data: Raw response body returned by the government API
    """

    batch_id: str
    submission_id: str
    government_reference: str
    confirmation_id: str
    submitted_at: datetime
    submitted_by: str
    report_count: int
    checksum: str
    receipt_data: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "batch_id": self.batch_id,
            "submission_id": self.submission_id,
            "government_reference": self.government_reference,
            "confirmation_id": self.confirmation_id,
            "submitted_at": to_iso(self.submitted_at),
            "submitted_by": self.submitted_by,
            "report_count": self.report_count,
            "checksum": self.checksum,
            "receipt_data": dict(self.receipt_data),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "SubmissionReceipt":
        return cls(
            batch_id=data["batch_id"],
            submission_id=data["submission_id"],
            government_reference=data["government_reference"],
            confirmation_id=data["confirmation_id"],
            submitted_at=from_iso(data["submitted_at"]),
            submitted_by=data["submitted_by"],
            report_count=data["report_count"],
            checksum=data["checksum"],
            receipt_data=data.get("receipt_data") or {},
        )
