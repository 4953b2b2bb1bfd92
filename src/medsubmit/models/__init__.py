"""Models module.

This module provides data models and dataclasses for the application.
"""

from medsubmit.models.batch import (
    LogAction,
    SubmissionBatch,
    SubmissionError,
    SubmissionLogEntry,
    SubmissionMethod,
    SubmissionStatus,
    UserRole,
)
from medsubmit.models.queue import QueueItemStatus, QueuePriority, SubmissionQueueItem
from medsubmit.models.receipt import SubmissionReceipt
from medsubmit.models.report import Diagnosis, FinalizedReport, PrescribedMedication
from medsubmit.models.responses import (
    GovernmentResponse,
    StatusUpdate,
    SubmissionStatistics,
    SubmissionStatusView,
)

__all__ = [
    "Diagnosis",
    "FinalizedReport",
    "GovernmentResponse",
    "LogAction",
    "PrescribedMedication",
    "QueueItemStatus",
    "QueuePriority",
    "StatusUpdate",
    "SubmissionBatch",
    "SubmissionError",
    "SubmissionLogEntry",
    "SubmissionMethod",
    "SubmissionQueueItem",
    "SubmissionReceipt",
    "SubmissionStatistics",
    "SubmissionStatus",
    "SubmissionStatusView",
    "UserRole",
]
