"""Abstract durable store for batches, queue items, receipts and statistics.

Every mutation of a batch goes through :meth:`SubmissionStore.update_batch`,
a single-document read-modify-write transaction. The rolling statistics
aggregate is adjusted inside that same transaction so it never drifts from the
batch records.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime
from typing import Callable, Dict, List, Optional

from medsubmit.models.batch import SubmissionBatch, SubmissionStatus
from medsubmit.models.queue import QueueItemStatus, SubmissionQueueItem
from medsubmit.models.receipt import SubmissionReceipt
from medsubmit.models.responses import SubmissionStatistics

# Mutates the batch in place; may return a receipt to persist atomically
BatchMutator = Callable[[SubmissionBatch], Optional[SubmissionReceipt]]

SUBMISSION_SECONDS_KEY = "submission_seconds_total"
SUBMISSION_COUNT_KEY = "submission_count"


def status_key(status: SubmissionStatus) -> str:
    return f"status:{status.value}"


@dataclass
class AggregateDelta:
    """Change to the statistics aggregate caused by one batch write."""

    counters: Dict[str, float] = field(default_factory=dict)

    def add(self, key: str, amount: float) -> None:
        if amount:
            self.counters[key] = self.counters.get(key, 0) + amount


def aggregate_delta(before: Optional[SubmissionBatch], after: SubmissionBatch) -> AggregateDelta:
    """Compute the statistics change between two versions of a batch.

    ``before`` is None when the batch is being created.
    """
    delta = AggregateDelta()
    if before is None:
        delta.add(status_key(after.status), 1)
    elif before.status != after.status:
        delta.add(status_key(before.status), -1)
        delta.add(status_key(after.status), 1)

    newly_submitted = (before is None or before.submitted_at is None) and after.submitted_at is not None
    if newly_submitted and after.queued_at is not None:
        seconds = max((after.submitted_at - after.queued_at).total_seconds(), 0.0)
        delta.add(SUBMISSION_SECONDS_KEY, seconds)
        delta.add(SUBMISSION_COUNT_KEY, 1)
    return delta


def statistics_from_counters(counters: Dict[str, float]) -> SubmissionStatistics:
    status_counts = {
        key.split(":", 1)[1]: int(value)
        for key, value in counters.items()
        if key.startswith("status:")
    }
    return SubmissionStatistics.from_aggregate(
        status_counts,
        float(counters.get(SUBMISSION_SECONDS_KEY, 0.0)),
        int(counters.get(SUBMISSION_COUNT_KEY, 0)),
    )


class SubmissionStore(ABC):
    """Durable store interface.

    Implementations must make :meth:`update_batch`, :meth:`claim_queue_item`
    and :meth:`update_queue_item` atomic with respect to concurrent callers,
    including callers in other processes where the backend allows it.
    """

    # Batches

    @abstractmethod
    def create_batch(self, batch: SubmissionBatch) -> None:
        """Persist a new batch.

        Raises:
            ValidationError: If a batch with the same id already exists
        """

    @abstractmethod
    def get_batch(self, batch_id: str) -> Optional[SubmissionBatch]:
        """Return a detached copy of the batch, or None."""

    @abstractmethod
    def list_batches(
        self,
        status: Optional[SubmissionStatus] = None,
        month: Optional[str] = None,
    ) -> List[SubmissionBatch]:
        """Return batches matching every given filter, oldest first."""

    @abstractmethod
    def update_batch(self, batch_id: str, mutator: BatchMutator) -> SubmissionBatch:
        """Apply ``mutator`` to the batch in one read-modify-write transaction.

        If the mutator raises, nothing is written and the exception propagates.
        The mutator may be invoked more than once when a concurrent writer wins.

        Raises:
            BatchNotFoundError: If the batch does not exist
            StoreTransactionError: If the transaction cannot be committed
        """

    # Queue

    @abstractmethod
    def add_queue_item(self, item: SubmissionQueueItem) -> None:
        """Persist a new queue item."""

    @abstractmethod
    def get_queue_item(self, item_id: str) -> Optional[SubmissionQueueItem]:
        """Return a detached copy of the queue item, or None."""

    @abstractmethod
    def list_queue_items(
        self,
        batch_id: Optional[str] = None,
        status: Optional[QueueItemStatus] = None,
    ) -> List[SubmissionQueueItem]:
        """Return queue items matching every given filter in drain order."""

    @abstractmethod
    def due_queue_items(self, now: datetime, limit: int) -> List[SubmissionQueueItem]:
        """Return up to ``limit`` pending items scheduled at or before ``now`` in drain order."""

    @abstractmethod
    def claim_queue_item(
        self, item_id: str, now: datetime, lock_expires_at: datetime
    ) -> Optional[SubmissionQueueItem]:
        """Atomically move an item from pending to processing.

        Returns None, changing nothing, when the item is no longer pending or
        another item of the same batch is already processing.
        """

    @abstractmethod
    def update_queue_item(self, item: SubmissionQueueItem, expected_status: QueueItemStatus) -> bool:
        """Save ``item`` only if the stored copy is still in ``expected_status``."""

    @abstractmethod
    def reclaim_stale_items(self, now: datetime) -> List[SubmissionQueueItem]:
        """Return processing items whose lock expired to pending and return them."""

    @abstractmethod
    def delete_queue_items_before(self, cutoff: datetime) -> int:
        """Delete completed or failed items last updated before ``cutoff``."""

    # Receipts and statistics

    @abstractmethod
    def get_receipt(self, batch_id: str) -> Optional[SubmissionReceipt]:
        """Return the receipt of a submitted batch, or None."""

    @abstractmethod
    def get_statistics(self) -> SubmissionStatistics:
        """Return statistics from the rolling aggregate."""

    def close(self) -> None:
        """Release backend resources."""
