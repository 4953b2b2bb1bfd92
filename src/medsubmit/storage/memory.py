"""Thread-safe in-memory store for tests and demos."""

import logging
import threading
from datetime import datetime
from typing import Dict, List, Optional

from medsubmit.models.batch import SubmissionBatch, SubmissionStatus
from medsubmit.models.queue import QueueItemStatus, SubmissionQueueItem
from medsubmit.models.receipt import SubmissionReceipt
from medsubmit.models.responses import SubmissionStatistics
from medsubmit.storage.base import (
    BatchMutator,
    SubmissionStore,
    aggregate_delta,
    statistics_from_counters,
)
from medsubmit.utils.exceptions import BatchNotFoundError, StoreTransactionError, ValidationError

logger = logging.getLogger(__name__)


class InMemorySubmissionStore(SubmissionStore):
    """Keeps serialized documents in dicts guarded by one re-entrant lock.

    Documents are stored in their ``to_dict`` form so callers only ever see
    detached copies, as with a real database.
    """

    def __init__(self) -> None:
        self._lock = threading.RLock()
        self._batches: Dict[str, dict] = {}
        self._queue: Dict[str, dict] = {}
        self._receipts: Dict[str, dict] = {}
        self._counters: Dict[str, float] = {}

    def _apply_delta(self, before: Optional[SubmissionBatch], after: SubmissionBatch) -> None:
        for key, amount in aggregate_delta(before, after).counters.items():
            self._counters[key] = self._counters.get(key, 0) + amount

    def create_batch(self, batch: SubmissionBatch) -> None:
        with self._lock:
            if batch.id in self._batches:
                raise ValidationError(f"Batch {batch.id} already exists")
            self._batches[batch.id] = batch.to_dict()
            self._apply_delta(None, batch)

    def get_batch(self, batch_id: str) -> Optional[SubmissionBatch]:
        with self._lock:
            data = self._batches.get(batch_id)
            return SubmissionBatch.from_dict(data) if data else None

    def list_batches(
        self,
        status: Optional[SubmissionStatus] = None,
        month: Optional[str] = None,
    ) -> List[SubmissionBatch]:
        with self._lock:
            batches = [SubmissionBatch.from_dict(data) for data in self._batches.values()]
        if status is not None:
            batches = [b for b in batches if b.status == status]
        if month is not None:
            batches = [b for b in batches if b.month == month]
        return sorted(batches, key=lambda b: b.created_at)

    def update_batch(self, batch_id: str, mutator: BatchMutator) -> SubmissionBatch:
        with self._lock:
            data = self._batches.get(batch_id)
            if data is None:
                raise BatchNotFoundError(batch_id)

            before = SubmissionBatch.from_dict(data)
            batch = SubmissionBatch.from_dict(data)
            receipt = mutator(batch)

            if receipt is not None:
                if batch_id in self._receipts:
                    raise StoreTransactionError(f"Receipt for batch {batch_id} already exists")
                self._receipts[batch_id] = receipt.to_dict()

            self._batches[batch_id] = batch.to_dict()
            self._apply_delta(before, batch)
            return SubmissionBatch.from_dict(self._batches[batch_id])

    def add_queue_item(self, item: SubmissionQueueItem) -> None:
        with self._lock:
            self._queue[item.id] = item.to_dict()

    def get_queue_item(self, item_id: str) -> Optional[SubmissionQueueItem]:
        with self._lock:
            data = self._queue.get(item_id)
            return SubmissionQueueItem.from_dict(data) if data else None

    def list_queue_items(
        self,
        batch_id: Optional[str] = None,
        status: Optional[QueueItemStatus] = None,
    ) -> List[SubmissionQueueItem]:
        with self._lock:
            items = [SubmissionQueueItem.from_dict(data) for data in self._queue.values()]
        if batch_id is not None:
            items = [i for i in items if i.batch_id == batch_id]
        if status is not None:
            items = [i for i in items if i.status == status]
        return sorted(items, key=lambda i: i.sort_key)

    def due_queue_items(self, now: datetime, limit: int) -> List[SubmissionQueueItem]:
        with self._lock:
            items = [SubmissionQueueItem.from_dict(data) for data in self._queue.values()]
        due = sorted((i for i in items if i.is_due(now)), key=lambda i: i.sort_key)
        return due[:limit]

    def claim_queue_item(
        self, item_id: str, now: datetime, lock_expires_at: datetime
    ) -> Optional[SubmissionQueueItem]:
        with self._lock:
            data = self._queue.get(item_id)
            if data is None or data["status"] != QueueItemStatus.PENDING.value:
                return None

            batch_busy = any(
                other["batch_id"] == data["batch_id"]
                and other["status"] == QueueItemStatus.PROCESSING.value
                for other in self._queue.values()
            )
            if batch_busy:
                logger.debug(f"Batch {data['batch_id']} already has an item processing; skip {item_id}")
                return None

            item = SubmissionQueueItem.from_dict(data)
            item.status = QueueItemStatus.PROCESSING
            item.lock_expires_at = lock_expires_at
            item.updated_at = now
            self._queue[item_id] = item.to_dict()
            return item

    def update_queue_item(self, item: SubmissionQueueItem, expected_status: QueueItemStatus) -> bool:
        with self._lock:
            data = self._queue.get(item.id)
            if data is None or data["status"] != expected_status.value:
                return False
            self._queue[item.id] = item.to_dict()
            return True

    def reclaim_stale_items(self, now: datetime) -> List[SubmissionQueueItem]:
        reclaimed = []
        with self._lock:
            for item_id, data in self._queue.items():
                item = SubmissionQueueItem.from_dict(data)
                if item.status != QueueItemStatus.PROCESSING:
                    continue
                if item.lock_expires_at is None or item.lock_expires_at > now:
                    continue
                item.status = QueueItemStatus.PENDING
                item.lock_expires_at = None
                item.updated_at = now
                self._queue[item_id] = item.to_dict()
                reclaimed.append(item)
        return reclaimed

    def delete_queue_items_before(self, cutoff: datetime) -> int:
        finished = (QueueItemStatus.COMPLETED.value, QueueItemStatus.FAILED.value)
        with self._lock:
            doomed = [
                item_id
                for item_id, data in self._queue.items()
                if data["status"] in finished
                and SubmissionQueueItem.from_dict(data).updated_at < cutoff
            ]
            for item_id in doomed:
                del self._queue[item_id]
        return len(doomed)

    def get_receipt(self, batch_id: str) -> Optional[SubmissionReceipt]:
        with self._lock:
            data = self._receipts.get(batch_id)
            return SubmissionReceipt.from_dict(data) if data else None

    def get_statistics(self) -> SubmissionStatistics:
        with self._lock:
            return statistics_from_counters(dict(self._counters))
