"""Workflow engine for regulated batch submission.

The engine owns the batch state machine. It drains the submission queue,
prepares and encrypts payloads, calls the government client, writes the
submission log, schedules retries and publishes every transition.

Each state change of a batch, together with its log entry, its receipt and the
statistics aggregate, is committed in one ``store.update_batch`` transaction.
Queue items are claimed with a compare-and-swap, so at most one government
call per batch is in flight regardless of how many drains run concurrently.
"""

import logging
import threading
import uuid
from concurrent.futures import Future, ThreadPoolExecutor
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Sequence, Set, Union
from zoneinfo import ZoneInfo

from medsubmit.config.schema import Config
from medsubmit.logging_audit import log_audit_event
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
from medsubmit.models.responses import (
    GovernmentResponse,
    StatusUpdate,
    SubmissionStatistics,
    SubmissionStatusView,
)
from medsubmit.reports.source import ReportSource
from medsubmit.storage.base import SubmissionStore
from medsubmit.submission.anonymizer import Anonymizer, PreparedPayload, validate_reports
from medsubmit.submission.encryption import Encryptor
from medsubmit.submission.government_client import GovernmentClient, SubmissionRequest
from medsubmit.submission.notifications import (
    LoggingNotifier,
    NotificationEvent,
    NotificationType,
    Notifier,
)
from medsubmit.submission.period import (
    SubmissionPeriod,
    days_until_period,
    is_within_submission_period,
    next_submission_period,
)
from medsubmit.submission.publisher import StatusCallback, SubmissionPublisher
from medsubmit.submission.retry import RetryPolicy
from medsubmit.utils.exceptions import (
    BatchNotFoundError,
    EncryptionError,
    GovernmentAPIError,
    InvalidStateError,
    MaxRetriesExceededError,
    NetworkError,
    StoreTransactionError,
    SubmissionPeriodClosedError,
    ValidationError,
    create_error_info,
)
from medsubmit.utils.timeutils import ensure_utc, to_iso, utcnow

logger = logging.getLogger(__name__)

# Statuses from which a batch may be put on the queue
QUEUEABLE_STATUSES = frozenset({SubmissionStatus.READY, SubmissionStatus.QUEUED})

# Statuses from which a claimed queue item may start a government call
SUBMITTABLE_STATUSES = frozenset(
    {SubmissionStatus.QUEUED, SubmissionStatus.RETRY_PENDING, SubmissionStatus.SUBMITTING}
)

MANUAL_RETRY_STATUSES = frozenset({SubmissionStatus.FAILED, SubmissionStatus.RETRY_PENDING})

CANCELLABLE_STATUSES = frozenset(
    {
        SubmissionStatus.READY,
        SubmissionStatus.QUEUED,
        SubmissionStatus.RETRY_PENDING,
        SubmissionStatus.FAILED,
    }
)


class ItemOutcome(str, Enum):
    """Result of processing one queue item."""

    SUBMITTED = "submitted"
    RETRY_SCHEDULED = "retry_scheduled"
    FAILED = "failed"
    SKIPPED = "skipped"
    DROPPED = "dropped"
    ERROR = "error"


@dataclass
class DrainResult:
    """Summary of one queue drain."""

    outcomes: Dict[str, ItemOutcome] = field(default_factory=dict)

    def count(self, outcome: ItemOutcome) -> int:
        return sum(1 for value in self.outcomes.values() if value == outcome)

    @property
    def processed(self) -> int:
        return len(self.outcomes)

    def to_dict(self) -> Dict[str, int]:
        summary = {outcome.value: self.count(outcome) for outcome in ItemOutcome}
        summary["processed"] = self.processed
        return summary


def submission_error_from(exc: GovernmentAPIError, recoverable: Optional[bool] = None) -> SubmissionError:
    return SubmissionError(
        code=exc.code,
        message=exc.message,
        recoverable=exc.recoverable if recoverable is None else recoverable,
    )


class SubmissionWorkflowEngine:
    """Orchestrates batch submission to the government compliance endpoint.

    Args:
        store: Durable batch/queue store
        report_source: Lookup of finalized reports
        government_client: Outbound client
        encryptor: Payload encryptor
        config: Application configuration
        anonymizer: Report anonymizer (defaults to an unsalted one)
        retry_policy: Backoff policy (defaults to ``config.retry``)
        publisher: Status publisher (a private one if omitted)
        notifier: Operator notifier (logs by default)
        clock: Returns the current time; injected by tests

    Example:
        >>> engine = SubmissionWorkflowEngine(store, reports, client, encryptor, config)
        >>> item_id = engine.queue_submission_batch("batch-2024-05")
        >>> engine.process_submission_queue()
        >>> engine.get_submission_status("batch-2024-05").status
        <SubmissionStatus.SUBMITTED: 'submitted'>
    """

    def __init__(
        self,
        store: SubmissionStore,
        report_source: ReportSource,
        government_client: GovernmentClient,
        encryptor: Encryptor,
        config: Optional[Config] = None,
        anonymizer: Optional[Anonymizer] = None,
        retry_policy: Optional[RetryPolicy] = None,
        publisher: Optional[SubmissionPublisher] = None,
        notifier: Optional[Notifier] = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.config = config or Config()
        self.store = store
        self.report_source = report_source
        self.government_client = government_client
        self.encryptor = encryptor
        self.anonymizer = anonymizer or Anonymizer()
        self.retry_policy = retry_policy or RetryPolicy(self.config.retry)
        self.publisher = publisher or SubmissionPublisher()
        self.notifier = notifier or LoggingNotifier()
        self._clock = clock
        self._tz = ZoneInfo(self.config.period.timezone)

        self._executor: Optional[ThreadPoolExecutor] = None
        self._executor_lock = threading.Lock()
        self._reminded_periods: Set[str] = set()

    # Time

    def _now(self) -> datetime:
        return ensure_utc(self._clock())

    def _local(self, moment: Optional[Union[date, datetime]] = None) -> Union[date, datetime]:
        if moment is None:
            return self._now().astimezone(self._tz)
        if isinstance(moment, datetime) and moment.tzinfo is not None:
            return moment.astimezone(self._tz)
        return moment

    def is_within_submission_period(self, moment: Optional[Union[date, datetime]] = None) -> bool:
        """Return True if ``moment`` (default: now) is inside the legal window.

        Aware datetimes are converted to the configured time zone first.
        """
        period = self.config.period
        return is_within_submission_period(self._local(moment), period.start_day, period.end_day)

    def get_next_submission_period(self, moment: Optional[Union[date, datetime]] = None) -> SubmissionPeriod:
        """Return the current window, or the next one if this month's has passed."""
        period = self.config.period
        local = self._local(moment)
        if not isinstance(local, datetime):
            local = datetime(local.year, local.month, local.day, tzinfo=self._tz)
        return next_submission_period(local, period.start_day, period.end_day)

    # Helpers

    def _entry(
        self,
        action: LogAction,
        status: SubmissionStatus,
        details: str,
        user_id: Optional[str] = None,
        user_role: UserRole = UserRole.SYSTEM,
        error: Optional[SubmissionError] = None,
        metadata: Optional[Dict[str, Any]] = None,
        timestamp: Optional[datetime] = None,
    ) -> SubmissionLogEntry:
        return SubmissionLogEntry(
            timestamp=timestamp or self._now(),
            action=action,
            status=status,
            details=details,
            user_id=user_id or self.config.system_user_id,
            user_role=user_role,
            error=error,
            metadata=metadata or {},
        )

    def _publish(self, batch: SubmissionBatch) -> None:
        self.publisher.publish(StatusUpdate(batch.id, batch.status, batch.latest_log_entry))

    def _notify(self, event_type: NotificationType, message: str, batch_id: Optional[str] = None, **context: Any) -> None:
        try:
            self.notifier.notify(NotificationEvent(event_type, message, batch_id=batch_id, context=context))
        except Exception:
            logger.exception(f"Notifier failed for {event_type.value}")

    def _require_batch(self, batch_id: str) -> SubmissionBatch:
        batch = self.store.get_batch(batch_id)
        if batch is None:
            raise BatchNotFoundError(batch_id)
        return batch

    def _load_reports(self, batch: SubmissionBatch):
        reports = self.report_source.get_reports(batch.report_ids)
        validate_reports(reports)
        return reports

    # Batch creation

    def create_batch(
        self,
        month: str,
        report_ids: Sequence[str],
        created_by: str,
        user_role: UserRole = UserRole.DOCTOR,
        batch_id: Optional[str] = None,
        notes: Optional[str] = None,
    ) -> SubmissionBatch:
        """Create a ``ready`` batch from finalized reports.

        Raises:
            ValidationError: If the report list is empty or any report is unknown or malformed
        """
        batch_id = batch_id or f"batch_{month}_{uuid.uuid4().hex[:8]}"
        batch = SubmissionBatch(
            id=batch_id,
            month=month,
            report_ids=tuple(report_ids),
            created_by=created_by,
            status=SubmissionStatus.READY,
            created_at=self._now(),
            notes=notes,
        )
        self._load_reports(batch)

        batch.append_log(
            self._entry(
                LogAction.CREATED,
                SubmissionStatus.READY,
                f"Batch created with {batch.report_count} reports for {month}",
                user_id=created_by,
                user_role=user_role,
                metadata={"report_count": batch.report_count},
            )
        )
        self.store.create_batch(batch)

        log_audit_event(
            "BATCH_CREATED",
            {"status": "success", "batch_id": batch.id, "batch_status": batch.status.value, "report_count": batch.report_count},
        )
        self._publish(batch)
        return batch

    # Queueing

    def queue_submission_batch(
        self,
        batch_id: str,
        method: SubmissionMethod = SubmissionMethod.MANUAL,
        priority: QueuePriority = QueuePriority.NORMAL,
        scheduled_at: Optional[datetime] = None,
        user_id: Optional[str] = None,
        user_role: UserRole = UserRole.SYSTEM,
        override_window: bool = False,
    ) -> str:
        """Put a batch on the submission queue.

        Manual queueing is refused outside the submission period unless
        ``override_window`` is set; retries and already-scheduled work are not gated.

        Returns:
            The new queue item id

        Raises:
            BatchNotFoundError: If the batch does not exist
            InvalidStateError: If the batch cannot be queued from its status
            SubmissionPeriodClosedError: If manual queueing is attempted outside the window
            ValidationError: If the batch's reports cannot be prepared; no item is created
        """
        batch = self._require_batch(batch_id)
        if batch.status not in QUEUEABLE_STATUSES:
            raise InvalidStateError(
                f"Batch {batch_id} cannot be queued from status {batch.status.value}",
                batch_id=batch_id,
                status=batch.status.value,
            )

        if method == SubmissionMethod.MANUAL and not override_window and not self.is_within_submission_period():
            window = self.get_next_submission_period()
            raise SubmissionPeriodClosedError(
                f"Batch {batch_id} can only be queued between {window.start.date()} and {window.end.date()}",
                batch_id=batch_id,
                status=batch.status.value,
            )

        self._load_reports(batch)
        return self._enqueue(batch_id, method, priority, scheduled_at, user_id, user_role)

    def _enqueue(
        self,
        batch_id: str,
        method: SubmissionMethod,
        priority: QueuePriority,
        scheduled_at: Optional[datetime],
        user_id: Optional[str],
        user_role: UserRole,
        allowed: frozenset = QUEUEABLE_STATUSES,
        retry_request: bool = False,
    ) -> str:
        now = self._now()
        scheduled_at = ensure_utc(scheduled_at) if scheduled_at else now
        item = SubmissionQueueItem(
            id=f"queue_{uuid.uuid4().hex}",
            batch_id=batch_id,
            priority=priority,
            scheduled_at=scheduled_at,
            created_at=now,
            updated_at=now,
        )

        def mutate(batch: SubmissionBatch) -> None:
            if batch.status not in allowed:
                raise InvalidStateError(
                    f"Batch {batch_id} cannot be queued from status {batch.status.value}",
                    batch_id=batch_id,
                    status=batch.status.value,
                )
            if retry_request:
                batch.append_log(
                    self._entry(
                        LogAction.RETRY_ATTEMPTED,
                        batch.status,
                        f"Manual retry requested after {batch.retry_count} automatic retries",
                        user_id=user_id,
                        user_role=user_role,
                        metadata={"previous_retry_count": batch.retry_count},
                        timestamp=now,
                    )
                )
                batch.retry_count = 0
            batch.submission_method = method
            batch.next_retry_at = None
            if batch.queued_at is None:
                batch.queued_at = now
            batch.transition(
                SubmissionStatus.QUEUED,
                self._entry(
                    LogAction.QUEUED,
                    SubmissionStatus.QUEUED,
                    f"Queued for {method.value} submission with {priority.value} priority",
                    user_id=user_id,
                    user_role=user_role,
                    metadata={
                        "queue_item_id": item.id,
                        "priority": priority.value,
                        "scheduled_at": to_iso(scheduled_at),
                    },
                    timestamp=now,
                ),
            )

        # The item is written first so a committed QUEUED status always has work behind it
        self.store.add_queue_item(item)
        try:
            batch = self.store.update_batch(batch_id, mutate)
        except Exception as e:
            item.status = QueueItemStatus.FAILED
            item.last_error = f"Queue request not applied: {e}"
            item.updated_at = self._now()
            if not self.store.update_queue_item(item, QueueItemStatus.PENDING):
                logger.warning(f"Queue item {item.id} was claimed before its queue request failed")
            raise
        self._fail_pending_items(
            batch_id,
            "Superseded by manual retry" if retry_request else "Superseded by a newer queue request",
            keep=item.id,
        )

        log_audit_event(
            "BATCH_QUEUED",
            {
                "status": "success",
                "batch_id": batch_id,
                "batch_status": batch.status.value,
                "queue_item_id": item.id,
                "method": method.value,
                "priority": priority.value,
            },
        )
        self._publish(batch)
        self._notify(
            NotificationType.SUBMISSION_SCHEDULED,
            f"Batch {batch_id} scheduled for submission at {to_iso(scheduled_at)}",
            batch_id=batch_id,
            queue_item_id=item.id,
        )
        return item.id

    def schedule_automatic_submission(self) -> List[str]:
        """Queue every ready batch while the submission period is open.

        Returns:
            Queue item ids created; empty outside the window
        """
        if not self.is_within_submission_period():
            logger.debug("Outside submission period; automatic scheduling skipped")
            return []

        item_ids = []
        for batch in self.store.list_batches(status=SubmissionStatus.READY):
            if batch.submitted_at is not None:
                continue
            try:
                item_ids.append(
                    self.queue_submission_batch(
                        batch.id,
                        method=SubmissionMethod.AUTOMATIC,
                        priority=QueuePriority.NORMAL,
                    )
                )
            except ValidationError as e:
                error_info = create_error_info(e, batch_id=batch.id)
                logger.error(f"Batch {batch.id} cannot be prepared: {e}. Remediation: {error_info.remediation}")
                self._notify(
                    NotificationType.MANUAL_ACTION_REQUIRED,
                    f"Batch {batch.id} has malformed reports and was not queued: {e}",
                    batch_id=batch.id,
                )
            except InvalidStateError as e:
                logger.debug(f"Batch {batch.id} changed state while scheduling: {e}")

        if item_ids:
            logger.info(f"Automatically queued {len(item_ids)} ready batches")
        return item_ids

    # Queue processing

    def _get_executor(self) -> ThreadPoolExecutor:
        with self._executor_lock:
            if self._executor is None:
                self._executor = ThreadPoolExecutor(
                    max_workers=self.config.queue.worker_pool_size,
                    thread_name_prefix="submission-worker",
                )
            return self._executor

    def process_submission_queue(self, limit: Optional[int] = None) -> DrainResult:
        """Process every due queue item, different batches concurrently.

        Safe to call concurrently from several triggers or processes. Government
        API failures are absorbed into the state machine and never raised here.

        Raises:
            StoreTransactionError: After all items finished, if the store failed
                for any of them; affected items stay processing until reclaimed
        """
        now = self._now()
        due = self.store.due_queue_items(now, limit or self.config.queue.drain_limit)
        result = DrainResult()
        if not due:
            return result

        logger.info(f"Processing {len(due)} due submission queue items")
        executor = self._get_executor()
        futures: Dict[str, Future] = {item.id: executor.submit(self.process_submission_item, item.id) for item in due}

        store_errors: List[StoreTransactionError] = []
        for item_id, future in futures.items():
            try:
                result.outcomes[item_id] = future.result()
            except StoreTransactionError as e:
                store_errors.append(e)
                result.outcomes[item_id] = ItemOutcome.ERROR
            except Exception as e:
                error_info = create_error_info(e)
                logger.error(
                    f"Unexpected error processing queue item {item_id}: {e}. "
                    f"Remediation: {error_info.remediation}",
                    exc_info=True,
                )
                result.outcomes[item_id] = ItemOutcome.ERROR

        logger.info(f"Queue drain finished: {result.to_dict()}")
        if store_errors:
            raise store_errors[0]
        return result

    def process_submission_item(self, item_id: str) -> ItemOutcome:
        """Claim and process a single queue item.

        Raises:
            StoreTransactionError: If the store fails mid-attempt
        """
        now = self._now()
        lock_expires_at = now + timedelta(seconds=self.config.queue.lock_timeout_seconds)
        item = self.store.claim_queue_item(item_id, now, lock_expires_at)
        if item is None:
            logger.debug(f"Queue item {item_id} already claimed or batch busy; skipping")
            return ItemOutcome.SKIPPED

        batch = self.store.get_batch(item.batch_id)
        if batch is None:
            logger.warning(f"Queue item {item_id} references missing batch {item.batch_id}; dropping")
            self._finish_item(item, QueueItemStatus.FAILED, "Batch no longer exists")
            return ItemOutcome.DROPPED

        if batch.status not in SUBMITTABLE_STATUSES:
            logger.info(f"Batch {batch.id} is {batch.status.value}; completing item {item_id} without submission")
            self._finish_item(item, QueueItemStatus.COMPLETED, f"Batch already {batch.status.value}")
            return ItemOutcome.SKIPPED

        if batch.status == SubmissionStatus.RETRY_PENDING and batch.next_retry_at and batch.next_retry_at > now:
            logger.info(f"Batch {batch.id} backs off until {to_iso(batch.next_retry_at)}; rescheduling item {item_id}")
            item.status = QueueItemStatus.PENDING
            item.scheduled_at = batch.next_retry_at
            item.lock_expires_at = None
            item.updated_at = now
            if not self.store.update_queue_item(item, QueueItemStatus.PROCESSING):
                logger.warning(f"Queue item {item_id} was reclaimed before it could be rescheduled")
            return ItemOutcome.SKIPPED

        try:
            batch = self._start_attempt(batch.id, item)
        except InvalidStateError as e:
            logger.info(f"Batch {item.batch_id} left a submittable state before the attempt: {e}")
            self._finish_item(item, QueueItemStatus.COMPLETED, str(e))
            return ItemOutcome.SKIPPED

        try:
            reports = self._load_reports(batch)
            prepared = self.anonymizer.prepare(batch.id, batch.month, reports)
            request = self._build_request(batch, prepared)
        except (ValidationError, EncryptionError) as e:
            return self._fail_preparation(batch, item, e)

        try:
            response = self.government_client.submit(request, timeout=self.config.government.timeout_seconds)
        except GovernmentAPIError as e:
            return self._handle_failure(batch.id, item, e)
        except OSError as e:
            return self._handle_failure(batch.id, item, NetworkError(str(e)))

        return self._handle_success(batch.id, item, prepared, response)

    def _start_attempt(self, batch_id: str, item: SubmissionQueueItem) -> SubmissionBatch:
        def mutate(batch: SubmissionBatch) -> None:
            if batch.status not in SUBMITTABLE_STATUSES:
                raise InvalidStateError(
                    f"Batch {batch_id} cannot be submitted from status {batch.status.value}",
                    batch_id=batch_id,
                    status=batch.status.value,
                )
            attempt = batch.retry_count + 1
            batch.transition(
                SubmissionStatus.SUBMITTING,
                self._entry(
                    LogAction.SUBMITTING,
                    SubmissionStatus.SUBMITTING,
                    f"Submission attempt {attempt} started",
                    metadata={"queue_item_id": item.id, "attempt": attempt},
                ),
            )

        batch = self.store.update_batch(batch_id, mutate)
        log_audit_event(
            "SUBMISSION_STARTED",
            {
                "status": "success",
                "batch_id": batch_id,
                "batch_status": batch.status.value,
                "retry_count": batch.retry_count,
                "queue_item_id": item.id,
            },
        )
        self._publish(batch)
        return batch

    def _build_request(self, batch: SubmissionBatch, prepared: PreparedPayload) -> SubmissionRequest:
        encrypted = self.encryptor.encrypt(prepared.canonical, prepared.checksum)
        return SubmissionRequest(
            batch_id=batch.id,
            month=batch.month,
            report_count=prepared.report_count,
            submitted_by=batch.created_by,
            submission_time=self._now(),
            encrypted_payload=encrypted.ciphertext,
            encryption_metadata=encrypted.metadata,
        )

    def _finish_item(self, item: SubmissionQueueItem, status: QueueItemStatus, message: Optional[str] = None) -> None:
        item.status = status
        item.last_error = message
        item.lock_expires_at = None
        item.updated_at = self._now()
        if not self.store.update_queue_item(item, QueueItemStatus.PROCESSING):
            logger.warning(f"Queue item {item.id} was reclaimed before it could be marked {status.value}")

    def _handle_success(
        self,
        batch_id: str,
        item: SubmissionQueueItem,
        prepared: PreparedPayload,
        response: GovernmentResponse,
    ) -> ItemOutcome:
        submitted_at = self._now()

        def mutate(batch: SubmissionBatch) -> SubmissionReceipt:
            batch.submitted_at = submitted_at
            batch.government_reference = response.reference
            batch.confirmation_id = response.confirmation_id
            batch.checksum = prepared.checksum
            batch.next_retry_at = None
            batch.transition(
                SubmissionStatus.SUBMITTED,
                self._entry(
                    LogAction.SUBMITTED,
                    SubmissionStatus.SUBMITTED,
                    f"Submitted to government with reference {response.reference}",
                    metadata={
                        "government_reference": response.reference,
                        "confirmation_id": response.confirmation_id,
                        "submission_id": response.submission_id,
                        "processing_time_ms": response.processing_time_ms,
                    },
                    timestamp=submitted_at,
                ),
            )
            return SubmissionReceipt(
                batch_id=batch.id,
                submission_id=response.submission_id,
                government_reference=response.reference,
                confirmation_id=response.confirmation_id,
                submitted_at=submitted_at,
                submitted_by=batch.created_by,
                report_count=prepared.report_count,
                checksum=prepared.checksum,
                receipt_data=dict(response.raw),
            )

        try:
            batch = self.store.update_batch(batch_id, mutate)
        except InvalidStateError as e:
            # A reclaimed duplicate attempt already recorded the outcome
            logger.warning(f"Government accepted batch {batch_id} but it is no longer submitting: {e}")
            self._finish_item(item, QueueItemStatus.COMPLETED, str(e))
            return ItemOutcome.SKIPPED

        self._finish_item(item, QueueItemStatus.COMPLETED)

        duration = (submitted_at - batch.queued_at).total_seconds() if batch.queued_at else None
        log_audit_event(
            "BATCH_SUBMITTED",
            {
                "status": "success",
                "batch_id": batch_id,
                "batch_status": batch.status.value,
                "retry_count": batch.retry_count,
                "duration": duration,
                "government_reference": response.reference,
            },
        )
        self._publish(batch)
        self._notify(
            NotificationType.SUBMISSION_SUCCESS,
            f"Batch {batch_id} submitted successfully (reference {response.reference})",
            batch_id=batch_id,
            government_reference=response.reference,
        )
        return ItemOutcome.SUBMITTED

    def _handle_failure(self, batch_id: str, item: SubmissionQueueItem, exc: GovernmentAPIError) -> ItemOutcome:
        now = self._now()
        outcome: Dict[str, Any] = {}

        def mutate(batch: SubmissionBatch) -> None:
            previous = batch.retry_count
            if exc.recoverable and self.retry_policy.should_retry(previous):
                next_retry_at = self.retry_policy.next_attempt_at(previous, now)
                batch.retry_count = previous + 1
                batch.next_retry_at = next_retry_at
                batch.transition(
                    SubmissionStatus.RETRY_PENDING,
                    self._entry(
                        LogAction.RETRY_SCHEDULED,
                        SubmissionStatus.RETRY_PENDING,
                        f"Submission failed; retry {batch.retry_count} of "
                        f"{self.retry_policy.max_retries} scheduled for {to_iso(next_retry_at)}",
                        error=submission_error_from(exc, recoverable=True),
                        metadata={"retry_count": batch.retry_count, "next_retry_at": to_iso(next_retry_at)},
                        timestamp=now,
                    ),
                )
                outcome.update(retry=True, next_retry_at=next_retry_at, retry_count=batch.retry_count)
                return

            if exc.recoverable:
                exhausted = MaxRetriesExceededError(batch.id, attempts=previous + 1)
                error = SubmissionError(
                    code="MAX_RETRIES_EXCEEDED",
                    message=f"{exhausted} Last error: {exc.message}",
                    recoverable=False,
                )
            else:
                error = submission_error_from(exc, recoverable=False)
            batch.next_retry_at = None
            batch.transition(
                SubmissionStatus.FAILED,
                self._entry(
                    LogAction.FAILED,
                    SubmissionStatus.FAILED,
                    f"Submission failed permanently: {error.message}",
                    error=error,
                    metadata={"retry_count": batch.retry_count},
                    timestamp=now,
                ),
            )
            outcome.update(retry=False, error=error, retry_count=batch.retry_count)

        try:
            batch = self.store.update_batch(batch_id, mutate)
        except InvalidStateError as e:
            logger.warning(f"Failure of batch {batch_id} not recorded; batch is no longer submitting: {e}")
            self._finish_item(item, QueueItemStatus.COMPLETED, str(e))
            return ItemOutcome.SKIPPED

        if outcome["retry"]:
            item.status = QueueItemStatus.PENDING
            item.scheduled_at = outcome["next_retry_at"]
            item.retry_count += 1
            item.last_error = exc.message
            item.lock_expires_at = None
            item.updated_at = now
            if not self.store.update_queue_item(item, QueueItemStatus.PROCESSING):
                logger.warning(f"Queue item {item.id} was reclaimed before its retry could be scheduled")

            log_audit_event(
                "RETRY_SCHEDULED",
                {
                    "status": "failure",
                    "batch_id": batch_id,
                    "batch_status": batch.status.value,
                    "retry_count": outcome["retry_count"],
                    "error_code": exc.code,
                    "error_message": exc.message,
                    "next_retry_at": to_iso(outcome["next_retry_at"]),
                },
            )
            self._publish(batch)
            self._notify(
                NotificationType.SUBMISSION_RETRY,
                f"Submission of batch {batch_id} failed ({exc.code}); "
                f"retry {outcome['retry_count']} at {to_iso(outcome['next_retry_at'])}",
                batch_id=batch_id,
                retry_count=outcome["retry_count"],
            )
            return ItemOutcome.RETRY_SCHEDULED

        error: SubmissionError = outcome["error"]
        self._finish_item(item, QueueItemStatus.FAILED, error.message)
        self._record_permanent_failure(batch, error)
        return ItemOutcome.FAILED

    def _fail_preparation(
        self, batch: SubmissionBatch, item: SubmissionQueueItem, exc: Union[ValidationError, EncryptionError]
    ) -> ItemOutcome:
        code = "VALIDATION_ERROR" if isinstance(exc, ValidationError) else "ENCRYPTION_ERROR"
        error = SubmissionError(code=code, message=str(exc), recoverable=False)
        error_info = create_error_info(exc, batch_id=batch.id)
        logger.error(f"Batch {batch.id} could not be prepared: {exc}. Remediation: {error_info.remediation}")

        def mutate(current: SubmissionBatch) -> None:
            current.next_retry_at = None
            current.transition(
                SubmissionStatus.FAILED,
                self._entry(
                    LogAction.FAILED,
                    SubmissionStatus.FAILED,
                    f"Batch preparation failed: {exc}",
                    error=error,
                    metadata={"retry_count": current.retry_count},
                ),
            )

        try:
            batch = self.store.update_batch(batch.id, mutate)
        except InvalidStateError as e:
            logger.warning(f"Preparation failure of batch {batch.id} not recorded: {e}")
            self._finish_item(item, QueueItemStatus.COMPLETED, str(e))
            return ItemOutcome.SKIPPED

        self._finish_item(item, QueueItemStatus.FAILED, error.message)
        self._record_permanent_failure(batch, error)
        return ItemOutcome.FAILED

    def _record_permanent_failure(self, batch: SubmissionBatch, error: SubmissionError) -> None:
        log_audit_event(
            "BATCH_FAILED",
            {
                "status": "failure",
                "batch_id": batch.id,
                "batch_status": batch.status.value,
                "retry_count": batch.retry_count,
                "error_code": error.code,
                "error_message": error.message,
            },
        )
        self._publish(batch)
        self._notify(
            NotificationType.SUBMISSION_FAILURE,
            f"Submission of batch {batch.id} failed: {error.message}",
            batch_id=batch.id,
            error_code=error.code,
        )
        self._notify(
            NotificationType.MANUAL_ACTION_REQUIRED,
            f"Batch {batch.id} needs a manual retry",
            batch_id=batch.id,
        )

    # Operator actions

    def retry_failed_submission(
        self,
        batch_id: str,
        user_id: str,
        user_role: UserRole,
    ) -> str:
        """Re-queue a failed or retry-pending batch with high priority.

        The automatic retry budget starts over and any pending attempt for the
        batch is superseded.

        Returns:
            The new queue item id

        Raises:
            BatchNotFoundError: If the batch does not exist
            InvalidStateError: Unless the batch is failed or retry_pending; nothing is written
        """
        batch = self._require_batch(batch_id)
        if batch.status not in MANUAL_RETRY_STATUSES:
            raise InvalidStateError(
                f"Batch {batch_id} cannot be retried from status {batch.status.value}; "
                f"only failed or retry_pending batches can be retried",
                batch_id=batch_id,
                status=batch.status.value,
            )

        item_id = self._enqueue(
            batch_id,
            SubmissionMethod.RETRY,
            QueuePriority.HIGH,
            None,
            user_id,
            user_role,
            allowed=MANUAL_RETRY_STATUSES,
            retry_request=True,
        )

        log_audit_event(
            "RETRY_REQUESTED",
            {"status": "success", "batch_id": batch_id, "user_id": user_id, "user_role": user_role.value},
        )
        return item_id

    def cancel_submission(
        self,
        batch_id: str,
        user_id: str,
        user_role: UserRole,
        reason: Optional[str] = None,
    ) -> SubmissionBatch:
        """Stop a batch's submission chain.

        Raises:
            BatchNotFoundError: If the batch does not exist
            InvalidStateError: If the batch is submitting or already terminal
        """
        batch = self._require_batch(batch_id)
        if batch.status not in CANCELLABLE_STATUSES:
            raise InvalidStateError(
                f"Batch {batch_id} cannot be cancelled from status {batch.status.value}",
                batch_id=batch_id,
                status=batch.status.value,
            )

        def mutate(current: SubmissionBatch) -> None:
            if current.status not in CANCELLABLE_STATUSES:
                raise InvalidStateError(
                    f"Batch {batch_id} cannot be cancelled from status {current.status.value}",
                    batch_id=batch_id,
                    status=current.status.value,
                )
            current.next_retry_at = None
            current.transition(
                SubmissionStatus.CANCELLED,
                self._entry(
                    LogAction.CANCELLED,
                    SubmissionStatus.CANCELLED,
                    f"Submission cancelled{': ' + reason if reason else ''}",
                    user_id=user_id,
                    user_role=user_role,
                ),
            )

        batch = self.store.update_batch(batch_id, mutate)
        self._fail_pending_items(batch_id, "Batch cancelled")

        log_audit_event(
            "BATCH_CANCELLED",
            {"status": "success", "batch_id": batch_id, "batch_status": batch.status.value, "user_id": user_id},
        )
        self._publish(batch)
        return batch

    def _fail_pending_items(self, batch_id: str, message: str, keep: Optional[str] = None) -> int:
        failed = 0
        for item in self.store.list_queue_items(batch_id=batch_id, status=QueueItemStatus.PENDING):
            if item.id == keep:
                continue
            item.status = QueueItemStatus.FAILED
            item.last_error = message
            item.updated_at = self._now()
            if self.store.update_queue_item(item, QueueItemStatus.PENDING):
                failed += 1
        if failed:
            logger.info(f"Marked {failed} pending queue items of batch {batch_id} failed: {message}")
        return failed

    def record_government_outcome(
        self,
        batch_id: str,
        accepted: bool,
        details: Optional[str] = None,
        user_id: Optional[str] = None,
        user_role: UserRole = UserRole.SYSTEM,
    ) -> SubmissionBatch:
        """Advance a submitted batch to accepted or rejected.

        Raises:
            BatchNotFoundError: If the batch does not exist
            InvalidStateError: Unless the batch is submitted
        """
        new_status = SubmissionStatus.ACCEPTED if accepted else SubmissionStatus.REJECTED
        action = LogAction.ACCEPTED if accepted else LogAction.REJECTED
        text = details or f"Government {'accepted' if accepted else 'rejected'} the submission"
        error = None if accepted else SubmissionError("GOVERNMENT_REJECTED", text, recoverable=False)

        def mutate(batch: SubmissionBatch) -> None:
            batch.transition(
                new_status,
                self._entry(action, new_status, text, user_id=user_id, user_role=user_role, error=error),
            )

        batch = self.store.update_batch(batch_id, mutate)
        log_audit_event(
            "BATCH_ACCEPTED" if accepted else "BATCH_REJECTED",
            {
                "status": "success" if accepted else "failure",
                "batch_id": batch_id,
                "batch_status": batch.status.value,
                "government_reference": batch.government_reference,
            },
        )
        self._publish(batch)
        if not accepted:
            self._notify(
                NotificationType.MANUAL_ACTION_REQUIRED,
                f"Government rejected batch {batch_id}: {text}",
                batch_id=batch_id,
            )
        return batch

    def refresh_government_status(self, batch_id: str) -> SubmissionStatus:
        """Poll the government status endpoint for a submitted batch.

        Raises:
            BatchNotFoundError: If the batch does not exist
            InvalidStateError: If the batch has not been submitted
            GovernmentAPIError: If the status cannot be read
        """
        batch = self._require_batch(batch_id)
        if batch.status != SubmissionStatus.SUBMITTED or not batch.government_reference:
            raise InvalidStateError(
                f"Batch {batch_id} has no pending government decision (status {batch.status.value})",
                batch_id=batch_id,
                status=batch.status.value,
            )

        remote = self.government_client.check_status(batch.government_reference)
        if remote == "processing":
            return batch.status
        return self.record_government_outcome(
            batch_id,
            accepted=remote == "accepted",
            details=f"Government status for {batch.government_reference}: {remote}",
        ).status

    # Maintenance

    def reclaim_stale_items(self) -> int:
        """Return abandoned processing items to pending.

        Queued and retry-pending batches left without a live queue item, for
        example after a crash between the queue write and the status change,
        get a fresh pending item. Both kinds of repair are counted.
        """
        reclaimed = self.store.reclaim_stale_items(self._now())
        for item in reclaimed:
            logger.warning(f"Reclaimed stale queue item {item.id} of batch {item.batch_id}")
            log_audit_event(
                "QUEUE_ITEM_RECLAIMED",
                {"status": "success", "batch_id": item.batch_id, "queue_item_id": item.id},
            )
        return len(reclaimed) + self._requeue_orphaned_batches()

    def _requeue_orphaned_batches(self) -> int:
        # Batches are read before items so a concurrent queue request is never mistaken for an orphan
        candidates = [
            batch
            for status in (SubmissionStatus.QUEUED, SubmissionStatus.RETRY_PENDING)
            for batch in self.store.list_batches(status=status)
        ]
        live = {
            item.batch_id
            for status in (QueueItemStatus.PENDING, QueueItemStatus.PROCESSING)
            for item in self.store.list_queue_items(status=status)
        }
        requeued = 0
        for batch in candidates:
            if batch.id in live:
                continue
                now = self._now()
                item = SubmissionQueueItem(
                    id=f"queue_{uuid.uuid4().hex}",
                    batch_id=batch.id,
                    priority=(
                        QueuePriority.HIGH if batch.submission_method == SubmissionMethod.RETRY else QueuePriority.NORMAL
                    ),
                    scheduled_at=batch.next_retry_at or now,
                    created_at=now,
                    updated_at=now,
                )
                self.store.add_queue_item(item)
                requeued += 1
                logger.warning(f"Batch {batch.id} was {batch.status.value} without a queue item; added {item.id}")
                log_audit_event(
                    "BATCH_REQUEUED",
                    {
                        "status": "success",
                        "batch_id": batch.id,
                        "batch_status": batch.status.value,
                        "queue_item_id": item.id,
                    },
                )
        return requeued

    def cleanup_queue(self, older_than: Optional[timedelta] = None) -> int:
        """Delete finished queue items older than ``older_than`` (default from config)."""
        age = older_than or timedelta(days=self.config.queue.cleanup_after_days)
        deleted = self.store.delete_queue_items_before(self._now() - age)
        if deleted:
            logger.info(f"Deleted {deleted} finished queue items older than {age}")
        return deleted

    def check_period_reminder(self) -> bool:
        """Notify operators once per period when the next window opens soon."""
        period_config = self.config.period
        local = self._local()
        days = days_until_period(local, period_config.start_day, period_config.end_day)
        if days == 0 or days > period_config.reminder_days_before:
            return False

        window = self.get_next_submission_period()
        key = window.start.date().isoformat()
        if key in self._reminded_periods:
            return False
        self._reminded_periods.add(key)

        ready = len(self.store.list_batches(status=SubmissionStatus.READY))
        self._notify(
            NotificationType.PERIOD_REMINDER,
            f"Submission period opens in {days} day(s) on {window.start.date()}; "
            f"{ready} batch(es) ready for submission",
            period_start=window.start.isoformat(),
            ready_batches=ready,
        )
        return True

    # Query surface

    def get_submission_status(self, batch_id: str) -> SubmissionStatusView:
        """Return the latest committed status, log and receipt of a batch.

        Raises:
            BatchNotFoundError: If the batch does not exist
        """
        batch = self._require_batch(batch_id)
        receipt = self.store.get_receipt(batch_id) if batch.submitted_at else None
        return SubmissionStatusView(
            batch_id=batch.id,
            status=batch.status,
            submission_log=list(batch.submission_log),
            receipt=receipt,
            next_retry_at=batch.next_retry_at if batch.status == SubmissionStatus.RETRY_PENDING else None,
            retry_count=batch.retry_count,
        )

    def subscribe_to_submission_updates(self, batch_id: str, callback: StatusCallback) -> Callable[[], None]:
        return self.publisher.subscribe(batch_id, callback)

    def get_submission_statistics(self) -> SubmissionStatistics:
        return self.store.get_statistics()

    def close(self) -> None:
        with self._executor_lock:
            if self._executor is not None:
                self._executor.shutdown(wait=True)
                self._executor = None
        self.publisher.close()
        self.government_client.close()
