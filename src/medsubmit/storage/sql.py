"""SQLAlchemy-backed durable store.

Batches and receipts are stored as JSON documents next to the indexed columns
used for queries. Batch writes use an optimistic version check; queue items
are plain rows so the claim can be a single conditional UPDATE.

A partial unique index on ``(batch_id) WHERE status = 'processing'`` backs the
one-processing-item-per-batch rule at the database level, including for
workers in other processes.
"""

import logging
import time
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable, List, Optional, TypeVar

from sqlalchemy import (
    JSON,
    Column,
    Float,
    Index,
    Integer,
    MetaData,
    String,
    Table,
    Text,
    create_engine,
    event,
    exists,
    insert,
    select,
    update,
    delete,
)
from sqlalchemy.engine import Connection, Engine, make_url
from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from medsubmit.models.batch import SubmissionBatch, SubmissionStatus
from medsubmit.models.queue import (
    PRIORITY_RANK,
    QueueItemStatus,
    QueuePriority,
    SubmissionQueueItem,
)
from medsubmit.models.receipt import SubmissionReceipt
from medsubmit.models.responses import SubmissionStatistics
from medsubmit.storage.base import (
    SUBMISSION_COUNT_KEY,
    SUBMISSION_SECONDS_KEY,
    BatchMutator,
    SubmissionStore,
    aggregate_delta,
    statistics_from_counters,
    status_key,
)
from medsubmit.utils.exceptions import BatchNotFoundError, StoreTransactionError, ValidationError

logger = logging.getLogger(__name__)

T = TypeVar("T")

MAX_OPTIMISTIC_ATTEMPTS = 10
SQLITE_BUSY_TIMEOUT_SECONDS = 30

metadata = MetaData()

batches_table = Table(
    "submission_batches",
    metadata,
    Column("id", String(64), primary_key=True),
    Column("month", String(7), nullable=False, index=True),
    Column("status", String(32), nullable=False, index=True),
    Column("created_ts", Float, nullable=False),
    Column("version", Integer, nullable=False, default=1),
    Column("document", JSON, nullable=False),
)

queue_table = Table(
    "submission_queue",
    metadata,
    Column("id", String(64), primary_key=True),
    Column("batch_id", String(64), nullable=False, index=True),
    Column("priority", String(16), nullable=False),
    Column("priority_rank", Integer, nullable=False),
    Column("scheduled_ts", Float, nullable=False),
    Column("status", String(16), nullable=False, index=True),
    Column("retry_count", Integer, nullable=False, default=0),
    Column("last_error", Text),
    Column("lock_expires_ts", Float),
    Column("created_ts", Float, nullable=False),
    Column("updated_ts", Float, nullable=False),
)

Index(
    "uq_submission_queue_processing_batch",
    queue_table.c.batch_id,
    unique=True,
    sqlite_where=queue_table.c.status == QueueItemStatus.PROCESSING.value,
    postgresql_where=queue_table.c.status == QueueItemStatus.PROCESSING.value,
)

receipts_table = Table(
    "submission_receipts",
    metadata,
    Column("batch_id", String(64), primary_key=True),
    Column("document", JSON, nullable=False),
)

stats_table = Table(
    "submission_stats",
    metadata,
    Column("key", String(64), primary_key=True),
    Column("value", Float, nullable=False, default=0.0),
)

STAT_KEYS = [status_key(s) for s in SubmissionStatus] + [SUBMISSION_SECONDS_KEY, SUBMISSION_COUNT_KEY]


def _ts(value: Optional[datetime]) -> Optional[float]:
    return value.timestamp() if value is not None else None


def _dt(value: Optional[float]) -> Optional[datetime]:
    return datetime.fromtimestamp(value, timezone.utc) if value is not None else None


class _VersionConflict(Exception):
    """A concurrent writer updated the batch first."""


class SqlSubmissionStore(SubmissionStore):
    """Store backed by any SQLAlchemy-supported database.

    Args:
        database_url: SQLAlchemy URL (e.g. ``sqlite:///data/medsubmit.db``)
        engine: Pre-built engine; overrides ``database_url``

    Example:
        >>> store = SqlSubmissionStore("sqlite:///data/medsubmit.db")
        >>> store.get_statistics().total_batches
        0
    """

    def __init__(self, database_url: Optional[str] = None, engine: Optional[Engine] = None) -> None:
        if engine is None:
            if not database_url:
                raise ValueError("database_url or engine is required")
            engine = self._create_engine(database_url)
        self.engine = engine
        metadata.create_all(self.engine)
        self._seed_stats()

    @staticmethod
    def _create_engine(database_url: str) -> Engine:
        url = make_url(database_url)
        if not url.drivername.startswith("sqlite"):
            return create_engine(database_url, pool_pre_ping=True)

        if url.database and url.database != ":memory:":
            Path(url.database).parent.mkdir(parents=True, exist_ok=True)

        engine = create_engine(
            database_url,
            connect_args={"check_same_thread": False, "timeout": SQLITE_BUSY_TIMEOUT_SECONDS},
        )

        # pysqlite defers BEGIN; take the write lock up front so concurrent
        # read-modify-write transactions wait on the busy timeout instead of failing
        @event.listens_for(engine, "connect")
        def _disable_pysqlite_begin(dbapi_connection, connection_record):
            dbapi_connection.isolation_level = None

        @event.listens_for(engine, "begin")
        def _begin_immediate(conn):
            conn.exec_driver_sql("BEGIN IMMEDIATE")

        return engine

    def _seed_stats(self) -> None:
        with self._transaction() as conn:
            existing = set(conn.execute(select(stats_table.c.key)).scalars())
            missing = [{"key": key, "value": 0.0} for key in STAT_KEYS if key not in existing]
            if missing:
                conn.execute(insert(stats_table), missing)

    def _transaction(self):
        return self.engine.begin()

    def _run(self, operation: str, fn: Callable[[], T]) -> T:
        try:
            return fn()
        except SQLAlchemyError as e:
            logger.error(f"Store operation {operation} failed: {e}")
            raise StoreTransactionError(f"Store operation {operation} failed: {e}") from e

    @staticmethod
    def _apply_delta(conn: Connection, before: Optional[SubmissionBatch], after: SubmissionBatch) -> None:
        for key, amount in aggregate_delta(before, after).counters.items():
            conn.execute(
                update(stats_table)
                .where(stats_table.c.key == key)
                .values(value=stats_table.c.value + amount)
            )

    # Batches

    def create_batch(self, batch: SubmissionBatch) -> None:
        def _create() -> None:
            with self._transaction() as conn:
                conn.execute(
                    insert(batches_table).values(
                        id=batch.id,
                        month=batch.month,
                        status=batch.status.value,
                        created_ts=_ts(batch.created_at),
                        version=1,
                        document=batch.to_dict(),
                    )
                )
                self._apply_delta(conn, None, batch)

        try:
            self._run("create_batch", _create)
        except StoreTransactionError as e:
            if isinstance(e.__cause__, IntegrityError):
                raise ValidationError(f"Batch {batch.id} already exists") from e
            raise

    def get_batch(self, batch_id: str) -> Optional[SubmissionBatch]:
        def _get() -> Optional[SubmissionBatch]:
            with self.engine.connect() as conn:
                row = conn.execute(
                    select(batches_table.c.document).where(batches_table.c.id == batch_id)
                ).first()
            return SubmissionBatch.from_dict(row.document) if row else None

        return self._run("get_batch", _get)

    def list_batches(
        self,
        status: Optional[SubmissionStatus] = None,
        month: Optional[str] = None,
    ) -> List[SubmissionBatch]:
        query = select(batches_table.c.document).order_by(batches_table.c.created_ts)
        if status is not None:
            query = query.where(batches_table.c.status == status.value)
        if month is not None:
            query = query.where(batches_table.c.month == month)

        def _list() -> List[SubmissionBatch]:
            with self.engine.connect() as conn:
                return [SubmissionBatch.from_dict(row.document) for row in conn.execute(query)]

        return self._run("list_batches", _list)

    def update_batch(self, batch_id: str, mutator: BatchMutator) -> SubmissionBatch:
        for attempt in range(1, MAX_OPTIMISTIC_ATTEMPTS + 1):
            try:
                return self._run("update_batch", lambda: self._update_batch_once(batch_id, mutator))
            except _VersionConflict:
                logger.debug(f"Version conflict on batch {batch_id} (attempt {attempt}); retrying")
                time.sleep(0.01 * attempt)

        raise StoreTransactionError(
            f"Could not update batch {batch_id} after {MAX_OPTIMISTIC_ATTEMPTS} attempts"
        )

    def _update_batch_once(self, batch_id: str, mutator: BatchMutator) -> SubmissionBatch:
        with self._transaction() as conn:
            row = conn.execute(
                select(batches_table.c.version, batches_table.c.document).where(
                    batches_table.c.id == batch_id
                )
            ).first()
            if row is None:
                raise BatchNotFoundError(batch_id)

            before = SubmissionBatch.from_dict(row.document)
            batch = SubmissionBatch.from_dict(row.document)
            receipt = mutator(batch)

            result = conn.execute(
                update(batches_table)
                .where(batches_table.c.id == batch_id, batches_table.c.version == row.version)
                .values(
                    status=batch.status.value,
                    version=row.version + 1,
                    document=batch.to_dict(),
                )
            )
            if result.rowcount != 1:
                raise _VersionConflict()

            if receipt is not None:
                conn.execute(
                    insert(receipts_table).values(batch_id=batch_id, document=receipt.to_dict())
                )
            self._apply_delta(conn, before, batch)
            return batch

    # Queue

    @staticmethod
    def _item_values(item: SubmissionQueueItem) -> dict:
        return {
            "batch_id": item.batch_id,
            "priority": item.priority.value,
            "priority_rank": PRIORITY_RANK[item.priority],
            "scheduled_ts": _ts(item.scheduled_at),
            "status": item.status.value,
            "retry_count": item.retry_count,
            "last_error": item.last_error,
            "lock_expires_ts": _ts(item.lock_expires_at),
            "created_ts": _ts(item.created_at),
            "updated_ts": _ts(item.updated_at),
        }

    @staticmethod
    def _row_to_item(row: Any) -> SubmissionQueueItem:
        return SubmissionQueueItem(
            id=row.id,
            batch_id=row.batch_id,
            priority=QueuePriority(row.priority),
            scheduled_at=_dt(row.scheduled_ts),
            status=QueueItemStatus(row.status),
            retry_count=row.retry_count,
            last_error=row.last_error,
            lock_expires_at=_dt(row.lock_expires_ts),
            created_at=_dt(row.created_ts),
            updated_at=_dt(row.updated_ts),
        )

    def _drain_order(self, query):
        return query.order_by(
            queue_table.c.priority_rank, queue_table.c.scheduled_ts, queue_table.c.created_ts
        )

    def add_queue_item(self, item: SubmissionQueueItem) -> None:
        def _add() -> None:
            with self._transaction() as conn:
                conn.execute(insert(queue_table).values(id=item.id, **self._item_values(item)))

        self._run("add_queue_item", _add)

    def get_queue_item(self, item_id: str) -> Optional[SubmissionQueueItem]:
        def _get() -> Optional[SubmissionQueueItem]:
            with self.engine.connect() as conn:
                row = conn.execute(select(queue_table).where(queue_table.c.id == item_id)).first()
            return self._row_to_item(row) if row else None

        return self._run("get_queue_item", _get)

    def list_queue_items(
        self,
        batch_id: Optional[str] = None,
        status: Optional[QueueItemStatus] = None,
    ) -> List[SubmissionQueueItem]:
        query = self._drain_order(select(queue_table))
        if batch_id is not None:
            query = query.where(queue_table.c.batch_id == batch_id)
        if status is not None:
            query = query.where(queue_table.c.status == status.value)

        def _list() -> List[SubmissionQueueItem]:
            with self.engine.connect() as conn:
                return [self._row_to_item(row) for row in conn.execute(query)]

        return self._run("list_queue_items", _list)

    def due_queue_items(self, now: datetime, limit: int) -> List[SubmissionQueueItem]:
        query = (
            self._drain_order(select(queue_table))
            .where(
                queue_table.c.status == QueueItemStatus.PENDING.value,
                queue_table.c.scheduled_ts <= _ts(now),
            )
            .limit(limit)
        )

        def _due() -> List[SubmissionQueueItem]:
            with self.engine.connect() as conn:
                return [self._row_to_item(row) for row in conn.execute(query)]

        return self._run("due_queue_items", _due)

    def claim_queue_item(
        self, item_id: str, now: datetime, lock_expires_at: datetime
    ) -> Optional[SubmissionQueueItem]:
        other = queue_table.alias("other")
        batch_busy = exists(
            select(other.c.id).where(
                other.c.batch_id == queue_table.c.batch_id,
                other.c.status == QueueItemStatus.PROCESSING.value,
            )
        )
        stmt = (
            update(queue_table)
            .where(
                queue_table.c.id == item_id,
                queue_table.c.status == QueueItemStatus.PENDING.value,
                ~batch_busy,
            )
            .values(
                status=QueueItemStatus.PROCESSING.value,
                lock_expires_ts=_ts(lock_expires_at),
                updated_ts=_ts(now),
            )
        )

        def _claim() -> Optional[SubmissionQueueItem]:
            try:
                with self._transaction() as conn:
                    if conn.execute(stmt).rowcount != 1:
                        return None
                    row = conn.execute(select(queue_table).where(queue_table.c.id == item_id)).first()
                    return self._row_to_item(row)
            except IntegrityError:
                # Lost the race on the processing index to another item of the batch
                return None

        return self._run("claim_queue_item", _claim)

    def update_queue_item(self, item: SubmissionQueueItem, expected_status: QueueItemStatus) -> bool:
        stmt = (
            update(queue_table)
            .where(queue_table.c.id == item.id, queue_table.c.status == expected_status.value)
            .values(**self._item_values(item))
        )

        def _update() -> bool:
            with self._transaction() as conn:
                return conn.execute(stmt).rowcount == 1

        return self._run("update_queue_item", _update)

    def reclaim_stale_items(self, now: datetime) -> List[SubmissionQueueItem]:
        stale = (
            select(queue_table.c.id)
            .where(
                queue_table.c.status == QueueItemStatus.PROCESSING.value,
                queue_table.c.lock_expires_ts <= _ts(now),
            )
        )

        def _reclaim() -> List[SubmissionQueueItem]:
            with self._transaction() as conn:
                ids = list(conn.execute(stale).scalars())
                if not ids:
                    return []
                conn.execute(
                    update(queue_table)
                    .where(queue_table.c.id.in_(ids))
                    .values(
                        status=QueueItemStatus.PENDING.value,
                        lock_expires_ts=None,
                        updated_ts=_ts(now),
                    )
                )
                rows = conn.execute(select(queue_table).where(queue_table.c.id.in_(ids)))
                return [self._row_to_item(row) for row in rows]

        return self._run("reclaim_stale_items", _reclaim)

    def delete_queue_items_before(self, cutoff: datetime) -> int:
        stmt = delete(queue_table).where(
            queue_table.c.status.in_(
                [QueueItemStatus.COMPLETED.value, QueueItemStatus.FAILED.value]
            ),
            queue_table.c.updated_ts < _ts(cutoff),
        )

        def _delete() -> int:
            with self._transaction() as conn:
                return conn.execute(stmt).rowcount

        return self._run("delete_queue_items_before", _delete)

    # Receipts and statistics

    def get_receipt(self, batch_id: str) -> Optional[SubmissionReceipt]:
        def _get() -> Optional[SubmissionReceipt]:
            with self.engine.connect() as conn:
                row = conn.execute(
                    select(receipts_table.c.document).where(receipts_table.c.batch_id == batch_id)
                ).first()
            return SubmissionReceipt.from_dict(row.document) if row else None

        return self._run("get_receipt", _get)

    def get_statistics(self) -> SubmissionStatistics:
        def _stats() -> SubmissionStatistics:
            with self.engine.connect() as conn:
                counters = {row.key: row.value for row in conn.execute(select(stats_table))}
            return statistics_from_counters(counters)

        return self._run("get_statistics", _stats)

    def close(self) -> None:
        self.engine.dispose()
