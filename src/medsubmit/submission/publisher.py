"""Per-batch publish/subscribe of status transitions.

Every subscriber owns a delivery thread fed by its own queue, so callbacks for
one subscriber never interleave and a slow subscriber never delays others or
the engine.
"""

import logging
import threading
import uuid
from collections import defaultdict
from queue import Empty, SimpleQueue
from typing import Callable, Dict, List, Union

from medsubmit.models.responses import StatusUpdate

logger = logging.getLogger(__name__)

StatusCallback = Callable[[StatusUpdate], None]

_STOP = object()


class _Subscription:
    """One subscriber: a queue and the thread draining it."""

    def __init__(self, batch_id: str, callback: StatusCallback) -> None:
        self.id = uuid.uuid4().hex
        self.batch_id = batch_id
        self.callback = callback
        self._queue: "SimpleQueue[Union[StatusUpdate, threading.Event, object]]" = SimpleQueue()
        self._thread = threading.Thread(
            target=self._deliver, name=f"status-subscriber-{self.id[:8]}", daemon=True
        )
        self._thread.start()

    def put(self, message: Union[StatusUpdate, threading.Event, object]) -> None:
        self._queue.put(message)

    def stop(self) -> None:
        self._queue.put(_STOP)

    def join(self, timeout: float) -> None:
        self._thread.join(timeout)

    def _deliver(self) -> None:
        while True:
            try:
                message = self._queue.get(timeout=1.0)
            except Empty:
                continue
            if message is _STOP:
                return
            if isinstance(message, threading.Event):
                message.set()
                continue
            try:
                self.callback(message)
            except Exception:
                logger.exception(f"Status subscriber {self.id} for batch {self.batch_id} failed")


class SubmissionPublisher:
    """Thread-safe registry of status subscribers keyed by batch id.

    Example:
        >>> publisher = SubmissionPublisher()
        >>> unsubscribe = publisher.subscribe("batch-1", lambda update: print(update.status))
        >>> publisher.publish(StatusUpdate("batch-1", SubmissionStatus.QUEUED, entry))
        >>> unsubscribe()
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._subscriptions: Dict[str, Dict[str, _Subscription]] = defaultdict(dict)

    def subscribe(self, batch_id: str, callback: StatusCallback) -> Callable[[], None]:
        """Register ``callback`` for transitions of ``batch_id``.

        Returns:
            A function that removes the subscription; calling it twice is harmless
        """
        subscription = _Subscription(batch_id, callback)
        with self._lock:
            self._subscriptions[batch_id][subscription.id] = subscription
        logger.debug(f"Subscriber {subscription.id} registered for batch {batch_id}")

        def unsubscribe() -> None:
            with self._lock:
                removed = self._subscriptions.get(batch_id, {}).pop(subscription.id, None)
                if batch_id in self._subscriptions and not self._subscriptions[batch_id]:
                    del self._subscriptions[batch_id]
            if removed is not None:
                removed.stop()

        return unsubscribe

    def publish(self, update: StatusUpdate) -> int:
        """Queue ``update`` for every subscriber of its batch; returns the subscriber count."""
        with self._lock:
            targets = list(self._subscriptions.get(update.batch_id, {}).values())
        for subscription in targets:
            subscription.put(update)
        return len(targets)

    def subscriber_count(self, batch_id: str) -> int:
        with self._lock:
            return len(self._subscriptions.get(batch_id, {}))

    def flush(self, timeout: float = 5.0) -> bool:
        """Wait until every update published so far has been delivered."""
        with self._lock:
            targets = [s for subs in self._subscriptions.values() for s in subs.values()]
        markers: List[threading.Event] = []
        for subscription in targets:
            marker = threading.Event()
            subscription.put(marker)
            markers.append(marker)
        return all(marker.wait(timeout) for marker in markers)

    def close(self, timeout: float = 5.0) -> None:
        with self._lock:
            targets = [s for subs in self._subscriptions.values() for s in subs.values()]
            self._subscriptions.clear()
        for subscription in targets:
            subscription.stop()
        for subscription in targets:
            subscription.join(timeout)
