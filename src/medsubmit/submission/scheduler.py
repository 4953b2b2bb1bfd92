"""Periodic triggers driving the workflow engine.

Two independent loops run on their own threads:

- the window tick promotes ready batches (inside the submission period only)
  and sends period reminders
- the queue-drain tick reclaims stale items and drains the queue
  unconditionally, so scheduled retries fire even after the window closes
"""

import logging
import threading
from typing import Callable, List, Optional

from medsubmit.config.schema import SchedulerConfig
from medsubmit.submission.engine import SubmissionWorkflowEngine
from medsubmit.utils.exceptions import MedSubmitError, create_error_info

logger = logging.getLogger(__name__)


class WorkflowScheduler:
    """Owns the lifecycle of the two periodic triggers.

    Example:
        >>> scheduler = WorkflowScheduler(engine, config.scheduler)
        >>> scheduler.start()
        >>> ...
        >>> scheduler.stop()
    """

    def __init__(self, engine: SubmissionWorkflowEngine, config: Optional[SchedulerConfig] = None) -> None:
        self.engine = engine
        self.config = config or SchedulerConfig()
        self._stop_event = threading.Event()
        self._threads: List[threading.Thread] = []
        self._lock = threading.Lock()

    @property
    def running(self) -> bool:
        return any(thread.is_alive() for thread in self._threads)

    def start(self) -> None:
        """Start both loops; calling it on a running scheduler does nothing."""
        with self._lock:
            if self.running:
                logger.debug("Scheduler already running")
                return
            self._stop_event.clear()
            self._threads = [
                threading.Thread(
                    target=self._loop,
                    args=("window-check", self.config.window_check_interval_seconds, self.window_tick),
                    name="medsubmit-window-check",
                    daemon=True,
                ),
                threading.Thread(
                    target=self._loop,
                    args=("queue-drain", self.config.queue_drain_interval_seconds, self.drain_tick),
                    name="medsubmit-queue-drain",
                    daemon=True,
                ),
            ]
            for thread in self._threads:
                thread.start()
        logger.info(
            f"Scheduler started (window check every {self.config.window_check_interval_seconds}s, "
            f"queue drain every {self.config.queue_drain_interval_seconds}s)"
        )

    def stop(self, timeout: Optional[float] = 30.0) -> None:
        """Stop both loops and wait for a tick in progress to finish."""
        with self._lock:
            self._stop_event.set()
            threads, self._threads = self._threads, []
        for thread in threads:
            thread.join(timeout)
        logger.info("Scheduler stopped")

    def wait(self, timeout: Optional[float] = None) -> bool:
        """Block until :meth:`stop` is called; returns True if it was."""
        return self._stop_event.wait(timeout)

    def _loop(self, name: str, interval: float, tick: Callable[[], None]) -> None:
        # Run immediately, then every interval until stopped
        while not self._stop_event.is_set():
            try:
                tick()
            except MedSubmitError as e:
                error_info = create_error_info(e)
                logger.error(f"Scheduler {name} tick failed: {e}. Remediation: {error_info.remediation}")
            except Exception:
                logger.exception(f"Scheduler {name} tick failed unexpectedly")
            self._stop_event.wait(interval)

    def window_tick(self) -> None:
        """Promote ready batches and drain while the period is open."""
        self.engine.check_period_reminder()
        if not self.engine.is_within_submission_period():
            logger.debug("Window check: outside submission period")
            return
        queued = self.engine.schedule_automatic_submission()
        if queued:
            self.engine.process_submission_queue()

    def drain_tick(self) -> None:
        """Reclaim abandoned attempts and process every due item."""
        self.engine.reclaim_stale_items()
        self.engine.process_submission_queue()
