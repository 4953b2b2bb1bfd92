"""Exponential backoff for failed government submissions."""

import logging
import random
from datetime import datetime, timedelta
from typing import Callable, Optional

from medsubmit.config.schema import RetryConfig

logger = logging.getLogger(__name__)


class RetryPolicy:
    """Retry delay calculator.

    ``delay(n) = min(base * 2**n + uniform(0, jitter), cap)`` where ``n`` is the
    number of retries already scheduled for the batch. Jitter is drawn per call.

    Attributes:
        max_retries: Retries scheduled before a batch is marked failed
        base_delay: Delay before the first retry, in seconds
        max_delay: Upper bound for any single delay, in seconds
        jitter: Upper bound of the uniform jitter, in seconds

    Example:
        >>> policy = RetryPolicy(RetryConfig(), rng=lambda a, b: 0.0)
        >>> policy.compute_delay(0)
        30.0
        >>> policy.compute_delay(10)
        300.0
    """

    def __init__(
        self,
        config: Optional[RetryConfig] = None,
        rng: Optional[Callable[[float, float], float]] = None,
    ) -> None:
        config = config or RetryConfig()
        self.max_retries = config.max_retries
        self.base_delay = config.base_delay_seconds
        self.max_delay = config.max_delay_seconds
        self.jitter = config.jitter_seconds
        self._uniform = rng or random.uniform

    def should_retry(self, retry_count: int) -> bool:
        return retry_count < self.max_retries

    def compute_delay(self, retry_count: int) -> float:
        """Return the delay in seconds before the next attempt.

        Args:
            retry_count: Retries already scheduled (0 for the first failure)

        Raises:
            ValueError: If retry_count is negative
        """
        if retry_count < 0:
            raise ValueError(f"retry_count must be >= 0, got {retry_count}")

        # Large exponents overflow float quickly; the cap applies long before
        exponent = min(retry_count, 32)
        delay = self.base_delay * (2 ** exponent) + self._uniform(0.0, self.jitter)
        return min(delay, self.max_delay)

    def next_attempt_at(self, retry_count: int, now: datetime) -> datetime:
        delay = self.compute_delay(retry_count)
        logger.debug(f"Retry {retry_count + 1} scheduled in {delay:.2f}s")
        return now + timedelta(seconds=delay)
