"""Unit tests for the exponential backoff policy."""

from datetime import datetime, timedelta, timezone

import pytest

from medsubmit.config.schema import RetryConfig
from medsubmit.submission.retry import RetryPolicy


def no_jitter(low, high):
    return 0.0


def max_jitter(low, high):
    return high


class TestComputeDelay:
    """Tests for RetryPolicy.compute_delay."""

    def test_doubles_from_base_delay(self):
        """Test 30s, 60s, 120s, 240s progression."""
        # Arrange
        policy = RetryPolicy(RetryConfig(base_delay_seconds=30, max_delay_seconds=300, jitter_seconds=1), rng=no_jitter)

        # Act
        delays = [policy.compute_delay(n) for n in range(4)]

        # Assert
        assert delays == [30.0, 60.0, 120.0, 240.0]

    def test_caps_at_max_delay(self):
        """Test delays never exceed the cap, even with jitter."""
        policy = RetryPolicy(RetryConfig(base_delay_seconds=30, max_delay_seconds=300, jitter_seconds=1), rng=max_jitter)

        assert policy.compute_delay(4) == 300.0
        assert policy.compute_delay(50) == 300.0
        assert policy.compute_delay(10_000) == 300.0

    def test_adds_jitter_below_cap(self):
        """Test jitter is added to the exponential component."""
        policy = RetryPolicy(RetryConfig(base_delay_seconds=30, max_delay_seconds=300, jitter_seconds=1), rng=max_jitter)

        assert policy.compute_delay(0) == 31.0

    def test_jitter_drawn_from_configured_range(self):
        """Test the random source receives [0, jitter]."""
        # Arrange
        calls = []

        def recording_rng(low, high):
            calls.append((low, high))
            return 0.5

        policy = RetryPolicy(RetryConfig(jitter_seconds=2.0), rng=recording_rng)

        # Act
        policy.compute_delay(1)

        # Assert
        assert calls == [(0.0, 2.0)]

    def test_default_rng_stays_within_bounds(self):
        """Test real jitter keeps the delay within base..base+jitter."""
        policy = RetryPolicy(RetryConfig(base_delay_seconds=30, max_delay_seconds=300, jitter_seconds=1))

        for _ in range(50):
            assert 30.0 <= policy.compute_delay(0) <= 31.0

    def test_negative_retry_count_rejected(self):
        policy = RetryPolicy()

        with pytest.raises(ValueError, match="retry_count"):
            policy.compute_delay(-1)


class TestShouldRetry:
    """Tests for the retry budget."""

    def test_retries_until_budget_exhausted(self):
        policy = RetryPolicy(RetryConfig(max_retries=3))

        assert [policy.should_retry(n) for n in range(5)] == [True, True, True, False, False]

    def test_zero_budget_never_retries(self):
        policy = RetryPolicy(RetryConfig(max_retries=0))

        assert policy.should_retry(0) is False


class TestNextAttemptAt:
    def test_adds_delay_to_now(self):
        """Test the next attempt time is now plus the computed delay."""
        # Arrange
        policy = RetryPolicy(RetryConfig(base_delay_seconds=30), rng=no_jitter)
        now = datetime(2024, 5, 6, 10, 0, tzinfo=timezone.utc)

        # Act
        next_at = policy.next_attempt_at(2, now)

        # Assert
        assert next_at == now + timedelta(seconds=120)
