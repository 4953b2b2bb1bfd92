"""End-to-end submission workflow against a live mock government endpoint.

These tests run the real engine, the SQLite-backed store, AES-GCM payload
encryption and the pooled HTTP client together.
"""

import threading
from datetime import timedelta

import pytest

from medsubmit.models.batch import LogAction, SubmissionStatus
from medsubmit.storage.sql import SqlSubmissionStore
from medsubmit.submission.notifications import NotificationType
from medsubmit.utils.exceptions import InvalidStateError


def create_and_queue(engine, batch_id="batch-1"):
    engine.create_batch("2024-04", ["rep-1", "rep-2", "rep-3"], created_by="dr-popescu", batch_id=batch_id)
    engine.queue_submission_batch(batch_id, user_id="dr-popescu")


class TestSuccessfulSubmission:
    """Happy path through the HTTP endpoint."""

    def test_batch_submitted_and_receipt_stored(self, start_mock_government, build_engine):
        # Arrange
        mock = start_mock_government(required_api_key="integration-key")
        engine = build_engine(mock)
        create_and_queue(engine)

        # Act
        result = engine.process_submission_queue()

        # Assert
        assert result.processed == 1
        view = engine.get_submission_status("batch-1")
        assert view.status == SubmissionStatus.SUBMITTED
        assert view.receipt is not None
        record = mock.state.submissions[view.receipt.government_reference]
        assert record["batchId"] == "batch-1"
        assert record["reportCount"] == 3
        assert record["checksum"] == view.receipt.checksum
        assert view.receipt.confirmation_id == record["confirmationId"]

    def test_state_survives_a_new_store(self, start_mock_government, build_engine, database_url):
        """Test the receipt and log are durable across store instances."""
        # Arrange
        mock = start_mock_government()
        engine = build_engine(mock)
        create_and_queue(engine)
        engine.process_submission_queue()

        # Act
        reopened = SqlSubmissionStore(database_url)
        try:
            batch = reopened.get_batch("batch-1")
            receipt = reopened.get_receipt("batch-1")
        finally:
            reopened.close()

        # Assert
        assert batch.status == SubmissionStatus.SUBMITTED
        assert receipt.government_reference == batch.government_reference
        assert [entry.action for entry in batch.submission_log][-1] == LogAction.SUBMITTED


class TestRetriesAgainstOutage:
    def test_recovers_after_transient_failures(self, start_mock_government, build_engine, clock):
        """Test two simulated outages are retried with growing delays."""
        # Arrange
        mock = start_mock_government(fail_first_n=2)
        engine = build_engine(mock)
        create_and_queue(engine)

        # Act
        engine.process_submission_queue()
        first = engine.get_submission_status("batch-1")
        clock.advance(31)
        engine.process_submission_queue()
        second = engine.get_submission_status("batch-1")
        clock.advance(61)
        engine.process_submission_queue()

        # Assert
        assert first.status == SubmissionStatus.RETRY_PENDING
        assert second.status == SubmissionStatus.RETRY_PENDING
        assert second.next_retry_at - first.next_retry_at == timedelta(seconds=61)
        final = engine.get_submission_status("batch-1")
        assert final.status == SubmissionStatus.SUBMITTED
        assert final.retry_count == 2
        assert mock.state.submission_attempts == 3

    def test_retry_not_due_is_left_alone(self, start_mock_government, build_engine, clock):
        mock = start_mock_government(fail_first_n=1)
        engine = build_engine(mock)
        create_and_queue(engine)
        engine.process_submission_queue()

        clock.advance(10)
        result = engine.process_submission_queue()

        assert result.processed == 0
        assert mock.state.submission_attempts == 1

    def test_wrong_api_key_fails_without_retry(self, start_mock_government, build_engine, notifications):
        # Arrange
        mock = start_mock_government(required_api_key="expected")
        engine = build_engine(mock, api_key="wrong")
        create_and_queue(engine)

        # Act
        engine.process_submission_queue()

        # Assert
        view = engine.get_submission_status("batch-1")
        assert view.status == SubmissionStatus.FAILED
        assert view.manual_retry_available is True
        assert view.submission_log[-1].error.code == "HTTP_401"
        assert notifications.of_type(NotificationType.MANUAL_ACTION_REQUIRED)


class TestGovernmentDecision:
    """Polling the status endpoint after submission."""

    @pytest.mark.parametrize(
        "decision, expected",
        [
            ("accepted", SubmissionStatus.ACCEPTED),
            ("rejected", SubmissionStatus.REJECTED),
            ("processing", SubmissionStatus.SUBMITTED),
        ],
    )
    def test_refresh(self, start_mock_government, build_engine, decision, expected):
        # Arrange
        mock = start_mock_government(decision=decision)
        engine = build_engine(mock)
        create_and_queue(engine)
        engine.process_submission_queue()

        # Act
        status = engine.refresh_government_status("batch-1")

        # Assert
        assert status == expected
        assert engine.get_submission_status("batch-1").status == expected

    def test_refresh_before_submission(self, start_mock_government, build_engine):
        mock = start_mock_government()
        engine = build_engine(mock)
        create_and_queue(engine)

        with pytest.raises(InvalidStateError):
            engine.refresh_government_status("batch-1")


class TestConcurrentEngines:
    def test_two_engines_submit_once(self, start_mock_government, build_engine):
        """Test engines sharing one database never double-submit a batch."""
        # Arrange
        mock = start_mock_government(response_delay_ms=200)
        first = build_engine(mock)
        second = build_engine(mock)
        create_and_queue(first)
        second.queue_submission_batch("batch-1", user_id="dr-ionescu")
        barrier = threading.Barrier(2)

        def drain(engine):
            barrier.wait()
            engine.process_submission_queue()

        # Act
        threads = [threading.Thread(target=drain, args=(engine,)) for engine in (first, second)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join(timeout=30)

        # Assert
        assert len(mock.state.submissions) == 1
        assert first.get_submission_status("batch-1").status == SubmissionStatus.SUBMITTED
