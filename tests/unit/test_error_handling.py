"""Unit tests for exception classification and remediation."""

import pytest
import requests

from medsubmit.utils.exceptions import (
    BatchNotFoundError,
    ConfigurationError,
    EncryptionError,
    ErrorCategory,
    GovernmentAPIError,
    GovernmentRejectedError,
    InvalidStateError,
    MaxRetriesExceededError,
    MedSubmitError,
    NetworkError,
    StoreTransactionError,
    SubmissionPeriodClosedError,
    SubmissionTimeoutError,
    ValidationError,
    categorize_error,
    create_error_info,
)


class TestExceptionHierarchy:
    """Tests for the exception tree."""

    @pytest.mark.parametrize(
        "exc_class",
        [
            ValidationError,
            ConfigurationError,
            InvalidStateError,
            StoreTransactionError,
            EncryptionError,
            GovernmentAPIError,
        ],
    )
    def test_all_inherit_from_base(self, exc_class):
        assert issubclass(exc_class, MedSubmitError)

    def test_period_closed_is_invalid_state(self):
        assert issubclass(SubmissionPeriodClosedError, InvalidStateError)

    def test_government_error_defaults(self):
        """Test default codes per subclass."""
        assert NetworkError("x").code == "NETWORK_ERROR"
        assert SubmissionTimeoutError("x").code == "TIMEOUT"
        assert GovernmentRejectedError("x").code == "HTTP_ERROR"
        assert GovernmentAPIError("x").recoverable is True

    def test_explicit_code_and_status(self):
        error = GovernmentRejectedError("bad", code="HTTP_400", recoverable=False, status_code=400)

        assert error.code == "HTTP_400"
        assert error.recoverable is False
        assert error.status_code == 400

    def test_batch_not_found_message(self):
        error = BatchNotFoundError("batch-9")

        assert "batch-9" in str(error)
        assert error.batch_id == "batch-9"

    def test_max_retries_message(self):
        error = MaxRetriesExceededError("batch-1", attempts=6)

        assert "6 attempts" in str(error)
        assert "Manual intervention" in str(error)


class TestCategorizeError:
    """Tests for categorize_error."""

    def test_recoverable_government_error_is_transient(self):
        assert categorize_error(NetworkError("down")) == ErrorCategory.TRANSIENT

    def test_non_recoverable_government_error_is_permanent(self):
        assert categorize_error(GovernmentRejectedError("no", recoverable=False)) == ErrorCategory.PERMANENT

    def test_configuration_is_critical(self):
        assert categorize_error(ConfigurationError("bad")) == ErrorCategory.CRITICAL
        assert categorize_error(EncryptionError("no key")) == ErrorCategory.CRITICAL
        assert categorize_error(StoreTransactionError("db")) == ErrorCategory.CRITICAL

    def test_requests_errors(self):
        assert categorize_error(requests.ConnectionError()) == ErrorCategory.TRANSIENT
        assert categorize_error(requests.Timeout()) == ErrorCategory.TRANSIENT
        assert categorize_error(requests.exceptions.SSLError()) == ErrorCategory.CRITICAL

    def test_validation_is_permanent(self):
        assert categorize_error(ValidationError("missing")) == ErrorCategory.PERMANENT


class TestCreateErrorInfo:
    """Tests for create_error_info."""

    def test_populates_fields(self):
        # Arrange
        try:
            try:
                raise ConnectionResetError("reset by peer")
            except ConnectionResetError as cause:
                raise NetworkError("Could not connect") from cause
        except NetworkError as e:
            error = e

        # Act
        info = create_error_info(error, batch_id="batch-1")

        # Assert
        assert info.category == ErrorCategory.TRANSIENT
        assert info.error_type == "NetworkError"
        assert info.is_retryable is True
        assert info.batch_id == "batch-1"
        assert "ConnectionResetError" in info.technical_details
        assert "retried automatically" in info.remediation

    def test_period_closed_remediation_mentions_override(self):
        info = create_error_info(SubmissionPeriodClosedError("closed"))

        assert "--override-window" in info.remediation

    def test_invalid_state_remediation(self):
        info = create_error_info(InvalidStateError("nope"))

        assert "medsubmit batch status" in info.remediation

    def test_unknown_error_has_generic_remediation(self):
        info = create_error_info(RuntimeError("boom"))

        assert info.category == ErrorCategory.PERMANENT
        assert "logs/" in info.remediation
