"""Custom exception classes for MedSubmit.

All exceptions inherit from MedSubmitError to allow catching all custom exceptions.
"""

from dataclasses import dataclass
from enum import Enum
from typing import Optional

import requests


class MedSubmitError(Exception):
    """Base exception for all MedSubmit custom exceptions."""

    pass


class ValidationError(MedSubmitError):
    """Raised when report data cannot be prepared for submission.

    Examples:
        - Finalized report missing a required field
        - Batch created with no reports
        - Malformed report JSON
    """

    pass


class ConfigurationError(MedSubmitError):
    """Raised when configuration loading or validation fails.

    Examples:
        - Missing encryption key
        - Invalid configuration file format
        - Configuration value out of range
    """

    pass


class InvalidStateError(MedSubmitError):
    """Raised when an operation is not allowed from the batch's current status.

    Examples:
        - Manual retry of a batch that was already submitted
        - Cancelling a batch while its submission is in flight
    """

    def __init__(self, message: str, batch_id: Optional[str] = None, status: Optional[str] = None) -> None:
        super().__init__(message)
        self.batch_id = batch_id
        self.status = status


class SubmissionPeriodClosedError(InvalidStateError):
    """Raised when a batch is queued manually outside the legal submission window."""

    pass


class BatchNotFoundError(MedSubmitError):
    """Raised when a submission batch does not exist in the store."""

    def __init__(self, batch_id: str) -> None:
        super().__init__(f"Submission batch not found: {batch_id}")
        self.batch_id = batch_id


class MaxRetriesExceededError(MedSubmitError):
    """Raised when a batch has exhausted its automatic retry budget.

    The batch is moved to ``failed`` and requires a manual retry.
    """

    def __init__(self, batch_id: str, attempts: int) -> None:
        super().__init__(
            f"Submission of batch {batch_id} failed after {attempts} attempts. "
            f"Manual intervention required."
        )
        self.batch_id = batch_id
        self.attempts = attempts


class StoreTransactionError(MedSubmitError):
    """Raised when the durable store cannot commit a transaction.

    Examples:
        - Database unavailable
        - Optimistic concurrency retries exhausted
    """

    pass


class EncryptionError(MedSubmitError):
    """Raised when the submission payload cannot be encrypted.

    Examples:
        - Encryption key missing from environment
        - Key is not a valid base64 encoded 256-bit key
    """

    pass


class GovernmentAPIError(MedSubmitError):
    """Base exception for failed calls to the government compliance endpoint.

    Attributes:
        code: Machine-readable failure code recorded in the audit log
        recoverable: Whether a later attempt may succeed
        status_code: HTTP status code when the endpoint answered
    """

    default_code = "SUBMISSION_FAILED"

    def __init__(
        self,
        message: str,
        code: Optional[str] = None,
        recoverable: bool = True,
        status_code: Optional[int] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.code = code or self.default_code
        self.recoverable = recoverable
        self.status_code = status_code


class NetworkError(GovernmentAPIError):
    """Raised when the government endpoint cannot be reached."""

    default_code = "NETWORK_ERROR"


class SubmissionTimeoutError(GovernmentAPIError):
    """Raised when the government endpoint does not answer within the timeout."""

    default_code = "TIMEOUT"


class GovernmentRejectedError(GovernmentAPIError):
    """Raised when the government endpoint answers with a non-2xx status."""

    default_code = "HTTP_ERROR"


class ErrorCategory(Enum):
    """Error categorization for handling strategy.

    Attributes:
        TRANSIENT: Absorbed by the retry scheduler (network issues, timeouts, 5xx)
        PERMANENT: Batch preparation or request is wrong (validation errors, 4xx)
        CRITICAL: Operator must fix the deployment (configuration, encryption, store)
    """

    TRANSIENT = "TRANSIENT"
    PERMANENT = "PERMANENT"
    CRITICAL = "CRITICAL"


@dataclass
class ErrorInfo:
    """Structured error information for actionable error handling.

    Attributes:
        category: Error category (TRANSIENT, PERMANENT, CRITICAL)
        error_type: Exception class name (e.g., "NetworkError")
        message: User-friendly error message
        remediation: Actionable guidance for resolving the error
        is_retryable: Whether the error should trigger retry logic
        technical_details: Optional technical details for debugging
        batch_id: Optional batch ID if error occurred during batch processing
    """

    category: ErrorCategory
    error_type: str
    message: str
    remediation: str
    is_retryable: bool
    technical_details: Optional[str] = None
    batch_id: Optional[str] = None


def categorize_error(exception: Exception) -> ErrorCategory:
    """Categorize exception for error handling strategy.

    Args:
        exception: The exception to categorize

    Returns:
        ErrorCategory indicating handling strategy

    Example:
        >>> categorize_error(NetworkError("Network unreachable"))
        ErrorCategory.TRANSIENT
        >>> categorize_error(ValidationError("Missing diagnosis"))
        ErrorCategory.PERMANENT
    """
    if isinstance(exception, (ConfigurationError, EncryptionError, StoreTransactionError)):
        return ErrorCategory.CRITICAL

    if isinstance(exception, requests.exceptions.SSLError):
        return ErrorCategory.CRITICAL

    if isinstance(exception, GovernmentAPIError):
        return ErrorCategory.TRANSIENT if exception.recoverable else ErrorCategory.PERMANENT

    if isinstance(exception, (requests.ConnectionError, requests.Timeout)):
        return ErrorCategory.TRANSIENT

    if isinstance(exception, requests.HTTPError):
        if exception.response is not None and 500 <= exception.response.status_code < 600:
            return ErrorCategory.TRANSIENT
        return ErrorCategory.PERMANENT

    # Default to PERMANENT for unknown errors, including ValidationError
    return ErrorCategory.PERMANENT


def create_error_info(exception: Exception, batch_id: Optional[str] = None) -> ErrorInfo:
    """Create structured error information from exception.

    Args:
        exception: Exception that occurred
        batch_id: Optional batch ID if error during batch processing

    Returns:
        ErrorInfo with categorization and remediation guidance
    """
    category = categorize_error(exception)

    technical_details = None
    if exception.__cause__:
        technical_details = f"Caused by: {type(exception.__cause__).__name__}: {exception.__cause__}"

    return ErrorInfo(
        category=category,
        error_type=type(exception).__name__,
        message=str(exception),
        remediation=_generate_remediation(exception),
        is_retryable=category == ErrorCategory.TRANSIENT,
        technical_details=technical_details,
        batch_id=batch_id,
    )


def _generate_remediation(exception: Exception) -> str:
    """Generate actionable remediation message for an error.

    Args:
        exception: Exception that occurred

    Returns:
        Actionable remediation message
    """
    if isinstance(exception, requests.exceptions.SSLError):
        return (
            "TLS/SSL validation failed. Verify the government endpoint certificate chain. "
            "Set government.verify_tls=false only against the local mock endpoint."
        )

    if isinstance(exception, (NetworkError, requests.ConnectionError)):
        return (
            "Cannot reach the government endpoint. Check: 1) Network connectivity, "
            "2) government.api_url in config.json, 3) Firewall rules. "
            "The batch will be retried automatically."
        )

    if isinstance(exception, (SubmissionTimeoutError, requests.Timeout)):
        return (
            "The government endpoint did not answer in time. The batch will be retried "
            "automatically. Consider increasing government.timeout_seconds."
        )

    if isinstance(exception, GovernmentRejectedError):
        return (
            "The government endpoint rejected the request. Review the response details in "
            "the submission log and the API key configured in the environment."
        )

    if isinstance(exception, ValidationError):
        return (
            "Report data validation failed. Correct the finalized reports referenced by the "
            "batch and queue it again."
        )

    if isinstance(exception, SubmissionPeriodClosedError):
        return (
            "Batches can only be queued during the monthly submission period. "
            "Check the next period with: medsubmit period, or queue with --override-window."
        )

    if isinstance(exception, InvalidStateError):
        return (
            "The requested action is not allowed in the batch's current status. "
            "Check the batch status with: medsubmit batch status <batch_id>"
        )

    if isinstance(exception, EncryptionError):
        return (
            "Payload encryption failed. Set MEDSUBMIT_ENCRYPTION_KEY to a base64 encoded "
            "32-byte key."
        )

    if isinstance(exception, ConfigurationError):
        return (
            "Configuration error. Check config.json for missing or invalid values. "
            "Use: medsubmit config validate <file>"
        )

    if isinstance(exception, StoreTransactionError):
        return (
            "The submission store could not commit. Check storage.database_url. "
            "Items left in processing are reclaimed after the lock timeout."
        )

    return "Review error message and check logs/ for complete details."
