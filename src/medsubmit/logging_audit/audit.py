"""Audit trail functionality for MedSubmit.

This module provides structured audit logging for batch state transitions and
outbound government transactions. The durable audit record of a batch is its
submission log; these events mirror it into the application log.
"""

import time
import uuid
from typing import Any, Dict

from .logger import AUDIT_LOGGER_NAME, get_logger

logger = get_logger(AUDIT_LOGGER_NAME)


def log_audit_event(event_type: str, details: Dict[str, Any]) -> None:
    """Log an audit trail event.

    Audit events are logged at INFO level, or ERROR level when
    ``details["status"] == "failure"``.

    Args:
        event_type: Type of operation (e.g., "BATCH_QUEUED", "BATCH_SUBMITTED",
                   "RETRY_SCHEDULED", "BATCH_FAILED")
        details: Dictionary with event details. Common fields include:
                - batch_id: Submission batch identifier
                - status: "success" or "failure"
                - batch_status: Batch status after the event
                - retry_count: Retries scheduled so far
                - error_code / error_message: Failure details
                - correlation_id: Optional correlation ID for tracking related events

    Example:
        >>> log_audit_event("BATCH_SUBMITTED", {
        ...     "batch_id": "batch-2024-05",
        ...     "status": "success",
        ...     "government_reference": "GOV-123",
        ... })
    """
    details = dict(details)
    details.setdefault("timestamp", time.time())
    details.setdefault("correlation_id", str(uuid.uuid4()))

    message_parts = [f"AUDIT [{event_type}]"]

    field_order = [
        "status",
        "batch_id",
        "batch_status",
        "retry_count",
        "duration",
        "error_code",
        "error_message",
        "correlation_id",
    ]

    for field in field_order:
        if field in details:
            value = details[field]
            if field == "duration" and isinstance(value, (int, float)):
                message_parts.append(f"{field}={value:.2f}s")
            else:
                message_parts.append(f"{field}={value}")

    for key, value in details.items():
        if key not in field_order and key != "timestamp":
            message_parts.append(f"{key}={value}")

    audit_message = " | ".join(message_parts)

    if details.get("status") == "failure":
        logger.error(audit_message)
    else:
        logger.info(audit_message)


def log_transaction(
    transaction_type: str,
    request: str,
    response: str,
    status: str = "success",
) -> None:
    """Log an outbound government transaction.

    The header line is logged at INFO; full request/response bodies at DEBUG.
    Callers pass the encrypted request body, never the plaintext reports.

    Args:
        transaction_type: Type of transaction (e.g., "GOV_SUBMIT", "GOV_STATUS")
        request: Serialized request body
        response: Response body (empty string if none)
        status: Transaction status ("success" or "failure")
    """
    correlation_id = str(uuid.uuid4())

    logger.info(
        f"TRANSACTION [{transaction_type}] | "
        f"status={status} | "
        f"correlation_id={correlation_id} | "
        f"request_size={len(request)} bytes | "
        f"response_size={len(response)} bytes"
    )

    logger.debug(f"TRANSACTION REQUEST [{transaction_type}] | correlation_id={correlation_id}\n{request}")
    logger.debug(f"TRANSACTION RESPONSE [{transaction_type}] | correlation_id={correlation_id}\n{response}")
