"""Client for the government compliance endpoint.

The engine depends on the :class:`GovernmentClient` interface; the
:class:`HttpGovernmentClient` implementation posts JSON over a pooled,
TLS 1.2+ ``requests`` session. Each call is a single attempt: retries are
owned by the workflow engine so that every attempt lands in the batch's
submission log.
"""

import json
import logging
import time
import uuid
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, Optional

import requests

from medsubmit.config.manager import get_secret
from medsubmit.config.schema import GovernmentConfig
from medsubmit.logging_audit import log_transaction
from medsubmit.models.responses import GovernmentResponse
from medsubmit.transport.http_client import ConnectionPool
from medsubmit.utils.exceptions import (
    GovernmentAPIError,
    GovernmentRejectedError,
    NetworkError,
    SubmissionTimeoutError,
)
from medsubmit.utils.timeutils import to_iso

logger = logging.getLogger(__name__)

# 4xx answers that are worth another attempt later
RETRYABLE_CLIENT_STATUSES = (408, 425, 429)

DEFAULT_COMPLIANCE_FLAGS = {
    "gdprCompliant": True,
    "dataAnonymized": True,
    "romanianHealthCompliant": True,
}


@dataclass
class SubmissionRequest:
    """Outbound submission body.

    Attributes:
        batch_id: Batch being submitted
        month: Year-month the batch covers
        report_count: Number of reports in the encrypted payload
        submitted_by: User who created the batch
        submission_time: When this attempt started
        encrypted_payload: base64 ciphertext
        encryption_metadata: algorithm, key version and checksum
        compliance_flags: Compliance declarations
    """

    batch_id: str
    month: str
    report_count: int
    submitted_by: str
    submission_time: datetime
    encrypted_payload: str
    encryption_metadata: Dict[str, Any]
    compliance_flags: Dict[str, bool] = field(default_factory=lambda: dict(DEFAULT_COMPLIANCE_FLAGS))

    def to_wire(self) -> Dict[str, Any]:
        return {
            "batchId": self.batch_id,
            "month": self.month,
            "reportCount": self.report_count,
            "submittedBy": self.submitted_by,
            "submissionTime": to_iso(self.submission_time),
            "encryptedPayload": self.encrypted_payload,
            "encryptionMetadata": dict(self.encryption_metadata),
            "complianceFlags": dict(self.compliance_flags),
        }


class GovernmentClient(ABC):
    """Outbound interface to the compliance endpoint."""

    @abstractmethod
    def submit(self, request: SubmissionRequest, timeout: float) -> GovernmentResponse:
        """Submit one batch.

        Raises:
            GovernmentAPIError: On any failure; ``recoverable`` tells the engine
                whether a later attempt may succeed
        """

    @abstractmethod
    def check_status(self, reference: str) -> str:
        """Return the government-side processing status of a submission.

        Returns one of ``"accepted"``, ``"rejected"`` or ``"processing"``.

        Raises:
            GovernmentAPIError: If the status cannot be read
        """

    def close(self) -> None:
        """Release transport resources."""


class HttpGovernmentClient(GovernmentClient):
    """requests-based client for the government REST API.

    Attributes:
        config: Government endpoint configuration
        submit_url: Absolute submission URL
        status_url: Absolute status URL prefix

    Example:
        >>> client = HttpGovernmentClient(config.government)
        >>> response = client.submit(request, timeout=120)
        >>> response.reference
        'GOV-2024-000123'
    """

    def __init__(
        self,
        config: GovernmentConfig,
        pool: Optional[ConnectionPool] = None,
        api_key: Optional[str] = None,
    ) -> None:
        self.config = config
        self.submit_url = f"{config.api_url}{config.submit_endpoint}"
        self.status_url = f"{config.api_url}{config.status_endpoint}"
        self._pool = pool or ConnectionPool()
        self._owns_pool = pool is None
        self._api_key = api_key

        if not config.verify_tls:
            logger.warning("TLS verification is disabled for the government endpoint")

    def _headers(self) -> Dict[str, str]:
        headers = {
            "Content-Type": "application/json",
            "Accept": "application/json",
            "X-Client-Id": self.config.client_id,
        }
        api_key = self._api_key or get_secret(self.config.api_key_env_var, required=False)
        if api_key:
            headers["X-API-Key"] = api_key
        else:
            logger.warning(
                f"{self.config.api_key_env_var} is not set; request sent without an API key"
            )
        return headers

    def submit(self, request: SubmissionRequest, timeout: float) -> GovernmentResponse:
        body = json.dumps(request.to_wire())
        start = time.time()

        logger.info(f"Submitting batch {request.batch_id} ({request.report_count} reports) to {self.submit_url}")

        try:
            response = self._pool.get_session().post(
                self.submit_url,
                data=body.encode("utf-8"),
                headers=self._headers(),
                timeout=timeout,
                verify=self.config.verify_tls,
            )
        except requests.exceptions.SSLError as e:
            log_transaction("GOV_SUBMIT", body, "", status="failure")
            raise NetworkError(
                f"TLS validation failed for {self.submit_url}: {e}",
                code="TLS_ERROR",
                recoverable=False,
            ) from e
        except requests.Timeout as e:
            log_transaction("GOV_SUBMIT", body, "", status="failure")
            raise SubmissionTimeoutError(
                f"No answer from government endpoint within {timeout}s"
            ) from e
        except requests.ConnectionError as e:
            log_transaction("GOV_SUBMIT", body, "", status="failure")
            raise NetworkError(f"Could not connect to {self.submit_url}: {e}") from e

        processing_time_ms = int((time.time() - start) * 1000)
        log_transaction(
            "GOV_SUBMIT",
            body,
            response.text,
            status="success" if response.ok else "failure",
        )

        if not response.ok:
            raise self._http_error(response)

        return self._parse_submission_response(response, processing_time_ms)

    def _http_error(self, response: requests.Response) -> GovernmentAPIError:
        status = response.status_code
        message = f"Government endpoint returned HTTP {status}"
        try:
            detail = response.json()
        except ValueError:
            detail = None
        if isinstance(detail, dict) and detail.get("error"):
            message = f"{message}: {detail['error']}"

        recoverable = status >= 500 or status in RETRYABLE_CLIENT_STATUSES
        logger.warning(f"{message} (recoverable={recoverable})")
        return GovernmentRejectedError(
            message,
            code=f"HTTP_{status}",
            recoverable=recoverable,
            status_code=status,
        )

    def _parse_submission_response(
        self, response: requests.Response, processing_time_ms: int
    ) -> GovernmentResponse:
        try:
            data = response.json()
        except ValueError as e:
            raise GovernmentAPIError(
                "Government endpoint returned a non-JSON body",
                code="INVALID_RESPONSE",
                status_code=response.status_code,
            ) from e

        reference = data.get("reference") if isinstance(data, dict) else None
        if not reference:
            raise GovernmentAPIError(
                "Government response is missing the submission reference",
                code="INVALID_RESPONSE",
                status_code=response.status_code,
            )

        return GovernmentResponse(
            reference=reference,
            confirmation_id=data.get("confirmationId") or "",
            submission_id=data.get("submissionId") or f"sub_{uuid.uuid4().hex}",
            raw=data,
            processing_time_ms=processing_time_ms,
        )

    def check_status(self, reference: str) -> str:
        url = f"{self.status_url}/{reference}"
        try:
            response = self._pool.get_session().get(
                url,
                headers=self._headers(),
                timeout=self.config.timeout_seconds,
                verify=self.config.verify_tls,
            )
        except requests.Timeout as e:
            raise SubmissionTimeoutError(f"Status request for {reference} timed out") from e
        except requests.ConnectionError as e:
            raise NetworkError(f"Could not connect to {url}: {e}") from e

        log_transaction("GOV_STATUS", url, response.text, status="success" if response.ok else "failure")

        if not response.ok:
            raise self._http_error(response)

        try:
            status = str(response.json().get("status", "")).lower()
        except (ValueError, AttributeError) as e:
            raise GovernmentAPIError(
                f"Invalid status response for {reference}", code="INVALID_RESPONSE"
            ) from e

        if status not in ("accepted", "rejected", "processing"):
            raise GovernmentAPIError(
                f"Unknown government status {status!r} for {reference}", code="INVALID_RESPONSE"
            )
        return status

    def close(self) -> None:
        if self._owns_pool:
            self._pool.close()
