"""Unit tests for the HTTP government client."""

import json
from datetime import datetime, timezone
from unittest.mock import Mock

import pytest
import requests

from medsubmit.config.schema import GovernmentConfig
from medsubmit.submission.government_client import HttpGovernmentClient, SubmissionRequest
from medsubmit.utils.exceptions import (
    GovernmentAPIError,
    GovernmentRejectedError,
    NetworkError,
    SubmissionTimeoutError,
)


def make_response(status_code=200, body=None, text=None):
    response = Mock()
    response.status_code = status_code
    response.ok = status_code < 400
    if body is not None:
        response.json.return_value = body
        response.text = json.dumps(body)
    else:
        response.json.side_effect = ValueError("No JSON")
        response.text = text or ""
    return response


@pytest.fixture
def request_body():
    return SubmissionRequest(
        batch_id="batch-1",
        month="2024-04",
        report_count=3,
        submitted_by="dr-popescu",
        submission_time=datetime(2024, 5, 6, 10, 0, tzinfo=timezone.utc),
        encrypted_payload="Y2lwaGVy",
        encryption_metadata={"algorithm": "AES-256-GCM", "keyVersion": "v1", "checksum": "abc"},
    )


@pytest.fixture
def session():
    return Mock()


@pytest.fixture
def client(session):
    pool = Mock()
    pool.get_session.return_value = session
    config = GovernmentConfig(api_url="https://gov.example", client_id="clinic-7")
    return HttpGovernmentClient(config, pool=pool, api_key="key-123")


class TestSubmit:
    """Tests for HttpGovernmentClient.submit."""

    def test_success(self, client, session, request_body):
        # Arrange
        session.post.return_value = make_response(
            200, {"reference": "GOV-1", "confirmationId": "CONF-1", "submissionId": "sub-1", "status": "received"}
        )

        # Act
        response = client.submit(request_body, timeout=120)

        # Assert
        assert response.reference == "GOV-1"
        assert response.confirmation_id == "CONF-1"
        assert response.submission_id == "sub-1"
        assert response.raw["status"] == "received"

    def test_request_format(self, client, session, request_body):
        """Test URL, headers, timeout and wire body."""
        # Arrange
        session.post.return_value = make_response(200, {"reference": "GOV-1"})

        # Act
        client.submit(request_body, timeout=45)

        # Assert
        args, kwargs = session.post.call_args
        assert args[0] == "https://gov.example/api/v1/medical-reports/submit"
        assert kwargs["timeout"] == 45
        assert kwargs["verify"] is True
        assert kwargs["headers"]["X-API-Key"] == "key-123"
        assert kwargs["headers"]["X-Client-Id"] == "clinic-7"
        body = json.loads(kwargs["data"])
        assert body["batchId"] == "batch-1"
        assert body["reportCount"] == 3
        assert body["encryptedPayload"] == "Y2lwaGVy"
        assert body["complianceFlags"]["dataAnonymized"] is True
        assert body["submissionTime"] == "2024-05-06T10:00:00+00:00"

    def test_missing_ids_are_generated(self, client, session, request_body):
        session.post.return_value = make_response(200, {"reference": "GOV-1"})

        response = client.submit(request_body, timeout=120)

        assert response.confirmation_id == ""
        assert response.submission_id.startswith("sub_")

    @pytest.mark.parametrize("status_code", [500, 502, 503, 408, 429])
    def test_recoverable_http_errors(self, client, session, request_body, status_code):
        session.post.return_value = make_response(status_code, {"error": "Service unavailable"})

        with pytest.raises(GovernmentRejectedError) as exc_info:
            client.submit(request_body, timeout=120)

        assert exc_info.value.recoverable is True
        assert exc_info.value.code == f"HTTP_{status_code}"
        assert exc_info.value.status_code == status_code

    @pytest.mark.parametrize("status_code", [400, 401, 403, 422])
    def test_client_errors_not_recoverable(self, client, session, request_body, status_code):
        session.post.return_value = make_response(status_code, {"error": "Invalid payload"})

        with pytest.raises(GovernmentRejectedError) as exc_info:
            client.submit(request_body, timeout=120)

        assert exc_info.value.recoverable is False
        assert "Invalid payload" in exc_info.value.message

    def test_timeout(self, client, session, request_body):
        session.post.side_effect = requests.Timeout("read timed out")

        with pytest.raises(SubmissionTimeoutError) as exc_info:
            client.submit(request_body, timeout=120)

        assert exc_info.value.code == "TIMEOUT"
        assert exc_info.value.recoverable is True

    def test_connection_error(self, client, session, request_body):
        session.post.side_effect = requests.ConnectionError("refused")

        with pytest.raises(NetworkError) as exc_info:
            client.submit(request_body, timeout=120)

        assert exc_info.value.recoverable is True

    def test_tls_error_not_recoverable(self, client, session, request_body):
        session.post.side_effect = requests.exceptions.SSLError("certificate verify failed")

        with pytest.raises(NetworkError) as exc_info:
            client.submit(request_body, timeout=120)

        assert exc_info.value.code == "TLS_ERROR"
        assert exc_info.value.recoverable is False

    def test_non_json_body(self, client, session, request_body):
        session.post.return_value = make_response(200, text="<html>ok</html>")

        with pytest.raises(GovernmentAPIError) as exc_info:
            client.submit(request_body, timeout=120)

        assert exc_info.value.code == "INVALID_RESPONSE"
        assert exc_info.value.recoverable is True

    def test_missing_reference(self, client, session, request_body):
        session.post.return_value = make_response(200, {"status": "received"})

        with pytest.raises(GovernmentAPIError, match="missing the submission reference"):
            client.submit(request_body, timeout=120)

    def test_api_key_from_environment(self, session, request_body, monkeypatch):
        # Arrange
        monkeypatch.setenv("TEST_GOV_KEY", "env-key")
        pool = Mock()
        pool.get_session.return_value = session
        client = HttpGovernmentClient(GovernmentConfig(api_key_env_var="TEST_GOV_KEY"), pool=pool)
        session.post.return_value = make_response(200, {"reference": "GOV-1"})

        # Act
        client.submit(request_body, timeout=120)

        # Assert
        assert session.post.call_args.kwargs["headers"]["X-API-Key"] == "env-key"


class TestCheckStatus:
    @pytest.mark.parametrize("remote", ["accepted", "REJECTED", "processing"])
    def test_known_statuses(self, client, session, remote):
        session.get.return_value = make_response(200, {"reference": "GOV-1", "status": remote})

        assert client.check_status("GOV-1") == remote.lower()
        assert session.get.call_args.args[0] == "https://gov.example/api/v1/medical-reports/status/GOV-1"

    def test_unknown_status(self, client, session):
        session.get.return_value = make_response(200, {"status": "lost"})

        with pytest.raises(GovernmentAPIError, match="Unknown government status"):
            client.check_status("GOV-1")

    def test_not_found(self, client, session):
        session.get.return_value = make_response(404, {"error": "Unknown reference"})

        with pytest.raises(GovernmentRejectedError) as exc_info:
            client.check_status("GOV-404")

        assert exc_info.value.status_code == 404

    def test_timeout(self, client, session):
        session.get.side_effect = requests.Timeout()

        with pytest.raises(SubmissionTimeoutError):
            client.check_status("GOV-1")


class TestClose:
    def test_shared_pool_not_closed(self, client):
        pool = client._pool

        client.close()

        pool.close.assert_not_called()

    def test_own_pool_closed(self):
        client = HttpGovernmentClient(GovernmentConfig())
        client._pool = Mock()

        client.close()

        client._pool.close.assert_called_once()
