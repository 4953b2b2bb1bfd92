"""
Shared pytest configuration and fixtures.

This module provides fixtures and configuration used across all test suites
(unit and integration tests).
"""

import base64
import threading
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Callable, Generator, List, Optional, Union

import pytest

from medsubmit.config.schema import Config, PeriodConfig, QueueConfig, RetryConfig
from medsubmit.models.report import FinalizedReport
from medsubmit.models.responses import GovernmentResponse
from medsubmit.reports.source import InMemoryReportSource
from medsubmit.storage.memory import InMemorySubmissionStore
from medsubmit.submission.anonymizer import Anonymizer
from medsubmit.submission.encryption import EncryptedPayload, Encryptor
from medsubmit.submission.engine import SubmissionWorkflowEngine
from medsubmit.submission.government_client import GovernmentClient, SubmissionRequest
from medsubmit.submission.notifications import NotificationLog
from medsubmit.submission.retry import RetryPolicy


# 2024-05-06 13:00 in Bucharest: inside the 5th-10th submission window
IN_WINDOW = datetime(2024, 5, 6, 10, 0, tzinfo=timezone.utc)
# 2024-05-20: outside the window
OUT_OF_WINDOW = datetime(2024, 5, 20, 10, 0, tzinfo=timezone.utc)


class FakeClock:
    """Manually advanced clock injected into the engine."""

    def __init__(self, now: datetime = IN_WINDOW) -> None:
        self.now = now
        self._lock = threading.Lock()

    def __call__(self) -> datetime:
        with self._lock:
            return self.now

    def advance(self, seconds: float) -> datetime:
        with self._lock:
            self.now = self.now + timedelta(seconds=seconds)
            return self.now

    def set(self, moment: datetime) -> None:
        with self._lock:
            self.now = moment


Outcome = Union[Exception, GovernmentResponse, None]


class FakeGovernmentClient(GovernmentClient):
    """Scripted government client.

    Each call pops the next outcome: an exception is raised, a response is
    returned, and ``None`` (or an empty script) produces a fresh success.
    """

    def __init__(self, outcomes: Optional[List[Outcome]] = None) -> None:
        self.outcomes: List[Outcome] = list(outcomes or [])
        self.requests: List[SubmissionRequest] = []
        self.statuses: dict = {}
        self.closed = False
        self.on_submit: Optional[Callable[[SubmissionRequest], None]] = None
        self._lock = threading.Lock()

    def submit(self, request: SubmissionRequest, timeout: float) -> GovernmentResponse:
        with self._lock:
            self.requests.append(request)
            attempt = len(self.requests)
            outcome = self.outcomes.pop(0) if self.outcomes else None
        if self.on_submit is not None:
            self.on_submit(request)
        if isinstance(outcome, Exception):
            raise outcome
        if outcome is not None:
            return outcome
        return GovernmentResponse(
            reference=f"GOV-202405-{attempt:04d}",
            confirmation_id=f"CONF-{attempt:04d}",
            submission_id=f"sub_{attempt:04d}",
            raw={"reference": f"GOV-202405-{attempt:04d}", "status": "received"},
            processing_time_ms=12,
        )

    def check_status(self, reference: str) -> str:
        return self.statuses.get(reference, "processing")

    def close(self) -> None:
        self.closed = True


class FakeEncryptor(Encryptor):
    """Base64 'encryption' so tests can read the payload back."""

    def __init__(self) -> None:
        self.calls = 0

    def encrypt(self, plaintext: bytes, checksum: str, associated_data: Optional[bytes] = None) -> EncryptedPayload:
        self.calls += 1
        return EncryptedPayload(
            ciphertext=base64.b64encode(plaintext).decode("ascii"),
            algorithm="TEST",
            key_version="test",
            checksum=checksum,
        )


def make_report(report_id: str, patient_id: str = "1850101123456", **overrides) -> FinalizedReport:
    """Build a complete finalized report."""
    data = {
        "id": report_id,
        "patient_id": patient_id,
        "diagnosis": {"primary": "Hypertension", "secondary": ["Obesity"], "icd_codes": ["I10"]},
        "prescribed_medications": [
            {"name": "Lisinopril", "dosage": "10mg", "frequency": "daily", "duration": "30 days"}
        ],
        "created_at": "2024-04-15T09:30:00+00:00",
        "gdpr_consent": {"obtained": True},
        "doctor_id": "dr-popescu",
        "doctor_name": "Dr. Ana Popescu",
        "consultation_type": "routine",
        "report_month": "2024-04",
        "finalized_at": "2024-04-15T10:00:00+00:00",
        "patient_name": "Ion Ionescu",
        "patient_phone": "+40 721 000 000",
    }
    data.update(overrides)
    return FinalizedReport.from_dict(data)


@pytest.fixture
def project_root() -> Path:
    """
    Return the project root directory.

    Returns:
        Path: Absolute path to the project root directory.
    """
    return Path(__file__).parent.parent


@pytest.fixture
def clock() -> FakeClock:
    """Clock fixed inside the submission window."""
    return FakeClock()


@pytest.fixture
def config() -> Config:
    """Configuration with deterministic retry delays and a small worker pool."""
    return Config(
        period=PeriodConfig(start_day=5, end_day=10, timezone="Europe/Bucharest", reminder_days_before=2),
        retry=RetryConfig(max_retries=3, base_delay_seconds=30.0, max_delay_seconds=300.0, jitter_seconds=0.0),
        queue=QueueConfig(drain_limit=10, worker_pool_size=4, lock_timeout_seconds=300),
    )


@pytest.fixture
def reports() -> List[FinalizedReport]:
    return [make_report(f"rep-{n}", patient_id=f"18501011234{n:02d}") for n in range(1, 4)]


@pytest.fixture
def report_source(reports) -> InMemoryReportSource:
    return InMemoryReportSource(reports)


@pytest.fixture
def store() -> InMemorySubmissionStore:
    return InMemorySubmissionStore()


@pytest.fixture
def government_client() -> FakeGovernmentClient:
    return FakeGovernmentClient()


@pytest.fixture
def encryptor() -> FakeEncryptor:
    return FakeEncryptor()


@pytest.fixture
def notifications() -> NotificationLog:
    return NotificationLog()


@pytest.fixture
def engine(
    store, report_source, government_client, encryptor, config, clock, notifications
) -> Generator[SubmissionWorkflowEngine, None, None]:
    """Engine wired to in-memory fakes and a fixed clock."""
    engine = SubmissionWorkflowEngine(
        store=store,
        report_source=report_source,
        government_client=government_client,
        encryptor=encryptor,
        config=config,
        anonymizer=Anonymizer(salt="test-salt"),
        retry_policy=RetryPolicy(config.retry, rng=lambda low, high: 0.0),
        notifier=notifications,
        clock=clock,
    )
    yield engine
    engine.close()


@pytest.fixture
def ready_batch(engine):
    """A ready batch of the three fixture reports."""
    return engine.create_batch("2024-04", ["rep-1", "rep-2", "rep-3"], created_by="dr-popescu", batch_id="batch-1")


@pytest.fixture
def report_factory() -> Callable[..., FinalizedReport]:
    """Factory for complete finalized reports; keyword overrides replace fields."""
    return make_report
