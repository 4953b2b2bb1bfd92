"""Integration test fixtures and configuration.

This module provides fixtures for integration tests, including:
- A live mock government endpoint served from a background thread
- An engine wired to the SQL store, the HTTP client and AES-GCM encryption

The mock endpoint fixture starts a real HTTP server on a free port and shuts
it down after the test.
"""

import logging
import threading
from dataclasses import dataclass
from typing import Callable, Generator, List

import pytest
from werkzeug.serving import make_server

from medsubmit.mock_server.app import MockGovernmentState, create_app
from medsubmit.mock_server.config import MockServerConfig, SubmissionBehavior
from medsubmit.storage.sql import SqlSubmissionStore
from medsubmit.submission.anonymizer import Anonymizer
from medsubmit.submission.encryption import AesGcmEncryptor
from medsubmit.submission.engine import SubmissionWorkflowEngine
from medsubmit.submission.government_client import HttpGovernmentClient
from medsubmit.submission.retry import RetryPolicy

logger = logging.getLogger(__name__)


@dataclass
class RunningMock:
    """Handle on a mock government endpoint served over HTTP."""

    url: str
    state: MockGovernmentState


@pytest.fixture
def start_mock_government() -> Generator[Callable[..., RunningMock], None, None]:
    """Factory starting mock endpoints with the given behavior.

    Every server started by the factory is shut down at teardown.
    """
    servers: List = []

    def start(**behavior) -> RunningMock:
        app = create_app(MockServerConfig(behavior=SubmissionBehavior(**behavior)), rng=lambda: 1.0)
        server = make_server("127.0.0.1", 0, app, threaded=True)
        thread = threading.Thread(target=server.serve_forever, daemon=True)
        thread.start()
        servers.append((server, thread))
        url = f"http://127.0.0.1:{server.server_port}"
        logger.info(f"Mock government endpoint started at {url}")
        return RunningMock(url=url, state=app.extensions["mock_government"])

    yield start

    for server, thread in servers:
        server.shutdown()
        thread.join(timeout=5)


@pytest.fixture
def database_url(tmp_path) -> str:
    return f"sqlite:///{tmp_path / 'medsubmit.db'}"


@pytest.fixture
def encryption_key() -> bytes:
    return b"0123456789abcdef0123456789abcdef"


@pytest.fixture
def build_engine(config, clock, report_source, notifications, database_url, encryption_key):
    """Factory for engines talking to a mock endpoint through the SQL store."""
    engines: List[SubmissionWorkflowEngine] = []

    def build(mock: RunningMock, api_key: str = "integration-key") -> SubmissionWorkflowEngine:
        engine_config = config.model_copy(
            update={"government": config.government.model_copy(update={"api_url": mock.url, "timeout_seconds": 10})}
        )
        engine = SubmissionWorkflowEngine(
            store=SqlSubmissionStore(database_url),
            report_source=report_source,
            government_client=HttpGovernmentClient(engine_config.government, api_key=api_key),
            encryptor=AesGcmEncryptor(encryption_key, key_version="v1"),
            config=engine_config,
            anonymizer=Anonymizer(salt="integration-salt"),
            retry_policy=RetryPolicy(engine_config.retry, rng=lambda low, high: 0.0),
            notifier=notifications,
            clock=clock,
        )
        engines.append(engine)
        return engine

    yield build

    for engine in engines:
        engine.close()
        engine.store.close()
