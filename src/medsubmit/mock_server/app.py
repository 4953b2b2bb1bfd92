"""Flask mock of the government compliance endpoint.

Used for local runs and integration tests. Failures can be injected with a
fixed count (``fail_first_n``) or a probability (``failure_rate``).
"""

import logging
import random
import signal
import sys
import threading
import time
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Any, Callable, Dict, Optional

from flask import Flask, jsonify, request

from .config import MockServerConfig, load_config

logger = logging.getLogger("medsubmit.mock_server")

REQUIRED_SUBMISSION_FIELDS = (
    "batchId",
    "month",
    "reportCount",
    "submittedBy",
    "submissionTime",
    "encryptedPayload",
    "encryptionMetadata",
)


def setup_logging(config: MockServerConfig) -> logging.Logger:
    """Configure logging for mock server with rotation.

    Args:
        config: Mock server configuration

    Returns:
        Configured logger instance
    """
    logger.setLevel(config.log_level)
    logger.handlers.clear()

    formatter = logging.Formatter("%(asctime)s - %(name)s - %(levelname)s - %(message)s")

    console_handler = logging.StreamHandler()
    console_handler.setLevel(logging.INFO)
    console_handler.setFormatter(formatter)
    logger.addHandler(console_handler)

    log_path = Path(config.log_path)
    log_path.parent.mkdir(parents=True, exist_ok=True)
    file_handler = RotatingFileHandler(log_path, maxBytes=10 * 1024 * 1024, backupCount=5)
    file_handler.setLevel(logging.DEBUG)
    file_handler.setFormatter(formatter)
    logger.addHandler(file_handler)

    return logger


@dataclass
class MockGovernmentState:
    """Mutable state of one mock server instance."""

    config: MockServerConfig
    started_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    request_count: int = 0
    submission_attempts: int = 0
    submissions: Dict[str, Dict[str, Any]] = field(default_factory=dict)
    rng: Callable[[], float] = random.random
    lock: threading.Lock = field(default_factory=threading.Lock)

    def next_attempt(self) -> int:
        with self.lock:
            self.submission_attempts += 1
            return self.submission_attempts


def _error(message: str, status: int):
    logger.warning(f"Returning HTTP {status}: {message}")
    return jsonify({"error": message}), status


def create_app(config: Optional[MockServerConfig] = None, rng: Optional[Callable[[], float]] = None) -> Flask:
    """Build a mock government app.

    Args:
        config: Mock server configuration (defaults if omitted)
        rng: Random source for ``failure_rate``; injected by tests

    Returns:
        Flask application with ``app.extensions["mock_government"]`` holding its state
    """
    config = config or MockServerConfig()
    state = MockGovernmentState(config=config)
    if rng is not None:
        state.rng = rng

    app = Flask(__name__)
    app.extensions["mock_government"] = state
    behavior = config.behavior

    @app.before_request
    def log_request():
        with state.lock:
            state.request_count += 1
            count = state.request_count
        logger.info(
            f"Request #{count}: {request.method} {request.path} "
            f"(Content-Length: {request.content_length or 0})"
        )

    @app.route("/health", methods=["GET"])
    def health_check():
        uptime_seconds = int((datetime.now(timezone.utc) - state.started_at).total_seconds())
        return jsonify(
            {
                "status": "healthy",
                "version": "1.0.0",
                "endpoints": ["/health", config.submit_endpoint, f"{config.status_endpoint}/<reference>"],
                "uptime_seconds": uptime_seconds,
                "request_count": state.request_count,
                "submissions": len(state.submissions),
                "timestamp": datetime.now(timezone.utc).isoformat(),
            }
        ), 200

    @app.route(config.submit_endpoint, methods=["POST"])
    def submit():
        if behavior.required_api_key and request.headers.get("X-API-Key") != behavior.required_api_key:
            return _error("Invalid or missing API key", 401)

        payload = request.get_json(silent=True)
        if not isinstance(payload, dict):
            return _error("Request body must be a JSON object", 400)

        missing = [name for name in REQUIRED_SUBMISSION_FIELDS if name not in payload]
        if missing:
            return _error(f"Missing fields: {', '.join(missing)}", 400)

        if behavior.response_delay_ms:
            time.sleep(behavior.response_delay_ms / 1000.0)

        attempt = state.next_attempt()
        if attempt <= behavior.fail_first_n:
            return _error(f"Simulated outage (attempt {attempt} of {behavior.fail_first_n})", behavior.failure_status)
        if behavior.failure_rate and state.rng() < behavior.failure_rate:
            return _error("Simulated random failure", behavior.failure_status)

        now = datetime.now(timezone.utc)
        reference = f"GOV-{now:%Y%m}-{uuid.uuid4().hex[:10].upper()}"
        record = {
            "reference": reference,
            "confirmationId": f"CONF-{uuid.uuid4().hex[:12].upper()}",
            "submissionId": f"sub_{uuid.uuid4().hex}",
            "status": "received",
            "batchId": payload["batchId"],
            "reportCount": payload["reportCount"],
            "checksum": (payload.get("encryptionMetadata") or {}).get("checksum"),
            "receivedAt": now.isoformat(),
        }
        with state.lock:
            state.submissions[reference] = record

        logger.info(f"Accepted batch {payload['batchId']} as {reference}")
        return jsonify(record), 200

    @app.route(f"{config.status_endpoint}/<reference>", methods=["GET"])
    def submission_status(reference: str):
        record = state.submissions.get(reference)
        if record is None:
            return _error(f"Unknown reference {reference}", 404)
        return jsonify({"reference": reference, "status": behavior.decision.value, "batchId": record["batchId"]}), 200

    return app


def setup_graceful_shutdown() -> None:
    """Setup graceful shutdown handlers for SIGTERM and SIGINT.

    Signal handlers can only be registered in the main thread; elsewhere a
    warning is logged and the server runs without them.
    """

    def shutdown_handler(signum, frame):
        logger.info(f"Received shutdown signal ({signum}), shutting down mock government endpoint")
        sys.exit(0)

    try:
        signal.signal(signal.SIGTERM, shutdown_handler)
        signal.signal(signal.SIGINT, shutdown_handler)
    except ValueError as e:
        logger.warning(f"Could not register signal handlers (not in main thread): {e}.")


def run_server(
    host: Optional[str] = None,
    port: Optional[int] = None,
    config: Optional[MockServerConfig] = None,
    debug: bool = False,
) -> None:
    """Run the mock government endpoint.

    Args:
        host: Host address (default from config)
        port: Port number (default from config)
        config: Mock server configuration (loads from file if not provided)
        debug: Enable Flask debug mode
    """
    if config is None:
        config = load_config()

    setup_logging(config)
    setup_graceful_shutdown()
    app = create_app(config)

    host = host or config.host
    port = port or config.http_port
    logger.info(f"Starting mock government endpoint on http://{host}:{port}{config.submit_endpoint}")
    logger.info(f"Health check available at: http://{host}:{port}/health")

    app.run(host=host, port=port, debug=debug, use_reloader=False)


if __name__ == "__main__":
    run_server()
