"""Configuration management for the mock government endpoint."""

import json
import os
from enum import Enum
from pathlib import Path
from typing import Optional

from pydantic import BaseModel, Field, field_validator


class GovernmentDecision(str, Enum):
    """Processing status reported by the mock status endpoint."""

    ACCEPTED = "accepted"
    REJECTED = "rejected"
    PROCESSING = "processing"


class SubmissionBehavior(BaseModel):
    """Submission endpoint behavior configuration.

    Attributes:
        response_delay_ms: Response delay in milliseconds (0-5000)
        failure_rate: Probability of answering with ``failure_status`` (0.0-1.0)
        fail_first_n: Fail this many submissions before succeeding
        failure_status: HTTP status used for simulated failures
        decision: Status later reported for accepted submissions
        required_api_key: Reject requests without this X-API-Key when set
    """

    response_delay_ms: int = Field(default=0, ge=0, le=5000, description="Response delay in milliseconds")
    failure_rate: float = Field(default=0.0, ge=0.0, le=1.0, description="Probability of a simulated failure")
    fail_first_n: int = Field(default=0, ge=0, description="Number of initial submissions that fail")
    failure_status: int = Field(default=503, ge=400, le=599, description="HTTP status for simulated failures")
    decision: GovernmentDecision = Field(default=GovernmentDecision.ACCEPTED)
    required_api_key: Optional[str] = Field(default=None, description="Expected X-API-Key value")


class MockServerConfig(BaseModel):
    """Mock server configuration model.

    Configuration precedence:
    1. Environment variables (MOCK_SERVER_* prefix)
    2. JSON config file
    3. Default values
    """

    host: str = Field(default="127.0.0.1", description="Server host address")
    http_port: int = Field(default=8080, description="HTTP server port")
    log_level: str = Field(default="INFO", description="Logging level")
    log_path: str = Field(default="mocks/logs/mock-government.log", description="Log file path")
    submit_endpoint: str = Field(default="/api/v1/medical-reports/submit")
    status_endpoint: str = Field(default="/api/v1/medical-reports/status")
    behavior: SubmissionBehavior = Field(default_factory=SubmissionBehavior)

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        """Validate log level is valid."""
        valid_levels = ["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]
        v_upper = v.upper()
        if v_upper not in valid_levels:
            raise ValueError(f"Invalid log level '{v}'. Must be one of: {', '.join(valid_levels)}")
        return v_upper

    @field_validator("http_port")
    @classmethod
    def validate_port(cls, v: int) -> int:
        """Validate port number is in valid range."""
        if not 1 <= v <= 65535:
            raise ValueError(f"Invalid port {v}. Must be between 1 and 65535.")
        return v


DEFAULT_MOCK_CONFIG_PATH = Path("mocks/config.json")

# Environment variable -> (field, parser)
_ENV_FIELDS = {
    "HOST": ("host", str),
    "HTTP_PORT": ("http_port", int),
    "LOG_LEVEL": ("log_level", str),
    "LOG_PATH": ("log_path", str),
}


def load_config(config_file: Optional[Path] = None) -> MockServerConfig:
    """Load mock server configuration from file and environment variables.

    Args:
        config_file: Path to configuration JSON file. Defaults to mocks/config.json

    Returns:
        MockServerConfig instance with merged configuration

    Raises:
        FileNotFoundError: If config file specified but not found
        ValueError: If configuration is invalid
    """
    if config_file is None:
        config_file = DEFAULT_MOCK_CONFIG_PATH

    config_data = {}
    if config_file.exists():
        try:
            with open(config_file, encoding="utf-8") as f:
                config_data = json.load(f)
        except json.JSONDecodeError as e:
            raise ValueError(
                f"Failed to parse configuration file '{config_file}': {e}. "
                f"Ensure the file contains valid JSON."
            ) from e
    elif config_file != DEFAULT_MOCK_CONFIG_PATH:
        raise FileNotFoundError(
            f"Configuration file not found: '{config_file}'. Ensure the file exists or check the path."
        )

    env_prefix = "MOCK_SERVER_"
    for suffix, (key, parser) in _ENV_FIELDS.items():
        env_key = f"{env_prefix}{suffix}"
        if env_key in os.environ:
            try:
                config_data[key] = parser(os.environ[env_key])
            except ValueError as e:
                raise ValueError(f"Invalid value for {env_key}: '{os.environ[env_key]}'.") from e

    try:
        return MockServerConfig(**config_data)
    except ValueError as e:
        raise ValueError(f"Configuration validation failed: {e}") from e
