"""Configuration schema models using pydantic.

This module defines the configuration structure and validation rules using pydantic.
All configuration values are validated according to the schema defined here.
"""

from pathlib import Path
from typing import Optional
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from pydantic import BaseModel, Field, field_validator, model_validator


class GovernmentConfig(BaseModel):
    """Configuration for the government compliance endpoint.

    Attributes:
        api_url: Base URL of the government health agency API
        submit_endpoint: Path of the batch submission endpoint
        status_endpoint: Path of the submission status endpoint
        api_key_env_var: Environment variable holding the API key
        client_id: Client identifier sent with every request
        timeout_seconds: Upper bound for a single submission call
        verify_tls: Whether to verify TLS certificates
    """

    api_url: str = Field(default="https://api.health.gov.ro", description="Government API base URL")
    submit_endpoint: str = Field(default="/api/v1/medical-reports/submit")
    status_endpoint: str = Field(default="/api/v1/medical-reports/status")
    api_key_env_var: str = Field(default="MEDSUBMIT_GOVERNMENT_API_KEY")
    client_id: str = Field(default="medflow_client")
    timeout_seconds: int = Field(default=120, ge=1, description="Submission call timeout in seconds")
    verify_tls: bool = True

    @field_validator("api_url")
    @classmethod
    def validate_url(cls, v: str) -> str:
        """Validate URL is valid HTTP/HTTPS.

        Raises:
            ValueError: If URL does not start with http:// or https://
        """
        if not v.startswith(("http://", "https://")):
            raise ValueError(f"Invalid URL: {v}. Must start with http:// or https://")
        return v.rstrip("/")

    @field_validator("submit_endpoint", "status_endpoint")
    @classmethod
    def validate_path(cls, v: str) -> str:
        """Validate endpoint paths are absolute."""
        if not v.startswith("/"):
            raise ValueError(f"Invalid endpoint path: {v}. Must start with /")
        return v


class PeriodConfig(BaseModel):
    """Legal submission window configuration.

    Attributes:
        start_day: First day of the month on which new batches may be queued
        end_day: Last day (inclusive) of the window
        timezone: IANA time zone the window days are evaluated in
        reminder_days_before: Notify operators this many days before a window opens
    """

    start_day: int = Field(default=5, ge=1, le=31)
    end_day: int = Field(default=10, ge=1, le=31)
    timezone: str = Field(default="Europe/Bucharest")
    reminder_days_before: int = Field(default=2, ge=0, le=27)

    @field_validator("timezone")
    @classmethod
    def validate_timezone(cls, v: str) -> str:
        """Validate the time zone name is known to the system tz database."""
        try:
            ZoneInfo(v)
        except (ZoneInfoNotFoundError, ValueError) as e:
            raise ValueError(f"Unknown time zone: {v}") from e
        return v

    @model_validator(mode="after")
    def validate_window(self) -> "PeriodConfig":
        """Validate start_day is not after end_day."""
        if self.start_day > self.end_day:
            raise ValueError(
                f"start_day ({self.start_day}) cannot be greater than end_day ({self.end_day}). "
                f"Fix: Set start_day <= end_day."
            )
        return self


class RetryConfig(BaseModel):
    """Automatic retry policy.

    Attributes:
        max_retries: Retries scheduled before a batch is marked failed
        base_delay_seconds: Delay before the first retry
        max_delay_seconds: Upper bound for any single retry delay
        jitter_seconds: Uniform random jitter added to each delay
    """

    max_retries: int = Field(default=5, ge=0)
    base_delay_seconds: float = Field(default=30.0, gt=0.0)
    max_delay_seconds: float = Field(default=300.0, gt=0.0)
    jitter_seconds: float = Field(default=1.0, ge=0.0)


class QueueConfig(BaseModel):
    """Submission queue processing configuration.

    Attributes:
        drain_limit: Maximum due items picked up by one drain
        worker_pool_size: Concurrent submissions across different batches
        lock_timeout_seconds: Age after which a processing item is reclaimed
        cleanup_after_days: Age after which finished queue items are deleted
    """

    drain_limit: int = Field(default=10, ge=1)
    worker_pool_size: int = Field(default=4, ge=1, le=64)
    lock_timeout_seconds: int = Field(default=300, ge=1)
    cleanup_after_days: int = Field(default=30, ge=1)


class SchedulerConfig(BaseModel):
    """Periodic trigger intervals.

    Attributes:
        window_check_interval_seconds: Promote ready batches (inside the window only)
        queue_drain_interval_seconds: Drain due queue items (always)
    """

    window_check_interval_seconds: int = Field(default=3600, ge=1)
    queue_drain_interval_seconds: int = Field(default=300, ge=1)


class EncryptionConfig(BaseModel):
    """Payload encryption and anonymization configuration.

    Attributes:
        key_env_var: Environment variable holding the base64 AES-256 key
        key_version: Key version reported in the encryption metadata
        patient_hash_salt_env_var: Environment variable holding the patient hash salt
    """

    key_env_var: str = Field(default="MEDSUBMIT_ENCRYPTION_KEY")
    key_version: str = Field(default="v1")
    patient_hash_salt_env_var: str = Field(default="MEDSUBMIT_PATIENT_HASH_SALT")


class StorageConfig(BaseModel):
    """Durable store configuration.

    Attributes:
        database_url: SQLAlchemy database URL
    """

    database_url: str = Field(default="sqlite:///data/medsubmit.db")


class LoggingConfig(BaseModel):
    """Configuration for logging.

    Attributes:
        level: Log level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        log_file: Path to log file
        redact_pii: Whether to redact PII from logs
    """

    level: str = Field(default="INFO", description="Log level: DEBUG, INFO, WARNING, ERROR, CRITICAL")
    log_file: Path = Field(default=Path("logs/medsubmit.log"), description="Log file path")
    redact_pii: bool = Field(default=True, description="Redact PII from logs")

    @field_validator("level")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        """Validate log level.

        Raises:
            ValueError: If log level is not valid
        """
        valid_levels = ["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]
        v_upper = v.upper()
        if v_upper not in valid_levels:
            raise ValueError(f"Invalid log level: {v}. Must be one of: {', '.join(valid_levels)}")
        return v_upper


class Config(BaseModel):
    """Root configuration model.

    Example:
        >>> config = Config(retry=RetryConfig(max_retries=3))
        >>> config.period.start_day
        5
        >>> config.retry.max_retries
        3
    """

    government: GovernmentConfig = GovernmentConfig()
    period: PeriodConfig = PeriodConfig()
    retry: RetryConfig = RetryConfig()
    queue: QueueConfig = QueueConfig()
    scheduler: SchedulerConfig = SchedulerConfig()
    encryption: EncryptionConfig = EncryptionConfig()
    storage: StorageConfig = StorageConfig()
    logging: LoggingConfig = LoggingConfig()

    # Identity recorded on system-driven log entries and receipts
    system_user_id: str = Field(default="system")
    clinic_id: Optional[str] = Field(default=None, description="Reporting clinic identifier")
