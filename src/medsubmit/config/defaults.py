"""Default configuration values.

This module defines the default configuration values used when no configuration
file is provided or when configuration values are not specified.
"""

from typing import Any

# Default configuration dictionary
# This is used as a fallback when no configuration file is present
DEFAULT_CONFIG: dict[str, Any] = {
    "government": {
        "api_url": "https://api.health.gov.ro",
        "submit_endpoint": "/api/v1/medical-reports/submit",
        "status_endpoint": "/api/v1/medical-reports/status",
        # Secrets are only ever read from the environment
        "api_key_env_var": "MEDSUBMIT_GOVERNMENT_API_KEY",
        "client_id": "medflow_client",
        # Two minutes per submission call
        "timeout_seconds": 120,
        "verify_tls": True,
    },
    "period": {
        # Legal window: 5th-10th of each month
        "start_day": 5,
        "end_day": 10,
        "timezone": "Europe/Bucharest",
        "reminder_days_before": 2,
    },
    "retry": {
        "max_retries": 5,
        # 30s, 60s, 120s, 240s, then capped at 5 minutes
        "base_delay_seconds": 30.0,
        "max_delay_seconds": 300.0,
        "jitter_seconds": 1.0,
    },
    "queue": {
        "drain_limit": 10,
        "worker_pool_size": 4,
        # Processing items older than 5 minutes are reclaimed by the watchdog
        "lock_timeout_seconds": 300,
        "cleanup_after_days": 30,
    },
    "scheduler": {
        "window_check_interval_seconds": 3600,
        "queue_drain_interval_seconds": 300,
    },
    "encryption": {
        "key_env_var": "MEDSUBMIT_ENCRYPTION_KEY",
        "key_version": "v1",
        "patient_hash_salt_env_var": "MEDSUBMIT_PATIENT_HASH_SALT",
    },
    "storage": {
        "database_url": "sqlite:///data/medsubmit.db",
    },
    "logging": {
        "level": "INFO",
        "log_file": "logs/medsubmit.log",
        # Patient identifiers must never reach log files in clear text
        "redact_pii": True,
    },
}

# Default configuration file path
DEFAULT_CONFIG_PATH = "config/config.json"
