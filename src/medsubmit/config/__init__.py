"""Config module.

This module provides configuration management functionality.
"""

from medsubmit.config.manager import get_secret, load_config
from medsubmit.config.schema import (
    Config,
    EncryptionConfig,
    GovernmentConfig,
    LoggingConfig,
    PeriodConfig,
    QueueConfig,
    RetryConfig,
    SchedulerConfig,
    StorageConfig,
)

__all__ = [
    # Main configuration loading
    "load_config",
    "get_secret",
    # Configuration models
    "Config",
    "GovernmentConfig",
    "PeriodConfig",
    "RetryConfig",
    "QueueConfig",
    "SchedulerConfig",
    "EncryptionConfig",
    "StorageConfig",
    "LoggingConfig",
]
