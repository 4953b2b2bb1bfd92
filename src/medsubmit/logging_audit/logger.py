"""Logging configuration and logger factory for MedSubmit.

This module provides centralized logging configuration with support for:
- Console and file handlers with different log levels
- Log rotation to prevent unbounded file growth
- PII redaction via custom formatters
- Environment variable configuration
- A separate rotating audit trail file beside the main log
"""

import logging
import os
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Optional

from .formatters import PIIRedactingFormatter

# Constants
DEFAULT_LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
DEFAULT_LOG_FILE = Path("logs") / "medsubmit.log"
MAX_LOG_FILE_SIZE = 10 * 1024 * 1024  # 10MB
BACKUP_COUNT = 5

AUDIT_LOGGER_NAME = "medsubmit.audit"
AUDIT_LOG_FILENAME = "audit.log"

# Chatty dependencies kept out of the DEBUG file log
QUIET_LOGGERS = ("urllib3", "werkzeug", "sqlalchemy.engine")

# Track if logging has been configured
_logging_configured = False

logger = logging.getLogger(__name__)


def configure_logging(
    level: str = "INFO",
    log_file: Optional[Path] = None,
    redact_pii: bool = True,
) -> None:
    """Configure logging for MedSubmit.

    Sets up both console and file handlers with appropriate log levels and formatting.
    This function is idempotent - it can be called multiple times safely.

    Args:
        level: Log level for console output (DEBUG, INFO, WARNING, ERROR, CRITICAL).
               File handler always uses DEBUG level.
        log_file: Path to log file. If None, uses MEDSUBMIT_LOG_FILE or DEFAULT_LOG_FILE.
                  Audit events are also written to audit.log in the same directory.
        redact_pii: Whether to redact patient identifiers from logs

    Raises:
        ValueError: If invalid log level is provided
        RuntimeError: If log directory cannot be created

    Example:
        >>> configure_logging(level="DEBUG", redact_pii=True)
    """
    global _logging_configured

    numeric_level = getattr(logging, level.upper(), None)
    if not isinstance(numeric_level, int):
        raise ValueError(
            f"Invalid log level: {level}. "
            f"Must be one of: DEBUG, INFO, WARNING, ERROR, CRITICAL"
        )

    if log_file is None:
        env_log_file = os.environ.get("MEDSUBMIT_LOG_FILE")
        log_file = Path(env_log_file) if env_log_file else DEFAULT_LOG_FILE

    log_dir = log_file.parent
    try:
        log_dir.mkdir(parents=True, exist_ok=True)
    except OSError as e:
        raise RuntimeError(
            f"Failed to create log directory: {log_dir}. "
            f"Ensure write permissions are available. Error: {e}"
        ) from e

    root_logger = logging.getLogger()
    audit_logger = logging.getLogger(AUDIT_LOGGER_NAME)

    # If already configured, remove existing handlers to avoid duplicates
    if _logging_configured:
        for configured in (root_logger, audit_logger):
            for handler in list(configured.handlers):
                configured.removeHandler(handler)
                handler.close()

    root_logger.setLevel(logging.DEBUG)

    console_handler = logging.StreamHandler()
    console_handler.setLevel(numeric_level)
    console_handler.setFormatter(PIIRedactingFormatter(fmt=DEFAULT_LOG_FORMAT, redact_pii=redact_pii))
    root_logger.addHandler(console_handler)

    try:
        file_handler = RotatingFileHandler(
            filename=str(log_file),
            maxBytes=MAX_LOG_FILE_SIZE,
            backupCount=BACKUP_COUNT,
            encoding="utf-8",
        )
        file_handler.setLevel(logging.DEBUG)
        file_handler.setFormatter(PIIRedactingFormatter(fmt=DEFAULT_LOG_FORMAT, redact_pii=redact_pii))
        root_logger.addHandler(file_handler)
    except OSError as e:
        root_logger.warning(
            f"Failed to create file handler for {log_file}: {e}. "
            f"Logging to console only."
        )

    # Audit events also go to their own file; propagation keeps them in the main log
    try:
        audit_handler = RotatingFileHandler(
            filename=str(log_dir / AUDIT_LOG_FILENAME),
            maxBytes=MAX_LOG_FILE_SIZE,
            backupCount=BACKUP_COUNT,
            encoding="utf-8",
        )
        audit_handler.setLevel(logging.INFO)
        audit_handler.setFormatter(PIIRedactingFormatter(fmt=DEFAULT_LOG_FORMAT, redact_pii=redact_pii))
        audit_logger.addHandler(audit_handler)
    except OSError as e:
        root_logger.warning(f"Failed to create audit trail handler in {log_dir}: {e}")

    for name in QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)

    _logging_configured = True


def get_logger(module_name: str) -> logging.Logger:
    """Get a logger for the specified module.

    Args:
        module_name: Name of the module, typically __name__

    Returns:
        Configured logger instance for the module
    """
    return logging.getLogger(module_name)
