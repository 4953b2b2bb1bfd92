"""Configuration manager for loading and managing configuration.

This module provides the main configuration loading and management functionality,
including support for JSON configuration files, environment variable overrides,
and configuration validation.
"""

import json
import logging
import os
from pathlib import Path
from typing import Any, Callable, Optional

from dotenv import load_dotenv
from pydantic import ValidationError

from medsubmit.config.defaults import DEFAULT_CONFIG, DEFAULT_CONFIG_PATH
from medsubmit.config.schema import Config
from medsubmit.utils.exceptions import ConfigurationError

logger = logging.getLogger(__name__)

# Environment variable prefix for all configuration overrides
ENV_PREFIX = "MEDSUBMIT_"

# Keys that must never be stored in a configuration file
SENSITIVE_KEYS = ("api_key", "client_secret", "encryption_key", "patient_hash_salt")


def _parse_bool(value: str) -> bool:
    """Parse boolean value from string.

    Args:
        value: String value to parse (case-insensitive)

    Returns:
        Boolean value
    """
    return value.lower() in ("true", "1", "yes", "on")


# Environment variable suffix -> (section, field, parser)
ENV_OVERRIDES: dict[str, tuple[str, str, Callable[[str], Any]]] = {
    "GOVERNMENT_API_URL": ("government", "api_url", str),
    "GOVERNMENT_TIMEOUT": ("government", "timeout_seconds", int),
    "GOVERNMENT_VERIFY_TLS": ("government", "verify_tls", _parse_bool),
    "GOVERNMENT_CLIENT_ID": ("government", "client_id", str),
    "PERIOD_START_DAY": ("period", "start_day", int),
    "PERIOD_END_DAY": ("period", "end_day", int),
    "PERIOD_TIMEZONE": ("period", "timezone", str),
    "MAX_RETRIES": ("retry", "max_retries", int),
    "RETRY_BASE_DELAY": ("retry", "base_delay_seconds", float),
    "RETRY_MAX_DELAY": ("retry", "max_delay_seconds", float),
    "QUEUE_DRAIN_LIMIT": ("queue", "drain_limit", int),
    "QUEUE_WORKERS": ("queue", "worker_pool_size", int),
    "QUEUE_LOCK_TIMEOUT": ("queue", "lock_timeout_seconds", int),
    "DATABASE_URL": ("storage", "database_url", str),
    "LOG_LEVEL": ("logging", "level", str),
    "LOG_FILE": ("logging", "log_file", str),
    "REDACT_PII": ("logging", "redact_pii", _parse_bool),
}


def load_config(config_path: Optional[Path] = None) -> Config:
    """Load configuration from file and environment variables.

    Configuration is loaded with the following precedence (highest to lowest):
    1. CLI arguments (handled by caller)
    2. Environment variables (MEDSUBMIT_* prefix)
    3. Configuration file (JSON)
    4. Default values

    Args:
        config_path: Path to configuration file. If None, uses ./config/config.json

    Returns:
        Validated Config instance

    Raises:
        ConfigurationError: If configuration is invalid or malformed

    Example:
        >>> config = load_config(Path("custom/config.json"))
        >>> config.period.start_day
        5
    """
    # Load .env file if present in project root
    load_dotenv()

    if config_path is None:
        config_path = Path(DEFAULT_CONFIG_PATH)

    config_dict = _load_config_file(config_path)
    config_dict = _apply_env_overrides(config_dict)
    _check_sensitive_values(config_dict)

    try:
        return Config(**config_dict)
    except (ValidationError, ValueError) as e:
        raise ConfigurationError(
            f"Configuration validation failed:\n{e}\n\n"
            f"Fix: Check your configuration file at {config_path} and ensure all "
            f"values match the expected format."
        ) from e


def _load_config_file(config_path: Path) -> dict[str, Any]:
    """Load configuration file or return defaults.

    Args:
        config_path: Path to configuration file

    Returns:
        Configuration dictionary

    Raises:
        ConfigurationError: If JSON is malformed or unreadable
    """
    if not config_path.exists():
        logger.info(f"Config file not found: {config_path}. Using default configuration.")
        # Deep copy of defaults to avoid mutation
        return json.loads(json.dumps(DEFAULT_CONFIG))

    try:
        with open(config_path, "r", encoding="utf-8") as f:
            config_dict = json.load(f)
    except json.JSONDecodeError as e:
        raise ConfigurationError(
            f"Invalid JSON in config file: {config_path}\n"
            f"Error: {e}\n"
            f"Fix: Check JSON syntax at line {e.lineno}, column {e.colno}"
        ) from e
    except OSError as e:
        raise ConfigurationError(
            f"Failed to read config file: {config_path}\n"
            f"Error: {e}\n"
            f"Fix: Check file permissions and path"
        ) from e

    if not isinstance(config_dict, dict):
        raise ConfigurationError(
            f"Config file {config_path} must contain a JSON object at the top level"
        )

    logger.info(f"Loaded configuration from {config_path}")
    return config_dict


def _apply_env_overrides(config_dict: dict[str, Any]) -> dict[str, Any]:
    """Apply environment variable overrides with MEDSUBMIT_ prefix.

    Environment variables follow the pattern: MEDSUBMIT_<SECTION>_<FIELD>
    For example: MEDSUBMIT_MAX_RETRIES, MEDSUBMIT_DATABASE_URL

    Args:
        config_dict: Configuration dictionary to update

    Returns:
        Updated configuration dictionary with environment overrides applied

    Raises:
        ConfigurationError: If an override cannot be parsed
    """
    for suffix, (section, field, parser) in ENV_OVERRIDES.items():
        raw = os.getenv(f"{ENV_PREFIX}{suffix}")
        if not raw:
            continue
        try:
            value = parser(raw)
        except ValueError as e:
            raise ConfigurationError(
                f"Invalid value for {ENV_PREFIX}{suffix}: {raw!r}. Error: {e}"
            ) from e
        config_dict.setdefault(section, {})[field] = value
        logger.debug(f"Override: {section}.{field} from environment")

    return config_dict


def _check_sensitive_values(config_dict: dict[str, Any]) -> None:
    """Warn when secrets are found in the configuration file.

    Secrets like API keys and encryption keys belong in environment variables.

    Args:
        config_dict: Configuration dictionary to check
    """
    for section_name, section in config_dict.items():
        if not isinstance(section, dict):
            continue
        for key in SENSITIVE_KEYS:
            if key in section:
                logger.warning(
                    f"WARNING: {section_name}.{key} found in configuration file! "
                    f"Secrets should be stored in environment variables, not config files."
                )


def get_secret(env_var: str, required: bool = True) -> Optional[str]:
    """Read a secret value from the environment.

    Args:
        env_var: Environment variable name
        required: Raise when the variable is unset

    Returns:
        Secret value, or None when optional and unset

    Raises:
        ConfigurationError: If required and the variable is unset
    """
    value = os.getenv(env_var)
    if not value and required:
        raise ConfigurationError(
            f"Required secret {env_var} is not set. "
            f"Fix: export {env_var}=... or add it to your .env file."
        )
    return value or None
