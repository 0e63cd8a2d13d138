"""Centralized configuration loader for YAML-based configuration.

This module provides functions to load configuration from YAML files with:
- Environment variable overrides (env var → YAML → defaults)
- Type coercion (string to float, bool, int)
- Defaults declared as dataclasses
- Graceful degradation (missing files use defaults)
"""

import logging
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Any

import yaml  # type: ignore

logger = logging.getLogger(__name__)


def get_project_root() -> Path:
    """
    Get project root directory.

    Uses pattern: config_loader.py → core/ → dataset_chat/ → src/ → project_root

    Validates that the config/ directory exists to ensure correct project root detection.

    Returns:
        Path to project root directory

    Raises:
        ValueError: If config/ directory is not found at the detected project root
    """
    current_file = Path(__file__)
    project_root = current_file.parent.parent.parent.parent

    config_dir = project_root / "config"
    if not config_dir.is_dir():
        raise ValueError(
            f"Project root detection failed: config/ directory not found at {config_dir}. "
            f"Detected project root: {project_root}."
        )

    return project_root


def _default_config_path(filename: str) -> Path | None:
    """Resolve config/<filename> under the project root, or None when running from an installed wheel."""
    try:
        return get_project_root() / "config" / filename
    except ValueError as e:
        logger.debug(f"{e} Using defaults for {filename}")
        return None


def _coerce_type(value: Any, target_type: type) -> Any:
    """
    Coerce value to target type.

    Handles:
    - String "30.0" → float 30.0
    - String "true"/"false" → bool True/False (case-insensitive)
    - String "123" → int 123

    Args:
        value: Value to coerce
        target_type: Target type (float, bool, int, str)

    Returns:
        Coerced value

    Raises:
        ValueError: If coercion fails
    """
    if value is None:
        return None

    if isinstance(value, target_type):
        return value

    if target_type is bool:
        if isinstance(value, str):
            return value.lower() in ("true", "1", "yes", "on")
        return bool(value)

    if target_type is float:
        return float(value)

    if target_type is int:
        if isinstance(value, str):
            return int(float(value))  # Handle "30.0" → 30
        return int(value)

    if target_type is str:
        return str(value)

    return value


def _get_env_var(key: str, default: Any = None) -> str | None:
    """Get environment variable value, or default if unset."""
    return os.getenv(key, default)


def _apply_env_overrides(config: dict[str, Any], env_mapping: dict[str, str] | None = None) -> dict[str, Any]:
    """
    Apply environment variable overrides to config.

    Supports two modes:
    1. Explicit mapping: env_mapping provides env var name → config key mapping
    2. Automatic mapping: Any env var matching config key (uppercase) overrides

    Explicit mappings are applied in order, so a later entry for the same key wins.

    Args:
        config: Configuration dictionary
        env_mapping: Optional mapping of env var names to config keys

    Returns:
        Config with env var overrides applied
    """
    result = config.copy()
    mapped_keys: set[str] = set()

    if env_mapping:
        for env_key, config_key in env_mapping.items():
            env_value = _get_env_var(env_key)
            if env_value is None or config_key not in result:
                continue
            target_type = type(result[config_key])
            try:
                result[config_key] = _coerce_type(env_value, target_type)
                mapped_keys.add(config_key)
            except (ValueError, TypeError) as e:
                logger.warning(f"Failed to coerce env var {env_key}={env_value} to {target_type.__name__}: {e}")

    for config_key in result.keys():
        if config_key in mapped_keys or not isinstance(result[config_key], (str, int, float, bool)):
            continue
        env_key = config_key.upper()
        env_value = _get_env_var(env_key)
        if env_value is None:
            continue
        target_type = type(result[config_key])
        try:
            result[config_key] = _coerce_type(env_value, target_type)
        except (ValueError, TypeError) as e:
            logger.warning(f"Failed to coerce env var {env_key}={env_value} to {target_type.__name__}: {e}")

    return result


def _read_yaml(config_path: Path) -> dict[str, Any]:
    """
    Read a YAML mapping from disk.

    Raises:
        ValueError: If YAML is invalid or the document is not a mapping
    """
    try:
        with open(config_path) as f:
            data = yaml.safe_load(f) or {}
    except yaml.YAMLError as e:
        raise ValueError(f"Invalid YAML in {config_path}: {e}") from e

    if not isinstance(data, dict):
        raise ValueError(f"Invalid YAML in {config_path}: expected a mapping, got {type(data).__name__}")
    return data


@dataclass
class ClientConfigDefaults:
    """Default values for the streaming query client."""

    api_base_url: str = "http://localhost:8000"
    connect_timeout_s: float = 5.0
    stream_idle_timeout_s: float = 60.0
    request_timeout_s: float = 15.0
    default_error_message: str = "Failed to execute query"

    def to_dict(self) -> dict[str, Any]:
        """Convert dataclass to dictionary."""
        return {
            "api_base_url": self.api_base_url,
            "connect_timeout_s": self.connect_timeout_s,
            "stream_idle_timeout_s": self.stream_idle_timeout_s,
            "request_timeout_s": self.request_timeout_s,
            "default_error_message": self.default_error_message,
        }


def load_client_config(config_path: Path | None = None) -> dict[str, Any]:
    """
    Load client config from YAML with env var overrides.

    Precedence: Environment variable → YAML value → Default value

    Args:
        config_path: Optional path to config file. If None, uses config/client.yaml.

    Returns:
        dict with keys:
        - api_base_url: str
        - connect_timeout_s: float
        - stream_idle_timeout_s: float
        - request_timeout_s: float
        - default_error_message: str

    Raises:
        ValueError: If YAML is invalid
    """
    defaults = ClientConfigDefaults().to_dict()

    if config_path is None:
        config_path = _default_config_path("client.yaml")

    config = defaults.copy()
    if config_path is not None and config_path.exists():
        yaml_data = _read_yaml(config_path)
        for key, value in yaml_data.items():
            if key not in defaults:
                logger.debug(f"Ignoring unknown client config key: {key}")
                continue
            target_type = type(defaults[key])
            try:
                config[key] = _coerce_type(value, target_type)
            except (ValueError, TypeError) as e:
                logger.warning(
                    f"Failed to coerce YAML value {key}={value} to {target_type.__name__}: {e}, using default"
                )
    else:
        logger.debug(f"Config file not found at {config_path}, using defaults")

    # NEXT_PUBLIC_API_URL is shared with the web frontend; API_BASE_URL wins when both are set
    env_mapping = {
        "NEXT_PUBLIC_API_URL": "api_base_url",
        "API_BASE_URL": "api_base_url",
        "CONNECT_TIMEOUT_S": "connect_timeout_s",
        "STREAM_IDLE_TIMEOUT_S": "stream_idle_timeout_s",
        "REQUEST_TIMEOUT_S": "request_timeout_s",
    }
    config = _apply_env_overrides(config, env_mapping)
    config["api_base_url"] = config["api_base_url"].rstrip("/")

    return config


@dataclass
class LoggingConfigDefaults:
    """Default values for logging configuration."""

    root_level: str = "INFO"
    format: str = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
    module_levels: dict[str, str] | None = None
    reduce_noise: dict[str, str] | None = None

    def __post_init__(self) -> None:
        """Initialize default dict values."""
        if self.module_levels is None:
            self.module_levels = {
                "dataset_chat.core.query_stream": "INFO",
                "dataset_chat.core.reconciler": "INFO",
                "dataset_chat.api.client": "INFO",
            }
        if self.reduce_noise is None:
            self.reduce_noise = {
                "urllib3": "WARNING",
                "requests": "WARNING",
            }

    def to_dict(self) -> dict[str, Any]:
        """Convert dataclass to dictionary."""
        return {
            "root_level": self.root_level,
            "format": self.format,
            "module_levels": self.module_levels.copy() if self.module_levels else {},
            "reduce_noise": self.reduce_noise.copy() if self.reduce_noise else {},
        }


def load_logging_config(config_path: Path | None = None) -> dict[str, Any]:
    """
    Load logging config from YAML.

    Args:
        config_path: Optional path to config file. If None, uses config/logging.yaml.

    Returns:
        dict with keys:
        - root_level: str
        - format: str
        - module_levels: dict[str, str]
        - reduce_noise: dict[str, str]

    Raises:
        ValueError: If YAML is invalid
    """
    defaults = LoggingConfigDefaults().to_dict()

    if config_path is None:
        config_path = _default_config_path("logging.yaml")

    config = defaults.copy()
    if config_path is not None and config_path.exists():
        yaml_data = _read_yaml(config_path)
        for key, value in yaml_data.items():
            if key not in defaults:
                continue
            if key in ("module_levels", "reduce_noise"):
                # Merge dicts
                if isinstance(value, dict):
                    config[key].update(value)
            else:
                config[key] = value
    else:
        logger.debug(f"Config file not found at {config_path}, using defaults")

    return _apply_env_overrides(config, {"LOG_LEVEL": "root_level"})
