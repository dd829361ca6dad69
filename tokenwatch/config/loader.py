"""
Configuration management and loading.

Handles monitor settings from an optional YAML file.
"""

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Optional, Tuple

import yaml

from tokenwatch.core.aggregation import WEEKDAYS, resolve_timezone
from tokenwatch.core.pricing import CostMode

LOG_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL")
MIN_REFRESH_INTERVAL = 1
MAX_REFRESH_INTERVAL = 60


class ConfigurationError(Exception):
    """Raised when the run cannot start at all, e.g. no usage log roots exist."""


@dataclass(frozen=True)
class MonitorConfig:
    """Settings shared by reports, the live monitor and the status line."""
    data_paths: Tuple[str, ...] = ()
    session_duration_hours: float = 5
    cost_mode: CostMode = CostMode.AUTO
    offline: bool = False
    refresh_interval_seconds: int = 1
    status_refresh_interval_seconds: int = 1
    retention_hours: float = 24
    file_concurrency: int = 5
    timezone: Optional[str] = None
    start_of_week: str = "sunday"
    log_level: str = "WARNING"
    project_aliases: Dict[str, str] = field(default_factory=dict)

    def __post_init__(self):
        """Validate ranges."""
        if self.session_duration_hours <= 0:
            raise ValueError("session_duration_hours must be > 0")
        if not MIN_REFRESH_INTERVAL <= self.refresh_interval_seconds <= MAX_REFRESH_INTERVAL:
            raise ValueError(
                f"refresh_interval_seconds must be between {MIN_REFRESH_INTERVAL} and {MAX_REFRESH_INTERVAL}"
            )
        if self.status_refresh_interval_seconds <= 0:
            raise ValueError("status_refresh_interval_seconds must be > 0")
        if self.retention_hours <= 0:
            raise ValueError("retention_hours must be > 0")
        if self.file_concurrency < 1:
            raise ValueError("file_concurrency must be >= 1")
        if self.start_of_week not in WEEKDAYS:
            raise ValueError(f"start_of_week must be one of: {list(WEEKDAYS)}")
        if self.log_level not in LOG_LEVELS:
            raise ValueError(f"log_level must be one of: {list(LOG_LEVELS)}")
        resolve_timezone(self.timezone)


_FIELD_TYPES: Dict[str, Tuple[type, ...]] = {
    'data_paths': (list, str),
    'session_duration_hours': (int, float),
    'cost_mode': (str,),
    'offline': (bool,),
    'refresh_interval_seconds': (int,),
    'status_refresh_interval_seconds': (int,),
    'retention_hours': (int, float),
    'file_concurrency': (int,),
    'timezone': (str,),
    'start_of_week': (str,),
    'log_level': (str,),
    'project_aliases': (dict,),
}


def default_config_path() -> Path:
    config_home = os.environ.get("XDG_CONFIG_HOME") or os.path.join(os.path.expanduser("~"), ".config")
    return Path(config_home) / "tokenwatch" / "config.yaml"


def load_config(path: Optional[str] = None) -> MonitorConfig:
    """Load and validate monitor configuration from a YAML file.

    Args:
        path: Path to YAML configuration file; the default location is
            used when omitted, and a missing default file means defaults

    Returns:
        Validated MonitorConfig object

    Raises:
        FileNotFoundError: If an explicitly given config file doesn't exist
        yaml.YAMLError: If YAML is invalid
        ValueError: If configuration is invalid
    """
    config_path = Path(path) if path is not None else default_config_path()
    if not config_path.exists():
        if path is not None:
            raise FileNotFoundError(f"Config file not found: {path}")
        return MonitorConfig()

    with open(config_path, 'r', encoding='utf-8') as f:
        try:
            raw_config = yaml.safe_load(f)
        except yaml.YAMLError as e:
            raise yaml.YAMLError(f"Invalid YAML in config file {config_path}: {e}")

    if raw_config is None:
        return MonitorConfig()
    if not isinstance(raw_config, dict):
        raise ValueError("Configuration must be a mapping")

    unknown_keys = set(raw_config.keys()) - set(_FIELD_TYPES)
    if unknown_keys:
        raise ValueError(f"Unknown configuration keys: {unknown_keys}")

    values: Dict[str, Any] = {}
    for key, value in raw_config.items():
        values[key] = _parse_value(key, value)

    return MonitorConfig(**values)


def _parse_value(key: str, value: Any) -> Any:
    """Type-check one configuration value and convert it.

    Raises:
        ValueError: If the value has the wrong type
    """
    if value is None and key == 'timezone':
        return None

    expected = _FIELD_TYPES[key]
    # bool is an int subclass; only 'offline' accepts it
    if isinstance(value, bool) and bool not in expected:
        raise ValueError(f"'{key}' must not be a boolean")
    if not isinstance(value, expected):
        names = ", ".join(t.__name__ for t in expected)
        raise ValueError(f"'{key}' must be of type {names}")

    if key == 'data_paths':
        paths = [value] if isinstance(value, str) else value
        if not all(isinstance(p, str) and p for p in paths):
            raise ValueError("'data_paths' must be a list of non-empty strings")
        return tuple(paths)

    if key == 'cost_mode':
        try:
            return CostMode(value.lower())
        except ValueError:
            valid_modes = [mode.value for mode in CostMode]
            raise ValueError(f"'cost_mode' must be one of: {valid_modes}")

    if key == 'project_aliases':
        if not all(isinstance(k, str) and k and isinstance(v, str) and v for k, v in value.items()):
            raise ValueError("'project_aliases' must map project names to non-empty strings")
        return dict(value)

    if key == 'start_of_week':
        return value.lower()
    if key == 'log_level':
        return value.upper()
    return value
