"""
Scheduler configuration - YAML loader with environment variable support.

Config files live under <config_dir>/<category>/<name>.yaml. The config
directory defaults to configs/ at the project root and can be moved with
ENCODING_CONFIG_DIR.

Usage:
    from core.config import get_scheduler_config

    config = get_scheduler_config()
    print(config.lease_duration_sec)   # 300

Values may reference the environment:
    lease_duration_sec: ${ENCODING_LEASE_SEC:-300}
"""

import logging
import os
import re
from dataclasses import dataclass, fields, is_dataclass
from enum import Enum
from pathlib import Path
from typing import Any, Optional, Type, TypeVar, Union, get_type_hints

import yaml

logger = logging.getLogger("config")

T = TypeVar("T")

_config_dir: Optional[Path] = None
_scheduler_config: Optional["SchedulerConfig"] = None


@dataclass
class SchedulerConfig:
    """Tunables for leasing, retry, notification and reputation."""

    # Leasing
    lease_duration_sec: int = 300
    reaper_interval_sec: int = 60

    # Retry
    retry_backoff_base_sec: int = 30
    default_max_attempts: int = 3

    # Submission
    short_video_threshold_bytes: int = 50 * 1024 * 1024
    avg_job_duration_sec: int = 120

    # Outbound HTTP
    webhook_timeout_sec: float = 5.0
    health_check_timeout_sec: float = 2.0
    webhook_signature_header: str = "X-SPK-Signature"

    # Reputation
    max_reputation: int = 1000
    initial_reputation: int = 500
    max_reputation_boost: int = 10
    failure_penalty: int = 25

    # API server
    server_host: str = "0.0.0.0"
    server_port: int = 8790
    db_path: Optional[str] = None


def set_config_dir(path: Union[str, Path]):
    """Set the global config directory."""
    global _config_dir, _scheduler_config
    _config_dir = Path(path)
    _scheduler_config = None


def get_config_dir() -> Path:
    """Get the config directory."""
    global _config_dir
    if _config_dir is None:
        env_path = os.environ.get("ENCODING_CONFIG_DIR")
        if env_path:
            _config_dir = Path(env_path)
        else:
            _config_dir = Path(__file__).resolve().parent.parent / "configs"
    return _config_dir


def get_config_path(category: str, name: str, ext: str = ".yaml") -> Path:
    """Get path to a specific config file."""
    return get_config_dir() / category / f"{name}{ext}"


def expand_env_vars(value: Any) -> Any:
    """
    Recursively expand environment variables in strings.

    Supports:
    - ${VAR} - required variable
    - ${VAR:-default} - variable with default
    """
    if isinstance(value, str):
        pattern = r'\$\{([^}:]+)(?::-([^}]*))?\}'

        def replacer(match):
            var_name = match.group(1)
            default = match.group(2)
            env_value = os.environ.get(var_name)
            if env_value is not None:
                return env_value
            if default is not None:
                return default
            # Left as-is when unset with no default
            return match.group(0)

        return re.sub(pattern, replacer, value)

    elif isinstance(value, dict):
        return {k: expand_env_vars(v) for k, v in value.items()}

    elif isinstance(value, list):
        return [expand_env_vars(v) for v in value]

    return value


def load_yaml(path: Union[Path, str]) -> dict:
    """Load a YAML file with environment variable expansion."""
    path = Path(path)
    if not path.exists():
        raise FileNotFoundError(f"Config file not found: {path}")

    with open(path) as f:
        data = yaml.safe_load(f) or {}

    return expand_env_vars(data)


def _coerce(value: Any, field_type: Any) -> Any:
    """Coerce env-expanded strings to the field's scalar type."""
    if value is None:
        return None
    if isinstance(field_type, type) and issubclass(field_type, Enum):
        return field_type(value) if isinstance(value, str) else value
    # Optional[X] -> X
    args = getattr(field_type, "__args__", None)
    if args and type(None) in args:
        inner = [a for a in args if a is not type(None)]
        if len(inner) == 1:
            return _coerce(value, inner[0])
    if field_type is bool and isinstance(value, str):
        return value.strip().lower() in {"1", "true", "yes", "on"}
    if field_type in (int, float) and isinstance(value, str):
        return field_type(value)
    return value


def dict_to_dataclass(data: dict, cls: Type[T]) -> T:
    """Convert a dict to a dataclass instance, ignoring unknown keys."""
    if not is_dataclass(cls):
        raise TypeError(f"{cls} is not a dataclass")

    hints = get_type_hints(cls)
    field_names = {f.name for f in fields(cls)}
    filtered = {}

    for key, value in data.items():
        if key not in field_names:
            logger.warning(f"Ignoring unknown config key: {key}")
            continue

        field_type = hints.get(key)
        if is_dataclass(field_type) and isinstance(value, dict):
            value = dict_to_dataclass(value, field_type)
        else:
            value = _coerce(value, field_type)

        filtered[key] = value

    return cls(**filtered)


def load_config(category: str, name: str, cls: Optional[Type[T]] = None) -> Union[T, dict]:
    """Load a config file and optionally convert to dataclass."""
    path = get_config_path(category, name)
    data = load_yaml(path)

    if cls is not None:
        return dict_to_dataclass(data, cls)
    return data


def get_scheduler_config(reload: bool = False) -> SchedulerConfig:
    """
    Get the scheduler config, loading configs/encoding/scheduler.yaml once.

    Falls back to dataclass defaults when the file does not exist.
    """
    global _scheduler_config
    if _scheduler_config is None or reload:
        path = get_config_path("encoding", "scheduler")
        if path.exists():
            _scheduler_config = load_config("encoding", "scheduler", SchedulerConfig)
            logger.info(f"Loaded scheduler config from {path}")
        else:
            logger.info(f"No config at {path}, using defaults")
            _scheduler_config = SchedulerConfig()
    return _scheduler_config
