"""
Reading kbforge.yaml and layering KBFORGE_* overrides on top.

A value comes from, in order of preference: a KBFORGE_* variable, the YAML
file (where ${VAR} and ${VAR:default} are expanded), the dataclass default.

Environment overrides
---------------------
    KBFORGE_QUEUE_CONCURRENCY        int, 1..64
    KBFORGE_QUEUE_MAX_ATTEMPTS       int, 0..20
    KBFORGE_QUEUE_RETRY_BASE_DELAY   float seconds, 0..3600
    KBFORGE_QUEUE_IDLE_POLL          float seconds, 0.05..60
    KBFORGE_QUEUE_BUSY_POLL          float seconds, 0.05..60
    KBFORGE_RETRY_VALIDATION_ERRORS  bool
    KBFORGE_CHUNK_STRATEGY           semantic|hierarchical|overlapping|hybrid
    KBFORGE_CHUNK_SIZE               int, 50..20000
    KBFORGE_CHUNK_OVERLAP            int, 0..10000
    KBFORGE_MAX_FILE_SIZE_MB         float, 1..1024
    KBFORGE_DB_PATH                  path to the job store
    KBFORGE_LOG_LEVEL                DEBUG|INFO|WARNING|ERROR|CRITICAL
"""

import os
import re
from pathlib import Path
from typing import TYPE_CHECKING, Any, Dict, Optional

import yaml

from kbforge.core.exceptions import ConfigValidationError
from kbforge.core.logging import get_logger
from kbforge.core.security.env import (
    CHUNKING_STRATEGIES,
    LOG_LEVELS,
    get_env_bool,
    get_env_float,
    get_env_int,
    get_env_whitelist,
)

if TYPE_CHECKING:
    from kbforge.core.config import Config

logger = get_logger(__name__)

CONFIG_FILENAMES = ("config.yaml", "kbforge.yaml")

_ENV_REFERENCE = re.compile(r"\$\{([^}:]+)(?::([^}]*))?\}")


def _substitute(match: "re.Match[str]") -> str:
    name, fallback = match.group(1), match.group(2)
    return os.environ.get(name, fallback or "")


def expand_env_vars(value: Any) -> Any:
    """Expand ${VAR} and ${VAR:default} in every string of a parsed YAML tree."""
    if isinstance(value, str):
        return _ENV_REFERENCE.sub(_substitute, value)
    if isinstance(value, dict):
        return {key: expand_env_vars(item) for key, item in value.items()}
    if isinstance(value, list):
        return [expand_env_vars(item) for item in value]
    return value


def _apply_env_overrides(config: "Config") -> "Config":
    """Overlay KBFORGE_* values (clamped or whitelisted) and re-validate."""
    _apply_queue_overrides(config)
    _apply_chunking_overrides(config)
    _apply_ingest_overrides(config)
    _apply_logging_overrides(config)
    config.__post_init__()
    return config


def _apply_queue_overrides(config: "Config") -> None:
    queue = config.queue
    queue.concurrency = get_env_int(
        "KBFORGE_QUEUE_CONCURRENCY", default=queue.concurrency, min_value=1, max_value=64
    )
    queue.max_attempts = get_env_int(
        "KBFORGE_QUEUE_MAX_ATTEMPTS", default=queue.max_attempts, min_value=0, max_value=20
    )
    queue.retry_base_delay = get_env_float(
        "KBFORGE_QUEUE_RETRY_BASE_DELAY",
        default=queue.retry_base_delay,
        min_value=0.0,
        max_value=3600.0,
    )
    queue.idle_poll_interval = get_env_float(
        "KBFORGE_QUEUE_IDLE_POLL",
        default=queue.idle_poll_interval,
        min_value=0.05,
        max_value=60.0,
    )
    queue.busy_poll_interval = get_env_float(
        "KBFORGE_QUEUE_BUSY_POLL",
        default=queue.busy_poll_interval,
        min_value=0.05,
        max_value=60.0,
    )
    queue.retry_validation_errors = get_env_bool(
        "KBFORGE_RETRY_VALIDATION_ERRORS", default=queue.retry_validation_errors
    )


def _apply_chunking_overrides(config: "Config") -> None:
    chunking = config.chunking
    chunking.strategy = get_env_whitelist(
        "KBFORGE_CHUNK_STRATEGY", CHUNKING_STRATEGIES, default=chunking.strategy
    )
    chunking.chunk_size = get_env_int(
        "KBFORGE_CHUNK_SIZE", default=chunking.chunk_size, min_value=50, max_value=20000
    )
    chunking.chunk_overlap = get_env_int(
        "KBFORGE_CHUNK_OVERLAP",
        default=chunking.chunk_overlap,
        min_value=0,
        max_value=10000,
    )


def _apply_ingest_overrides(config: "Config") -> None:
    config.ingest.max_file_size_mb = get_env_float(
        "KBFORGE_MAX_FILE_SIZE_MB",
        default=config.ingest.max_file_size_mb,
        min_value=1.0,
        max_value=1024.0,
    )
    db_path = os.environ.get("KBFORGE_DB_PATH")
    if db_path:
        config.storage.db_path_override = db_path


def _apply_logging_overrides(config: "Config") -> None:
    level = get_env_whitelist("KBFORGE_LOG_LEVEL", LOG_LEVELS)
    if level:
        config.logging.level = level


def find_config_file(base_path: Path) -> Optional[Path]:
    """Return the first config file found in base_path, if any."""
    for filename in CONFIG_FILENAMES:
        candidate = base_path / filename
        if candidate.exists():
            return candidate
    return None


def _read_yaml(path: Path) -> Optional[Dict[str, Any]]:
    """
    Parse a config file.

    Returns None when the file cannot be read or parsed; the caller then
    falls back to defaults.

    Raises:
        ConfigValidationError: The document is valid YAML but not a mapping
    """
    try:
        data = yaml.safe_load(path.read_text(encoding="utf-8"))
    except (OSError, yaml.YAMLError) as e:
        logger.warning("Could not load config, using defaults", path=str(path), error=str(e))
        return None
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ConfigValidationError(
            f"Config file must contain a mapping: {path}",
            field="<root>",
            value=type(data).__name__,
        )
    return data


def load_config(
    config_path: Optional[Path] = None, base_path: Optional[Path] = None
) -> "Config":
    """
    Build the effective Config.

    Args:
        config_path: Explicit config file; otherwise config.yaml or
            kbforge.yaml is looked up in base_path
        base_path: Project root that relative paths resolve against
            (current directory by default)

    Raises:
        ConfigValidationError: The file parses but holds invalid values
    """
    from kbforge.core.config import Config

    root = base_path or Path.cwd()
    path = config_path or find_config_file(root)
    data = _read_yaml(path) if path is not None and path.exists() else None

    if data is None:
        config = Config()
        config._base_path = root
    else:
        config = Config.from_dict(data, root)
    return _apply_env_overrides(config)
