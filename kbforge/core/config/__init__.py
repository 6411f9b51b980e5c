"""
Configuration Management for kbforge.

Public API
----------
    from kbforge.core.config import Config, load_config
    from kbforge.core.config import ChunkingConfig, QueueConfig

Architecture
------------
    config/
    ├── base.py          # ProjectConfig, StorageConfig, IngestConfig, LoggingConfig
    ├── chunking.py      # ChunkingConfig, TenantConfig
    ├── queue.py         # QueueConfig
    └── config.py        # Main Config class

Loading and environment overrides live in kbforge.core.config_loaders.
"""

from kbforge.core.config.base import (
    IngestConfig,
    LoggingConfig,
    ProjectConfig,
    StorageConfig,
)
from kbforge.core.config.chunking import ChunkingConfig, TenantConfig
from kbforge.core.config.config import Config
from kbforge.core.config.queue import QueueConfig
from kbforge.core.config_loaders import expand_env_vars, load_config

__all__ = [
    "ChunkingConfig",
    "Config",
    "IngestConfig",
    "LoggingConfig",
    "ProjectConfig",
    "QueueConfig",
    "StorageConfig",
    "TenantConfig",
    "expand_env_vars",
    "load_config",
]
