"""
Main configuration class for kbforge.

The Config dataclass aggregates all sub-configs and handles validation,
path management and dict/YAML parsing.

    kbforge.yaml
         ↓
    load_config() → Config
         ↓
    JobQueue, BatchProcessor, ChunkingService, CLI

Configuration Hierarchy
-----------------------
    Config
    ├── ProjectConfig      # Project name, data directory
    ├── StorageConfig      # SQLite job store location
    ├── QueueConfig        # Concurrency, retry backoff, poll intervals
    ├── ChunkingConfig     # Default chunking options
    ├── IngestConfig       # Accepted extensions, size limit, URL rules
    ├── LoggingConfig      # Level, optional log file
    └── tenants            # tenant_id -> TenantConfig overrides

Environment Variables
---------------------
String values may reference ``${VAR_NAME}`` or ``${VAR_NAME:default}``;
expansion happens in from_dict().
"""

from dataclasses import dataclass, field, fields, asdict
from pathlib import Path
from typing import Any, Dict, Optional

from kbforge.core.config.base import (
    IngestConfig,
    LoggingConfig,
    ProjectConfig,
    StorageConfig,
)
from kbforge.core.config.chunking import ChunkingConfig, TenantConfig
from kbforge.core.config.queue import QueueConfig
from kbforge.core.exceptions import ConfigValidationError
from kbforge.core.security.env import CHUNKING_STRATEGIES


@dataclass
class Config:
    """Main configuration container."""

    project: ProjectConfig = field(default_factory=ProjectConfig)
    storage: StorageConfig = field(default_factory=StorageConfig)
    queue: QueueConfig = field(default_factory=QueueConfig)
    chunking: ChunkingConfig = field(default_factory=ChunkingConfig)
    ingest: IngestConfig = field(default_factory=IngestConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)
    tenants: Dict[str, TenantConfig] = field(default_factory=dict)

    _base_path: Path = field(default_factory=Path.cwd, repr=False)

    def __post_init__(self) -> None:
        """Validate configuration after initialization.

        Validates:
        - Chunk size constraints (min <= max, overlap < size)
        - Strategy names, for defaults and every tenant
        - Queue bounds (concurrency, attempts, delays)
        - data_dir is not root or empty
        """
        self._validate_chunking(self.chunking, "chunking")
        for tenant_id, tenant in self.tenants.items():
            if tenant.strategy is not None and tenant.strategy not in CHUNKING_STRATEGIES:
                raise ConfigValidationError(
                    f"Unknown chunking strategy for tenant {tenant_id}: {tenant.strategy}",
                    field=f"tenants.{tenant_id}.strategy",
                    value=tenant.strategy,
                )

        if self.queue.concurrency < 1:
            raise ConfigValidationError(
                "queue.concurrency must be at least 1",
                field="queue.concurrency",
                value=self.queue.concurrency,
            )
        if self.queue.max_attempts < 0:
            raise ConfigValidationError(
                "queue.max_attempts must not be negative",
                field="queue.max_attempts",
                value=self.queue.max_attempts,
            )
        if (
            self.queue.retry_base_delay < 0
            or self.queue.idle_poll_interval <= 0
            or self.queue.stale_after < 0
        ):
            raise ConfigValidationError(
                "queue delays must be positive",
                field="queue",
                value=asdict(self.queue),
            )
        if self.project.data_dir in ("/", "\\", ""):
            raise ConfigValidationError(
                f"data_dir must not be root or empty: {self.project.data_dir!r}",
                field="project.data_dir",
                value=self.project.data_dir,
            )

    @staticmethod
    def _validate_chunking(chunking: ChunkingConfig, prefix: str) -> None:
        if chunking.strategy not in CHUNKING_STRATEGIES:
            raise ConfigValidationError(
                f"Unknown chunking strategy: {chunking.strategy}",
                field=f"{prefix}.strategy",
                value=chunking.strategy,
            )
        if chunking.min_chunk_size > chunking.max_chunk_size:
            raise ConfigValidationError(
                f"{prefix}.min_chunk_size must not exceed {prefix}.max_chunk_size",
                field=f"{prefix}.min_chunk_size",
                value=chunking.min_chunk_size,
            )
        if chunking.chunk_overlap >= chunking.chunk_size:
            raise ConfigValidationError(
                f"{prefix}.chunk_overlap must be smaller than {prefix}.chunk_size",
                field=f"{prefix}.chunk_overlap",
                value=chunking.chunk_overlap,
            )

    @property
    def data_path(self) -> Path:
        """Absolute path to the data directory."""
        return self._base_path / self.project.data_dir

    @property
    def db_path(self) -> Path:
        """Absolute path to the SQLite job store."""
        if self.storage.db_path_override:
            override = Path(self.storage.db_path_override)
            return override if override.is_absolute() else self._base_path / override
        return self.data_path / self.storage.db_filename

    @property
    def log_path(self) -> Optional[Path]:
        if not self.logging.file:
            return None
        return self._base_path / self.logging.file

    @staticmethod
    def _filter_fields(cls_type: Any, data: Optional[Dict[str, Any]]) -> Dict[str, Any]:
        """Filter dict to only keys that match dataclass fields, handling None."""
        if not data:
            return {}
        valid_keys = {f.name for f in fields(cls_type)}
        return {k: v for k, v in data.items() if k in valid_keys}

    @classmethod
    def from_dict(
        cls, data: Dict[str, Any], base_path: Optional[Path] = None
    ) -> "Config":
        """Create Config from dictionary."""
        # Import here to avoid circular dependency
        from kbforge.core.config_loaders import expand_env_vars

        data = expand_env_vars(data)

        tenants = {
            str(tenant_id): TenantConfig(**cls._filter_fields(TenantConfig, values))
            for tenant_id, values in (data.get("tenants") or {}).items()
        }

        config = cls(
            project=ProjectConfig(**cls._filter_fields(ProjectConfig, data.get("project"))),
            storage=StorageConfig(**cls._filter_fields(StorageConfig, data.get("storage"))),
            queue=QueueConfig(**cls._filter_fields(QueueConfig, data.get("queue"))),
            chunking=ChunkingConfig(
                **cls._filter_fields(ChunkingConfig, data.get("chunking"))
            ),
            ingest=IngestConfig(**cls._filter_fields(IngestConfig, data.get("ingest"))),
            logging=LoggingConfig(**cls._filter_fields(LoggingConfig, data.get("logging"))),
            tenants=tenants,
        )

        if base_path:
            config._base_path = base_path

        return config

    def to_dict(self) -> Dict[str, Any]:
        """Convert to a plain dict (for `kbforge config` style output)."""
        result = asdict(self)
        result.pop("_base_path", None)
        return result
