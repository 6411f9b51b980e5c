"""
Base configuration classes for project, storage, ingest and logging settings.
"""

from dataclasses import dataclass, field
from typing import List, Optional

DEFAULT_SUPPORTED_EXTENSIONS = [".pdf", ".docx", ".doc", ".txt", ".md", ".json", ".csv"]


@dataclass
class ProjectConfig:
    """Project-level configuration."""

    name: str = "knowledge-base"
    data_dir: str = ".data"


@dataclass
class StorageConfig:
    """Job store configuration."""

    db_filename: str = "jobs.db"
    db_path_override: Optional[str] = None  # absolute or project-relative path


@dataclass
class IngestConfig:
    """Batch submission rules."""

    supported_extensions: List[str] = field(
        default_factory=lambda: list(DEFAULT_SUPPORTED_EXTENSIONS)
    )
    max_file_size_mb: float = 50.0
    allowed_url_schemes: List[str] = field(default_factory=lambda: ["http", "https"])
    block_private_urls: bool = True
    # Rough per-input processing time used for batch estimates
    seconds_per_file: int = 30
    seconds_per_url: int = 45
    seconds_per_reprocess: int = 20
    fetch_timeout_sec: float = 30.0
    index_batch_size: int = 50


@dataclass
class LoggingConfig:
    """Logging configuration."""

    level: str = "INFO"
    file: Optional[str] = None  # project-relative log file
    console: bool = True
