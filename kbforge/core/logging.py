"""
Structured logging for kbforge.

    from kbforge.core.logging import get_logger
    logger = get_logger(__name__)

    logger.info("Job claimed", job_id=job.id, priority=job.priority)
    # Job claimed | job_id=... | priority=10

Keyword arguments become ``key=value`` fields after the message. Fields
attached with ``bind()`` are added to every later message of that logger
until ``unbind()``.

Console records go through rich's RichHandler. ``configure_logging()`` (called
once by the CLI from the ``logging:`` config section) sets the level, the
console switch and an optional plain-text log file, and applies them to
loggers that already exist.
"""

import logging
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, Optional

from rich.logging import RichHandler

FILE_FORMAT = "%(asctime)s | %(levelname)-8s | %(name)s | %(message)s"
FILE_DATE_FORMAT = "%Y-%m-%d %H:%M:%S"


@dataclass
class LogSettings:
    """Process-wide handler settings shared by every StructuredLogger."""

    level: str = "INFO"
    log_file: Optional[Path] = None
    console: bool = True


_settings = LogSettings()
_loggers: Dict[str, "StructuredLogger"] = {}


def _build_handlers(settings: LogSettings) -> list:
    handlers: list = []
    if settings.console:
        handlers.append(
            RichHandler(show_time=True, show_path=False, markup=False, rich_tracebacks=True)
        )
    if settings.log_file is not None:
        settings.log_file.parent.mkdir(parents=True, exist_ok=True)
        file_handler = logging.FileHandler(settings.log_file, encoding="utf-8")
        file_handler.setFormatter(logging.Formatter(FILE_FORMAT, datefmt=FILE_DATE_FORMAT))
        handlers.append(file_handler)
    return handlers


class StructuredLogger:
    """A named logger that renders keyword fields into the message."""

    def __init__(self, name: str) -> None:
        self.logger = logging.getLogger(name)
        self._context: Dict[str, Any] = {}
        self.apply(_settings)

    def apply(self, settings: LogSettings) -> None:
        """Replace this logger's handlers with ones built from settings."""
        level = getattr(logging, settings.level.upper(), logging.INFO)
        for handler in self.logger.handlers:
            handler.close()
        self.logger.handlers.clear()
        self.logger.setLevel(level)
        for handler in _build_handlers(settings):
            handler.setLevel(level)
            self.logger.addHandler(handler)

    def bind(self, **fields: Any) -> "StructuredLogger":
        self._context.update(fields)
        return self

    def unbind(self, *keys: str) -> None:
        for key in keys:
            self._context.pop(key, None)

    def render(self, message: str, fields: Dict[str, Any]) -> str:
        merged = {**self._context, **fields}
        if not merged:
            return message
        return " | ".join([message, *(f"{key}={value}" for key, value in merged.items())])

    def log(self, level: int, message: str, exc_info: bool = False, **fields: Any) -> None:
        if self.logger.isEnabledFor(level):
            self.logger.log(level, self.render(message, fields), exc_info=exc_info)

    def debug(self, message: str, **fields: Any) -> None:
        self.log(logging.DEBUG, message, **fields)

    def info(self, message: str, **fields: Any) -> None:
        self.log(logging.INFO, message, **fields)

    def warning(self, message: str, **fields: Any) -> None:
        self.log(logging.WARNING, message, **fields)

    def error(self, message: str, **fields: Any) -> None:
        self.log(logging.ERROR, message, **fields)

    def exception(self, message: str, **fields: Any) -> None:
        """Log at ERROR with the active exception's traceback."""
        self.log(logging.ERROR, message, exc_info=True, **fields)


def get_logger(name: str) -> StructuredLogger:
    """Return the cached StructuredLogger for ``name``, creating it once."""
    logger = _loggers.get(name)
    if logger is None:
        logger = _loggers[name] = StructuredLogger(name)
    return logger


def configure_logging(
    level: str = "INFO",
    log_file: Optional[Path] = None,
    console: bool = True,
) -> None:
    """
    Set the level and outputs for every kbforge logger.

    Args:
        level: DEBUG, INFO, WARNING, ERROR or CRITICAL
        log_file: Plain-text log file; parent directories are created
        console: Emit records to the terminal through rich
    """
    global _settings
    _settings = LogSettings(level=level, log_file=log_file, console=console)
    for logger in _loggers.values():
        logger.apply(_settings)


class JobLogger:
    """
    Stage timing for one handler run.

    A stage ends when the next one starts or the run finishes; each end is
    logged at DEBUG with its duration.
    """

    def __init__(self, job_id: str, job_type: str) -> None:
        self.job_id = job_id
        self.job_type = job_type
        self.logger = get_logger("kbforge.jobs.run")
        self._stage: Optional[str] = None
        self._stage_started = 0.0

    def start_stage(self, stage: str) -> None:
        self._end_stage()
        self._stage = stage
        self._stage_started = time.perf_counter()
        self.logger.debug("Stage started", job_id=self.job_id, stage=stage)

    def _end_stage(self) -> None:
        if self._stage is None:
            return
        elapsed_ms = (time.perf_counter() - self._stage_started) * 1000
        self.logger.debug(
            "Stage finished",
            job_id=self.job_id,
            stage=self._stage,
            duration_ms=round(elapsed_ms, 1),
        )
        self._stage = None

    def finish(self, success: bool, chunks: int = 0, error: Optional[str] = None) -> None:
        self._end_stage()
        if success:
            self.logger.info(
                "Job handler finished",
                job_id=self.job_id,
                job_type=self.job_type,
                chunks_created=chunks,
            )
        else:
            self.logger.warning(
                "Job handler failed", job_id=self.job_id, job_type=self.job_type, error=error
            )
