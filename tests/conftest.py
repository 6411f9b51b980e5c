"""
Shared pytest fixtures for kbforge tests.

Fixture Organization
--------------------
- **store**: SQLite job store in a temporary directory
- **queue_config**: QueueConfig with short poll intervals and no cleanup
- **clock**: Manually advanced clock for backoff tests
- **sample_files**: Small text files accepted by the batch processor
"""

from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Dict

import pytest

from kbforge.core.config import QueueConfig
from kbforge.core.jobs.store import SQLiteJobStore


class FakeClock:
    """Callable clock that only moves when told to."""

    def __init__(self, start: datetime) -> None:
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now = self.now + timedelta(seconds=seconds)


@pytest.fixture
def store(tmp_path: Path) -> SQLiteJobStore:
    """Empty job store."""
    return SQLiteJobStore(tmp_path / "jobs.db")


@pytest.fixture
def queue_config() -> QueueConfig:
    """Queue settings that keep tests fast."""
    return QueueConfig(
        idle_poll_interval=0.05,
        busy_poll_interval=0.05,
        auto_cleanup=False,
        shutdown_timeout=1.0,
    )


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock(datetime(2024, 1, 1, 12, 0, tzinfo=timezone.utc))


@pytest.fixture
def sample_files(tmp_path: Path) -> Dict[str, Path]:
    """A text file, a markdown file and a file with an unsupported extension."""
    docs = tmp_path / "docs"
    docs.mkdir()

    notes = docs / "notes.txt"
    notes.write_text(
        "Ingestion turns raw files into searchable chunks. "
        "Each chunk keeps its offsets into the source text.\n\n"
        "The scheduler runs at most three jobs at once. "
        "Failed jobs are retried with exponential backoff.",
        encoding="utf-8",
    )

    guide = docs / "guide.md"
    guide.write_text(
        "# Guide\n\nIntro paragraph for the guide.\n\n"
        "## Setup\n\nInstall the package and run the worker.\n",
        encoding="utf-8",
    )

    binary = docs / "tool.exe"
    binary.write_bytes(b"MZ\x00\x00")

    return {"notes": notes, "guide": guide, "binary": binary}
