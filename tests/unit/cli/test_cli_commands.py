"""Tests for the kbforge command line interface."""

from __future__ import annotations

import json
from pathlib import Path
from typing import Any, Dict, List

import pytest
from typer.testing import CliRunner

from kbforge import __version__
from kbforge.cli.main import app

runner = CliRunner()


@pytest.fixture
def config_file(tmp_path: Path) -> Path:
    """Config with a temp job store and quiet logging."""
    path = tmp_path / "kbforge.yaml"
    path.write_text(
        "storage:\n"
        f"  db_path_override: {tmp_path / 'state' / 'jobs.db'}\n"
        "logging:\n"
        "  level: ERROR\n"
        "  console: false\n"
    )
    return path


def invoke(config_file: Path, *args: str) -> Any:
    return runner.invoke(app, ["--config", str(config_file), *args])


def invoke_json(config_file: Path, *args: str) -> Dict[str, Any]:
    result = invoke(config_file, *args, "--json")
    assert result.exit_code == 0, result.output
    return json.loads(result.stdout)


class TestRoot:
    def test_version(self) -> None:
        result = runner.invoke(app, ["--version"])
        assert result.exit_code == 0
        assert result.stdout.strip() == f"kbforge {__version__}"

    def test_no_command_shows_help(self) -> None:
        result = runner.invoke(app, [])
        assert result.exit_code == 0
        assert "submit" in result.stdout


class TestChunkCommand:
    def test_json_output(self, config_file: Path, sample_files: Dict[str, Path]) -> None:
        data = invoke_json(config_file, "chunk", str(sample_files["guide"]), "-s", "hierarchical")

        assert data["metadata"]["strategy"] == "hierarchical"
        assert data["metadata"]["total_chunks"] == len(data["chunks"]) >= 1
        assert data["chunks"][0]["content"].startswith("# Guide")

    def test_table_output(self, config_file: Path, sample_files: Dict[str, Path]) -> None:
        result = invoke(config_file, "chunk", str(sample_files["notes"]))
        assert result.exit_code == 0
        assert "chunks" in result.stdout

    def test_unknown_strategy_fails(
        self, config_file: Path, sample_files: Dict[str, Path]
    ) -> None:
        result = invoke(config_file, "chunk", str(sample_files["notes"]), "-s", "magic")
        assert result.exit_code == 1

    def test_binary_file_fails(self, config_file: Path, sample_files: Dict[str, Path]) -> None:
        assert invoke(config_file, "chunk", str(sample_files["binary"])).exit_code == 1


class TestBatchLifecycle:
    def test_submit_work_status(self, config_file: Path, sample_files: Dict[str, Path]) -> None:
        """A submitted batch is queued until a worker run completes it."""
        submission = invoke_json(
            config_file,
            "submit",
            str(sample_files["notes"]),
            str(sample_files["guide"]),
            str(sample_files["binary"]),
            "--tenant",
            "acme",
        )
        batch_id = submission["batch_id"]
        assert submission["total_files"] == 2
        assert len(submission["rejected"]) == 1

        queued = invoke_json(config_file, "status", batch_id)
        assert queued["status"] == "queued"
        assert queued["progress"]["percentage"] == 0

        worker = invoke(config_file, "worker", "--once")
        assert worker.exit_code == 0, worker.output
        assert "Processed 2 job(s)" in worker.stdout

        done = invoke_json(config_file, "status", batch_id)
        assert done["status"] == "completed"
        assert done["progress"]["completed"] == 2

        job = invoke(config_file, "job", submission["job_ids"][0])
        assert job.exit_code == 0
        assert json.loads(job.stdout)["status"] == "completed"

    def test_cancel(self, config_file: Path, sample_files: Dict[str, Path]) -> None:
        submission = invoke_json(config_file, "submit", str(sample_files["notes"]))

        result = invoke(config_file, "cancel", submission["batch_id"])

        assert result.exit_code == 0
        assert "1 job(s)" in result.stdout
        status = invoke_json(config_file, "status", submission["batch_id"])
        assert status["status"] == "cancelled"

    def test_submit_urls(self, config_file: Path) -> None:
        submission = invoke_json(
            config_file, "submit-urls", "https://example.com/docs", "http://localhost/x"
        )
        assert submission["total_files"] == 1
        assert submission["rejected"][0]["input"] == "http://localhost/x"

    def test_only_invalid_files(self, config_file: Path, sample_files: Dict[str, Path]) -> None:
        result = invoke(config_file, "submit", str(sample_files["binary"]))
        assert result.exit_code == 1

    def test_unknown_batch(self, config_file: Path) -> None:
        assert invoke(config_file, "status", "no-such-batch").exit_code == 1

    def test_unknown_job(self, config_file: Path) -> None:
        assert invoke(config_file, "job", "no-such-job").exit_code == 1


class TestMaintenance:
    def test_stats(self, config_file: Path, sample_files: Dict[str, Path]) -> None:
        invoke_json(config_file, "submit", str(sample_files["notes"]), "-t", "acme")

        result = invoke(config_file, "stats", "--tenant", "acme")

        assert result.exit_code == 0
        assert "pending" in result.stdout
        assert "Batches: 1" in result.stdout

    def test_cleanup(self, config_file: Path, sample_files: Dict[str, Path]) -> None:
        submission = invoke_json(config_file, "submit", str(sample_files["notes"]))
        invoke(config_file, "cancel", submission["batch_id"])

        result = invoke(config_file, "cleanup", "--days", "0")

        assert result.exit_code == 0
        assert "Removed" in result.stdout
        lines: List[str] = result.stdout.splitlines()
        assert any("job record(s)" in line for line in lines)
