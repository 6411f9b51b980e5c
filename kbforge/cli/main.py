"""kbforge CLI - Main application entry point.

Commands:
    chunk FILE          chunk a local file and show the result
    submit FILES...     submit files as a batch
    submit-urls URLS... submit URLs as a batch
    status BATCH_ID     batch status and progress
    job JOB_ID          one job's status
    stats               queue and batch counts
    cancel BATCH_ID     cancel a batch
    worker [--once]     run the dispatch loop
    cleanup [--days]    delete old finished jobs
"""

from __future__ import annotations

import asyncio
import contextlib
import json
import signal
from dataclasses import dataclass
from datetime import timedelta
from functools import wraps
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional

import typer
from rich.table import Table

from kbforge.chunking.service import ChunkingService
from kbforge.cli.console import get_console, render_error, success, tip, warning
from kbforge.core.config import Config, load_config
from kbforge.core.jobs.factory import create_job_queue
from kbforge.core.jobs.queue import JobQueue
from kbforge.core.logging import configure_logging, get_logger
from kbforge.ingest.batch_processor import BatchProcessor, BatchSubmission
from kbforge.ingest.collaborators import (
    ConfigTenantSettingsStore,
    InMemoryDocumentRepository,
    TextContentExtractor,
)

logger = get_logger(__name__)


@dataclass
class CLIState:
    config_path: Optional[Path] = None
    debug: bool = False


def safe_cli_command(
    operation_name: str,
) -> Callable[[Callable[..., Any]], Callable[..., Any]]:
    """
    Decorator to wrap CLI commands with user-friendly error handling.

    Args:
        operation_name: Human-readable operation name for error context

    Returns:
        Decorator function that wraps the command with error handling
    """

    def decorator(func: Callable[..., Any]) -> Callable[..., Any]:
        @wraps(func)
        def wrapper(*args: Any, **kwargs: Any) -> Any:
            try:
                return func(*args, **kwargs)
            except typer.Exit:
                raise
            except Exception as e:
                render_error(e, operation_name)
                logger.debug(f"[{operation_name}] {type(e).__name__}: {e}")
                raise typer.Exit(code=1)

        return wrapper

    return decorator


# Create main Typer application
app = typer.Typer(
    name="kbforge",
    help="Multi-tenant document ingestion: job queue, batches and chunking",
    add_completion=False,
    pretty_exceptions_enable=False,
)


def _state(ctx: typer.Context) -> CLIState:
    state = ctx.find_root().obj
    return state if isinstance(state, CLIState) else CLIState()


def _load(ctx: typer.Context) -> Config:
    state = _state(ctx)
    config = load_config(state.config_path)
    configure_logging(
        level="DEBUG" if state.debug else config.logging.level,
        log_file=config.log_path,
        console=config.logging.console,
    )
    return config


@dataclass
class Runtime:
    config: Config
    queue: JobQueue
    processor: BatchProcessor


def _runtime(ctx: typer.Context) -> Runtime:
    config = _load(ctx)
    documents = InMemoryDocumentRepository()
    queue = create_job_queue(config, documents=documents)
    return Runtime(config, queue, BatchProcessor(queue, documents, config.ingest))


@app.callback(invoke_without_command=True)
def main_callback(
    ctx: typer.Context,
    version: bool = typer.Option(False, "--version", "-v", help="Show version and exit"),
    config: Optional[Path] = typer.Option(
        None, "--config", "-c", help="Path to config.yaml / kbforge.yaml"
    ),
    debug: bool = typer.Option(False, "--debug", help="Verbose logging"),
) -> None:
    """kbforge - document ingestion and chunking."""
    if version:
        from kbforge import __version__

        typer.echo(f"kbforge {__version__}")
        raise typer.Exit()

    ctx.obj = CLIState(config_path=config, debug=debug)

    if ctx.invoked_subcommand is None:
        typer.echo(ctx.get_help())
        raise typer.Exit()


def _print_json(data: Any) -> None:
    typer.echo(json.dumps(data, indent=2, default=str))


def _print_submission(submission: BatchSubmission, as_json: bool) -> None:
    if as_json:
        _print_json(submission.to_dict())
        return
    success(f"Batch {submission.batch_id} queued with {submission.total_files} job(s)")
    get_console().print(f"  Estimated time: {submission.estimated_time}s")
    for item in submission.rejected:
        warning(f"Skipped {item['input']}: {item['reason']}")
    tip(f"Run 'kbforge worker --once' then 'kbforge status {submission.batch_id}'")


def _options(
    strategy: Optional[str], chunk_size: Optional[int], overlap: Optional[int]
) -> Dict[str, Any]:
    values = {"strategy": strategy, "chunk_size": chunk_size, "chunk_overlap": overlap}
    return {k: v for k, v in values.items() if v is not None}


# ----------------------------------------------------------------------
# Chunking
# ----------------------------------------------------------------------


@app.command("chunk")
@safe_cli_command("chunking")
def chunk_command(
    ctx: typer.Context,
    file: Path = typer.Argument(..., help="Text, markdown, JSON or CSV file"),
    strategy: Optional[str] = typer.Option(None, "--strategy", "-s", help="Chunking strategy"),
    chunk_size: Optional[int] = typer.Option(None, "--chunk-size", help="Target tokens"),
    overlap: Optional[int] = typer.Option(None, "--overlap", help="Overlap"),
    tenant: str = typer.Option("default", "--tenant", "-t", help="Tenant id"),
    as_json: bool = typer.Option(False, "--json", help="Print JSON"),
) -> None:
    """Chunk a local file and show the chunks."""
    config = _load(ctx)
    service = ChunkingService(ConfigTenantSettingsStore(config), defaults=config.chunking)
    text = TextContentExtractor().extract(file)
    result = service.chunk_document(text, tenant, _options(strategy, chunk_size, overlap))

    if as_json:
        _print_json(result.to_dict())
        return

    table = Table(title=f"{file.name}: {result.metadata.strategy}")
    table.add_column("#", justify="right")
    table.add_column("Tokens", justify="right")
    table.add_column("Type")
    table.add_column("Preview")
    for chunk in result.chunks:
        preview = " ".join(chunk.content.split())[:60]
        table.add_row(str(chunk.chunk_index), str(chunk.token_count), chunk.metadata.type, preview)
    console = get_console()
    console.print(table)
    meta = result.metadata
    console.print(
        f"{meta.total_chunks} chunks, {meta.total_tokens} tokens, "
        f"avg {meta.average_chunk_size:.1f}, {meta.processing_time:.1f}ms"
    )


# ----------------------------------------------------------------------
# Submission
# ----------------------------------------------------------------------


@app.command("submit")
@safe_cli_command("batch submission")
def submit_command(
    ctx: typer.Context,
    files: List[Path] = typer.Argument(..., help="Files to ingest"),
    tenant: str = typer.Option("default", "--tenant", "-t", help="Tenant id"),
    user: str = typer.Option("cli", "--user", "-u", help="Submitting user"),
    strategy: Optional[str] = typer.Option(None, "--strategy", "-s", help="Chunking strategy"),
    collection: Optional[str] = typer.Option(None, "--collection", help="Collection id"),
    priority: int = typer.Option(0, "--priority", "-p", help="Higher runs first"),
    as_json: bool = typer.Option(False, "--json", help="Print JSON"),
) -> None:
    """Submit files as one batch."""
    runtime = _runtime(ctx)
    submission = asyncio.run(
        runtime.processor.submit_files(
            files,
            tenant,
            user,
            options=_options(strategy, None, None),
            collection_id=collection,
            priority=priority,
        )
    )
    _print_submission(submission, as_json)


@app.command("submit-urls")
@safe_cli_command("URL submission")
def submit_urls_command(
    ctx: typer.Context,
    urls: List[str] = typer.Argument(..., help="http(s) URLs to crawl"),
    tenant: str = typer.Option("default", "--tenant", "-t", help="Tenant id"),
    user: str = typer.Option("cli", "--user", "-u", help="Submitting user"),
    strategy: Optional[str] = typer.Option(None, "--strategy", "-s", help="Chunking strategy"),
    collection: Optional[str] = typer.Option(None, "--collection", help="Collection id"),
    priority: int = typer.Option(0, "--priority", "-p", help="Higher runs first"),
    as_json: bool = typer.Option(False, "--json", help="Print JSON"),
) -> None:
    """Submit URLs as one batch."""
    runtime = _runtime(ctx)
    submission = asyncio.run(
        runtime.processor.submit_urls(
            urls,
            tenant,
            user,
            options=_options(strategy, None, None),
            collection_id=collection,
            priority=priority,
        )
    )
    _print_submission(submission, as_json)


# ----------------------------------------------------------------------
# Status
# ----------------------------------------------------------------------


@app.command("status")
@safe_cli_command("batch status")
def status_command(
    ctx: typer.Context,
    batch_id: str = typer.Argument(..., help="Batch id"),
    as_json: bool = typer.Option(False, "--json", help="Print JSON"),
) -> None:
    """Show a batch's status and progress."""
    runtime = _runtime(ctx)
    status = asyncio.run(runtime.processor.get_batch_status(batch_id))
    if as_json:
        _print_json(status.to_dict())
        return

    progress = status.progress
    console = get_console()
    console.print(f"Batch [bold]{status.batch_id}[/bold]: {status.status}")
    console.print(
        f"  {progress.percentage}% ({progress.completed} completed, {progress.failed} failed, "
        f"{progress.cancelled} cancelled, {progress.processing} processing, "
        f"{progress.pending} pending)"
    )
    if status.estimated_completion:
        console.print(f"  Estimated completion: {status.estimated_completion.isoformat()}")

    table = Table(title="Jobs")
    table.add_column("Job")
    table.add_column("Status")
    table.add_column("Attempts", justify="right")
    table.add_column("Error")
    for job in status.jobs:
        table.add_row(job["id"], job["status"], str(job["attempts"]), job["error"] or "")
    console.print(table)


@app.command("job")
@safe_cli_command("job status")
def job_command(
    ctx: typer.Context,
    job_id: str = typer.Argument(..., help="Job id"),
) -> None:
    """Show one job as JSON."""
    runtime = _runtime(ctx)
    job = asyncio.run(runtime.queue.get_status(job_id))
    summary = job.summary()
    summary["result"] = job.result
    _print_json(summary)


@app.command("stats")
@safe_cli_command("statistics")
def stats_command(
    ctx: typer.Context,
    tenant: Optional[str] = typer.Option(None, "--tenant", "-t", help="Limit to one tenant"),
) -> None:
    """Show job counts by status, and batch counts for a tenant."""
    runtime = _runtime(ctx)
    stats = asyncio.run(runtime.queue.get_queue_stats(tenant))

    table = Table(title="Jobs", show_header=False)
    table.add_column("Status", style="cyan")
    table.add_column("Count", justify="right")
    for name, count in stats.items():
        table.add_row(name, str(count))
    get_console().print(table)

    if tenant:
        batches = asyncio.run(runtime.processor.get_batch_stats(tenant))
        get_console().print(
            f"Batches: {batches['total_batches']} ({batches['total_jobs']} jobs) "
            f"{batches['by_status']}"
        )


# ----------------------------------------------------------------------
# Control
# ----------------------------------------------------------------------


@app.command("cancel")
@safe_cli_command("batch cancellation")
def cancel_command(
    ctx: typer.Context,
    batch_id: str = typer.Argument(..., help="Batch id"),
) -> None:
    """Cancel every unfinished job of a batch."""
    runtime = _runtime(ctx)
    count = asyncio.run(runtime.processor.cancel_batch(batch_id))
    success(f"Batch {batch_id} cancelled ({count} job(s))")


async def _drain(queue: JobQueue) -> int:
    await queue.recover_stale()
    return await queue.run_until_idle()


async def _serve(queue: JobQueue) -> None:
    stop = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        with contextlib.suppress(NotImplementedError, RuntimeError):
            loop.add_signal_handler(sig, stop.set)

    await queue.start()
    try:
        await stop.wait()
    finally:
        await queue.stop()


@app.command("worker")
@safe_cli_command("worker")
def worker_command(
    ctx: typer.Context,
    once: bool = typer.Option(False, "--once", help="Process eligible jobs, then exit"),
) -> None:
    """Run the dispatch loop."""
    runtime = _runtime(ctx)
    if once:
        count = asyncio.run(_drain(runtime.queue))
        success(f"Processed {count} job(s)")
        return

    get_console().print(
        f"Worker running (concurrency {runtime.config.queue.concurrency}); Ctrl+C to stop"
    )
    asyncio.run(_serve(runtime.queue))


@app.command("cleanup")
@safe_cli_command("cleanup")
def cleanup_command(
    ctx: typer.Context,
    days: Optional[int] = typer.Option(None, "--days", "-d", help="Keep jobs newer than this"),
) -> None:
    """Delete finished jobs older than the retention window."""
    runtime = _runtime(ctx)
    older_than = timedelta(days=days) if days is not None else None
    count = asyncio.run(runtime.queue.cleanup(older_than))
    success(f"Removed {count} job record(s)")


def cli_main() -> None:
    """Entry point for the ``kbforge`` console script."""
    app()


if __name__ == "__main__":
    cli_main()
