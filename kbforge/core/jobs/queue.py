"""
Priority job queue with a single dispatch loop.

Architecture
------------
    enqueue() ──→ SQLiteJobStore (PENDING) ──→ dispatch loop ──→ handler tasks
                                                 │  cap: concurrency (3)
                                                 │  idle: 2s, saturated: 1s
                                                 └─ claim = conditional UPDATE

The loop never awaits a handler. Each handler runs as its own task with a
JobContext; when it returns, fails or is cancelled the task records the
outcome through a conditional transition out of PROCESSING.

Usage:
    queue = JobQueue(SQLiteJobStore(path), EventBus(), QueueConfig())
    queue.register_handler(JobType.DOCUMENT_UPLOAD, handle_upload)
    await queue.start()
    job_id = await queue.enqueue(JobType.DOCUMENT_UPLOAD, "acme", "u1", payload)
    ...
    await queue.stop()
"""

import asyncio
import json
import uuid
from datetime import datetime, timedelta
from typing import (
    Any,
    Awaitable,
    Callable,
    Dict,
    List,
    Optional,
    Sequence,
    Set,
    Union,
)

from pydantic import BaseModel

from kbforge.core.config import QueueConfig
from kbforge.core.events import (
    BATCH_COMPLETED,
    BATCH_JOBS_ADDED,
    BATCH_STARTED,
    JOB_ADDED,
    JOB_CANCELLED,
    JOB_COMPLETED,
    JOB_FAILED,
    JOB_PROGRESS,
    JOB_RETRY,
    JOB_STARTED,
    EventBus,
)
from kbforge.core.exceptions import (
    JobCancelledError,
    NotFoundError,
    ValidationError,
    sanitize_message,
)
from kbforge.core.jobs.cancellation import CancellationToken
from kbforge.core.jobs.models import (
    BatchRecord,
    Job,
    JobPayload,
    JobProgress,
    JobStatus,
    JobType,
    parse_payload,
    utcnow,
)
from kbforge.core.jobs.store import SQLiteJobStore
from kbforge.core.logging import JobLogger, get_logger
from kbforge.core.retry import calculate_delay

logger = get_logger(__name__)

PayloadInput = Union[Dict[str, Any], BaseModel]
JobHandler = Callable[["JobContext"], Awaitable[Optional[Dict[str, Any]]]]


class JobContext:
    """
    What a handler receives: its job, progress reporting and checkpoints.

    Handlers call checkpoint() between units of work (chunks, files);
    report_progress() is also a checkpoint.
    """

    def __init__(self, job: Job, queue: "JobQueue", token: CancellationToken) -> None:
        self.job = job
        self.queue = queue
        self.token = token
        self.log = JobLogger(job.id, job.type.value)

    @property
    def job_id(self) -> str:
        return self.job.id

    @property
    def tenant_id(self) -> str:
        return self.job.tenant_id

    @property
    def payload(self) -> JobPayload:
        return self.job.payload

    def checkpoint(self) -> None:
        """Raise JobCancelledError if cancellation was requested."""
        self.token.raise_if_cancelled()

    async def report_progress(
        self, current: int, total: int, stage: str = "", message: str = ""
    ) -> None:
        if stage and (self.job.progress is None or self.job.progress.stage != stage):
            self.log.start_stage(stage)
        progress = JobProgress(current=current, total=total, stage=stage, message=message)
        self.job.progress = progress
        await self.queue.report_progress(self.job.id, progress)


class JobQueue:
    """
    Store-backed priority queue and dispatcher.

    Selection is priority descending, then oldest first; at most
    ``config.concurrency`` jobs claimed by this queue are PROCESSING at once.
    """

    def __init__(
        self,
        store: SQLiteJobStore,
        events: Optional[EventBus] = None,
        config: Optional[QueueConfig] = None,
        handlers: Optional[Dict[JobType, JobHandler]] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self.store = store
        self.events = events or EventBus()
        self.config = config or QueueConfig()
        self.handlers: Dict[JobType, JobHandler] = dict(handlers or {})
        self._now = clock or utcnow
        self._active: Set["asyncio.Task[None]"] = set()
        self._tokens: Dict[str, CancellationToken] = {}
        self._shutdown: Optional[asyncio.Event] = None
        self._loop_task: Optional["asyncio.Task[None]"] = None

    def now(self) -> datetime:
        """Current time on the queue's clock; batch reporting uses it too."""
        return self._now()

    # ------------------------------------------------------------------
    # Registration and submission
    # ------------------------------------------------------------------

    def register_handler(self, job_type: JobType, handler: JobHandler) -> None:
        self.handlers[job_type] = handler

    def _new_job(
        self,
        job_type: JobType,
        tenant_id: str,
        user_id: str,
        payload: PayloadInput,
        priority: int,
    ) -> Job:
        if not tenant_id:
            raise ValidationError("tenant_id is required")
        return Job(
            id=str(uuid.uuid4()),
            type=job_type,
            tenant_id=tenant_id,
            user_id=user_id,
            payload=parse_payload(job_type, payload),
            priority=priority,
            max_attempts=self.config.max_attempts,
            created_at=self._now(),
        )

    async def enqueue(
        self,
        job_type: JobType,
        tenant_id: str,
        user_id: str,
        payload: PayloadInput,
        priority: int = 0,
    ) -> str:
        """
        Validate the payload and persist a PENDING job.

        Raises:
            ValidationError: Payload does not match job_type; nothing is stored
        """
        job = self._new_job(job_type, tenant_id, user_id, payload, priority)
        await self.store.create(job)
        logger.debug("Job enqueued", job_id=job.id, job_type=job_type.value, priority=priority)
        self.events.emit(
            JOB_ADDED,
            job_id=job.id,
            tenant_id=tenant_id,
            job_type=job_type.value,
            priority=priority,
        )
        return job.id

    async def enqueue_batch(
        self,
        job_type: JobType,
        tenant_id: str,
        user_id: str,
        payloads: Sequence[PayloadInput],
        priority: int = 0,
        batch: Optional[BatchRecord] = None,
    ) -> List[str]:
        """
        Validate every payload, then persist all jobs in one transaction.

        When a batch record is given, its job_ids are filled in and it is
        stored in the same transaction as the jobs.
        """
        jobs = [self._new_job(job_type, tenant_id, user_id, p, priority) for p in payloads]
        if not jobs:
            return []
        if batch is not None:
            batch.job_ids = [job.id for job in jobs]
        job_ids = await self.store.create_many(jobs, batch)
        self.events.emit(
            BATCH_JOBS_ADDED,
            batch_id=batch.batch_id if batch is not None else jobs[0].batch_id,
            tenant_id=tenant_id,
            job_type=job_type.value,
            job_ids=job_ids,
        )
        return job_ids

    # ------------------------------------------------------------------
    # Queries and control
    # ------------------------------------------------------------------

    async def get_status(self, job_id: str) -> Job:
        job = await self.store.get(job_id)
        if job is None:
            raise NotFoundError(f"Job not found: {job_id}", resource="job", resource_id=job_id)
        return job

    async def cancel(self, job_id: str) -> bool:
        """
        Cancel a job.

        PENDING jobs are cancelled immediately. PROCESSING jobs are flagged
        and stop at the handler's next checkpoint. Terminal jobs are left
        alone.

        Returns:
            True if a cancellation was applied or requested
        """
        now = self._now()
        job = await self.store.get(job_id)
        if job is None or job.status.is_terminal:
            return False

        cancelled = await self.store.transition(
            job_id,
            JobStatus.PENDING,
            {"status": JobStatus.CANCELLED, "completed_at": now},
        )
        if cancelled:
            logger.info("Job cancelled", job_id=job_id)
            self.events.emit(JOB_CANCELLED, job_id=job_id, tenant_id=job.tenant_id)
            await self._check_batch(job)
            return True

        requested = await self.store.transition(
            job_id, JobStatus.PROCESSING, {"cancel_requested": True}
        )
        if requested:
            token = self._tokens.get(job_id)
            if token is not None:
                token.cancel()
            logger.info("Cancellation requested for running job", job_id=job_id)
        return requested

    async def report_progress(self, job_id: str, progress: JobProgress) -> None:
        """
        Persist progress and emit jobProgress.

        Raises:
            JobCancelledError: If the job was cancelled (checkpoint)
        """
        await self.store.update(job_id, {"progress": _progress_column(progress)})
        job = await self.store.get(job_id)
        self.events.emit(
            JOB_PROGRESS,
            job_id=job_id,
            tenant_id=job.tenant_id if job else None,
            **progress.to_dict(),
        )

        token = self._tokens.get(job_id)
        if token is not None and job is not None and job.cancel_requested:
            # Cancelled from another process
            token.cancel()
        if token is not None:
            token.raise_if_cancelled()

    async def get_queue_stats(self, tenant_id: Optional[str] = None) -> Dict[str, int]:
        counts = await self.store.count_by_status(tenant_id)
        stats = {status.value: count for status, count in counts.items()}
        stats["total"] = sum(counts.values())
        return stats

    async def list_jobs(
        self,
        status: Optional[JobStatus] = None,
        tenant_id: Optional[str] = None,
        limit: int = 100,
    ) -> List[Job]:
        return await self.store.list(status=status, tenant_id=tenant_id, limit=limit)

    async def cleanup(self, older_than: Optional[timedelta] = None) -> int:
        """Remove terminal jobs completed before the retention window."""
        if older_than is None:
            older_than = timedelta(days=self.config.cleanup_days)
        count = await self.store.delete_older_than(self._now() - older_than)
        if count > 0:
            logger.info("Cleaned up old job records", count=count)
        return count

    @property
    def active_count(self) -> int:
        return len(self._active)

    @property
    def running(self) -> bool:
        return self._loop_task is not None and not self._loop_task.done()

    # ------------------------------------------------------------------
    # Dispatch loop
    # ------------------------------------------------------------------

    async def start(self) -> None:
        """Start the dispatch loop as a background task."""
        if self.running:
            return
        await self.recover_stale()
        if self.config.auto_cleanup:
            await self._cleanup_old_jobs()
        self._shutdown = asyncio.Event()
        self._loop_task = asyncio.create_task(self._dispatch_loop())
        logger.info("Job queue started", concurrency=self.config.concurrency)

    async def recover_stale(self) -> int:
        """
        Reclaim jobs left PROCESSING by a worker that died.

        A job counts as abandoned once it has been PROCESSING for
        ``config.stale_after`` seconds; it goes back to PENDING without
        using up an attempt.
        """
        cutoff = self._now() - timedelta(seconds=self.config.stale_after)
        count = await self.store.recover_stale(cutoff)
        if count > 0:
            logger.warning("Reclaimed stale processing jobs", count=count)
        return count

    async def stop(self, timeout: Optional[float] = None) -> None:
        """
        Stop dispatching and wait for in-flight handlers.

        Handlers still running after ``timeout`` (default
        ``config.shutdown_timeout``) are cancelled; their jobs stay
        PROCESSING until a later start() reclaims them as stale.
        """
        if self._shutdown is not None:
            self._shutdown.set()
        if self._loop_task is not None:
            await self._loop_task
            self._loop_task = None

        if self._active:
            timeout = self.config.shutdown_timeout if timeout is None else timeout
            _, still_running = await asyncio.wait(set(self._active), timeout=timeout)
            for task in still_running:
                task.cancel()
            if still_running:
                logger.warning("Handlers cancelled at shutdown", count=len(still_running))
                await asyncio.gather(*still_running, return_exceptions=True)
        logger.info("Job queue stopped")

    async def run(self) -> None:
        """Run the dispatch loop in the foreground until stop() is called."""
        await self.start()
        if self._loop_task is not None:
            await self._loop_task
        if self._active:
            await asyncio.gather(*set(self._active), return_exceptions=True)

    async def run_until_idle(self) -> int:
        """
        Dispatch until no job is eligible and no handler is running.

        Jobs rescheduled into the future are left PENDING.

        Returns:
            Number of jobs dispatched
        """
        dispatched = 0
        while True:
            while self.active_count < self.config.concurrency and await self.dispatch_once():
                dispatched += 1
            if not self._active:
                return dispatched
            await asyncio.wait(set(self._active), return_when=asyncio.FIRST_COMPLETED)

    async def _cleanup_old_jobs(self) -> None:
        try:
            await self.cleanup()
        except Exception as e:
            logger.warning("Failed to clean old jobs", error=str(e))

    async def _wait_for_shutdown(self, timeout: float) -> None:
        assert self._shutdown is not None
        try:
            await asyncio.wait_for(self._shutdown.wait(), timeout=timeout)
        except asyncio.TimeoutError:
            pass

    async def _dispatch_loop(self) -> None:
        assert self._shutdown is not None
        while not self._shutdown.is_set():
            try:
                if self.active_count >= self.config.concurrency:
                    await self._wait_for_shutdown(self.config.busy_poll_interval)
                    continue
                if not await self.dispatch_once():
                    await self._wait_for_shutdown(self.config.idle_poll_interval)
            except asyncio.CancelledError:
                break
            except Exception:
                logger.exception("Unexpected error in dispatch loop, will retry after sleep")
                await self._wait_for_shutdown(self.config.idle_poll_interval)

    async def dispatch_once(self) -> bool:
        """
        Claim the next eligible job and launch its handler.

        Returns:
            True if a job was claimed
        """
        if self.active_count >= self.config.concurrency:
            return False

        # Another dispatcher may claim the candidate first; try the next one
        while True:
            now = self._now()
            job = await self.store.find_next_eligible(now)
            if job is None:
                return False
            claimed = await self.store.transition(
                job.id,
                JobStatus.PENDING,
                {"status": JobStatus.PROCESSING, "started_at": now, "cancel_requested": False},
            )
            if claimed:
                break

        job.status = JobStatus.PROCESSING
        job.started_at = now
        token = CancellationToken(job.id)
        self._tokens[job.id] = token

        task = asyncio.create_task(self._execute(job, token))
        self._active.add(task)
        task.add_done_callback(self._active.discard)

        logger.debug(
            "Job started", job_id=job.id, job_type=job.type.value, attempt=job.attempts + 1
        )
        self.events.emit(
            JOB_STARTED,
            job_id=job.id,
            tenant_id=job.tenant_id,
            job_type=job.type.value,
            attempt=job.attempts + 1,
        )
        await self._mark_batch_started(job)
        return True

    # ------------------------------------------------------------------
    # Outcomes
    # ------------------------------------------------------------------

    async def _execute(self, job: Job, token: CancellationToken) -> None:
        context = JobContext(job, self, token)
        handler = self.handlers.get(job.type)
        try:
            if handler is None:
                raise ValidationError(f"No handler registered for job type: {job.type.value}")
            context.checkpoint()
            result = await handler(context)
        except JobCancelledError:
            context.log.finish(success=False, error="cancelled")
            await self._finish_cancelled(job)
        except Exception as e:
            context.log.finish(success=False, error=sanitize_message(str(e)))
            await self._handle_failure(job, e)
        else:
            chunks = result.get("chunks", 0) if isinstance(result, dict) else 0
            context.log.finish(success=True, chunks=chunks if isinstance(chunks, int) else 0)
            await self._complete(job, result)
        finally:
            self._tokens.pop(job.id, None)

    async def _complete(self, job: Job, result: Any) -> None:
        now = self._now()
        if result is not None and not isinstance(result, dict):
            result = {"result": result}
        progress = job.progress
        if progress is not None:
            progress = JobProgress(progress.total, progress.total, "completed", progress.message)

        patch: Dict[str, Any] = {
            "status": JobStatus.COMPLETED,
            "result": _json_column(result),
            "completed_at": now,
        }
        if progress is not None:
            patch["progress"] = _progress_column(progress)
        if await self.store.transition(job.id, JobStatus.PROCESSING, patch):
            logger.info("Job completed", job_id=job.id, job_type=job.type.value)
            self.events.emit(
                JOB_COMPLETED, job_id=job.id, tenant_id=job.tenant_id, result=result
            )
            await self._check_batch(job)

    async def _finish_cancelled(self, job: Job) -> None:
        patch = {"status": JobStatus.CANCELLED, "completed_at": self._now()}
        if await self.store.transition(job.id, JobStatus.PROCESSING, patch):
            logger.info("Job cancelled at checkpoint", job_id=job.id)
            self.events.emit(JOB_CANCELLED, job_id=job.id, tenant_id=job.tenant_id)
            await self._check_batch(job)

    def _is_retryable(self, error: Exception) -> bool:
        if isinstance(error, (ValidationError, NotFoundError)):
            return self.config.retry_validation_errors
        return True

    def retry_delay(self, attempts: int) -> float:
        """Seconds to wait after the ``attempts``-th failure (5, 10, 20...)."""
        return calculate_delay(
            attempts - 1,
            base_delay=self.config.retry_base_delay,
            max_delay=self.config.max_retry_delay,
            exponential_base=2.0,
            jitter=False,
        )

    async def _handle_failure(self, job: Job, error: Exception) -> None:
        now = self._now()
        message = sanitize_message(str(error)) or type(error).__name__
        # retries scheduled so far; capped at max_attempts
        attempts = min(job.attempts + 1, job.max_attempts)

        if job.attempts < job.max_attempts and self._is_retryable(error):
            delay = self.retry_delay(attempts)
            patch = {
                "status": JobStatus.PENDING,
                "attempts": attempts,
                "error": message,
                "scheduled_for": now + timedelta(seconds=delay),
                "started_at": None,
            }
            if await self.store.transition(job.id, JobStatus.PROCESSING, patch):
                logger.warning(
                    "Job failed, retry scheduled",
                    job_id=job.id,
                    attempt=attempts,
                    delay_sec=delay,
                    error=message,
                )
                self.events.emit(
                    JOB_RETRY,
                    job_id=job.id,
                    tenant_id=job.tenant_id,
                    attempts=attempts,
                    delay=delay,
                    error=message,
                )
            return

        patch = {
            "status": JobStatus.FAILED,
            "attempts": attempts,
            "error": message,
            "completed_at": now,
        }
        if await self.store.transition(job.id, JobStatus.PROCESSING, patch):
            logger.error("Job failed", job_id=job.id, attempts=attempts, error=message)
            self.events.emit(
                JOB_FAILED,
                job_id=job.id,
                tenant_id=job.tenant_id,
                attempts=attempts,
                error=message,
            )
            await self._check_batch(job)

    # ------------------------------------------------------------------
    # Batch lifecycle
    # ------------------------------------------------------------------

    async def _mark_batch_started(self, job: Job) -> None:
        batch_id = job.batch_id
        if not batch_id:
            return
        started = await self.store.update_batch(
            batch_id,
            {"status": "processing", "started_at": self._now()},
            from_status="queued",
        )
        if started:
            self.events.emit(BATCH_STARTED, batch_id=batch_id, tenant_id=job.tenant_id)

    async def _check_batch(self, job: Job) -> None:
        """Emit batchCompleted once every job of the batch is terminal."""
        batch_id = job.batch_id
        if not batch_id:
            return
        jobs = await self.store.list_batch_jobs(batch_id)
        if not jobs or not all(j.status.is_terminal for j in jobs):
            return

        failed = sum(1 for j in jobs if j.status == JobStatus.FAILED)
        cancelled = sum(1 for j in jobs if j.status == JobStatus.CANCELLED)
        status = "completed_with_errors" if failed or cancelled else "completed"
        now = self._now()
        finished = False
        for from_status in ("queued", "processing"):
            if await self.store.update_batch(
                batch_id, {"status": status, "completed_at": now}, from_status=from_status
            ):
                finished = True
                break
        if finished:
            logger.info("Batch completed", batch_id=batch_id, status=status, failed=failed)
            self.events.emit(
                BATCH_COMPLETED,
                batch_id=batch_id,
                tenant_id=job.tenant_id,
                status=status,
                total=len(jobs),
                failed=failed,
            )


def _json_column(value: Optional[Dict[str, Any]]) -> Optional[str]:
    return json.dumps(value, default=str) if value is not None else None


def _progress_column(progress: JobProgress) -> str:
    return json.dumps(progress.to_dict())
