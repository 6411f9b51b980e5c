"""
Batch submission and status aggregation.

A batch is a list of inputs (files, URLs or stored document ids) that is
validated, fanned out into one job per valid input and tracked as a unit:

    processor = BatchProcessor(queue, documents, config.ingest)
    submission = await processor.submit_files(paths, "acme", "user-1")
    status = await processor.get_batch_status(submission.batch_id)

Invalid inputs are dropped before any job is created; a batch with no valid
input raises ValidationError. Batch status is recomputed from the job rows
on every query:

    queued                 every job PENDING
    processing             some job not yet terminal
    completed              all terminal, none failed or cancelled
    completed_with_errors  all terminal, at least one failed or cancelled
    cancelled              cancel_batch() was called
"""

import uuid
from collections import Counter
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from pathlib import Path
from statistics import mean
from typing import Any, Dict, List, Optional, Sequence, Union

from pydantic import BaseModel

from kbforge.core.config import IngestConfig
from kbforge.core.events import BATCH_CANCELLED
from kbforge.core.exceptions import NotFoundError, ValidationError
from kbforge.core.jobs.handlers import URL_DEFAULT_STRATEGY
from kbforge.core.jobs.models import BatchKind, BatchRecord, Job, JobStatus, JobType
from kbforge.core.jobs.queue import JobQueue
from kbforge.core.logging import get_logger
from kbforge.ingest.collaborators import DocumentRepository
from kbforge.ingest.validators import validate_file, validate_submission_url

logger = get_logger(__name__)

OptionsInput = Union[Dict[str, Any], BaseModel, None]


@dataclass
class BatchSubmission:
    """Returned by the submit_* calls."""

    batch_id: str
    job_ids: List[str]
    total_files: int
    estimated_time: int  # seconds
    status: str = "queued"
    rejected: List[Dict[str, str]] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "batch_id": self.batch_id,
            "job_ids": list(self.job_ids),
            "total_files": self.total_files,
            "estimated_time": self.estimated_time,
            "status": self.status,
            "rejected": list(self.rejected),
        }


@dataclass
class BatchProgress:
    """
    Job counts for one batch.

    to_dict() adds ``cancelled`` only once a job in the batch was cancelled.
    """

    completed: int = 0
    failed: int = 0
    cancelled: int = 0
    processing: int = 0
    pending: int = 0
    total: int = 0

    @property
    def finished(self) -> int:
        return self.completed + self.failed + self.cancelled

    @property
    def percentage(self) -> int:
        return round(self.finished * 100 / self.total) if self.total else 0

    def to_dict(self) -> Dict[str, int]:
        data = {
            "completed": self.completed,
            "failed": self.failed,
            "processing": self.processing,
            "pending": self.pending,
            "total": self.total,
            "percentage": self.percentage,
        }
        if self.cancelled:
            data["cancelled"] = self.cancelled
        return data


@dataclass
class BatchStatus:
    """Point-in-time view of a batch, derived from its jobs."""

    batch_id: str
    status: str
    progress: BatchProgress
    jobs: List[Dict[str, Any]]
    estimated_completion: Optional[datetime] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "batch_id": self.batch_id,
            "status": self.status,
            "progress": self.progress.to_dict(),
            "jobs": self.jobs,
            "estimated_completion": (
                self.estimated_completion.isoformat() if self.estimated_completion else None
            ),
        }


def compute_progress(jobs: Sequence[Job]) -> BatchProgress:
    counts = Counter(job.status for job in jobs)
    return BatchProgress(
        completed=counts[JobStatus.COMPLETED],
        failed=counts[JobStatus.FAILED],
        cancelled=counts[JobStatus.CANCELLED],
        processing=counts[JobStatus.PROCESSING],
        pending=counts[JobStatus.PENDING],
        total=len(jobs),
    )


def derive_status(batch: BatchRecord, progress: BatchProgress) -> str:
    if batch.cancelled:
        return "cancelled"
    if progress.total and progress.finished == progress.total:
        return "completed_with_errors" if progress.failed or progress.cancelled else "completed"
    if progress.pending == progress.total:
        return "queued"
    return "processing"


def estimate_completion(
    jobs: Sequence[Job], progress: BatchProgress, now: datetime
) -> Optional[datetime]:
    """Mean duration of completed jobs times the jobs still outstanding."""
    durations = [
        (job.completed_at - job.started_at).total_seconds()
        for job in jobs
        if job.status == JobStatus.COMPLETED and job.started_at and job.completed_at
    ]
    if not durations:
        return None
    remaining = progress.processing + progress.pending
    return now + timedelta(seconds=mean(durations) * remaining)


class BatchProcessor:
    """Validates batches, enqueues their jobs and reports on them."""

    def __init__(
        self,
        queue: JobQueue,
        documents: Optional[DocumentRepository] = None,
        config: Optional[IngestConfig] = None,
    ) -> None:
        self.queue = queue
        self.store = queue.store
        self.documents = documents
        self.config = config or IngestConfig()

    @staticmethod
    def _options(options: OptionsInput) -> Dict[str, Any]:
        if options is None:
            return {}
        if isinstance(options, BaseModel):
            return options.model_dump(exclude_none=True)
        return dict(options)

    async def _submit(
        self,
        kind: BatchKind,
        job_type: JobType,
        tenant_id: str,
        user_id: str,
        payloads: List[Dict[str, Any]],
        seconds_each: int,
        rejected: List[Dict[str, str]],
        priority: int,
    ) -> BatchSubmission:
        batch = BatchRecord(
            batch_id=str(uuid.uuid4()),
            tenant_id=tenant_id,
            user_id=user_id,
            kind=kind,
            job_ids=[],
        )
        for payload in payloads:
            payload.setdefault("metadata", {})["batch_id"] = batch.batch_id

        job_ids = await self.queue.enqueue_batch(
            job_type, tenant_id, user_id, payloads, priority=priority, batch=batch
        )
        logger.info(
            "Batch submitted",
            batch_id=batch.batch_id,
            kind=kind.value,
            jobs=len(job_ids),
            rejected=len(rejected),
        )
        return BatchSubmission(
            batch_id=batch.batch_id,
            job_ids=job_ids,
            total_files=len(job_ids),
            estimated_time=len(job_ids) * seconds_each,
            rejected=rejected,
        )

    # ------------------------------------------------------------------
    # Submission
    # ------------------------------------------------------------------

    async def submit_files(
        self,
        paths: Sequence[Union[str, Path]],
        tenant_id: str,
        user_id: str,
        options: OptionsInput = None,
        collection_id: Optional[str] = None,
        priority: int = 0,
    ) -> BatchSubmission:
        """
        Submit files for ingestion, one document_upload job per valid file.

        Raises:
            ValidationError: No file passed validation
        """
        payloads: List[Dict[str, Any]] = []
        rejected: List[Dict[str, str]] = []
        for raw in paths:
            path = Path(raw)
            ok, reason = validate_file(path, self.config)
            if not ok:
                logger.debug("Skipping invalid file", path=str(path), reason=reason)
                rejected.append({"input": str(raw), "reason": reason})
                continue
            payloads.append(
                {
                    "file_path": str(path.resolve()),
                    "file_name": path.name,
                    "collection_id": collection_id,
                    "options": self._options(options),
                    "metadata": {"original_path": str(raw)},
                }
            )

        if not payloads:
            raise ValidationError("No valid files to process")

        return await self._submit(
            BatchKind.FILES,
            JobType.DOCUMENT_UPLOAD,
            tenant_id,
            user_id,
            payloads,
            self.config.seconds_per_file,
            rejected,
            priority,
        )

    async def submit_urls(
        self,
        urls: Sequence[str],
        tenant_id: str,
        user_id: str,
        options: OptionsInput = None,
        collection_id: Optional[str] = None,
        priority: int = 0,
    ) -> BatchSubmission:
        """
        Submit URLs for crawling; pages are chunked with ``hybrid`` unless
        the options name another strategy.

        Raises:
            ValidationError: No URL passed validation
        """
        payloads: List[Dict[str, Any]] = []
        rejected: List[Dict[str, str]] = []
        for url in urls:
            ok, reason = validate_submission_url(url, self.config)
            if not ok:
                logger.debug("Skipping invalid URL", url=url, reason=reason)
                rejected.append({"input": url, "reason": reason})
                continue
            url_options = self._options(options)
            if not url_options.get("strategy"):
                url_options["strategy"] = URL_DEFAULT_STRATEGY
            payloads.append(
                {
                    "url": url,
                    "collection_id": collection_id,
                    "options": url_options,
                    "metadata": {"original_url": url},
                }
            )

        if not payloads:
            raise ValidationError("No valid URLs to process")

        return await self._submit(
            BatchKind.URLS,
            JobType.URL_CRAWL,
            tenant_id,
            user_id,
            payloads,
            self.config.seconds_per_url,
            rejected,
            priority,
        )

    async def submit_reprocess(
        self,
        document_ids: Sequence[str],
        tenant_id: str,
        user_id: str,
        options: OptionsInput = None,
        priority: int = 0,
    ) -> BatchSubmission:
        """
        Re-chunk stored documents with new options.

        Ids unknown to the tenant are dropped.

        Raises:
            ValidationError: None of the documents exist
        """
        payloads: List[Dict[str, Any]] = []
        rejected: List[Dict[str, str]] = []
        for document_id in document_ids:
            if self.documents is not None and self.documents.get(tenant_id, document_id) is None:
                logger.debug("Skipping unknown document", document_id=document_id)
                rejected.append({"input": document_id, "reason": "Document not found"})
                continue
            payloads.append(
                {
                    "document_id": document_id,
                    "options": self._options(options),
                    "metadata": {"original_document_id": document_id},
                }
            )

        if not payloads:
            raise ValidationError("No valid documents to reprocess")

        return await self._submit(
            BatchKind.REPROCESS,
            JobType.DOCUMENT_REPROCESS,
            tenant_id,
            user_id,
            payloads,
            self.config.seconds_per_reprocess,
            rejected,
            priority,
        )

    # ------------------------------------------------------------------
    # Status and control
    # ------------------------------------------------------------------

    async def _get_batch(self, batch_id: str) -> BatchRecord:
        batch = await self.store.get_batch(batch_id)
        if batch is None:
            raise NotFoundError(
                f"Batch not found: {batch_id}", resource="batch", resource_id=batch_id
            )
        return batch

    async def get_batch_status(self, batch_id: str) -> BatchStatus:
        """
        Aggregate the status of a batch from its jobs.

        Raises:
            NotFoundError: Unknown batch id
        """
        batch = await self._get_batch(batch_id)
        jobs = await self.store.get_many(batch.job_ids)
        progress = compute_progress(jobs)
        status = derive_status(batch, progress)

        estimated = None
        if status == "processing":
            estimated = estimate_completion(jobs, progress, self.queue.now())

        return BatchStatus(
            batch_id=batch_id,
            status=status,
            progress=progress,
            jobs=[job.summary() for job in jobs],
            estimated_completion=estimated,
        )

    async def cancel_batch(self, batch_id: str) -> int:
        """
        Cancel every job of a batch that has not finished.

        Running jobs stop at their next checkpoint; the batch is marked
        cancelled without waiting for them.

        Returns:
            Number of jobs cancelled or asked to cancel
        """
        batch = await self._get_batch(batch_id)
        # Marked first so the last job cancellation does not complete the batch
        await self.store.update_batch(
            batch_id, {"status": "cancelled", "completed_at": self.queue.now()}
        )
        cancelled = 0
        for job_id in batch.job_ids:
            if await self.queue.cancel(job_id):
                cancelled += 1

        logger.info("Batch cancelled", batch_id=batch_id, jobs_cancelled=cancelled)
        self.queue.events.emit(
            BATCH_CANCELLED,
            batch_id=batch_id,
            tenant_id=batch.tenant_id,
            jobs_cancelled=cancelled,
        )
        return cancelled

    async def get_batch_stats(self, tenant_id: str) -> Dict[str, Any]:
        """Batch counts by derived status for a tenant."""
        batches = await self.store.list_batches(tenant_id)
        by_status: Counter = Counter()
        total_jobs = 0
        for batch in batches:
            jobs = await self.store.get_many(batch.job_ids)
            by_status[derive_status(batch, compute_progress(jobs))] += 1
            total_jobs += len(batch.job_ids)
        return {
            "total_batches": len(batches),
            "by_status": dict(by_status),
            "total_jobs": total_jobs,
        }
