"""
Job, batch and payload types shared by the queue, store and handlers.

Defines the job status and type enums, the per-type payload models and the
Job dataclass that the store persists.

Payloads are a tagged union keyed by JobType: each type has one pydantic
model, and parse_payload() validates raw data against the model for its
type. A payload that does not fit is rejected before any job is stored.
"""

import json
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Literal, Optional, Type, Union

from pydantic import BaseModel, ConfigDict, Field
from pydantic import ValidationError as PydanticValidationError

from kbforge.core.exceptions import ValidationError


class JobStatus(Enum):
    """Lifecycle state stored on each job row."""

    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATUSES


TERMINAL_STATUSES = frozenset({JobStatus.COMPLETED, JobStatus.FAILED, JobStatus.CANCELLED})


class JobType(Enum):
    """Which handler a job is dispatched to."""

    DOCUMENT_UPLOAD = "document_upload"
    DOCUMENT_REPROCESS = "document_reprocess"
    BULK_UPLOAD = "bulk_upload"
    URL_CRAWL = "url_crawl"
    COLLECTION_REINDEX = "collection_reindex"


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def to_iso(value: Optional[datetime]) -> Optional[str]:
    """Fixed-width UTC ISO timestamp, so stored values sort as text."""
    if value is None:
        return None
    return value.astimezone(timezone.utc).isoformat(timespec="microseconds")


def from_iso(value: Optional[str]) -> Optional[datetime]:
    return datetime.fromisoformat(value) if value else None


# ============================================================================
# Payloads
# ============================================================================


class ProcessingOptions(BaseModel):
    """Per-job processing options; unset chunking fields use tenant defaults."""

    model_config = ConfigDict(extra="forbid")

    strategy: Optional[Literal["semantic", "hierarchical", "overlapping", "hybrid"]] = None
    chunk_size: Optional[int] = Field(default=None, ge=1)
    chunk_overlap: Optional[int] = Field(default=None, ge=0)
    preserve_structure: Optional[bool] = None
    extract_metadata: bool = True
    enable_ocr: bool = False
    tags: List[str] = Field(default_factory=list)

    def chunking_overrides(self) -> Dict[str, Any]:
        """Options to pass to ChunkingService.chunk_document()."""
        overrides = {
            "strategy": self.strategy,
            "chunk_size": self.chunk_size,
            "chunk_overlap": self.chunk_overlap,
            "preserve_structure": self.preserve_structure,
        }
        return {k: v for k, v in overrides.items() if v is not None}


class JobMetadata(BaseModel):
    """Where a job came from; batch_id links it to a batch."""

    batch_id: Optional[str] = None
    original_path: Optional[str] = None
    original_url: Optional[str] = None
    original_document_id: Optional[str] = None


class _Payload(BaseModel):
    model_config = ConfigDict(extra="forbid")

    options: ProcessingOptions = Field(default_factory=ProcessingOptions)
    metadata: JobMetadata = Field(default_factory=JobMetadata)


class DocumentUploadPayload(_Payload):
    file_path: str = Field(min_length=1)
    file_name: str = Field(min_length=1)
    mime_type: Optional[str] = None
    collection_id: Optional[str] = None


class DocumentReprocessPayload(_Payload):
    document_id: str = Field(min_length=1)


class BulkUploadPayload(_Payload):
    files: List[str] = Field(min_length=1)
    collection_id: Optional[str] = None


class UrlCrawlPayload(_Payload):
    url: str = Field(min_length=1)
    collection_id: Optional[str] = None


class CollectionReindexPayload(_Payload):
    collection_id: str = Field(min_length=1)


JobPayload = Union[
    DocumentUploadPayload,
    DocumentReprocessPayload,
    BulkUploadPayload,
    UrlCrawlPayload,
    CollectionReindexPayload,
]

PAYLOAD_MODELS: Dict[JobType, Type[BaseModel]] = {
    JobType.DOCUMENT_UPLOAD: DocumentUploadPayload,
    JobType.DOCUMENT_REPROCESS: DocumentReprocessPayload,
    JobType.BULK_UPLOAD: BulkUploadPayload,
    JobType.URL_CRAWL: UrlCrawlPayload,
    JobType.COLLECTION_REINDEX: CollectionReindexPayload,
}


def parse_payload(job_type: JobType, data: Union[Dict[str, Any], BaseModel]) -> JobPayload:
    """
    Validate raw payload data against the model for job_type.

    Raises:
        ValidationError: If the data does not match the payload shape
    """
    model = PAYLOAD_MODELS[job_type]
    if isinstance(data, model):
        return data  # type: ignore[return-value]
    if isinstance(data, BaseModel):
        data = data.model_dump()

    try:
        return model.model_validate(data)  # type: ignore[return-value]
    except PydanticValidationError as e:
        problems = "; ".join(
            f"{'.'.join(str(p) for p in err.get('loc', ())) or 'payload'}: {err.get('msg')}"
            for err in e.errors()
        )
        raise ValidationError(f"Invalid {job_type.value} payload: {problems}") from e


# ============================================================================
# Job
# ============================================================================


@dataclass
class JobProgress:
    """Advisory progress reported by a handler."""

    current: int
    total: int
    stage: str = ""
    message: str = ""

    @property
    def fraction(self) -> float:
        return self.current / self.total if self.total else 0.0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "current": self.current,
            "total": self.total,
            "stage": self.stage,
            "message": self.message,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "JobProgress":
        return cls(
            current=data.get("current", 0),
            total=data.get("total", 0),
            stage=data.get("stage", ""),
            message=data.get("message", ""),
        )


@dataclass
class Job:
    """
    One unit of queued work and its outcome.

    Attributes:
        id: Unique job identifier.
        type: Type of job; selects the payload model and the handler.
        tenant_id: Owning tenant.
        user_id: Submitting user.
        status: Current job status.
        priority: Higher values are dispatched first.
        payload: Type-specific payload model.
        progress: Last progress reported by the handler.
        result: Handler output on completion.
        error: Sanitized error message after the final failure.
        attempts: Failures counted so far, capped at max_attempts.
        max_attempts: Retries allowed; 0 fails the job on its first error.
        scheduled_for: Not eligible for dispatch before this time.
        cancel_requested: Set when a PROCESSING job is cancelled.
        created_at: When the job was created.
        started_at: When the current attempt was claimed.
        completed_at: When the job reached a terminal state.
    """

    id: str
    type: JobType
    tenant_id: str
    user_id: str
    payload: JobPayload
    status: JobStatus = JobStatus.PENDING
    priority: int = 0
    progress: Optional[JobProgress] = None
    result: Optional[Dict[str, Any]] = None
    error: Optional[str] = None
    attempts: int = 0
    max_attempts: int = 3
    scheduled_for: Optional[datetime] = None
    cancel_requested: bool = False
    created_at: datetime = field(default_factory=utcnow)
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None

    @property
    def batch_id(self) -> Optional[str]:
        return self.payload.metadata.batch_id

    def to_dict(self) -> Dict[str, Any]:
        """Flatten to column values; JSON fields are serialized."""
        return {
            "id": self.id,
            "type": self.type.value,
            "tenant_id": self.tenant_id,
            "user_id": self.user_id,
            "status": self.status.value,
            "priority": self.priority,
            "payload": self.payload.model_dump_json(),
            "batch_id": self.batch_id,
            "progress": json.dumps(self.progress.to_dict()) if self.progress else None,
            "result": json.dumps(self.result) if self.result is not None else None,
            "error": self.error,
            "attempts": self.attempts,
            "max_attempts": self.max_attempts,
            "scheduled_for": to_iso(self.scheduled_for),
            "cancel_requested": int(self.cancel_requested),
            "created_at": to_iso(self.created_at),
            "started_at": to_iso(self.started_at),
            "completed_at": to_iso(self.completed_at),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Job":
        """Create Job from a stored row."""
        job_type = JobType(data["type"])
        return cls(
            id=data["id"],
            type=job_type,
            tenant_id=data["tenant_id"],
            user_id=data["user_id"],
            status=JobStatus(data["status"]),
            priority=data["priority"],
            payload=PAYLOAD_MODELS[job_type].model_validate_json(data["payload"]),  # type: ignore[arg-type]
            progress=JobProgress.from_dict(json.loads(data["progress"]))
            if data["progress"]
            else None,
            result=json.loads(data["result"]) if data["result"] else None,
            error=data["error"],
            attempts=data["attempts"],
            max_attempts=data["max_attempts"],
            scheduled_for=from_iso(data["scheduled_for"]),
            cancel_requested=bool(data["cancel_requested"]),
            created_at=from_iso(data["created_at"]) or utcnow(),
            started_at=from_iso(data["started_at"]),
            completed_at=from_iso(data["completed_at"]),
        )

    def summary(self) -> Dict[str, Any]:
        """JSON-friendly view for status endpoints and the CLI."""
        return {
            "id": self.id,
            "type": self.type.value,
            "status": self.status.value,
            "priority": self.priority,
            "attempts": self.attempts,
            "progress": self.progress.to_dict() if self.progress else None,
            "error": self.error,
            "created_at": to_iso(self.created_at),
            "started_at": to_iso(self.started_at),
            "completed_at": to_iso(self.completed_at),
        }


# ============================================================================
# Batches
# ============================================================================


class BatchKind(Enum):
    FILES = "files"
    URLS = "urls"
    REPROCESS = "reprocess"


@dataclass
class BatchRecord:
    """
    A group of jobs submitted together.

    The stored status only records lifecycle events (started, completed,
    cancelled) so that each is emitted once; the status reported to callers
    is derived from the jobs on every query.
    """

    batch_id: str
    tenant_id: str
    user_id: str
    kind: BatchKind
    job_ids: List[str]
    status: str = "queued"
    created_at: datetime = field(default_factory=utcnow)
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None

    @property
    def cancelled(self) -> bool:
        return self.status == "cancelled"

    def to_dict(self) -> Dict[str, Any]:
        return {
            "batch_id": self.batch_id,
            "tenant_id": self.tenant_id,
            "user_id": self.user_id,
            "kind": self.kind.value,
            "job_ids": json.dumps(self.job_ids),
            "status": self.status,
            "created_at": to_iso(self.created_at),
            "started_at": to_iso(self.started_at),
            "completed_at": to_iso(self.completed_at),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "BatchRecord":
        return cls(
            batch_id=data["batch_id"],
            tenant_id=data["tenant_id"],
            user_id=data["user_id"],
            kind=BatchKind(data["kind"]),
            job_ids=json.loads(data["job_ids"]),
            status=data["status"],
            created_at=from_iso(data["created_at"]) or utcnow(),
            started_at=from_iso(data["started_at"]),
            completed_at=from_iso(data["completed_at"]),
        )
