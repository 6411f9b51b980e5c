"""
Background Job Queue for kbforge.

Persistent, priority-ordered job processing with a bounded number of
concurrent handlers, retry with exponential backoff and cooperative
cancellation.

Architecture Context
--------------------
    ┌──────────────────┐     ┌─────────────────┐     ┌─────────────────┐
    │ BatchProcessor / │────→│   JobQueue      │────→│  handler tasks  │
    │ CLI (enqueue)    │     │  (SQLite store) │     │  (cap 3)        │
    └──────────────────┘     └─────────────────┘     └─────────────────┘
           ↑                                                  │
           │              EventBus (jobProgress, ...)         │
           └──────────────────────────────────────────────────┘
"""

# Models
from kbforge.core.jobs.models import (
    PAYLOAD_MODELS,
    BatchKind,
    BatchRecord,
    Job,
    JobMetadata,
    JobProgress,
    JobStatus,
    JobType,
    ProcessingOptions,
    parse_payload,
)

# Store
from kbforge.core.jobs.store import JobStore, SQLiteJobStore

# Queue
from kbforge.core.jobs.cancellation import CancellationToken
from kbforge.core.jobs.queue import JobContext, JobHandler, JobQueue

# Factory
from kbforge.core.jobs.factory import create_job_queue, create_job_store

__all__ = [
    # Enums
    "BatchKind",
    "JobStatus",
    "JobType",
    # Models
    "BatchRecord",
    "Job",
    "JobMetadata",
    "JobProgress",
    "PAYLOAD_MODELS",
    "ProcessingOptions",
    "parse_payload",
    # Store
    "JobStore",
    "SQLiteJobStore",
    # Queue
    "CancellationToken",
    "JobContext",
    "JobHandler",
    "JobQueue",
    # Factory
    "create_job_queue",
    "create_job_store",
]
