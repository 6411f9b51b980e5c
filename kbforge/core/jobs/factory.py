"""
Factory functions for creating job stores and queues.

Wires a JobQueue from a Config, with the ingestion handlers registered.
"""

from pathlib import Path
from typing import Optional

from kbforge.chunking.service import ChunkingService
from kbforge.core.config import Config
from kbforge.core.events import EventBus
from kbforge.core.jobs.handlers import IngestHandlers
from kbforge.core.jobs.queue import JobQueue
from kbforge.core.jobs.store import SQLiteJobStore
from kbforge.ingest.collaborators import (
    ConfigTenantSettingsStore,
    DocumentRepository,
    InMemoryDocumentRepository,
    VectorIndexer,
)


def create_job_store(db_path: Optional[Path] = None) -> SQLiteJobStore:
    """
    Create a job store.

    Args:
        db_path: Path to SQLite database. Defaults to .data/jobs.db.

    Returns:
        SQLiteJobStore instance.
    """
    if db_path is None:
        db_path = Path.cwd() / ".data" / "jobs.db"
    return SQLiteJobStore(db_path)


def create_job_queue(
    config: Optional[Config] = None,
    events: Optional[EventBus] = None,
    documents: Optional[DocumentRepository] = None,
    indexer: Optional[VectorIndexer] = None,
    store: Optional[SQLiteJobStore] = None,
) -> JobQueue:
    """
    Create a job queue with every ingestion handler registered.

    Args:
        config: Loaded configuration; defaults apply when omitted.
        events: Event bus shared with the batch processor.
        documents: Document repository; in-memory when omitted.
        indexer: Vector indexer; counting-only when omitted.
        store: Existing job store; opened at config.db_path when omitted.

    Returns:
        JobQueue ready to start().
    """
    config = config or Config()
    documents = documents or InMemoryDocumentRepository()
    store = store or create_job_store(config.db_path)

    chunking = ChunkingService(
        settings_store=ConfigTenantSettingsStore(config),
        documents=documents,
        defaults=config.chunking,
    )
    queue = JobQueue(store, events or EventBus(), config.queue)
    IngestHandlers(chunking, documents, indexer=indexer, config=config.ingest).register(queue)
    return queue
