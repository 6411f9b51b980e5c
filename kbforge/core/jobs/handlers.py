"""
Job handlers for document ingestion.

Each handler takes a JobContext and returns a JSON-serializable result dict.
CPU-bound chunking and blocking I/O run in worker threads; the handler
checks for cancellation between units of work (files, index batches,
documents).

    handlers = IngestHandlers(chunking, documents, indexer)
    handlers.register(queue)

Handlers are safe to re-run after a failure: an upload reuses the job id as
the document id and clears the document's indexed chunks before indexing.
"""

import asyncio
from pathlib import Path
from typing import Any, Dict, List, Optional

from kbforge.chunking.metadata_extractor import extract_document_metadata, extract_keywords
from kbforge.chunking.models import Chunk, ChunkingResult
from kbforge.chunking.service import ChunkingService
from kbforge.core.config import IngestConfig
from kbforge.core.exceptions import (
    JobCancelledError,
    KBForgeError,
    NotFoundError,
    ProcessingError,
    sanitize_message,
)
from kbforge.core.jobs.models import JobType, ProcessingOptions
from kbforge.core.jobs.queue import JobContext, JobQueue
from kbforge.core.logging import get_logger
from kbforge.ingest.collaborators import (
    ContentExtractor,
    Document,
    DocumentRepository,
    HttpxWebFetcher,
    NullIndexer,
    TextContentExtractor,
    VectorIndexer,
    WebFetcher,
)

logger = get_logger(__name__)

UPLOAD_STAGES = 4
URL_DEFAULT_STRATEGY = "hybrid"


class IngestHandlers:
    """Handlers for every JobType, sharing one set of collaborators."""

    def __init__(
        self,
        chunking: ChunkingService,
        documents: DocumentRepository,
        indexer: Optional[VectorIndexer] = None,
        extractor: Optional[ContentExtractor] = None,
        fetcher: Optional[WebFetcher] = None,
        config: Optional[IngestConfig] = None,
    ) -> None:
        self.config = config or IngestConfig()
        self.chunking = chunking
        self.documents = documents
        self.indexer = indexer or NullIndexer()
        self.extractor = extractor or TextContentExtractor()
        self.fetcher = fetcher or HttpxWebFetcher(timeout_seconds=self.config.fetch_timeout_sec)

    def register(self, queue: JobQueue) -> None:
        queue.register_handler(JobType.DOCUMENT_UPLOAD, self.document_upload)
        queue.register_handler(JobType.DOCUMENT_REPROCESS, self.document_reprocess)
        queue.register_handler(JobType.BULK_UPLOAD, self.bulk_upload)
        queue.register_handler(JobType.URL_CRAWL, self.url_crawl)
        queue.register_handler(JobType.COLLECTION_REINDEX, self.collection_reindex)

    # ------------------------------------------------------------------
    # Shared steps
    # ------------------------------------------------------------------

    async def _index(self, ctx: JobContext, document: Document, chunks: List[Chunk]) -> int:
        """Replace a document's indexed chunks, in batches with checkpoints."""
        await asyncio.to_thread(self.indexer.delete, document.tenant_id, document.id)
        size = max(1, self.config.index_batch_size)
        indexed = 0
        for start in range(0, len(chunks), size):
            ctx.checkpoint()
            batch = chunks[start : start + size]
            indexed += await asyncio.to_thread(
                self.indexer.index, document.tenant_id, document.id, batch
            )
        return indexed

    def _document_metadata(self, text: str, options: ProcessingOptions) -> Dict[str, Any]:
        metadata: Dict[str, Any] = {}
        if options.tags:
            metadata["tags"] = list(options.tags)
        if options.extract_metadata:
            info = extract_document_metadata(text)
            metadata.update(
                language=info.language,
                word_count=info.word_count,
                reading_time=info.reading_time,
                section_count=info.section_count,
                keywords=extract_keywords(text),
            )
        return metadata

    async def _chunk(
        self, ctx: JobContext, text: str, overrides: Dict[str, Any]
    ) -> ChunkingResult:
        return await asyncio.to_thread(
            self.chunking.chunk_document, text, ctx.tenant_id, overrides
        )

    def _document(
        self,
        ctx: JobContext,
        document_id: str,
        title: str,
        source: str,
        text: str,
        result: ChunkingResult,
        options: ProcessingOptions,
        collection_id: Optional[str],
    ) -> Document:
        return Document(
            id=document_id,
            tenant_id=ctx.tenant_id,
            title=title,
            content=text,
            collection_id=collection_id,
            source=source,
            chunks=result.chunks,
            chunking_strategy=result.metadata.strategy,
            metadata=self._document_metadata(text, options),
        )

    @staticmethod
    def _summary(document: Document, result: ChunkingResult, indexed: int) -> Dict[str, Any]:
        return {
            "document_id": document.id,
            "chunks": result.metadata.total_chunks,
            "tokens": result.metadata.total_tokens,
            "indexed": indexed,
            "strategy": result.metadata.strategy,
            "processing_time_ms": round(result.metadata.processing_time, 2),
        }

    async def _ingest_file(
        self,
        ctx: JobContext,
        path: Path,
        document_id: str,
        options: ProcessingOptions,
        collection_id: Optional[str],
    ) -> Dict[str, Any]:
        text = await asyncio.to_thread(self.extractor.extract, path)
        ctx.checkpoint()
        result = await self._chunk(ctx, text, options.chunking_overrides())
        document = self._document(
            ctx, document_id, path.name, str(path), text, result, options, collection_id
        )
        indexed = await self._index(ctx, document, result.chunks)
        self.documents.save(document)
        return self._summary(document, result, indexed)

    # ------------------------------------------------------------------
    # Handlers
    # ------------------------------------------------------------------

    async def document_upload(self, ctx: JobContext) -> Dict[str, Any]:
        """Extract, chunk, index and store one file."""
        payload = ctx.payload
        path = Path(payload.file_path)
        options = payload.options

        await ctx.report_progress(1, UPLOAD_STAGES, "processing", f"Extracting {payload.file_name}")
        text = await asyncio.to_thread(self.extractor.extract, path)

        await ctx.report_progress(2, UPLOAD_STAGES, "chunking", "Chunking content")
        result = await self._chunk(ctx, text, options.chunking_overrides())

        await ctx.report_progress(
            3, UPLOAD_STAGES, "indexing", f"Indexing {result.metadata.total_chunks} chunks"
        )
        document = self._document(
            ctx,
            ctx.job_id,
            payload.file_name,
            str(path),
            text,
            result,
            options,
            payload.collection_id,
        )
        indexed = await self._index(ctx, document, result.chunks)
        self.documents.save(document)

        await ctx.report_progress(4, UPLOAD_STAGES, "completed", "Document processed")
        return self._summary(document, result, indexed)

    async def document_reprocess(self, ctx: JobContext) -> Dict[str, Any]:
        """Re-chunk a stored document with new options and re-index it."""
        payload = ctx.payload
        document = self.documents.get(ctx.tenant_id, payload.document_id)
        if document is None:
            raise NotFoundError(
                f"Document not found: {payload.document_id}",
                resource="document",
                resource_id=payload.document_id,
            )

        await ctx.report_progress(1, 3, "chunking", f"Re-chunking {document.title}")
        result = await asyncio.to_thread(
            self.chunking.rechunk_document,
            document.id,
            ctx.tenant_id,
            payload.options.chunking_overrides(),
        )

        await ctx.report_progress(
            2, 3, "indexing", f"Indexing {result.metadata.total_chunks} chunks"
        )
        indexed = await self._index(ctx, document, result.chunks)

        await ctx.report_progress(3, 3, "completed", "Document reprocessed")
        return self._summary(document, result, indexed)

    async def bulk_upload(self, ctx: JobContext) -> Dict[str, Any]:
        """
        Ingest several files in one job.

        A file that fails is recorded and the next one is attempted; the job
        only fails when every file failed.
        """
        payload = ctx.payload
        total = len(payload.files)
        outcomes: List[Dict[str, Any]] = []

        for index, file_path in enumerate(payload.files):
            ctx.checkpoint()
            path = Path(file_path)
            await ctx.report_progress(index, total, "processing", f"Processing {path.name}")
            try:
                summary = await self._ingest_file(
                    ctx, path, f"{ctx.job_id}-{index}", payload.options, payload.collection_id
                )
            except JobCancelledError:
                raise
            except (KBForgeError, OSError) as e:
                logger.warning("Bulk upload item failed", job_id=ctx.job_id, path=path.name)
                outcomes.append(
                    {"path": file_path, "status": "failed", "error": sanitize_message(str(e))}
                )
            else:
                outcomes.append({"path": file_path, "status": "completed", **summary})

        succeeded = sum(1 for o in outcomes if o["status"] == "completed")
        if total and not succeeded:
            raise ProcessingError(f"All {total} files in bulk upload failed")

        await ctx.report_progress(total, total, "completed", f"{succeeded}/{total} files processed")
        return {
            "files": outcomes,
            "succeeded": succeeded,
            "failed": total - succeeded,
            "chunks": sum(o.get("chunks", 0) for o in outcomes),
        }

    async def url_crawl(self, ctx: JobContext) -> Dict[str, Any]:
        """Fetch a page, chunk its text (hybrid by default) and index it."""
        payload = ctx.payload
        overrides = payload.options.chunking_overrides()
        overrides.setdefault("strategy", URL_DEFAULT_STRATEGY)

        await ctx.report_progress(1, UPLOAD_STAGES, "processing", f"Fetching {payload.url}")
        text = await asyncio.to_thread(self.fetcher.fetch, payload.url)

        await ctx.report_progress(2, UPLOAD_STAGES, "chunking", "Chunking page content")
        result = await self._chunk(ctx, text, overrides)

        await ctx.report_progress(
            3, UPLOAD_STAGES, "indexing", f"Indexing {result.metadata.total_chunks} chunks"
        )
        document = self._document(
            ctx,
            ctx.job_id,
            payload.url,
            payload.url,
            text,
            result,
            payload.options,
            payload.collection_id,
        )
        indexed = await self._index(ctx, document, result.chunks)
        self.documents.save(document)

        await ctx.report_progress(4, UPLOAD_STAGES, "completed", "Page processed")
        return self._summary(document, result, indexed)

    async def collection_reindex(self, ctx: JobContext) -> Dict[str, Any]:
        """Re-chunk and re-index every document of a collection."""
        payload = ctx.payload
        documents = self.documents.list_by_collection(ctx.tenant_id, payload.collection_id)
        total = len(documents)
        overrides = payload.options.chunking_overrides()
        chunks = 0

        for index, document in enumerate(documents):
            ctx.checkpoint()
            await ctx.report_progress(index, total, "processing", f"Reindexing {document.title}")
            result = await asyncio.to_thread(
                self.chunking.rechunk_document, document.id, ctx.tenant_id, overrides
            )
            await self._index(ctx, document, result.chunks)
            chunks += result.metadata.total_chunks

        await ctx.report_progress(total, total, "completed", f"{total} documents reindexed")
        return {"collection_id": payload.collection_id, "documents": total, "chunks": chunks}
