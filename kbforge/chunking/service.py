"""
Tenant-aware entry point to the chunking strategies.

    service = ChunkingService(settings_store, documents)
    result = service.chunk_document(text, tenant_id="acme")

Effective options are resolved in three layers:

    ChunkingConfig defaults   (semantic, 1000 / 200, min 100, max 2000)
        <- tenant settings    (max defaults to 2x chunk_size when only
                               chunk_size is set)
        <- caller overrides   (non-None keys only)

After chunking, a validation pass logs chunks that are too small, too large,
empty or end mid-sentence. Validation never raises; the caller always gets
the chunks.
"""

from __future__ import annotations

import time
from collections import Counter
from dataclasses import fields
from typing import TYPE_CHECKING, Any, Dict, Optional

from kbforge.chunking.analyzers import has_headings, has_structure
from kbforge.chunking.hierarchical_chunker import HierarchicalChunker
from kbforge.chunking.hybrid_chunker import HybridChunker
from kbforge.chunking.metadata_extractor import extract_document_metadata
from kbforge.chunking.models import ChunkingOptions, ChunkingResult
from kbforge.chunking.overlapping_chunker import OverlappingChunker, optimize_overlap_size
from kbforge.chunking.quality import validate_chunks
from kbforge.chunking.semantic_chunker import SemanticChunker
from kbforge.core.config import ChunkingConfig
from kbforge.core.exceptions import ChunkingError, NotFoundError, ProcessingError
from kbforge.core.logging import get_logger

if TYPE_CHECKING:
    from kbforge.ingest.collaborators import DocumentRepository, TenantSettingsStore

logger = get_logger(__name__)

CODE_DELIMITERS = ["\n\n", "\n", ";", "{", "}"]
SHORT_CONTENT_CHARS = 5000
LONG_CONTENT_CHARS = 50000


class ChunkingService:
    """Resolves options per tenant, runs a strategy and validates the result."""

    def __init__(
        self,
        settings_store: Optional["TenantSettingsStore"] = None,
        documents: Optional["DocumentRepository"] = None,
        defaults: Optional[ChunkingConfig] = None,
    ) -> None:
        self.settings_store = settings_store
        self.documents = documents
        self.defaults = defaults or ChunkingConfig()
        self._chunkers = {
            "semantic": SemanticChunker(),
            "hierarchical": HierarchicalChunker(),
            "overlapping": OverlappingChunker(),
            "hybrid": HybridChunker(),
        }

    def _default_options(self) -> ChunkingOptions:
        names = {f.name for f in fields(ChunkingOptions)}
        values = {f.name: getattr(self.defaults, f.name) for f in fields(self.defaults)}
        return ChunkingOptions(**{k: v for k, v in values.items() if k in names})

    def resolve_options(
        self, tenant_id: str, overrides: Optional[Dict[str, Any]] = None
    ) -> ChunkingOptions:
        """
        Build the effective options for a tenant.

        A settings store that fails is logged and treated as "no tenant
        settings"; an unknown strategy in the result raises ChunkingError.
        """
        options = self._default_options()

        tenant = None
        if self.settings_store is not None:
            try:
                tenant = self.settings_store.get_chunking_defaults(tenant_id)
            except Exception as e:
                logger.warning(
                    "Failed to load tenant chunking settings, using defaults",
                    tenant_id=tenant_id,
                    error=str(e),
                )

        if tenant is not None:
            tenant_values = {
                "strategy": tenant.strategy,
                "chunk_size": tenant.chunk_size,
                "chunk_overlap": tenant.chunk_overlap,
                "min_chunk_size": tenant.min_chunk_size,
                "max_chunk_size": tenant.max_chunk_size,
            }
            if tenant.chunk_size is not None and tenant.max_chunk_size is None:
                tenant_values["max_chunk_size"] = tenant.chunk_size * 2
            options = options.merged(tenant_values)

        return options.merged(overrides)

    def chunk_document(
        self,
        content: str,
        tenant_id: str,
        overrides: Optional[Dict[str, Any]] = None,
    ) -> ChunkingResult:
        """
        Chunk one document for a tenant.

        Args:
            content: Extracted document text
            tenant_id: Tenant whose settings apply
            overrides: Per-call option overrides (e.g. from a job payload)

        Returns:
            ChunkingResult with processing_time in milliseconds

        Raises:
            ChunkingError: Invalid options or a failing strategy
        """
        started = time.perf_counter()
        options = self.resolve_options(tenant_id, overrides)
        chunker = self._chunkers[options.strategy]

        try:
            result = chunker.chunk(content, options)
        except ChunkingError:
            raise
        except Exception as e:
            raise ChunkingError(f"{options.strategy.capitalize()} chunking failed: {e}") from e

        result.metadata.strategy = options.strategy
        result.metadata.processing_time = (time.perf_counter() - started) * 1000
        self._validate(result, options, tenant_id)

        logger.debug(
            "Chunked document",
            tenant_id=tenant_id,
            strategy=options.strategy,
            chunks=result.metadata.total_chunks,
            tokens=result.metadata.total_tokens,
        )
        return result

    def _validate(self, result: ChunkingResult, options: ChunkingOptions, tenant_id: str) -> None:
        """Log quality warnings; never raises."""
        try:
            warnings = validate_chunks(result.chunks, options)
        except Exception as e:
            logger.warning("Chunk validation could not run", error=str(e))
            return

        if not warnings:
            return
        by_code = Counter(w.code for w in warnings)
        logger.warning(
            "Chunking validation issues",
            tenant_id=tenant_id,
            strategy=options.strategy,
            issues=len(warnings),
            **dict(by_code),
        )
        for warning in warnings:
            logger.debug(warning.message, chunk_index=warning.chunk_index, code=warning.code)

    def analyze_content(self, content: str) -> Dict[str, Any]:
        """Structural features used by get_optimal_strategy()."""
        meta = extract_document_metadata(content)
        return {
            "has_structure": has_structure(content),
            "has_headings": has_headings(content),
            "has_lists": meta.has_lists,
            "has_tables": meta.has_tables,
            "has_code": meta.has_code or "`" in content,
            "language": meta.language,
            "word_count": meta.word_count,
            "reading_time": meta.reading_time,
            "suggested_overlap": optimize_overlap_size(content, self.defaults.chunk_overlap),
        }

    def get_optimal_strategy(self, content: str, document_type: str) -> ChunkingOptions:
        """
        Pick options for a document from its type and content.

        Rules:
            pdf, word      -> hierarchical when the text has structure
            markdown, text -> hierarchical when it has headings, else semantic
            code           -> semantic on code delimiters, sentences ignored
            web            -> hybrid
        Content under 5000 chars gets 500 / 100; over 50000 gets 1500 / 300.
        """
        options = ChunkingOptions()
        analysis = self.analyze_content(content)
        kind = (document_type or "").lower()

        if kind in ("pdf", "word"):
            if analysis["has_structure"]:
                options.strategy = "hierarchical"
                options.preserve_structure = True
        elif kind in ("markdown", "text"):
            options.strategy = "hierarchical" if analysis["has_headings"] else "semantic"
        elif kind == "code":
            options.strategy = "semantic"
            options.respect_sentences = False
            options.custom_delimiters = list(CODE_DELIMITERS)
        elif kind == "web":
            options.strategy = "hybrid"
            options.preserve_structure = True

        if len(content) < SHORT_CONTENT_CHARS:
            options.chunk_size = 500
            options.chunk_overlap = 100
        elif len(content) > LONG_CONTENT_CHARS:
            options.chunk_size = 1500
            options.chunk_overlap = 300

        return options

    def rechunk_document(
        self, document_id: str, tenant_id: str, overrides: Optional[Dict[str, Any]] = None
    ) -> ChunkingResult:
        """Chunk a stored document again and replace its chunks."""
        if self.documents is None:
            raise ProcessingError("Re-chunking needs a document repository")

        document = self.documents.get(tenant_id, document_id)
        if document is None:
            raise NotFoundError(
                f"Document not found: {document_id}", resource="document", resource_id=document_id
            )

        result = self.chunk_document(document.content, tenant_id, overrides)
        document.chunks = result.chunks
        document.chunking_strategy = result.metadata.strategy
        self.documents.save(document)
        return result

    def get_chunking_stats(self, tenant_id: str) -> Dict[str, Any]:
        """Totals and averages over a tenant's stored documents."""
        documents = self.documents.list_by_tenant(tenant_id) if self.documents else []
        chunks = [chunk for document in documents for chunk in document.chunks]

        return {
            "total_documents": len(documents),
            "total_chunks": len(chunks),
            "average_chunks_per_document": len(chunks) / len(documents) if documents else 0.0,
            "average_chunk_size": (
                sum(chunk.token_count for chunk in chunks) / len(chunks) if chunks else 0.0
            ),
            "strategy_distribution": dict(
                Counter(d.chunking_strategy for d in documents if d.chunking_strategy)
            ),
        }
