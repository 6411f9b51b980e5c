"""Tests for ChunkingService option resolution, strategy choice and rechunking."""

from __future__ import annotations

from unittest.mock import MagicMock, patch

import pytest

from kbforge.chunking import ChunkingService
from kbforge.chunking.service import CODE_DELIMITERS
from kbforge.core.config import Config
from kbforge.core.config.chunking import TenantConfig
from kbforge.core.exceptions import ChunkingError, NotFoundError, ProcessingError
from kbforge.ingest.collaborators import (
    ConfigTenantSettingsStore,
    Document,
    InMemoryDocumentRepository,
)

TEXT = (
    "Ingestion turns files into chunks. Each chunk is indexed for search.\n\n"
    "Workers pick jobs from the queue. Failed jobs are retried with backoff."
)


def store_returning(tenant: TenantConfig) -> MagicMock:
    settings = MagicMock()
    settings.get_chunking_defaults.return_value = tenant
    return settings


class TestResolveOptions:
    def test_defaults(self) -> None:
        options = ChunkingService().resolve_options("acme")
        assert options.strategy == "semantic"
        assert (options.chunk_size, options.chunk_overlap) == (1000, 200)
        assert (options.min_chunk_size, options.max_chunk_size) == (100, 2000)

    def test_tenant_max_defaults_to_twice_chunk_size(self) -> None:
        """A tenant that only sets chunk_size gets max_chunk_size = 2x."""
        service = ChunkingService(store_returning(TenantConfig(chunk_size=400)))
        options = service.resolve_options("acme")
        assert options.chunk_size == 400
        assert options.max_chunk_size == 800

    def test_tenant_explicit_max_kept(self) -> None:
        tenant = TenantConfig(strategy="hybrid", chunk_size=400, max_chunk_size=500)
        options = ChunkingService(store_returning(tenant)).resolve_options("acme")
        assert options.strategy == "hybrid"
        assert options.max_chunk_size == 500

    def test_config_backed_store(self) -> None:
        """Tenants from the config file apply only to their own tenant."""
        config = Config(tenants={"acme": TenantConfig(strategy="overlapping")})
        service = ChunkingService(ConfigTenantSettingsStore(config))
        assert service.resolve_options("acme").strategy == "overlapping"
        assert service.resolve_options("other").strategy == "semantic"

    def test_overrides_win_and_none_ignored(self) -> None:
        service = ChunkingService(store_returning(TenantConfig(chunk_size=400)))
        options = service.resolve_options("acme", {"chunk_size": 300, "strategy": None})
        assert options.chunk_size == 300
        assert options.strategy == "semantic"

    def test_failing_store_uses_defaults(self) -> None:
        """A settings store error is logged and treated as no tenant settings."""
        settings = MagicMock()
        settings.get_chunking_defaults.side_effect = RuntimeError("db down")
        options = ChunkingService(settings).resolve_options("acme")
        assert options.chunk_size == 1000

    def test_unknown_strategy_override(self) -> None:
        with pytest.raises(ChunkingError):
            ChunkingService().resolve_options("acme", {"strategy": "magic"})


class TestChunkDocument:
    def test_chunks_match_source(self) -> None:
        result = ChunkingService().chunk_document(
            TEXT, "acme", {"chunk_size": 10, "chunk_overlap": 0, "min_chunk_size": 1}
        )

        assert result.metadata.strategy == "semantic"
        assert result.metadata.total_chunks == len(result.chunks) > 1
        assert result.metadata.processing_time >= 0
        for chunk in result.chunks:
            assert TEXT[chunk.start_offset : chunk.end_offset] == chunk.content

    def test_strategy_failure_wrapped(self) -> None:
        """Unexpected strategy errors surface as ChunkingError."""
        service = ChunkingService()
        broken = MagicMock()
        broken.chunk.side_effect = ValueError("boom")
        service._chunkers["semantic"] = broken

        with pytest.raises(ChunkingError, match="Semantic chunking failed"):
            service.chunk_document(TEXT, "acme")

    def test_validation_never_raises(self) -> None:
        """A broken validator is logged; the chunks are still returned."""
        with patch(
            "kbforge.chunking.service.validate_chunks", side_effect=RuntimeError("bad")
        ):
            result = ChunkingService().chunk_document(TEXT, "acme")
        assert result.chunks


class TestOptimalStrategy:
    @pytest.fixture
    def service(self) -> ChunkingService:
        return ChunkingService()

    def test_structured_pdf_is_hierarchical(self, service: ChunkingService) -> None:
        content = "Contents\n1. Scope\n2. Terms"
        assert service.get_optimal_strategy(content, "pdf").strategy == "hierarchical"

    def test_plain_word_stays_semantic(self, service: ChunkingService) -> None:
        assert service.get_optimal_strategy("Just prose.", "word").strategy == "semantic"

    def test_markdown_headings(self, service: ChunkingService) -> None:
        assert service.get_optimal_strategy("# Title\n\nBody.", "markdown").strategy == (
            "hierarchical"
        )
        assert service.get_optimal_strategy("No headings.", "text").strategy == "semantic"

    def test_code_uses_delimiters(self, service: ChunkingService) -> None:
        options = service.get_optimal_strategy("x = 1;\ny = 2;", "code")
        assert options.strategy == "semantic"
        assert options.respect_sentences is False
        assert options.custom_delimiters == CODE_DELIMITERS

    def test_web_is_hybrid(self, service: ChunkingService) -> None:
        assert service.get_optimal_strategy("<p>page</p>", "web").strategy == "hybrid"

    @pytest.mark.parametrize(
        "length,size,overlap",
        [(100, 500, 100), (10000, 1000, 200), (60000, 1500, 300)],
    )
    def test_sizes_follow_content_length(
        self, service: ChunkingService, length: int, size: int, overlap: int
    ) -> None:
        options = service.get_optimal_strategy("a" * length, "text")
        assert (options.chunk_size, options.chunk_overlap) == (size, overlap)

    def test_analyze_content(self, service: ChunkingService) -> None:
        analysis = service.analyze_content("# Notes\n\n- one\n- two\n")
        assert analysis["has_headings"]
        assert analysis["has_lists"]
        assert analysis["word_count"] > 0


class TestRechunk:
    def test_requires_repository(self) -> None:
        with pytest.raises(ProcessingError):
            ChunkingService().rechunk_document("d1", "acme")

    def test_unknown_document(self) -> None:
        service = ChunkingService(documents=InMemoryDocumentRepository())
        with pytest.raises(NotFoundError):
            service.rechunk_document("d1", "acme")

    def test_replaces_chunks_and_strategy(self) -> None:
        documents = InMemoryDocumentRepository()
        documents.save(Document(id="d1", tenant_id="acme", title="T", content=TEXT))
        service = ChunkingService(documents=documents)

        result = service.rechunk_document(
            "d1", "acme", {"strategy": "overlapping", "chunk_size": 20, "chunk_overlap": 5}
        )

        document = documents.get("acme", "d1")
        assert document.chunks == result.chunks
        assert document.chunking_strategy == "overlapping"

    def test_stats(self) -> None:
        documents = InMemoryDocumentRepository()
        documents.save(Document(id="d1", tenant_id="acme", title="T", content=TEXT))
        documents.save(Document(id="d2", tenant_id="acme", title="U", content=TEXT))
        service = ChunkingService(documents=documents)
        service.rechunk_document("d1", "acme", {"strategy": "hybrid"})

        stats = service.get_chunking_stats("acme")

        assert stats["total_documents"] == 2
        assert stats["total_chunks"] == len(documents.get("acme", "d1").chunks)
        assert stats["strategy_distribution"] == {"hybrid": 1}
        assert ChunkingService().get_chunking_stats("acme")["total_documents"] == 0
