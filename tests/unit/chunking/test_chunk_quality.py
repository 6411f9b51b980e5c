"""Tests for chunk validation, quality summaries and document metadata."""

from __future__ import annotations

from kbforge.chunking.metadata_extractor import (
    detect_language,
    extract_document_metadata,
    extract_keywords,
)
from kbforge.chunking.models import ChunkingOptions
from kbforge.chunking.quality import analyze_chunk_quality, validate_chunks
from kbforge.chunking.semantic_chunker import make_chunk


class TestValidateChunks:
    def test_clean_chunks_have_no_warnings(self) -> None:
        source = "A complete sentence that is long enough."
        chunks = [make_chunk(source, 0, len(source))]
        options = ChunkingOptions(min_chunk_size=1, max_chunk_size=100)
        assert validate_chunks(chunks, options) == []

    def test_size_bounds(self) -> None:
        """Chunks outside min/max tokens are reported by code."""
        source = "Hi. " + "x" * 99 + "."
        chunks = [make_chunk(source, 0, 3, 0), make_chunk(source, 4, len(source), 1)]
        options = ChunkingOptions(min_chunk_size=2, max_chunk_size=10)

        warnings = validate_chunks(chunks, options)

        assert [(w.chunk_index, w.code) for w in warnings] == [(0, "too_small"), (1, "too_large")]

    def test_empty_chunk(self) -> None:
        chunks = [make_chunk("    ", 0, 4)]
        warnings = validate_chunks(chunks, ChunkingOptions(min_chunk_size=1))
        assert [w.code for w in warnings] == ["empty"]

    def test_incomplete_sentence_only_when_respected(self) -> None:
        """Mid-sentence endings are reported unless sentences are ignored."""
        chunks = [make_chunk("cut off in the middle of", 0, 24)]
        strict = ChunkingOptions(min_chunk_size=1)
        loose = ChunkingOptions(min_chunk_size=1, respect_sentences=False)

        assert [w.code for w in validate_chunks(chunks, strict)] == ["incomplete_sentence"]
        assert validate_chunks(chunks, loose) == []


class TestAnalyzeChunkQuality:
    def test_empty(self) -> None:
        report = analyze_chunk_quality([])
        assert report["chunk_count"] == 0
        assert report["type_distribution"] == {}

    def test_summary(self) -> None:
        source = "First sentence here. second part without end"
        first = make_chunk(source, 0, 20, 0)
        second = make_chunk(source, 21, len(source), 1)
        first.metadata.is_merged = True

        report = analyze_chunk_quality([first, second])

        assert report["chunk_count"] == 2
        assert report["sentence_completeness"] == 0.5
        assert report["type_distribution"] == {"paragraph": 2}
        assert report["flagged"]["merged"] == 1


class TestDocumentMetadata:
    def test_structure_counts(self) -> None:
        content = (
            "# Guide\n\nIntro text.\n\n## Steps\n\n- one\n- two\n\n"
            "| a | b |\n|---|---|\n| 1 | 2 |\n\n```python\nprint('hi')\n```\n"
        )
        meta = extract_document_metadata(content)

        assert [h["text"] for h in meta.headings] == ["Guide", "Steps"]
        assert meta.has_lists
        assert meta.has_tables
        assert meta.code_blocks[0].language == "python"
        assert meta.structure_score > 0

    def test_reading_time_rounds_up(self) -> None:
        meta = extract_document_metadata("word " * 201)
        assert meta.word_count == 201
        assert meta.reading_time == 2

    def test_language_guess(self) -> None:
        english = (
            "The cat sat on the mat and the dog lay by the door "
            "in the sun for a while, out of the rain."
        )
        assert detect_language(english) == "en"
        assert detect_language("zzz qqq") == "unknown"

    def test_keywords_skip_stop_words(self) -> None:
        keywords = extract_keywords("chunk chunk chunk index index about about about", limit=2)
        assert keywords == ["chunk", "index"]
        assert "about" not in extract_keywords("about about about index")
