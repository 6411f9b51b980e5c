"""Tests for the four chunking strategies.

Every strategy must return chunks whose content is exactly the source slice
at their offsets, indexed 0..n-1.
"""

from __future__ import annotations

from typing import List

import pytest

from kbforge.chunking import (
    Chunk,
    ChunkingOptions,
    HierarchicalChunker,
    HybridChunker,
    OverlappingChunker,
    SemanticChunker,
    estimate_tokens,
)
from kbforge.chunking.hierarchical_chunker import (
    analyze_structure_quality,
    find_headings,
    parse_sections,
)
from kbforge.chunking.overlapping_chunker import analyze_overlap_quality, optimize_overlap_size
from kbforge.chunking.semantic_chunker import make_chunk
from kbforge.core.exceptions import ChunkingError

S1 = "a" * 39 + "."
S2 = "b" * 39 + "."
S3 = "c" * 39 + "."

MARKDOWN = """# Guide

Welcome to the guide. It explains how documents are ingested.

## Install

Install the package. Then configure the worker.

## Usage

Submit files as a batch. Check the batch status until it completes.
"""

PROSE = " ".join(
    f"Sentence number {i} talks about ingestion and chunk boundaries." for i in range(40)
)


def assert_well_formed(source: str, chunks: List[Chunk]) -> None:
    assert [c.chunk_index for c in chunks] == list(range(len(chunks)))
    for chunk in chunks:
        assert 0 <= chunk.start_offset <= chunk.end_offset <= len(source)
        assert source[chunk.start_offset : chunk.end_offset] == chunk.content
        assert chunk.token_count == estimate_tokens(chunk.content)


class TestEstimateTokens:
    @pytest.mark.parametrize("text,expected", [("", 0), ("abc", 1), ("abcd", 1), ("abcde", 2)])
    def test_four_chars_per_token(self, text: str, expected: int) -> None:
        """Tokens are ceil(len / 4)."""
        assert estimate_tokens(text) == expected


class TestChunkingOptions:
    def test_unknown_strategy(self) -> None:
        with pytest.raises(ChunkingError):
            ChunkingOptions(strategy="fancy")

    def test_min_above_max(self) -> None:
        with pytest.raises(ChunkingError):
            ChunkingOptions(min_chunk_size=500, max_chunk_size=100)

    def test_merged_ignores_none(self) -> None:
        """Overrides with None values keep the current setting."""
        options = ChunkingOptions().merged({"chunk_size": 300, "strategy": None, "bogus": 1})
        assert options.chunk_size == 300
        assert options.strategy == "semantic"


class TestSemanticChunker:
    def test_sentence_overlap(self) -> None:
        """Three 40-char sentences with room for one sentence of overlap
        give [S1 S2] and [S2 S3]."""
        text = f"{S1} {S2} {S3}"
        options = ChunkingOptions(
            chunk_size=15, chunk_overlap=45, min_chunk_size=12, max_chunk_size=2000
        )

        result = SemanticChunker().chunk(text, options)

        assert [c.content for c in result.chunks] == [f"{S1} {S2}", f"{S2} {S3}"]
        assert result.chunks[1].start_offset < result.chunks[0].end_offset
        assert_well_formed(text, result.chunks)

    def test_no_overlap(self) -> None:
        """Without overlap chunks do not share text."""
        text = f"{S1} {S2} {S3}"
        options = ChunkingOptions(chunk_size=10, chunk_overlap=0, min_chunk_size=1)

        chunks = SemanticChunker().chunk(text, options).chunks

        assert [c.content for c in chunks] == [S1, S2, S3]
        for previous, current in zip(chunks, chunks[1:]):
            assert previous.end_offset <= current.start_offset

    def test_small_chunk_merged_forward(self) -> None:
        """A chunk below min_chunk_size is merged into its successor."""
        text = f"Hi.\n\n{S1} {S2}"
        options = ChunkingOptions(chunk_size=10, chunk_overlap=0, min_chunk_size=5)

        chunks = SemanticChunker().chunk(text, options).chunks

        assert len(chunks) == 2
        assert chunks[0].content == f"Hi.\n\n{S1}"
        assert chunks[0].metadata.is_merged
        assert chunks[1].content == S2

    def test_unmergeable_small_chunk_flagged(self) -> None:
        """The last small chunk has no successor and is flagged."""
        options = ChunkingOptions(chunk_size=100, chunk_overlap=0, min_chunk_size=50)
        chunks = SemanticChunker().chunk("Short text.", options).chunks

        assert len(chunks) == 1
        assert chunks[0].metadata.is_too_small

    def test_split_large_chunk(self) -> None:
        """An oversized chunk is re-split on sentences into sub-chunks."""
        parent = make_chunk(PROSE, 0, len(PROSE), index=4)
        options = ChunkingOptions(chunk_size=50, chunk_overlap=0, min_chunk_size=1)

        pieces = SemanticChunker().split_large_chunk(PROSE, parent, options)

        assert len(pieces) > 1
        assert all(p.metadata.is_sub_chunk and p.metadata.parent_chunk == 4 for p in pieces)
        assert all(p.token_count <= 50 for p in pieces)
        assert pieces[0].start_offset == 0
        assert pieces[-1].end_offset == len(PROSE)
        for piece in pieces:
            assert PROSE[piece.start_offset : piece.end_offset] == piece.content

    def test_single_long_sentence_kept_whole(self) -> None:
        text = "word " * 100 + "end."
        parent = make_chunk(text, 0, len(text))
        pieces = SemanticChunker().split_large_chunk(
            text, parent, ChunkingOptions(chunk_size=10, min_chunk_size=1)
        )
        assert len(pieces) == 1
        assert pieces[0].metadata.is_sub_chunk

    def test_custom_delimiters(self) -> None:
        """Code is split on the given delimiters instead of sentences."""
        code = "x = 1;\ny = 2;\nz = 3;"
        options = ChunkingOptions(
            chunk_size=2, chunk_overlap=0, min_chunk_size=1, custom_delimiters=[";"]
        )
        chunks = SemanticChunker().chunk(code, options).chunks
        assert [c.content for c in chunks] == ["x = 1;", "y = 2;", "z = 3;"]

    def test_idempotent(self) -> None:
        """Same input and options give the same chunks."""
        options = ChunkingOptions(chunk_size=50, chunk_overlap=40, min_chunk_size=10)
        first = SemanticChunker().chunk(PROSE, options).chunks
        second = SemanticChunker().chunk(PROSE, options).chunks
        assert [(c.start_offset, c.end_offset) for c in first] == [
            (c.start_offset, c.end_offset) for c in second
        ]

    def test_empty_content(self) -> None:
        result = SemanticChunker().chunk("", ChunkingOptions())
        assert result.chunks == []
        assert result.metadata.total_chunks == 0


    def test_sub_chunks_point_at_their_parent(self) -> None:
        """Two oversized paragraph chunks are each re-split under max_chunk_size."""
        first = " ".join(ch * 39 + "." for ch in "abcd")
        second = " ".join(ch * 39 + "." for ch in "efgh")
        text = f"{first}\n\n{second}"
        options = ChunkingOptions(
            chunk_size=100, chunk_overlap=0, min_chunk_size=1, max_chunk_size=25
        )

        chunks = SemanticChunker().chunk(text, options).chunks

        assert [c.metadata.parent_chunk for c in chunks] == [0, 0, 1, 1]
        assert all(c.metadata.is_sub_chunk for c in chunks)
        assert all(c.token_count <= options.max_chunk_size for c in chunks)
        assert chunks[2].content.startswith("e")
        assert_well_formed(text, chunks)

    def test_resplit_respects_max_when_chunk_size_is_larger(self) -> None:
        parent = make_chunk(PROSE, 0, len(PROSE))
        options = ChunkingOptions(
            chunk_size=500, chunk_overlap=0, min_chunk_size=1, max_chunk_size=40
        )

        pieces = SemanticChunker().split_large_chunk(PROSE, parent, options)

        assert len(pieces) > 1
        assert all(piece.token_count <= 40 for piece in pieces)

class TestHeadings:
    def test_markdown_and_structural_headings(self) -> None:
        text = "# Title\n\nBody.\n\nCHAPTER 2\n\nMore body.\n\nSetext\n------\n\nEnd."
        headings = find_headings(text)
        assert [(h.title, h.level) for h in headings] == [
            ("Title", 1),
            ("CHAPTER 2", 1),
            ("Setext", 2),
        ]

    def test_sections_skip_empty_headings(self) -> None:
        """A heading followed directly by another heading has no section."""
        sections = parse_sections("# A\n## B\n\nText under B.")
        assert [s.title for s in sections] == ["B"]


class TestHierarchicalChunker:
    def test_one_chunk_per_section(self) -> None:
        options = ChunkingOptions(
            strategy="hierarchical", chunk_size=200, chunk_overlap=0, min_chunk_size=1
        )
        chunks = HierarchicalChunker().chunk(MARKDOWN, options).chunks

        assert [c.metadata.title for c in chunks] == ["Guide", "Install", "Usage"]
        assert [c.metadata.level for c in chunks] == [1, 2, 2]
        assert all(c.metadata.type == "section" for c in chunks)
        assert chunks[1].content.startswith("## Install")
        assert_well_formed(MARKDOWN, chunks)

    def test_large_section_split_on_paragraphs(self) -> None:
        """A section over chunk_size is split; the heading stays in the first part."""
        body = "\n\n".join(f"Paragraph {i} has a few words in it." for i in range(12))
        text = f"# Long\n\n{body}"
        options = ChunkingOptions(
            strategy="hierarchical", chunk_size=40, chunk_overlap=0, min_chunk_size=1
        )

        chunks = HierarchicalChunker().chunk(text, options).chunks

        assert len(chunks) > 1
        assert chunks[0].content.startswith("# Long")
        assert all(c.metadata.structure.get("is_partial") for c in chunks)
        assert_well_formed(text, chunks)

    def test_small_sections_not_merged_across_headings(self) -> None:
        """Undersized chunks from different sections are not merged."""
        options = ChunkingOptions(
            strategy="hierarchical", chunk_size=200, chunk_overlap=0, min_chunk_size=100
        )
        chunks = HierarchicalChunker().chunk(MARKDOWN, options).chunks
        assert len(chunks) == 3
        assert all(c.metadata.is_too_small for c in chunks)

    def test_structure_quality(self) -> None:
        quality = analyze_structure_quality(MARKDOWN)
        assert quality["has_headings"]
        assert quality["heading_levels"] == [1, 2]
        assert 0 < quality["structure_score"] <= 1

    def test_plain_text_single_section(self) -> None:
        options = ChunkingOptions(strategy="hierarchical", min_chunk_size=1)
        chunks = HierarchicalChunker().chunk("No headings here.", options).chunks
        assert len(chunks) == 1
        assert chunks[0].metadata.level == 0


    def test_split_sections_keep_their_section_index(self) -> None:
        options = ChunkingOptions(
            strategy="hierarchical",
            chunk_size=200,
            chunk_overlap=0,
            min_chunk_size=1,
            max_chunk_size=8,
        )

        chunks = HierarchicalChunker().chunk(MARKDOWN, options).chunks

        parents = [c.metadata.parent_chunk for c in chunks]
        assert sorted(set(parents)) == [0, 1, 2]
        assert parents == sorted(parents)
        assert_well_formed(MARKDOWN, chunks)

class TestOverlappingChunker:
    def test_fixed_windows(self) -> None:
        """Windows of chunk_size*4 chars advance by (size - overlap)*4 chars."""
        text = "x" * 100
        options = ChunkingOptions(
            strategy="overlapping", chunk_size=10, chunk_overlap=5, min_chunk_size=1
        )

        chunks = OverlappingChunker().chunk(text, options).chunks

        assert [(c.start_offset, c.end_offset) for c in chunks] == [
            (0, 40),
            (20, 60),
            (40, 80),
            (60, 100),
        ]
        assert [c.metadata.actual_overlap for c in chunks[1:]] == [20, 20, 20]
        assert_well_formed(text, chunks)

    def test_overlap_quality(self) -> None:
        options = ChunkingOptions(
            strategy="overlapping", chunk_size=10, chunk_overlap=5, min_chunk_size=1
        )
        chunks = OverlappingChunker().chunk("y" * 100, options).chunks
        quality = analyze_overlap_quality(chunks)
        assert quality["average_overlap"] == 20
        assert quality["overlap_consistency"] == 1.0

    def test_optimize_overlap_for_short_sentences(self) -> None:
        """Short sentences raise the suggested overlap to three sentences."""
        text = "Short one. Another one. Third one here."
        assert optimize_overlap_size(text, 10) > 10
        assert optimize_overlap_size("", 10) == 10


    def test_split_windows_point_at_their_window(self) -> None:
        """Windows above max_chunk_size are cut in two; each piece names its window."""
        text = "x" * 100
        options = ChunkingOptions(
            strategy="overlapping",
            chunk_size=10,
            chunk_overlap=5,
            min_chunk_size=1,
            max_chunk_size=5,
        )

        chunks = OverlappingChunker().chunk(text, options).chunks

        assert [c.metadata.parent_chunk for c in chunks] == [0, 0, 1, 1, 2, 2, 3, 3]
        assert all(c.token_count <= 5 for c in chunks)
        assert_well_formed(text, chunks)

    @pytest.mark.parametrize("overlap", [10, 25])
    def test_overlap_not_below_size_rejected(self, overlap: int) -> None:
        options = ChunkingOptions(
            strategy="overlapping", chunk_size=10, chunk_overlap=overlap, min_chunk_size=1
        )
        with pytest.raises(ChunkingError):
            OverlappingChunker().chunk("z" * 1000, options)

class TestHybridChunker:
    def test_small_sections_kept(self) -> None:
        options = ChunkingOptions(strategy="hybrid", chunk_size=200, min_chunk_size=1)
        chunks = HybridChunker().chunk(MARKDOWN, options).chunks
        assert len(chunks) == 3
        assert_well_formed(MARKDOWN, chunks)

    def test_oversized_section_rechunked(self) -> None:
        """A section above max_chunk_size is split with the semantic strategy."""
        text = f"# Big\n\n{PROSE}\n\n# Small\n\nTiny section."
        options = ChunkingOptions(
            strategy="hybrid",
            chunk_size=60,
            chunk_overlap=0,
            min_chunk_size=1,
            max_chunk_size=80,
        )

        chunks = HybridChunker().chunk(text, options).chunks

        subs = [c for c in chunks if c.metadata.is_sub_chunk]
        assert subs
        assert all(c.metadata.title == "Big" for c in subs)
        assert chunks[-1].metadata.title == "Small"
        assert_well_formed(text, chunks)
