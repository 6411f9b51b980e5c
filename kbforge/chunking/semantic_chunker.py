"""Semantic chunking strategy.

Accumulates whole sentences into chunks of about ``chunk_size`` estimated
tokens. Boundaries are lexical: sentences come from the configured
SentenceSplitter (terminal punctuation by default, literal delimiters when
``custom_delimiters`` is set), never from embeddings.

Overlap
-------
When ``chunk_overlap > 0`` each new chunk is seeded with the trailing
sentences of the chunk just closed, taken backwards while their combined
length stays within ``chunk_overlap`` characters. Adjacent chunks therefore
share text and their offsets overlap by exactly that region.

Post-processing
---------------
1. A chunk under ``min_chunk_size`` tokens is merged forward into its
   successor when the token sum stays within ``max_chunk_size``; merges
   cascade. A small chunk that cannot merge is kept and flagged
   ``is_too_small``.
2. A chunk over ``max_chunk_size`` is split again sentence by sentence; its
   pieces carry ``is_sub_chunk`` and ``parent_chunk``.
3. Chunks are re-indexed 0..n-1.
"""

from __future__ import annotations

from typing import List, Optional

from kbforge.chunking.analyzers import (
    PARAGRAPH_BREAK,
    SentenceSplitter,
    Span,
    analyze_structure,
    classify_chunk,
    estimate_tokens,
    get_splitter,
    locate_segments,
)
from kbforge.chunking.models import (
    Chunk,
    ChunkingOptions,
    ChunkingResult,
    ChunkMetadata,
    build_result,
    reindex,
)


def make_chunk(source: str, start: int, end: int, index: int = 0) -> Chunk:
    """Create a chunk for source[start:end] with classification metadata."""
    content = source[start:end]
    return Chunk(
        content=content,
        start_offset=start,
        end_offset=end,
        chunk_index=index,
        token_count=estimate_tokens(content),
        metadata=ChunkMetadata(
            type=classify_chunk(content),
            structure=analyze_structure(content),
        ),
    )


def merge_chunks(source: str, first: Chunk, second: Chunk) -> Chunk:
    """Chunk covering both inputs, carrying the second one's section metadata."""
    start = min(first.start_offset, second.start_offset)
    end = max(first.end_offset, second.end_offset)
    merged = make_chunk(source, start, end, second.chunk_index)
    merged.metadata.is_merged = True
    merged.metadata.level = second.metadata.level
    merged.metadata.title = second.metadata.title
    return merged


class SemanticChunker:
    """Sentence-accumulating chunker with sentence-level overlap."""

    strategy = "semantic"

    def __init__(self, splitter: Optional[SentenceSplitter] = None) -> None:
        """
        Args:
            splitter: Sentence splitter to use. When omitted, one is chosen
                per call from ``options.custom_delimiters``.
        """
        self._splitter = splitter

    def chunk(self, content: str, options: ChunkingOptions) -> ChunkingResult:
        """
        Split content into sentence-aligned chunks.

        Args:
            content: Source text
            options: Sizes and flags

        Returns:
            ChunkingResult whose chunks satisfy the post-processing rules
        """
        splitter = self._splitter or get_splitter(options.custom_delimiters)
        spans = locate_segments(content, splitter.split(content))
        spans = [span for span in spans if span[1] > span[0]]

        chunks = reindex(self._accumulate(content, spans, options))
        chunks = self.post_process(content, chunks, options, splitter)
        return build_result(chunks, self.strategy)

    def _accumulate(
        self, source: str, spans: List[Span], options: ChunkingOptions
    ) -> List[Chunk]:
        """Group sentence spans into chunks of about chunk_size tokens."""
        chunks: List[Chunk] = []
        first = 0  # index of the first sentence in the open chunk
        running = 0  # running token estimate of the open chunk

        for i, (start, end) in enumerate(spans):
            tokens = estimate_tokens(source[start:end])

            if i == first:
                running = tokens
                continue

            paragraph_break = options.respect_paragraphs and self._crosses_paragraph(
                source, spans[i - 1][1], start
            )
            if paragraph_break and running >= options.min_chunk_size:
                chunks.append(make_chunk(source, spans[first][0], spans[i - 1][1]))
                first = i
                running = tokens
                continue

            if running + tokens > options.chunk_size:
                chunks.append(make_chunk(source, spans[first][0], spans[i - 1][1]))
                first = self._overlap_start(spans, first, i, options.chunk_overlap)
                running = sum(
                    estimate_tokens(source[s:e]) for s, e in spans[first : i + 1]
                )
                continue

            running += tokens

        if spans and first < len(spans):
            chunks.append(make_chunk(source, spans[first][0], spans[-1][1]))
        return chunks

    @staticmethod
    def _crosses_paragraph(source: str, prev_end: int, next_start: int) -> bool:
        return bool(PARAGRAPH_BREAK.search(source, prev_end, next_start))

    @staticmethod
    def _overlap_start(spans: List[Span], first: int, boundary: int, overlap: int) -> int:
        """
        Index of the first sentence of the next chunk.

        Walks back from the boundary over the closed chunk's sentences while
        their combined length stays within overlap characters.
        """
        if overlap <= 0:
            return boundary

        start = boundary
        total = 0
        for j in range(boundary - 1, first - 1, -1):
            length = spans[j][1] - spans[j][0]
            if total + length > overlap:
                break
            total += length
            start = j
        return start

    def post_process(
        self,
        source: str,
        chunks: List[Chunk],
        options: ChunkingOptions,
        splitter: Optional[SentenceSplitter] = None,
    ) -> List[Chunk]:
        """Merge undersized chunks forward, re-split oversized ones, re-index."""
        splitter = splitter or get_splitter(options.custom_delimiters)
        pending = list(chunks)
        processed: List[Chunk] = []

        i = 0
        while i < len(pending):
            chunk = pending[i]
            if chunk.token_count < options.min_chunk_size and i + 1 < len(pending):
                successor = pending[i + 1]
                if chunk.token_count + successor.token_count <= options.max_chunk_size:
                    merged = merge_chunks(source, chunk, successor)
                    if merged.token_count <= options.max_chunk_size:
                        pending[i + 1] = merged
                        i += 1
                        continue

            if chunk.token_count < options.min_chunk_size:
                chunk.metadata.is_too_small = True

            if chunk.token_count > options.max_chunk_size:
                processed.extend(self.split_large_chunk(source, chunk, options, splitter))
            else:
                processed.append(chunk)
            i += 1

        return reindex(processed)

    def split_large_chunk(
        self,
        source: str,
        chunk: Chunk,
        options: ChunkingOptions,
        splitter: Optional[SentenceSplitter] = None,
    ) -> List[Chunk]:
        """
        Re-split an oversized chunk on sentence boundaries.

        Pieces are filled up to the smaller of chunk_size and max_chunk_size.
        A single sentence longer than that is kept whole.
        """
        budget = min(options.chunk_size, options.max_chunk_size)
        splitter = splitter or get_splitter(options.custom_delimiters)
        spans = locate_segments(
            source[: chunk.end_offset],
            splitter.split(chunk.content),
            chunk.start_offset,
        )
        spans = [span for span in spans if span[1] > span[0]]
        if len(spans) < 2:
            chunk.metadata.is_sub_chunk = True
            chunk.metadata.parent_chunk = chunk.chunk_index
            return [chunk]

        pieces: List[Chunk] = []
        first = 0
        running = 0
        for i, (start, end) in enumerate(spans):
            tokens = estimate_tokens(source[start:end])
            if i > first and running + tokens > budget:
                pieces.append(make_chunk(source, spans[first][0], spans[i - 1][1]))
                first = i
                running = tokens
            else:
                running += tokens
        pieces.append(make_chunk(source, spans[first][0], spans[-1][1]))

        for piece in pieces:
            piece.metadata.is_sub_chunk = True
            piece.metadata.parent_chunk = chunk.chunk_index
            piece.metadata.level = chunk.metadata.level
            piece.metadata.title = chunk.metadata.title
        return pieces
