"""Fixed-window chunking strategy with constant overlap.

Slides a window of ``chunk_size`` estimated tokens (``chunk_size * 4``
characters) over the text, advancing by ``chunk_size - chunk_overlap``
tokens each step. Sentence and paragraph boundaries are ignored, which suits
content such as code or logs. Each window is trimmed of surrounding
whitespace; offsets always match the trimmed content.
"""

from __future__ import annotations

from statistics import mean, pvariance
from typing import Dict, List

from kbforge.chunking.analyzers import Span, split_sentences
from kbforge.chunking.models import Chunk, ChunkingOptions, ChunkingResult, build_result, reindex
from kbforge.chunking.semantic_chunker import make_chunk
from kbforge.core.exceptions import ChunkingError

CHARS_PER_TOKEN = 4


def _trimmed(text: str, start: int, end: int) -> Span:
    while start < end and text[start].isspace():
        start += 1
    while end > start and text[end - 1].isspace():
        end -= 1
    return start, end


class OverlappingChunker:
    """Sliding-window chunker."""

    strategy = "overlapping"

    def chunk(self, content: str, options: ChunkingOptions) -> ChunkingResult:
        if options.chunk_overlap >= options.chunk_size:
            raise ChunkingError(
                f"chunk_overlap ({options.chunk_overlap}) must be smaller than "
                f"chunk_size ({options.chunk_size}) for overlapping windows"
            )
        window = options.chunk_size * CHARS_PER_TOKEN
        step = max(1, (options.chunk_size - options.chunk_overlap) * CHARS_PER_TOKEN)

        chunks: List[Chunk] = []
        position = 0
        while position < len(content):
            window_end = min(position + window, len(content))
            start, end = _trimmed(content, position, window_end)
            if end > start:
                chunks.append(make_chunk(content, start, end))
            if window_end >= len(content):
                break
            position += step

        chunks = self._post_process(content, reindex(chunks), options)
        return build_result(chunks, self.strategy)

    def _post_process(
        self, source: str, chunks: List[Chunk], options: ChunkingOptions
    ) -> List[Chunk]:
        processed: List[Chunk] = []
        for chunk in chunks:
            if chunk.token_count < options.min_chunk_size:
                chunk.metadata.is_too_small = True
            if chunk.token_count > options.max_chunk_size:
                processed.extend(self._split_oversized(source, chunk, options))
            else:
                processed.append(chunk)

        reindex(processed)
        for previous, current in zip(processed, processed[1:]):
            current.metadata.actual_overlap = max(
                0,
                min(previous.end_offset, current.end_offset)
                - max(previous.start_offset, current.start_offset),
            )
        return processed

    @staticmethod
    def _split_oversized(
        source: str, chunk: Chunk, options: ChunkingOptions
    ) -> List[Chunk]:
        """Cut a chunk into max_chunk_size windows without overlap."""
        size = options.max_chunk_size * CHARS_PER_TOKEN
        pieces = []
        for offset in range(chunk.start_offset, chunk.end_offset, size):
            start, end = _trimmed(source, offset, min(offset + size, chunk.end_offset))
            if end <= start:
                continue
            piece = make_chunk(source, start, end)
            piece.metadata.is_sub_chunk = True
            piece.metadata.parent_chunk = chunk.chunk_index
            pieces.append(piece)
        return pieces


def analyze_overlap_quality(chunks: List[Chunk]) -> Dict[str, float]:
    """
    Summarise how consistent the overlap between adjacent chunks is.

    Returns:
        Dict with average_overlap (chars), overlap_consistency and
        context_preservation (both 0..1) and their mean as quality_score
    """
    if len(chunks) < 2:
        return {
            "average_overlap": 0.0,
            "overlap_consistency": 1.0,
            "context_preservation": 1.0,
            "quality_score": 1.0,
        }

    overlaps = [chunk.metadata.actual_overlap or 0 for chunk in chunks[1:]]
    average = mean(overlaps)
    consistency = max(0.0, 1 - pvariance(overlaps, average) / (average + 1))
    preservation = min(1.0, average / 100)
    return {
        "average_overlap": average,
        "overlap_consistency": consistency,
        "context_preservation": preservation,
        "quality_score": (consistency + preservation) / 2,
    }


def optimize_overlap_size(content: str, base_overlap: int) -> int:
    """Suggest an overlap (chars) that covers whole sentences of this text."""
    sentences = split_sentences(content)
    if not sentences:
        return base_overlap
    average_length = sum(len(s) for s in sentences) / len(sentences)
    if average_length > 100:
        return max(base_overlap, int(average_length * 1.5))
    if average_length < 50:
        return max(base_overlap, int(average_length * 3))
    return base_overlap

