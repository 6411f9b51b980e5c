"""
Chunk quality checks.

validate_chunks() produces QualityWarning entries for chunks that fall
outside the configured bounds; callers log them and keep the chunks.
analyze_chunk_quality() summarises a finished result.
"""

from collections import Counter
from dataclasses import dataclass
from statistics import mean, pstdev
from typing import Any, Dict, List

from kbforge.chunking.analyzers import ends_with_sentence
from kbforge.chunking.models import Chunk, ChunkingOptions


@dataclass
class QualityWarning:
    """One validation finding for one chunk."""

    chunk_index: int
    code: str  # too_small, too_large, empty, incomplete_sentence
    message: str


def validate_chunks(chunks: List[Chunk], options: ChunkingOptions) -> List[QualityWarning]:
    """
    Check chunks against size bounds and sentence completeness.

    Args:
        chunks: Chunks to check
        options: Options the chunks were produced with

    Returns:
        Warnings in chunk order; empty when every chunk passes
    """
    warnings: List[QualityWarning] = []
    for chunk in chunks:
        index = chunk.chunk_index
        if chunk.token_count < options.min_chunk_size:
            warnings.append(
                QualityWarning(
                    index, "too_small", f"Chunk {index} is too small ({chunk.token_count} tokens)"
                )
            )
        if chunk.token_count > options.max_chunk_size:
            warnings.append(
                QualityWarning(
                    index, "too_large", f"Chunk {index} is too large ({chunk.token_count} tokens)"
                )
            )
        if not chunk.content.strip():
            warnings.append(QualityWarning(index, "empty", f"Chunk {index} is empty"))
        elif options.respect_sentences and not ends_with_sentence(chunk.content):
            warnings.append(
                QualityWarning(
                    index,
                    "incomplete_sentence",
                    f"Chunk {index} doesn't end with a complete sentence",
                )
            )
    return warnings


def analyze_chunk_quality(chunks: List[Chunk]) -> Dict[str, Any]:
    """Size spread, sentence completeness and type mix of a set of chunks."""
    if not chunks:
        return {
            "chunk_count": 0,
            "average_tokens": 0.0,
            "token_stddev": 0.0,
            "size_variance_ratio": 0.0,
            "sentence_completeness": 0.0,
            "type_distribution": {},
            "flagged": {"too_small": 0, "sub_chunks": 0, "merged": 0},
        }

    sizes = [chunk.token_count for chunk in chunks]
    average = mean(sizes)
    stddev = pstdev(sizes)
    complete = sum(1 for chunk in chunks if ends_with_sentence(chunk.content))

    return {
        "chunk_count": len(chunks),
        "average_tokens": average,
        "token_stddev": stddev,
        "size_variance_ratio": stddev / average if average else 0.0,
        "sentence_completeness": complete / len(chunks),
        "type_distribution": dict(Counter(chunk.metadata.type for chunk in chunks)),
        "flagged": {
            "too_small": sum(1 for c in chunks if c.metadata.is_too_small),
            "sub_chunks": sum(1 for c in chunks if c.metadata.is_sub_chunk),
            "merged": sum(1 for c in chunks if c.metadata.is_merged),
        },
    }
