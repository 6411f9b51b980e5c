"""Chunk data types shared by every chunking strategy.

Sizes (chunk_size, chunk_overlap, min/max) are in estimated tokens, see
analyzers.estimate_tokens(). Offsets index into the text that was passed to
chunk(); a chunk's content is always ``source[start_offset:end_offset]``.
"""

from __future__ import annotations

from dataclasses import asdict, dataclass, field, fields, replace
from typing import Any, Dict, List, Optional

from kbforge.core.exceptions import ChunkingError

STRATEGIES = ("semantic", "hierarchical", "overlapping", "hybrid")


@dataclass
class ChunkingOptions:
    """Options accepted by every strategy."""

    strategy: str = "semantic"
    chunk_size: int = 1000
    chunk_overlap: int = 200
    min_chunk_size: int = 100
    max_chunk_size: int = 2000
    preserve_structure: bool = True
    respect_sentences: bool = True
    respect_paragraphs: bool = True
    custom_delimiters: Optional[List[str]] = None

    def __post_init__(self) -> None:
        if self.strategy not in STRATEGIES:
            raise ChunkingError(f"Unsupported chunking strategy: {self.strategy}")
        if self.chunk_size < 1:
            raise ChunkingError(f"chunk_size must be positive, got {self.chunk_size}")
        if self.chunk_overlap < 0:
            raise ChunkingError(f"chunk_overlap must not be negative, got {self.chunk_overlap}")
        if self.min_chunk_size > self.max_chunk_size:
            raise ChunkingError(
                f"min_chunk_size ({self.min_chunk_size}) exceeds "
                f"max_chunk_size ({self.max_chunk_size})"
            )

    def merged(self, overrides: Optional[Dict[str, Any]] = None) -> "ChunkingOptions":
        """Return a copy with the non-None keys of overrides applied."""
        if not overrides:
            return replace(self)
        known = {f.name for f in fields(self)}
        changes = {k: v for k, v in overrides.items() if k in known and v is not None}
        return replace(self, **changes)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class ChunkMetadata:
    """Classification and provenance of one chunk."""

    type: str = "paragraph"
    structure: Dict[str, Any] = field(default_factory=dict)
    parent_chunk: Optional[int] = None
    is_sub_chunk: bool = False
    is_too_small: bool = False
    is_merged: bool = False
    level: Optional[int] = None
    title: Optional[str] = None
    actual_overlap: Optional[int] = None


@dataclass
class Chunk:
    """A bounded span of document text."""

    content: str
    start_offset: int
    end_offset: int
    chunk_index: int
    token_count: int
    metadata: ChunkMetadata = field(default_factory=ChunkMetadata)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class ChunkingMetadata:
    """Aggregate figures for one chunk() call."""

    total_chunks: int
    total_tokens: int
    average_chunk_size: float
    strategy: str
    processing_time: float = 0.0  # milliseconds


@dataclass
class ChunkingResult:
    """Chunks plus their aggregate metadata."""

    chunks: List[Chunk]
    metadata: ChunkingMetadata

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


def reindex(chunks: List[Chunk]) -> List[Chunk]:
    """Renumber chunk_index 0..n-1 in list order."""
    for index, chunk in enumerate(chunks):
        chunk.chunk_index = index
    return chunks


def build_result(chunks: List[Chunk], strategy: str) -> ChunkingResult:
    """Wrap chunks with totals; processing_time is filled in by the caller."""
    total_tokens = sum(chunk.token_count for chunk in chunks)
    average = total_tokens / len(chunks) if chunks else 0.0
    return ChunkingResult(
        chunks=chunks,
        metadata=ChunkingMetadata(
            total_chunks=len(chunks),
            total_tokens=total_tokens,
            average_chunk_size=average,
            strategy=strategy,
        ),
    )
