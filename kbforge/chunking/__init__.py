"""
Text chunking for kbforge.

Four strategies share one contract, ``chunk(content, options) ->
ChunkingResult``:

- SemanticChunker: sentence accumulation with sentence-level overlap
- HierarchicalChunker: heading-delimited sections, paragraph splits
- OverlappingChunker: fixed sliding window, boundaries ignored
- HybridChunker: hierarchical, then semantic for oversized sections

ChunkingService resolves tenant options and picks the strategy.
"""

from kbforge.chunking.analyzers import estimate_tokens
from kbforge.chunking.hierarchical_chunker import HierarchicalChunker
from kbforge.chunking.hybrid_chunker import HybridChunker
from kbforge.chunking.models import (
    STRATEGIES,
    Chunk,
    ChunkingMetadata,
    ChunkingOptions,
    ChunkingResult,
    ChunkMetadata,
)
from kbforge.chunking.overlapping_chunker import OverlappingChunker
from kbforge.chunking.semantic_chunker import SemanticChunker
from kbforge.chunking.service import ChunkingService

__all__ = [
    "STRATEGIES",
    "Chunk",
    "ChunkMetadata",
    "ChunkingMetadata",
    "ChunkingOptions",
    "ChunkingResult",
    "ChunkingService",
    "HierarchicalChunker",
    "HybridChunker",
    "OverlappingChunker",
    "SemanticChunker",
    "estimate_tokens",
]
