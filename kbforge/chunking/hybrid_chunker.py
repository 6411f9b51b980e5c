"""Hybrid chunking: structure first, then sentence-level sizing.

Runs the hierarchical strategy without its own oversize splitting. Any
resulting chunk above ``max_chunk_size`` is chunked again on its own with
the semantic strategy; the pieces are translated back into document offsets
and point at the section chunk they came from.
"""

from __future__ import annotations

from typing import List

from kbforge.chunking.hierarchical_chunker import HierarchicalChunker
from kbforge.chunking.models import Chunk, ChunkingOptions, ChunkingResult, build_result, reindex
from kbforge.chunking.semantic_chunker import SemanticChunker


class HybridChunker:
    strategy = "hybrid"

    def __init__(self) -> None:
        self._hierarchical = HierarchicalChunker(split_oversized=False)
        self._semantic = SemanticChunker()

    def chunk(self, content: str, options: ChunkingOptions) -> ChunkingResult:
        sections = self._hierarchical.chunk(content, options).chunks

        chunks: List[Chunk] = []
        for parent in sections:
            if parent.token_count <= options.max_chunk_size:
                chunks.append(parent)
                continue
            chunks.extend(self._rechunk(parent, options))

        return build_result(reindex(chunks), self.strategy)

    def _rechunk(self, parent: Chunk, options: ChunkingOptions) -> List[Chunk]:
        pieces = self._semantic.chunk(parent.content, options).chunks
        for piece in pieces:
            piece.start_offset += parent.start_offset
            piece.end_offset += parent.start_offset
            piece.metadata.parent_chunk = parent.chunk_index
            piece.metadata.is_sub_chunk = True
            piece.metadata.level = parent.metadata.level
            piece.metadata.title = parent.metadata.title
        return pieces
