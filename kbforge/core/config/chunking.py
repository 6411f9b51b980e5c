"""
Chunking configuration.

These are the defaults every tenant starts from; per-tenant overrides live
under the ``tenants:`` key of the config file.
"""

from dataclasses import dataclass
from typing import List, Optional


@dataclass
class ChunkingConfig:
    """Default chunking options (sizes in estimated tokens)."""

    strategy: str = "semantic"  # semantic, hierarchical, overlapping, hybrid
    chunk_size: int = 1000
    chunk_overlap: int = 200
    min_chunk_size: int = 100
    max_chunk_size: int = 2000
    preserve_structure: bool = True
    respect_sentences: bool = True
    respect_paragraphs: bool = True
    custom_delimiters: Optional[List[str]] = None


@dataclass
class TenantConfig:
    """Per-tenant overrides; unset fields fall back to ChunkingConfig."""

    strategy: Optional[str] = None
    chunk_size: Optional[int] = None
    chunk_overlap: Optional[int] = None
    min_chunk_size: Optional[int] = None
    max_chunk_size: Optional[int] = None  # defaults to 2x chunk_size when that is set
