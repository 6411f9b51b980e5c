"""Hierarchical (structure-first) chunking strategy.

Splits documents at headings so that the text under one heading stays
together, then sizes the result like the semantic strategy does.

Recognised headings:
- Markdown ATX headings (``#`` .. ``######``)
- Setext headings (a line underlined with ``===`` or ``---``)
- Chapter / Appendix / Article / Section lines

Text before the first heading forms a level-0 section. A document with no
headings is treated as one level-0 section, which degrades to paragraph
chunking. Sections with a heading but no body are dropped.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

from kbforge.chunking.analyzers import Span, estimate_tokens, paragraph_spans
from kbforge.chunking.models import Chunk, ChunkingOptions, ChunkingResult, build_result, reindex
from kbforge.chunking.semantic_chunker import SemanticChunker, make_chunk, merge_chunks


@dataclass
class Heading:
    """A detected heading in the document."""

    title: str
    level: int  # 1 = top level; 0 is reserved for the preamble
    start: int  # offset of the first heading character
    end: int  # offset just past the heading line(s)
    kind: str  # "atx", "setext" or "structural"


@dataclass
class Section:
    """Text between one heading and the next."""

    heading: Optional[Heading]
    start: int
    body_start: int
    end: int
    level: int

    @property
    def title(self) -> Optional[str]:
        return self.heading.title if self.heading else None


_ATX_RE = re.compile(r"^(#{1,6})[ \t]+(.+?)[ \t#]*$", re.MULTILINE)
_SETEXT_RE = re.compile(r"^([^\n#>|\-*+ \t][^\n]*)\n(=+|-+)[ \t]*$", re.MULTILINE)

# (pattern, level) for structural headings, checked line by line
HEADER_PATTERNS = [
    (re.compile(r"^(?:CHAPTER|Chapter)\s+(\d+|[IVXLC]+)(?:[.:\s]|$)"), 1),
    (re.compile(r"^(?:APPENDIX|Appendix)\s+([A-Z])(?:[.:\s]|$)"), 1),
    (re.compile(r"^(?:ARTICLE|Article)\s+(\d+|[IVXLC]+)(?:[.:\s]|$)"), 1),
    (re.compile(r"^(?:SECTION|Section)\s+(\d+(?:\.\d+)?)(?:[.:\s]|$)"), 2),
]


def find_headings(text: str) -> List[Heading]:
    """Find all headings, sorted by position, without overlaps."""
    found: List[Heading] = []

    for match in _ATX_RE.finditer(text):
        found.append(
            Heading(
                title=match.group(2).strip(),
                level=len(match.group(1)),
                start=match.start(),
                end=match.end(),
                kind="atx",
            )
        )

    for match in _SETEXT_RE.finditer(text):
        found.append(
            Heading(
                title=match.group(1).strip(),
                level=1 if match.group(2).startswith("=") else 2,
                start=match.start(),
                end=match.end(),
                kind="setext",
            )
        )

    position = 0
    for line in text.split("\n"):
        stripped = line.strip()
        for pattern, level in HEADER_PATTERNS:
            if pattern.match(stripped):
                start = position + (len(line) - len(line.lstrip()))
                found.append(
                    Heading(
                        title=stripped,
                        level=level,
                        start=start,
                        end=start + len(stripped),
                        kind="structural",
                    )
                )
                break
        position += len(line) + 1

    found.sort(key=lambda h: (h.start, -h.end))
    headings: List[Heading] = []
    for heading in found:
        if headings and heading.start < headings[-1].end:
            continue
        headings.append(heading)
    return headings


def _rstrip_end(text: str, start: int, end: int) -> int:
    while end > start and text[end - 1].isspace():
        end -= 1
    return end


def _lstrip_start(text: str, start: int, end: int) -> int:
    while start < end and text[start].isspace():
        start += 1
    return start


def parse_sections(text: str, headings: Optional[List[Heading]] = None) -> List[Section]:
    """Split text into sections; offsets are trimmed of surrounding whitespace."""
    headings = find_headings(text) if headings is None else headings
    sections: List[Section] = []

    first_heading = headings[0].start if headings else len(text)
    pre_start = _lstrip_start(text, 0, first_heading)
    pre_end = _rstrip_end(text, pre_start, first_heading)
    if pre_end > pre_start:
        sections.append(
            Section(heading=None, start=pre_start, body_start=pre_start, end=pre_end, level=0)
        )

    for i, heading in enumerate(headings):
        limit = headings[i + 1].start if i + 1 < len(headings) else len(text)
        end = _rstrip_end(text, heading.end, limit)
        if not text[heading.end : end].strip():
            continue
        sections.append(
            Section(
                heading=heading,
                start=heading.start,
                body_start=heading.end,
                end=end,
                level=heading.level,
            )
        )
    return sections


class HierarchicalChunker:
    """Chunk documents along their heading structure."""

    strategy = "hierarchical"

    def __init__(self, split_oversized: bool = True) -> None:
        """
        Args:
            split_oversized: Re-split chunks above max_chunk_size on sentence
                boundaries. The hybrid strategy turns this off and handles
                oversized chunks itself.
        """
        self.split_oversized = split_oversized
        self._semantic = SemanticChunker()

    def chunk(self, content: str, options: ChunkingOptions) -> ChunkingResult:
        """Chunk content section by section."""
        chunks: List[Chunk] = []
        for section in parse_sections(content):
            chunks.extend(self._chunk_section(content, section, options))
        chunks = self._enforce_size_constraints(content, reindex(chunks), options)
        return build_result(chunks, self.strategy)

    def _section_chunk(
        self, source: str, section: Section, start: int, end: int, part: Optional[int] = None
    ) -> Chunk:
        chunk = make_chunk(source, start, end)
        chunk.metadata.type = "section"
        chunk.metadata.level = section.level
        chunk.metadata.title = section.title
        chunk.metadata.structure.update(
            {
                "has_heading": section.heading is not None and start == section.start,
                "section_level": section.level,
            }
        )
        if part is not None:
            chunk.metadata.structure.update({"is_partial": True, "part_index": part})
        return chunk

    def _chunk_section(
        self, source: str, section: Section, options: ChunkingOptions
    ) -> List[Chunk]:
        if estimate_tokens(source[section.start : section.end]) <= options.chunk_size:
            return [self._section_chunk(source, section, section.start, section.end)]
        return self._split_large_section(source, section, options)

    def _split_large_section(
        self, source: str, section: Section, options: ChunkingOptions
    ) -> List[Chunk]:
        """Accumulate paragraphs; the heading stays with the first part."""
        paragraphs = paragraph_spans(source, section.body_start, section.end)
        chunks: List[Chunk] = []
        chunk_start = section.start
        first = 0  # first paragraph of the open chunk

        for i, (p_start, p_end) in enumerate(paragraphs):
            if i == first:
                continue
            if estimate_tokens(source[chunk_start:p_end]) <= options.chunk_size:
                continue

            chunks.append(
                self._section_chunk(
                    source, section, chunk_start, paragraphs[i - 1][1], part=len(chunks)
                )
            )
            first = i
            if options.chunk_overlap > 0 and options.preserve_structure:
                first = self._overlap_start(
                    paragraphs, self._first_in_chunk(paragraphs, chunk_start), i,
                    options.chunk_overlap,
                )
            chunk_start = paragraphs[first][0]

        if paragraphs:
            chunks.append(
                self._section_chunk(source, section, chunk_start, section.end, part=len(chunks))
            )
        return chunks

    @staticmethod
    def _first_in_chunk(paragraphs: List[Span], chunk_start: int) -> int:
        for index, (start, _) in enumerate(paragraphs):
            if start >= chunk_start:
                return index
        return len(paragraphs)

    @staticmethod
    def _overlap_start(paragraphs: List[Span], first: int, boundary: int, overlap: int) -> int:
        """Carry whole trailing paragraphs of the closed chunk, up to overlap chars."""
        start = boundary
        total = 0
        for j in range(boundary - 1, first - 1, -1):
            length = paragraphs[j][1] - paragraphs[j][0]
            if total + length > overlap:
                break
            total += length
            start = j
        return start

    def _enforce_size_constraints(
        self, source: str, chunks: List[Chunk], options: ChunkingOptions
    ) -> List[Chunk]:
        """Merge small chunks within a section, split oversized ones, re-index."""
        pending = list(chunks)
        processed: List[Chunk] = []

        i = 0
        while i < len(pending):
            chunk = pending[i]
            if chunk.token_count < options.min_chunk_size and i + 1 < len(pending):
                successor = pending[i + 1]
                if self._can_merge(chunk, successor):
                    merged = merge_chunks(source, chunk, successor)
                    if merged.token_count <= options.max_chunk_size:
                        merged.metadata.type = "section"
                        merged.metadata.structure.update(successor.metadata.structure)
                        pending[i + 1] = merged
                        i += 1
                        continue

            if chunk.token_count < options.min_chunk_size:
                chunk.metadata.is_too_small = True

            if self.split_oversized and chunk.token_count > options.max_chunk_size:
                processed.extend(self._semantic.split_large_chunk(source, chunk, options))
            else:
                processed.append(chunk)
            i += 1

        return reindex(processed)

    @staticmethod
    def _can_merge(first: Chunk, second: Chunk) -> bool:
        return (
            first.metadata.level == second.metadata.level
            and first.metadata.title == second.metadata.title
        )


def analyze_structure_quality(content: str) -> Dict[str, Any]:
    """
    Score how well a document's heading structure suits hierarchical chunking.

    Returns:
        Dict with has_headings, heading_levels, average_section_length and a
        structure_score between 0 and 1
    """
    headings = find_headings(content)
    sections = parse_sections(content, headings)

    has_headings = bool(headings)
    heading_levels = sorted({h.level for h in headings})
    average_section_length = (
        sum(s.end - s.body_start for s in sections) / len(sections) if sections else 0.0
    )

    score = 0.0
    if has_headings:
        score += 0.4
        if len(heading_levels) > 1:
            score += 0.3
        if 100 < average_section_length < 2000:
            score += 0.3

    return {
        "has_headings": has_headings,
        "heading_levels": heading_levels,
        "average_section_length": average_section_length,
        "structure_score": round(score, 2),
    }
