"""Document-level metadata used to pick and tune a chunking strategy.

All figures are lexical heuristics: word and sentence counts, markdown
structure (headings, lists, tables, code blocks), formatting flags, a
stopword-count language guess and 0..1 quality scores.
"""

from __future__ import annotations

import math
import re
from collections import Counter
from dataclasses import asdict, dataclass, field
from typing import Any, Dict, List, Optional

from kbforge.chunking.hierarchical_chunker import find_headings, parse_sections

_WORD_RE = re.compile(r"\S+")
_SENTENCE_SPLIT_RE = re.compile(r"[.!?]+")
_PARAGRAPH_SPLIT_RE = re.compile(r"\n\s*\n")
_UNORDERED_LIST_RE = re.compile(r"^([ \t]*[-*+][ \t]+.+(?:\n[ \t]*[-*+][ \t]+.+)*)", re.MULTILINE)
_ORDERED_LIST_RE = re.compile(r"^([ \t]*\d+\.[ \t]+.+(?:\n[ \t]*\d+\.[ \t]+.+)*)", re.MULTILINE)
_TABLE_RE = re.compile(r"(^[ \t]*\|.+\|[ \t]*(?:\n[ \t]*\|.+\|[ \t]*)*)", re.MULTILINE)
_FENCED_CODE_RE = re.compile(r"```(\w+)?\n(.*?)```", re.DOTALL)
_INDENTED_CODE_RE = re.compile(r"^((?: {4}|\t).+(?:\n(?: {4}|\t).+)*)", re.MULTILINE)

_ENGLISH_MARKERS = ("the", "and", "or", "but", "in", "on", "at", "to", "for", "of", "with", "by")
STOP_WORDS = frozenset(
    {
        "the", "and", "but", "for", "with", "from", "about", "into", "through",
        "during", "before", "after", "above", "below", "between", "among",
        "this", "that", "these", "those", "they", "them", "their", "there",
        "where", "when", "what", "which", "whom", "have", "been", "were", "will",
    }
)

WORDS_PER_MINUTE = 200


@dataclass
class ListBlock:
    ordered: bool
    items: List[str]
    position: int


@dataclass
class TableBlock:
    headers: List[str]
    rows: List[List[str]]
    position: int


@dataclass
class CodeBlock:
    content: str
    position: int
    language: Optional[str] = None


@dataclass
class DocumentMetadata:
    """Structure, statistics, formatting flags and quality scores of a text."""

    headings: List[Dict[str, Any]] = field(default_factory=list)
    section_count: int = 0
    lists: List[ListBlock] = field(default_factory=list)
    tables: List[TableBlock] = field(default_factory=list)
    code_blocks: List[CodeBlock] = field(default_factory=list)

    language: str = "unknown"
    word_count: int = 0
    sentence_count: int = 0
    paragraph_count: int = 0
    reading_time: int = 0  # minutes
    complexity: float = 0.0

    has_emphasis: bool = False
    has_links: bool = False
    has_images: bool = False
    has_quotes: bool = False
    has_footnotes: bool = False

    completeness: float = 0.0
    coherence: float = 0.0
    readability: float = 0.0
    structure_score: float = 0.0

    @property
    def has_lists(self) -> bool:
        return bool(self.lists)

    @property
    def has_tables(self) -> bool:
        return bool(self.tables)

    @property
    def has_code(self) -> bool:
        return bool(self.code_blocks)

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data.update(has_lists=self.has_lists, has_tables=self.has_tables, has_code=self.has_code)
        return data


def count_words(text: str) -> int:
    return sum(1 for word in _WORD_RE.findall(text) if re.search(r"\w", word))


def count_sentences(text: str) -> int:
    return sum(1 for part in _SENTENCE_SPLIT_RE.split(text) if part.strip())


def count_paragraphs(text: str) -> int:
    return sum(1 for part in _PARAGRAPH_SPLIT_RE.split(text) if part.strip())


def detect_language(text: str) -> str:
    """'en' when the first 1000 characters hold more than ten common English words."""
    sample = text[:1000].lower()
    hits = sum(len(re.findall(rf"\b{word}\b", sample)) for word in _ENGLISH_MARKERS)
    return "en" if hits > 10 else "unknown"


def _table_row(line: str) -> List[str]:
    return [cell.strip() for cell in line.strip().split("|") if cell.strip()]


def _extract_lists(text: str) -> List[ListBlock]:
    blocks = []
    for pattern, ordered, marker in (
        (_UNORDERED_LIST_RE, False, r"^\s*[-*+]\s+"),
        (_ORDERED_LIST_RE, True, r"^\s*\d+\.\s+"),
    ):
        for match in pattern.finditer(text):
            items = [re.sub(marker, "", line).strip() for line in match.group(1).split("\n")]
            items = [item for item in items if item]
            if items:
                blocks.append(ListBlock(ordered=ordered, items=items, position=match.start()))
    return sorted(blocks, key=lambda block: block.position)


def _extract_tables(text: str) -> List[TableBlock]:
    tables = []
    for match in _TABLE_RE.finditer(text):
        lines = match.group(1).split("\n")
        if len(lines) < 2:
            continue
        # line 1 is the |---|---| separator
        rows = [row for row in (_table_row(line) for line in lines[2:]) if row]
        headers = _table_row(lines[0])
        if headers and rows:
            tables.append(TableBlock(headers=headers, rows=rows, position=match.start()))
    return tables


def _extract_code_blocks(text: str) -> List[CodeBlock]:
    blocks = [
        CodeBlock(content=m.group(2).strip(), position=m.start(), language=m.group(1))
        for m in _FENCED_CODE_RE.finditer(text)
    ]
    fenced = [(m.start(), m.end()) for m in _FENCED_CODE_RE.finditer(text)]
    for match in _INDENTED_CODE_RE.finditer(text):
        if any(start <= match.start() < end for start, end in fenced):
            continue
        lines = match.group(1).split("\n")
        code = "\n".join(line[4:] if line.startswith("    ") else line[1:] for line in lines)
        if code.strip():
            blocks.append(CodeBlock(content=code.strip(), position=match.start()))
    return sorted(blocks, key=lambda block: block.position)


def _proper_hierarchy(levels: List[int]) -> bool:
    return all(b - a <= 1 for a, b in zip(levels, levels[1:]))


def _consistent_lengths(lengths: List[int]) -> bool:
    if len(lengths) < 2:
        return True
    average = sum(lengths) / len(lengths)
    variance = sum((length - average) ** 2 for length in lengths) / len(lengths)
    return math.sqrt(variance) < average * 0.5


def extract_document_metadata(content: str) -> DocumentMetadata:
    """
    Analyze a document's structure and content.

    Args:
        content: Full document text

    Returns:
        DocumentMetadata with every field filled in
    """
    meta = DocumentMetadata()

    headings = find_headings(content)
    sections = parse_sections(content, headings)
    meta.headings = [{"level": h.level, "text": h.title, "position": h.start} for h in headings]
    meta.section_count = len(sections)
    meta.lists = _extract_lists(content)
    meta.tables = _extract_tables(content)
    meta.code_blocks = _extract_code_blocks(content)

    meta.word_count = count_words(content)
    meta.sentence_count = count_sentences(content)
    meta.paragraph_count = count_paragraphs(content)
    meta.reading_time = math.ceil(meta.word_count / WORDS_PER_MINUTE)
    meta.language = detect_language(content)

    meta.has_emphasis = bool(re.search(r"\*\*.+?\*\*|__.+?__|\*[^*\s][^*\n]*\*", content))
    meta.has_links = bool(re.search(r"\[[^\]]*\]\([^)]*\)|https?://\S+", content))
    meta.has_images = bool(re.search(r"!\[[^\]]*\]\([^)]*\)", content))
    meta.has_quotes = bool(re.search(r"^>\s+", content, re.MULTILINE))
    meta.has_footnotes = bool(re.search(r"\[\^[^\]]*\]", content))

    average_sentence = meta.word_count / max(meta.sentence_count, 1)
    levels = [h.level for h in headings]

    complexity = min(meta.word_count / 1000, 1) * 0.3
    if average_sentence > 20:
        complexity += 0.2
    if average_sentence > 30:
        complexity += 0.2
    if len(headings) > 5:
        complexity += 0.1
    if meta.tables:
        complexity += 0.1
    if meta.code_blocks:
        complexity += 0.1
    meta.complexity = round(min(complexity, 1.0), 3)

    completeness = 0.0
    if meta.word_count > 100:
        completeness += 0.3
    if meta.word_count > 500:
        completeness += 0.2
    if headings:
        completeness += 0.2
    if len(sections) > 1:
        completeness += 0.2
    if meta.lists:
        completeness += 0.1
    meta.completeness = round(min(completeness, 1.0), 3)

    coherence = 0.5
    if _proper_hierarchy(levels):
        coherence += 0.3
    if _consistent_lengths([s.end - s.body_start for s in sections]):
        coherence += 0.2
    meta.coherence = round(min(coherence, 1.0), 3)

    readability = 0.5
    if 10 <= average_sentence <= 25:
        readability += 0.2
    if meta.paragraph_count and 50 <= meta.word_count / meta.paragraph_count <= 200:
        readability += 0.2
    if meta.has_emphasis:
        readability += 0.1
    meta.readability = round(min(readability, 1.0), 3)

    structure = 0.0
    if headings:
        structure += 0.4
    if _proper_hierarchy(levels):
        structure += 0.3
    if len(sections) > 1:
        structure += 0.2
    if meta.lists:
        structure += 0.1
    meta.structure_score = round(min(structure, 1.0), 3)

    return meta


def extract_keywords(content: str, limit: int = 10) -> List[str]:
    """Most frequent words longer than three letters, stop words excluded."""
    words = re.sub(r"[^\w\s]", " ", content.lower()).split()
    counts = Counter(word for word in words if len(word) > 3 and word not in STOP_WORDS)
    return [word for word, _ in counts.most_common(limit)]
