"""Lexical analyzers used by the chunking strategies.

Everything here is a pure function of its input text. Sentence detection is
a regex heuristic, not a tokenizer; strategies receive it through the
SentenceSplitter protocol so a better splitter can be dropped in later.
"""

from __future__ import annotations

import math
import re
from typing import Any, Dict, List, Optional, Protocol, Sequence, Tuple

Span = Tuple[int, int]

# Terminal punctuation followed by whitespace or end of text
SENTENCE_BOUNDARY = re.compile(r"[.!?]+(?:\s+|$)")
PARAGRAPH_BREAK = re.compile(r"\n\s*\n")

_HEADING_RE = re.compile(r"^#{1,6}\s+|^[^\n]+\n(?:=+|-+)[ \t]*(?:\n|$)")
_LIST_RE = re.compile(r"^\s*[-*+]\s+|^\s*\d+\.\s+")
_CODE_RE = re.compile(r"^```|^ {4,}|^\t")
_TABLE_RE = re.compile(r"\|.*\|")
_EMPHASIS_RE = re.compile(r"\*\*.+?\*\*|\*[^*\s][^*]*\*|__.+?__")
_LINK_RE = re.compile(r"https?://|www\.|\.com\b|\.org\b")
_NUMBER_RE = re.compile(r"\d+%|\d+\.\d+|\$\d+")

_STRUCTURE_RE = re.compile(r"^#{1,6}\s+|\n\s*\d+\.\s+|\n\s*[-*+]\s+", re.MULTILINE)
_HEADINGS_RE = re.compile(r"^#{1,6}\s+|^.+\n[=-]+\n", re.MULTILINE)


def estimate_tokens(text: str) -> int:
    """Approximate token count: one token per four characters, rounded up."""
    return math.ceil(len(text) / 4)


def split_sentences(text: str) -> List[str]:
    """Split text into trimmed sentences, keeping terminal punctuation."""
    sentences = []
    last = 0
    for match in SENTENCE_BOUNDARY.finditer(text):
        sentence = text[last : match.end()].strip()
        if sentence:
            sentences.append(sentence)
        last = match.end()
    tail = text[last:].strip()
    if tail:
        sentences.append(tail)
    return sentences


def locate_segments(text: str, segments: Sequence[str], start: int = 0) -> List[Span]:
    """
    Find each segment's offsets in text, searching forward from the
    previous segment's end.

    A segment that cannot be found (the splitter normalised it) is given a
    zero-width span at the current position so offsets stay monotonic.
    """
    spans: List[Span] = []
    cursor = start
    for segment in segments:
        found = text.find(segment, cursor)
        if found == -1:
            spans.append((cursor, cursor))
            continue
        end = found + len(segment)
        spans.append((found, end))
        cursor = end
    return spans


def paragraph_spans(text: str, start: int = 0, end: Optional[int] = None) -> List[Span]:
    """Offsets of the non-empty, trimmed paragraphs in text[start:end]."""
    end = len(text) if end is None else end
    spans: List[Span] = []
    cursor = start
    for match in PARAGRAPH_BREAK.finditer(text, start, end):
        _append_trimmed(text, cursor, match.start(), spans)
        cursor = match.end()
    _append_trimmed(text, cursor, end, spans)
    return spans


def _append_trimmed(text: str, start: int, end: int, spans: List[Span]) -> None:
    while start < end and text[start].isspace():
        start += 1
    while end > start and text[end - 1].isspace():
        end -= 1
    if end > start:
        spans.append((start, end))


class SentenceSplitter(Protocol):
    """Splits text into the units a strategy accumulates into chunks."""

    def split(self, text: str) -> List[str]:
        ...


class RegexSentenceSplitter:
    """Default splitter: `[.!?]+` followed by whitespace or end of text."""

    def split(self, text: str) -> List[str]:
        return split_sentences(text)


class DelimiterSplitter:
    """Splits after any of a set of literal delimiters (used for code)."""

    def __init__(self, delimiters: Sequence[str]) -> None:
        if not delimiters:
            raise ValueError("DelimiterSplitter needs at least one delimiter")
        ordered = sorted(set(delimiters), key=len, reverse=True)
        self.delimiters = ordered
        self._pattern = re.compile("|".join(re.escape(d) for d in ordered))

    def split(self, text: str) -> List[str]:
        pieces = []
        last = 0
        for match in self._pattern.finditer(text):
            piece = text[last : match.end()].strip()
            if piece:
                pieces.append(piece)
            last = match.end()
        tail = text[last:].strip()
        if tail:
            pieces.append(tail)
        return pieces


def get_splitter(custom_delimiters: Optional[Sequence[str]] = None) -> SentenceSplitter:
    """Pick the delimiter splitter when delimiters are given, else the regex one."""
    if custom_delimiters:
        return DelimiterSplitter(custom_delimiters)
    return RegexSentenceSplitter()


def classify_chunk(text: str) -> str:
    """Classify a span as heading, list, code, table or paragraph."""
    if _CODE_RE.search(text.lstrip("\n")):
        return "code"

    trimmed = text.strip()
    if _HEADING_RE.search(trimmed):
        return "heading"
    if _LIST_RE.search(trimmed):
        return "list"
    if _TABLE_RE.search(trimmed):
        return "table"
    return "paragraph"


def analyze_structure(text: str) -> Dict[str, Any]:
    """Describe the inline structure of a chunk."""
    return {
        "sentences": len(split_sentences(text)),
        "has_questions": "?" in text,
        "has_emphasis": bool(_EMPHASIS_RE.search(text)),
        "has_links": bool(_LINK_RE.search(text)),
        "has_numbers": bool(_NUMBER_RE.search(text)),
    }


def ends_with_sentence(text: str) -> bool:
    """True when the trimmed text ends with terminal punctuation."""
    return bool(re.search(r"[.!?][\"')\]]*$", text.strip()))


def has_structure(text: str) -> bool:
    """Markdown headings or numbered/bulleted lists anywhere in the text."""
    return bool(_STRUCTURE_RE.search(text))


def has_headings(text: str) -> bool:
    """ATX (#) or setext (underlined) headings anywhere in the text."""
    return bool(_HEADINGS_RE.search(text))
