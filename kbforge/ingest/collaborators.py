"""
Interfaces to the systems around the scheduler and chunker.

Each collaborator is a Protocol plus a small in-process default so the
worker runs standalone:

    ContentExtractor    file -> text           TextContentExtractor
    WebFetcher          url -> text            HttpxWebFetcher
    DocumentRepository  stored documents       InMemoryDocumentRepository
    VectorIndexer       chunk persistence      NullIndexer
    TenantSettingsStore per-tenant defaults    ConfigTenantSettingsStore

Production deployments replace the defaults with their own storage and
vector store bindings.
"""

from __future__ import annotations

import json
import threading
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from html.parser import HTMLParser
from pathlib import Path
from typing import Any, Dict, List, Optional, Protocol

import httpx

from kbforge.chunking.models import Chunk
from kbforge.core.config import Config, TenantConfig
from kbforge.core.exceptions import ExtractionError
from kbforge.core.logging import get_logger
from kbforge.core.retry import retry

logger = get_logger(__name__)

TEXT_EXTENSIONS = {".txt", ".md", ".json", ".csv"}


# ============================================================================
# Content extraction
# ============================================================================


class ContentExtractor(Protocol):
    """Turns a file on disk into plain text."""

    def extract(self, path: Path) -> str:
        ...


class TextContentExtractor:
    """
    Reads text-based formats directly.

    JSON is pretty-printed so that the chunker sees one key per line.
    Binary formats (.pdf, .docx, .doc) need a dedicated extractor and raise
    ExtractionError here.
    """

    def __init__(self, encoding: str = "utf-8") -> None:
        self.encoding = encoding

    def extract(self, path: Path) -> str:
        path = Path(path)
        suffix = path.suffix.lower()
        if suffix not in TEXT_EXTENSIONS:
            raise ExtractionError(
                f"No text extractor for {suffix or 'extensionless'} file: {path}"
            )

        try:
            text = path.read_text(encoding=self.encoding, errors="replace")
        except OSError as e:
            raise ExtractionError(f"Could not read {path}: {e}") from e

        if suffix == ".json":
            try:
                text = json.dumps(json.loads(text), indent=2, ensure_ascii=False)
            except json.JSONDecodeError:
                logger.debug("JSON file is not valid JSON, using raw text", path=str(path))
        return text


# ============================================================================
# Web fetching
# ============================================================================


class WebFetcher(Protocol):
    """Downloads a URL and returns its readable text."""

    def fetch(self, url: str) -> str:
        ...


class _TextExtractingParser(HTMLParser):
    """Collects visible text; script, style and head content is skipped."""

    SKIP_TAGS = {"script", "style", "head", "noscript", "template"}
    BLOCK_TAGS = {
        "p", "div", "br", "li", "tr", "section", "article",
        "h1", "h2", "h3", "h4", "h5", "h6",
    }

    def __init__(self) -> None:
        super().__init__()
        self.parts: List[str] = []
        self._skip_depth = 0

    def handle_starttag(self, tag: str, attrs: List[Any]) -> None:
        if tag in self.SKIP_TAGS:
            self._skip_depth += 1
        elif tag in self.BLOCK_TAGS:
            self.parts.append("\n\n")

    def handle_endtag(self, tag: str) -> None:
        if tag in self.SKIP_TAGS and self._skip_depth:
            self._skip_depth -= 1
        elif tag in self.BLOCK_TAGS:
            self.parts.append("\n\n")

    def handle_data(self, data: str) -> None:
        if not self._skip_depth:
            self.parts.append(data)


def html_to_text(html: str) -> str:
    """Strip tags from an HTML page, keeping block breaks as blank lines."""
    parser = _TextExtractingParser()
    parser.feed(html)
    parser.close()
    paragraphs = []
    for block in "".join(parser.parts).split("\n\n"):
        cleaned = " ".join(block.split())
        if cleaned:
            paragraphs.append(cleaned)
    return "\n\n".join(paragraphs)


class HttpxWebFetcher:
    """
    Fetches pages with httpx.

    Transport errors are retried with backoff; HTTP error statuses are not.
    HTML responses are reduced to their visible text.
    """

    def __init__(self, timeout_seconds: float = 30.0, user_agent: str = "kbforge/0.4") -> None:
        self.timeout_seconds = timeout_seconds
        self.user_agent = user_agent

    @retry(max_attempts=3, base_delay=1.0, retryable_exceptions=(httpx.TransportError,))
    def _get(self, url: str) -> httpx.Response:
        with httpx.Client(
            timeout=httpx.Timeout(self.timeout_seconds),
            follow_redirects=True,
            headers={"User-Agent": self.user_agent},
        ) as client:
            return client.get(url)

    def fetch(self, url: str) -> str:
        response = self._get(url)
        if response.status_code >= 400:
            raise ExtractionError(f"Fetching {url} returned HTTP {response.status_code}")

        content_type = response.headers.get("content-type", "")
        text = html_to_text(response.text) if "html" in content_type else response.text
        if not text.strip():
            raise ExtractionError(f"No readable content at {url}")
        return text


# ============================================================================
# Document storage
# ============================================================================


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class Document:
    """A stored document and the chunks produced from it."""

    tenant_id: str
    title: str
    content: str
    id: str = field(default_factory=lambda: str(uuid.uuid4()))
    collection_id: Optional[str] = None
    source: Optional[str] = None  # original path or URL
    chunks: List[Chunk] = field(default_factory=list)
    chunking_strategy: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)
    created_at: datetime = field(default_factory=_utcnow)
    updated_at: datetime = field(default_factory=_utcnow)


class DocumentRepository(Protocol):
    def get(self, tenant_id: str, document_id: str) -> Optional[Document]:
        ...

    def save(self, document: Document) -> Document:
        ...

    def list_by_collection(self, tenant_id: str, collection_id: str) -> List[Document]:
        ...

    def list_by_tenant(self, tenant_id: str) -> List[Document]:
        ...


class InMemoryDocumentRepository:
    """Thread-safe dict-backed repository (handlers save from worker threads)."""

    def __init__(self) -> None:
        self._documents: Dict[str, Document] = {}
        self._lock = threading.Lock()

    def get(self, tenant_id: str, document_id: str) -> Optional[Document]:
        with self._lock:
            document = self._documents.get(document_id)
        if document is None or document.tenant_id != tenant_id:
            return None
        return document

    def save(self, document: Document) -> Document:
        document.updated_at = _utcnow()
        with self._lock:
            self._documents[document.id] = document
        return document

    def list_by_collection(self, tenant_id: str, collection_id: str) -> List[Document]:
        return [d for d in self.list_by_tenant(tenant_id) if d.collection_id == collection_id]

    def list_by_tenant(self, tenant_id: str) -> List[Document]:
        with self._lock:
            documents = list(self._documents.values())
        return [d for d in documents if d.tenant_id == tenant_id]


# ============================================================================
# Vector indexing
# ============================================================================


class VectorIndexer(Protocol):
    """Persists chunks for retrieval (embedding happens behind this call)."""

    def index(self, tenant_id: str, document_id: str, chunks: List[Chunk]) -> int:
        ...

    def delete(self, tenant_id: str, document_id: str) -> int:
        ...


class NullIndexer:
    """Counts indexed chunks per document without storing vectors."""

    def __init__(self) -> None:
        self.counts: Dict[str, int] = {}
        self._lock = threading.Lock()

    def index(self, tenant_id: str, document_id: str, chunks: List[Chunk]) -> int:
        key = f"{tenant_id}:{document_id}"
        with self._lock:
            self.counts[key] = self.counts.get(key, 0) + len(chunks)
        return len(chunks)

    def delete(self, tenant_id: str, document_id: str) -> int:
        with self._lock:
            return self.counts.pop(f"{tenant_id}:{document_id}", 0)


# ============================================================================
# Tenant settings
# ============================================================================


class TenantSettingsStore(Protocol):
    def get_chunking_defaults(self, tenant_id: str) -> Optional[TenantConfig]:
        ...


class ConfigTenantSettingsStore:
    """Serves the ``tenants:`` section of the loaded config."""

    def __init__(self, config: Config) -> None:
        self.config = config

    def get_chunking_defaults(self, tenant_id: str) -> Optional[TenantConfig]:
        return self.config.tenants.get(tenant_id)
