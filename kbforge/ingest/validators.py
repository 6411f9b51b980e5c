"""Input checks applied before a batch creates any job."""

from pathlib import Path
from typing import Iterable, List, Optional, Tuple

from kbforge.core.config import IngestConfig
from kbforge.core.security.url import validate_url

BYTES_PER_MB = 1024 * 1024


def validate_file(path: Path, config: Optional[IngestConfig] = None) -> Tuple[bool, str]:
    """
    Check that a file can be submitted for ingestion.

    Args:
        path: File to check
        config: Accepted extensions and size limit

    Returns:
        Tuple of (is_valid, error_message); error_message is "" when valid.
    """
    config = config or IngestConfig()
    path = Path(path)

    if not path.exists() or not path.is_file():
        return False, f"File not found: {path}"

    allowed = {ext.lower() for ext in config.supported_extensions}
    if path.suffix.lower() not in allowed:
        return False, (
            f"Unsupported file type: {path.suffix or '(none)'}. "
            f"Allowed: {', '.join(sorted(allowed))}"
        )

    size = path.stat().st_size
    if size > config.max_file_size_mb * BYTES_PER_MB:
        return False, (
            f"File too large: {size / BYTES_PER_MB:.1f}MB "
            f"(limit {config.max_file_size_mb:g}MB)"
        )

    return True, ""


def validate_submission_url(url: str, config: Optional[IngestConfig] = None) -> Tuple[bool, str]:
    """Check a crawl URL against the configured schemes and host rules."""
    config = config or IngestConfig()
    return validate_url(
        url,
        allowed_schemes=frozenset(s.lower() for s in config.allowed_url_schemes),
        block_private=config.block_private_urls,
    )


def split_valid(
    items: Iterable[str], results: Iterable[Tuple[bool, str]]
) -> Tuple[List[str], List[Tuple[str, str]]]:
    """Partition items into valid ones and (item, reason) rejections."""
    valid: List[str] = []
    rejected: List[Tuple[str, str]] = []
    for item, (ok, reason) in zip(items, results):
        if ok:
            valid.append(item)
        else:
            rejected.append((item, reason))
    return valid, rejected
