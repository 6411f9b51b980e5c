"""URL checks applied before a crawl job is created.

A URL must be http(s), name a host, and fit the length limits. Unless the
caller opts out, hosts that resolve by name or literal address to the
worker's own machine or a private network are refused, so a submitted URL
cannot be used to reach internal services.

    >>> validate_url("ftp://example.com/file")
    (False, 'URL scheme must be http or https, got: ftp')
"""

from __future__ import annotations

import ipaddress
import re
from typing import FrozenSet, Optional, Tuple
from urllib.parse import urlsplit

MAX_URL_LENGTH = 2048
MAX_HOST_LENGTH = 253

DEFAULT_SCHEMES: FrozenSet[str] = frozenset({"http", "https"})

_INTERNAL_HOST = re.compile(r"(^localhost$|\.(local|internal|localdomain)$)", re.IGNORECASE)

UrlCheck = Tuple[bool, str]


def _private_host_reason(host: str) -> Optional[str]:
    if _INTERNAL_HOST.search(host):
        return f"Domain '{host}' is blocked (internal/local domain)"
    try:
        address = ipaddress.ip_address(host)
    except ValueError:
        return None
    if address.is_loopback or address.is_private or address.is_link_local:
        return f"Private IP address blocked: {address}"
    return None


def validate_url(
    url: str,
    allowed_schemes: FrozenSet[str] = DEFAULT_SCHEMES,
    block_private: bool = True,
) -> UrlCheck:
    """
    Check a crawl URL.

    Args:
        url: Candidate URL; surrounding whitespace is ignored
        allowed_schemes: Lowercase schemes to accept
        block_private: Refuse localhost, *.local/.internal names and
            loopback, private or link-local addresses

    Returns:
        ``(True, "")`` or ``(False, reason)``
    """
    url = (url or "").strip()
    if not url:
        return False, "URL cannot be empty"
    if len(url) > MAX_URL_LENGTH:
        return False, f"URL exceeds {MAX_URL_LENGTH} character limit"

    try:
        parts = urlsplit(url)
        host = parts.hostname
    except ValueError as e:
        return False, f"Invalid URL format: {e}"

    scheme = parts.scheme.lower()
    if scheme not in allowed_schemes:
        expected = " or ".join(sorted(allowed_schemes))
        return False, f"URL scheme must be {expected}, got: {scheme or '(none)'}"
    if not host:
        return False, "URL must include a domain name"
    if len(host) > MAX_HOST_LENGTH:
        return False, f"Domain name exceeds {MAX_HOST_LENGTH} character limit"

    if block_private:
        reason = _private_host_reason(host)
        if reason:
            return False, reason
    return True, ""


def is_safe_url(url: str) -> bool:
    return validate_url(url)[0]
