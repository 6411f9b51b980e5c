"""
Bounded parsing of ``KBFORGE_*`` environment overrides.

Environment values are deployment input, so nothing here trusts them:
numbers are clamped into a range, strings must be on a whitelist, and
anything unparsable is logged and replaced by the caller's default.

    concurrency = get_env_int("KBFORGE_QUEUE_CONCURRENCY", 3, min_value=1, max_value=64)
"""

from __future__ import annotations

import math
import os
from typing import Callable, FrozenSet, Optional, TypeVar

from kbforge.core.logging import get_logger

logger = get_logger(__name__)

N = TypeVar("N", int, float)

CHUNKING_STRATEGIES: FrozenSet[str] = frozenset(
    {"semantic", "hierarchical", "overlapping", "hybrid"}
)
LOG_LEVELS: FrozenSet[str] = frozenset({"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"})

_BOOLEANS = {
    "1": True,
    "true": True,
    "yes": True,
    "on": True,
    "0": False,
    "false": False,
    "no": False,
    "off": False,
}


def _clamp(value: N, min_value: Optional[N], max_value: Optional[N]) -> N:
    if min_value is not None:
        value = max(value, min_value)
    if max_value is not None:
        value = min(value, max_value)
    return value


def _get_number(
    name: str,
    parse: Callable[[str], N],
    default: Optional[N],
    min_value: Optional[N],
    max_value: Optional[N],
) -> Optional[N]:
    raw = os.environ.get(name)
    if raw is None:
        return default
    try:
        value = parse(raw.strip())
    except ValueError:
        logger.warning("Ignoring unparsable env override", name=name, value=raw)
        return default
    if isinstance(value, float) and math.isnan(value):
        return default
    return _clamp(value, min_value, max_value)


def get_env_int(
    name: str,
    default: Optional[int] = None,
    min_value: Optional[int] = None,
    max_value: Optional[int] = None,
) -> Optional[int]:
    """
    Read an integer, clamped into ``[min_value, max_value]``.

    With KBFORGE_QUEUE_CONCURRENCY=500 and max_value=64 this returns 64.
    """
    return _get_number(name, int, default, min_value, max_value)


def get_env_float(
    name: str,
    default: Optional[float] = None,
    min_value: Optional[float] = None,
    max_value: Optional[float] = None,
) -> Optional[float]:
    """Read a float, clamped like get_env_int(). NaN counts as unset."""
    return _get_number(name, float, default, min_value, max_value)


def get_env_bool(name: str, default: Optional[bool] = None) -> Optional[bool]:
    raw = os.environ.get(name)
    if raw is None:
        return default
    value = _BOOLEANS.get(raw.strip().lower())
    if value is None:
        logger.warning("Ignoring non-boolean env override", name=name, value=raw)
        return default
    return value


def get_env_whitelist(
    name: str,
    allowed: FrozenSet[str],
    default: Optional[str] = None,
    case_sensitive: bool = False,
) -> Optional[str]:
    """
    Read a string that must be one of ``allowed``.

    Matching ignores case unless ``case_sensitive``; the returned value is
    the spelling from ``allowed``.
    """
    raw = os.environ.get(name)
    if raw is None:
        return default
    for candidate in allowed:
        if raw == candidate or (not case_sensitive and raw.lower() == candidate.lower()):
            return candidate
    logger.warning("Ignoring env override outside allowed values", name=name)
    return default
