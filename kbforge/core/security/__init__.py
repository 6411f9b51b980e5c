"""Input hardening helpers: environment variable parsing and URL validation."""

from kbforge.core.security.env import (
    get_env_bool,
    get_env_float,
    get_env_int,
    get_env_whitelist,
)
from kbforge.core.security.url import is_safe_url, validate_url

__all__ = [
    "get_env_bool",
    "get_env_float",
    "get_env_int",
    "get_env_whitelist",
    "is_safe_url",
    "validate_url",
]
