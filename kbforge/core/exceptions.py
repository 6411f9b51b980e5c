"""
Exception hierarchy for kbforge.

Every error kbforge raises on purpose derives from KBForgeError and carries
three pieces of help for whoever reads it:

- ``error_code``: stable id such as ``KB-PROC-002``
- ``why_it_happened``: one sentence on the cause
- ``how_to_fix``: suggested next steps

Hierarchy::

    KBForgeError
    ├── ValidationError          bad input; the job is never created
    │   └── ConfigValidationError
    ├── NotFoundError            unknown job, batch or document id
    ├── ProcessingError          a handler stage failed
    │   ├── ExtractionError
    │   └── ChunkingError
    ├── TransientHandlerError    worth retrying
    ├── JobCancelledError        raised at a handler checkpoint
    └── RetryError               @retry gave up

Messages are stored on job records and printed by the CLI, so the base
class runs them through sanitize_message() on construction.
"""

import re
from typing import Any, Callable, Dict, List, Optional, Tuple, Union

Replacement = Union[str, Callable[["re.Match[str]"], str]]

_HOME_PATTERNS: List[Tuple["re.Pattern[str]", str]] = [
    (re.compile(r"[A-Za-z]:\\Users\\[^\\]+"), "<user-home>"),
    (re.compile(r"/(?:home|Users)/[^/]+"), "<user-home>"),
    (re.compile(r"[a-zA-Z0-9]{32,}"), "<key>"),
]


def sanitize_path(path: str) -> str:
    """Replace the user part of home directories, and long key-like runs."""
    for pattern, replacement in _HOME_PATTERNS:
        path = pattern.sub(replacement, path)
    return path


def _path_match(match: "re.Match[str]") -> str:
    return sanitize_path(match.group(0))


_SECRET_PATTERNS: List[Tuple["re.Pattern[str]", Replacement]] = [
    (re.compile(r"(sk-|pk-|api_key[=:]\s*)[\w-]{20,}"), r"\1<api-key>"),
    (re.compile(r"(API_KEY|TOKEN|SECRET)[=:]\s*\S+"), r"\1=<hidden>"),
    (re.compile(r"Bearer\s+[\w.-]+"), "Bearer <token>"),
    (re.compile(r"://[^:/\s]+:[^@/\s]+@"), "://<user>:<pass>@"),
    (re.compile(r"[a-fA-F0-9]{40,}"), "<hash>"),
    (re.compile(r"[A-Za-z]:\\[^\s\"']+"), _path_match),
    (re.compile(r"/(?:home|Users)/[^\s\"']+"), _path_match),
]


def sanitize_message(message: str) -> str:
    """Mask credentials, tokens, long hashes and home paths in a message."""
    for pattern, replacement in _SECRET_PATTERNS:
        message = pattern.sub(replacement, message)
    return message


def get_root_cause(exc: BaseException) -> BaseException:
    """Walk ``__cause__`` (then ``__context__``) to the first exception."""
    seen = {id(exc)}
    while True:
        parent = exc.__cause__ or exc.__context__
        if parent is None or id(parent) in seen:
            return exc
        seen.add(id(parent))
        exc = parent


class KBForgeError(Exception):
    """Base class; subclasses override the three help attributes."""

    error_code: str = "KB-ERR-000"
    why_it_happened: str = "An unexpected error occurred"
    how_to_fix: List[str] = ["Check the error message for details"]

    def __init__(
        self,
        message: str,
        *,
        error_code: Optional[str] = None,
        why_it_happened: Optional[str] = None,
        how_to_fix: Optional[List[str]] = None,
    ) -> None:
        super().__init__(sanitize_message(message))
        if error_code is not None:
            self.error_code = error_code
        if why_it_happened is not None:
            self.why_it_happened = why_it_happened
        if how_to_fix is not None:
            self.how_to_fix = how_to_fix

    @property
    def user_message(self) -> str:
        return str(self)

    def get_root_cause(self) -> BaseException:
        return get_root_cause(self)

    def info(self) -> Dict[str, Any]:
        return {
            "error_code": self.error_code,
            "why_it_happened": self.why_it_happened,
            "how_to_fix": list(self.how_to_fix),
        }


class ValidationError(KBForgeError):
    """
    Input rejected before any work was queued.

    Wrong payload shape for a job type, an unsupported or oversized file,
    a batch with nothing valid left in it.
    """

    error_code = "KB-VAL-000"
    why_it_happened = "The input does not meet kbforge's requirements"
    how_to_fix = ["Read the message for the rejected field or value"]


class ConfigValidationError(ValidationError):
    """A config value is out of range; ``field`` is its dotted path."""

    error_code = "KB-VAL-001"
    why_it_happened = "kbforge.yaml or a KBFORGE_* variable holds an invalid value"
    how_to_fix = [
        "Fix the named field in kbforge.yaml",
        "Check KBFORGE_* environment variables for typos",
    ]

    def __init__(
        self, message: str, field: Optional[str] = None, value: Any = None, **hints: Any
    ) -> None:
        super().__init__(message, **hints)
        self.field = field
        self.value = value


class NotFoundError(KBForgeError):
    """``resource`` is "job", "batch" or "document"."""

    error_code = "KB-NF-000"
    why_it_happened = "No record with that id exists for this tenant"
    how_to_fix = [
        "Check the id for typos",
        "Finished jobs are deleted after the cleanup retention window",
    ]

    def __init__(
        self,
        message: str,
        resource: Optional[str] = None,
        resource_id: Optional[str] = None,
        **hints: Any,
    ) -> None:
        super().__init__(message, **hints)
        self.resource = resource
        self.resource_id = resource_id


class ProcessingError(KBForgeError):
    """A handler failed while extracting, chunking or indexing."""

    error_code = "KB-PROC-000"
    why_it_happened = "A processing stage failed for this document"
    how_to_fix = ["Check that the source is readable", "Resubmit the input"]


class ExtractionError(ProcessingError):
    error_code = "KB-PROC-001"
    why_it_happened = "No readable text could be taken from the file or page"
    how_to_fix = [
        "Submit a text, markdown, JSON, CSV or HTML source",
        "Register a ContentExtractor for other formats",
    ]


class ChunkingError(ProcessingError):
    error_code = "KB-PROC-002"
    why_it_happened = "The chunking strategy or its options are not usable"
    how_to_fix = [
        "Use one of: semantic, hierarchical, overlapping, hybrid",
        "Keep chunk_overlap below chunk_size and min_chunk_size <= max_chunk_size",
    ]


class TransientHandlerError(KBForgeError):
    """A failure worth retrying: network, a busy indexer, a locked file."""

    error_code = "KB-JOB-001"
    why_it_happened = "A resource the job depends on was temporarily unavailable"
    how_to_fix = ["No action needed; the queue retries with backoff"]


class JobCancelledError(KBForgeError):
    """
    Raised from JobContext.checkpoint() once the job is cancelled.

    Handlers let it propagate so the queue records CANCELLED, not FAILED.
    """

    error_code = "KB-JOB-002"
    why_it_happened = "Cancellation was requested while the job was running"
    how_to_fix = ["Resubmit the input if the cancellation was a mistake"]

    def __init__(self, job_id: str) -> None:
        super().__init__(f"Job {job_id} was cancelled")
        self.job_id = job_id


class RetryError(KBForgeError):
    error_code = "KB-INFRA-001"
    why_it_happened = "Every retry attempt failed"
    how_to_fix = [
        "Check network access to the source",
        "Try again once the remote service is reachable",
    ]

    def __init__(
        self,
        message: str,
        attempts: Optional[int] = None,
        last_exception: Optional[Exception] = None,
        **hints: Any,
    ) -> None:
        super().__init__(message, **hints)
        self.attempts = attempts
        self.last_exception = last_exception


_BUILTIN_ERROR_INFO: List[Tuple[type, str, str, List[str]]] = [
    (
        FileNotFoundError,
        "KB-FILE-001",
        "The file or directory does not exist",
        ["Check the path", "Check read permissions on the parent directory"],
    ),
    (
        PermissionError,
        "KB-FILE-002",
        "The process may not read or write this path",
        ["Check the file's owner and mode"],
    ),
    (
        ConnectionError,
        "KB-CONN-001",
        "A network connection could not be opened",
        ["Check connectivity", "Check the URL"],
    ),
]


def get_error_info(exc: BaseException) -> Dict[str, Any]:
    """error_code / why_it_happened / how_to_fix for any exception."""
    if isinstance(exc, KBForgeError):
        return exc.info()
    for exc_type, code, why, fixes in _BUILTIN_ERROR_INFO:
        if isinstance(exc, exc_type):
            return {"error_code": code, "why_it_happened": why, "how_to_fix": list(fixes)}
    return {
        "error_code": "KB-ERR-999",
        "why_it_happened": "An unexpected error occurred",
        "how_to_fix": ["Run with --debug for a full traceback"],
    }
