"""
Exponential backoff.

Two callers share the same delay formula, ``base * factor ** attempt``
capped at ``max_delay``:

- JobQueue reschedules a failed job ``calculate_delay(attempts - 1, ...)``
  seconds later with jitter off, giving 5s, 10s and 20s for the default 5s
  base.
- Blocking outbound calls inside handlers (page fetches) wrap themselves
  in ``@retry``, which sleeps between attempts and adds up to 25% jitter.
"""

import random
import time
from dataclasses import dataclass
from functools import wraps
from typing import Any, Callable, Optional, Tuple, Type

from kbforge.core.exceptions import RetryError
from kbforge.core.logging import get_logger

logger = get_logger(__name__)

JITTER_FRACTION = 0.25

OnRetry = Callable[[Exception, int], None]


def calculate_delay(
    attempt: int,
    base_delay: float,
    max_delay: float,
    exponential_base: float,
    jitter: bool,
) -> float:
    """Seconds to wait before retry number ``attempt + 1`` (attempt is 0-based)."""
    delay = min(base_delay * exponential_base**attempt, max_delay)
    if jitter:
        delay += delay * JITTER_FRACTION * random.random()
    return delay


@dataclass(frozen=True)
class RetryPolicy:
    """How many times to call, how long to wait, and which errors count."""

    max_attempts: int = 3
    base_delay: float = 1.0
    max_delay: float = 60.0
    exponential_base: float = 2.0
    jitter: bool = True
    retry_on: Tuple[Type[Exception], ...] = (Exception,)

    def delay(self, attempt: int) -> float:
        return calculate_delay(
            attempt, self.base_delay, self.max_delay, self.exponential_base, self.jitter
        )

    def call(
        self,
        func: Callable[..., Any],
        *args: Any,
        on_retry: Optional[OnRetry] = None,
        **kwargs: Any,
    ) -> Any:
        """
        Call ``func`` until it returns or the attempts run out.

        Raises:
            RetryError: Every attempt raised one of ``retry_on``
        """
        name = getattr(func, "__qualname__", repr(func))
        last_error: Optional[Exception] = None
        for attempt in range(self.max_attempts):
            try:
                return func(*args, **kwargs)
            except self.retry_on as e:
                last_error = e
            if attempt + 1 == self.max_attempts:
                break
            wait = self.delay(attempt)
            logger.warning(
                "Call failed, retrying",
                function=name,
                attempt=f"{attempt + 1}/{self.max_attempts}",
                delay_sec=round(wait, 2),
                error=str(last_error),
            )
            if on_retry is not None:
                on_retry(last_error, attempt + 1)
            time.sleep(wait)

        logger.error("Call failed on every attempt", function=name, attempts=self.max_attempts)
        raise RetryError(
            f"Failed after {self.max_attempts} attempts: {last_error}",
            attempts=self.max_attempts,
            last_exception=last_error,
        )


def retry(
    max_attempts: int = 3,
    base_delay: float = 1.0,
    max_delay: float = 60.0,
    exponential_base: float = 2.0,
    jitter: bool = True,
    retryable_exceptions: Optional[Tuple[Type[Exception], ...]] = None,
    on_retry: Optional[OnRetry] = None,
) -> Callable[[Callable[..., Any]], Callable[..., Any]]:
    """
    Retry a blocking function with exponential backoff.

        @retry(retryable_exceptions=(httpx.TransportError,))
        def fetch(url: str) -> str:
            ...

    Exceptions outside ``retryable_exceptions`` propagate on the first
    failure. ``on_retry(error, attempt)`` runs before each sleep.
    """
    policy = RetryPolicy(
        max_attempts=max_attempts,
        base_delay=base_delay,
        max_delay=max_delay,
        exponential_base=exponential_base,
        jitter=jitter,
        retry_on=retryable_exceptions or (Exception,),
    )

    def decorator(func: Callable[..., Any]) -> Callable[..., Any]:
        @wraps(func)
        def wrapper(*args: Any, **kwargs: Any) -> Any:
            return policy.call(func, *args, on_retry=on_retry, **kwargs)

        return wrapper

    return decorator
