"""Tests for backoff delays and the @retry decorator."""

from __future__ import annotations

from typing import List
from unittest.mock import patch

import pytest

from kbforge.core.exceptions import RetryError
from kbforge.core.retry import calculate_delay, retry


class TestCalculateDelay:
    def test_exponential_growth(self) -> None:
        assert [calculate_delay(n, 1.0, 60.0, 2.0, False) for n in range(4)] == [1, 2, 4, 8]

    def test_capped_at_max(self) -> None:
        assert calculate_delay(10, 1.0, 60.0, 2.0, False) == 60.0

    def test_job_reschedule_delays(self) -> None:
        """With a 5s base, failed attempts 1..3 wait 5, 10 and 20 seconds."""
        delays = [calculate_delay(attempt - 1, 5.0, 3600.0, 2.0, False) for attempt in (1, 2, 3)]
        assert delays == [5.0, 10.0, 20.0]

    def test_jitter_bounded(self) -> None:
        for _ in range(20):
            delay = calculate_delay(2, 1.0, 60.0, 2.0, True)
            assert 4.0 <= delay <= 5.0


class TestRetryDecorator:
    def test_succeeds_after_failures(self) -> None:
        calls: List[int] = []
        retried: List[int] = []

        @retry(max_attempts=3, jitter=False, on_retry=lambda e, n: retried.append(n))
        def flaky() -> str:
            calls.append(1)
            if len(calls) < 3:
                raise ConnectionError("reset")
            return "ok"

        with patch("kbforge.core.retry.time.sleep") as sleep:
            assert flaky() == "ok"

        assert len(calls) == 3
        assert retried == [1, 2]
        assert [c.args[0] for c in sleep.call_args_list] == [1.0, 2.0]

    def test_exhausted_raises_retry_error(self) -> None:
        @retry(max_attempts=2, jitter=False)
        def always_fails() -> None:
            raise ConnectionError("refused")

        with patch("kbforge.core.retry.time.sleep"):
            with pytest.raises(RetryError) as exc_info:
                always_fails()

        assert exc_info.value.attempts == 2
        assert isinstance(exc_info.value.last_exception, ConnectionError)

    def test_non_retryable_propagates(self) -> None:
        """Exceptions outside retryable_exceptions are not retried."""
        calls: List[int] = []

        @retry(retryable_exceptions=(ConnectionError,))
        def bad_input() -> None:
            calls.append(1)
            raise ValueError("bad")

        with pytest.raises(ValueError):
            bad_input()
        assert calls == [1]
