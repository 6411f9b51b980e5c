"""Cooperative cancellation for running jobs."""

from typing import Optional

from kbforge.core.exceptions import JobCancelledError


class CancellationToken:
    """
    Flag shared between the queue and one running handler.

    The queue calls cancel(); the handler calls raise_if_cancelled() at its
    checkpoints. Nothing interrupts a handler between checkpoints.
    """

    def __init__(self, job_id: str) -> None:
        self.job_id = job_id
        self._cancelled = False
        self.reason: Optional[str] = None

    @property
    def cancelled(self) -> bool:
        return self._cancelled

    def cancel(self, reason: str = "cancelled") -> None:
        self._cancelled = True
        self.reason = reason

    def raise_if_cancelled(self) -> None:
        if self._cancelled:
            raise JobCancelledError(self.job_id)
