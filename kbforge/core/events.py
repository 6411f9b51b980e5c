"""Lifecycle event fan-out for the scheduler and batch processor.

Events are observability signals, not control flow: emit() never waits on a
subscriber and a failing subscriber never affects the emitter.

    bus = EventBus()
    bus.subscribe(JOB_COMPLETED, lambda event: print(event.payload["job_id"]))

Coroutine subscribers are scheduled on the running loop and left to finish
on their own.
"""

from __future__ import annotations

import asyncio
import inspect
from collections import defaultdict
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Set

from kbforge.core.logging import get_logger

logger = get_logger(__name__)

JOB_ADDED = "jobAdded"
JOB_STARTED = "jobStarted"
JOB_PROGRESS = "jobProgress"
JOB_COMPLETED = "jobCompleted"
JOB_FAILED = "jobFailed"
JOB_RETRY = "jobRetry"
JOB_CANCELLED = "jobCancelled"
BATCH_JOBS_ADDED = "batchJobsAdded"
BATCH_STARTED = "batchStarted"
BATCH_COMPLETED = "batchCompleted"
BATCH_CANCELLED = "batchCancelled"

EVENT_NAMES = frozenset(
    [
        JOB_ADDED,
        JOB_STARTED,
        JOB_PROGRESS,
        JOB_COMPLETED,
        JOB_FAILED,
        JOB_RETRY,
        JOB_CANCELLED,
        BATCH_JOBS_ADDED,
        BATCH_STARTED,
        BATCH_COMPLETED,
        BATCH_CANCELLED,
    ]
)


@dataclass
class Event:
    """A named event and its payload (always carries tenant_id)."""

    name: str
    payload: Dict[str, Any]
    emitted_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


Subscriber = Callable[[Event], Any]


class EventBus:
    """In-process publish/subscribe for lifecycle events."""

    def __init__(self) -> None:
        self._subscribers: Dict[str, List[Subscriber]] = defaultdict(list)
        self._wildcard: List[Subscriber] = []
        self._pending: Set[asyncio.Task[Any]] = set()

    def subscribe(self, name: str, callback: Subscriber) -> None:
        """Register a callback for one event name."""
        if name not in EVENT_NAMES:
            raise ValueError(f"Unknown event name: {name}")
        self._subscribers[name].append(callback)

    def subscribe_all(self, callback: Subscriber) -> None:
        """Register a callback that receives every event."""
        self._wildcard.append(callback)

    def unsubscribe(self, name: str, callback: Subscriber) -> None:
        if callback in self._subscribers.get(name, []):
            self._subscribers[name].remove(callback)
        if callback in self._wildcard:
            self._wildcard.remove(callback)

    def emit(self, name: str, **payload: Any) -> int:
        """
        Deliver an event to its subscribers.

        Args:
            name: One of the event name constants.
            **payload: Event fields (job_id or batch_id, tenant_id, ...).

        Returns:
            Number of subscribers the event was handed to.
        """
        event = Event(name=name, payload=payload)
        delivered = 0
        for callback in [*self._subscribers.get(name, []), *self._wildcard]:
            try:
                result = callback(event)
                if inspect.isawaitable(result):
                    self._schedule(result, name)
                delivered += 1
            except Exception as e:
                logger.warning(
                    "Event subscriber failed", event_name=name, error=str(e)
                )
        return delivered

    def _schedule(self, awaitable: Any, name: str) -> None:
        """Run a coroutine subscriber in the background."""
        try:
            asyncio.get_running_loop()
        except RuntimeError:
            # No running loop: close the coroutine so it is not leaked
            if inspect.iscoroutine(awaitable):
                awaitable.close()
            logger.debug("Dropped async subscriber outside event loop", event_name=name)
            return

        task = asyncio.ensure_future(awaitable)
        self._pending.add(task)

        def _done(t: asyncio.Task[Any]) -> None:
            self._pending.discard(t)
            if not t.cancelled() and t.exception() is not None:
                logger.warning(
                    "Async event subscriber failed",
                    event_name=name,
                    error=str(t.exception()),
                )

        task.add_done_callback(_done)
