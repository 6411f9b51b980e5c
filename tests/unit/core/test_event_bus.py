"""Tests for the lifecycle EventBus."""

from __future__ import annotations

import asyncio
from typing import List

import pytest

from kbforge.core.events import (
    BATCH_STARTED,
    EVENT_NAMES,
    JOB_ADDED,
    JOB_COMPLETED,
    Event,
    EventBus,
)


class TestSubscribe:
    def test_named_subscriber_receives_payload(self) -> None:
        bus = EventBus()
        received: List[Event] = []
        bus.subscribe(JOB_COMPLETED, received.append)

        delivered = bus.emit(JOB_COMPLETED, job_id="j1", tenant_id="acme")

        assert delivered == 1
        assert received[0].name == JOB_COMPLETED
        assert received[0].payload == {"job_id": "j1", "tenant_id": "acme"}

    def test_other_events_not_delivered(self) -> None:
        bus = EventBus()
        received: List[Event] = []
        bus.subscribe(JOB_COMPLETED, received.append)
        assert bus.emit(JOB_ADDED, job_id="j1") == 0
        assert received == []

    def test_unknown_name_rejected(self) -> None:
        with pytest.raises(ValueError):
            EventBus().subscribe("jobExploded", lambda event: None)

    def test_subscribe_all(self) -> None:
        bus = EventBus()
        names: List[str] = []
        bus.subscribe_all(lambda event: names.append(event.name))

        bus.emit(JOB_ADDED)
        bus.emit(BATCH_STARTED)

        assert names == [JOB_ADDED, BATCH_STARTED]

    def test_unsubscribe(self) -> None:
        bus = EventBus()
        received: List[Event] = []
        bus.subscribe(JOB_ADDED, received.append)
        bus.unsubscribe(JOB_ADDED, received.append)
        bus.emit(JOB_ADDED)
        assert received == []

    def test_event_names_are_camel_case(self) -> None:
        assert "jobRetry" in EVENT_NAMES
        assert "batchCancelled" in EVENT_NAMES


class TestDelivery:
    def test_failing_subscriber_isolated(self) -> None:
        """A subscriber that raises does not stop the others."""
        bus = EventBus()
        received: List[Event] = []

        def broken(event: Event) -> None:
            raise RuntimeError("subscriber bug")

        bus.subscribe(JOB_ADDED, broken)
        bus.subscribe(JOB_ADDED, received.append)

        assert bus.emit(JOB_ADDED, job_id="j1") == 1
        assert len(received) == 1

    @pytest.mark.asyncio
    async def test_async_subscriber_runs_on_loop(self) -> None:
        bus = EventBus()
        received: List[str] = []

        async def on_added(event: Event) -> None:
            received.append(event.payload["job_id"])

        bus.subscribe(JOB_ADDED, on_added)

        bus.emit(JOB_ADDED, job_id="j1")
        await asyncio.sleep(0)
        await asyncio.sleep(0)
        assert received == ["j1"]

    def test_async_subscriber_outside_loop_dropped(self) -> None:
        """Without a running loop the coroutine is closed, not run."""
        bus = EventBus()
        received: List[str] = []

        async def on_added(event: Event) -> None:
            received.append("ran")

        bus.subscribe(JOB_ADDED, on_added)
        bus.emit(JOB_ADDED)

        assert received == []
