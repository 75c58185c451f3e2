"""
Tests for the realtime event types and EventBus.
"""

import asyncio
from typing import Any, List

import pytest

from voicepilot.realtime.events import (
    ConnectionEvent,
    ConnectionState,
    Event,
    EventBus,
    EventPriority,
    Role,
    SpeechBoundaryEvent,
    ToolCallEvent,
    TranscriptEvent,
    WarningEvent,
)


class TestEventPriority:
    """Tests for event priority system."""

    def test_priority_ordering(self):
        """Critical events should have highest priority (lowest value)."""
        assert EventPriority.CRITICAL.value < EventPriority.HIGH.value
        assert EventPriority.HIGH.value < EventPriority.NORMAL.value
        assert EventPriority.NORMAL.value < EventPriority.LOW.value

    def test_event_defaults(self):
        assert SpeechBoundaryEvent().priority == EventPriority.CRITICAL
        assert WarningEvent(message="x").priority == EventPriority.HIGH
        assert ConnectionEvent().priority == EventPriority.HIGH
        assert TranscriptEvent(text="hi").priority == EventPriority.NORMAL
        assert TranscriptEvent(text="hi").role == Role.USER

    def test_cancel(self):
        event = ToolCallEvent(name="cancel")
        event.cancel()
        assert event.cancelled is True
        assert event.age_ms >= 0


class TestEventBus:
    """Tests for EventBus pub/sub system."""

    @pytest.mark.asyncio
    async def test_subscribe_and_publish_immediate(self):
        bus = EventBus()
        received: List[Any] = []

        async def handler(event: TranscriptEvent) -> None:
            received.append(event)

        bus.subscribe(TranscriptEvent, handler)
        await bus.publish_immediate(TranscriptEvent(text="test"))

        assert len(received) == 1
        assert received[0].text == "test"

    @pytest.mark.asyncio
    async def test_duplicate_subscription_ignored(self):
        bus = EventBus()
        count = [0]

        async def handler(event: Event) -> None:
            count[0] += 1

        bus.subscribe(WarningEvent, handler)
        bus.subscribe(WarningEvent, handler)
        await bus.publish_immediate(WarningEvent(message="x"))

        assert count[0] == 1

    @pytest.mark.asyncio
    async def test_unsubscribe(self):
        bus = EventBus()
        received = [0]

        async def handler(event: TranscriptEvent) -> None:
            received[0] += 1

        bus.subscribe(TranscriptEvent, handler)
        bus.unsubscribe(TranscriptEvent, handler)
        await bus.publish_immediate(TranscriptEvent(text="test"))

        assert received[0] == 0

    @pytest.mark.asyncio
    async def test_base_type_receives_subclasses(self):
        bus = EventBus()
        received: List[Event] = []

        async def handler(event: Event) -> None:
            received.append(event)

        bus.subscribe(Event, handler)
        await bus.publish_immediate(SpeechBoundaryEvent(started=False))
        await bus.publish_immediate(ConnectionEvent(state=ConnectionState.CLOSED))

        assert [type(e) for e in received] == [SpeechBoundaryEvent, ConnectionEvent]

    @pytest.mark.asyncio
    async def test_event_type_filtering(self):
        bus = EventBus()
        tool_calls = [0]

        async def handler(event: ToolCallEvent) -> None:
            tool_calls[0] += 1

        bus.subscribe(ToolCallEvent, handler)
        await bus.publish_immediate(TranscriptEvent(text="test"))

        assert tool_calls[0] == 0

    @pytest.mark.asyncio
    async def test_failing_handler_does_not_stop_others(self):
        bus = EventBus()
        received = [0]

        async def broken(event: Event) -> None:
            raise RuntimeError("handler failed")

        async def handler(event: Event) -> None:
            received[0] += 1

        bus.subscribe(WarningEvent, broken)
        bus.subscribe(WarningEvent, handler)
        await bus.publish_immediate(WarningEvent(message="x"))

        assert received[0] == 1

    @pytest.mark.asyncio
    async def test_cancelled_events_are_dropped(self):
        bus = EventBus()
        event = WarningEvent(message="x")
        event.cancel()
        await bus.publish(event)
        assert bus.queue_size == 0

    @pytest.mark.asyncio
    async def test_queue_processed_in_priority_order(self):
        bus = EventBus()
        order: List[str] = []

        async def handler(event: Event) -> None:
            order.append(type(event).__name__)

        bus.subscribe(Event, handler)
        await bus.publish(TranscriptEvent(text="later"))
        await bus.publish(SpeechBoundaryEvent(started=True))
        await bus.publish(WarningEvent(message="x"))
        assert bus.queue_size == 3

        task = asyncio.create_task(bus.run())
        await bus.drain(timeout=1.0)
        bus.stop()
        await task

        assert order == ["SpeechBoundaryEvent", "WarningEvent", "TranscriptEvent"]

    @pytest.mark.asyncio
    async def test_full_queue_drops_events(self):
        bus = EventBus(max_queue_size=1)
        await bus.publish(TranscriptEvent(text="a"))
        await bus.publish(TranscriptEvent(text="b"))
        assert bus.queue_size == 1
