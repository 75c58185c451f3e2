"""
Event System for the Realtime Assistant

Provides a small async event bus used to surface what happens inside the
realtime session to the user-facing side (chat window, status bar, logs).

Event Types:
- SpeechBoundaryEvent: Speech started/stopped, locally or server-detected
- TranscriptEvent: User or assistant transcript
- ToolCallEvent: A tool call was executed
- WarningEvent: User-visible warning (backend errors, connection loss)
- ConnectionEvent: Connection state changes
"""

import asyncio
import time
import uuid
from dataclasses import dataclass, field
from enum import Enum, auto
from typing import Awaitable, Callable, Dict, List, TypeVar

from voicepilot.logger import get_logger

logger = get_logger(__name__)

T = TypeVar("T", bound="Event")
EventHandler = Callable[[T], Awaitable[None]]


class EventPriority(Enum):
    """Priority levels for event processing."""
    CRITICAL = 0  # Speech boundaries (stop playback)
    HIGH = 1      # Warnings, connection state
    NORMAL = 2    # Transcripts, tool calls
    LOW = 3       # Diagnostics


@dataclass
class Event:
    """Base event class for all realtime events."""
    event_id: str = field(default_factory=lambda: uuid.uuid4().hex[:8])
    timestamp: float = field(default_factory=time.time)
    priority: EventPriority = EventPriority.NORMAL
    cancelled: bool = False
    source: str = ""

    def cancel(self) -> None:
        """Mark this event as cancelled."""
        self.cancelled = True

    @property
    def age_ms(self) -> float:
        """Get event age in milliseconds."""
        return (time.time() - self.timestamp) * 1000


@dataclass
class SpeechBoundaryEvent(Event):
    """Speech started or stopped."""
    started: bool = True
    speech_id: str = ""
    priority: EventPriority = EventPriority.CRITICAL
    source: str = "vad"


class Role(Enum):
    USER = auto()
    ASSISTANT = auto()


@dataclass
class TranscriptEvent(Event):
    """Completed transcript for one side of the conversation."""
    text: str = ""
    role: Role = Role.USER
    item_id: str = ""
    source: str = "realtime"


@dataclass
class ToolCallEvent(Event):
    """A tool call was handed to the executor."""
    name: str = ""
    arguments_json: str = "{}"
    item_id: str = ""
    source: str = "realtime"


@dataclass
class WarningEvent(Event):
    """Something the user should see."""
    message: str = ""
    error_type: str = ""
    priority: EventPriority = EventPriority.HIGH
    source: str = "realtime"


class ConnectionState(Enum):
    CONNECTED = auto()
    RECONNECTING = auto()
    FAILED = auto()
    CLOSED = auto()


@dataclass
class ConnectionEvent(Event):
    """Realtime connection state change."""
    state: ConnectionState = ConnectionState.CONNECTED
    detail: str = ""
    priority: EventPriority = EventPriority.HIGH
    source: str = "transport"


class EventBus:
    """
    Simple async event bus.

    Features:
    - Async publish/subscribe
    - Priority-based processing
    - Direct dispatch for critical events
    """

    def __init__(self, max_queue_size: int = 500):
        self._handlers: Dict[type, List[EventHandler]] = {}
        self._queue: asyncio.PriorityQueue = asyncio.PriorityQueue(maxsize=max_queue_size)
        self._running: bool = False
        self._event_count: int = 0

    def subscribe(self, event_type: type, handler: EventHandler) -> None:
        """Subscribe to events of a specific type."""
        handlers = self._handlers.setdefault(event_type, [])
        if handler not in handlers:
            handlers.append(handler)

    def unsubscribe(self, event_type: type, handler: EventHandler) -> None:
        """Unsubscribe a handler from an event type."""
        if event_type in self._handlers:
            self._handlers[event_type] = [
                h for h in self._handlers[event_type] if h != handler
            ]

    async def publish(self, event: Event) -> None:
        """Queue an event for processing."""
        if event.cancelled:
            return

        self._event_count += 1
        try:
            self._queue.put_nowait((event.priority.value, self._event_count, event))
        except asyncio.QueueFull:
            logger.warning(f"Event queue full, dropping {type(event).__name__}")

    async def publish_immediate(self, event: Event) -> None:
        """Immediately dispatch an event (bypass queue)."""
        await self._dispatch(event)

    async def _dispatch(self, event: Event) -> None:
        if event.cancelled:
            return

        handlers = []
        for registered_type, type_handlers in self._handlers.items():
            if isinstance(event, registered_type):
                handlers.extend(type_handlers)

        for handler in handlers:
            try:
                await handler(event)
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.error(f"Handler error for {type(event).__name__}: {e}")

    async def run(self) -> None:
        """Start the event processing loop."""
        self._running = True
        logger.debug("Event bus started")

        while self._running:
            try:
                _, _, event = await asyncio.wait_for(self._queue.get(), timeout=0.1)
                await self._dispatch(event)
                self._queue.task_done()
            except asyncio.TimeoutError:
                continue
            except asyncio.CancelledError:
                break
            except Exception as e:
                logger.error(f"Event bus error: {e}")

        logger.debug("Event bus stopped")

    def stop(self) -> None:
        """Stop the event processing loop."""
        self._running = False

    @property
    def queue_size(self) -> int:
        return self._queue.qsize()

    async def drain(self, timeout: float = 5.0) -> None:
        """Wait for queue to empty."""
        try:
            await asyncio.wait_for(self._queue.join(), timeout=timeout)
        except asyncio.TimeoutError:
            logger.warning("Event queue drain timed out")
