"""
Realtime Session

Ties the realtime pieces together for one conversation with the backend:

    capture ──► on_audio_data ──► RealtimeTransport ──► backend
                                       │
    EventDemultiplexer ◄── read loop ◄─┘
        ├── ResponseCorrelator  (chat_completion / stream_chat_completion)
        ├── assemblers          (tool calls, synthesized audio)
        └── EventBus            (transcripts, warnings, speech boundaries)

    SessionReconciler ── session.update ──► RealtimeTransport

The session owns its connection, loops and queues outright; `shutdown()`
releases all of them and is safe to call more than once.

Turn taking:
- Server VAD (no local VAD provider): every captured frame is streamed and
  the backend decides where utterances end.
- Local VAD: frames are streamed only while speech is detected, preceded
  by the pre-roll frames; the end of speech commits the buffer and asks
  for a response.

Rapid consecutive requests are answered separately: every request owns one
correlation. If the backend merges them into a single response, that
response completes the request it names (or the oldest one when the FIFO
fallback is enabled); the others resolve empty when their own responses
finish, or time out.

Usage:
    session = RealtimeSession(executor=my_executor)
    await session.start()
    response = await session.chat_completion("rename this variable")
    await session.shutdown()
"""

import asyncio
import concurrent.futures
import threading
from typing import Any, Callable, Dict, Optional

from voicepilot.assistant.prompts import PromptLibrary, SessionDescriptorBuilder
from voicepilot.assistant.tools import LoggingToolExecutor, ToolExecutor, default_registry
from voicepilot.config import RealtimeConfig, VoiceDetectionConfig, settings
from voicepilot.core.costs import ObservabilitySink, count_tokens
from voicepilot.core.llm import ModelResponse
from voicepilot.errors import BackendTimeout, ConnectionFailure, CorrelationAbandoned
from voicepilot.logger import get_logger
from voicepilot.realtime.assemblers import AudioPlayer
from voicepilot.realtime.capture import AudioDataListener, AudioDetection
from voicepilot.realtime.correlation import DeltaStream, ResponseCorrelator
from voicepilot.realtime.demux import EventDemultiplexer, now_ms
from voicepilot.realtime.events import (
    ConnectionEvent,
    ConnectionState,
    EventBus,
    WarningEvent,
)
from voicepilot.realtime.reconciler import SessionReconciler
from voicepilot.realtime.transport import END_OF_UTTERANCE, Connector, RealtimeTransport

logger = get_logger(__name__)


class RealtimeSession(AudioDataListener):
    """
    One realtime conversation with the backend.

    Args:
        config: Realtime endpoint configuration
        voice_detection: Turn detection configuration
        build_descriptor: Returns the desired session descriptor
        executor: Executes tool calls requested by the backend
        player: Plays synthesized audio
        events: Bus for user-visible events
        sink: Cost and latency sink
        connector: Websocket factory (tests)
        token_counter: Token counter for LLM cost estimates
    """

    def __init__(
        self,
        config: Optional[RealtimeConfig] = None,
        voice_detection: Optional[VoiceDetectionConfig] = None,
        build_descriptor: Optional[Callable[[], Dict[str, Any]]] = None,
        executor: Optional[ToolExecutor] = None,
        player: Optional[AudioPlayer] = None,
        events: Optional[EventBus] = None,
        sink: Optional[ObservabilitySink] = None,
        connector: Optional[Connector] = None,
        token_counter: Callable[[str], int] = count_tokens,
        clock: Callable[[], float] = now_ms,
    ):
        self.config = config or settings.realtime
        voice_detection = voice_detection or settings.voice_detection
        self.server_vad = voice_detection.server_side
        self.events = events

        if build_descriptor is None:
            build_descriptor = SessionDescriptorBuilder(
                PromptLibrary(),
                default_registry(),
                prompt_name=lambda: settings.assistant.prompt_name,
                server_vad=self.server_vad,
                azure_host=self.config.azure_host,
                transcription_model=self.config.transcription_model,
            ).build

        self.correlator = ResponseCorrelator(fifo_fallback=self.config.correlation_fallback)
        self.transport = RealtimeTransport(
            self.config,
            self._dispatch,
            connector=connector,
            on_reset=self._on_connection_reset,
            on_failure=self._on_connection_failure,
        )
        self.demux = EventDemultiplexer(
            self.correlator,
            executor or LoggingToolExecutor(),
            self.transport.send_event,
            player=player,
            events=events,
            sink=sink,
            token_counter=token_counter,
            sample_rate=self.config.sample_rate,
            clock=clock,
        )
        self.reconciler = SessionReconciler(
            self.transport, build_descriptor, self.config.reconcile_interval_s,
        )

        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._reconcile_task: Optional[asyncio.Task] = None
        self._capture_lock = threading.Lock()
        self._capturing = False
        self._closed = False

    async def _dispatch(self, event: Dict[str, Any]) -> None:
        await self.demux.dispatch(event)

    # ========================================================================
    # Lifecycle
    # ========================================================================

    async def start(self) -> None:
        """
        Connect and start reconciling the session configuration.

        Raises:
            ConnectionFailure: When the backend could not be reached
        """
        self._loop = asyncio.get_running_loop()
        await self.transport.connect()
        await self.reconciler.reconcile_once()
        self._reconcile_task = asyncio.create_task(self.reconciler.run())
        await self._publish(ConnectionEvent(state=ConnectionState.CONNECTED))

    async def shutdown(self) -> None:
        """Release the connection, loops and pending requests."""
        if self._closed:
            return
        self._closed = True

        await self.transport.shutdown()
        if self._reconcile_task is not None and not self._reconcile_task.done():
            self._reconcile_task.cancel()
            try:
                await self._reconcile_task
            except asyncio.CancelledError:
                pass

        self.correlator.abandon_all(CorrelationAbandoned("Realtime session closed"))
        self.demux.reset()
        await self._publish(ConnectionEvent(state=ConnectionState.CLOSED))
        logger.info("Realtime session closed")

    def dispose(self) -> None:
        """Thread-safe shutdown."""
        self.transport.dispose()
        loop = self._loop
        if loop is None or loop.is_closed():
            return
        try:
            running = asyncio.get_running_loop()
        except RuntimeError:
            running = None

        if running is loop:
            loop.create_task(self.shutdown())
        else:
            asyncio.run_coroutine_threadsafe(self.shutdown(), loop)

    async def __aenter__(self) -> "RealtimeSession":
        await self.start()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.shutdown()

    async def _on_connection_reset(self) -> None:
        self.correlator.abandon_all(CorrelationAbandoned("Realtime connection lost"))
        self.demux.reset()
        self.reconciler.reset()
        with self._capture_lock:
            self._capturing = False
        await self._publish(ConnectionEvent(state=ConnectionState.RECONNECTING))

    async def _on_connection_failure(self, error: ConnectionFailure) -> None:
        await self._publish(ConnectionEvent(state=ConnectionState.FAILED, detail=str(error)))
        await self._publish(WarningEvent(message=str(error), error_type=type(error).__name__))

    async def _publish(self, event) -> None:
        if self.events is not None:
            await self.events.publish_immediate(event)

    # ========================================================================
    # Audio input
    # ========================================================================

    def on_audio_data(self, data: bytes, detection: AudioDetection) -> None:
        """Receive one captured frame. Safe to call from the capture thread."""
        if self.server_vad:
            self.transport.enqueue_threadsafe(data)
            return

        with self._capture_lock:
            if detection.speech_detected:
                if not self._capturing:
                    self._capturing = True
                    self._in_loop(self.demux.mark_speech_started(source="vad"))
                    for frame in detection.frames_before_voice_detected:
                        self.transport.enqueue_threadsafe(frame)
                self.transport.enqueue_threadsafe(data)
            elif self._capturing:
                self._capturing = False
                self.transport.enqueue_threadsafe(END_OF_UTTERANCE)
                self._in_loop(self.demux.mark_speech_stopped(source="vad"))

    def _in_loop(self, coro) -> None:
        loop = self._loop
        if loop is None or loop.is_closed() or self.transport.disposed:
            coro.close()
            return
        future = asyncio.run_coroutine_threadsafe(coro, loop)
        future.add_done_callback(self._log_failure)

    @staticmethod
    def _log_failure(future: concurrent.futures.Future) -> None:
        if future.cancelled():
            return
        exc = future.exception()
        if exc is not None:
            logger.error(f"Speech boundary handling failed: {exc}", exc_info=exc)

    # ========================================================================
    # Text requests
    # ========================================================================

    async def _send_text_message(self, text: str, correlation_id: str) -> None:
        await self.transport.send_event({
            "type": "conversation.item.create",
            "item": {
                "type": "message",
                "status": "completed",
                "role": "user",
                "content": [{"type": "input_text", "text": text}],
            },
        })
        await self.transport.send_event({
            "type": "response.create",
            "response": {"metadata": {"correlation_id": correlation_id}},
        })

    async def chat_completion(self, text: str) -> ModelResponse:
        """
        Send a user message and wait for the complete response.

        Raises:
            BackendTimeout: No response within the configured timeout
            CorrelationAbandoned: The connection was lost or the session closed
        """
        pending = self.correlator.register_response()
        try:
            await self._send_text_message(text, pending.correlation_id)
            return await asyncio.wait_for(pending.future, timeout=self.config.response_timeout_s)
        except asyncio.TimeoutError:
            raise BackendTimeout(
                f"No realtime response within {self.config.response_timeout_s}s"
            ) from None
        finally:
            self.correlator.discard(pending)

    async def stream_chat_completion(self, text: str) -> DeltaStream:
        """Send a user message and return a stream of its response text."""
        stream = self.correlator.register_stream()
        await self._send_text_message(text, stream.correlation_id)
        return stream
