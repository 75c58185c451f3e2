"""
Event Demultiplexer

Classifies every inbound realtime event by its `type` and routes it to the
operation it belongs to:

- Tool call and audio clip deltas go to an assembler keyed by item id
  (created on first sight, removed once finalized)
- Response text completes or streams into the correlated request
- Server-side speech boundaries stop playback and drive cost/latency
  accounting
- Error frames become user-visible warnings

New event types are added with `register()` without touching the
existing handlers. Exceptions raised by a handler propagate to the
transport read loop, which logs them and moves on to the next frame.
"""

import time
from typing import Any, Awaitable, Callable, Dict, List, Optional

from voicepilot.assistant.json_utils import canonical
from voicepilot.assistant.tools import ANSWER_TOOL, ToolExecutor
from voicepilot.core.costs import (
    NullObservabilitySink,
    ObservabilitySink,
    calculate_llm_cost,
    calculate_stt_cost,
    calculate_tts_cost,
    count_tokens,
)
from voicepilot.core.llm import ModelResponse
from voicepilot.errors import ProtocolError
from voicepilot.logger import get_logger
from voicepilot.realtime.assemblers import (
    AudioClipAssembler,
    AudioPlayer,
    NullAudioPlayer,
    SendEvent,
    ToolCallAssembler,
)
from voicepilot.realtime.correlation import ResponseCorrelator
from voicepilot.realtime.events import (
    Event,
    EventBus,
    Role,
    SpeechBoundaryEvent,
    ToolCallEvent,
    TranscriptEvent,
    WarningEvent,
)

logger = get_logger(__name__)

EventDict = Dict[str, Any]
Handler = Callable[[EventDict], Awaitable[None]]

# Reported when a response is cut short by new user speech
BENIGN_ERRORS = frozenset({"Response parsing interrupted"})


def now_ms() -> float:
    return time.monotonic() * 1000


def answer_payload(text: str) -> str:
    """Wrap plain response text as an answer tool call."""
    return canonical({"tool": ANSWER_TOOL, "parameters": {"answer": text}})


class EventDemultiplexer:
    """
    Routes decoded realtime events to their handlers.

    Args:
        correlator: Pending request correlations
        executor: Executes completed tool calls
        send: Sends a control event to the backend
        player: Plays synthesized audio
        events: Bus for user-visible events
        sink: Cost and latency sink
        token_counter: Counts tokens for LLM cost estimates
        sample_rate: PCM sample rate of synthesized audio
    """

    def __init__(
        self,
        correlator: ResponseCorrelator,
        executor: ToolExecutor,
        send: SendEvent,
        player: Optional[AudioPlayer] = None,
        events: Optional[EventBus] = None,
        sink: Optional[ObservabilitySink] = None,
        token_counter: Callable[[str], int] = count_tokens,
        sample_rate: int = 24000,
        clock: Callable[[], float] = now_ms,
    ):
        self.correlator = correlator
        self.executor = executor
        self._send = send
        self.player = player or NullAudioPlayer()
        self.events = events
        self.sink = sink or NullObservabilitySink()
        self._count_tokens = token_counter
        self.sample_rate = sample_rate
        self._clock = clock

        self.tool_calls: Dict[str, ToolCallAssembler] = {}
        self.audio_clips: Dict[str, AudioClipAssembler] = {}
        self.speech_started_at: Optional[float] = None
        self.speech_stopped_at: Optional[float] = None
        self.input_tokens = 0

        self._handlers: Dict[str, List[Handler]] = {}
        self._register_defaults()

    def _register_defaults(self) -> None:
        self.register("error", self._on_error)
        self.register("response.created", self._on_response_created)
        self.register("response.function_call_arguments.delta", self._on_function_call_delta)
        self.register("response.function_call_arguments.done", self._on_function_call_done)
        self.register("response.audio.delta", self._on_audio_delta)
        self.register("response.audio.done", self._on_audio_done)
        self.register("response.text.delta", self._on_text_delta)
        self.register("response.audio_transcript.delta", self._on_text_delta)
        self.register("input_audio_buffer.speech_started", self._on_speech_started)
        self.register("input_audio_buffer.speech_stopped", self._on_speech_stopped)
        self.register(
            "conversation.item.input_audio_transcription.completed",
            self._on_user_transcript,
        )
        self.register("response.audio_transcript.done", self._on_audio_transcript_done)
        self.register("response.text.done", self._on_text_done)
        self.register("response.done", self._on_response_done)

    def register(self, event_type: str, handler: Handler) -> None:
        """Add a handler for an event type; existing handlers are kept."""
        self._handlers.setdefault(event_type, []).append(handler)

    @property
    def event_types(self) -> List[str]:
        return list(self._handlers)

    async def dispatch(self, event: EventDict) -> None:
        event_type = event.get("type", "")
        if not event_type.endswith(".delta"):
            logger.debug(f"Realtime event: {event_type}")

        handlers = self._handlers.get(event_type)
        if not handlers:
            logger.debug(f"No handler for realtime event type: {event_type}")
            return
        for handler in handlers:
            await handler(event)

    __call__ = dispatch

    # ========================================================================
    # Helpers
    # ========================================================================

    async def _publish(self, event: Event, immediate: bool = False) -> None:
        if self.events is None:
            return
        if immediate:
            await self.events.publish_immediate(event)
        else:
            await self.events.publish(event)

    def _record_first_response(self) -> None:
        """Log speech-to-response latency on the first response after speech stopped."""
        if self.speech_stopped_at is not None:
            self.sink.log_latency(self._clock() - self.speech_stopped_at)
            self.speech_stopped_at = None

    def _log_llm_cost(self, event: EventDict) -> None:
        tokens = self._count_tokens(canonical(event))
        self.sink.log_cost(calculate_llm_cost(self.input_tokens, tokens))
        # Input tokens grow with each response's output
        self.input_tokens += tokens

    def stop_all_audio(self) -> None:
        """Stop every clip that is currently playing."""
        for clip in list(self.audio_clips.values()):
            clip.stop()
        self.player.stop_all()

    def reset(self) -> None:
        """Forget all in-flight state (after the connection was replaced)."""
        self.stop_all_audio()
        self.audio_clips.clear()
        self.tool_calls.clear()
        self.speech_started_at = None
        self.speech_stopped_at = None
        self.input_tokens = 0

    def _tool_call(self, item_id: str) -> ToolCallAssembler:
        assembler = self.tool_calls.get(item_id)
        if assembler is None:
            assembler = ToolCallAssembler(item_id, self.executor, self._send)
            self.tool_calls[item_id] = assembler
        return assembler

    def _audio_clip(self, item_id: str) -> AudioClipAssembler:
        assembler = self.audio_clips.get(item_id)
        if assembler is None:
            assembler = AudioClipAssembler(item_id, self.player, self.sample_rate)
            self.audio_clips[item_id] = assembler
        return assembler

    # ========================================================================
    # Handlers
    # ========================================================================

    async def _on_error(self, event: EventDict) -> None:
        error = event.get("error") or {}
        message = error.get("message") or "Unknown realtime error"
        if message in BENIGN_ERRORS:
            logger.debug(f"Ignoring realtime error: {message}")
            return

        exc = ProtocolError(message, event)
        logger.warning(f"Realtime error: {exc.message}")
        await self._publish(
            WarningEvent(message=exc.message, error_type=type(exc).__name__),
            immediate=True,
        )

    async def _on_response_created(self, event: EventDict) -> None:
        response = event.get("response") or {}
        response_id = response.get("id")
        if not response_id:
            return
        metadata = response.get("metadata") or {}
        self.correlator.bind(response_id, metadata.get("correlation_id"))

    async def _on_function_call_delta(self, event: EventDict) -> None:
        self._record_first_response()
        self._tool_call(event["item_id"]).add_delta(event)

    async def _on_function_call_done(self, event: EventDict) -> None:
        item_id = event["item_id"]
        call = await self._tool_call(item_id).execute(event)
        # Only a successfully executed call leaves the in-flight map
        del self.tool_calls[item_id]

        self._log_llm_cost(event)
        await self._publish(ToolCallEvent(
            name=call.name,
            arguments_json=call.arguments_json,
            item_id=item_id,
        ))

    async def _on_audio_delta(self, event: EventDict) -> None:
        self._record_first_response()
        self._audio_clip(event["item_id"]).add_audio(event)

    async def _on_audio_done(self, event: EventDict) -> None:
        item_id = event["item_id"]
        clip = self.audio_clips.get(item_id)
        if clip is None:
            logger.debug(f"Audio done for unknown clip {item_id}")
            return
        duration_s = clip.finish()
        del self.audio_clips[item_id]
        self.sink.log_cost(calculate_tts_cost(duration_s))

    async def _on_text_delta(self, event: EventDict) -> None:
        self._record_first_response()
        self.correlator.push_delta(event.get("response_id"), event.get("delta", ""))

    async def mark_speech_started(self, speech_id: str = "", source: str = "server") -> None:
        """User started talking: barge in on playback and start the STT clock."""
        self.stop_all_audio()
        self.speech_started_at = self._clock()
        await self._publish(
            SpeechBoundaryEvent(started=True, speech_id=speech_id, source=source),
            immediate=True,
        )

    async def mark_speech_stopped(self, speech_id: str = "", source: str = "server") -> None:
        """User stopped talking: log input audio cost and start the latency clock."""
        self.speech_stopped_at = self._clock()
        if self.speech_started_at is not None:
            duration_s = (self.speech_stopped_at - self.speech_started_at) / 1000.0
            self.sink.log_cost(calculate_stt_cost(duration_s))
            self.speech_started_at = None
        await self._publish(
            SpeechBoundaryEvent(started=False, speech_id=speech_id, source=source),
            immediate=True,
        )

    async def _on_speech_started(self, event: EventDict) -> None:
        logger.info("Realtime speech started")
        await self.mark_speech_started(event.get("item_id", ""))

    async def _on_speech_stopped(self, event: EventDict) -> None:
        logger.info("Realtime speech stopped")
        await self.mark_speech_stopped(event.get("item_id", ""))

    async def _on_user_transcript(self, event: EventDict) -> None:
        transcript = event.get("transcript", "")
        if transcript.endswith("\n"):
            transcript = transcript[:-1]
        logger.info(f"User transcript: {transcript}")
        await self._publish(TranscriptEvent(
            text=transcript, role=Role.USER, item_id=event.get("item_id", ""),
        ))

    async def _on_audio_transcript_done(self, event: EventDict) -> None:
        transcript = event.get("transcript", "")
        logger.info(f"Assistant transcript: {transcript}")
        await self._assistant_output(event, transcript)

    async def _on_text_done(self, event: EventDict) -> None:
        text = event.get("text", "")
        logger.info(f"Assistant text: {text}")
        self._log_llm_cost(event)
        await self._assistant_output(event, text)

    async def _assistant_output(self, event: EventDict, text: str) -> None:
        await self._publish(TranscriptEvent(
            text=text, role=Role.ASSISTANT, item_id=event.get("item_id", ""),
        ))
        self.correlator.complete(
            event.get("response_id"),
            ModelResponse(text_content=answer_payload(text), model="realtime"),
        )

    async def _on_response_done(self, event: EventDict) -> None:
        response = event.get("response") or {}
        self.correlator.finish(response.get("id") or event.get("response_id"))
