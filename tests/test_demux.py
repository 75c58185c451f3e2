"""
Tests for the inbound event demultiplexer and the assemblers it drives.
"""

import base64
import json
from typing import Any, Dict, List, Optional

import pytest

from voicepilot.core.llm import ParsedToolCall
from voicepilot.realtime.assemblers import AudioClipAssembler, ToolCallAssembler
from voicepilot.realtime.correlation import ResponseCorrelator
from voicepilot.realtime.demux import EventDemultiplexer, answer_payload
from voicepilot.realtime.events import (
    EventBus,
    Role,
    SpeechBoundaryEvent,
    ToolCallEvent,
    TranscriptEvent,
    WarningEvent,
)
from tests.conftest import RecordingExecutor, RecordingPlayer, RecordingSink


class Outbox:
    def __init__(self):
        self.events: List[Dict[str, Any]] = []

    async def __call__(self, event: Dict[str, Any]) -> None:
        self.events.append(event)


class Clock:
    def __init__(self, now: float = 0.0):
        self.now = now

    def __call__(self) -> float:
        return self.now


def audio_delta(item_id: str, pcm: bytes) -> Dict[str, Any]:
    return {
        "type": "response.audio.delta",
        "item_id": item_id,
        "delta": base64.b64encode(pcm).decode("ascii"),
    }


def created(response_id: str, correlation_id: Optional[str] = None) -> Dict[str, Any]:
    response: Dict[str, Any] = {"id": response_id}
    if correlation_id is not None:
        response["metadata"] = {"correlation_id": correlation_id}
    return {"type": "response.created", "response": response}


@pytest.fixture
def bus():
    return EventBus()


@pytest.fixture
def received(bus):
    events: List[Any] = []

    async def record(event):
        events.append(event)

    for event_type in (SpeechBoundaryEvent, TranscriptEvent, ToolCallEvent, WarningEvent):
        bus.subscribe(event_type, record)
    return events


@pytest.fixture
def outbox():
    return Outbox()


@pytest.fixture
def clock():
    return Clock()


@pytest.fixture
def demux(executor, outbox, player, bus, sink, clock):
    return EventDemultiplexer(
        ResponseCorrelator(),
        executor,
        outbox,
        player=player,
        events=bus,
        sink=sink,
        token_counter=len,
        clock=clock,
    )


class TestRouting:
    """Tests for type-based routing."""

    @pytest.mark.asyncio
    async def test_unknown_type_is_ignored(self, demux):
        await demux.dispatch({"type": "rate_limits.updated"})
        await demux.dispatch({})

    @pytest.mark.asyncio
    async def test_register_adds_handler(self, demux):
        seen = []

        async def handler(event):
            seen.append(event["type"])

        demux.register("rate_limits.updated", handler)
        demux.register("response.done", handler)
        await demux({"type": "rate_limits.updated"})
        await demux({"type": "response.done", "response": {"id": "r"}})

        assert seen == ["rate_limits.updated", "response.done"]
        assert "rate_limits.updated" in demux.event_types


class TestErrors:
    """Tests for error frames."""

    @pytest.mark.asyncio
    async def test_error_becomes_warning(self, demux, bus, received):
        await demux.dispatch({"type": "error", "error": {"message": "Invalid session"}})
        warnings = [e for e in received if isinstance(e, WarningEvent)]
        assert len(warnings) == 1
        assert warnings[0].message == "Invalid session"
        assert warnings[0].error_type == "ProtocolError"
        # Dispatched immediately, not queued
        assert bus.queue_size == 0

    @pytest.mark.asyncio
    async def test_benign_error_is_dropped(self, demux, received):
        await demux.dispatch({"type": "error", "error": {"message": "Response parsing interrupted"}})
        assert received == []


class TestToolCalls:
    """Tests for function call assembly."""

    @pytest.mark.asyncio
    async def test_deltas_are_assembled(self, demux, executor, bus):
        for chunk in ['{"pa', 'th": ', '"a.py"}']:
            await demux.dispatch({
                "type": "response.function_call_arguments.delta",
                "item_id": "item_1",
                "call_id": "call_1",
                "name": "open_file",
                "delta": chunk,
            })
        assert demux.tool_calls["item_1"].arguments == '{"path": "a.py"}'

        await demux.dispatch({"type": "response.function_call_arguments.done", "item_id": "item_1"})

        assert executor.calls == [ParsedToolCall("open_file", '{"path": "a.py"}')]
        assert "item_1" not in demux.tool_calls
        assert bus.queue_size == 1

    @pytest.mark.asyncio
    async def test_done_arguments_win(self, demux, executor):
        await demux.dispatch({
            "type": "response.function_call_arguments.delta",
            "item_id": "item_1",
            "delta": '{"partial',
        })
        await demux.dispatch({
            "type": "response.function_call_arguments.done",
            "item_id": "item_1",
            "name": "edit_text",
            "arguments": '{"text": "done"}',
        })
        assert executor.calls[0].arguments == {"text": "done"}

    @pytest.mark.asyncio
    async def test_interleaved_items(self, demux, executor):
        for item_id, name in (("a", "cancel"), ("b", "looks_good")):
            await demux.dispatch({
                "type": "response.function_call_arguments.delta",
                "item_id": item_id,
                "name": name,
                "delta": "{}",
            })
        await demux.dispatch({"type": "response.function_call_arguments.done", "item_id": "b"})
        await demux.dispatch({"type": "response.function_call_arguments.done", "item_id": "a"})
        assert [c.name for c in executor.calls] == ["looks_good", "cancel"]

    @pytest.mark.asyncio
    async def test_output_is_sent_back(self, outbox, player):
        executor = RecordingExecutor(output="opened")
        demux = EventDemultiplexer(ResponseCorrelator(), executor, outbox, token_counter=len)

        await demux.dispatch({
            "type": "response.function_call_arguments.done",
            "item_id": "item_1",
            "call_id": "call_9",
            "name": "open_file",
            "arguments": '{"path": "a.py"}',
        })

        assert outbox.events == [
            {
                "type": "conversation.item.create",
                "item": {"type": "function_call_output", "call_id": "call_9", "output": "opened"},
            },
            {"type": "response.create"},
        ]

    @pytest.mark.asyncio
    async def test_failed_execution_keeps_assembler(self, outbox):
        executor = RecordingExecutor(fail=True)
        demux = EventDemultiplexer(ResponseCorrelator(), executor, outbox, token_counter=len)
        done = {
            "type": "response.function_call_arguments.done",
            "item_id": "item_1",
            "name": "cancel",
        }
        with pytest.raises(RuntimeError):
            await demux.dispatch(done)
        assert "item_1" in demux.tool_calls

        executor.fail = False
        await demux.dispatch(done)
        assert executor.calls == [ParsedToolCall("cancel")]
        assert demux.tool_calls == {}

    @pytest.mark.asyncio
    async def test_missing_name(self, executor, outbox):
        assembler = ToolCallAssembler("item_1", executor, outbox)
        with pytest.raises(ValueError):
            await assembler.execute({"arguments": "{}"})
        assert executor.calls == []


class TestAudio:
    """Tests for audio clip playback."""

    @pytest.mark.asyncio
    async def test_clip_plays_and_finishes(self, demux, player, sink):
        await demux.dispatch(audio_delta("item_1", b"\x00\x01" * 100))
        await demux.dispatch(audio_delta("item_1", b"\x00\x01" * 100))
        await demux.dispatch({"type": "response.audio.done", "item_id": "item_1"})

        assert player.played["item_1"] == b"\x00\x01" * 200
        assert player.finished == ["item_1"]
        assert demux.audio_clips == {}
        assert len(sink.costs) == 1
        assert sink.costs[0] > 0

    @pytest.mark.asyncio
    async def test_done_for_unknown_clip(self, demux, sink):
        await demux.dispatch({"type": "response.audio.done", "item_id": "missing"})
        assert sink.costs == []

    @pytest.mark.asyncio
    async def test_speech_start_stops_playback(self, demux, player, received):
        await demux.dispatch(audio_delta("item_1", b"\x00\x00"))
        await demux.dispatch({"type": "input_audio_buffer.speech_started", "item_id": "user_1"})

        assert player.stopped == ["item_1"]
        assert player.stop_all_calls == 1
        boundary = received[0]
        assert isinstance(boundary, SpeechBoundaryEvent)
        assert boundary.started is True
        assert boundary.source == "server"

        # Late deltas for a stopped clip are not played
        await demux.dispatch(audio_delta("item_1", b"\x01\x01"))
        assert player.played["item_1"] == b"\x00\x00"

    def test_clip_duration(self, player):
        clip = AudioClipAssembler("x", player, sample_rate=24000)
        clip.add_audio({"delta": base64.b64encode(b"\x00" * 48000).decode("ascii")})
        assert clip.finish() == 1.0


class TestTranscripts:
    """Tests for transcript and text completion events."""

    @pytest.mark.asyncio
    async def test_user_transcript(self, demux, bus):
        await demux.dispatch({
            "type": "conversation.item.input_audio_transcription.completed",
            "item_id": "user_1",
            "transcript": "open the readme\n",
        })
        assert bus.queue_size == 1
        _, _, event = bus._queue.get_nowait()
        assert event.text == "open the readme"
        assert event.role == Role.USER

    @pytest.mark.asyncio
    async def test_text_done_completes_request(self, demux, sink):
        pending = demux.correlator.register_response()
        await demux.dispatch({
            "type": "response.created",
            "response": {"id": "resp_1", "metadata": {"correlation_id": pending.correlation_id}},
        })
        await demux.dispatch({"type": "response.text.done", "response_id": "resp_1", "text": "Yes"})

        response = await pending
        assert response.text_content == answer_payload("Yes")
        assert json.loads(response.text_content) == {
            "tool": "answer_question",
            "parameters": {"answer": "Yes"},
        }
        assert len(sink.costs) == 1

    @pytest.mark.asyncio
    async def test_audio_transcript_done_completes_request(self, demux):
        pending = demux.correlator.register_response()
        await demux.dispatch(created("resp_1", pending.correlation_id))
        await demux.dispatch({
            "type": "response.audio_transcript.done",
            "response_id": "resp_1",
            "transcript": "Sure",
        })
        assert (await pending).text_content == answer_payload("Sure")

    @pytest.mark.asyncio
    async def test_streamed_deltas(self, demux):
        stream = demux.correlator.register_stream()
        await demux.dispatch(created("resp_1", stream.correlation_id))
        for delta in ("Hel", "lo"):
            await demux.dispatch({"type": "response.text.delta", "response_id": "resp_1", "delta": delta})
        await demux.dispatch({"type": "response.done", "response": {"id": "resp_1"}})

        assert await stream.text() == "Hello"

    @pytest.mark.asyncio
    async def test_response_without_content_resolves_empty(self, demux):
        pending = demux.correlator.register_response()
        await demux.dispatch(created("resp_1", pending.correlation_id))
        await demux.dispatch({"type": "response.done", "response": {"id": "resp_1"}})
        assert (await pending).text_content is None

    @pytest.mark.asyncio
    async def test_voice_turn_does_not_answer_text_request(self, demux):
        pending = demux.correlator.register_response()
        await demux.dispatch(created("resp_voice"))
        await demux.dispatch({
            "type": "response.audio_transcript.done",
            "response_id": "resp_voice",
            "transcript": "spoken reply",
        })
        await demux.dispatch({"type": "response.done", "response": {"id": "resp_voice"}})
        assert not pending.done

        await demux.dispatch(created("resp_text", pending.correlation_id))
        await demux.dispatch({"type": "response.text.done", "response_id": "resp_text", "text": "Renamed."})
        assert (await pending).text_content == answer_payload("Renamed.")


class TestAccounting:
    """Tests for cost and latency measurements."""

    @pytest.mark.asyncio
    async def test_latency_logged_once(self, demux, sink, clock):
        clock.now = 1000
        await demux.dispatch({"type": "input_audio_buffer.speech_started"})
        clock.now = 3000
        await demux.dispatch({"type": "input_audio_buffer.speech_stopped"})
        clock.now = 3250
        await demux.dispatch(audio_delta("item_1", b"\x00\x00"))
        clock.now = 3400
        await demux.dispatch(audio_delta("item_1", b"\x00\x00"))

        assert sink.latencies == [250]

    @pytest.mark.asyncio
    async def test_stt_cost(self, demux, sink, clock):
        clock.now = 0
        await demux.dispatch({"type": "input_audio_buffer.speech_started"})
        clock.now = 60_000
        await demux.dispatch({"type": "input_audio_buffer.speech_stopped"})
        assert sink.costs == [pytest.approx(0.06)]

    @pytest.mark.asyncio
    async def test_input_tokens_accumulate(self, demux):
        await demux.dispatch({"type": "response.text.done", "text": "a"})
        first = demux.input_tokens
        await demux.dispatch({"type": "response.text.done", "text": "b"})
        assert demux.input_tokens == 2 * first

    @pytest.mark.asyncio
    async def test_reset(self, demux, player, clock):
        await demux.dispatch(audio_delta("item_1", b"\x00\x00"))
        await demux.dispatch({"type": "input_audio_buffer.speech_stopped"})
        demux.reset()

        assert demux.audio_clips == {}
        assert demux.speech_stopped_at is None
        assert player.stopped == ["item_1"]
