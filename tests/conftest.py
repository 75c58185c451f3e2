"""
Pytest Configuration and Fixtures

This module provides shared fixtures and fakes for all tests: an in-memory
websocket standing in for the realtime backend, and recording
collaborators (tool executor, audio player, observability sink).
"""

import asyncio
import json
import os
import sys
from pathlib import Path
from typing import Any, Dict, List, Optional

import aiohttp
import pytest
from aiohttp import WSMsgType

# Add project root to path
project_root = Path(__file__).parent.parent
sys.path.insert(0, str(project_root))

# Set test environment
os.environ["APP_ENV"] = "test"
os.environ["OPENAI_API_KEY"] = "test-key"
os.environ["VAD_PROVIDER"] = "none"

from voicepilot.assistant.tools import ToolExecutor
from voicepilot.config import RealtimeConfig, VoiceDetectionConfig
from voicepilot.core.costs import ObservabilitySink
from voicepilot.core.llm import ParsedToolCall
from voicepilot.realtime.assemblers import AudioPlayer


class FakeMessage:
    """Minimal stand-in for aiohttp.WSMessage."""

    def __init__(self, type: WSMsgType, data: Any = None):
        self.type = type
        self.data = data


class FakeWebSocket:
    """In-memory websocket: tests push inbound events and inspect sent frames."""

    def __init__(self):
        self.sent: List[Dict[str, Any]] = []
        self.inbound: asyncio.Queue = asyncio.Queue()
        self.closed = False
        self.close_code: Optional[int] = None

    async def receive(self) -> FakeMessage:
        return await self.inbound.get()

    async def send_str(self, data: str) -> None:
        if self.closed:
            raise ConnectionResetError("Cannot write to closing transport")
        self.sent.append(json.loads(data))

    async def close(self, code: int = 1000, message: bytes = b"") -> bool:
        if self.closed:
            return False
        self.closed = True
        self.close_code = code
        self.inbound.put_nowait(FakeMessage(WSMsgType.CLOSED))
        return True

    def push(self, event: Dict[str, Any]) -> None:
        self.inbound.put_nowait(FakeMessage(WSMsgType.TEXT, json.dumps(event)))

    def push_raw(self, text: str) -> None:
        self.inbound.put_nowait(FakeMessage(WSMsgType.TEXT, text))

    def fail(self) -> None:
        """Simulate the peer dropping the connection mid-stream."""
        self.inbound.put_nowait(FakeMessage(WSMsgType.ERROR, ConnectionResetError("Connection reset by peer")))

    def sent_types(self) -> List[str]:
        return [frame["type"] for frame in self.sent]


class FakeConnector:
    """Connector that fails a given number of times, then hands out FakeWebSockets."""

    def __init__(self, failures: int = 0, hang: bool = False):
        self.failures = failures
        self.hang = hang
        self.calls = 0
        self.sockets: List[FakeWebSocket] = []

    async def __call__(self) -> FakeWebSocket:
        self.calls += 1
        if self.hang:
            await asyncio.sleep(3600)
        if self.calls <= self.failures:
            raise aiohttp.ClientConnectionError("Connection refused")
        ws = FakeWebSocket()
        self.sockets.append(ws)
        return ws

    @property
    def ws(self) -> FakeWebSocket:
        return self.sockets[-1]


class RecordingExecutor(ToolExecutor):
    """Executor that records calls and returns a configurable output."""

    def __init__(self, output: Optional[str] = None, fail: bool = False):
        self.calls: List[ParsedToolCall] = []
        self.output = output
        self.fail = fail

    async def execute(self, call: ParsedToolCall) -> Optional[str]:
        if self.fail:
            raise RuntimeError(f"Tool {call.name} failed")
        self.calls.append(call)
        return self.output


class RecordingPlayer(AudioPlayer):
    """Audio player that records every call."""

    def __init__(self):
        self.played: Dict[str, bytes] = {}
        self.finished: List[str] = []
        self.stopped: List[str] = []
        self.stop_all_calls = 0

    def play(self, clip_id: str, pcm: bytes) -> None:
        self.played[clip_id] = self.played.get(clip_id, b"") + pcm

    def finish(self, clip_id: str) -> None:
        self.finished.append(clip_id)

    def stop(self, clip_id: str) -> None:
        self.stopped.append(clip_id)

    def stop_all(self) -> None:
        self.stop_all_calls += 1


class RecordingSink(ObservabilitySink):
    """Observability sink that keeps every measurement."""

    def __init__(self):
        self.costs: List[float] = []
        self.latencies: List[float] = []

    def log_cost(self, usd: float) -> None:
        self.costs.append(usd)

    def log_latency(self, ms: float) -> None:
        self.latencies.append(ms)


async def wait_until(predicate, timeout: float = 1.0, interval: float = 0.005) -> None:
    """Poll until predicate() is true; fail the test on timeout."""
    loop = asyncio.get_event_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("Condition not met in time")
        await asyncio.sleep(interval)


@pytest.fixture
def realtime_config():
    """Realtime settings with short timeouts for tests."""
    return RealtimeConfig(
        api_key="test-key",
        url="wss://realtime.test/v1/realtime",
        model="test-model",
        azure_host=False,
        connect_attempts=3,
        connect_timeout_s=0.05,
        reconcile_interval_s=0.01,
        response_timeout_s=0.5,
        sample_rate=24000,
        transcription_model="whisper-1",
    )


@pytest.fixture
def server_vad_config():
    """Turn detection left to the backend."""
    return VoiceDetectionConfig(provider="none")


@pytest.fixture
def local_vad_config():
    """Turn detection by the local VAD."""
    return VoiceDetectionConfig(provider="silero")


@pytest.fixture
def connector():
    return FakeConnector()


@pytest.fixture
def executor():
    return RecordingExecutor()


@pytest.fixture
def player():
    return RecordingPlayer()


@pytest.fixture
def sink():
    return RecordingSink()


@pytest.fixture
def descriptor():
    """A fixed session descriptor builder."""
    return lambda: {
        "modalities": ["text", "audio"],
        "instructions": "Be helpful.",
        "input_audio_transcription": {"model": "whisper-1"},
        "tools": [],
    }
