"""
Assemblers rebuild a complete tool call or audio clip from the partial
events the backend streams for one conversation item.

Assemblers are created, fed and finalized from the read loop only.
"""

import base64
from abc import ABC, abstractmethod
from typing import Any, Awaitable, Callable, Dict, List, Optional

from voicepilot.assistant.tools import ToolExecutor
from voicepilot.core.llm import ParsedToolCall
from voicepilot.logger import get_logger

logger = get_logger(__name__)

SendEvent = Callable[[Dict[str, Any]], Awaitable[None]]


class AudioPlayer(ABC):
    """Plays synthesized PCM audio, one stream per clip id."""

    @abstractmethod
    def play(self, clip_id: str, pcm: bytes) -> None:
        """Queue PCM for the clip; must not block."""

    @abstractmethod
    def finish(self, clip_id: str) -> None:
        """No more audio will arrive for the clip."""

    @abstractmethod
    def stop(self, clip_id: str) -> None:
        """Stop playback of the clip immediately."""

    def stop_all(self) -> None:
        """Stop every clip, including finished ones still draining."""


class NullAudioPlayer(AudioPlayer):
    """Discards audio (text-only sessions)."""

    def play(self, clip_id: str, pcm: bytes) -> None:
        pass

    def finish(self, clip_id: str) -> None:
        pass

    def stop(self, clip_id: str) -> None:
        pass


class ToolCallAssembler:
    """
    Collects streamed function call arguments for one item and executes
    the call when the backend marks it done.
    """

    def __init__(self, item_id: str, executor: ToolExecutor, send: SendEvent):
        self.item_id = item_id
        self.executor = executor
        self._send = send
        self._chunks: List[str] = []
        self.name: Optional[str] = None
        self.call_id: Optional[str] = None
        self.executed = False

    def add_delta(self, event: Dict[str, Any]) -> None:
        self._chunks.append(event.get("delta", ""))
        self.name = event.get("name") or self.name
        self.call_id = event.get("call_id") or self.call_id

    @property
    def arguments(self) -> str:
        return "".join(self._chunks)

    async def execute(self, event: Dict[str, Any]) -> ParsedToolCall:
        """
        Execute the finished call. The done event's full argument string
        wins over the accumulated deltas.
        """
        self.name = event.get("name") or self.name
        self.call_id = event.get("call_id") or self.call_id
        arguments = event.get("arguments") or self.arguments or "{}"
        if not self.name:
            raise ValueError(f"Function call {self.item_id} finished without a name")

        call = ParsedToolCall(self.name, arguments)
        logger.info(f"Executing realtime tool: {call.name}")
        output = await self.executor.execute(call)
        self.executed = True

        if output is not None and self.call_id:
            await self._send({
                "type": "conversation.item.create",
                "item": {
                    "type": "function_call_output",
                    "call_id": self.call_id,
                    "output": output,
                },
            })
            await self._send({"type": "response.create"})
        return call


class AudioClipAssembler:
    """Streams one synthesized audio item to the player."""

    def __init__(self, item_id: str, player: AudioPlayer, sample_rate: int = 24000):
        self.item_id = item_id
        self.player = player
        self.sample_rate = sample_rate
        self.bytes_received = 0
        self.finished = False
        self.stopped = False

    def add_audio(self, event: Dict[str, Any]) -> None:
        if self.stopped:
            return
        pcm = base64.b64decode(event.get("delta", ""))
        self.bytes_received += len(pcm)
        self.player.play(self.item_id, pcm)

    def finish(self) -> float:
        """Finalize playback and return the clip duration in seconds."""
        if not self.stopped:
            self.player.finish(self.item_id)
        self.finished = True
        return self.duration_s

    def stop(self) -> None:
        if not self.stopped:
            self.player.stop(self.item_id)
        self.stopped = True

    @property
    def duration_s(self) -> float:
        # 16-bit mono PCM
        return self.bytes_received / (2 * self.sample_rate)
