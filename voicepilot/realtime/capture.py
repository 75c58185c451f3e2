"""
Voice capture: runs the VAD state machine over an audio frame source and
fans frames out to listeners together with the detection result.

Frames captured just before speech was detected are kept in a bounded
pre-roll buffer so the start of an utterance is not clipped; listeners
receive them once, with the frame on which speech starts.
"""

from abc import ABC, abstractmethod
from collections import deque
from dataclasses import dataclass, field
from typing import Deque, List, Optional

from voicepilot.config import VoiceDetectionConfig
from voicepilot.logger import get_logger
from voicepilot.realtime.vad import SpeechBoundary, SpeechStarted, VoiceActivityStateMachine

logger = get_logger(__name__)


@dataclass
class AudioFrame:
    """
    One frame of raw PCM audio.

    Attributes:
        data: 16-bit little-endian PCM bytes
        voice_present: Voice hint from the frame source's detector
        timestamp_ms: Capture time, used as the VAD clock when set
    """
    data: bytes
    voice_present: bool = False
    timestamp_ms: Optional[int] = None


@dataclass
class AudioDetection:
    """Detection result delivered alongside each frame."""
    speech_detected: bool = False
    frames_before_voice_detected: List[bytes] = field(default_factory=list)


class AudioDataListener(ABC):
    """Receives captured frames."""

    @abstractmethod
    def on_audio_data(self, data: bytes, detection: AudioDetection) -> None:
        """Called on the capture thread; must not block."""


class VoiceCapture:
    """
    Feeds frames through a VoiceActivityStateMachine and notifies listeners.

    Example:
        capture = VoiceCapture(VoiceActivityStateMachine())
        capture.add_listener(session)
        for frame in source:
            capture.process_frame(frame)
    """

    def __init__(self, vad: VoiceActivityStateMachine, pre_roll_frames: int = 10):
        self.vad = vad
        self._pre_roll: Deque[bytes] = deque(maxlen=max(pre_roll_frames, 1))
        self._pre_roll_enabled = pre_roll_frames > 0
        self._listeners: List[AudioDataListener] = []

    @classmethod
    def from_config(cls, config: VoiceDetectionConfig) -> "VoiceCapture":
        return cls(VoiceActivityStateMachine.from_config(config), config.pre_roll_frames)

    def add_listener(self, listener: AudioDataListener) -> None:
        if listener not in self._listeners:
            self._listeners.append(listener)

    def remove_listener(self, listener: AudioDataListener) -> None:
        if listener in self._listeners:
            self._listeners.remove(listener)

    def process_frame(self, frame: AudioFrame) -> Optional[SpeechBoundary]:
        """Run one frame through VAD and deliver it to every listener."""
        boundary = self.vad.process(frame.voice_present, frame.timestamp_ms)

        pre_roll: List[bytes] = []
        if isinstance(boundary, SpeechStarted):
            pre_roll = list(self._pre_roll)
            self._pre_roll.clear()

        speech_detected = self.vad.is_speech_detected
        if not speech_detected and self._pre_roll_enabled:
            self._pre_roll.append(frame.data)

        detection = AudioDetection(speech_detected, pre_roll)
        for listener in list(self._listeners):
            try:
                listener.on_audio_data(frame.data, detection)
            except Exception as e:
                logger.error(f"Audio listener {type(listener).__name__} failed: {e}")
        return boundary

    def reset(self) -> None:
        self.vad.reset()
        self._pre_roll.clear()
