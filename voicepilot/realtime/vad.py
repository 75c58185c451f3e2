"""
Voice Activity State Machine

Turns a per-frame "is voice present" signal into discrete speech segments.

Two windows smooth the raw detector output:
- Sustain: voice must persist for `sustained_duration_ms` before it counts,
  which filters transient noise spikes.
- Amnesty: a silence right after speech onset (the detector's false starts)
  ends speech after `amnesty_period_ms` instead of the full speech-silence
  threshold.

The machine is invoked synchronously once per audio frame on the capture
thread. It never blocks, holds no locks and every call is O(1).

Usage:
    vad = VoiceActivityStateMachine.from_config(settings.voice_detection)
    event = vad.process(frame.voice_present)
    if isinstance(event, SpeechStarted):
        ...
"""

import time
import uuid
from dataclasses import dataclass, field
from typing import Callable, Optional, Union

from voicepilot.config import VoiceDetectionConfig
from voicepilot.logger import get_logger

logger = get_logger(__name__)


def monotonic_ms() -> int:
    """Monotonic clock in integer milliseconds."""
    return int(time.monotonic() * 1000)


@dataclass
class VoiceDetectionState:
    """
    Mutable detection state for one capture session.

    Speech only starts with voice detected, and ending speech clears both
    flags. A silence longer than the voice threshold clears the voice flag
    alone, so mid-utterance pauses show up as voice gaps inside one speech
    segment. Unset timestamps are None.
    """
    speech_id: str = "n/a"
    is_voice_captured: bool = False
    is_voice_detected: bool = False
    is_speech_detected: bool = False
    voice_first_detected_at: Optional[int] = None
    voice_last_detected_at: Optional[int] = None
    speech_began_at: Optional[int] = None


@dataclass
class SpeechSegment:
    """A contiguous stretch of detected speech."""
    started_at: int
    id: str = field(default_factory=lambda: str(uuid.uuid4()))
    ended_at: Optional[int] = None

    @property
    def is_open(self) -> bool:
        return self.ended_at is None

    @property
    def duration_ms(self) -> Optional[int]:
        if self.ended_at is None:
            return None
        return self.ended_at - self.started_at


@dataclass(frozen=True)
class SpeechStarted:
    speech_id: str
    at: int


@dataclass(frozen=True)
class SpeechEnded:
    speech_id: str
    at: int


SpeechBoundary = Union[SpeechStarted, SpeechEnded]


class VoiceActivityStateMachine:
    """
    Debounced speech detector.

    Args:
        sustained_duration_ms: Voice must persist this long to be detected
        amnesty_period_ms: Silence allowed right after speech onset
        voice_silence_threshold_ms: Silence that clears the voice flag
        speech_silence_threshold_ms: Silence that ends speech
        clock: Millisecond clock, monotonic by default
    """

    def __init__(
        self,
        sustained_duration_ms: int = 100,
        amnesty_period_ms: int = 500,
        voice_silence_threshold_ms: int = 100,
        speech_silence_threshold_ms: int = 1000,
        clock: Optional[Callable[[], int]] = None,
    ):
        self.sustained_duration_ms = sustained_duration_ms
        self.amnesty_period_ms = amnesty_period_ms
        self.voice_silence_threshold_ms = voice_silence_threshold_ms
        self.speech_silence_threshold_ms = speech_silence_threshold_ms
        self._clock = clock or monotonic_ms
        self.state = VoiceDetectionState()
        self.current_segment: Optional[SpeechSegment] = None

    @classmethod
    def from_config(
        cls,
        config: VoiceDetectionConfig,
        clock: Optional[Callable[[], int]] = None,
    ) -> "VoiceActivityStateMachine":
        return cls(
            sustained_duration_ms=config.sustain_duration_ms,
            amnesty_period_ms=config.amnesty_period_ms,
            voice_silence_threshold_ms=config.voice_silence_threshold_ms,
            speech_silence_threshold_ms=config.speech_silence_threshold_ms,
            clock=clock,
        )

    @property
    def is_speech_detected(self) -> bool:
        return self.state.is_speech_detected

    @property
    def is_voice_detected(self) -> bool:
        return self.state.is_voice_detected

    @property
    def speech_id(self) -> str:
        return self.state.speech_id

    def process(self, voice_present: bool, now: Optional[int] = None) -> Optional[SpeechBoundary]:
        """
        Feed one frame's voice-presence signal.

        Returns:
            SpeechStarted or SpeechEnded on a speech boundary, otherwise None
        """
        if now is None:
            now = self._clock()
        if voice_present:
            return self.handle_voice_detected(now)
        return self.handle_voice_not_detected(now)

    def handle_voice_detected(self, now: int) -> Optional[SpeechStarted]:
        state = self.state
        if state.voice_first_detected_at is None:
            state.voice_first_detected_at = now
        state.voice_last_detected_at = now
        state.is_voice_captured = True

        if now - state.voice_first_detected_at < self.sustained_duration_ms:
            return None

        state.is_voice_detected = True
        if state.is_speech_detected:
            return None

        state.is_speech_detected = True
        if state.speech_began_at is None:
            state.speech_began_at = now

        self.current_segment = SpeechSegment(started_at=now)
        state.speech_id = self.current_segment.id
        logger.debug(f"Using speech id: {state.speech_id}")
        return SpeechStarted(state.speech_id, now)

    def handle_voice_not_detected(self, now: int) -> Optional[SpeechEnded]:
        state = self.state
        ended = None

        if state.voice_last_detected_at is not None:
            silence = now - state.voice_last_detected_at
            opening_frame = state.speech_began_at == state.voice_last_detected_at
            over_voice_silence = silence > self.voice_silence_threshold_ms and not opening_frame
            over_speech_silence = silence > self.speech_silence_threshold_ms and not opening_frame
            over_amnesty = opening_frame and silence > self.amnesty_period_ms

            if state.is_speech_detected and (over_speech_silence or over_amnesty):
                state.is_voice_detected = False
                state.is_speech_detected = False
                state.speech_began_at = None
                ended = self._close_segment(now)
            elif state.is_voice_detected and over_voice_silence:
                state.is_voice_detected = False

        state.voice_first_detected_at = None
        state.is_voice_captured = False
        return ended

    def _close_segment(self, now: int) -> SpeechEnded:
        segment = self.current_segment
        if segment is None:
            return SpeechEnded(self.state.speech_id, now)
        segment.ended_at = now
        self.current_segment = None
        logger.debug(f"Speech {segment.id} ended after {segment.duration_ms}ms")
        return SpeechEnded(segment.id, now)

    def reset(self) -> None:
        """Forget all detection state (e.g. when the capture session closes)."""
        self.state = VoiceDetectionState()
        self.current_segment = None
