"""
Realtime Interaction Module

This package keeps a long-lived bidirectional streaming session with a
realtime AI backend.

Architecture:
- VAD: Per-frame voice signal to discrete speech segments
- Capture: Pre-roll buffering and fan-out of detected speech
- Transport: Websocket connection with retry, read/write loops, restart
- Reconciler: Pushes session configuration changes
- Demultiplexer: Routes inbound events to assemblers and correlations
- Correlator: Matches backend responses to requests
- Event Bus: User-visible events (transcripts, warnings, speech)

Usage:
    from voicepilot.realtime import RealtimeSession

    async with RealtimeSession() as session:
        response = await session.chat_completion("what does this function do?")
"""

from .events import (
    Event,
    EventBus,
    EventPriority,
    SpeechBoundaryEvent,
    TranscriptEvent,
    Role,
    ToolCallEvent,
    WarningEvent,
    ConnectionEvent,
    ConnectionState,
)
from .vad import (
    VoiceActivityStateMachine,
    VoiceDetectionState,
    SpeechSegment,
    SpeechStarted,
    SpeechEnded,
)
from .capture import AudioFrame, AudioDetection, AudioDataListener, VoiceCapture
from .transport import RealtimeTransport, END_OF_UTTERANCE
from .correlation import ResponseCorrelator, PendingResponse, DeltaStream
from .assemblers import AudioPlayer, NullAudioPlayer, ToolCallAssembler, AudioClipAssembler
from .demux import EventDemultiplexer
from .reconciler import SessionReconciler
from .session import RealtimeSession

__all__ = [
    # Events
    "Event",
    "EventBus",
    "EventPriority",
    "SpeechBoundaryEvent",
    "TranscriptEvent",
    "Role",
    "ToolCallEvent",
    "WarningEvent",
    "ConnectionEvent",
    "ConnectionState",
    # VAD
    "VoiceActivityStateMachine",
    "VoiceDetectionState",
    "SpeechSegment",
    "SpeechStarted",
    "SpeechEnded",
    # Capture
    "AudioFrame",
    "AudioDetection",
    "AudioDataListener",
    "VoiceCapture",
    # Transport
    "RealtimeTransport",
    "END_OF_UTTERANCE",
    # Correlation
    "ResponseCorrelator",
    "PendingResponse",
    "DeltaStream",
    # Assemblers
    "AudioPlayer",
    "NullAudioPlayer",
    "ToolCallAssembler",
    "AudioClipAssembler",
    # Routing
    "EventDemultiplexer",
    "SessionReconciler",
    # Session
    "RealtimeSession",
]
