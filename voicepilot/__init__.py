"""
VoicePilot - Source Package

A voice-driven coding assistant that bridges audio capture, voice activity
detection, language-model backends and an IDE.

This package provides:
- Voice activity detection over a per-frame voice-presence signal
- A realtime bidirectional session with a streaming AI backend
- Best-effort parsing of model output into tool calls
- A blocking/streaming client for non-realtime backends
- CLI interface for interaction
"""

__version__ = "1.0.0"

from voicepilot.config import settings

__all__ = ["settings", "__version__"]
