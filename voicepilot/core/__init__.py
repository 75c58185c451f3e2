"""
Core Module Package

This package contains the backend-facing building blocks:
- LLM: Non-realtime language model requests and error classification
- Costs: Token counting and cost/latency accounting sinks
"""

from voicepilot.core.llm import (
    LLMProvider,
    OpenAICompatibleProvider,
    ChatRequest,
    Message,
    ModelResponse,
    ParsedToolCall,
)
from voicepilot.core.costs import ObservabilitySink, NullObservabilitySink, LoggingObservabilitySink

__all__ = [
    "LLMProvider",
    "OpenAICompatibleProvider",
    "ChatRequest",
    "Message",
    "ModelResponse",
    "ParsedToolCall",
    "ObservabilitySink",
    "NullObservabilitySink",
    "LoggingObservabilitySink",
]
