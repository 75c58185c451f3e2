"""
Assistant Module Package

Everything between a model response and an IDE action:
- Tools: Tool schemas, the registry and the executor interface
- Prompts: Prompt templates and the realtime session descriptor
- Response Parser: Extracts tool calls from free-form model output
- Processor: Routes a transcript through a backend to the executor
  (import from voicepilot.assistant.processor)
"""

from voicepilot.assistant.tools import (
    SPEAK_TOOL,
    ANSWER_TOOL,
    ToolSchema,
    ToolRegistry,
    ToolExecutor,
    LoggingToolExecutor,
    default_registry,
)
from voicepilot.assistant.prompts import PromptLibrary, SessionDescriptorBuilder
from voicepilot.assistant.response_parser import ResponseParser, parse_response, parse_text

__all__ = [
    "SPEAK_TOOL",
    "ANSWER_TOOL",
    "ToolSchema",
    "ToolRegistry",
    "ToolExecutor",
    "LoggingToolExecutor",
    "default_registry",
    "PromptLibrary",
    "SessionDescriptorBuilder",
    "ResponseParser",
    "parse_response",
    "parse_text",
]
