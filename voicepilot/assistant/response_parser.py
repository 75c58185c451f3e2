"""
Response Parser Module

Parses the wide variety of responses given by language models and returns
the tool calls they ask for.

Models answer the same prompt in many shapes: markdown headings with JSON
blocks, a bare `{"tool": ..., "parameters": ...}` object, a JSON array,
an escaped JSON string, or plain prose. Each shape is handled by one
strategy; strategies are tried in order and the first one returning a
result wins. A strategy that raises is treated as not matching. Plain
prose always falls through to the speak tool.

The parser is a pure function of the response and the available tool
names, so it is safe to call concurrently.

Usage:
    from voicepilot.assistant.response_parser import parse_response

    calls = parse_response(response, available_tools=["edit_text", "tts"])
"""

import json
import re
from typing import Callable, List, Optional, Sequence

from voicepilot.assistant.json_utils import canonical, loads_array, loads_lenient, loads_object
from voicepilot.assistant.tools import SPEAK_TOOL
from voicepilot.core.llm import ModelResponse, ParsedToolCall
from voicepilot.errors import ParseAmbiguity
from voicepilot.logger import get_logger

logger = get_logger(__name__)

Strategy = Callable[[str, Sequence[str]], Optional[List[ParsedToolCall]]]

HEADING_BLOCK = re.compile(r"###\s*(.*?)\s*\n\s*```json\s*(\{.*?\})?\s*```", re.DOTALL)
JSON_BLOCK = re.compile(r"```json(.*?)```", re.DOTALL)
DIRECTIVE_MARKER = "directive"


def sanitize_tool_name(raw: str) -> str:
    """Restrict a heading-derived tool name to identifier characters."""
    name = re.sub(r"[^A-Za-z0-9_]", "", raw)
    if not name:
        raise ValueError(f"No usable tool name in heading: {raw!r}")
    return name


def _arguments(value: object) -> str:
    if not isinstance(value, dict):
        raise ValueError(f"Tool arguments must be an object, got {type(value).__name__}")
    return canonical(value)


def _single_key_calls(items: list) -> List[ParsedToolCall]:
    calls = []
    for item in items:
        if not isinstance(item, dict) or not item:
            raise ValueError(f"Not a tool object: {item!r}")
        name = next(iter(item))
        calls.append(ParsedToolCall(name, _arguments(item[name])))
    return calls


# ============================================================================
# Strategies (in precedence order)
# ============================================================================

def heading_blocks(text: str, available_tools: Sequence[str]) -> Optional[List[ParsedToolCall]]:
    """`### tool_name` headings, each followed by a fenced JSON block."""
    matches = list(HEADING_BLOCK.finditer(text))
    if not matches:
        return None

    calls = []
    for match in matches:
        name = sanitize_tool_name(match.group(1))
        body = (match.group(2) or "{}").replace("\r\n", "").replace("\r", "")
        calls.append(ParsedToolCall(name, _arguments(loads_lenient(body))))
    return calls


def tool_and_parameters(text: str, available_tools: Sequence[str]) -> Optional[List[ParsedToolCall]]:
    """A single `{"tool": ..., "parameters": {...}}` object."""
    body = loads_object(text)
    if "tool" in body and "parameters" in body:
        return [ParsedToolCall(str(body["tool"]), _arguments(body["parameters"]))]
    return None


def lone_known_tool_key(text: str, available_tools: Sequence[str]) -> Optional[List[ParsedToolCall]]:
    """A single object whose only key is an available tool name."""
    body = loads_object(text)
    if len(body) == 1:
        name = next(iter(body))
        if name in available_tools:
            return [ParsedToolCall(name, _arguments(body[name]))]
    return None


def only_available_tool(text: str, available_tools: Sequence[str]) -> Optional[List[ParsedToolCall]]:
    """With exactly one tool available the whole object is its arguments."""
    if len(available_tools) != 1:
        return None
    body = loads_object(text)
    return [ParsedToolCall(available_tools[0], canonical(body))]


def named_json_blocks(text: str, available_tools: Sequence[str]) -> Optional[List[ParsedToolCall]]:
    """One or more fenced JSON blocks shaped `{"name": ..., "parameters": {...}}`."""
    blocks = JSON_BLOCK.findall(text)
    if not blocks:
        return None

    calls = []
    for block in blocks:
        body = loads_object(block)
        if "name" not in body or "parameters" not in body:
            raise ValueError(f"Unable to find tool: {next(iter(body), '')}")
        calls.append(ParsedToolCall(str(body["name"]), _arguments(body["parameters"])))
    return calls


def directive_array(text: str, available_tools: Sequence[str]) -> Optional[List[ParsedToolCall]]:
    """A raw JSON array of single-key tool objects carrying the directive marker."""
    if DIRECTIVE_MARKER not in text:
        return None
    items = loads_array(text)
    if DIRECTIVE_MARKER not in json.dumps(items):
        return None
    return _single_key_calls(items)


def escaped_answer_block(text: str, available_tools: Sequence[str]) -> Optional[List[ParsedToolCall]]:
    """A fenced JSON answer whose content arrived with escaped newlines and quotes."""
    if not text.startswith("```json"):
        return None
    raw = text.split("```json", 1)[1].split("```", 1)[0]
    raw = raw.replace("\\r\\n", "\n").replace("\\n", "\n").replace('\\"', '"')
    items = loads_lenient(raw)
    if not isinstance(items, list):
        raise ValueError("Escaped answer is not a JSON array")
    return _single_key_calls(items)


def speak_text(text: str, available_tools: Sequence[str]) -> List[ParsedToolCall]:
    """Default: speak the response as-is."""
    return [ParsedToolCall(SPEAK_TOOL, canonical({"text": text}))]


DEFAULT_STRATEGIES: List[Strategy] = [
    heading_blocks,
    tool_and_parameters,
    lone_known_tool_key,
    only_available_tool,
    named_json_blocks,
    directive_array,
    escaped_answer_block,
]


class ResponseParser:
    """
    First-match-wins chain of parsing strategies.

    Example:
        parser = ResponseParser()
        calls = parser.parse_text("### open_file\\n```json\\n{\\"path\\": \\"a.py\\"}\\n```", [])
    """

    def __init__(
        self,
        strategies: Optional[Sequence[Strategy]] = None,
        fallback: Strategy = speak_text,
    ):
        self.strategies = list(strategies if strategies is not None else DEFAULT_STRATEGIES)
        self.fallback = fallback

    def parse(self, response: ModelResponse, available_tools: Sequence[str]) -> List[ParsedToolCall]:
        """
        Extract tool calls from a finished model response.

        Native tool calls are passed through unchanged; otherwise the text
        content goes through the strategy chain.
        """
        if response.tool_calls:
            return list(response.tool_calls)
        if response.text_content is None:
            return []

        logger.debug(f"Chat completion response: {response.text_content}")
        return self.parse_text(response.text_content, available_tools)

    def parse_text(self, text: str, available_tools: Sequence[str]) -> List[ParsedToolCall]:
        available = list(available_tools)
        for strategy in self.strategies:
            try:
                calls = strategy(text, available)
            except (ValueError, TypeError, KeyError, IndexError) as e:
                logger.debug(f"{strategy.__name__} did not match: {e}")
                continue
            if calls:
                logger.debug(f"{strategy.__name__} matched {len(calls)} tool call(s)")
                return calls

        logger.debug(f"{ParseAmbiguity.__name__}: no structure found, speaking response")
        return self.fallback(text, available)


_default_parser = ResponseParser()


def parse_response(response: ModelResponse, available_tools: Sequence[str]) -> List[ParsedToolCall]:
    """Parse a model response with the default strategy chain."""
    return _default_parser.parse(response, available_tools)


def parse_text(text: str, available_tools: Sequence[str]) -> List[ParsedToolCall]:
    """Parse free text with the default strategy chain."""
    return _default_parser.parse_text(text, available_tools)
