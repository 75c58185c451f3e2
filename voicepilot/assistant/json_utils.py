"""
Helpers for pulling JSON out of loosely formatted model output.
"""

import json
import re
from typing import Any

_CODE_BLOCK = re.compile(r"```[\w-]*\s*\n?(.*?)```", re.DOTALL)


def extract_code_block(text: str) -> str:
    """
    Return the body of the first fenced code block, or the stripped text
    when there is none. An unterminated fence yields everything after it.
    """
    match = _CODE_BLOCK.search(text)
    if match:
        return match.group(1).strip()

    start = text.find("```")
    if start != -1:
        body = text[start + 3:]
        newline = body.find("\n")
        if newline != -1 and re.fullmatch(r"[\w-]*\s*", body[:newline]):
            body = body[newline + 1:]
        return body.strip()
    return text.strip()


def loads_lenient(text: str) -> Any:
    """
    Parse JSON strictly, then again allowing raw control characters
    (unescaped newlines and tabs inside strings are common in model output).
    """
    try:
        return json.loads(text)
    except json.JSONDecodeError:
        return json.loads(text, strict=False)


def loads_object(text: str) -> dict:
    """Parse a JSON object from raw text or from its first code block."""
    try:
        value = loads_lenient(text)
    except json.JSONDecodeError:
        value = loads_lenient(extract_code_block(text))
    if not isinstance(value, dict):
        raise ValueError(f"Expected JSON object, got {type(value).__name__}")
    return value


def loads_array(text: str) -> list:
    """Parse a JSON array from raw text or from its first code block."""
    try:
        value = loads_lenient(text)
    except json.JSONDecodeError:
        value = loads_lenient(extract_code_block(text))
    if not isinstance(value, list):
        raise ValueError(f"Expected JSON array, got {type(value).__name__}")
    return value


def canonical(value: Any) -> str:
    """Compact canonical serialization."""
    return json.dumps(value, separators=(",", ":"), ensure_ascii=False)
