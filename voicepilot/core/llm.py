"""
LLM Provider Module

This module provides abstractions and implementations for non-realtime
language model interactions: a request goes out with the message history
and the tool schemas, a complete response (or a stream of text deltas)
comes back.

Architecture:
- LLMProvider: Abstract base class defining the interface
- OpenAICompatibleProvider: Implementation for OpenAI-style chat endpoints
- Message/request/response dataclasses for type safety

Usage:
    from voicepilot.core.llm import OpenAICompatibleProvider, ChatRequest, Message

    llm = OpenAICompatibleProvider()
    response = llm.chat(ChatRequest(messages=[Message(role="user", content="Hello!")]))
    print(response.text_content)
"""

import json
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Dict, Iterator, List, Optional

import requests

from voicepilot.config import settings
from voicepilot.errors import (
    AuthenticationFailure,
    BackendTimeout,
    RateLimited,
    UnknownBackendError,
)
from voicepilot.logger import get_logger

logger = get_logger(__name__)


@dataclass
class Message:
    """
    Represents a chat message.

    Attributes:
        role: Message role (system, user, assistant)
        content: Message content text
    """
    role: str
    content: str

    def to_dict(self) -> Dict[str, str]:
        """Convert to API-compatible dictionary."""
        return {"role": self.role, "content": self.content}


@dataclass(frozen=True)
class ParsedToolCall:
    """
    A tool invocation extracted from a model response.

    Attributes:
        name: Tool name
        arguments_json: Serialized JSON object with the tool arguments
    """
    name: str
    arguments_json: str = "{}"

    @property
    def arguments(self) -> Dict[str, Any]:
        """Decoded arguments."""
        return json.loads(self.arguments_json)

    def to_dict(self) -> Dict[str, Any]:
        return {"name": self.name, "arguments": self.arguments}


@dataclass
class ModelResponse:
    """
    A finished, non-streaming model response.

    Attributes:
        text_content: Free-form text returned by the model
        tool_calls: Native tool calls, when the backend supports them
        model: Model name used
        usage: Token usage statistics
    """
    text_content: Optional[str] = None
    tool_calls: Optional[List[ParsedToolCall]] = None
    model: str = ""
    usage: Dict[str, int] = field(default_factory=dict)

    @property
    def total_tokens(self) -> int:
        return self.usage.get("total_tokens", 0)


@dataclass
class ChatRequest:
    """
    Structured request for a language model.

    Attributes:
        messages: Conversation history
        tools: Function schemas offered to the model
        model: Model identifier override
    """
    messages: List[Message]
    tools: List[Dict[str, Any]] = field(default_factory=list)
    model: Optional[str] = None


class LLMProvider(ABC):
    """
    Abstract base class for non-realtime LLM providers.
    """

    @abstractmethod
    def chat(self, request: ChatRequest) -> ModelResponse:
        """
        Generate a complete response.

        Raises:
            AuthenticationFailure, RateLimited, BackendTimeout, UnknownBackendError
        """

    @abstractmethod
    def stream_chat(self, request: ChatRequest) -> Iterator[str]:
        """
        Generate a response as a lazy sequence of text deltas.
        """


def throw_if_error(response: requests.Response) -> None:
    """
    Classify a failed HTTP response into the backend error taxonomy.

    Args:
        response: Response from the backend

    Raises:
        AuthenticationFailure: On HTTP 401
        RateLimited: On HTTP 429
        UnknownBackendError: On any other non-success status
    """
    if response.ok:
        return

    message = _error_message(response)
    if response.status_code == 401:
        raise AuthenticationFailure(response.status_code, message)
    if response.status_code == 429:
        raise RateLimited(response.status_code, message)
    raise UnknownBackendError(response.status_code, message)


def _error_message(response: requests.Response) -> str:
    try:
        body = response.json()
    except ValueError:
        return response.text or "Unknown error"

    error = body.get("error", "Unknown error") if isinstance(body, dict) else body
    if isinstance(error, dict):
        return error.get("message") or json.dumps(error)
    return str(error)


class OpenAICompatibleProvider(LLMProvider):
    """
    LLM provider for OpenAI-compatible chat completion endpoints.

    Features:
    - Native tool calls mapped to ParsedToolCall
    - Retry with exponential backoff on transport errors
    - Error classification (authentication, rate limit, timeout, unknown)
    - SSE streaming of text deltas

    Example:
        llm = OpenAICompatibleProvider()
        response = llm.chat(ChatRequest(messages=[Message("user", "Hi")]))
    """

    def __init__(
        self,
        provider_url: Optional[str] = None,
        api_key: Optional[str] = None,
        model: Optional[str] = None,
        temperature: Optional[float] = None,
        max_tokens: Optional[int] = None,
        timeout_s: Optional[float] = None,
        max_retries: Optional[int] = None,
    ):
        self.provider_url = provider_url or settings.llm.provider_url
        self.api_key = api_key if api_key is not None else settings.llm.api_key
        self.model = model or settings.llm.model
        self.temperature = temperature if temperature is not None else settings.llm.temperature
        self.max_tokens = max_tokens if max_tokens is not None else settings.llm.max_tokens
        self.timeout_s = timeout_s if timeout_s is not None else settings.llm.timeout_s
        self.max_retries = max_retries if max_retries is not None else settings.llm.max_retries

        logger.info(f"Initialized OpenAICompatibleProvider: model={self.model}")

    @property
    def _headers(self) -> Dict[str, str]:
        return {
            "Authorization": f"Bearer {self.api_key}",
            "Content-Type": "application/json",
            "Accept": "application/json",
        }

    def _body(self, request: ChatRequest, stream: bool = False) -> Dict[str, Any]:
        body: Dict[str, Any] = {
            "model": request.model or self.model,
            "messages": [m.to_dict() for m in request.messages],
            "temperature": self.temperature,
            "max_tokens": self.max_tokens,
        }
        if request.tools:
            body["tools"] = [{"type": "function", "function": tool} for tool in request.tools]
        if stream:
            body["stream"] = True
        return body

    def _post(self, body: Dict[str, Any], stream: bool = False) -> requests.Response:
        """POST with retries on transport errors; HTTP errors are classified, not retried."""
        last_exception: Optional[Exception] = None

        for attempt in range(self.max_retries):
            try:
                response = requests.post(
                    self.provider_url,
                    headers=self._headers,
                    json=body,
                    timeout=self.timeout_s,
                    stream=stream,
                )
                throw_if_error(response)
                return response
            except requests.Timeout as e:
                raise BackendTimeout(f"No response within {self.timeout_s}s") from e
            except requests.ConnectionError as e:
                last_exception = e
                logger.warning(f"LLM request failed (attempt {attempt + 1}/{self.max_retries}): {e}")
                if attempt < self.max_retries - 1:
                    time.sleep(2 ** attempt)

        raise UnknownBackendError(None, f"Request failed: {last_exception}")

    def chat(self, request: ChatRequest) -> ModelResponse:
        response = self._post(self._body(request))
        data = response.json()

        choice = data["choices"][0]
        message = choice.get("message", {})
        tool_calls = [
            ParsedToolCall(
                name=call["function"]["name"],
                arguments_json=call["function"].get("arguments") or "{}",
            )
            for call in message.get("tool_calls") or []
        ]

        logger.debug(f"Chat completion response: {message.get('content')}")
        return ModelResponse(
            text_content=message.get("content"),
            tool_calls=tool_calls or None,
            model=data.get("model", self.model),
            usage=data.get("usage", {}),
        )

    def stream_chat(self, request: ChatRequest) -> Iterator[str]:
        response = self._post(self._body(request, stream=True), stream=True)

        # Released on early exit and on error frames
        with response:
            for line in response.iter_lines():
                if not line:
                    continue
                line = line.decode("utf-8")
                if line == "event: error":
                    continue
                if not line.startswith("data: "):
                    continue

                data_str = line[6:]
                if data_str == "[DONE]":
                    break
                try:
                    data = json.loads(data_str)
                except json.JSONDecodeError:
                    continue

                if "error" in data:
                    error = data["error"]
                    status = error.get("status_code") if isinstance(error, dict) else None
                    logger.warning(f"Received error while streaming completions: {data}")
                    raise UnknownBackendError(status, str(error))

                choices = data.get("choices") or []
                if choices:
                    content = choices[0].get("delta", {}).get("content")
                    if content:
                        yield content
