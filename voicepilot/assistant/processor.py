"""
Directive Processor

Turns one spoken transcript into IDE actions:

    transcript → backend (realtime session or non-realtime LLM)
               → ResponseParser → ToolExecutor

Authentication and rate-limit failures are expected in normal use (bad
key, busy account) and are shown to the user as warnings instead of
propagating.
"""

import asyncio
from typing import Callable, List, Optional

from voicepilot.assistant.prompts import PromptLibrary
from voicepilot.assistant.response_parser import ResponseParser
from voicepilot.assistant.tools import ToolExecutor, ToolRegistry, default_registry
from voicepilot.config import settings
from voicepilot.core.llm import ChatRequest, LLMProvider, Message, ModelResponse, ParsedToolCall
from voicepilot.errors import AuthenticationFailure, ConfigurationError, RateLimited
from voicepilot.logger import get_logger
from voicepilot.realtime.events import EventBus, Role, ToolCallEvent, TranscriptEvent, WarningEvent
from voicepilot.realtime.session import RealtimeSession

logger = get_logger(__name__)


class DirectiveProcessor:
    """
    Routes transcripts through a backend and executes the resulting tool calls.

    Exactly one of `llm` and `session` is used; the realtime session wins
    when both are given.

    Args:
        executor: Performs tool calls
        llm: Non-realtime backend
        session: Realtime backend
        tools: Registry of tools offered to the model
        prompts: Prompt templates for the non-realtime path
        parser: Response parser
        events: Bus for user-visible events
        prompt_name: Returns the active prompt name
    """

    def __init__(
        self,
        executor: ToolExecutor,
        llm: Optional[LLMProvider] = None,
        session: Optional[RealtimeSession] = None,
        tools: Optional[ToolRegistry] = None,
        prompts: Optional[PromptLibrary] = None,
        parser: Optional[ResponseParser] = None,
        events: Optional[EventBus] = None,
        prompt_name: Optional[Callable[[], str]] = None,
    ):
        if llm is None and session is None:
            raise ConfigurationError("DirectiveProcessor needs an LLM provider or a realtime session")
        self.executor = executor
        self.llm = llm
        self.session = session
        self.tools = tools or default_registry()
        self.prompts = prompts or PromptLibrary()
        self.parser = parser or ResponseParser()
        self.events = events
        self._prompt_name = prompt_name or (lambda: settings.assistant.prompt_name)

    def available_tools(self) -> List[str]:
        return [t.name for t in self.tools.visible_tools(self._prompt_name())]

    def build_request(self, transcript: str) -> ChatRequest:
        """Non-realtime request: rendered system prompt plus the transcript."""
        prompt_name = self._prompt_name()
        visible = self.tools.visible_tools(prompt_name)
        system = self.prompts.render(
            prompt_name,
            prompt_name=prompt_name,
            tools="\n".join(f"- {t.name}: {t.description}" for t in visible),
        )
        return ChatRequest(
            messages=[Message("system", system), Message("user", transcript)],
            tools=[t.as_function() for t in visible],
        )

    async def _respond(self, transcript: str) -> ModelResponse:
        if self.session is not None:
            return await self.session.chat_completion(transcript)

        request = self.build_request(transcript)
        loop = asyncio.get_event_loop()
        return await loop.run_in_executor(None, self.llm.chat, request)

    async def process(self, transcript: str) -> List[ParsedToolCall]:
        """
        Process one transcript.

        Returns:
            The tool calls that were executed (empty when the backend
            rejected the request)
        """
        transcript = transcript.strip()
        if not transcript:
            return []

        logger.info(f"Processing directive: {transcript}")
        await self._publish(TranscriptEvent(text=transcript, role=Role.USER, source="processor"))

        try:
            response = await self._respond(transcript)
        except (AuthenticationFailure, RateLimited) as e:
            logger.warning(f"Backend rejected request: {e}")
            await self._publish(WarningEvent(
                message=e.message,
                error_type=type(e).__name__,
                source="processor",
            ))
            return []

        calls = self.parser.parse(response, self.available_tools())
        for call in calls:
            await self.executor.execute(call)
            await self._publish(ToolCallEvent(
                name=call.name,
                arguments_json=call.arguments_json,
                source="processor",
            ))
        return calls

    async def _publish(self, event) -> None:
        if self.events is not None:
            await self.events.publish(event)
