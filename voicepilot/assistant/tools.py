"""
Tool schemas, the registry of tools offered to the model, and the
executor interface the IDE side implements.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Optional

from voicepilot.core.llm import ParsedToolCall
from voicepilot.logger import get_logger

logger = get_logger(__name__)

# Fixed tool that speaks a plain-text response
SPEAK_TOOL = "tts"
# Tool used for question answering; hidden from realtime sessions
ANSWER_TOOL = "answer_question"

EDIT_MODE = "edit mode"
EDIT_MODE_TOOLS = frozenset({"edit_text", "looks_good", "cancel"})


@dataclass
class ToolSchema:
    """
    Description of a tool the model may call.

    Attributes:
        name: Tool name, used as the function name
        description: What the tool does
        parameters: JSON schema of the arguments object
    """
    name: str
    description: str = ""
    parameters: Dict[str, Any] = field(
        default_factory=lambda: {"type": "object", "properties": {}}
    )

    def as_function(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "description": self.description,
            "parameters": self.parameters,
        }


class ToolRegistry:
    """
    The tools available to the assistant.

    Visibility depends on the active prompt: edit mode only exposes the
    edit tools, every other mode exposes everything except the
    question-answering tool (answers arrive as plain text instead).
    """

    def __init__(self, tools: Optional[Iterable[ToolSchema]] = None):
        self._tools: Dict[str, ToolSchema] = {}
        for tool in tools or []:
            self.register(tool)

    def register(self, tool: ToolSchema) -> None:
        self._tools[tool.name] = tool

    def get(self, name: str) -> Optional[ToolSchema]:
        return self._tools.get(name)

    @property
    def names(self) -> List[str]:
        return list(self._tools)

    def visible_tools(self, prompt_name: str) -> List[ToolSchema]:
        if prompt_name.lower() == EDIT_MODE:
            return [t for t in self._tools.values() if t.name in EDIT_MODE_TOOLS]
        return [t for t in self._tools.values() if t.name != ANSWER_TOOL]

    def function_schemas(self, prompt_name: str) -> List[Dict[str, Any]]:
        return [t.as_function() for t in self.visible_tools(prompt_name)]

    def __len__(self) -> int:
        return len(self._tools)

    def __contains__(self, name: object) -> bool:
        return name in self._tools


def default_registry() -> ToolRegistry:
    """Built-in IDE tools."""
    text_param = {
        "type": "object",
        "properties": {"text": {"type": "string"}},
        "required": ["text"],
    }
    return ToolRegistry([
        ToolSchema(SPEAK_TOOL, "Speak the given text to the user", text_param),
        ToolSchema(
            ANSWER_TOOL,
            "Answer a question about the code",
            {
                "type": "object",
                "properties": {"answer": {"type": "string"}},
                "required": ["answer"],
            },
        ),
        ToolSchema("edit_text", "Replace the selected text in the editor", text_param),
        ToolSchema("looks_good", "Accept the pending edit"),
        ToolSchema("cancel", "Discard the pending edit"),
        ToolSchema(
            "open_file",
            "Open a file in the editor",
            {
                "type": "object",
                "properties": {"path": {"type": "string"}},
                "required": ["path"],
            },
        ),
    ])


class ToolExecutor(ABC):
    """Performs the IDE-side action for a parsed tool call."""

    @abstractmethod
    async def execute(self, call: ParsedToolCall) -> Optional[str]:
        """
        Execute a tool call.

        Returns:
            Output to hand back to the model, or None
        """


class LoggingToolExecutor(ToolExecutor):
    """Executor that only logs calls; useful headless and in tests."""

    def __init__(self):
        self.calls: List[ParsedToolCall] = []

    async def execute(self, call: ParsedToolCall) -> Optional[str]:
        self.calls.append(call)
        logger.info(f"Tool call: {call.name}({call.arguments_json})")
        return None
