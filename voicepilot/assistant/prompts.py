"""
Prompt library and realtime session descriptor construction.

The descriptor is what the realtime backend should currently be running
with: the rendered system instructions, the visible tool schemas and the
turn-detection policy. It is rebuilt on every reconciliation cycle, so
rendering must be deterministic for unchanged inputs.
"""

from typing import Any, Callable, Dict, Optional

from voicepilot.assistant.tools import ToolRegistry
from voicepilot.errors import ConfigurationError
from voicepilot.logger import get_logger

logger = get_logger(__name__)

IDLE_MODE_PROMPT = """You are a voice-driven coding assistant embedded in the user's IDE.
The user speaks to you; their words are transcribed and sent to you as text or audio.

Current mode: {prompt_name}

Respond by calling exactly one of the available tools:
{tools}

If no tool fits, reply with a short spoken answer."""

EDIT_MODE_PROMPT = """You are editing code in the user's IDE by voice.

Current mode: {prompt_name}

Apply the user's spoken instruction to the selected text with edit_text.
Call looks_good when the user accepts the edit and cancel when they reject it.

Available tools:
{tools}"""

DEFAULT_PROMPTS = {
    "Idle Mode": IDLE_MODE_PROMPT,
    "Edit Mode": EDIT_MODE_PROMPT,
}


class PromptLibrary:
    """
    Named prompt templates rendered with str.format placeholders.

    Example:
        library = PromptLibrary()
        text = library.render("Idle Mode", tools="- tts", prompt_name="Idle Mode")
    """

    def __init__(self, prompts: Optional[Dict[str, str]] = None):
        self._prompts: Dict[str, str] = dict(DEFAULT_PROMPTS if prompts is None else prompts)

    def add(self, name: str, template: str) -> None:
        self._prompts[name] = template

    def __contains__(self, name: object) -> bool:
        return name in self._prompts

    @property
    def names(self):
        return list(self._prompts)

    def render(self, name: str, **context: Any) -> str:
        """
        Render a prompt.

        Raises:
            ConfigurationError: If the prompt is unknown or its template fails
        """
        template = self._prompts.get(name)
        if template is None:
            raise ConfigurationError(f"Prompt {name} not found in prompt library")
        try:
            return template.format(**context)
        except (KeyError, IndexError, ValueError) as e:
            raise ConfigurationError(f"Failed to render prompt {name}: {e!r}") from e


class SessionDescriptorBuilder:
    """
    Builds the desired realtime session descriptor from configuration.

    Args:
        prompts: Prompt templates
        tools: Registry of available tools
        prompt_name: Returns the active prompt name
        server_vad: Leave turn detection to the backend
        azure_host: Azure deployments disable turn detection with an explicit type
        transcription_model: Model used to transcribe input audio
        context: Extra template variables (e.g. from the IDE)
    """

    def __init__(
        self,
        prompts: PromptLibrary,
        tools: ToolRegistry,
        prompt_name: Callable[[], str],
        server_vad: bool = True,
        azure_host: bool = False,
        transcription_model: str = "whisper-1",
        context: Optional[Callable[[], Dict[str, Any]]] = None,
    ):
        self._prompts = prompts
        self._tools = tools
        self._prompt_name = prompt_name
        self._server_vad = server_vad
        self._azure_host = azure_host
        self._transcription_model = transcription_model
        self._context = context

    def build(self) -> Dict[str, Any]:
        prompt_name = self._prompt_name()
        visible = self._tools.visible_tools(prompt_name)
        context = dict(self._context() if self._context else {})
        context.setdefault("prompt_name", prompt_name)
        context.setdefault(
            "tools",
            "\n".join(f"- {t.name}: {t.description}" for t in visible),
        )

        descriptor: Dict[str, Any] = {
            "modalities": ["text", "audio"],
            "instructions": self._prompts.render(prompt_name, **context),
            "input_audio_transcription": {"model": self._transcription_model},
            "tools": [dict(t.as_function(), type="function") for t in visible],
        }
        if not self._server_vad:
            descriptor["turn_detection"] = {"type": "none"} if self._azure_host else None
        return descriptor
