"""
Configuration Management Module

This module handles all application configuration using environment variables
with sensible defaults. It follows the 12-factor app methodology for configuration.

Usage:
    from voicepilot.config import settings
    print(settings.realtime.ws_url)

Environment variables are loaded from .env file (if present) and can be
overridden by system environment variables.
"""

import os
from dataclasses import dataclass, field
from typing import Dict, Optional
from dotenv import load_dotenv

# Load environment variables from .env file
# This should be called before accessing any environment variables
load_dotenv()


def get_env(key: str, default: str = "", required: bool = False) -> str:
    """
    Get an environment variable with optional default and validation.

    Args:
        key: The environment variable name
        default: Default value if not set
        required: If True, raises ValueError when not set

    Returns:
        The environment variable value or default

    Raises:
        ValueError: If required=True and the variable is not set
    """
    value = os.getenv(key, default)
    if required and not value:
        raise ValueError(f"Required environment variable '{key}' is not set")
    return value


def get_env_int(key: str, default: int) -> int:
    """Get an environment variable as integer."""
    return int(get_env(key, str(default)))


def get_env_float(key: str, default: float) -> float:
    """Get an environment variable as float."""
    return float(get_env(key, str(default)))


def get_env_bool(key: str, default: bool) -> bool:
    """Get an environment variable as boolean."""
    value = get_env(key, str(default)).lower()
    return value in ("true", "1", "yes", "on")


def redact(value: str) -> str:
    """Mask a secret for display, keeping empty values empty."""
    return "" if not value else "***"


@dataclass
class RealtimeConfig:
    """
    Realtime (bidirectional streaming) backend configuration.

    Attributes:
        api_key: Backend API key
        url: Websocket endpoint without query string
        model: Realtime model name
        azure_host: Whether the endpoint is an Azure deployment
        connect_attempts: Connection attempts before giving up
        connect_timeout_s: Timeout for a single connection attempt
        reconcile_interval_s: Session reconciliation cadence
        response_timeout_s: Maximum wait for a correlated response
        sample_rate: PCM sample rate expected by the backend
        transcription_model: Model used for input audio transcription
        correlation_fallback: Match responses without a correlation id to
            requests in order, for backends that drop response metadata
    """
    api_key: str = field(default_factory=lambda: get_env("OPENAI_API_KEY"))
    url: str = field(default_factory=lambda: get_env("REALTIME_URL", "wss://api.openai.com/v1/realtime"))
    model: str = field(default_factory=lambda: get_env("REALTIME_MODEL", "gpt-4o-realtime-preview"))
    azure_host: bool = field(default_factory=lambda: get_env_bool("REALTIME_AZURE_HOST", False))
    connect_attempts: int = field(default_factory=lambda: get_env_int("REALTIME_CONNECT_ATTEMPTS", 3))
    connect_timeout_s: float = field(default_factory=lambda: get_env_float("REALTIME_CONNECT_TIMEOUT", 10.0))
    reconcile_interval_s: float = field(default_factory=lambda: get_env_float("REALTIME_RECONCILE_INTERVAL", 0.5))
    response_timeout_s: float = field(default_factory=lambda: get_env_float("REALTIME_RESPONSE_TIMEOUT", 60.0))
    sample_rate: int = field(default_factory=lambda: get_env_int("REALTIME_SAMPLE_RATE", 24000))
    transcription_model: str = field(default_factory=lambda: get_env("REALTIME_TRANSCRIPTION_MODEL", "whisper-1"))
    correlation_fallback: bool = field(default_factory=lambda: get_env_bool("REALTIME_CORRELATION_FALLBACK", False))

    def validate(self) -> bool:
        """Validate that required realtime settings are configured."""
        if not self.api_key:
            raise ValueError("OPENAI_API_KEY is required")
        if self.connect_attempts <= 0:
            raise ValueError("REALTIME_CONNECT_ATTEMPTS must be positive")
        if self.connect_timeout_s <= 0:
            raise ValueError("REALTIME_CONNECT_TIMEOUT must be positive")
        return True

    @property
    def ws_url(self) -> str:
        """Get the full websocket URL including the model selector."""
        separator = "&" if "?" in self.url else "?"
        if self.azure_host:
            return f"{self.url}{separator}deployment={self.model}"
        return f"{self.url}{separator}model={self.model}"

    @property
    def headers(self) -> Dict[str, str]:
        """Get the handshake headers for the websocket connection."""
        if self.azure_host:
            return {"api-key": self.api_key}
        return {
            "Authorization": f"Bearer {self.api_key}",
            "OpenAI-Beta": "realtime=v1",
        }


@dataclass
class VoiceDetectionConfig:
    """
    Voice activity detection configuration.

    Attributes:
        provider: Local VAD provider name, "none" delegates turn detection to the server
        sustain_duration_ms: Voice must persist this long before it counts
        amnesty_period_ms: Grace period for a silence right after speech onset
        voice_silence_threshold_ms: Silence that clears the voice flag
        speech_silence_threshold_ms: Silence that ends a speech segment
        pre_roll_frames: Frames kept from before speech was detected
    """
    provider: str = field(default_factory=lambda: get_env("VAD_PROVIDER", "none").lower())
    sustain_duration_ms: int = field(default_factory=lambda: get_env_int("VAD_SUSTAIN_DURATION_MS", 100))
    amnesty_period_ms: int = field(default_factory=lambda: get_env_int("VAD_AMNESTY_PERIOD_MS", 500))
    voice_silence_threshold_ms: int = field(default_factory=lambda: get_env_int("VAD_VOICE_SILENCE_MS", 100))
    speech_silence_threshold_ms: int = field(default_factory=lambda: get_env_int("VAD_SPEECH_SILENCE_MS", 1000))
    pre_roll_frames: int = field(default_factory=lambda: get_env_int("VAD_PRE_ROLL_FRAMES", 10))

    @property
    def server_side(self) -> bool:
        """Whether turn detection is left to the realtime backend."""
        return self.provider == "none"

    def validate(self) -> bool:
        """Validate detection thresholds."""
        for name in (
            "sustain_duration_ms",
            "amnesty_period_ms",
            "voice_silence_threshold_ms",
            "speech_silence_threshold_ms",
            "pre_roll_frames",
        ):
            if getattr(self, name) < 0:
                raise ValueError(f"{name} cannot be negative")
        return True


@dataclass
class LLMConfig:
    """
    Non-realtime LLM backend configuration.

    Attributes:
        provider_url: OpenAI-compatible chat completions endpoint
        api_key: Backend API key
        model: Model identifier
        temperature: Sampling temperature
        max_tokens: Maximum tokens in response
        timeout_s: Request timeout
        max_retries: Maximum retry attempts on transport failure
    """
    provider_url: str = field(default_factory=lambda: get_env("LLM_PROVIDER_URL", "https://api.openai.com/v1/chat/completions"))
    api_key: str = field(default_factory=lambda: get_env("LLM_API_KEY") or get_env("OPENAI_API_KEY"))
    model: str = field(default_factory=lambda: get_env("LLM_MODEL", "gpt-4o-mini"))
    temperature: float = field(default_factory=lambda: get_env_float("LLM_TEMPERATURE", 0.2))
    max_tokens: int = field(default_factory=lambda: get_env_int("LLM_MAX_TOKENS", 1024))
    timeout_s: float = field(default_factory=lambda: get_env_float("LLM_TIMEOUT", 30.0))
    max_retries: int = field(default_factory=lambda: get_env_int("LLM_MAX_RETRIES", 3))


@dataclass
class AssistantConfig:
    """
    Assistant behaviour configuration.

    Attributes:
        prompt_name: Name of the active prompt in the prompt library
    """
    prompt_name: str = field(default_factory=lambda: get_env("ASSISTANT_PROMPT", "Idle Mode"))


@dataclass
class LoggingConfig:
    """
    Logging configuration.

    Attributes:
        level: Log level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        file: Optional log file path
    """
    level: str = field(default_factory=lambda: get_env("LOG_LEVEL", "INFO"))
    file: Optional[str] = field(default_factory=lambda: get_env("LOG_FILE") or None)


@dataclass
class Settings:
    """
    Main settings container aggregating all configuration sections.

    This is the primary configuration interface for the application.
    Access via the singleton `settings` instance.

    Example:
        from voicepilot.config import settings

        settings.realtime.validate()
        url = settings.realtime.ws_url

        threshold = settings.voice_detection.speech_silence_threshold_ms
    """
    realtime: RealtimeConfig = field(default_factory=RealtimeConfig)
    voice_detection: VoiceDetectionConfig = field(default_factory=VoiceDetectionConfig)
    llm: LLMConfig = field(default_factory=LLMConfig)
    assistant: AssistantConfig = field(default_factory=AssistantConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)

    # Application-level settings
    app_env: str = field(default_factory=lambda: get_env("APP_ENV", "development"))

    @property
    def is_development(self) -> bool:
        """Check if running in development mode."""
        return self.app_env == "development"

    @property
    def is_production(self) -> bool:
        """Check if running in production mode."""
        return self.app_env == "production"

    def validate_all(self) -> bool:
        """
        Validate all configuration sections.

        Returns:
            True if all validations pass

        Raises:
            ValueError: If any validation fails
        """
        self.realtime.validate()
        self.voice_detection.validate()
        return True

    def to_redacted_dict(self) -> Dict[str, Dict[str, object]]:
        """Effective settings with secrets masked, for display."""
        realtime = dict(vars(self.realtime), api_key=redact(self.realtime.api_key))
        llm = dict(vars(self.llm), api_key=redact(self.llm.api_key))
        return {
            "realtime": realtime,
            "voice_detection": dict(vars(self.voice_detection)),
            "llm": llm,
            "assistant": dict(vars(self.assistant)),
            "logging": dict(vars(self.logging)),
        }


# Singleton settings instance
# Import this in other modules: from voicepilot.config import settings
settings = Settings()
