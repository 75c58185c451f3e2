"""
Cost and latency accounting for the realtime backend.

Prices are per the realtime model's published rates; sinks receive scalar
USD costs and millisecond latencies and may be no-ops.
"""

from abc import ABC, abstractmethod
from typing import Optional

import tiktoken

from voicepilot.logger import get_logger

logger = get_logger(__name__)

TTS_RATE_PER_MINUTE = 0.24
STT_RATE_PER_MINUTE = 0.06
LLM_INPUT_RATE_PER_MILLION = 5.0
LLM_OUTPUT_RATE_PER_MILLION = 20.0


def calculate_tts_cost(duration_s: float) -> float:
    """Cost of synthesized audio output."""
    return duration_s * (TTS_RATE_PER_MINUTE / 60)


def calculate_stt_cost(duration_s: float) -> float:
    """Cost of audio input."""
    return duration_s * (STT_RATE_PER_MINUTE / 60)


def calculate_llm_cost(input_tokens: int, output_tokens: int) -> float:
    """Cost of text tokens in and out."""
    return (
        input_tokens * LLM_INPUT_RATE_PER_MILLION / 1_000_000
        + output_tokens * LLM_OUTPUT_RATE_PER_MILLION / 1_000_000
    )


_encoder: Optional[tiktoken.Encoding] = None


def count_tokens(text: str, encoding_name: str = "cl100k_base") -> int:
    """Count tokens with tiktoken, loading the encoding on first use."""
    global _encoder
    if _encoder is None or _encoder.name != encoding_name:
        _encoder = tiktoken.get_encoding(encoding_name)
    return len(_encoder.encode(text))


class ObservabilitySink(ABC):
    """Receives cost and latency measurements."""

    @abstractmethod
    def log_cost(self, usd: float) -> None:
        """Record a cost in USD."""

    @abstractmethod
    def log_latency(self, ms: float) -> None:
        """Record a speech-to-response latency in milliseconds."""


class NullObservabilitySink(ObservabilitySink):
    """Discards every measurement."""

    def log_cost(self, usd: float) -> None:
        pass

    def log_latency(self, ms: float) -> None:
        pass


class LoggingObservabilitySink(ObservabilitySink):
    """Logs measurements and keeps running totals."""

    def __init__(self):
        self.total_cost = 0.0
        self.latencies = []

    def log_cost(self, usd: float) -> None:
        self.total_cost += usd
        logger.debug(f"Cost: ${usd:.6f} (total ${self.total_cost:.4f})")

    def log_latency(self, ms: float) -> None:
        self.latencies.append(ms)
        logger.info(f"Speech-to-response latency: {ms:.0f}ms")

    @property
    def avg_latency_ms(self) -> float:
        if not self.latencies:
            return 0.0
        return sum(self.latencies) / len(self.latencies)
