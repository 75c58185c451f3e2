"""
Logging Configuration Module

Centralized logging setup for the assistant: colored console output,
optional file output, and quieter third-party network loggers.

Usage:
    from voicepilot.logger import get_logger

    logger = get_logger(__name__)
    logger.info(f"Connected to {url}")
"""

import logging
import sys
from pathlib import Path
from typing import Iterable, Optional

# Chatty client libraries, capped at WARNING unless we run at DEBUG
NOISY_LOGGERS = ("aiohttp", "urllib3", "asyncio")


class ColoredFormatter(logging.Formatter):
    """Formatter that colors the level name for terminal output."""

    COLORS = {
        logging.DEBUG: "\033[36m",
        logging.INFO: "\033[32m",
        logging.WARNING: "\033[33m",
        logging.ERROR: "\033[31m",
        logging.CRITICAL: "\033[1;31m",
    }
    RESET = "\033[0m"

    def format(self, record: logging.LogRecord) -> str:
        color = self.COLORS.get(record.levelno, self.RESET)
        original = record.levelname
        record.levelname = f"{color}{original}{self.RESET}"
        try:
            return super().format(record)
        finally:
            # Keep the plain level name for other handlers (file output)
            record.levelname = original


def setup_logging(
    level: str = "INFO",
    log_file: Optional[str] = None,
    use_colors: bool = True,
    noisy_loggers: Iterable[str] = NOISY_LOGGERS,
) -> None:
    """
    Configure the root logger with console and optional file handlers.

    Args:
        level: Log level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        log_file: Optional path to log file
        use_colors: Whether to use colored output in console
        noisy_loggers: Library loggers raised to WARNING unless level is DEBUG
    """
    numeric_level = getattr(logging, level.upper(), logging.INFO)

    root_logger = logging.getLogger()
    root_logger.setLevel(numeric_level)
    root_logger.handlers.clear()

    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setLevel(numeric_level)

    if use_colors and sys.stdout.isatty():
        console_format = ColoredFormatter(
            "%(asctime)s │ %(levelname)s │ %(name)s │ %(message)s",
            datefmt="%H:%M:%S"
        )
    else:
        console_format = logging.Formatter(
            "%(asctime)s | %(levelname)s | %(name)s | %(message)s",
            datefmt="%Y-%m-%d %H:%M:%S"
        )

    console_handler.setFormatter(console_format)
    root_logger.addHandler(console_handler)

    if log_file:
        log_path = Path(log_file)
        log_path.parent.mkdir(parents=True, exist_ok=True)

        file_handler = logging.FileHandler(log_path, encoding="utf-8")
        file_handler.setLevel(numeric_level)
        file_handler.setFormatter(logging.Formatter(
            "%(asctime)s | %(levelname)s | %(threadName)s | %(name)s:%(lineno)d | %(message)s",
            datefmt="%Y-%m-%d %H:%M:%S"
        ))
        root_logger.addHandler(file_handler)

    if numeric_level > logging.DEBUG:
        for name in noisy_loggers:
            logging.getLogger(name).setLevel(logging.WARNING)


def get_logger(name: str) -> logging.Logger:
    """
    Get a logger instance for a module.

    Args:
        name: Usually __name__ of the calling module
    """
    return logging.getLogger(name)


_initialized = False


def init_logging(level: Optional[str] = None) -> None:
    """
    Initialize logging from settings. Call once at application startup.

    Args:
        level: Optional override of the configured level (e.g. from --verbose)
    """
    global _initialized
    if _initialized:
        return

    try:
        from voicepilot.config import settings
        setup_logging(
            level=level or settings.logging.level,
            log_file=settings.logging.file
        )
    except Exception:
        # Fallback if settings aren't available
        setup_logging(level=level or "INFO")

    _initialized = True
