#!/usr/bin/env python3
"""
VoicePilot - Command Line Interface

A CLI for exercising the assistant without an IDE.

Commands:
    parse     - Parse model output into tool calls
    chat      - Send directives to a non-realtime LLM backend
    realtime  - Send typed directives through a realtime session
    config    - Show the effective configuration

Usage:
    voicepilot parse "Hello there"
    voicepilot parse --tool answer < response.txt
    voicepilot chat "rename this variable to total"
    voicepilot realtime
    voicepilot config

For help on a specific command:
    voicepilot <command> --help
"""

import argparse
import asyncio
import json
import sys

from voicepilot.config import settings
from voicepilot.logger import get_logger, init_logging

# Initialize logging
init_logging()
logger = get_logger(__name__)


def _print_calls(calls) -> None:
    if not calls:
        print("(no tool calls)")
    for call in calls:
        print(f"🔧 {call.name} {call.arguments_json}")


def cmd_parse(args: argparse.Namespace) -> int:
    """
    Parse model output into tool calls.

    Reads the text argument, or stdin when no text is given.
    """
    from voicepilot.assistant.response_parser import parse_text

    text = args.text if args.text is not None else sys.stdin.read()
    calls = parse_text(text, args.tool or [])

    if args.json:
        print(json.dumps([call.to_dict() for call in calls], indent=2))
    else:
        _print_calls(calls)
    return 0


def cmd_chat(args: argparse.Namespace) -> int:
    """
    Send directives to the non-realtime backend and show the parsed tool calls.
    """
    from voicepilot.assistant.processor import DirectiveProcessor
    from voicepilot.assistant.tools import LoggingToolExecutor
    from voicepilot.core.llm import OpenAICompatibleProvider
    from voicepilot.errors import VoicePilotError

    if not settings.llm.api_key:
        print("❌ LLM backend not configured.")
        print("   Set LLM_API_KEY (or OPENAI_API_KEY) in .env")
        return 1

    processor = DirectiveProcessor(LoggingToolExecutor(), llm=OpenAICompatibleProvider())

    async def run_one(text: str) -> None:
        _print_calls(await processor.process(text))

    try:
        if args.message:
            asyncio.run(run_one(args.message))
            return 0

        print("\n" + "=" * 60)
        print("🎙️  VoicePilot - Interactive Chat")
        print("=" * 60)
        print("Type a directive, or /quit to exit.")
        print("-" * 60)

        while True:
            try:
                user_input = input("You: ").strip()
            except (KeyboardInterrupt, EOFError):
                print("\n👋 Goodbye!")
                break
            if not user_input:
                continue
            if user_input.lower() == "/quit":
                print("\n👋 Goodbye!")
                break
            asyncio.run(run_one(user_input))
        return 0

    except VoicePilotError as e:
        print(f"❌ Chat failed: {e}")
        logger.exception("Chat error")
        return 1


async def _realtime_loop(args: argparse.Namespace) -> int:
    from voicepilot.assistant.processor import DirectiveProcessor
    from voicepilot.assistant.tools import LoggingToolExecutor
    from voicepilot.core.costs import LoggingObservabilitySink
    from voicepilot.realtime.events import EventBus, WarningEvent
    from voicepilot.realtime.session import RealtimeSession

    events = EventBus()

    async def show_warning(event: WarningEvent) -> None:
        print(f"⚠️  {event.message}")

    events.subscribe(WarningEvent, show_warning)
    sink = LoggingObservabilitySink()
    session = RealtimeSession(events=events, sink=sink)
    processor = DirectiveProcessor(LoggingToolExecutor(), session=session, events=events)

    bus_task = asyncio.create_task(events.run())
    try:
        await session.start()
        print(f"🔌 Connected to {settings.realtime.url} ({settings.realtime.model})")
        print("Type a directive, or /quit to exit.")

        loop = asyncio.get_event_loop()
        while True:
            try:
                user_input = await loop.run_in_executor(None, input, "You: ")
            except EOFError:
                break
            user_input = user_input.strip()
            if not user_input:
                continue
            if user_input.lower() == "/quit":
                break
            _print_calls(await processor.process(user_input))
    finally:
        await session.shutdown()
        events.stop()
        await bus_task

    print(f"\n💰 Estimated cost: ${sink.total_cost:.4f}")
    return 0


def cmd_realtime(args: argparse.Namespace) -> int:
    """
    Connect a realtime session and send typed directives through it.
    """
    from voicepilot.errors import VoicePilotError

    try:
        settings.realtime.validate()
    except ValueError as e:
        print(f"❌ {e}")
        return 1

    try:
        return asyncio.run(_realtime_loop(args))
    except KeyboardInterrupt:
        print("\n\n👋 Realtime session interrupted.")
        return 0
    except VoicePilotError as e:
        print(f"❌ Realtime session failed: {e}")
        logger.exception("Realtime session error")
        return 1


def cmd_config(args: argparse.Namespace) -> int:
    """
    Print the effective configuration with secrets redacted.
    """
    print(json.dumps(settings.to_redacted_dict(), indent=2, default=str))
    return 0


def create_parser() -> argparse.ArgumentParser:
    """Create the argument parser with all commands."""
    parser = argparse.ArgumentParser(
        prog="voicepilot",
        description="Voice-driven coding assistant CLI",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  Parse model output:
    voicepilot parse '{"tool": "open_file", "parameters": {"path": "a.py"}}'
    voicepilot parse --tool answer --json < response.txt

  Talk to a backend:
    voicepilot chat "add a docstring to this function"
    voicepilot realtime

  Show settings:
    voicepilot config
        """
    )

    parser.add_argument(
        "--verbose", "-v",
        action="store_true",
        help="Enable verbose output"
    )

    subparsers = parser.add_subparsers(dest="command", help="Available commands")

    # Parse command
    parse_parser = subparsers.add_parser(
        "parse",
        help="Parse model output into tool calls"
    )
    parse_parser.add_argument(
        "text",
        nargs="?",
        help="Model output (read from stdin when omitted)"
    )
    parse_parser.add_argument(
        "--tool", "-t",
        action="append",
        help="Available tool name (repeatable)"
    )
    parse_parser.add_argument(
        "--json",
        action="store_true",
        help="Print tool calls as JSON"
    )
    parse_parser.set_defaults(func=cmd_parse)

    # Chat command
    chat_parser = subparsers.add_parser(
        "chat",
        help="Send directives to a non-realtime backend"
    )
    chat_parser.add_argument(
        "message",
        nargs="?",
        help="Single directive (interactive when omitted)"
    )
    chat_parser.set_defaults(func=cmd_chat)

    # Realtime command
    realtime_parser = subparsers.add_parser(
        "realtime",
        help="Send typed directives through a realtime session"
    )
    realtime_parser.set_defaults(func=cmd_realtime)

    # Config command
    config_parser = subparsers.add_parser(
        "config",
        help="Show the effective configuration"
    )
    config_parser.set_defaults(func=cmd_config)

    return parser


def main() -> int:
    """Main entry point for the CLI."""
    parser = create_parser()
    args = parser.parse_args()

    if not args.command:
        parser.print_help()
        return 0

    if args.verbose:
        import logging
        logging.getLogger().setLevel(logging.DEBUG)

    return args.func(args)


if __name__ == "__main__":
    sys.exit(main())
