"""Command-line interface for the Matrix calendar bot."""

from __future__ import annotations

import argparse
import asyncio
import logging
import sys

from pydantic import ValidationError

from matrix_calendar_bot.app import create_bot, run_bot
from matrix_calendar_bot.bot.formatter import format_events
from matrix_calendar_bot.bot.process import EXIT_CONFIG, EXIT_ERROR, EXIT_OK
from matrix_calendar_bot.calendar.base import FetchError
from matrix_calendar_bot.calendar.client import create_calendar_client
from matrix_calendar_bot.config import Settings, get_settings

logger = logging.getLogger(__name__)


def _configure_logging(level: str) -> None:
    logging.basicConfig(
        level=level.upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


async def _print_agenda(settings: Settings) -> int:
    client = create_calendar_client(settings)
    try:
        events = await client.fetch_window()
    except FetchError as e:
        print(f"Failed to get calendar events: {e}", file=sys.stderr)
        return EXIT_ERROR
    finally:
        await client.aclose()
    print(format_events(events, window_days=settings.window_days))
    return EXIT_OK


def main(argv: list[str] | None = None) -> int:
    """Main entry point for the CLI."""
    parser = argparse.ArgumentParser(
        description="Matrix Calendar Bot - Answer !cal with upcoming CalDAV events"
    )
    parser.add_argument(
        "--version",
        action="version",
        version="%(prog)s 0.1.0",
    )
    parser.add_argument(
        "--log-level",
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        type=str.upper,
        help="Override LOG_LEVEL",
    )

    subparsers = parser.add_subparsers(dest="command", help="Available commands")

    # Run command
    subparsers.add_parser("run", help="Connect to Matrix and answer commands")

    # Agenda command
    subparsers.add_parser(
        "agenda", help="Print the upcoming events digest without Matrix"
    )

    args = parser.parse_args(argv)

    if args.command is None:
        parser.print_help()
        return EXIT_OK

    try:
        settings = get_settings()
    except ValidationError as e:
        _configure_logging(args.log_level or "INFO")
        logger.error(f"Invalid configuration:\n{e}")
        return EXIT_CONFIG

    _configure_logging(args.log_level or settings.log_level)

    if args.command == "agenda":
        return asyncio.run(_print_agenda(settings))

    try:
        return asyncio.run(run_bot(create_bot(settings)))
    except KeyboardInterrupt:
        return EXIT_OK
    except Exception:
        logger.exception("Unexpected error")
        return EXIT_ERROR


if __name__ == "__main__":
    sys.exit(main())
