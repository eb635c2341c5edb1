"""Bot module.

Recognizes commands in Matrix rooms and answers them with a calendar digest.

## Components

- `router`: command recognition and per-room serialization
- `formatter`: digest rendering (plain text and HTML)
- `dispatcher`: reply delivery with bounded retry
- `process`: session lifecycle, sync loop and the command pipeline
- `scheduler`: optional weekly digest
"""

from matrix_calendar_bot.bot.dispatcher import DeliveryResult, ReplyDispatcher
from matrix_calendar_bot.bot.formatter import format_events, format_events_html
from matrix_calendar_bot.bot.process import (
    EXIT_CONFIG,
    EXIT_CREDENTIALS_INVALID,
    EXIT_ERROR,
    EXIT_OK,
    CalendarBot,
)
from matrix_calendar_bot.bot.router import CommandRouter, RoomState
from matrix_calendar_bot.bot.scheduler import WeeklyDigest, next_digest_time

__all__ = [
    "CalendarBot",
    "CommandRouter",
    "DeliveryResult",
    "EXIT_CONFIG",
    "EXIT_CREDENTIALS_INVALID",
    "EXIT_ERROR",
    "EXIT_OK",
    "ReplyDispatcher",
    "RoomState",
    "WeeklyDigest",
    "format_events",
    "format_events_html",
    "next_digest_time",
]
