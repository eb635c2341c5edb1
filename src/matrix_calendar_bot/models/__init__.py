"""Domain models for the calendar bot."""

from matrix_calendar_bot.models.command import Command, ReplyMessage
from matrix_calendar_bot.models.event import NormalizedEvent, sort_events
from matrix_calendar_bot.models.session import Session

__all__ = [
    # Commands
    "Command",
    "ReplyMessage",
    # Events
    "NormalizedEvent",
    "sort_events",
    # Session
    "Session",
]
