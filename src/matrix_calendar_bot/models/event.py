"""Event models for calendar digests."""

from __future__ import annotations

from datetime import date, datetime, timedelta
from typing import Iterable

from pydantic import BaseModel, ConfigDict, Field, field_validator


class NormalizedEvent(BaseModel):
    """One concrete occurrence of a calendar entry.

    Recurring entries are expanded before they become NormalizedEvents, so
    every instance has a single start time. Times are timezone-aware and
    already converted to the display timezone.
    """

    model_config = ConfigDict(frozen=True)

    title: str = Field(..., description="Event title")
    start: datetime = Field(..., description="Occurrence start (aware)")
    end: datetime = Field(..., description="Occurrence end; equals start if unknown")
    all_day: bool = Field(default=False, description="Whether this is an all-day event")
    source: str = Field(default="", description="Calendar this occurrence came from")
    uid: str | None = Field(default=None, description="iCalendar UID")
    location: str | None = Field(default=None, description="Event location")

    @field_validator("start", "end")
    @classmethod
    def require_aware(cls, v: datetime) -> datetime:
        if v.tzinfo is None or v.utcoffset() is None:
            raise ValueError("Event times must be timezone-aware")
        return v

    @property
    def sort_key(self) -> tuple[datetime, str]:
        """Total ordering used everywhere events are listed."""
        return (self.start, self.title)

    @property
    def day(self) -> date:
        """Calendar day of the start, in the event's own timezone."""
        return self.start.date()

    @property
    def duration(self) -> timedelta:
        """Get the event duration."""
        return self.end - self.start


def sort_events(events: Iterable[NormalizedEvent]) -> list[NormalizedEvent]:
    """Order events by start instant, then title."""
    return sorted(events, key=lambda event: event.sort_key)
