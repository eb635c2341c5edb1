"""Digest formatting.

Renders a list of events into the reply text. Output depends only on the
input, so identical input yields byte-identical text.

## Layout

```
Monday, 3 June 2024
09:00 — Standup
(all day) — Company offsite

Tuesday, 4 June 2024
14:30 — Design review
```

Days appear in ascending order, events within a day by ``(start, title)``.
An empty list renders as ``No upcoming events in the next 7 days.``
"""

from __future__ import annotations

import html
from datetime import date
from itertools import groupby
from typing import Sequence

from matrix_calendar_bot.models.event import NormalizedEvent, sort_events

ALL_DAY_LABEL = "(all day)"
SEPARATOR = " — "


def empty_digest(window_days: int = 7) -> str:
    return f"No upcoming events in the next {window_days} days."


def format_day_header(day: date) -> str:
    """Format a day header, e.g. ``Monday, 3 June 2024``."""
    return f"{day:%A}, {day.day} {day:%B %Y}"


def format_time_label(event: NormalizedEvent) -> str:
    if event.all_day:
        return ALL_DAY_LABEL
    return f"{event.start:%H:%M}"


def _by_day(events: Sequence[NormalizedEvent]):
    return groupby(sort_events(events), key=lambda event: event.day)


def format_events(events: Sequence[NormalizedEvent], window_days: int = 7) -> str:
    """Render events as a plain-text digest.

    Args:
        events: Occurrences in the display timezone, in any order
        window_days: Window length, used in the empty message

    Returns:
        The digest text
    """
    if not events:
        return empty_digest(window_days)

    blocks = []
    for day, day_events in _by_day(events):
        lines = [format_day_header(day)]
        lines.extend(
            f"{format_time_label(event)}{SEPARATOR}{event.title}" for event in day_events
        )
        blocks.append("\n".join(lines))
    return "\n\n".join(blocks)


def format_events_html(events: Sequence[NormalizedEvent], window_days: int = 7) -> str:
    """Render the same digest as HTML for the Matrix formatted body."""
    if not events:
        return f"<p>{html.escape(empty_digest(window_days))}</p>"

    parts = []
    for day, day_events in _by_day(events):
        parts.append(f"<h4>{html.escape(format_day_header(day))}</h4>")
        items = "".join(
            f"<li><b>{html.escape(format_time_label(event))}</b>"
            f"{SEPARATOR}{html.escape(event.title)}</li>"
            for event in day_events
        )
        parts.append(f"<ul>{items}</ul>")
    return "".join(parts)
