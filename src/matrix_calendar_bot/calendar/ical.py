"""iCalendar parsing and normalization.

Turns the raw `VCALENDAR` payloads returned by a calendar server into
`NormalizedEvent` occurrences inside a time window.

## Translation (VEVENT -> NormalizedEvent)

| VEVENT property | NormalizedEvent | Notes |
|-----------------|-----------------|-------|
| SUMMARY         | title           | Whitespace collapsed, "(No title)" if missing |
| DTSTART (date)  | start, all_day  | Midnight in the display timezone |
| DTSTART (time)  | start           | Converted to the display timezone; floating times are read in it |
| DTEND/DURATION  | end             | end = start when both are missing |
| UID             | uid             | Falls back to the resource href |
| LOCATION        | location        | |
| RRULE/RDATE     | (expansion)     | See `matrix_calendar_bot.calendar.recurrence` |
| EXDATE          | (expansion)     | Removes occurrences |
| RECURRENCE-ID   | (override)      | Replaces the occurrence it names |
| STATUS          | (filter)        | CANCELLED events are skipped |

Occurrences are kept when ``window_start <= start < window_end``.
"""

from __future__ import annotations

import logging
from collections import defaultdict
from datetime import date, datetime, time, timedelta, timezone, tzinfo
from typing import Any, Iterable, Iterator

from icalendar import Calendar

from matrix_calendar_bot.calendar.base import RawEventRecord
from matrix_calendar_bot.calendar.recurrence import (
    RecurrenceRule,
    UnsupportedRecurrence,
    expand,
)
from matrix_calendar_bot.models.event import NormalizedEvent

logger = logging.getLogger(__name__)

NO_TITLE = "(No title)"


class ICalParseError(ValueError):
    """Raised when a calendar object resource cannot be interpreted."""

    def __init__(self, message: str, href: str):
        super().__init__(f"{message} ({href})")
        self.href = href


def _dt(component: Any, name: str) -> Any:
    """Return the decoded value of a date/time property, or None."""
    prop = component.get(name)
    if prop is None:
        return None
    return getattr(prop, "dt", prop)


def _dt_list(component: Any, name: str) -> list[date | datetime]:
    """Collect values of a multi-valued property such as EXDATE or RDATE."""
    prop = component.get(name)
    if prop is None:
        return []
    props = prop if isinstance(prop, list) else [prop]
    values = []
    for item in props:
        for entry in getattr(item, "dts", [item]):
            value = getattr(entry, "dt", entry)
            if isinstance(value, date):
                values.append(value)
    return values


def _instant_key(value: date | datetime) -> date | datetime:
    """Comparable key for matching EXDATE/RECURRENCE-ID against occurrences."""
    if isinstance(value, datetime) and value.tzinfo is not None:
        return value.astimezone(timezone.utc)
    return value


def to_display(value: date | datetime, display_tz: tzinfo) -> datetime:
    """Resolve an iCalendar date or date-time into the display timezone."""
    if isinstance(value, datetime):
        if value.tzinfo is None:
            return value.replace(tzinfo=display_tz)
        return value.astimezone(display_tz)
    return datetime.combine(value, time.min, tzinfo=display_tz)


def _duration(component: Any, dtstart: date | datetime, href: str) -> timedelta:
    dtend = _dt(component, "DTEND")
    if dtend is not None:
        if isinstance(dtend, datetime) != isinstance(dtstart, datetime):
            logger.warning(f"DTSTART and DTEND have different value types in {href}")
            return timedelta(0)
        if isinstance(dtend, datetime) and isinstance(dtstart, datetime):
            if (dtend.tzinfo is None) != (dtstart.tzinfo is None):
                dtend = dtend.replace(tzinfo=dtstart.tzinfo)
        delta = dtend - dtstart
        if delta < timedelta(0):
            logger.warning(f"DTEND before DTSTART in {href}")
            return timedelta(0)
        return delta

    duration = _dt(component, "DURATION")
    if isinstance(duration, timedelta) and duration >= timedelta(0):
        return duration
    return timedelta(0)


def _title(component: Any) -> str:
    summary = component.get("SUMMARY")
    if summary is None:
        return NO_TITLE
    return " ".join(str(summary).split()) or NO_TITLE


def _is_cancelled(component: Any) -> bool:
    return str(component.get("STATUS", "")).upper() == "CANCELLED"


def _recurrence_rule(component: Any, href: str) -> RecurrenceRule:
    rrule = component.get("RRULE")
    if rrule is None:
        return RecurrenceRule.single()
    if isinstance(rrule, list):
        logger.warning(f"Multiple RRULEs in {href}, only the first is used")
        rrule = rrule[0]
    try:
        return RecurrenceRule.from_ical(rrule)
    except UnsupportedRecurrence as e:
        logger.warning(f"{e} in {href}; showing the first occurrence only")
        return RecurrenceRule.single()
    except (TypeError, ValueError) as e:
        logger.warning(f"Malformed RRULE in {href}: {e}; showing the first occurrence only")
        return RecurrenceRule.single()


class _Window:
    """Time window and display settings shared by one parse call."""

    def __init__(self, start: datetime, end: datetime, display_tz: tzinfo):
        if start.tzinfo is None or end.tzinfo is None:
            raise ValueError("Window bounds must be timezone-aware")
        self.start = start
        self.end = end
        self.display_tz = display_tz
        # Slack for entries whose own timezone differs from the display timezone
        self.first_day = start.astimezone(display_tz).date() - timedelta(days=2)
        self.last_day = end.astimezone(display_tz).date() + timedelta(days=2)

    def contains(self, instant: datetime) -> bool:
        return self.start <= instant < self.end


def _occurrence(
    component: Any,
    start: date | datetime,
    duration: timedelta,
    uid: str,
    source: str,
    window: _Window,
) -> NormalizedEvent | None:
    start_display = to_display(start, window.display_tz)
    if not window.contains(start_display):
        return None
    location = component.get("LOCATION")
    return NormalizedEvent(
        title=_title(component),
        start=start_display,
        end=to_display(start + duration, window.display_tz),
        all_day=not isinstance(start, datetime),
        source=source,
        uid=uid,
        location=str(location) if location else None,
    )


def _expand_master(
    component: Any,
    uid: str,
    source: str,
    href: str,
    window: _Window,
    overridden: set[date | datetime],
) -> Iterator[NormalizedEvent]:
    dtstart = _dt(component, "DTSTART")
    if not isinstance(dtstart, date):
        raise ICalParseError("Missing DTSTART", href)

    duration = _duration(component, dtstart, href)
    rule = _recurrence_rule(component, href)
    excluded = {_instant_key(value) for value in _dt_list(component, "EXDATE")}
    excluded |= overridden

    starts: list[date | datetime] = list(
        expand(rule, dtstart, window.first_day, window.last_day)
    )
    for extra in _dt_list(component, "RDATE"):
        if isinstance(extra, datetime) == isinstance(dtstart, datetime):
            starts.append(extra)

    for start in starts:
        if _instant_key(start) in excluded:
            continue
        event = _occurrence(component, start, duration, uid, source, window)
        if event is not None:
            yield event


def parse_record(
    record: RawEventRecord,
    window_start: datetime,
    window_end: datetime,
    display_tz: tzinfo,
    source: str | None = None,
) -> list[NormalizedEvent]:
    """Parse one calendar object resource into occurrences inside the window.

    Args:
        record: Raw record from a calendar transport
        window_start: Inclusive lower bound for occurrence starts
        window_end: Exclusive upper bound for occurrence starts
        display_tz: Timezone the occurrences are expressed in
        source: Calendar label; defaults to the record's collection

    Returns:
        Occurrences in no particular order

    Raises:
        ICalParseError: If the payload is not valid iCalendar data
    """
    return _parse(record, _Window(window_start, window_end, display_tz), source)


def _parse(
    record: RawEventRecord, window: _Window, source: str | None
) -> list[NormalizedEvent]:
    label = record.collection or source or ""

    try:
        calendar = Calendar.from_ical(record.calendar_data)
    except ValueError as e:
        raise ICalParseError(f"Invalid iCalendar data: {e}", record.href) from e

    masters: dict[str, Any] = {}
    overrides: dict[str, list[Any]] = defaultdict(list)
    for component in calendar.walk("VEVENT"):
        uid = str(component.get("UID", "")) or record.href
        if component.get("RECURRENCE-ID") is not None:
            overrides[uid].append(component)
        elif uid in masters:
            logger.debug(f"Ignoring duplicate master VEVENT {uid} in {record.href}")
        else:
            masters[uid] = component

    events: list[NormalizedEvent] = []
    for uid, component in masters.items():
        if _is_cancelled(component):
            continue
        overridden = {
            _instant_key(_dt(override, "RECURRENCE-ID")) for override in overrides[uid]
        }
        events.extend(
            _expand_master(component, uid, label, record.href, window, overridden)
        )

    for uid, components in overrides.items():
        for component in components:
            if _is_cancelled(component):
                continue
            start = _dt(component, "DTSTART")
            if not isinstance(start, date):
                logger.warning(f"Override of {uid} without DTSTART in {record.href}")
                continue
            duration = _duration(component, start, record.href)
            event = _occurrence(component, start, duration, uid, label, window)
            if event is not None:
                events.append(event)

    return events


def parse_records(
    records: Iterable[RawEventRecord],
    window_start: datetime,
    window_end: datetime,
    display_tz: tzinfo,
    source: str | None = None,
) -> list[NormalizedEvent]:
    """Parse all records of one collection.

    Records that cannot be parsed are logged and skipped. Occurrences of the
    same UID resolving to the same start are emitted once.
    """
    window = _Window(window_start, window_end, display_tz)
    seen: set[tuple[str | None, datetime]] = set()
    events = []
    for record in records:
        try:
            parsed = _parse(record, window, source)
        except ICalParseError as e:
            logger.warning(f"Skipping calendar object: {e}")
            continue
        for event in parsed:
            key = (event.uid, event.start)
            if key in seen:
                continue
            seen.add(key)
            events.append(event)
    return events
