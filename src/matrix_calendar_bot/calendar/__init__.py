"""Calendar retrieval module.

Reads events from CalDAV servers and normalizes them into
`NormalizedEvent` occurrences for the digest.

## Layers

1. **Transport** (`caldav`): server access through the `caldav` library
2. **Parsing** (`ical`): iCalendar payloads to occurrences
3. **Recurrence** (`recurrence`): RRULE expansion
4. **Client** (`client`): per-source state, merging and degradation
"""

from matrix_calendar_bot.calendar.base import (
    AuthError,
    CalendarCollection,
    CalendarError,
    CalendarTransport,
    DiscoveryError,
    FetchError,
    RawEventRecord,
)
from matrix_calendar_bot.calendar.caldav import CalDAVTransport
from matrix_calendar_bot.calendar.client import (
    CalendarClient,
    CalendarSource,
    build_sources,
    create_calendar_client,
)
from matrix_calendar_bot.calendar.ical import ICalParseError, parse_records
from matrix_calendar_bot.calendar.recurrence import UnsupportedRecurrence

__all__ = [
    "AuthError",
    "CalDAVTransport",
    "CalendarClient",
    "CalendarCollection",
    "CalendarError",
    "CalendarSource",
    "CalendarTransport",
    "DiscoveryError",
    "FetchError",
    "ICalParseError",
    "RawEventRecord",
    "UnsupportedRecurrence",
    "build_sources",
    "create_calendar_client",
    "parse_records",
]
