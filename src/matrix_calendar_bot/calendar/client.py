"""Calendar client.

Fetches upcoming events from every configured calendar account and merges
them into one ordered list.

## Fetch Process

For each source (concurrently):

1. Authenticate once per process lifetime (under the source's lock)
2. Discover collections, or reuse the cached list
3. Query every collection for the window (concurrently)
4. Parse, expand recurrences, clip to the window, convert timezones

Then merge all sources and sort by ``(start, title)``.

## Degradation

- One failing collection is skipped with a warning
- One failing source is skipped with a warning
- Only when every source fails does `fetch_all` raise `FetchError`
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime, time, timedelta, tzinfo
from typing import Callable, Sequence

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
from matrix_calendar_bot.calendar.ical import parse_records
from matrix_calendar_bot.config import CalendarSourceConfig, Settings
from matrix_calendar_bot.models.event import NormalizedEvent, sort_events

logger = logging.getLogger(__name__)


class CalendarSource:
    """One calendar account and its per-process state.

    The lock serializes authentication and discovery; queries run outside it.
    """

    def __init__(self, name: str, transport: CalendarTransport):
        self.name = name
        self.transport = transport
        self.authenticated = False
        self.unusable = False
        self.collections: list[CalendarCollection] | None = None
        self.last_known: list[CalendarCollection] = []
        self.lock = asyncio.Lock()

    def reset(self) -> None:
        """Forget authentication state and cached collections."""
        self.authenticated = False
        self.unusable = False
        self.collections = None
        self.last_known = []

    def invalidate_auth(self) -> None:
        """Re-authenticate and rediscover on the next fetch."""
        self.authenticated = False
        self.collections = None

    async def aclose(self) -> None:
        await self.transport.aclose()

    def __repr__(self) -> str:
        return f"CalendarSource(name={self.name!r})"


@dataclass
class _CollectionResult:
    collection: CalendarCollection
    records: list[RawEventRecord] | None = None
    error: CalendarError | None = None


class CalendarClient:
    """Fetches and normalizes events from a set of calendar sources.

    Example:
        ```python
        client = CalendarClient(build_sources(settings), settings.timezone)
        start, end = client.upcoming_window()
        events = await client.fetch_all(start, end)
        ```
    """

    def __init__(
        self,
        sources: Sequence[CalendarSource],
        display_timezone: tzinfo,
        window_days: int = 7,
        clock: Callable[[], datetime] | None = None,
    ):
        """Initialize the client.

        Args:
            sources: Calendar accounts to read
            display_timezone: Timezone occurrences are converted to
            window_days: Length of the upcoming window
            clock: Returns the current aware time (tests pin it)
        """
        self.sources = list(sources)
        self.display_timezone = display_timezone
        self.window_days = window_days
        self._clock = clock or (lambda: datetime.now(self.display_timezone))

    def upcoming_window(self, now: datetime | None = None) -> tuple[datetime, datetime]:
        """Window from the start of today (display timezone) for window_days."""
        now = now or self._clock()
        local_today = now.astimezone(self.display_timezone).date()
        start = datetime.combine(local_today, time.min, tzinfo=self.display_timezone)
        end = datetime.combine(
            local_today + timedelta(days=self.window_days),
            time.min,
            tzinfo=self.display_timezone,
        )
        return start, end

    async def _ensure_ready(self, source: CalendarSource) -> list[CalendarCollection]:
        async with source.lock:
            if source.unusable:
                raise AuthError(
                    f"Credentials for {source.name} were rejected earlier",
                    source=source.name,
                )

            if not source.authenticated:
                try:
                    await source.transport.authenticate()
                except AuthError:
                    source.unusable = True
                    logger.error(f"Calendar source {source.name} rejected credentials")
                    raise
                source.authenticated = True

            if source.collections is not None:
                return list(source.collections)

            try:
                collections = await source.transport.discover_collections()
            except AuthError:
                source.invalidate_auth()
                raise
            except DiscoveryError as e:
                if not source.last_known:
                    raise
                logger.warning(
                    f"Discovery failed for {source.name}, using "
                    f"{len(source.last_known)} previously known calendars: {e}"
                )
                return list(source.last_known)

            source.collections = collections
            source.last_known = list(collections)
            return list(collections)

    async def _query(
        self,
        source: CalendarSource,
        collection: CalendarCollection,
        window_start: datetime,
        window_end: datetime,
    ) -> _CollectionResult:
        try:
            records = await source.transport.query_events(
                collection, window_start, window_end
            )
        except CalendarError as e:
            logger.warning(f"Skipping calendar {collection} on {source.name}: {e}")
            return _CollectionResult(collection=collection, error=e)
        return _CollectionResult(collection=collection, records=records)

    async def fetch_upcoming(
        self,
        source: CalendarSource,
        window_start: datetime,
        window_end: datetime,
    ) -> list[NormalizedEvent]:
        """Fetch the occurrences of one source inside the window.

        Args:
            source: Calendar account to read
            window_start: Inclusive lower bound (aware)
            window_end: Exclusive upper bound (aware)

        Returns:
            Occurrences sorted by (start, title)

        Raises:
            AuthError: If the source rejects its credentials
            DiscoveryError: If no collections can be listed
            FetchError: If every collection query fails
        """
        if window_start.tzinfo is None or window_end.tzinfo is None:
            raise ValueError("Window bounds must be timezone-aware")

        collections = await self._ensure_ready(source)
        if not collections:
            logger.info(f"Calendar source {source.name} has no event calendars")
            return []

        results = await asyncio.gather(
            *(
                self._query(source, collection, window_start, window_end)
                for collection in collections
            )
        )

        failures = [result.error for result in results if result.error is not None]
        if len(failures) == len(results):
            if any(isinstance(error, AuthError) for error in failures):
                source.invalidate_auth()
                raise AuthError(
                    f"Credentials rejected while querying {source.name}",
                    source=source.name,
                )
            raise FetchError(
                f"All {len(results)} calendars of {source.name} failed",
                source=source.name,
            )

        events: list[NormalizedEvent] = []
        for result in results:
            if result.records is None:
                continue
            events.extend(
                parse_records(
                    result.records,
                    window_start,
                    window_end,
                    self.display_timezone,
                    source=str(result.collection),
                )
            )

        logger.debug(f"Fetched {len(events)} events from {source.name}")
        return sort_events(events)

    async def fetch_all(
        self,
        window_start: datetime,
        window_end: datetime,
    ) -> list[NormalizedEvent]:
        """Fetch and merge every source.

        Raises:
            FetchError: If every source fails (or none is configured)
        """
        if not self.sources:
            raise FetchError("No calendar sources configured", source="*")

        results = await asyncio.gather(
            *(
                self.fetch_upcoming(source, window_start, window_end)
                for source in self.sources
            ),
            return_exceptions=True,
        )

        events: list[NormalizedEvent] = []
        failed = 0
        for source, result in zip(self.sources, results):
            if isinstance(result, CalendarError):
                failed += 1
                logger.warning(f"Calendar source {source.name} failed: {result}")
                continue
            if isinstance(result, BaseException):
                raise result
            events.extend(result)

        if failed == len(self.sources):
            raise FetchError(
                f"All {failed} calendar sources failed",
                source="*",
            )

        return sort_events(events)

    async def fetch_window(self) -> list[NormalizedEvent]:
        """Fetch every source for the current upcoming window."""
        start, end = self.upcoming_window()
        return await self.fetch_all(start, end)

    async def aclose(self) -> None:
        for source in self.sources:
            await source.aclose()


def build_source(config: CalendarSourceConfig, settings: Settings) -> CalendarSource:
    """Create a CalDAV-backed source from its configuration."""
    transport = CalDAVTransport(
        url=config.url,
        username=config.username,
        password=config.password,
        name=config.label,
        timeout=settings.caldav_timeout_seconds,
        user_agent=f"matrix-calendar-bot/{settings.app_version}",
    )
    return CalendarSource(config.label, transport)


def build_sources(settings: Settings) -> list[CalendarSource]:
    return [build_source(config, settings) for config in settings.calendar_sources]


def create_calendar_client(settings: Settings) -> CalendarClient:
    """Create a calendar client for the configured sources."""
    return CalendarClient(
        build_sources(settings),
        settings.timezone,
        window_days=settings.window_days,
    )
