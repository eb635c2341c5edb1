"""CalDAV transport.

Built on the `caldav` library. The library is synchronous, so every call runs
in a worker thread through `asyncio.to_thread`.

## Discovery

1. `client.principal()` resolves the current user principal. A rejected
   login raises `AuthorizationError`.
2. `principal.calendars()` lists the calendar home set. Collections whose
   supported component set excludes `VEVENT` (task lists) are skipped.
3. If the configured URL is one of those calendars, it is the only
   collection. A server without a principal has its configured URL queried
   directly as a calendar.

## Event Query

`calendar.search(start=, end=, event=True)` sends a calendar-query REPORT
with a UTC time-range. Expansion stays client-side (`expand=False`) so that
overrides and EXDATEs go through `matrix_calendar_bot.calendar.ical`. Each
returned object becomes one `RawEventRecord`.

## Retries

Network errors (`OSError`, which covers the HTTP library's connection and
timeout errors) are retried with exponential backoff (3 attempts). DAV errors
are not retried.
"""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime
from functools import partial
from typing import Any, Callable, TypeVar

import caldav
from caldav.lib.error import AuthorizationError, DAVError
from tenacity import (
    retry,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from matrix_calendar_bot.calendar.base import (
    AuthError,
    CalendarCollection,
    CalendarTransport,
    DiscoveryError,
    FetchError,
    RawEventRecord,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")


def _same_url(left: Any, right: Any) -> bool:
    return str(left).rstrip("/") == str(right).rstrip("/")


def _supports_events(calendar: Any) -> bool:
    """True unless the collection declares a component set without VEVENT."""
    try:
        components = calendar.get_supported_components()
    except DAVError:
        return True
    return not components or "VEVENT" in {str(comp).upper() for comp in components}


def _collection(calendar: Any) -> CalendarCollection:
    return CalendarCollection(url=str(calendar.url), name=str(calendar.name or ""))


class CalDAVTransport(CalendarTransport):
    """Transport for one CalDAV account.

    Example:
        ```python
        async with CalDAVTransport(url, "alice", "secret") as transport:
            await transport.authenticate()
            collections = await transport.discover_collections()
            records = await transport.query_events(collections[0], start, end)
        ```
    """

    def __init__(
        self,
        url: str,
        username: str = "",
        password: str = "",
        name: str | None = None,
        timeout: float = 30.0,
        user_agent: str | None = None,
        client: caldav.DAVClient | None = None,
    ):
        """Initialize the transport.

        Args:
            url: CalDAV server, principal or calendar URL
            username: Username (empty for anonymous)
            password: Password
            name: Label used in logs and errors
            timeout: Request timeout in seconds
            user_agent: User-Agent string for requests
            client: Pre-configured DAV client (tests inject a mock)
        """
        self.url = url if url.endswith("/") else f"{url}/"
        self.name = name or url
        self.timeout = timeout
        self.user_agent = user_agent or "matrix-calendar-bot/0.1.0"
        self._username = username
        self._password = password
        self._client = client
        self._principal: Any = None
        self._authenticated = False

    def _get_client(self) -> caldav.DAVClient:
        """Get or create the DAV client."""
        if self._client is None:
            self._client = caldav.DAVClient(
                url=self.url,
                username=self._username or None,
                password=self._password or None,
                timeout=self.timeout,
                headers={"User-Agent": self.user_agent},
            )
        return self._client

    async def aclose(self) -> None:
        if self._client is not None:
            client, self._client = self._client, None
            await asyncio.to_thread(client.close)
        self._principal = None
        self._authenticated = False

    @retry(
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=1, min=2, max=10),
        retry=retry_if_exception_type(OSError),
        reraise=True,
    )
    async def _call(self, func: Callable[..., T], *args: Any, **kwargs: Any) -> T:
        """Run a blocking caldav call in a worker thread."""
        return await asyncio.to_thread(partial(func, *args, **kwargs))

    def _auth_error(self, e: Exception) -> AuthError:
        return AuthError(f"Credentials rejected by {self.name}: {e}", source=self.name)

    async def authenticate(self) -> None:
        client = self._get_client()
        try:
            self._principal = await self._call(client.principal)
        except AuthorizationError as e:
            raise self._auth_error(e) from e
        except DAVError as e:
            logger.info(
                f"No principal on {self.name} ({e}); querying {self.url} as a calendar"
            )
            self._principal = None
        except OSError as e:
            raise DiscoveryError(
                f"Cannot reach {self.name}: {e}", source=self.name
            ) from e

        self._authenticated = True
        logger.info(f"Authenticated against calendar server {self.name}")

    def _list_collections(self) -> list[CalendarCollection]:
        if self._principal is None:
            return [CalendarCollection(url=self.url, name="")]

        calendars = [
            calendar
            for calendar in self._principal.calendars()
            if _supports_events(calendar)
        ]
        for calendar in calendars:
            if _same_url(calendar.url, self.url):
                return [_collection(calendar)]
        return [_collection(calendar) for calendar in calendars]

    async def discover_collections(self) -> list[CalendarCollection]:
        if not self._authenticated:
            await self.authenticate()

        try:
            collections = await self._call(self._list_collections)
        except AuthorizationError as e:
            raise self._auth_error(e) from e
        except (DAVError, OSError) as e:
            raise DiscoveryError(
                f"Listing calendars on {self.name} failed: {e}", source=self.name
            ) from e

        logger.info(f"Discovered {len(collections)} calendars on {self.name}")
        return collections

    async def query_events(
        self,
        collection: CalendarCollection,
        start: datetime,
        end: datetime,
    ) -> list[RawEventRecord]:
        if start.tzinfo is None or end.tzinfo is None:
            raise ValueError("CalDAV time-range bounds must be timezone-aware")

        calendar = self._get_client().calendar(url=collection.url)
        try:
            objects = await self._call(
                calendar.search, start=start, end=end, event=True, expand=False
            )
        except AuthorizationError as e:
            raise self._auth_error(e) from e
        except (DAVError, OSError) as e:
            raise FetchError(
                f"Querying {collection} on {self.name} failed: {e}", source=self.name
            ) from e

        records = []
        for obj in objects:
            data = obj.data
            if not data:
                continue
            records.append(
                RawEventRecord(
                    href=str(obj.url),
                    calendar_data=data,
                    collection=str(collection),
                )
            )

        logger.debug(f"Fetched {len(records)} records from {collection}")
        return records
