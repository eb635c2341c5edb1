"""Base calendar transport abstraction.

This module defines the interface the calendar client uses to talk to a
remote calendar server, the raw records such a server returns, and the error
taxonomy shared by all transports.

## Transport Contract

A transport is bound to one account (server URL + credentials) and exposes:

- `authenticate()`: verify credentials, raising `AuthError` on rejection
- `discover_collections()`: list the account's event calendars
- `query_events(collection, start, end)`: return the raw iCalendar records
  overlapping `[start, end)`

Transports never parse iCalendar payloads; that happens in
`matrix_calendar_bot.calendar.ical` so the same normalization applies to
every server.

## Error Taxonomy

- `AuthError`: credentials rejected. Fatal for the source until reset.
- `DiscoveryError`: collection listing failed. Callers fall back to cached
  collections.
- `FetchError`: an event query failed (one collection, or all of them when
  raised by the client).
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime
from typing import Any


class CalendarError(Exception):
    """Base exception for calendar retrieval errors."""

    def __init__(
        self,
        message: str,
        source: str,
        status_code: int | None = None,
    ):
        super().__init__(message)
        self.source = source
        self.status_code = status_code


class AuthError(CalendarError):
    """Raised when a calendar server rejects the configured credentials."""

    pass


class DiscoveryError(CalendarError):
    """Raised when calendar collections cannot be listed."""

    pass


class FetchError(CalendarError):
    """Raised when events cannot be retrieved."""

    pass


@dataclass(frozen=True)
class CalendarCollection:
    """A calendar container on a remote server (e.g. "Work")."""

    url: str
    name: str

    def __str__(self) -> str:
        return self.name or self.url


@dataclass(frozen=True)
class RawEventRecord:
    """One calendar object resource as returned by the server."""

    href: str
    calendar_data: str
    collection: str
    etag: str | None = None


class CalendarTransport(ABC):
    """Abstract base class for calendar server transports.

    Example:
        ```python
        class MyTransport(CalendarTransport):
            async def authenticate(self):
                ...

            async def discover_collections(self):
                return [CalendarCollection(url=..., name="Work")]

            async def query_events(self, collection, start, end):
                return [RawEventRecord(href=..., calendar_data=..., collection="Work")]
        ```
    """

    name: str

    @abstractmethod
    async def authenticate(self) -> None:
        """Verify the account credentials.

        Raises:
            AuthError: If the server rejects the credentials
            DiscoveryError: If the server cannot be reached or answers garbage
        """
        pass

    @abstractmethod
    async def discover_collections(self) -> list[CalendarCollection]:
        """List event collections for the account.

        Raises:
            AuthError: If the server rejects the credentials
            DiscoveryError: If the collections cannot be listed
        """
        pass

    @abstractmethod
    async def query_events(
        self,
        collection: CalendarCollection,
        start: datetime,
        end: datetime,
    ) -> list[RawEventRecord]:
        """Fetch raw records overlapping ``[start, end)``.

        Raises:
            AuthError: If the server rejects the credentials
            FetchError: If the query fails
        """
        pass

    async def aclose(self) -> None:
        """Release network resources."""
        return None

    async def __aenter__(self) -> CalendarTransport:
        return self

    async def __aexit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        await self.aclose()
