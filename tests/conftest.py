"""Pytest fixtures for the Matrix calendar bot tests.

This module provides test fixtures that ensure:
1. No homeserver or calendar server is contacted
2. Session files live in per-test temporary directories
3. Isolated test environment with controlled configuration
"""

import asyncio
import os
from datetime import datetime, timezone
from pathlib import Path

import pytest

# Set test environment BEFORE importing application modules
# This ensures no real services are contacted during test collection
os.environ.setdefault("MATRIX_SERVER_URL", "https://matrix.example.org")
os.environ.setdefault("MATRIX_BOT_USERNAME", "calbot")
os.environ.setdefault("MATRIX_BOT_PASSWORD", "test-password")
os.environ.setdefault("MATRIX_ROOM_IDS", "!room:example.org")

from matrix_calendar_bot.calendar.base import (
    AuthError,
    CalendarCollection,
    CalendarTransport,
    DiscoveryError,
    RawEventRecord,
)
from matrix_calendar_bot.calendar.client import CalendarClient, CalendarSource
from matrix_calendar_bot.config import Settings
from matrix_calendar_bot.matrix.transport import SyncBatch
from matrix_calendar_bot.models.session import Session

ROOM = "!room:example.org"
OTHER_ROOM = "!other:example.org"
BOT_USER = "@calbot:example.org"

# Monday; the digest window runs from here for 7 days
WINDOW_START = datetime(2024, 6, 3, tzinfo=timezone.utc)


# =============================================================================
# Test Isolation Fixtures
# =============================================================================


@pytest.fixture(autouse=True)
def reset_settings_cache():
    """Reset settings cache before each test to ensure clean state."""
    from matrix_calendar_bot.config import get_settings
    get_settings.cache_clear()
    yield
    get_settings.cache_clear()


# =============================================================================
# iCalendar helpers
# =============================================================================


def make_ics(*vevents: str) -> str:
    """Wrap VEVENT blocks in a VCALENDAR."""
    body = "".join(vevents)
    return (
        "BEGIN:VCALENDAR\r\n"
        "VERSION:2.0\r\n"
        "PRODID:-//Test//Calendar//EN\r\n"
        f"{body}"
        "END:VCALENDAR\r\n"
    )


def make_vevent(uid: str, summary: str | None, dtstart: str, *lines: str) -> str:
    """Build a VEVENT; extra lines are property lines like ``DTEND:...``."""
    props = [f"UID:{uid}", "DTSTAMP:20240101T000000Z", f"DTSTART{dtstart}"]
    if summary is not None:
        props.append(f"SUMMARY:{summary}")
    props.extend(lines)
    return "BEGIN:VEVENT\r\n" + "".join(f"{p}\r\n" for p in props) + "END:VEVENT\r\n"


def make_record(calendar_data: str, collection: str = "Work", href: str = "/cal/1.ics"):
    return RawEventRecord(href=href, calendar_data=calendar_data, collection=collection)


# =============================================================================
# Fakes
# =============================================================================


class FakeCalendarTransport(CalendarTransport):
    """In-memory calendar server.

    ``records`` maps a collection name to its records or to an exception to
    raise when that collection is queried.
    """

    def __init__(
        self,
        name: str = "fake",
        records: dict | None = None,
        auth_error: bool = False,
        discovery_error: bool = False,
        delay: float = 0.0,
    ):
        self.name = name
        self.delay = delay
        self.records = records if records is not None else {"Work": []}
        self.auth_error = auth_error
        self.discovery_error = discovery_error
        self.authenticate_calls = 0
        self.discover_calls = 0
        self.queries: list[tuple[str, datetime, datetime]] = []
        self.closed = False

    async def authenticate(self) -> None:
        self.authenticate_calls += 1
        await asyncio.sleep(self.delay)
        if self.auth_error:
            raise AuthError("401 Unauthorized", source=self.name, status_code=401)

    async def discover_collections(self) -> list[CalendarCollection]:
        self.discover_calls += 1
        await asyncio.sleep(self.delay)
        if self.discovery_error:
            raise DiscoveryError("PROPFIND failed", source=self.name, status_code=500)
        return [
            CalendarCollection(url=f"https://dav.example.org/{name}/", name=name)
            for name in self.records
        ]

    async def query_events(self, collection, start, end) -> list[RawEventRecord]:
        self.queries.append((collection.name, start, end))
        result = self.records[collection.name]
        if isinstance(result, Exception):
            raise result
        return list(result)

    async def aclose(self) -> None:
        self.closed = True


class FakeMatrixTransport:
    """Scripted Matrix homeserver.

    ``batches`` are returned (or raised, for exceptions) by successive sync
    calls; once exhausted, sync blocks like a long poll with no traffic.
    ``send_failures`` are raised by successive send calls before sends start
    succeeding.
    """

    def __init__(self, batches=None, send_failures=None, login_error=None, restore_error=None):
        self.batches = list(batches or [])
        self.send_failures = list(send_failures or [])
        self.login_error = login_error
        self.restore_error = restore_error
        self.user_id = ""
        self.login_calls = 0
        self.restored: list[Session] = []
        self.sync_calls: list[tuple[str | None, int]] = []
        self.sent: list[tuple[str, str, str | None]] = []
        self.send_attempts = 0
        self.joined: list[str] = []
        self.closed = False
        self.idle = asyncio.Event()

    async def login(self) -> Session:
        self.login_calls += 1
        if self.login_error is not None:
            raise self.login_error
        self.user_id = BOT_USER
        return Session(
            homeserver="https://matrix.example.org",
            user_id=BOT_USER,
            device_id="DEVICE",
            access_token="fresh-token",
        )

    async def restore_session(self, session: Session) -> None:
        if self.restore_error is not None:
            raise self.restore_error
        self.user_id = session.user_id
        self.restored.append(session)

    async def sync(self, since, timeout_ms) -> SyncBatch:
        self.sync_calls.append((since, timeout_ms))
        if not self.batches:
            self.idle.set()
            await asyncio.Event().wait()
        item = self.batches.pop(0)
        if isinstance(item, Exception):
            raise item
        return item

    async def send_message(self, room_id, body, html=None) -> str:
        self.send_attempts += 1
        if self.send_failures:
            raise self.send_failures.pop(0)
        self.sent.append((room_id, body, html))
        return f"$reply{len(self.sent)}"

    async def join_room(self, room_id) -> None:
        self.joined.append(room_id)

    async def close(self) -> None:
        self.closed = True


# =============================================================================
# Fixtures
# =============================================================================


@pytest.fixture
def settings(tmp_path: Path) -> Settings:
    """Settings with fast retries and a temporary data directory."""
    return Settings(
        matrix_room_ids=ROOM,
        data_dir=tmp_path / "data",
        reply_backoff_initial_seconds=0,
        reply_backoff_max_seconds=0,
        shutdown_grace_seconds=1.0,
        sync_timeout_ms=1000,
    )


@pytest.fixture
def stored_session() -> Session:
    return Session(
        homeserver="https://matrix.example.org",
        user_id=BOT_USER,
        device_id="DEVICE",
        access_token="stored-token",
        sync_token="s100",
    )


def make_calendar_client(*transports: FakeCalendarTransport) -> CalendarClient:
    sources = [CalendarSource(t.name, t) for t in transports]
    return CalendarClient(
        sources,
        timezone.utc,
        window_days=7,
        clock=lambda: WINDOW_START.replace(hour=8),
    )
