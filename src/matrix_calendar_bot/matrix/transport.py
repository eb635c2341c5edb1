"""Matrix transport adapter.

Wraps `mautrix.client.Client` behind the handful of operations the bot
needs, and translates mautrix/aiohttp failures into two exception types:

- `CredentialsInvalidError`: the homeserver rejected the password or the
  stored access token. Nothing but operator action fixes this.
- `TransportFailure`: anything else. `transient` tells the caller whether a
  retry can help (network errors, rate limits, 5xx) or not (other 4xx).

## Sync Decoding

`sync()` returns the raw `/sync` JSON. Only these parts are used:

- `next_batch`: the token for the next call
- `rooms.join.<room>.timeline.events[]` with `type == "m.room.message"` and
  `content.msgtype == "m.text"`
- `rooms.invite` keys: rooms the bot has been invited to
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any

import aiohttp
from mautrix.client import Client
from mautrix.errors import (
    MatrixConnectionError,
    MatrixRequestError,
    MForbidden,
    MLimitExceeded,
    MUnknownToken,
)
from mautrix.types import RoomID, UserID

from matrix_calendar_bot.models.session import Session

logger = logging.getLogger(__name__)


class TransportFailure(Exception):
    """Raised when a Matrix request fails for a reason other than credentials."""

    def __init__(
        self,
        message: str,
        transient: bool = True,
        status_code: int | None = None,
        retry_after_ms: int | None = None,
    ):
        super().__init__(message)
        self.transient = transient
        self.status_code = status_code
        self.retry_after_ms = retry_after_ms


class CredentialsInvalidError(Exception):
    """Raised when the homeserver rejects the bot's password or access token."""

    pass


@dataclass(frozen=True)
class RoomMessage:
    """A plain-text room message from a sync batch."""

    room_id: str
    event_id: str
    sender: str
    body: str


@dataclass
class SyncBatch:
    """Decoded result of one /sync call."""

    next_batch: str
    messages: list[RoomMessage] = field(default_factory=list)
    invited_rooms: list[str] = field(default_factory=list)


def parse_sync_response(data: dict[str, Any]) -> SyncBatch:
    """Extract text messages and invites from a raw /sync response."""
    rooms = data.get("rooms") or {}
    messages = []
    for room_id, room in (rooms.get("join") or {}).items():
        events = ((room or {}).get("timeline") or {}).get("events") or []
        for event in events:
            if event.get("type") != "m.room.message":
                continue
            content = event.get("content") or {}
            body = content.get("body")
            if content.get("msgtype") != "m.text" or not isinstance(body, str):
                continue
            event_id = event.get("event_id")
            sender = event.get("sender")
            if not event_id or not sender:
                continue
            messages.append(
                RoomMessage(
                    room_id=room_id,
                    event_id=event_id,
                    sender=sender,
                    body=body,
                )
            )

    return SyncBatch(
        next_batch=str(data.get("next_batch") or ""),
        messages=messages,
        invited_rooms=list((rooms.get("invite") or {}).keys()),
    )


_TRANSLATED = (
    MatrixRequestError,
    MatrixConnectionError,
    aiohttp.ClientError,
    asyncio.TimeoutError,
)


def _translate(e: Exception, during: str) -> Exception:
    """Map a mautrix or aiohttp error onto the adapter's exceptions."""
    if isinstance(e, MUnknownToken):
        return CredentialsInvalidError(f"Access token rejected during {during}")
    if isinstance(e, MLimitExceeded):
        return TransportFailure(
            f"Rate limited during {during}",
            transient=True,
            status_code=429,
            retry_after_ms=getattr(e, "retry_after_ms", None),
        )
    if isinstance(e, MatrixRequestError):
        status = getattr(e, "http_status", None)
        transient = status is None or status >= 500 or status == 429
        return TransportFailure(
            f"{during} failed: {e}",
            transient=transient,
            status_code=status,
        )
    return TransportFailure(f"{during} failed: {e}", transient=True)


class MatrixTransport:
    """Thin adapter over the mautrix client.

    Example:
        ```python
        transport = MatrixTransport(settings.matrix_server_url, "calbot", password)
        session = await transport.login()
        batch = await transport.sync(session.sync_token, timeout_ms=30000)
        ```
    """

    def __init__(
        self,
        homeserver: str,
        username: str,
        password: str,
        device_name: str = "calendar-bot",
    ):
        self.homeserver = homeserver
        self.username = username
        self._password = password
        self.device_name = device_name
        self._client: Client | None = None

    @property
    def user_id(self) -> str:
        if self._client is None:
            return ""
        return str(self._client.mxid)

    def _require_client(self) -> Client:
        if self._client is None:
            raise TransportFailure("Matrix client is not logged in", transient=False)
        return self._client

    async def login(self) -> Session:
        """Log in with the configured password.

        Raises:
            CredentialsInvalidError: If the homeserver rejects the login
            TransportFailure: If the homeserver cannot be reached
        """
        await self.close()
        client = Client(base_url=self.homeserver)
        self._client = client
        try:
            response = await client.login(
                identifier=self.username,
                password=self._password,
                device_name=self.device_name,
            )
        except MForbidden as e:
            raise CredentialsInvalidError(
                f"Login rejected for {self.username}"
            ) from e
        except _TRANSLATED as e:
            raise _translate(e, "login") from e

        logger.info(f"Logged in as {response.user_id} (device {response.device_id})")
        return Session(
            homeserver=self.homeserver,
            user_id=str(response.user_id),
            device_id=str(response.device_id),
            access_token=response.access_token,
        )

    async def restore_session(self, session: Session) -> None:
        """Reuse a stored access token and verify it with whoami.

        Raises:
            CredentialsInvalidError: If the token is no longer valid
            TransportFailure: If the homeserver cannot be reached
        """
        await self.close()
        self._client = Client(
            mxid=UserID(session.user_id),
            device_id=session.device_id,
            base_url=session.homeserver,
            token=session.access_token,
        )
        try:
            whoami = await self._client.whoami()
        except _TRANSLATED as e:
            raise _translate(e, "session restore") from e
        logger.info(f"Restored session for {whoami.user_id}")

    async def sync(self, since: str | None, timeout_ms: int) -> SyncBatch:
        client = self._require_client()
        try:
            data = await client.sync(since=since, timeout=timeout_ms)
        except _TRANSLATED as e:
            raise _translate(e, "sync") from e
        return parse_sync_response(data)

    async def send_message(self, room_id: str, body: str, html: str | None = None) -> str:
        """Send a text message, optionally with an HTML formatted body.

        Returns:
            The event ID assigned by the homeserver
        """
        client = self._require_client()
        try:
            event_id = await client.send_text(RoomID(room_id), text=body, html=html)
        except _TRANSLATED as e:
            raise _translate(e, f"send to {room_id}") from e
        return str(event_id)

    async def join_room(self, room_id: str) -> None:
        client = self._require_client()
        try:
            await client.join_room_by_id(RoomID(room_id))
        except _TRANSLATED as e:
            raise _translate(e, f"join {room_id}") from e
        logger.info(f"Joined room {room_id}")

    async def close(self) -> None:
        if self._client is None:
            return
        client, self._client = self._client, None
        try:
            await client.api.session.close()
        except (aiohttp.ClientError, RuntimeError) as e:
            logger.debug(f"Error closing Matrix HTTP session: {e}")
