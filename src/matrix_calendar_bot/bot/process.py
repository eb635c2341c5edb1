"""Bot process.

Owns the Matrix session lifecycle and the sync loop, and turns each accepted
command into a calendar digest reply.

## Startup

1. Load the stored session. If there is none (or it cannot be read), log in
   with the password and save the new session before touching room traffic.
   Otherwise restore it.
2. Without a sync token, run one initial sync whose messages are skipped, so
   commands sent while the bot was offline are not answered.

## Sync Loop

Each batch: join invites to allow-listed rooms, route messages, then save
the session with the batch's ``next_batch`` token. Transient sync failures
back off and retry. Rejected Matrix credentials end the process with
``EXIT_CREDENTIALS_INVALID``.

## Command Pipeline

window -> fetch all sources -> format -> dispatch. When every calendar source
fails, the room receives one apology instead of silence.
"""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime

from matrix_calendar_bot.bot.dispatcher import DeliveryResult, ReplyDispatcher
from matrix_calendar_bot.bot.formatter import format_events, format_events_html
from matrix_calendar_bot.bot.router import CommandRouter
from matrix_calendar_bot.bot.scheduler import WeeklyDigest
from matrix_calendar_bot.calendar.base import FetchError
from matrix_calendar_bot.calendar.client import CalendarClient
from matrix_calendar_bot.config import Settings
from matrix_calendar_bot.matrix.transport import (
    CredentialsInvalidError,
    MatrixTransport,
    SyncBatch,
    TransportFailure,
)
from matrix_calendar_bot.models.command import Command, ReplyMessage
from matrix_calendar_bot.models.session import Session
from matrix_calendar_bot.session.store import SessionIOError, SessionStore

logger = logging.getLogger(__name__)

EXIT_OK = 0
EXIT_ERROR = 1
EXIT_CONFIG = 2
EXIT_CREDENTIALS_INVALID = 78

APOLOGY = "Sorry, I couldn't fetch calendar events right now. Please try again later."

SYNC_BACKOFF_INITIAL = 1.0
SYNC_BACKOFF_MAX = 60.0


class CalendarBot:
    """The long-running bot.

    Example:
        ```python
        bot = CalendarBot(settings, transport, store, calendar_client, dispatcher)
        exit_code = await bot.run()
        ```
    """

    def __init__(
        self,
        settings: Settings,
        transport: MatrixTransport,
        session_store: SessionStore,
        calendar_client: CalendarClient,
        dispatcher: ReplyDispatcher,
    ):
        self.settings = settings
        self.transport = transport
        self.store = session_store
        self.calendar = calendar_client
        self.dispatcher = dispatcher
        self.allowed_rooms = settings.room_ids
        self.router = CommandRouter(
            self.handle_command,
            self.allowed_rooms,
            command_tokens=settings.tokens,
            on_fatal=self._on_fatal,
        )
        self.session: Session | None = None
        self.digest: WeeklyDigest | None = None
        if settings.weekly_digest_enabled:
            self.digest = WeeklyDigest(
                self.router,
                self.allowed_rooms,
                settings.timezone,
                weekday=settings.weekly_digest_weekday,
                hour=settings.weekly_digest_hour,
            )
        self._stop = asyncio.Event()
        self._fatal: BaseException | None = None

    def _on_fatal(self, error: BaseException) -> None:
        if self._fatal is None:
            self._fatal = error
        self._stop.set()

    def stop(self) -> None:
        """Request shutdown; the sync loop exits at its next suspension point."""
        if not self._stop.is_set():
            logger.info("Stop requested")
        self._stop.set()

    @property
    def stopping(self) -> bool:
        return self._stop.is_set()

    # Session lifecycle

    async def _checkpoint(self) -> bool:
        """Persist the current session; failures are logged, not raised."""
        if self.session is None:
            return False
        try:
            await asyncio.to_thread(self.store.save, self.session)
        except SessionIOError as e:
            logger.error(f"Could not save session, will retry at next checkpoint: {e}")
            return False
        return True

    async def _load_session(self) -> Session | None:
        try:
            return await asyncio.to_thread(self.store.load)
        except SessionIOError as e:
            logger.warning(f"Stored session unusable, logging in again: {e}")
            return None

    async def start(self) -> None:
        """Log in or restore the session, then skip history on first run.

        Raises:
            CredentialsInvalidError: If the homeserver rejects the bot
            TransportFailure: If the homeserver cannot be reached
        """
        session = await self._load_session()
        if session is None:
            logger.info("No stored session, logging in")
            session = await self.transport.login()
            self.session = session
            await self._checkpoint()
        else:
            await self.transport.restore_session(session)
            self.session = session

        self.router.own_user_id = session.user_id

        if session.sync_token is None:
            batch = await self.transport.sync(None, 0)
            logger.info(
                f"Initial sync done, skipping {len(batch.messages)} earlier messages"
            )
            await self._join_invites(batch)
            self.session = session.with_sync_token(batch.next_batch)
            await self._checkpoint()

        logger.info(f"Bot ready as {session.user_id} in {len(self.allowed_rooms)} rooms")

    # Sync loop

    async def _next_batch(self) -> SyncBatch | None:
        """Long-poll for the next batch, or None once stop is requested."""
        if self.session is None:
            raise RuntimeError("bot not started")
        sync_task = asyncio.create_task(
            self.transport.sync(self.session.sync_token, self.settings.sync_timeout_ms)
        )
        stop_task = asyncio.create_task(self._stop.wait())
        try:
            done, _ = await asyncio.wait(
                {sync_task, stop_task}, return_when=asyncio.FIRST_COMPLETED
            )
        finally:
            stop_task.cancel()
            if not sync_task.done():
                sync_task.cancel()
            await asyncio.gather(stop_task, sync_task, return_exceptions=True)

        if sync_task in done and not sync_task.cancelled():
            return sync_task.result()
        return None

    async def _join_invites(self, batch: SyncBatch) -> None:
        for room_id in batch.invited_rooms:
            if room_id not in self.allowed_rooms:
                logger.info(f"Ignoring invite to non-allow-listed room {room_id}")
                continue
            try:
                await self.transport.join_room(room_id)
            except TransportFailure as e:
                logger.warning(f"Failed to join {room_id}: {e}")

    async def process_batch(self, batch: SyncBatch) -> None:
        """Handle one sync batch and checkpoint its token."""
        await self._join_invites(batch)
        for message in batch.messages:
            self.router.route(message)
        if self.session is not None and batch.next_batch:
            self.session = self.session.with_sync_token(batch.next_batch)
            await self._checkpoint()

    async def _wait_or_stop(self, delay: float) -> None:
        try:
            await asyncio.wait_for(self._stop.wait(), timeout=delay)
        except asyncio.TimeoutError:
            pass

    async def _start_with_retry(self) -> None:
        delay = SYNC_BACKOFF_INITIAL
        while not self._stop.is_set():
            try:
                await self.start()
                return
            except TransportFailure as e:
                logger.warning(f"Startup failed ({e}), retrying in {delay:.0f}s")
                await self._wait_or_stop(delay)
                delay = min(delay * 2, SYNC_BACKOFF_MAX)

    async def _sync_loop(self) -> None:
        delay = SYNC_BACKOFF_INITIAL
        while not self._stop.is_set():
            try:
                batch = await self._next_batch()
            except TransportFailure as e:
                logger.warning(f"Sync failed ({e}), retrying in {delay:.0f}s")
                await self._wait_or_stop(delay)
                delay = min(delay * 2, SYNC_BACKOFF_MAX)
                continue
            if batch is None:
                return
            delay = SYNC_BACKOFF_INITIAL
            await self.process_batch(batch)

    async def run(self) -> int:
        """Run until stopped.

        Returns:
            EXIT_OK after a requested stop, EXIT_CREDENTIALS_INVALID when the
            homeserver rejects the bot's credentials
        """
        exit_code = EXIT_OK
        try:
            if self.session is None:
                await self._start_with_retry()
            if self.digest is not None and not self._stop.is_set():
                self.digest.start()
            await self._sync_loop()
        except CredentialsInvalidError as e:
            self._fatal = e
        finally:
            await self._shutdown()

        if isinstance(self._fatal, CredentialsInvalidError):
            logger.error(
                f"Matrix credentials rejected ({self._fatal}); "
                f"remove {self.store.path} and check the bot password"
            )
            exit_code = EXIT_CREDENTIALS_INVALID
        return exit_code

    async def _shutdown(self) -> None:
        self._stop.set()
        if self.digest is not None:
            await self.digest.stop()
        self.router.close()
        finished = await self.router.drain(self.settings.shutdown_grace_seconds)
        if finished:
            logger.info("All pending replies sent")
        await self.calendar.aclose()
        await self.transport.close()

    # Command pipeline

    async def build_reply(self, room_id: str, now: datetime | None = None) -> ReplyMessage:
        """Fetch the upcoming window and render the reply for a room."""
        window_start, window_end = self.calendar.upcoming_window(now)
        try:
            events = await self.calendar.fetch_all(window_start, window_end)
        except FetchError as e:
            logger.error(f"Failed to get calendar events: {e}")
            return ReplyMessage(room_id=room_id, body=APOLOGY)

        days = self.settings.window_days
        return ReplyMessage(
            room_id=room_id,
            body=format_events(events, window_days=days),
            html=format_events_html(events, window_days=days),
        )

    async def handle_command(self, command: Command) -> DeliveryResult:
        """Answer one command in its room.

        Raises:
            CredentialsInvalidError: If the reply is rejected for credentials
        """
        reply = await self.build_reply(command.room_id)
        result = await self.dispatcher.send(reply)
        if result.delivered:
            logger.info(
                f"Replied to {command.token} in {command.room_id} "
                f"after {result.attempts} attempt(s)"
            )
        else:
            logger.error(
                f"Dropped reply to {command.room_id} after "
                f"{result.attempts} attempt(s): {result.error}"
            )
        return result
