"""Command routing.

Filters incoming room messages down to recognized commands and runs them
with per-room serialization.

## Recognition

A message is a command when all of these hold:

- its room is on the allow-list
- its sender is not the bot itself
- its body, trimmed and lower-cased, equals one of the command tokens

Anything else is ignored (logged at debug level only, never answered).

## Ordering

Each room has a FIFO queue drained by one task. A room's task runs one
command at a time, so replies for a room go out in the order the commands
arrived. Different rooms proceed independently.
"""

from __future__ import annotations

import asyncio
import logging
from collections import OrderedDict, deque
from enum import Enum
from typing import Awaitable, Callable, Iterable

from matrix_calendar_bot.matrix.transport import CredentialsInvalidError, RoomMessage
from matrix_calendar_bot.models.command import Command

logger = logging.getLogger(__name__)

CommandHandler = Callable[[Command], Awaitable[None]]
FatalCallback = Callable[[BaseException], None]

DEFAULT_TOKENS = ("!cal", "!calendar")


class RoomState(str, Enum):
    """Dispatch state of one room."""

    IDLE = "idle"
    DISPATCHING = "dispatching"


class CommandRouter:
    """Recognizes commands and runs them one at a time per room.

    Example:
        ```python
        router = CommandRouter(bot.handle_command, ["!room:example.org"])
        router.own_user_id = "@calbot:example.org"

        for message in batch.messages:
            router.route(message)

        router.close()
        await router.drain(timeout=10)
        ```
    """

    def __init__(
        self,
        handler: CommandHandler,
        allowed_rooms: Iterable[str],
        own_user_id: str = "",
        command_tokens: Iterable[str] = DEFAULT_TOKENS,
        on_fatal: FatalCallback | None = None,
        seen_limit: int = 1024,
    ):
        """Initialize the router.

        Args:
            handler: Coroutine run for each accepted command
            allowed_rooms: Rooms commands are accepted from
            own_user_id: The bot's user ID; its own messages are ignored
            command_tokens: Recognized tokens (compared lower-cased)
            on_fatal: Called when a handler reports rejected credentials
            seen_limit: How many event IDs to remember for deduplication
        """
        self.handler = handler
        self.allowed_rooms = frozenset(allowed_rooms)
        self.own_user_id = own_user_id
        self.command_tokens = frozenset(token.strip().lower() for token in command_tokens)
        self.on_fatal = on_fatal
        self._seen: OrderedDict[str, None] = OrderedDict()
        self._seen_limit = seen_limit
        self._queues: dict[str, deque[Command]] = {}
        self._workers: dict[str, asyncio.Task] = {}
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    def parse(self, message: RoomMessage) -> Command | None:
        """Return the command carried by a message, or None."""
        if message.room_id not in self.allowed_rooms:
            logger.debug(f"Ignoring message in non-allow-listed room {message.room_id}")
            return None
        if self.own_user_id and message.sender == self.own_user_id:
            return None

        token = message.body.strip().lower()
        if token not in self.command_tokens:
            return None

        return Command(
            token=token,
            room_id=message.room_id,
            sender=message.sender,
            event_id=message.event_id,
        )

    def _mark_seen(self, event_id: str) -> bool:
        """Remember an event ID; False if it was already seen."""
        if event_id in self._seen:
            return False
        self._seen[event_id] = None
        if len(self._seen) > self._seen_limit:
            self._seen.popitem(last=False)
        return True

    def route(self, message: RoomMessage) -> bool:
        """Queue the message's command, if it carries one.

        Returns:
            True if a command was queued
        """
        if not self._mark_seen(message.event_id):
            logger.debug(f"Ignoring duplicate event {message.event_id}")
            return False
        command = self.parse(message)
        if command is None:
            return False
        return self.submit(command)

    def submit(self, command: Command) -> bool:
        """Queue a command behind any pending work for its room."""
        if self._closed:
            logger.debug(f"Router closed, dropping command for {command.room_id}")
            return False

        queue = self._queues.setdefault(command.room_id, deque())
        queue.append(command)
        logger.info(f"Queued {command.token} from {command.sender} in {command.room_id}")

        if command.room_id not in self._workers:
            self._workers[command.room_id] = asyncio.create_task(
                self._run_room(command.room_id),
                name=f"room-{command.room_id}",
            )
        return True

    def state(self, room_id: str) -> RoomState:
        if room_id in self._workers:
            return RoomState.DISPATCHING
        return RoomState.IDLE

    def pending(self, room_id: str) -> int:
        """Number of queued commands not yet started for a room."""
        return len(self._queues.get(room_id, ()))

    async def _run_room(self, room_id: str) -> None:
        queue = self._queues[room_id]
        try:
            while queue:
                command = queue.popleft()
                try:
                    await self.handler(command)
                except CredentialsInvalidError as e:
                    logger.error(f"Matrix credentials rejected while replying: {e}")
                    if self.on_fatal is not None:
                        self.on_fatal(e)
                except Exception:
                    logger.exception(f"Command in {room_id} failed")
        finally:
            self._workers.pop(room_id, None)
            if not queue:
                self._queues.pop(room_id, None)

    def close(self) -> None:
        """Stop accepting new commands."""
        self._closed = True

    async def drain(self, timeout: float) -> bool:
        """Wait for queued work, cancelling whatever is left after timeout.

        Returns:
            True if all work finished in time
        """
        tasks = list(self._workers.values())
        if not tasks:
            return True

        done, pending = await asyncio.wait(tasks, timeout=timeout)
        if not pending:
            return True

        dropped = sum(len(queue) for queue in self._queues.values()) + len(pending)
        logger.warning(f"Shutdown grace expired, abandoning {dropped} pending commands")
        for task in pending:
            task.cancel()
        await asyncio.gather(*pending, return_exceptions=True)
        self._queues.clear()
        return False
