"""Tests for command routing."""

import asyncio
import itertools

import pytest

from conftest import BOT_USER, OTHER_ROOM, ROOM
from matrix_calendar_bot.bot.router import CommandRouter, RoomState
from matrix_calendar_bot.matrix.transport import CredentialsInvalidError, RoomMessage
from matrix_calendar_bot.models.command import Command

_ids = itertools.count(1)


def message(body: str, room: str = ROOM, sender: str = "@alice:example.org", event_id=None):
    return RoomMessage(
        room_id=room,
        event_id=event_id or f"$event{next(_ids)}",
        sender=sender,
        body=body,
    )


class RecordingHandler:
    """Handler that records start/end of each command."""

    def __init__(self, delay: float = 0.0):
        self.delay = delay
        self.log: list[tuple[str, str]] = []

    async def __call__(self, command: Command) -> None:
        self.log.append(("start", command.event_id))
        await asyncio.sleep(self.delay)
        self.log.append(("end", command.event_id))


def make_router(handler, **kwargs) -> CommandRouter:
    return CommandRouter(handler, [ROOM, OTHER_ROOM], own_user_id=BOT_USER, **kwargs)


class TestParse:
    """Tests for command recognition."""

    @pytest.mark.parametrize("body", ["!cal", "!calendar", "  !CAL  ", "!Calendar\n"])
    def test_recognized_tokens(self, body):
        command = make_router(RecordingHandler()).parse(message(body))
        assert command is not None
        assert command.room_id == ROOM
        assert command.token == body.strip().lower()

    @pytest.mark.parametrize("body", ["!cal please", "cal", "!calendars", ""])
    def test_other_text_ignored(self, body):
        assert make_router(RecordingHandler()).parse(message(body)) is None

    def test_room_not_allow_listed(self):
        router = make_router(RecordingHandler())
        assert router.parse(message("!cal", room="!elsewhere:example.org")) is None

    def test_own_messages_ignored(self):
        router = make_router(RecordingHandler())
        assert router.parse(message("!cal", sender=BOT_USER)) is None

    def test_custom_tokens(self):
        router = make_router(RecordingHandler(), command_tokens=["!agenda"])
        assert router.parse(message("!agenda")) is not None
        assert router.parse(message("!cal")) is None


class TestRouting:
    """Tests for per-room serialization."""

    @pytest.mark.asyncio
    async def test_same_room_commands_run_in_order(self):
        """Test two commands in one room never interleave."""
        handler = RecordingHandler(delay=0.01)
        router = make_router(handler)
        first, second = message("!cal"), message("!calendar")
        assert router.route(first) is True
        assert router.route(second) is True
        assert router.state(ROOM) is RoomState.DISPATCHING

        assert await router.drain(timeout=1) is True
        assert handler.log == [
            ("start", first.event_id),
            ("end", first.event_id),
            ("start", second.event_id),
            ("end", second.event_id),
        ]
        assert router.state(ROOM) is RoomState.IDLE

    @pytest.mark.asyncio
    async def test_rooms_run_independently(self):
        handler = RecordingHandler(delay=0.01)
        router = make_router(handler)
        a, b = message("!cal"), message("!cal", room=OTHER_ROOM)
        router.route(a)
        router.route(b)
        await router.drain(timeout=1)
        assert handler.log[:2] == [("start", a.event_id), ("start", b.event_id)]

    @pytest.mark.asyncio
    async def test_not_allow_listed_never_dispatched(self):
        handler = RecordingHandler()
        router = make_router(handler)
        assert router.route(message("!cal", room="!elsewhere:example.org")) is False
        await router.drain(timeout=1)
        assert handler.log == []

    @pytest.mark.asyncio
    async def test_duplicate_event_ignored(self):
        handler = RecordingHandler()
        router = make_router(handler)
        msg = message("!cal", event_id="$same")
        assert router.route(msg) is True
        assert router.route(msg) is False
        await router.drain(timeout=1)
        assert len(handler.log) == 2

    @pytest.mark.asyncio
    async def test_handler_error_does_not_stop_room(self):
        calls = []

        async def handler(command: Command) -> None:
            calls.append(command.event_id)
            if len(calls) == 1:
                raise RuntimeError("boom")

        router = make_router(handler)
        router.route(message("!cal"))
        router.route(message("!cal"))
        await router.drain(timeout=1)
        assert len(calls) == 2

    @pytest.mark.asyncio
    async def test_credentials_error_reported(self):
        fatal = []

        async def handler(command: Command) -> None:
            raise CredentialsInvalidError("token rejected")

        router = make_router(handler, on_fatal=fatal.append)
        router.route(message("!cal"))
        await router.drain(timeout=1)
        assert len(fatal) == 1
        assert isinstance(fatal[0], CredentialsInvalidError)

    @pytest.mark.asyncio
    async def test_closed_router_rejects(self):
        handler = RecordingHandler()
        router = make_router(handler)
        router.close()
        assert router.route(message("!cal")) is False
        assert router.closed is True

    @pytest.mark.asyncio
    async def test_drain_timeout_cancels(self):
        handler = RecordingHandler(delay=10)
        router = make_router(handler)
        router.route(message("!cal"))
        router.route(message("!cal"))
        await asyncio.sleep(0)
        assert router.pending(ROOM) == 1

        router.close()
        assert await router.drain(timeout=0.01) is False
        assert handler.log[0][0] == "start"
        assert ("end", handler.log[0][1]) not in handler.log
        assert router.state(ROOM) is RoomState.IDLE
        assert router.pending(ROOM) == 0

    @pytest.mark.asyncio
    async def test_seen_limit_bounds_memory(self):
        router = make_router(RecordingHandler(), seen_limit=2)
        for i in range(5):
            router.route(message("hello", event_id=f"$e{i}"))
        assert router.route(message("!cal", event_id="$e0")) is True
        await router.drain(timeout=1)
