"""Weekly digest scheduling.

Posts the digest to every allow-listed room once a week (by default on
Sunday at 09:00 in the display timezone). Posts are submitted through the
command router so they queue behind any command already running in a room.
"""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime, time, timedelta, tzinfo
from typing import Callable, Iterable

from matrix_calendar_bot.bot.router import CommandRouter
from matrix_calendar_bot.models.command import Command

logger = logging.getLogger(__name__)

DIGEST_TOKEN = "weekly-digest"


def next_digest_time(now: datetime, weekday: int, hour: int, tz: tzinfo) -> datetime:
    """Next occurrence of ``weekday`` at ``hour``:00 strictly after ``now``.

    Args:
        now: Current aware time
        weekday: 0 = Monday ... 6 = Sunday
        hour: Hour of day in ``tz``
        tz: Timezone the schedule is defined in
    """
    if now.tzinfo is None:
        raise ValueError("now must be timezone-aware")
    local = now.astimezone(tz)
    days_ahead = (weekday - local.weekday()) % 7
    candidate = datetime.combine(
        local.date() + timedelta(days=days_ahead), time(hour), tzinfo=tz
    )
    if candidate <= local:
        candidate = datetime.combine(
            candidate.date() + timedelta(days=7), time(hour), tzinfo=tz
        )
    return candidate


class WeeklyDigest:
    """Background task that submits a digest for each room every week."""

    def __init__(
        self,
        router: CommandRouter,
        rooms: Iterable[str],
        tz: tzinfo,
        weekday: int = 6,
        hour: int = 9,
        clock: Callable[[], datetime] | None = None,
    ):
        self.router = router
        self.rooms = list(rooms)
        self.tz = tz
        self.weekday = weekday
        self.hour = hour
        self._clock = clock or (lambda: datetime.now(self.tz))
        self._task: asyncio.Task | None = None

    def post_now(self) -> int:
        """Submit a digest for every room; returns how many were queued."""
        queued = 0
        for room_id in self.rooms:
            command = Command(token=DIGEST_TOKEN, room_id=room_id, sender="")
            if self.router.submit(command):
                queued += 1
        return queued

    async def _run(self) -> None:
        while True:
            now = self._clock()
            due = next_digest_time(now, self.weekday, self.hour, self.tz)
            delay = (due - now).total_seconds()
            logger.info(f"Next weekly digest at {due.isoformat()}")
            await asyncio.sleep(max(delay, 0))
            if self.router.closed:
                return
            queued = self.post_now()
            logger.info(f"Weekly digest queued for {queued} rooms")

    def start(self) -> None:
        if self._task is None:
            self._task = asyncio.create_task(self._run(), name="weekly-digest")

    async def stop(self) -> None:
        if self._task is None:
            return
        task, self._task = self._task, None
        task.cancel()
        await asyncio.gather(task, return_exceptions=True)
