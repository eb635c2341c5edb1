"""Application factory.

Wires the configured collaborators into a `CalendarBot` and runs it with
signal handling.

## Usage

```python
from matrix_calendar_bot.app import create_bot, run_bot

bot = create_bot()
exit_code = asyncio.run(run_bot(bot))
```

## Configuration

The bot is configured via environment variables. See
`matrix_calendar_bot.config` for available settings.
"""

from __future__ import annotations

import asyncio
import logging
import signal

from matrix_calendar_bot.bot.dispatcher import ReplyDispatcher
from matrix_calendar_bot.bot.process import CalendarBot
from matrix_calendar_bot.calendar.client import create_calendar_client
from matrix_calendar_bot.config import Settings, get_settings
from matrix_calendar_bot.matrix.transport import MatrixTransport
from matrix_calendar_bot.session.encryption import SessionCipher
from matrix_calendar_bot.session.store import SessionStore

logger = logging.getLogger(__name__)


def create_session_store(settings: Settings) -> SessionStore:
    cipher = None
    if settings.session_secret:
        cipher = SessionCipher(settings.session_secret, settings.session_salt)
    return SessionStore(settings.session_file, cipher=cipher)


def create_bot(settings: Settings | None = None) -> CalendarBot:
    """Create a bot from settings.

    Args:
        settings: Settings to use; defaults to the cached environment settings

    Returns:
        Configured CalendarBot (not yet started)
    """
    settings = settings or get_settings()

    transport = MatrixTransport(
        settings.matrix_server_url,
        settings.matrix_bot_username,
        settings.matrix_bot_password,
        device_name=settings.matrix_device_name,
    )
    dispatcher = ReplyDispatcher(
        transport,
        max_attempts=settings.reply_max_attempts,
        backoff_initial=settings.reply_backoff_initial_seconds,
        backoff_max=settings.reply_backoff_max_seconds,
    )

    if not settings.room_ids:
        logger.warning("MATRIX_ROOM_IDS is empty, the bot will not answer anywhere")
    if not settings.calendar_sources:
        logger.warning("No calendar sources configured, every request will fail")

    return CalendarBot(
        settings,
        transport,
        create_session_store(settings),
        create_calendar_client(settings),
        dispatcher,
    )


async def run_bot(bot: CalendarBot) -> int:
    """Run a bot until SIGINT/SIGTERM and return its exit code."""
    loop = asyncio.get_running_loop()
    installed = []
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, bot.stop)
            installed.append(sig)
        except (NotImplementedError, RuntimeError):
            logger.debug(f"Cannot install handler for {sig.name} on this platform")

    logger.info(f"Starting {bot.settings.app_name} v{bot.settings.app_version}")
    try:
        return await bot.run()
    finally:
        for sig in installed:
            loop.remove_signal_handler(sig)
        logger.info("Shut down")
