"""Session persistence for the Matrix client."""

from matrix_calendar_bot.session.encryption import SessionCipher
from matrix_calendar_bot.session.store import SessionIOError, SessionStore

__all__ = [
    "SessionCipher",
    "SessionIOError",
    "SessionStore",
]
