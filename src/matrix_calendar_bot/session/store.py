"""Durable storage for the Matrix session.

The session record (device ID, access token, sync token) lives in a single
file owned by this process. Saves go through a temporary file in the same
directory followed by ``os.replace``, so an interrupted save leaves the
previous record intact.

## File Format

JSON produced by ``Session.model_dump_json()``, or a Fernet token wrapping
that JSON when a ``SessionCipher`` is configured.
"""

from __future__ import annotations

import logging
import os
import tempfile
from pathlib import Path

from pydantic import ValidationError

from matrix_calendar_bot.models.session import Session
from matrix_calendar_bot.session.encryption import SessionCipher

logger = logging.getLogger(__name__)

FILE_MODE = 0o600


class SessionIOError(Exception):
    """Raised when the session record cannot be read or written."""

    def __init__(self, message: str, path: Path):
        super().__init__(message)
        self.path = path


class SessionStore:
    """Loads and saves the single session record.

    Example:
        ```python
        store = SessionStore(Path("data/session.json"))

        session = store.load()
        if session is None:
            session = await transport.login()
            store.save(session)
        ```
    """

    def __init__(self, path: Path, cipher: SessionCipher | None = None):
        """Initialize the store.

        Args:
            path: Location of the session file
            cipher: Encrypt the record at rest when given
        """
        self.path = Path(path)
        self._cipher = cipher

    def load(self) -> Session | None:
        """Load the persisted session.

        Returns:
            The stored Session, or None if nothing has been saved yet

        Raises:
            SessionIOError: If the file exists but cannot be read or decoded
        """
        try:
            raw = self.path.read_text(encoding="utf-8")
        except FileNotFoundError:
            return None
        except OSError as e:
            raise SessionIOError(f"Cannot read session file: {e}", self.path) from e

        try:
            if self._cipher is not None:
                raw = self._cipher.decrypt(raw)
            session = Session.model_validate_json(raw)
        except (ValueError, ValidationError) as e:
            raise SessionIOError(f"Corrupted session file: {e}", self.path) from e

        logger.info(f"Previous session found in '{self.path}'")
        return session

    def save(self, session: Session) -> None:
        """Persist the session atomically.

        Raises:
            SessionIOError: If the record could not be written
        """
        payload = session.model_dump_json()
        if self._cipher is not None:
            payload = self._cipher.encrypt(payload)

        tmp_path: str | None = None
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            fd, tmp_path = tempfile.mkstemp(
                prefix=f".{self.path.name}.",
                suffix=".tmp",
                dir=self.path.parent,
            )
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                f.write(payload)
                f.flush()
                os.fsync(f.fileno())
            os.chmod(tmp_path, FILE_MODE)
            os.replace(tmp_path, self.path)
            tmp_path = None
        except OSError as e:
            raise SessionIOError(f"Cannot write session file: {e}", self.path) from e
        finally:
            if tmp_path is not None:
                try:
                    os.unlink(tmp_path)
                except OSError:
                    logger.debug(f"Could not remove temporary file {tmp_path}")

        logger.debug(f"Session persisted in {self.path}")
