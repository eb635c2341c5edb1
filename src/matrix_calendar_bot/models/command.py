"""Command and reply models."""

from __future__ import annotations

from dataclasses import dataclass


@dataclass(frozen=True)
class Command:
    """A recognized trigger in one room, from one sender."""

    token: str
    room_id: str
    sender: str
    event_id: str | None = None


@dataclass(frozen=True)
class ReplyMessage:
    """Rendered reply for one command."""

    room_id: str
    body: str
    html: str | None = None
