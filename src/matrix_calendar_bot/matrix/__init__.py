"""Matrix homeserver access."""

from matrix_calendar_bot.matrix.transport import (
    CredentialsInvalidError,
    MatrixTransport,
    RoomMessage,
    SyncBatch,
    TransportFailure,
    parse_sync_response,
)

__all__ = [
    "CredentialsInvalidError",
    "MatrixTransport",
    "RoomMessage",
    "SyncBatch",
    "TransportFailure",
    "parse_sync_response",
]
