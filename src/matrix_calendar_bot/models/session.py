"""Persisted Matrix session model."""

from __future__ import annotations

from datetime import datetime, timezone

from pydantic import BaseModel, Field


class Session(BaseModel):
    """Everything needed to resume the Matrix client after a restart.

    Exactly one per running process. The bot replaces it with
    ``model_copy(update=...)`` and persists it through the session store.
    """

    homeserver: str = Field(..., description="Homeserver base URL")
    user_id: str = Field(..., description="Fully qualified bot user ID")
    device_id: str = Field(..., description="Device created at login")
    access_token: str = Field(
        ..., repr=False, description="Access token for the device"
    )
    sync_token: str | None = Field(
        default=None, description="next_batch of the last processed sync"
    )
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))

    def with_sync_token(self, sync_token: str) -> Session:
        return self.model_copy(update={"sync_token": sync_token})
