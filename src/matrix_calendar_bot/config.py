"""Application configuration.

Configuration is loaded from environment variables using pydantic-settings.
All sensitive values (passwords, session secrets) should be provided via
environment variables, not config files.

## Required Environment Variables

- MATRIX_SERVER_URL: Homeserver base URL
- MATRIX_BOT_USERNAME: Bot account (localpart or full user ID)
- MATRIX_BOT_PASSWORD: Bot password, only used when no session is stored

## Calendar Sources

Either a single source via CALDAV_SERVER_URL / CALDAV_USERNAME /
CALDAV_PASSWORD, or several via CALDAV_SOURCES (JSON list). Both may be set;
the single source is appended to the list.

## Optional Environment Variables

- MATRIX_ROOM_IDS: Comma-separated room allow-list
- DISPLAY_TIMEZONE: IANA timezone for the digest (default: UTC)
- COMMAND_TOKENS: Comma-separated trigger tokens (default: !cal,!calendar)
- SESSION_SECRET: Encrypt the stored session with this secret
- WEEKLY_DIGEST_ENABLED: Post the digest to every room once a week

## Example .env file

```
MATRIX_SERVER_URL=https://matrix.example.org
MATRIX_BOT_USERNAME=calbot
MATRIX_BOT_PASSWORD=change-me
MATRIX_ROOM_IDS=!abc:example.org,!def:example.org
CALDAV_SERVER_URL=https://dav.example.org/calendars/team/
CALDAV_USERNAME=team
CALDAV_PASSWORD=change-me
DISPLAY_TIMEZONE=Europe/Berlin
```
"""

from __future__ import annotations

import hashlib
import secrets
from functools import lru_cache
from pathlib import Path
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from pydantic import BaseModel, Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

DEFAULT_COMMAND_TOKENS = "!cal,!calendar"


class CalendarSourceConfig(BaseModel):
    """One CalDAV account."""

    name: str = Field(default="", description="Label used in logs")
    url: str = Field(..., description="CalDAV server or calendar URL")
    username: str = ""
    password: str = ""

    @property
    def label(self) -> str:
        return self.name or self.url


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # Application
    app_name: str = "Matrix Calendar Bot"
    app_version: str = "0.1.0"
    log_level: str = "INFO"

    # Matrix
    matrix_server_url: str = Field(..., description="Homeserver base URL")
    matrix_bot_username: str = Field(..., description="Bot localpart or user ID")
    matrix_bot_password: str = Field(..., description="Bot account password")
    matrix_room_ids: str = Field(
        default="",
        description="Comma-separated list of allow-listed room IDs",
    )
    matrix_device_name: str = "calendar-bot"
    sync_timeout_ms: int = Field(default=30_000, ge=0, le=300_000)

    # Calendars
    caldav_server_url: str | None = None
    caldav_username: str = ""
    caldav_password: str = ""
    caldav_sources: list[CalendarSourceConfig] = Field(default_factory=list)
    caldav_timeout_seconds: float = Field(default=30.0, gt=0)

    # Digest
    display_timezone: str = "UTC"
    command_tokens: str = DEFAULT_COMMAND_TOKENS
    window_days: int = Field(default=7, ge=1, le=31)

    # Session persistence
    data_dir: Path = Path("data")
    session_secret: str | None = Field(
        default=None,
        min_length=16,
        description="Encrypt the stored session with this secret (min 16 chars)",
    )
    session_salt: str = Field(
        default="",
        validate_default=True,
        description="Salt for session encryption (derived if not provided)",
    )

    # Reply dispatch
    reply_max_attempts: int = Field(default=5, ge=1, le=20)
    reply_backoff_initial_seconds: float = Field(default=1.0, ge=0)
    reply_backoff_max_seconds: float = Field(default=30.0, ge=0)

    # Lifecycle
    shutdown_grace_seconds: float = Field(default=10.0, ge=0)

    # Weekly digest
    weekly_digest_enabled: bool = False
    weekly_digest_weekday: int = Field(default=6, ge=0, le=6)  # 6 = Sunday
    weekly_digest_hour: int = Field(default=9, ge=0, le=23)

    @field_validator("display_timezone")
    @classmethod
    def validate_timezone(cls, v: str) -> str:
        """Reject unknown IANA zone names early."""
        try:
            ZoneInfo(v)
        except (ZoneInfoNotFoundError, ValueError) as e:
            raise ValueError(f"Unknown timezone: {v}") from e
        return v

    @field_validator("session_salt", mode="before")
    @classmethod
    def generate_session_salt(cls, v: str, info) -> str:
        """Generate encryption salt from session_secret if not provided."""
        if v:
            return v
        secret = info.data.get("session_secret") or ""
        if secret:
            return hashlib.sha256(f"{secret}-salt".encode()).hexdigest()[:32]
        return secrets.token_hex(16)

    @field_validator("matrix_server_url")
    @classmethod
    def strip_trailing_slash(cls, v: str) -> str:
        return v.rstrip("/")

    @property
    def room_ids(self) -> list[str]:
        """Allow-listed rooms, in configured order."""
        return _split_csv(self.matrix_room_ids)

    @property
    def tokens(self) -> list[str]:
        """Recognized command tokens, case-normalized."""
        return [t.lower() for t in _split_csv(self.command_tokens)]

    @property
    def timezone(self) -> ZoneInfo:
        return ZoneInfo(self.display_timezone)

    @property
    def session_file(self) -> Path:
        return self.data_dir / "session.json"

    @property
    def calendar_sources(self) -> list[CalendarSourceConfig]:
        """All configured CalDAV accounts."""
        sources = list(self.caldav_sources)
        if self.caldav_server_url:
            sources.append(
                CalendarSourceConfig(
                    name="default",
                    url=self.caldav_server_url,
                    username=self.caldav_username,
                    password=self.caldav_password,
                )
            )
        return sources


def _split_csv(value: str) -> list[str]:
    return [part.strip() for part in value.split(",") if part.strip()]


@lru_cache
def get_settings() -> Settings:
    """Get cached application settings.

    Settings are loaded once and cached. To reload, clear the cache:
    ```python
    get_settings.cache_clear()
    ```
    """
    return Settings()
