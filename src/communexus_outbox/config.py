"""Outbox configuration."""

from __future__ import annotations

from pathlib import Path

from pydantic import Field
from pydantic_settings import BaseSettings

from .store import DEFAULT_STORAGE_KEY


class OutboxSettings(BaseSettings):
    """Outbox configuration."""

    api_base_url: str = Field(default="http://localhost:3000")
    api_token: str | None = Field(default=None)
    request_timeout_seconds: float = Field(default=15.0, gt=0)
    max_attempts: int = Field(default=3, ge=1)
    sync_interval_seconds: float = Field(default=30.0, gt=0)
    queue_db: Path = Field(
        default=Path.home() / ".local" / "share" / "communexus" / "outbox.db"
    )
    storage_key: str = Field(
        default=DEFAULT_STORAGE_KEY,
        description="Key under which the queue snapshot is stored.",
    )

    model_config = {
        "env_prefix": "COMMUNEXUS_OUTBOX_",
        "env_file": ".env",
        "env_file_encoding": "utf-8",
        "extra": "ignore",
    }


_config: OutboxSettings | None = None


def get_config() -> OutboxSettings:
    """Get outbox configuration."""
    global _config
    if _config is None:
        _config = OutboxSettings()
    return _config
