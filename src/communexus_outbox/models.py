"""Outbound message records and drain/delivery results."""

from __future__ import annotations

import secrets
import string
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any

_BASE36 = string.digits + string.ascii_lowercase


class MessageState(str, Enum):
    PENDING = "pending"
    SENDING = "sending"
    FAILED = "failed"
    DELIVERED = "delivered"


def new_client_id() -> str:
    """Return a fresh idempotency key: millisecond timestamp + 9 random base36 chars.

    The random suffix keeps ids unique even when two messages are created
    within the same clock tick.
    """
    suffix = "".join(secrets.choice(_BASE36) for _ in range(9))
    return f"{int(time.time() * 1000)}{suffix}"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class QueuedMessage:
    """A message awaiting confirmed delivery."""

    client_id: str
    conversation_id: str
    content: str
    message_type: str = "text"
    media_url: str | None = None
    reply_to_id: str | None = None
    created_at: datetime = field(default_factory=_utcnow)
    attempts: int = 0
    max_attempts: int = 3
    state: MessageState = MessageState.PENDING
    last_error: str | None = None

    @property
    def is_terminal(self) -> bool:
        """True once the retry budget is spent."""
        return self.state is MessageState.FAILED and self.attempts >= self.max_attempts

    @property
    def is_retryable(self) -> bool:
        return (
            self.state in (MessageState.PENDING, MessageState.FAILED)
            and not self.is_terminal
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "client_id": self.client_id,
            "conversation_id": self.conversation_id,
            "content": self.content,
            "message_type": self.message_type,
            "media_url": self.media_url,
            "reply_to_id": self.reply_to_id,
            "created_at": self.created_at.isoformat(),
            "attempts": self.attempts,
            "max_attempts": self.max_attempts,
            "state": self.state.value,
            "last_error": self.last_error,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> QueuedMessage:
        created_at = datetime.fromisoformat(data["created_at"])
        if created_at.tzinfo is None:
            created_at = created_at.replace(tzinfo=timezone.utc)
        return cls(
            client_id=data["client_id"],
            conversation_id=data["conversation_id"],
            content=data.get("content", ""),
            message_type=data.get("message_type", "text"),
            media_url=data.get("media_url"),
            reply_to_id=data.get("reply_to_id"),
            created_at=created_at,
            attempts=int(data.get("attempts", 0)),
            max_attempts=int(data.get("max_attempts", 3)),
            state=MessageState(data.get("state", MessageState.PENDING.value)),
            last_error=data.get("last_error"),
        )


@dataclass
class DrainResult:
    """Outcome of one drain pass.

    ``failed`` only lists messages that became terminal during this pass;
    messages that failed but still have attempts left are in ``retried``.
    """

    processed: list[str] = field(default_factory=list)
    failed: list[str] = field(default_factory=list)
    retried: list[str] = field(default_factory=list)
    skipped: bool = False

    @property
    def attempted(self) -> int:
        return len(self.processed) + len(self.failed) + len(self.retried)


@dataclass
class DeliveryResult:
    """Normalized outcome of a single send."""

    success: bool
    error: str | None = None
    status_code: int | None = None
    message_id: str | None = None
    retryable: bool = True

    @classmethod
    def ok(
        cls, *, status_code: int | None = None, message_id: str | None = None
    ) -> DeliveryResult:
        return cls(success=True, status_code=status_code, message_id=message_id)

    @classmethod
    def fail(
        cls, error: str, *, status_code: int | None = None, retryable: bool = True
    ) -> DeliveryResult:
        return cls(
            success=False, error=error, status_code=status_code, retryable=retryable
        )
