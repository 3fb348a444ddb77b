"""User-facing outbox status."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Any

from .manager import OfflineQueueManager


@dataclass(frozen=True)
class QueueStatus:
    is_online: bool
    is_syncing: bool
    pending_count: int
    failed_count: int
    last_sync_time: datetime | None
    error: str | None

    def to_dict(self) -> dict[str, Any]:
        return {
            "is_online": self.is_online,
            "is_syncing": self.is_syncing,
            "pending_count": self.pending_count,
            "failed_count": self.failed_count,
            "last_sync_time": (
                self.last_sync_time.isoformat() if self.last_sync_time else None
            ),
            "error": self.error,
        }


def project_status(manager: OfflineQueueManager, *, is_online: bool) -> QueueStatus:
    """Snapshot the manager's state for display. Computed fresh on every call."""
    return QueueStatus(
        is_online=is_online,
        is_syncing=manager.is_processing,
        pending_count=manager.get_pending_count(),
        failed_count=len(manager.get_failed_messages()),
        last_sync_time=manager.last_sync_time,
        error=manager.last_error,
    )
