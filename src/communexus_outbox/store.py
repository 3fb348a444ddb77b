"""Durable queue persistence.

The queue is stored as a single JSON snapshot under one key of a small
key-value table in a local SQLite database. Every write replaces the whole
snapshot inside one transaction, so a crash mid-write leaves the previously
committed snapshot in place.
"""

from __future__ import annotations

import json
import logging
import sqlite3
from pathlib import Path
from textwrap import dedent
from typing import Protocol

from .models import QueuedMessage

log = logging.getLogger(__name__)

DEFAULT_STORAGE_KEY = "communexus_offline_messages"


class StoreError(Exception):
    """Raised when the persisted queue cannot be read or written."""


class KeyValueStorage(Protocol):
    def get(self, key: str) -> str | None: ...

    def set(self, key: str, value: str) -> None: ...

    def remove(self, key: str) -> None: ...


class SqliteKeyValueStorage:
    """String key-value storage on top of an embedded SQLite database."""

    def __init__(self, path: Path | str) -> None:
        if str(path) != ":memory:":
            Path(path).parent.mkdir(parents=True, exist_ok=True)
        self._db = sqlite3.connect(str(path))
        self._db.row_factory = sqlite3.Row
        self._db.execute("PRAGMA journal_mode=WAL")
        self._db.execute(
            dedent("""\
                CREATE TABLE IF NOT EXISTS outbox_kv (
                    key TEXT PRIMARY KEY,
                    value TEXT NOT NULL,
                    updated_at TEXT NOT NULL
                )""")
        )
        self._db.commit()

    def get(self, key: str) -> str | None:
        row = self._db.execute(
            "SELECT value FROM outbox_kv WHERE key = ?", (key,)
        ).fetchone()
        return row["value"] if row else None

    def set(self, key: str, value: str) -> None:
        with self._db:
            self._db.execute(
                dedent("""\
                    INSERT INTO outbox_kv (key, value, updated_at)
                    VALUES (?, ?, datetime('now'))
                    ON CONFLICT(key) DO UPDATE SET
                        value = excluded.value,
                        updated_at = excluded.updated_at"""),
                (key, value),
            )

    def remove(self, key: str) -> None:
        with self._db:
            self._db.execute("DELETE FROM outbox_kv WHERE key = ?", (key,))

    def close(self) -> None:
        self._db.close()


class QueueStore:
    """Save, load and clear the list of queued messages.

    Pure serialization: no filtering, ordering or state transitions happen
    here. Every failure surfaces as :class:`StoreError`.
    """

    def __init__(
        self, storage: KeyValueStorage, key: str = DEFAULT_STORAGE_KEY
    ) -> None:
        self._storage = storage
        self._key = key

    @property
    def key(self) -> str:
        return self._key

    def save(self, messages: list[QueuedMessage]) -> None:
        payload = json.dumps([m.to_dict() for m in messages])
        try:
            self._storage.set(self._key, payload)
        except Exception as err:
            raise StoreError(f"Failed to save outbox snapshot: {err}") from err
        log.debug("Saved outbox snapshot (count=%d)", len(messages))

    def load(self) -> list[QueuedMessage]:
        try:
            raw = self._storage.get(self._key)
        except Exception as err:
            raise StoreError(f"Failed to read outbox snapshot: {err}") from err
        if raw is None:
            return []
        try:
            return [QueuedMessage.from_dict(item) for item in json.loads(raw)]
        except (ValueError, KeyError, TypeError) as err:
            raise StoreError(f"Corrupt outbox snapshot: {err}") from err

    def clear(self) -> None:
        try:
            self._storage.remove(self._key)
        except Exception as err:
            raise StoreError(f"Failed to clear outbox snapshot: {err}") from err
