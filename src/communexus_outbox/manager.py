"""Offline queue manager.

Owns the in-memory list of not-yet-confirmed outbound messages and is the
only place that mutates it. Messages are persisted through a
:class:`~communexus_outbox.store.QueueStore` and delivered one at a time, in
``created_at`` order, through a delivery client.
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Protocol

from .models import (
    DeliveryResult,
    DrainResult,
    MessageState,
    QueuedMessage,
    new_client_id,
)
from .store import QueueStore, StoreError

log = logging.getLogger(__name__)


class MessageSender(Protocol):
    async def send(self, message: QueuedMessage) -> DeliveryResult: ...


class OfflineQueueManager:
    """Durable outbound queue with single-flight draining and bounded retries.

    Active messages (pending, sending or failed with attempts left) live in
    ``_queue`` and in the store. Messages whose retry budget is spent move to
    ``_failed``: they leave the store and the automatic retry pool, but stay
    visible until :meth:`retry_all`, :meth:`retry` or :meth:`discard`. When a
    ``failed_store`` is given they are kept there so they survive a restart.
    """

    def __init__(
        self,
        *,
        store: QueueStore,
        sender: MessageSender,
        failed_store: QueueStore | None = None,
        max_attempts: int = 3,
    ) -> None:
        if max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        self._store = store
        self._failed_store = failed_store
        self._sender = sender
        self._max_attempts = max_attempts
        self._queue: list[QueuedMessage] = []
        self._failed: list[QueuedMessage] = []
        self._processing = False
        self._last_sync_time: datetime | None = None
        self._last_error: str | None = None

    @property
    def is_processing(self) -> bool:
        return self._processing

    @property
    def last_sync_time(self) -> datetime | None:
        return self._last_sync_time

    @property
    def last_error(self) -> str | None:
        return self._last_error

    def clear_error(self) -> None:
        self._last_error = None

    def initialize(self) -> None:
        """Load the persisted queue. Raises StoreError if the store is unreadable."""
        self._load_from_store()
        log.info("Outbox initialized (pending=%d)", len(self._queue))

    def dispose(self) -> None:
        """Persist the final snapshot."""
        self._persist()
        log.info("Outbox disposed (pending=%d)", len(self._queue))

    def enqueue(
        self,
        conversation_id: str,
        content: str,
        message_type: str = "text",
        media_url: str | None = None,
        reply_to_id: str | None = None,
    ) -> str:
        """Queue a message and return its client id.

        Never touches the network. A persistence failure is logged and
        reported through :attr:`last_error`; the message stays queued in
        memory.
        """
        if not conversation_id:
            raise ValueError("conversation_id is required")
        if not content and not media_url:
            raise ValueError("content or media_url is required")

        message = QueuedMessage(
            client_id=new_client_id(),
            conversation_id=conversation_id,
            content=content,
            message_type=message_type,
            media_url=media_url,
            reply_to_id=reply_to_id,
            max_attempts=self._max_attempts,
        )
        self._queue.append(message)
        log.info(
            "Message queued (client_id=%s, conversation=%s, queue_size=%d)",
            message.client_id,
            conversation_id,
            len(self._queue),
        )
        self._persist_quietly()
        return message.client_id

    async def drain(self) -> DrainResult:
        """Attempt delivery of every retryable message, oldest first.

        Returns immediately with ``skipped=True`` when another drain is
        running. Per-message failures are recorded in the result; only
        store errors propagate.
        """
        if self._processing:
            log.debug("Drain already in progress, skipping")
            return DrainResult(skipped=True)

        self._processing = True
        try:
            if not self._queue:
                self._load_from_store()

            result = DrainResult()
            batch = sorted(
                (m for m in self._queue if m.is_retryable),
                key=lambda m: m.created_at,
            )
            if batch:
                log.info("Draining outbox (count=%d)", len(batch))

            for message in batch:
                await self._deliver(message, result)

            self._persist()
            self._last_sync_time = datetime.now(timezone.utc)
            if result.attempted:
                log.info(
                    "Drain finished (processed=%d, failed=%d, retrying=%d)",
                    len(result.processed),
                    len(result.failed),
                    len(result.retried),
                )
            return result
        finally:
            self._processing = False

    async def _deliver(self, message: QueuedMessage, result: DrainResult) -> None:
        message.state = MessageState.SENDING
        try:
            outcome = await self._sender.send(message)
        except Exception as err:
            log.warning(
                "Unexpected error sending %s", message.client_id, exc_info=True
            )
            outcome = DeliveryResult.fail(str(err) or type(err).__name__)
        except BaseException:
            # Cancelled mid-send: no outcome, so the next drain retries it.
            message.state = MessageState.PENDING
            raise

        if not self._holds(message):
            # Discarded while the send was in flight.
            if outcome.success:
                result.processed.append(message.client_id)
            return

        if outcome.success:
            message.state = MessageState.DELIVERED
            self._remove(message)
            result.processed.append(message.client_id)
            return

        message.attempts += 1
        message.state = MessageState.FAILED
        message.last_error = outcome.error
        if message.is_terminal:
            self._remove(message)
            self._failed.append(message)
            result.failed.append(message.client_id)
            log.warning(
                "Message failed permanently (client_id=%s, attempts=%d): %s",
                message.client_id,
                message.attempts,
                outcome.error,
            )
        else:
            result.retried.append(message.client_id)
            log.warning(
                "Message send failed (client_id=%s, attempt=%d/%d): %s",
                message.client_id,
                message.attempts,
                message.max_attempts,
                outcome.error,
            )

    def _holds(self, message: QueuedMessage) -> bool:
        return any(m is message for m in self._queue)

    def _remove(self, message: QueuedMessage) -> None:
        self._queue = [m for m in self._queue if m is not message]

    def get_pending_count(self) -> int:
        return len(self._queue)

    def get_pending_messages(self) -> list[QueuedMessage]:
        return sorted(self._queue, key=lambda m: m.created_at)

    def get_failed_messages(self) -> list[QueuedMessage]:
        return sorted(self._failed, key=lambda m: m.created_at)

    def is_queued(self, client_id: str) -> bool:
        return any(m.client_id == client_id for m in self._queue)

    async def retry_all(self) -> DrainResult:
        """Give every permanently failed message a fresh retry budget and drain."""
        revived, self._failed = self._failed, []
        for message in revived:
            self._revive(message)
        if revived:
            log.info("Retrying failed messages (count=%d)", len(revived))
            self._persist_quietly()
        return await self.drain()

    async def retry(self, client_id: str) -> bool:
        """Revive a single failed message and drain. Returns False if unknown."""
        message = next((m for m in self._failed if m.client_id == client_id), None)
        if message is None:
            return False
        self._failed = [m for m in self._failed if m is not message]
        self._revive(message)
        self._persist_quietly()
        await self.drain()
        return True

    def _revive(self, message: QueuedMessage) -> None:
        message.attempts = 0
        message.state = MessageState.PENDING
        message.last_error = None
        self._queue.append(message)

    def discard(self, client_id: str) -> bool:
        """Remove a message whatever its state. Returns False if unknown."""
        queue = [m for m in self._queue if m.client_id != client_id]
        failed = [m for m in self._failed if m.client_id != client_id]
        if len(queue) == len(self._queue) and len(failed) == len(self._failed):
            return False
        self._queue, self._failed = queue, failed
        log.info("Message discarded (client_id=%s)", client_id)
        self._persist_quietly()
        return True

    def clear(self) -> None:
        """Drop every queued and failed message."""
        self._queue.clear()
        self._failed.clear()
        try:
            self._store.clear()
            if self._failed_store is not None:
                self._failed_store.clear()
        except StoreError as err:
            self._last_error = str(err)
            log.exception("Failed to clear outbox store")
            raise

    def _load_from_store(self) -> None:
        try:
            stored = self._store.load()
            if self._failed_store is not None:
                stored += self._failed_store.load()
        except StoreError as err:
            self._last_error = str(err)
            log.exception("Failed to load outbox")
            raise

        known = {m.client_id for m in self._queue} | {
            m.client_id for m in self._failed
        }
        for message in stored:
            if message.client_id in known:
                continue
            if message.state is MessageState.SENDING:
                # No send survives a restart.
                message.state = MessageState.PENDING
            if message.is_terminal:
                self._failed.append(message)
            else:
                self._queue.append(message)
        self._queue.sort(key=lambda m: m.created_at)

    def _persist(self) -> None:
        try:
            self._store.save(self._queue)
            if self._failed_store is not None:
                self._failed_store.save(self._failed)
        except StoreError as err:
            self._last_error = str(err)
            log.exception("Failed to persist outbox")
            raise
        self._last_error = None

    def _persist_quietly(self) -> None:
        try:
            self._persist()
        except StoreError:
            # Logged and surfaced through last_error.
            pass
