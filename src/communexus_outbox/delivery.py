"""HTTP delivery of queued messages to the messaging API."""

from __future__ import annotations

import logging
from typing import Any

import httpx
from pydantic import BaseModel, Field, ValidationError

from .models import DeliveryResult, QueuedMessage

log = logging.getLogger(__name__)

# 4xx codes that can succeed on a later attempt.
_RETRYABLE_CLIENT_ERRORS = frozenset({401, 403, 408, 425, 429})


class DeliveryError(Exception):
    """Raised by calls that cannot return a normalized DeliveryResult."""


class ProcessedOfflineMessage(BaseModel):
    client_id: str
    message_id: str | None = None
    sent_at: str | None = None


class FailedOfflineMessage(BaseModel):
    client_id: str
    error: str | None = None


class ServerDrainResult(BaseModel):
    """Response of ``GET /api/offline-messages``."""

    processed: list[ProcessedOfflineMessage] = Field(default_factory=list)
    failed: list[FailedOfflineMessage] = Field(default_factory=list)
    total_processed: int = 0
    total_failed: int = 0


def _message_body(message: QueuedMessage) -> dict[str, Any]:
    body: dict[str, Any] = {
        "content": message.content,
        "message_type": message.message_type,
        "media_url": message.media_url,
        "client_id": message.client_id,
    }
    if message.reply_to_id is not None:
        body["reply_to_id"] = message.reply_to_id
    return body


def _extract_message_id(response: httpx.Response) -> str | None:
    try:
        data = response.json()
    except ValueError:
        return None
    if not isinstance(data, dict):
        return None
    record = data.get("message", data)
    if isinstance(record, dict) and record.get("id") is not None:
        return str(record["id"])
    return None


class DeliveryClient:
    """Send queued messages over HTTP and normalize the outcome.

    Every outbound request carries the message's ``client_id`` so the server
    can deduplicate a retry after an ambiguous failure. Non-2xx responses,
    timeouts and transport errors all come back as a failed
    :class:`DeliveryResult`; nothing here raises for a single send.
    """

    def __init__(
        self,
        base_url: str,
        *,
        token: str | None = None,
        timeout: float = 15.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._base_url = base_url.rstrip("/")
        self._headers = {"Content-Type": "application/json"}
        if token:
            self._headers["Authorization"] = f"Bearer {token}"
        self._timeout = httpx.Timeout(timeout)
        self._transport = transport
        self._client: httpx.AsyncClient | None = None

    @property
    def http(self) -> httpx.AsyncClient:
        """The underlying client, created on first use."""
        if self._client is None:
            self._client = httpx.AsyncClient(
                base_url=self._base_url,
                headers=self._headers,
                timeout=self._timeout,
                transport=self._transport,
            )
        return self._client

    async def __aenter__(self) -> DeliveryClient:
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None

    async def send(self, message: QueuedMessage) -> DeliveryResult:
        """POST a message to its conversation."""
        return await self._post(
            f"/api/conversations/{message.conversation_id}/messages",
            _message_body(message),
            message.client_id,
        )

    async def queue_on_server(self, message: QueuedMessage) -> DeliveryResult:
        """Hand a message to the server-side offline queue (upsert on client_id)."""
        body = _message_body(message)
        body["conversation_id"] = message.conversation_id
        body.setdefault("reply_to_id", None)
        return await self._post("/api/offline-messages", body, message.client_id)

    async def process_server_queue(self) -> ServerDrainResult:
        """Ask the server to deliver everything queued there for this user."""
        try:
            response = await self.http.get("/api/offline-messages")
            response.raise_for_status()
            result = ServerDrainResult.model_validate(response.json())
        except httpx.HTTPStatusError as err:
            raise DeliveryError(
                f"HTTP {err.response.status_code} from server offline queue"
            ) from err
        except httpx.HTTPError as err:
            raise DeliveryError(f"Server offline queue unreachable: {err}") from err
        except (ValueError, ValidationError) as err:
            raise DeliveryError(f"Malformed server offline queue response: {err}") from err
        log.info(
            "Server offline queue processed (processed=%d, failed=%d)",
            result.total_processed,
            result.total_failed,
        )
        return result

    async def check_online(self) -> bool:
        """Any HTTP response from the API counts as online."""
        try:
            await self.http.head("/")
        except httpx.HTTPError:
            return False
        return True

    async def _post(
        self, path: str, body: dict[str, Any], client_id: str
    ) -> DeliveryResult:
        try:
            response = await self.http.post(path, json=body)
        except httpx.TimeoutException:
            log.warning("Send timed out (client_id=%s)", client_id)
            return DeliveryResult.fail("timeout")
        except httpx.HTTPError as err:
            log.warning("Send failed (client_id=%s): %s", client_id, err)
            return DeliveryResult.fail(f"network error: {err}")

        if not response.is_success:
            status = response.status_code
            log.warning(
                "Send rejected (client_id=%s, status=%d)", client_id, status
            )
            return DeliveryResult.fail(
                f"HTTP {status}: {response.reason_phrase}",
                status_code=status,
                retryable=status >= 500 or status in _RETRYABLE_CLIENT_ERRORS,
            )

        message_id = _extract_message_id(response)
        log.info(
            "Message delivered (client_id=%s, message_id=%s)", client_id, message_id
        )
        return DeliveryResult.ok(status_code=response.status_code, message_id=message_id)
