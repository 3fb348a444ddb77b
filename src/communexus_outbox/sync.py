"""When to drain: connectivity changes, a periodic tick and explicit user actions."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable

from .manager import OfflineQueueManager
from .models import DrainResult
from .status import QueueStatus, project_status
from .store import StoreError

log = logging.getLogger(__name__)

ConnectivityListener = Callable[[bool], None]


class ConnectivityMonitor:
    """Boolean online/offline signal with change notifications.

    Listeners are called only when the state actually flips.
    """

    def __init__(self, online: bool = False) -> None:
        self._online = online
        self._listeners: list[ConnectivityListener] = []

    @property
    def is_online(self) -> bool:
        return self._online

    def set_online(self, value: bool) -> None:
        if value == self._online:
            return
        self._online = value
        log.info("Connectivity changed (online=%s)", value)
        for listener in list(self._listeners):
            try:
                listener(value)
            except Exception:
                log.exception("Connectivity listener failed")

    def subscribe(self, listener: ConnectivityListener) -> Callable[[], None]:
        """Register *listener*; returns a callable that unregisters it."""
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe


class SyncScheduler:
    """Decides when the outbox drains.

    Drains on startup, on every offline to online transition, on a periodic
    tick while there is something pending, and on explicit user request.
    Overlapping drains are collapsed by the manager, not here. Must be
    started and driven from the event loop thread.
    """

    def __init__(
        self,
        *,
        manager: OfflineQueueManager,
        monitor: ConnectivityMonitor,
        interval_seconds: float = 30,
        probe: Callable[[], Awaitable[bool]] | None = None,
    ) -> None:
        self._manager = manager
        self._monitor = monitor
        self._interval = interval_seconds
        self._probe = probe
        self._tick_task: asyncio.Task[None] | None = None
        self._background: set[asyncio.Task[DrainResult | None]] = set()
        self._unsubscribe: Callable[[], None] | None = None

    @property
    def running(self) -> bool:
        return self._tick_task is not None and not self._tick_task.done()

    async def start(self) -> None:
        if self.running:
            return
        try:
            self._manager.initialize()
        except StoreError:
            log.warning("Starting with an empty outbox; persisted queue unreadable")

        self._unsubscribe = self._monitor.subscribe(self._on_connectivity_change)
        if self._monitor.is_online:
            self._spawn_drain("startup")
        self._tick_task = asyncio.create_task(self._tick_loop())

    async def stop(self) -> None:
        """Stop triggering drains; a send already in flight is awaited, not cancelled."""
        if self._unsubscribe is not None:
            self._unsubscribe()
            self._unsubscribe = None
        if self._tick_task is not None:
            self._tick_task.cancel()
            await asyncio.gather(self._tick_task, return_exceptions=True)
            self._tick_task = None
        await self.wait_idle()
        try:
            self._manager.dispose()
        except StoreError:
            log.warning("Outbox snapshot not saved on shutdown")

    async def wait_idle(self) -> None:
        """Wait for drains started in the background to finish."""
        while self._background:
            await asyncio.gather(*self._background, return_exceptions=True)

    async def sync_now(self) -> DrainResult:
        """Drain immediately, regardless of schedule or connectivity."""
        return await self._manager.drain()

    async def retry_all(self) -> DrainResult:
        return await self._manager.retry_all()

    def status(self) -> QueueStatus:
        return project_status(self._manager, is_online=self._monitor.is_online)

    def _on_connectivity_change(self, online: bool) -> None:
        if online:
            self._spawn_drain("reconnect")

    def _spawn_drain(self, reason: str) -> None:
        task = asyncio.get_running_loop().create_task(self._drain_safely(reason))
        self._background.add(task)
        task.add_done_callback(self._background.discard)

    async def _drain_safely(self, reason: str) -> DrainResult | None:
        log.debug("Drain triggered (reason=%s)", reason)
        try:
            return await self._manager.drain()
        except Exception:
            log.exception("Background drain failed (reason=%s)", reason)
            return None

    async def _tick(self) -> None:
        if self._probe is not None:
            try:
                online = await self._probe()
            except Exception:
                log.exception("Connectivity probe failed")
                online = False
            self._monitor.set_online(online)
        if self._monitor.is_online and self._manager.get_pending_count() > 0:
            self._spawn_drain("periodic")

    async def _tick_loop(self) -> None:
        log.info("Periodic sync started (interval=%ss)", self._interval)
        try:
            while True:
                await asyncio.sleep(self._interval)
                await self._tick()
        except asyncio.CancelledError:
            log.info("Periodic sync stopped")
