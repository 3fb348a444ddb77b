"""Offline-capable outbound message queue for Communexus."""

from __future__ import annotations

import asyncio
import json
import logging
from collections.abc import Awaitable, Callable, Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import TypeVar

import click

from .config import OutboxSettings, get_config
from .delivery import DeliveryClient, DeliveryError
from .manager import OfflineQueueManager
from .models import DrainResult, MessageState, QueuedMessage
from .status import QueueStatus, project_status
from .store import QueueStore, SqliteKeyValueStorage, StoreError
from .sync import ConnectivityMonitor, SyncScheduler

__all__ = [
    "ConnectivityMonitor",
    "DeliveryClient",
    "DrainResult",
    "MessageState",
    "OfflineQueueManager",
    "OutboxSettings",
    "QueueStatus",
    "QueueStore",
    "QueuedMessage",
    "SqliteKeyValueStorage",
    "StoreError",
    "SyncScheduler",
    "cli",
    "project_status",
]

T = TypeVar("T")


@dataclass
class Outbox:
    """Wired-up manager plus the resources it depends on."""

    settings: OutboxSettings
    storage: SqliteKeyValueStorage
    client: DeliveryClient
    manager: OfflineQueueManager


@contextmanager
def open_outbox(
    settings: OutboxSettings, *, load: bool = True, strict: bool = True
) -> Iterator[Outbox]:
    """Build a manager backed by ``settings.queue_db``.

    With ``load`` the persisted queue is read first. An unreadable snapshot
    aborts the command when ``strict``; otherwise it is reported and the
    command continues with an empty queue, and the next save replaces it.
    """
    storage = SqliteKeyValueStorage(settings.queue_db)
    client = DeliveryClient(
        settings.api_base_url,
        token=settings.api_token,
        timeout=settings.request_timeout_seconds,
    )
    manager = OfflineQueueManager(
        store=QueueStore(storage, settings.storage_key),
        failed_store=QueueStore(storage, f"{settings.storage_key}:failed"),
        sender=client,
        max_attempts=settings.max_attempts,
    )
    try:
        if load:
            try:
                manager.initialize()
            except StoreError as err:
                if strict:
                    raise click.ClickException(str(err)) from err
                click.echo(f"Warning: {err}", err=True)
        yield Outbox(settings=settings, storage=storage, client=client, manager=manager)
    finally:
        storage.close()


def _run(outbox: Outbox, action: Callable[[], Awaitable[T]]) -> T:
    async def main() -> T:
        try:
            return await action()
        finally:
            await outbox.client.aclose()

    try:
        return asyncio.run(main())
    except StoreError as err:
        raise click.ClickException(str(err)) from err


def _echo_drain(result: DrainResult) -> None:
    if result.skipped:
        click.echo("A sync is already running.")
        return
    click.echo(
        f"Delivered {len(result.processed)}, "
        f"failed {len(result.failed)}, "
        f"retrying {len(result.retried)}"
    )


@click.group()
@click.option(
    "--db",
    "db_path",
    type=click.Path(dir_okay=False, path_type=Path),
    default=None,
    help="Queue database (defaults to COMMUNEXUS_OUTBOX_QUEUE_DB).",
)
@click.option("-v", "--verbose", is_flag=True, help="Enable debug logging.")
@click.pass_context
def cli(ctx: click.Context, db_path: Path | None, verbose: bool) -> None:
    """Communexus offline message queue."""
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    settings = get_config()
    if db_path is not None:
        settings = settings.model_copy(update={"queue_db": db_path})
    ctx.obj = settings


@cli.command()
@click.argument("conversation_id")
@click.argument("content")
@click.option("--type", "message_type", default="text", show_default=True)
@click.option("--media-url", default=None)
@click.option("--reply-to", "reply_to_id", default=None)
@click.pass_obj
def enqueue(
    settings: OutboxSettings,
    conversation_id: str,
    content: str,
    message_type: str,
    media_url: str | None,
    reply_to_id: str | None,
) -> None:
    """Queue a message for later delivery."""
    with open_outbox(settings, strict=False) as outbox:
        client_id = outbox.manager.enqueue(
            conversation_id, content, message_type, media_url, reply_to_id
        )
    click.echo(client_id)


@cli.command()
@click.pass_obj
def status(settings: OutboxSettings) -> None:
    """Show pending and failed counts."""
    with open_outbox(settings) as outbox:
        online = _run(outbox, outbox.client.check_online)
        snapshot = project_status(outbox.manager, is_online=online)
    click.echo(json.dumps(snapshot.to_dict(), indent=2))


@cli.command("list")
@click.pass_obj
def list_messages(settings: OutboxSettings) -> None:
    """List queued and failed messages."""
    with open_outbox(settings) as outbox:
        messages = (
            outbox.manager.get_pending_messages()
            + outbox.manager.get_failed_messages()
        )
    for message in messages:
        click.echo(
            f"{message.client_id}  {message.state.value:<8}  "
            f"{message.attempts}/{message.max_attempts}  "
            f"{message.conversation_id}  {message.content}"
        )


@cli.command()
@click.pass_obj
def sync(settings: OutboxSettings) -> None:
    """Deliver queued messages now."""
    with open_outbox(settings) as outbox:
        result = _run(outbox, outbox.manager.drain)
    _echo_drain(result)


@cli.command("retry-all")
@click.pass_obj
def retry_all(settings: OutboxSettings) -> None:
    """Reset failed messages and deliver them again."""
    with open_outbox(settings) as outbox:
        result = _run(outbox, outbox.manager.retry_all)
    _echo_drain(result)


@cli.command()
@click.argument("client_id")
@click.pass_obj
def discard(settings: OutboxSettings, client_id: str) -> None:
    """Drop a queued or failed message."""
    with open_outbox(settings) as outbox:
        removed = outbox.manager.discard(client_id)
    if not removed:
        raise click.ClickException(f"No queued message {client_id}")
    click.echo(f"Discarded {client_id}")


@cli.command()
@click.confirmation_option(prompt="Drop every queued and failed message?")
@click.pass_obj
def clear(settings: OutboxSettings) -> None:
    """Drop every queued and failed message, readable or not."""
    with open_outbox(settings, load=False) as outbox:
        try:
            outbox.manager.clear()
        except StoreError as err:
            raise click.ClickException(str(err)) from err
    click.echo("Outbox cleared.")


@cli.command("server-drain")
@click.pass_obj
def server_drain(settings: OutboxSettings) -> None:
    """Ask the server to deliver its own offline queue."""
    with open_outbox(settings) as outbox:
        try:
            result = _run(outbox, outbox.client.process_server_queue)
        except DeliveryError as err:
            raise click.ClickException(str(err)) from err
    click.echo(
        f"Server processed {result.total_processed}, failed {result.total_failed}"
    )


@cli.command()
@click.pass_obj
def run(settings: OutboxSettings) -> None:
    """Keep syncing in the foreground until Ctrl-C."""
    with open_outbox(settings) as outbox:
        monitor = ConnectivityMonitor()
        scheduler = SyncScheduler(
            manager=outbox.manager,
            monitor=monitor,
            interval_seconds=settings.sync_interval_seconds,
            probe=outbox.client.check_online,
        )

        async def main() -> None:
            monitor.set_online(await outbox.client.check_online())
            await scheduler.start()
            try:
                await asyncio.Event().wait()
            finally:
                await scheduler.stop()

        click.echo(f"Queue database: {settings.queue_db}")
        click.echo(f"API:            {settings.api_base_url}")
        try:
            _run(outbox, main)
        except KeyboardInterrupt:
            click.echo("\nStopped.")
