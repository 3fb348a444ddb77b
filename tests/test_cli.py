"""Tests for the communexus-outbox command group."""

from __future__ import annotations

import re
from pathlib import Path
from unittest.mock import AsyncMock

import click
import pytest
from click.testing import CliRunner

from communexus_outbox import cli
from communexus_outbox import config as config_module
from communexus_outbox.delivery import (
    DeliveryClient,
    DeliveryError,
    ServerDrainResult,
)
from communexus_outbox.models import DeliveryResult
from communexus_outbox.store import SqliteKeyValueStorage

CLIENT_ID = re.compile(r"\d{13}[0-9a-z]{9}")


@pytest.fixture
def db(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> Path:
    monkeypatch.chdir(tmp_path)
    monkeypatch.setattr(config_module, "_config", None)
    return tmp_path / "outbox.db"


def _invoke(db: Path, *args: str) -> click.testing.Result:
    return CliRunner().invoke(cli, ["--db", str(db), *args])


def _enqueue(db: Path, content: str = "hello") -> str:
    result = _invoke(db, "enqueue", "c1", content)
    assert result.exit_code == 0, result.output
    match = CLIENT_ID.search(result.output)
    assert match is not None
    return match.group(0)


def _corrupt(db: Path) -> None:
    storage = SqliteKeyValueStorage(db)
    storage.set("communexus_offline_messages", "not json")
    storage.close()


def test_cli_has_subcommands() -> None:
    for name in (
        "enqueue",
        "status",
        "list",
        "sync",
        "retry-all",
        "discard",
        "clear",
        "server-drain",
        "run",
    ):
        assert name in cli.commands


def test_enqueue_then_list(db: Path) -> None:
    client_id = _enqueue(db, "hello there")

    result = _invoke(db, "list")

    assert result.exit_code == 0
    assert client_id in result.output
    assert "pending" in result.output
    assert "hello there" in result.output


def test_status_reports_pending(db: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr(DeliveryClient, "check_online", AsyncMock(return_value=False))
    _enqueue(db)

    result = _invoke(db, "status")

    assert result.exit_code == 0
    assert '"pending_count": 1' in result.output
    assert '"is_online": false' in result.output


def test_sync_delivers_queue(db: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    send = AsyncMock(return_value=DeliveryResult.ok(status_code=201))
    monkeypatch.setattr(DeliveryClient, "send", send)
    _enqueue(db, "one")
    _enqueue(db, "two")

    result = _invoke(db, "sync")

    assert result.exit_code == 0
    assert "Delivered 2, failed 0, retrying 0" in result.output
    assert [c.args[0].content for c in send.await_args_list] == ["one", "two"]
    assert CLIENT_ID.search(_invoke(db, "list").output) is None


def test_failed_messages_survive_between_runs(
    db: Path, monkeypatch: pytest.MonkeyPatch
) -> None:
    monkeypatch.setenv("COMMUNEXUS_OUTBOX_MAX_ATTEMPTS", "1")
    monkeypatch.setattr(
        DeliveryClient, "send", AsyncMock(return_value=DeliveryResult.fail("HTTP 500"))
    )
    client_id = _enqueue(db)

    result = _invoke(db, "sync")
    assert "failed 1" in result.output

    listing = _invoke(db, "list")
    assert client_id in listing.output
    assert "failed" in listing.output

    monkeypatch.setattr(
        DeliveryClient, "send", AsyncMock(return_value=DeliveryResult.ok())
    )
    result = _invoke(db, "retry-all")

    assert "Delivered 1" in result.output
    assert client_id not in _invoke(db, "list").output


def test_discard(db: Path) -> None:
    client_id = _enqueue(db)

    result = _invoke(db, "discard", client_id)
    assert result.exit_code == 0
    assert f"Discarded {client_id}" in result.output

    again = _invoke(db, "discard", client_id)
    assert again.exit_code == 1
    assert "No queued message" in again.output


def test_server_drain(db: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr(
        DeliveryClient,
        "process_server_queue",
        AsyncMock(return_value=ServerDrainResult(total_processed=3, total_failed=1)),
    )

    result = _invoke(db, "server-drain")

    assert result.exit_code == 0
    assert "Server processed 3, failed 1" in result.output


def test_server_drain_error(db: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr(
        DeliveryClient,
        "process_server_queue",
        AsyncMock(side_effect=DeliveryError("HTTP 401 from server offline queue")),
    )

    result = _invoke(db, "server-drain")

    assert result.exit_code == 1
    assert "HTTP 401" in result.output


def test_corrupt_database_is_reported(db: Path) -> None:
    _corrupt(db)

    result = _invoke(db, "list")

    assert result.exit_code == 1
    assert "Corrupt outbox snapshot" in result.output


def test_enqueue_works_with_corrupt_database(db: Path) -> None:
    _corrupt(db)

    result = _invoke(db, "enqueue", "c1", "still here")

    assert result.exit_code == 0, result.output
    assert "Corrupt outbox snapshot" in result.output
    client_id = CLIENT_ID.search(result.output).group(0)

    listing = _invoke(db, "list")
    assert listing.exit_code == 0, listing.output
    assert client_id in listing.output


def test_clear_recovers_corrupt_database(db: Path) -> None:
    _corrupt(db)

    result = _invoke(db, "clear", "--yes")

    assert result.exit_code == 0, result.output
    assert "Outbox cleared." in result.output
    listing = _invoke(db, "list")
    assert listing.exit_code == 0
    assert CLIENT_ID.search(listing.output) is None


def test_clear_asks_for_confirmation(db: Path) -> None:
    client_id = _enqueue(db)

    result = CliRunner().invoke(cli, ["--db", str(db), "clear"], input="n\n")

    assert result.exit_code == 1
    assert client_id in _invoke(db, "list").output
