"""Tests for OutboxSettings configuration and .env file loading."""

from __future__ import annotations

from pathlib import Path
from textwrap import dedent

import pytest
from pydantic import ValidationError

from communexus_outbox import config as config_module
from communexus_outbox.config import OutboxSettings, get_config


class TestOutboxSettingsDefaults:
    """Test OutboxSettings default values in isolated environment."""

    def test_defaults_no_env_file(
        self, tmp_path: Path, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        monkeypatch.chdir(tmp_path)

        settings = OutboxSettings()

        assert settings.api_base_url == "http://localhost:3000"
        assert settings.api_token is None
        assert settings.request_timeout_seconds == 15.0
        assert settings.max_attempts == 3
        assert settings.sync_interval_seconds == 30.0
        assert settings.storage_key == "communexus_offline_messages"

    def test_queue_db_default(
        self, tmp_path: Path, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        monkeypatch.chdir(tmp_path)

        settings = OutboxSettings()

        expected = Path.home() / ".local" / "share" / "communexus" / "outbox.db"
        assert settings.queue_db == expected


class TestOutboxSettingsEnvFileLoading:
    """Test OutboxSettings loads from .env file in CWD."""

    def test_loads_base_url_from_env_file(
        self, tmp_path: Path, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        (tmp_path / ".env").write_text(
            "COMMUNEXUS_OUTBOX_API_BASE_URL=https://api.example.com\n"
        )
        monkeypatch.chdir(tmp_path)

        settings = OutboxSettings()

        assert settings.api_base_url == "https://api.example.com"

    def test_loads_multiple_vars_from_env_file(
        self, tmp_path: Path, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        custom_db = tmp_path / "queue.db"
        (tmp_path / ".env").write_text(
            dedent(f"""\
                COMMUNEXUS_OUTBOX_MAX_ATTEMPTS=5
                COMMUNEXUS_OUTBOX_SYNC_INTERVAL_SECONDS=10
                COMMUNEXUS_OUTBOX_QUEUE_DB={custom_db}
                COMMUNEXUS_OUTBOX_API_TOKEN=abc123
                """)
        )
        monkeypatch.chdir(tmp_path)

        settings = OutboxSettings()

        assert settings.max_attempts == 5
        assert settings.sync_interval_seconds == 10.0
        assert settings.queue_db == custom_db
        assert settings.api_token == "abc123"

    def test_works_with_comments_only_env_file(
        self, tmp_path: Path, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        (tmp_path / ".env").write_text("# This is a comment\n")
        monkeypatch.chdir(tmp_path)

        settings = OutboxSettings()

        assert settings.max_attempts == 3


class TestOutboxSettingsEnvVarOverride:
    """Test environment variables override .env file values."""

    def test_env_var_overrides_env_file(
        self, tmp_path: Path, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        (tmp_path / ".env").write_text("COMMUNEXUS_OUTBOX_MAX_ATTEMPTS=4\n")
        monkeypatch.chdir(tmp_path)
        monkeypatch.setenv("COMMUNEXUS_OUTBOX_MAX_ATTEMPTS", "7")

        settings = OutboxSettings()

        assert settings.max_attempts == 7

    def test_ignores_unprefixed_and_unknown_vars(
        self, tmp_path: Path, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        (tmp_path / ".env").write_text(
            "MAX_ATTEMPTS=9\nCOMMUNEXUS_OUTBOX_SOMETHING_ELSE=1\n"
        )
        monkeypatch.chdir(tmp_path)

        settings = OutboxSettings()

        assert settings.max_attempts == 3


class TestOutboxSettingsValidation:
    def test_rejects_zero_attempts(
        self, tmp_path: Path, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        monkeypatch.chdir(tmp_path)
        monkeypatch.setenv("COMMUNEXUS_OUTBOX_MAX_ATTEMPTS", "0")

        with pytest.raises(ValidationError):
            OutboxSettings()

    def test_rejects_non_positive_interval(
        self, tmp_path: Path, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        monkeypatch.chdir(tmp_path)
        monkeypatch.setenv("COMMUNEXUS_OUTBOX_SYNC_INTERVAL_SECONDS", "0")

        with pytest.raises(ValidationError):
            OutboxSettings()


def test_get_config_is_cached(
    tmp_path: Path, monkeypatch: pytest.MonkeyPatch
) -> None:
    monkeypatch.chdir(tmp_path)
    monkeypatch.setattr(config_module, "_config", None)

    assert get_config() is get_config()
