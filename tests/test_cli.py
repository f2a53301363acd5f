"""Tests for CLI commands and log redaction."""

import json
import logging
import os
from unittest.mock import patch

import pytest
from click.testing import CliRunner

from review_bridge.cli import SecretRedactingFilter, cli

from tests.conftest import APP_ID, ROOM_ID


def _record(msg: str) -> logging.LogRecord:
    return logging.LogRecord("test", logging.INFO, __file__, 1, msg, None, None)


class TestSecretRedactingFilter:
    """Tests for SecretRedactingFilter."""

    @pytest.mark.parametrize(
        "message",
        [
            "as_token=abcdefghijklmnopqrstuvwxyz012345",
            "Authorization: Bearer ya29.secret-value",
            "password: hunter2",
            "connecting to postgresql+asyncpg://bridge:s3cret@db:5432/reviews",
        ],
    )
    def test_secrets_redacted(self, message):
        record = _record(message)

        assert SecretRedactingFilter().filter(record) is True
        assert "[REDACTED]" in record.msg

    def test_plain_message_untouched(self):
        record = _record("Polled 3 review(s) for com.example.app")
        SecretRedactingFilter().filter(record)
        assert record.msg == "Polled 3 review(s) for com.example.app"


@pytest.fixture
def cli_env(tmp_path):
    """Environment pointing the CLI at a fresh SQLite file."""
    env = {
        "DATABASE_PATH": str(tmp_path / "bridge.db"),
        "APPS": json.dumps([{"app_id": APP_ID, "room_id": ROOM_ID}]),
    }
    with patch.dict(os.environ, env, clear=True):
        yield env


class TestCommands:
    """Tests for the storage commands against a SQLite file."""

    def test_migrate_then_status(self, cli_env):
        runner = CliRunner()

        first = runner.invoke(cli, ["migrate"])
        again = runner.invoke(cli, ["migrate"])
        status = runner.invoke(cli, ["migration-status"])

        assert first.exit_code == 0, first.output
        assert "Applied migrations: 1, 2" in first.output
        assert "already up to date" in again.output
        assert "Up to date" in status.output

    def test_set_app_config_parses_values(self, cli_env):
        runner = CliRunner()
        runner.invoke(cli, ["migrate"])

        result = runner.invoke(cli, ["set-app-config", APP_ID, "enabled=false", "app_name=Example App"])

        assert result.exit_code == 0, result.output
        assert '"app_name": "Example App"' in result.output
        assert '"enabled": false' in result.output

    def test_set_app_config_rejects_invalid_value(self, cli_env):
        runner = CliRunner()
        runner.invoke(cli, ["migrate"])

        result = runner.invoke(cli, ["set-app-config", APP_ID, "poll_interval_ms=-5"])

        assert result.exit_code == 1
        assert "Invalid override" in result.output

    def test_set_app_config_unknown_app(self, cli_env):
        result = CliRunner().invoke(cli, ["set-app-config", "com.unknown", "enabled=false"])

        assert result.exit_code == 1
        assert "not configured" in result.output

    def test_health_after_migrate(self, cli_env):
        runner = CliRunner()
        runner.invoke(cli, ["migrate"])

        result = runner.invoke(cli, ["health"])

        assert result.exit_code == 0, result.output
        assert "[PASS] schema_version" in result.output

    def test_invalid_configuration_exits(self):
        with patch.dict(os.environ, {"DATABASE_TYPE": "mysql"}, clear=True):
            result = CliRunner().invoke(cli, ["stats"])

        assert result.exit_code == 1
        assert "Configuration error" in result.output
