"""Tests for configuration settings."""

import json
import os
from unittest.mock import patch

import pytest

from review_bridge.config import AppConfig, Settings, load_settings
from review_bridge.errors import ConfigurationError


class TestDefaults:
    """Tests for default values."""

    def test_database_defaults(self):
        """Default backend is SQLite with the documented pool settings."""
        with patch.dict(os.environ, {}, clear=True):
            s = Settings(_env_file=None)
            assert s.DATABASE_TYPE == "sqlite"
            assert s.DATABASE_POOL_SIZE == 20
            assert s.DATABASE_CONNECT_TIMEOUT_S == 2.0
            assert s.DATABASE_IDLE_TIMEOUT_S == 30.0
            assert s.database_url.startswith("sqlite+aiosqlite:///")

    def test_polling_defaults(self):
        with patch.dict(os.environ, {}, clear=True):
            s = Settings(_env_file=None)
            assert s.POLL_INTERVAL_MS == 300_000
            assert s.MAX_REVIEWS_PER_POLL == 100
            assert s.LOOKBACK_DAYS == 7
            assert s.APPS == []

    def test_reply_backoff_defaults(self):
        with patch.dict(os.environ, {}, clear=True):
            policy = Settings(_env_file=None).reply_backoff
            assert policy.max_attempts == 4
            assert policy.base_delay_s == 30.0
            assert policy.max_delay_s == 900.0
            assert policy.multiplier == 2.0
            assert policy.jitter == 0.2


class TestDatabaseSettings:
    """Tests for backend selection and validation."""

    def test_postgres_alias(self):
        """'postgres' is accepted as a spelling of 'postgresql'."""
        env = {
            "DATABASE_TYPE": "Postgres",
            "DATABASE_HOST": "db",
            "DATABASE_USERNAME": "bridge",
            "DATABASE_PASSWORD": "secret",
            "DATABASE_NAME": "reviews",
        }
        with patch.dict(os.environ, env, clear=True):
            s = Settings(_env_file=None)
            assert s.DATABASE_TYPE == "postgresql"
            assert s.database_url == "postgresql+asyncpg://bridge:secret@db:5432/reviews"

    def test_postgres_requires_connection_fields(self):
        with patch.dict(os.environ, {"DATABASE_TYPE": "postgresql", "DATABASE_HOST": "db"}, clear=True):
            with pytest.raises(ConfigurationError, match="DATABASE_USERNAME"):
                load_settings(_env_file=None)

    def test_unknown_type_rejected(self):
        with patch.dict(os.environ, {"DATABASE_TYPE": "mysql"}, clear=True):
            with pytest.raises(ConfigurationError, match="unsupported database type"):
                load_settings(_env_file=None)


class TestApps:
    """Tests for tracked app configuration."""

    def test_apps_from_json_env(self):
        apps = [
            {"app_id": "com.example.app", "room_id": "!a:example.org", "app_name": "Example"},
            {"app_id": "com.example.beta", "room_id": "!b:example.org", "enabled": False},
        ]
        with patch.dict(os.environ, {"APPS": json.dumps(apps)}, clear=True):
            s = Settings(_env_file=None)
            assert [a.app_id for a in s.APPS] == ["com.example.app", "com.example.beta"]
            assert [a.app_id for a in s.enabled_apps] == ["com.example.app"]
            assert s.app("com.example.app").display_name == "Example"
            assert s.app("com.example.beta").display_name == "com.example.beta"
            assert s.app("missing") is None

    def test_duplicate_app_rejected(self):
        apps = [{"app_id": "com.a", "room_id": "!a:x"}, {"app_id": "com.a", "room_id": "!b:x"}]
        with patch.dict(os.environ, {"APPS": json.dumps(apps)}, clear=True):
            with pytest.raises(ConfigurationError, match="more than once"):
                load_settings(_env_file=None)

    def test_blank_ids_rejected(self):
        apps = [{"app_id": "  ", "room_id": "!a:x"}]
        with patch.dict(os.environ, {"APPS": json.dumps(apps)}, clear=True):
            with pytest.raises(ConfigurationError, match="app_id"):
                load_settings(_env_file=None)

    def test_merged_applies_overrides_but_not_app_id(self):
        app = AppConfig(app_id="com.a", room_id="!a:x")

        merged = app.merged({"app_id": "com.b", "poll_interval_ms": 1000, "unknown": 1})

        assert merged.app_id == "com.a"
        assert merged.poll_interval_ms == 1000
        assert app.poll_interval_ms is None

    def test_merged_without_overrides_is_same(self):
        app = AppConfig(app_id="com.a", room_id="!a:x")
        assert app.merged(None) is app
