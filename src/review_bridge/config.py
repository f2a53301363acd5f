"""Configuration management using pydantic-settings."""

import logging
from typing import Any

from pydantic import BaseModel, Field, ValidationError, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict
from sqlalchemy.engine import URL

from review_bridge.backoff import BackoffPolicy
from review_bridge.errors import ConfigurationError

SUPPORTED_DATABASE_TYPES = ("sqlite", "postgresql")


class AppConfig(BaseModel):
    """A tracked Google Play app and the Matrix room its reviews go to.

    Unset polling fields fall back to the global defaults on ``Settings``.
    Persisted overrides (``app_configs`` table) are merged on top of this at
    bridge startup, see ``AppConfig.merged``.
    """

    app_id: str = Field(min_length=1)
    room_id: str = Field(min_length=1)
    app_name: str | None = None
    poll_interval_ms: int | None = Field(default=None, gt=0)
    max_reviews_per_poll: int | None = Field(default=None, gt=0)
    lookback_days: int | None = Field(default=None, ge=0)
    enabled: bool = True
    room_config: dict[str, Any] = Field(default_factory=dict)

    @field_validator("app_id", "room_id")
    @classmethod
    def strip_ids(cls, value: str) -> str:
        value = value.strip()
        if not value:
            raise ValueError("must not be blank")
        return value

    @property
    def display_name(self) -> str:
        return self.app_name or self.app_id

    def merged(self, overrides: dict[str, Any] | None) -> "AppConfig":
        """Return a copy with persisted overrides applied.

        ``app_id`` is the override key and can never be changed by one.
        """
        if not overrides:
            return self
        data = self.model_dump()
        data.update({k: v for k, v in overrides.items() if k in AppConfig.model_fields and k != "app_id"})
        return AppConfig.model_validate(data)


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # Application
    APP_NAME: str = "Review Bridge"
    DEBUG: bool = False
    LOG_LEVEL: str = "INFO"

    # Database
    DATABASE_TYPE: str = "sqlite"  # 'sqlite' or 'postgresql'
    DATABASE_PATH: str = "data/review_bridge.db"  # ':memory:' for an in-memory store
    DATABASE_HOST: str = ""
    DATABASE_PORT: int = 5432
    DATABASE_USERNAME: str = ""
    DATABASE_PASSWORD: str = ""
    DATABASE_NAME: str = ""
    DATABASE_SSL: bool = False
    DATABASE_POOL_SIZE: int = Field(default=20, gt=0)
    DATABASE_CONNECT_TIMEOUT_S: float = Field(default=2.0, gt=0)
    DATABASE_IDLE_TIMEOUT_S: float = Field(default=30.0, gt=0)
    DATABASE_CONNECT_ATTEMPTS: int = Field(default=3, ge=1)

    # Matrix homeserver (application service)
    HOMESERVER_URL: str = "http://localhost:8008"
    HOMESERVER_DOMAIN: str = "localhost"
    AS_TOKEN: str = ""
    PUPPET_PREFIX: str = "_googleplay_"  # Puppet localpart prefix
    BOT_LOCALPART: str = "googleplaybot"

    # Google Play Developer API
    GOOGLE_PLAY_ACCESS_TOKEN: str = ""  # Pre-issued OAuth bearer token
    GOOGLE_PLAY_BASE_URL: str = "https://androidpublisher.googleapis.com/androidpublisher/v3"
    HTTP_TIMEOUT_S: float = 30.0

    # Review polling defaults
    POLL_INTERVAL_MS: int = Field(default=300_000, gt=0)
    MAX_REVIEWS_PER_POLL: int = Field(default=100, gt=0)
    LOOKBACK_DAYS: int = Field(default=7, ge=0)
    APPS: list[AppConfig] = Field(default_factory=list)  # JSON list in the environment

    # Reply dispatch
    REPLY_MAX_ATTEMPTS: int = Field(default=4, ge=1)
    REPLY_BASE_DELAY_S: float = Field(default=30.0, ge=0)
    REPLY_MAX_DELAY_S: float = Field(default=900.0, ge=0)
    REPLY_BACKOFF_MULTIPLIER: float = Field(default=2.0, ge=1)
    REPLY_BACKOFF_JITTER: float = Field(default=0.2, ge=0, le=1)
    REPLY_POLL_INTERVAL_S: float = Field(default=30.0, gt=0)

    # Maintenance
    USER_RETENTION_DAYS: int = Field(default=90, gt=0)
    MESSAGE_RETENTION_DAYS: int = Field(default=30, gt=0)

    # Health API
    HTTP_HOST: str = "0.0.0.0"
    HTTP_PORT: int = 8090

    @property
    def database_url(self) -> str:
        """SQLAlchemy async URL for the configured backend."""
        if self.DATABASE_TYPE == "postgresql":
            return URL.create(
                "postgresql+asyncpg",
                username=self.DATABASE_USERNAME,
                password=self.DATABASE_PASSWORD,
                host=self.DATABASE_HOST,
                port=self.DATABASE_PORT,
                database=self.DATABASE_NAME,
            ).render_as_string(hide_password=False)
        return f"sqlite+aiosqlite:///{self.DATABASE_PATH}"

    @property
    def reply_backoff(self) -> BackoffPolicy:
        return BackoffPolicy(
            max_attempts=self.REPLY_MAX_ATTEMPTS,
            base_delay_s=self.REPLY_BASE_DELAY_S,
            max_delay_s=self.REPLY_MAX_DELAY_S,
            multiplier=self.REPLY_BACKOFF_MULTIPLIER,
            jitter=self.REPLY_BACKOFF_JITTER,
        )

    @property
    def connect_backoff(self) -> BackoffPolicy:
        return BackoffPolicy(
            max_attempts=self.DATABASE_CONNECT_ATTEMPTS,
            base_delay_s=0.5,
            max_delay_s=5.0,
            jitter=0.1,
        )

    @property
    def enabled_apps(self) -> list[AppConfig]:
        return [app for app in self.APPS if app.enabled]

    def app(self, app_id: str) -> AppConfig | None:
        return next((app for app in self.APPS if app.app_id == app_id), None)

    @field_validator("DATABASE_TYPE")
    @classmethod
    def check_database_type(cls, value: str) -> str:
        value = value.strip().lower()
        if value == "postgres":
            value = "postgresql"
        if value not in SUPPORTED_DATABASE_TYPES:
            raise ValueError(
                f"unsupported database type {value!r}, expected one of {', '.join(SUPPORTED_DATABASE_TYPES)}"
            )
        return value

    @model_validator(mode="after")
    def check_backend_settings(self) -> "Settings":
        """PostgreSQL needs host, username, password and database name."""
        if self.DATABASE_TYPE == "postgresql":
            missing = [
                name
                for name in ("DATABASE_HOST", "DATABASE_USERNAME", "DATABASE_PASSWORD", "DATABASE_NAME")
                if not getattr(self, name)
            ]
            if missing:
                raise ValueError(f"PostgreSQL configuration incomplete, missing: {', '.join(missing)}")
        elif not self.DATABASE_PATH:
            raise ValueError("DATABASE_PATH is required for sqlite")
        return self

    @model_validator(mode="after")
    def check_apps(self) -> "Settings":
        seen: set[str] = set()
        for app in self.APPS:
            if app.app_id in seen:
                raise ValueError(f"app {app.app_id} configured more than once")
            seen.add(app.app_id)
        if not self.AS_TOKEN and self.APPS:
            logging.warning("AS_TOKEN is empty; Matrix requests will be rejected by the homeserver")
        return self


def load_settings(**overrides: Any) -> Settings:
    """Load settings, turning validation failures into ConfigurationError."""
    try:
        return Settings(**overrides)
    except ValidationError as e:
        problems = "; ".join(
            f"{'.'.join(str(p) for p in err['loc']) or 'settings'}: {err['msg']}" for err in e.errors()
        )
        raise ConfigurationError(problems) from e
