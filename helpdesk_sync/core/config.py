from __future__ import annotations

from functools import lru_cache
from pathlib import Path

from pydantic import AnyHttpUrl, AliasChoices, Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


_PROJECT_ROOT = Path(__file__).resolve().parent.parent.parent


class Settings(BaseSettings):
    """Worker configuration loaded from environment variables.

    Database credentials are optional: when the MySQL host, user or name is
    missing the worker falls back to a local SQLite file.
    """

    app_name: str = Field(default="Helpdesk Sync", validation_alias="APP_NAME")
    totp_encryption_key: str = Field(validation_alias="TOTP_ENCRYPTION_KEY")
    database_host: str | None = Field(default=None, validation_alias="DB_HOST")
    database_user: str | None = Field(default=None, validation_alias="DB_USER")
    database_password: str | None = Field(default=None, validation_alias="DB_PASSWORD")
    database_name: str | None = Field(default=None, validation_alias="DB_NAME")
    sqlite_path: Path = Field(
        default=_PROJECT_ROOT / "helpdesk_sync.db", validation_alias="SQLITE_PATH"
    )
    migration_lock_timeout: int = Field(
        default=60, validation_alias="MIGRATION_LOCK_TIMEOUT"
    )
    default_timezone: str = Field(default="UTC", validation_alias="CRON_TIMEZONE")
    log_path: Path | None = Field(default=None, validation_alias="HELPDESK_LOG_PATH")
    log_level: str = Field(default="INFO", validation_alias="HELPDESK_LOG_LEVEL")
    log_rotation: str = Field(default="10 MB", validation_alias="HELPDESK_LOG_ROTATION")
    log_retention: int = Field(default=5, validation_alias="HELPDESK_LOG_RETENTION")

    default_sync_interval_seconds: int = Field(
        default=60,
        validation_alias=AliasChoices("HELPDESK_SYNC_INTERVAL", "SYNC_INTERVAL"),
    )
    registry_refresh_seconds: int = Field(
        default=60, validation_alias="HELPDESK_REGISTRY_REFRESH"
    )
    imap_connect_timeout: float = Field(default=20.0, validation_alias="IMAP_CONNECT_TIMEOUT")
    imap_greeting_timeout: float = Field(default=15.0, validation_alias="IMAP_GREETING_TIMEOUT")
    imap_socket_timeout: float = Field(default=45.0, validation_alias="IMAP_SOCKET_TIMEOUT")
    steady_state_window: int = Field(
        default=10, validation_alias="HELPDESK_STEADY_STATE_WINDOW"
    )
    backfill_limit: int = Field(default=200, validation_alias="HELPDESK_BACKFILL_LIMIT")
    connect_max_attempts: int = Field(default=3, validation_alias="HELPDESK_CONNECT_ATTEMPTS")
    connect_backoff_base: float = Field(
        default=1.0, validation_alias="HELPDESK_CONNECT_BACKOFF"
    )
    connect_backoff_max: float = Field(
        default=30.0, validation_alias="HELPDESK_CONNECT_BACKOFF_MAX"
    )
    circuit_breaker_threshold: int = Field(
        default=3, validation_alias="HELPDESK_CIRCUIT_THRESHOLD"
    )
    circuit_breaker_cooldown: int = Field(
        default=60, validation_alias="HELPDESK_CIRCUIT_COOLDOWN"
    )
    processed_folder: str | None = Field(
        default=None, validation_alias="HELPDESK_PROCESSED_FOLDER"
    )
    skip_auto_replies: bool = Field(
        default=True, validation_alias="HELPDESK_SKIP_AUTO_REPLIES"
    )
    skip_spam: bool = Field(default=True, validation_alias="HELPDESK_SKIP_SPAM")
    link_clients: bool = Field(default=True, validation_alias="HELPDESK_LINK_CLIENTS")
    stop_grace_seconds: float = Field(default=30.0, validation_alias="HELPDESK_STOP_GRACE")
    require_departments_at_boot: bool = Field(
        default=True, validation_alias="HELPDESK_REQUIRE_DEPARTMENTS"
    )
    notification_webhook_url: AnyHttpUrl | None = Field(
        default=None, validation_alias="HELPDESK_NOTIFY_WEBHOOK_URL"
    )
    notification_webhook_api_key: str | None = Field(
        default=None, validation_alias="HELPDESK_NOTIFY_WEBHOOK_API_KEY"
    )
    worker_control_token: str | None = Field(
        default=None, validation_alias="HELPDESK_WORKER_TOKEN"
    )
    control_host: str = Field(default="127.0.0.1", validation_alias="HELPDESK_CONTROL_HOST")
    control_port: int | None = Field(default=None, validation_alias="HELPDESK_CONTROL_PORT")

    @field_validator(
        "notification_webhook_url",
        "processed_folder",
        "worker_control_token",
        "control_port",
        "log_path",
        mode="before",
    )
    @classmethod
    def _empty_string_to_none(cls, value):
        """Coerce blank environment variables to ``None`` so optional values stay optional."""

        if isinstance(value, str) and value.strip() == "":
            return None
        return value

    @field_validator("log_level")
    @classmethod
    def _normalise_log_level(cls, value: str) -> str:
        level = str(value or "INFO").strip().upper()
        if level not in {"TRACE", "DEBUG", "INFO", "SUCCESS", "WARNING", "ERROR", "CRITICAL"}:
            raise ValueError(f"Unknown log level {value!r}")
        return level

    @field_validator(
        "default_sync_interval_seconds",
        "registry_refresh_seconds",
        "imap_connect_timeout",
        "imap_greeting_timeout",
        "imap_socket_timeout",
        "steady_state_window",
        "backfill_limit",
        "connect_max_attempts",
        "circuit_breaker_threshold",
    )
    @classmethod
    def _require_positive(cls, value):
        if value <= 0:
            raise ValueError("must be greater than zero")
        return value

    model_config = SettingsConfigDict(
        env_file=(_PROJECT_ROOT / ".env"),
        env_file_encoding="utf-8",
        extra="ignore",
    )


@lru_cache
def get_settings() -> Settings:
    return Settings()
