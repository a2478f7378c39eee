"""Configuration management using Pydantic Settings."""

import logging
from functools import lru_cache
from pathlib import Path
from typing import Literal

import yaml
from pydantic import BaseModel, Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

logger = logging.getLogger(__name__)


class ServerConfig(BaseModel):
    """HTTP server parameters."""

    host: str = "127.0.0.1"
    port: int = 8080
    allowed_origins: list[str] = Field(
        default_factory=lambda: ["http://localhost:3000"]
    )


class EngineConfig(BaseModel):
    """Execution engine timeouts and retry policy."""

    approval_timeout_seconds: float | None = 3600.0  # None waits forever
    stage_timeout_seconds: float | None = None  # Default when a stage sets none
    cancel_grace_seconds: float = 10.0
    retry_backoff_seconds: float = 1.0
    retry_backoff_cap_seconds: float = 30.0


class ShellConfig(BaseModel):
    """Shell executor parameters."""

    working_dir: Path | None = None
    executable: str | None = None  # None uses /bin/sh
    max_output_chars: int = 64_000
    kill_grace_seconds: float = 5.0
    inherit_env: bool = True


class StoreConfig(BaseModel):
    """Run store backend and retention."""

    backend: Literal["memory", "file"] = "memory"
    retention_hours: float = 168.0


class TriggerConfig(BaseModel):
    """Trigger endpoint parameters."""

    idempotency_window_seconds: float = 86400.0


class SchedulerConfig(BaseModel):
    """Background job scheduling."""

    enabled: bool = True
    retention_interval_minutes: int = 30


class NotificationsConfig(BaseModel):
    """Which notification sinks receive terminal run reports."""

    log: bool = True
    webhook: bool = True  # Only used when webhook_url is set
    telegram: bool = True  # Only used when telegram_bot_token is set
    notify_on_success: bool = True


class Settings(BaseSettings):
    """Main configuration class."""

    # Paths
    data_dir: Path = Path("data")
    pipelines_dir: Path | None = None  # Defaults to <data_dir>/pipelines

    # Client
    server_url: str = "http://127.0.0.1:8080"
    log_level: str = "INFO"

    # Credentials
    logfire_token: str = ""
    webhook_url: str = ""
    telegram_bot_token: str = ""
    telegram_chat_id: str = ""

    # Nested configuration sections
    server: ServerConfig = Field(default_factory=ServerConfig)
    engine: EngineConfig = Field(default_factory=EngineConfig)
    executor: ShellConfig = Field(default_factory=ShellConfig)
    store: StoreConfig = Field(default_factory=StoreConfig)
    trigger: TriggerConfig = Field(default_factory=TriggerConfig)
    scheduler: SchedulerConfig = Field(default_factory=SchedulerConfig)
    notifications: NotificationsConfig = Field(default_factory=NotificationsConfig)

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        env_nested_delimiter="__",
        case_sensitive=False,
        extra="ignore",
    )

    @field_validator("data_dir", mode="after")
    @classmethod
    def resolve_data_dir(cls, v: Path) -> Path:
        """Resolve data directory to absolute path."""
        return v.resolve()

    @property
    def pipelines_path(self) -> Path:
        """Directory holding pipeline definition documents."""
        if self.pipelines_dir is not None:
            return self.pipelines_dir.resolve()
        return self.data_dir / "pipelines"

    @property
    def runs_path(self) -> Path:
        """Directory holding persisted run records."""
        return self.data_dir / "runs"

    def load_yaml_config(self) -> None:
        """Merge ``<data_dir>/config.yaml`` over the defaults, one section at a time.

        Keys missing from a YAML section keep their current value. Environment
        credentials are never read from the YAML file.
        """
        config_path = self.data_dir / "config.yaml"
        if not config_path.exists():
            logger.warning(
                f"No config at {config_path}; using defaults "
                "(create one with 'python -m conveyor init')"
            )
            return

        try:
            document = yaml.safe_load(config_path.read_text(encoding="utf-8")) or {}
        except yaml.YAMLError as e:
            logger.error(f"Failed to parse {config_path}: {e}")
            raise

        if not isinstance(document, dict):
            raise ValueError(f"{config_path} must contain a mapping of sections")

        for name in CONFIG_SECTIONS:
            overrides = document.get(name)
            if not overrides:
                continue
            current = getattr(self, name)
            merged = current.model_validate({**current.model_dump(), **overrides})
            setattr(self, name, merged)

        unknown = sorted(set(document) - set(CONFIG_SECTIONS))
        if unknown:
            logger.warning(f"Ignoring unknown config sections: {', '.join(unknown)}")
        logger.info(f"Loaded configuration from {config_path}")


CONFIG_SECTIONS = (
    "server",
    "engine",
    "executor",
    "store",
    "trigger",
    "scheduler",
    "notifications",
)


@lru_cache()
def get_settings() -> Settings:
    """Settings from the environment, .env and the data directory's config.yaml."""
    settings = Settings()
    settings.load_yaml_config()
    return settings
