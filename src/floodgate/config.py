"""Configuration and logging setup for Floodgate."""

from __future__ import annotations

import logging
import tomllib
from pathlib import Path
from typing import Any

from pydantic import Field, SecretStr, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

CONFIG_FILE_PATH = Path.home() / ".config" / "floodgate" / "config.toml"

DEFAULT_DB_PATH = Path.home() / ".local" / "share" / "floodgate" / "floodgate.db"

_SECRET_FIELDS = ("query_api_key",)
_MASK = "SecretStr('**********')"


def _load_config_file(config_path: Path | None = None) -> dict[str, Any]:
    """Read the optional TOML config file.

    A missing or unreadable file yields an empty mapping; settings then fall
    back to their defaults.
    """
    path = config_path or CONFIG_FILE_PATH
    if not path.is_file():
        return {}
    try:
        return tomllib.loads(path.read_text(encoding="utf-8"))
    except (OSError, UnicodeDecodeError, tomllib.TOMLDecodeError) as e:
        logging.getLogger(__name__).warning(f"Ignoring config file {path}: {type(e).__name__}")
        return {}


class Settings(BaseSettings):
    """Floodgate settings loaded from environment variables.

    Environment variables win over the `.env` file, which wins over
    `~/.config/floodgate/config.toml`. The pipeline query API key is a
    SecretStr and is masked wherever settings are printed.
    """

    model_config = SettingsConfigDict(
        env_prefix="FLOODGATE_",
        env_file=".env",
        env_file_encoding="utf-8",
    )

    # Storage
    db_path: Path = DEFAULT_DB_PATH

    # Health monitor
    probe_timeout: float = 10.0  # seconds
    probe_concurrency: int = Field(default=5, ge=1)
    failing_threshold: int = Field(default=2, ge=1)
    response_time_alpha: float = Field(default=0.3, gt=0.0, le=1.0)

    # Job scheduler
    job_batch_size: int = Field(default=5, ge=1)
    fetch_timeout: float = 10.0  # seconds
    source_delay_min_ms: int = Field(default=300, ge=0)
    source_delay_max_ms: int = Field(default=1500, ge=0)
    lock_ttl_seconds: int = Field(default=300, ge=1)

    # Entity resolver
    resolver_batch_size: int = Field(default=100, ge=1)
    resolver_max_batches: int = Field(default=10, ge=1)

    # Scheduled pipelines
    pipeline_batch_size: int = Field(default=10, ge=1)
    query_url: str | None = None
    query_api_key: SecretStr | None = None
    query_timeout: float = 10.0  # seconds

    # Alerts
    high_opportunity_threshold: float = 80.0

    # Logging
    log_level: str = "INFO"

    @model_validator(mode="before")
    @classmethod
    def load_from_config_file(cls, values: dict[str, Any]) -> dict[str, Any]:
        """Fill fields the environment left unset from the TOML file."""
        for key, value in _load_config_file().items():
            if key in cls.model_fields and values.get(key) is None:
                values[key] = value
        return values

    @model_validator(mode="after")
    def check_delay_window(self) -> Settings:
        """The per-source delay window must not be inverted."""
        if self.source_delay_max_ms < self.source_delay_min_ms:
            msg = "source_delay_max_ms must be >= source_delay_min_ms"
            raise ValueError(msg)
        return self

    def has_query_endpoint(self) -> bool:
        """Check if the pipeline query endpoint is configured.

        Returns:
            True if a query URL is set, False otherwise
        """
        return bool(self.query_url)

    def __repr__(self) -> str:
        parts = [
            f"{name}={_MASK if name in _SECRET_FIELDS and value is not None else repr(value)}"
            for name, value in self
        ]
        return f"Settings({', '.join(parts)})"

    __str__ = __repr__


_settings: Settings | None = None


def get_settings() -> Settings:
    """Process-wide settings, built on first call."""
    global _settings
    if _settings is None:
        _settings = Settings()
    return _settings


def reset_settings() -> None:
    """Drop the cached settings so the next get_settings() rereads the environment."""
    global _settings
    _settings = None


def configure_logging(level: str = "INFO") -> None:
    """Configure stdlib logging for Floodgate."""
    logging.basicConfig(
        level=getattr(logging, level.upper()),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )
    # httpx logs every request at INFO
    logging.getLogger("httpx").setLevel(logging.WARNING)


__all__ = [
    "Settings",
    "get_settings",
    "reset_settings",
    "configure_logging",
    "CONFIG_FILE_PATH",
    "DEFAULT_DB_PATH",
]
