"""Locus sync configuration settings using pydantic-settings."""

import logging
from dataclasses import dataclass
from functools import cached_property
from pathlib import Path
from typing import Any

import yaml
from pydantic import field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

logger = logging.getLogger(__name__)

HTTP_METHODS = {"GET", "POST", "PUT", "PATCH", "DELETE"}


@dataclass(frozen=True)
class RetryEnvelope:
    """Backoff parameters for one sync session. Delays are in milliseconds."""

    max_retry: int
    base_delay: int
    multiplier: float
    max_delay: int


class Settings(BaseSettings):
    """Configuration settings for the sync engine.

    Settings are loaded from environment variables with the LOCUS_ prefix.
    For example, LOCUS_MAX_RETRY=5 sets max_retry to 5. Mapping fields
    (headers, params, extras) are read from JSON strings.
    """

    model_config = SettingsConfigDict(
        env_prefix="LOCUS_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # Endpoint
    url: str | None = None
    http_method: str = "POST"
    headers: dict[str, str] = {}
    params: dict[str, Any] = {}
    extras: dict[str, Any] = {}
    http_root_property: str | None = None
    http_timeout: float = 30.0  # seconds
    idempotency_header: str = "Idempotency-Key"

    # Retry (milliseconds)
    max_retry: int = 3
    retry_delay: int = 5000
    retry_delay_multiplier: float = 2.0
    max_retry_delay: int = 60000

    # Batching and triggers
    auto_sync: bool = True
    batch_sync: bool = False
    max_batch_size: int = 50
    auto_sync_threshold: int = 0
    disable_auto_sync_on_cellular: bool = False
    heartbeat_interval: float = 0.0  # seconds, 0 disables
    start_paused: bool = False

    # Retention
    queue_max_days: int = 0
    queue_max_records: int = 0
    dead_letter_capacity: int = 100

    # Hooks
    hook_timeout: float = 10.0  # seconds

    # Connectivity probe
    network_probe_url: str | None = None
    network_probe_interval: float = 30.0  # seconds

    # File paths
    data_dir: Path = Path("~/.local/share/locus")

    # Logging
    log_level: str = "INFO"

    @field_validator("http_method")
    @classmethod
    def validate_http_method(cls, v: str) -> str:
        """Ensure the HTTP verb is one the engine can send."""
        if v.upper() not in HTTP_METHODS:
            raise ValueError(f"http_method must be one of {HTTP_METHODS}")
        return v.upper()

    @field_validator("max_batch_size")
    @classmethod
    def validate_max_batch_size(cls, v: int) -> int:
        """Ensure batches hold at least one item."""
        if v < 1:
            raise ValueError("max_batch_size must be at least 1")
        return v

    @field_validator("max_retry", "retry_delay", "max_retry_delay", "auto_sync_threshold")
    @classmethod
    def validate_non_negative(cls, v: int) -> int:
        """Ensure counters and delays are not negative."""
        if v < 0:
            raise ValueError("value must not be negative")
        return v

    @field_validator("retry_delay_multiplier")
    @classmethod
    def validate_multiplier(cls, v: float) -> float:
        """Ensure backoff never shrinks between attempts."""
        if v < 1.0:
            raise ValueError("retry_delay_multiplier must be at least 1.0")
        return v

    @field_validator("dead_letter_capacity")
    @classmethod
    def validate_dead_letter_capacity(cls, v: int) -> int:
        """Ensure the dead-letter log can hold at least one entry."""
        if v < 1:
            raise ValueError("dead_letter_capacity must be at least 1")
        return v

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        """Ensure log level is valid."""
        valid_levels = {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}
        if v.upper() not in valid_levels:
            raise ValueError(f"log_level must be one of {valid_levels}")
        return v.upper()

    @classmethod
    def from_yaml(cls, path: Path, **overrides: Any) -> "Settings":
        """Load settings from a YAML file, layered over environment values.

        Keys in the file use the field names (e.g. ``max_retry``). If the
        file is missing or unreadable, environment values are used alone.

        Args:
            path: Path to the YAML configuration file
            **overrides: Values that take precedence over the file

        Returns:
            Settings instance
        """
        path = Path(path).expanduser()
        data: dict[str, Any] = {}

        if path.exists():
            try:
                with open(path) as f:
                    data = yaml.safe_load(f) or {}
            except (yaml.YAMLError, OSError) as e:
                logger.warning("Failed to load settings from %s: %s", path, e)
                data = {}

            if not isinstance(data, dict):
                logger.warning("Ignoring %s: top level must be a mapping", path)
                data = {}

        data.update(overrides)
        return cls(**data)

    @cached_property
    def data_path(self) -> Path:
        """Return expanded data directory path."""
        return self.data_dir.expanduser()

    @property
    def queue_db_path(self) -> Path:
        """Return the path of the durable queue database."""
        return self.data_path / "queue.db"

    def retry_envelope(self) -> RetryEnvelope:
        """Return the backoff parameters as an immutable envelope."""
        return RetryEnvelope(
            max_retry=self.max_retry,
            base_delay=self.retry_delay,
            multiplier=self.retry_delay_multiplier,
            max_delay=self.max_retry_delay,
        )
