"""
Configuration management for crawlstream using Pydantic.
"""

from __future__ import annotations

import logging
import threading
from enum import Enum
from pathlib import Path
from typing import Any, ClassVar, Optional, cast

import yaml
from pydantic import BaseModel, Field, SecretStr, ValidationError, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

log = logging.getLogger(__name__)

# --- Nested Configuration Models ---


class CheckpointPosition(str, Enum):
    """Which page an item's checkpoint points at under page-cursor pagination."""

    CURRENT_PAGE = "current_page"
    NEXT_PAGE = "next_page"


class CrawlConfig(BaseModel):
    """Pagination and retry behaviour of the crawl engine."""

    page_size: int = Field(default=100, ge=1, le=1000, description="Records requested per page.")
    max_attempts: int = Field(default=3, ge=1, description="Fetch attempts per page before giving up.")
    retry_delay_seconds: float = Field(default=1.0, ge=0.0, description="Fixed delay between fetch attempts.")
    checkpoint_position: CheckpointPosition = Field(
        default=CheckpointPosition.CURRENT_PAGE,
        description="current_page re-emits the whole page on resume; next_page points past it.",
    )
    preflight_auth: bool = Field(default=True, description="Validate credentials before the first page fetch.")


class SourceConfig(BaseModel):
    """Which datasource plug-in to use and how to reach it."""

    name: str = Field(default="github", description="Registered source name (github, csv).")
    datasource_url: str = Field(
        default="https://api.github.com/repos/octocat/Hello-World/issues",
        description="Endpoint URL or file path of the datasource.",
    )
    access_token: Optional[SecretStr] = Field(default=None, description="Bearer token for the datasource.")
    request_timeout: float = Field(default=30.0, gt=0, description="Per-request timeout in seconds.")
    user_agent: str = Field(default="crawlstream/0.1.0", description="User-Agent header for HTTP sources.")

    @field_validator("name")
    @classmethod
    def normalize_name(cls, v: str) -> str:
        return v.strip().lower()


class CheckpointConfig(BaseModel):
    path: Path = Field(
        default_factory=lambda: Path.home() / ".crawlstream" / "checkpoints.json",
        description="JSON file holding the latest checkpoint per crawl key.",
    )


class MonitoringConfig(BaseModel):
    """Configuration for logging and the metrics exporter."""

    log_level: str = Field(default="INFO", description="Logging level (e.g., DEBUG, INFO, WARNING).")
    log_file: Optional[str] = Field(default=None, description="Path to a JSON log file. If None, logs to stderr.")
    prometheus_port: Optional[int] = Field(
        default=None, description="Port for the Prometheus exporter. None disables it."
    )

    @field_validator("log_level")
    @classmethod
    def validate_level(cls, v: str) -> str:
        level = v.upper()
        if not isinstance(logging.getLevelName(level), int):
            raise ValueError(f"Unknown log level: {v}")
        return level

    @field_validator("log_file", mode="before")
    @classmethod
    def create_parent_dir(cls, v: str | Path | None) -> str | None:
        if v is None:
            return None
        path = Path(v)
        path.parent.mkdir(parents=True, exist_ok=True)
        return str(path)


class ConnectorConfig(BaseModel):
    connector_id: str = Field(default="crawlstream-connector", description="Id reported to the platform.")
    connector_version: str = "0.1.0"


# --- Main Configuration Class ---


class Config(BaseSettings):
    project_name: str = "crawlstream"
    crawl: CrawlConfig = Field(default_factory=CrawlConfig)
    source: SourceConfig = Field(default_factory=SourceConfig)
    checkpoint: CheckpointConfig = Field(default_factory=CheckpointConfig)
    monitoring: MonitoringConfig = Field(default_factory=MonitoringConfig)
    connector: ConnectorConfig = Field(default_factory=ConnectorConfig)

    model_config = SettingsConfigDict(env_prefix="CRAWLSTREAM_", env_nested_delimiter="__", case_sensitive=False)

    @classmethod
    def from_yaml(cls, path: Path) -> Config:
        log.debug("Loading configuration from YAML file: %s", path)
        if not path.is_file():
            raise FileNotFoundError(f"Configuration file not found or is not a file: {path}")
        with open(path, "r", encoding="utf-8") as f:
            yaml_data = yaml.safe_load(f)
        if not yaml_data:
            log.warning("Configuration file is empty: %s. Using default settings.", path)
            return cls()
        if not isinstance(yaml_data, dict):
            raise ValueError(f"Configuration file must contain a mapping: {path}")
        return cls(**yaml_data)


def find_config_file() -> Path | None:
    current_dir = Path.cwd()
    for name in ("crawlstream.yaml", "crawlstream.yml", "config.yaml", "config.yml"):
        path = current_dir / name
        if path.is_file():
            return path
    return None


# --- Lazy Configuration Loader ---


class LazyConfig:
    """
    A proxy for the Config object that delays loading and validation until an
    attribute is first accessed, so a broken config file cannot fail an import.
    """

    _config: ClassVar[Config | None] = None
    _lock: ClassVar[threading.Lock] = threading.Lock()

    def __getattr__(self, name: str) -> Any:
        if self.__class__._config is None:
            with self.__class__._lock:
                if self.__class__._config is None:
                    self.__class__._config = self._load_config_with_fallback()
        return getattr(self.__class__._config, name)

    @classmethod
    def reset(cls) -> None:
        with cls._lock:
            cls._config = None

    def _load_config_with_fallback(self) -> Config:
        config_path = find_config_file()
        if config_path:
            try:
                log.info("Lazy loading configuration from: %s", config_path)
                return Config.from_yaml(config_path)
            except (ValidationError, ValueError, OSError, yaml.YAMLError) as e:
                log.error(
                    "Failed to load configuration from '%s': %s. Falling back to default settings.",
                    config_path,
                    e,
                )
        else:
            log.info("No config file found. Using default settings for lazy load.")

        try:
            return Config()
        except ValidationError as e:
            log.critical("Default configuration is invalid: %s", e)
            raise RuntimeError(f"Default configuration is invalid, cannot start: {e}") from e


settings: "Config" = cast("Config", LazyConfig())
