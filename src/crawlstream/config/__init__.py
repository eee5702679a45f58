"""Configuration models and loaders."""

from .config import (
    CheckpointConfig,
    CheckpointPosition,
    Config,
    ConnectorConfig,
    CrawlConfig,
    MonitoringConfig,
    SourceConfig,
    find_config_file,
    settings,
)

__all__ = [
    "CheckpointConfig",
    "CheckpointPosition",
    "Config",
    "ConnectorConfig",
    "CrawlConfig",
    "MonitoringConfig",
    "SourceConfig",
    "find_config_file",
    "settings",
]
