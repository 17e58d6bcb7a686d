"""Configuration management module for fieldsync."""

from typing import Optional

from dotenv import load_dotenv

from .manager import (
    AppConfig,
    CheckpointConfig,
    ConfigManager,
    DatabaseConfig,
    MonitoringConfig,
    RemoteConfig,
    SyncConfig,
)

load_dotenv()


def load_config(config_path: Optional[str] = None) -> AppConfig:
    """Load configuration from YAML file, environment and defaults."""
    return ConfigManager(config_path).load_app_config()


__all__ = [
    "AppConfig",
    "CheckpointConfig",
    "ConfigManager",
    "DatabaseConfig",
    "MonitoringConfig",
    "RemoteConfig",
    "SyncConfig",
    "load_config",
]
