"""Configuration manager that handles a YAML file and environment variables."""

import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

import yaml

logger = logging.getLogger(__name__)

_TRUE_VALUES = ("true", "1", "yes", "on")


@dataclass
class DatabaseConfig:
    path: Optional[str] = None
    timeout_seconds: float = 30.0


@dataclass
class RemoteConfig:
    project_id: str = ""
    api_token: Optional[str] = None
    base_url: str = "https://firestore.googleapis.com/v1"
    database_id: str = "(default)"


@dataclass
class SyncConfig:
    drain_interval_seconds: int = 300
    connectivity_check_interval_seconds: int = 60
    backoff_base_seconds: float = 5.0
    backoff_cap_seconds: float = 300.0
    backoff_jitter: float = 0.0
    max_retries: Optional[int] = None
    max_workers: int = 4
    attempt_timeout_seconds: float = 30.0
    bulk_batch_size: int = 10


@dataclass
class CheckpointConfig:
    max_age_seconds: int = 2 * 60 * 60
    retention_seconds: int = 24 * 60 * 60
    cleanup_interval_seconds: int = 60 * 60


@dataclass
class MonitoringConfig:
    enabled: bool = True
    metrics_dir: str = "./data/metrics"
    log_dir: str = "./logs"
    log_level: str = "INFO"
    history_retention_days: int = 30


@dataclass
class AppConfig:
    database: DatabaseConfig = field(default_factory=DatabaseConfig)
    remote: RemoteConfig = field(default_factory=RemoteConfig)
    sync: SyncConfig = field(default_factory=SyncConfig)
    checkpoints: CheckpointConfig = field(default_factory=CheckpointConfig)
    monitoring: MonitoringConfig = field(default_factory=MonitoringConfig)

    def validate(self) -> Tuple[bool, List[str]]:
        """Validate configuration values.

        Returns:
            Tuple of (is_valid, error_messages)
        """
        errors: List[str] = []

        if not self.remote.project_id:
            errors.append("remote.project_id is required")
        if not self.remote.base_url:
            errors.append("remote.base_url is required")
        if self.sync.drain_interval_seconds <= 0:
            errors.append("sync.drain_interval_seconds must be positive")
        if self.sync.connectivity_check_interval_seconds <= 0:
            errors.append("sync.connectivity_check_interval_seconds must be positive")
        if self.sync.backoff_base_seconds <= 0:
            errors.append("sync.backoff_base_seconds must be positive")
        if self.sync.backoff_cap_seconds < self.sync.backoff_base_seconds:
            errors.append("sync.backoff_cap_seconds must not be below the base delay")
        if not 0 <= self.sync.backoff_jitter <= 1:
            errors.append("sync.backoff_jitter must be between 0 and 1")
        if self.sync.max_retries is not None and self.sync.max_retries < 1:
            errors.append("sync.max_retries must be at least 1 when set")
        if self.sync.max_workers < 1:
            errors.append("sync.max_workers must be at least 1")
        if self.sync.attempt_timeout_seconds <= 0:
            errors.append("sync.attempt_timeout_seconds must be positive")
        if self.sync.bulk_batch_size < 1:
            errors.append("sync.bulk_batch_size must be at least 1")
        if self.checkpoints.max_age_seconds <= 0:
            errors.append("checkpoints.max_age_seconds must be positive")
        if self.monitoring.log_level.upper() not in ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"):
            errors.append(f"monitoring.log_level '{self.monitoring.log_level}' is not a log level")

        return len(errors) == 0, errors


class ConfigManager:
    """Configuration manager with YAML file, environment variable and default fallback."""

    def __init__(self, config_path: Optional[str] = None):
        """Initialize configuration manager.

        Args:
            config_path: Path to YAML configuration file (FIELDSYNC_CONFIG or
                ./config/fieldsync.yaml when omitted)
        """
        self.config_path = Path(
            config_path or os.getenv("FIELDSYNC_CONFIG", "config/fieldsync.yaml")
        )
        self.data: Dict[str, Any] = self._load_file()

    def _load_file(self) -> Dict[str, Any]:
        if not self.config_path.exists():
            logger.debug(f"No configuration file at {self.config_path}, using environment")
            return {}
        with open(self.config_path, "r", encoding="utf-8") as f:
            data = yaml.safe_load(f) or {}
        if not isinstance(data, dict):
            raise ValueError(f"Configuration file {self.config_path} must contain a mapping")
        return data

    def get_config(self, key: str, default: Any = None) -> Any:
        """Get configuration value with environment variable fallback.

        Args:
            key: Dotted configuration key (e.g., 'sync.max_workers')
            default: Default value if not found; its type drives env conversion

        Returns:
            Configuration value
        """
        node: Any = self.data
        for part in key.split("."):
            if not isinstance(node, dict) or part not in node:
                node = None
                break
            node = node[part]
        if node is not None:
            return node

        # Fallback to environment variable, e.g. SYNC_MAX_WORKERS
        env_value = os.getenv(key.replace(".", "_").upper())
        if env_value is not None:
            return self._convert(env_value, default)

        return default

    @staticmethod
    def _convert(value: str, default: Any) -> Any:
        if isinstance(default, bool):
            return value.lower() in _TRUE_VALUES
        if isinstance(default, int):
            return int(value)
        if isinstance(default, float):
            return float(value)
        return value

    def load_app_config(self) -> AppConfig:
        """Load complete application configuration.

        Returns:
            AppConfig instance with all configuration sections
        """
        database_config = DatabaseConfig(
            path=self.get_config("database.path"),
            timeout_seconds=self.get_config("database.timeout_seconds", 30.0),
        )

        remote_config = RemoteConfig(
            project_id=self.get_config("remote.project_id", ""),
            api_token=self.get_config("remote.api_token"),
            base_url=self.get_config("remote.base_url", "https://firestore.googleapis.com/v1"),
            database_id=self.get_config("remote.database_id", "(default)"),
        )

        max_retries = self.get_config("sync.max_retries")
        sync_config = SyncConfig(
            drain_interval_seconds=self.get_config("sync.drain_interval_seconds", 300),
            connectivity_check_interval_seconds=self.get_config(
                "sync.connectivity_check_interval_seconds", 60
            ),
            backoff_base_seconds=self.get_config("sync.backoff_base_seconds", 5.0),
            backoff_cap_seconds=self.get_config("sync.backoff_cap_seconds", 300.0),
            backoff_jitter=self.get_config("sync.backoff_jitter", 0.0),
            max_retries=int(max_retries) if max_retries is not None else None,
            max_workers=self.get_config("sync.max_workers", 4),
            attempt_timeout_seconds=self.get_config("sync.attempt_timeout_seconds", 30.0),
            bulk_batch_size=self.get_config("sync.bulk_batch_size", 10),
        )

        checkpoint_config = CheckpointConfig(
            max_age_seconds=self.get_config("checkpoints.max_age_seconds", 2 * 60 * 60),
            retention_seconds=self.get_config("checkpoints.retention_seconds", 24 * 60 * 60),
            cleanup_interval_seconds=self.get_config(
                "checkpoints.cleanup_interval_seconds", 60 * 60
            ),
        )

        monitoring_config = MonitoringConfig(
            enabled=self.get_config("monitoring.enabled", True),
            metrics_dir=self.get_config("monitoring.metrics_dir", "./data/metrics"),
            log_dir=self.get_config("monitoring.log_dir", "./logs"),
            log_level=self.get_config("monitoring.log_level", "INFO"),
            history_retention_days=self.get_config("monitoring.history_retention_days", 30),
        )

        return AppConfig(
            database=database_config,
            remote=remote_config,
            sync=sync_config,
            checkpoints=checkpoint_config,
            monitoring=monitoring_config,
        )
