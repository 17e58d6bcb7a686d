"""Factory for creating the remote client and sync service."""

from typing import Optional

from ..config import AppConfig
from ..monitoring.metrics_exporter import MetricsExporter
from ..remote.firestore_client import FirestoreClient
from ..services.sync_service import SyncService
from ..storage.database import LocalDatabase
from ..utils.logging import StructuredLogger


class ServiceFactory:
    """Factory for creating sync components with configuration."""

    @staticmethod
    def create_remote(config: AppConfig) -> FirestoreClient:
        """Create Firestore REST client."""
        if not config.remote.project_id:
            raise ValueError("REMOTE_PROJECT_ID is required")
        return FirestoreClient(
            config.remote.project_id,
            api_token=config.remote.api_token,
            base_url=config.remote.base_url,
            database_id=config.remote.database_id,
            default_timeout=config.sync.attempt_timeout_seconds,
        )

    @staticmethod
    def create_service(
        config: AppConfig, events: Optional[StructuredLogger] = None
    ) -> SyncService:
        """Create sync service over the local database and remote store."""
        database = LocalDatabase(config.database.path, timeout=config.database.timeout_seconds)
        metrics_exporter = (
            MetricsExporter(config.monitoring.metrics_dir) if config.monitoring.enabled else None
        )
        return SyncService(
            database,
            ServiceFactory.create_remote(config),
            sync_config=config.sync,
            checkpoint_config=config.checkpoints,
            events=events,
            metrics_exporter=metrics_exporter,
        )
