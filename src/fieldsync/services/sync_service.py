"""Caller-facing service: local-first writes, background sync and bulk jobs."""

import logging
from dataclasses import replace
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Optional

from ..config import CheckpointConfig, SyncConfig
from ..domain.models import (
    DrainResult,
    Operation,
    Record,
    RecordSelector,
    SaveAck,
    SyncQueueEntry,
    SyncStatus,
)
from ..domain.payloads import PayloadError, remote_collection, typed_payload
from ..domain.results import Err, ErrorKind, Ok, Result, SyncError
from ..errors import LocalIOFailure
from ..history import SyncHistory
from ..monitoring.health_check import HealthChecker
from ..monitoring.metrics_exporter import MetricsExporter
from ..remote.base import RemoteStore
from ..storage.database import LocalDatabase
from ..storage.record_store import RecordFilter, RecordStore
from ..sync.backoff import BackoffPolicy
from ..sync.bulk import BulkSyncHandle, BulkSyncRunner
from ..sync.checkpoints import CheckpointManager, CheckpointRepository, SQLiteCheckpointRepository
from ..sync.engine import SyncEngine
from ..sync.queue import SyncQueue
from ..sync.recovery import RecoveryStrategy
from ..utils.logging import StructuredLogger

logger = logging.getLogger(__name__)


class SyncService:
    """Service wiring the record store, sync queue, engine and bulk sync jobs."""

    def __init__(
        self,
        database: LocalDatabase,
        remote: RemoteStore,
        sync_config: Optional[SyncConfig] = None,
        checkpoint_config: Optional[CheckpointConfig] = None,
        checkpoint_repository: Optional[CheckpointRepository] = None,
        clock: Callable[[], datetime] = datetime.now,
        events: Optional[StructuredLogger] = None,
        metrics_exporter: Optional[MetricsExporter] = None,
    ):
        self.sync_config = sync_config or SyncConfig()
        self.checkpoint_config = checkpoint_config or CheckpointConfig()
        self.clock = clock
        self.events = events
        self.metrics_exporter = metrics_exporter

        self.database = database
        self.database.init_database()
        self.remote = remote
        self.record_store = RecordStore(database)
        self.queue = SyncQueue(
            database,
            backoff=BackoffPolicy(
                base_seconds=self.sync_config.backoff_base_seconds,
                cap_seconds=self.sync_config.backoff_cap_seconds,
                jitter_factor=self.sync_config.backoff_jitter,
            ),
            max_retries=self.sync_config.max_retries,
            clock=clock,
        )
        self.engine = SyncEngine(
            self.record_store,
            self.queue,
            remote,
            attempt_timeout=self.sync_config.attempt_timeout_seconds,
            max_workers=self.sync_config.max_workers,
            clock=clock,
            events=events,
        )

        max_age = timedelta(seconds=self.checkpoint_config.max_age_seconds)
        self.checkpoints = CheckpointManager(
            checkpoint_repository or SQLiteCheckpointRepository(database),
            max_age=max_age,
            retention=timedelta(seconds=self.checkpoint_config.retention_seconds),
            clock=clock,
        )
        self.recovery = RecoveryStrategy(max_age=max_age, clock=clock)
        self.bulk = BulkSyncRunner(
            self.engine,
            self.record_store,
            self.checkpoints,
            self.recovery,
            batch_size=self.sync_config.bulk_batch_size,
            events=events,
        )
        self.history = SyncHistory(database, clock=clock)
        self.health_checker = HealthChecker(remote, self.queue)

    # Local-first record operations

    def save_record(self, record: Record) -> Result[SaveAck, SyncError]:
        """Persist a record locally and queue its remote write in one transaction.

        The record is stored unsynced whatever flags the caller passed in.
        """
        try:
            typed_payload(record)
            collection = remote_collection(record)
        except PayloadError as e:
            return Err(SyncError(ErrorKind.VALIDATION, str(e), record.id))

        now = self.clock()
        stored = replace(
            record, updated_at=now, synced=False, sync_error=None, sync_timestamp=None
        )

        try:
            existing = self.record_store.get(record.id)
            entry = SyncQueueEntry(
                operation=Operation.UPDATE if existing else Operation.CREATE,
                collection=collection,
                document_id=record.id,
                data=stored.remote_snapshot(),
                record_id=record.id,
                created_at=now,
            )
            with self.database.transaction() as conn:
                self.record_store.put(stored, conn=conn)
                self.queue.enqueue(entry, conn=conn)
        except LocalIOFailure as e:
            logger.error(f"Failed to save record {record.id}: {e}")
            return Err(SyncError(ErrorKind.LOCAL_IO_FAILURE, str(e), record.id))
        except (TypeError, ValueError) as e:
            logger.warning(f"Record {record.id} payload cannot be stored: {e}")
            return Err(SyncError(ErrorKind.VALIDATION, str(e), record.id))

        logger.debug(f"Saved record {record.id} and queued {entry.operation.value}")
        return Ok(SaveAck(record_id=record.id, queue_entry_id=entry.id, accepted_at=now))

    def load_record(self, record_id: str) -> Optional[Record]:
        return self.record_store.get(record_id)

    def list_unsynced(self, project_id: Optional[str] = None) -> List[Record]:
        """Records not yet confirmed by the remote store, newest first."""
        return list(self.record_store.scan(RecordFilter(project_id=project_id, synced=False)))

    def delete_record(self, record_id: str) -> Result[bool, SyncError]:
        """Delete a record locally and queue the remote delete.

        Returns:
            Ok(False) when the record does not exist
        """
        try:
            record = self.record_store.get(record_id)
            if record is None:
                return Ok(False)
            collection = remote_collection(record)
        except PayloadError as e:
            return Err(SyncError(ErrorKind.VALIDATION, str(e), record_id))
        except LocalIOFailure as e:
            return Err(SyncError(ErrorKind.LOCAL_IO_FAILURE, str(e), record_id))

        entry = SyncQueueEntry(
            operation=Operation.DELETE,
            collection=collection,
            document_id=record_id,
            record_id=record_id,
            created_at=self.clock(),
        )
        try:
            with self.database.transaction() as conn:
                self.record_store.delete(record_id, conn=conn)
                self.queue.enqueue(entry, conn=conn)
        except LocalIOFailure as e:
            logger.error(f"Failed to delete record {record_id}: {e}")
            return Err(SyncError(ErrorKind.LOCAL_IO_FAILURE, str(e), record_id))

        logger.info(f"Deleted record {record_id}, remote delete queued")
        return Ok(True)

    # Sync

    def drain_now(self) -> DrainResult:
        """Run one drain of the sync queue and record it."""
        result = self.engine.drain_once()
        if result.skipped:
            return result

        try:
            self.history.record_drain(result)
        except LocalIOFailure as e:
            logger.warning(f"Could not record drain history: {e}")

        if self.metrics_exporter:
            self.metrics_exporter.export_drain_metrics(
                result, self.queue.stats(), self.checkpoints.summary()
            )
        return result

    def queue_summary(self) -> Dict[str, Any]:
        """Backlog counts, last drain and checkpoint overview for operators."""
        summary: Dict[str, Any] = dict(self.queue.stats())
        summary["unsynced_records"] = self.record_store.count(synced=False)
        summary["draining"] = self.engine.is_draining
        last = self.engine.last_drain
        summary["last_drain"] = last.to_dict() if last else None
        checkpoint_summary = self.checkpoints.summary()
        summary["active_checkpoints"] = checkpoint_summary["active_checkpoints"]
        summary["stale_checkpoints"] = checkpoint_summary["stale_checkpoints"]
        return summary

    def list_failed_entries(self) -> List[SyncQueueEntry]:
        return self.queue.list_failed()

    def requeue_entry(self, entry_id: str) -> bool:
        return self.queue.requeue(entry_id)

    def purge_entry(self, entry_id: str) -> bool:
        return self.queue.purge(entry_id)

    # Bulk sync

    def start_bulk_sync(
        self, job_kind: str, selector: Optional[RecordSelector] = None
    ) -> BulkSyncHandle:
        return self.bulk.start(job_kind, selector or RecordSelector())

    def resume_bulk_sync(self, checkpoint_id: str) -> Result[BulkSyncHandle, SyncError]:
        return self.bulk.resume(checkpoint_id)

    def resume_incomplete(self, job_kind: str) -> Optional[Result[BulkSyncHandle, SyncError]]:
        """Resume the latest interrupted job of ``job_kind``, if there is one."""
        checkpoint = self.checkpoints.find_incomplete(job_kind)
        if checkpoint is None:
            return None
        return self.bulk.resume(checkpoint.id)

    def get_sync_status(self, checkpoint_id: str) -> Optional[SyncStatus]:
        checkpoint = self.checkpoints.get(checkpoint_id)
        if checkpoint is None:
            return None

        return SyncStatus(
            checkpoint_id=checkpoint.id,
            job_kind=checkpoint.job_kind,
            progress=checkpoint.progress_percentage,
            processed_records=checkpoint.processed_records,
            total_records=checkpoint.total_records,
            failed_records=list(checkpoint.failed_records),
            stale=self.checkpoints.is_stale(checkpoint),
            completed=checkpoint.is_completed,
            last_error=checkpoint.last_error,
            recommendations=self.recovery.recommendations(checkpoint),
        )

    def cleanup_checkpoints(self) -> int:
        return self.checkpoints.cleanup()

    def health_check(self) -> Dict[str, Any]:
        """Perform health check on the remote store and the queue."""
        health_status = self.health_checker.check_all()

        if self.metrics_exporter:
            self.metrics_exporter.export_health_metrics(
                health_status["remote"]["status"] == "healthy",
                health_status["queue"]["status"] == "healthy",
            )

        return health_status

    def close(self) -> None:
        self.bulk.shutdown(wait=True)
