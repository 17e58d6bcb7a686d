"""Checkpoints that make bulk sync jobs resumable after interruption."""

import json
import logging
import threading
import uuid
from abc import ABC, abstractmethod
from dataclasses import dataclass, field, replace
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Optional, Sequence

from ..storage.database import LocalDatabase, to_json
from ..storage.record_store import db_timestamp

logger = logging.getLogger(__name__)

DEFAULT_MAX_AGE = timedelta(hours=2)
DEFAULT_RETENTION = timedelta(hours=24)


@dataclass(frozen=True)
class SyncCheckpoint:
    """Progress of one bulk sync job."""

    id: str
    job_kind: str
    start_time: datetime
    total_records: int
    processed_records: int = 0
    current_batch_number: int = 0
    processed_batches: List[str] = field(default_factory=list)
    failed_records: List[str] = field(default_factory=list)
    context: Dict[str, Any] = field(default_factory=dict)
    is_completed: bool = False
    completed_at: Optional[datetime] = None
    last_error: Optional[str] = None

    @property
    def progress_percentage(self) -> float:
        if self.total_records <= 0:
            return 0.0
        return max(0.0, min(100.0, self.processed_records / self.total_records * 100))

    def elapsed_time(self, now: Optional[datetime] = None) -> timedelta:
        return (now or datetime.now()) - self.start_time

    def is_stale(self, now: Optional[datetime] = None, max_age: timedelta = DEFAULT_MAX_AGE) -> bool:
        """Incomplete and running for longer than ``max_age``."""
        return not self.is_completed and self.elapsed_time(now) > max_age

    def to_dict(self, now: Optional[datetime] = None) -> Dict[str, Any]:
        return {
            "id": self.id,
            "jobKind": self.job_kind,
            "startTime": db_timestamp(self.start_time),
            "totalRecords": self.total_records,
            "processedRecords": self.processed_records,
            "currentBatchNumber": self.current_batch_number,
            "processedBatches": list(self.processed_batches),
            "failedRecords": list(self.failed_records),
            "context": self.context,
            "isCompleted": self.is_completed,
            "completedAt": db_timestamp(self.completed_at) if self.completed_at else None,
            "lastError": self.last_error,
            "progressPercentage": self.progress_percentage,
            "elapsedTimeMs": int(self.elapsed_time(now).total_seconds() * 1000),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "SyncCheckpoint":
        completed_at = data.get("completedAt")
        return cls(
            id=data["id"],
            job_kind=data["jobKind"],
            start_time=datetime.fromisoformat(data["startTime"]),
            total_records=data["totalRecords"],
            processed_records=data.get("processedRecords", 0),
            current_batch_number=data.get("currentBatchNumber", 0),
            processed_batches=list(data.get("processedBatches", [])),
            failed_records=list(data.get("failedRecords", [])),
            context=dict(data.get("context", {})),
            is_completed=data.get("isCompleted", False),
            completed_at=datetime.fromisoformat(completed_at) if completed_at else None,
            last_error=data.get("lastError"),
        )


@dataclass(frozen=True)
class ProgressDelta:
    """Outcome of one completed batch, applied at most once per ``batch_id``."""

    batch_id: str
    batch_number: int
    processed: int = 0
    failed_record_ids: Sequence[str] = ()
    recovered_record_ids: Sequence[str] = ()
    error: Optional[str] = None


class CheckpointRepository(ABC):
    """Storage for checkpoints, injected into the manager."""

    @abstractmethod
    def get(self, checkpoint_id: str) -> Optional[SyncCheckpoint]: ...

    @abstractmethod
    def save(self, checkpoint: SyncCheckpoint) -> None: ...

    @abstractmethod
    def delete(self, checkpoint_id: str) -> None: ...

    @abstractmethod
    def list_all(self) -> List[SyncCheckpoint]: ...


class InMemoryCheckpointRepository(CheckpointRepository):
    """Non-durable repository for ephemeral jobs and tests."""

    def __init__(self) -> None:
        self._checkpoints: Dict[str, SyncCheckpoint] = {}

    def get(self, checkpoint_id: str) -> Optional[SyncCheckpoint]:
        return self._checkpoints.get(checkpoint_id)

    def save(self, checkpoint: SyncCheckpoint) -> None:
        self._checkpoints[checkpoint.id] = checkpoint

    def delete(self, checkpoint_id: str) -> None:
        self._checkpoints.pop(checkpoint_id, None)

    def list_all(self) -> List[SyncCheckpoint]:
        return sorted(self._checkpoints.values(), key=lambda c: c.start_time)


class SQLiteCheckpointRepository(CheckpointRepository):
    """Durable repository in the local database's checkpoints partition."""

    def __init__(self, database: LocalDatabase) -> None:
        self.database = database

    def get(self, checkpoint_id: str) -> Optional[SyncCheckpoint]:
        with self.database.get_connection() as conn:
            row = conn.execute(
                "SELECT body FROM checkpoints WHERE id = ?", (checkpoint_id,)
            ).fetchone()
        return SyncCheckpoint.from_dict(json.loads(row["body"])) if row else None

    def save(self, checkpoint: SyncCheckpoint) -> None:
        with self.database.transaction() as conn:
            conn.execute(
                """
                INSERT OR REPLACE INTO checkpoints (id, job_kind, start_time, is_completed, body)
                VALUES (?, ?, ?, ?, ?)
                """,
                (
                    checkpoint.id,
                    checkpoint.job_kind,
                    db_timestamp(checkpoint.start_time),
                    1 if checkpoint.is_completed else 0,
                    to_json(checkpoint.to_dict()),
                ),
            )

    def delete(self, checkpoint_id: str) -> None:
        with self.database.transaction() as conn:
            conn.execute("DELETE FROM checkpoints WHERE id = ?", (checkpoint_id,))

    def list_all(self) -> List[SyncCheckpoint]:
        with self.database.get_connection() as conn:
            rows = conn.execute("SELECT body FROM checkpoints ORDER BY start_time").fetchall()
        return [SyncCheckpoint.from_dict(json.loads(row["body"])) for row in rows]


class CheckpointManager:
    """Creates, advances and retires checkpoints.

    All mutations go through one lock, so a checkpoint has a single writer
    and its processed count only moves forward.
    """

    def __init__(
        self,
        repository: CheckpointRepository,
        max_age: timedelta = DEFAULT_MAX_AGE,
        retention: timedelta = DEFAULT_RETENTION,
        clock: Callable[[], datetime] = datetime.now,
    ) -> None:
        """Initialize checkpoint manager.

        Args:
            repository: Where checkpoints are stored
            max_age: Age after which an incomplete checkpoint counts as stale
            retention: Age after which any checkpoint is garbage-collected
            clock: Source of the current time
        """
        self.repository = repository
        self.max_age = max_age
        self.retention = retention
        self.clock = clock
        self._lock = threading.RLock()

    def create_checkpoint(
        self,
        job_kind: str,
        total_records: int,
        context: Optional[Dict[str, Any]] = None,
    ) -> SyncCheckpoint:
        start = self.clock()
        checkpoint_id = f"{job_kind}_{int(start.timestamp() * 1000)}_{uuid.uuid4().hex[:6]}"
        checkpoint = SyncCheckpoint(
            id=checkpoint_id,
            job_kind=job_kind,
            start_time=start,
            total_records=max(0, total_records),
            context=dict(context or {}),
        )
        with self._lock:
            self.repository.save(checkpoint)
        logger.info(f"Created checkpoint {checkpoint_id} for {total_records} records")
        return checkpoint

    def get(self, checkpoint_id: str) -> Optional[SyncCheckpoint]:
        return self.repository.get(checkpoint_id)

    def update_checkpoint(self, checkpoint_id: str, delta: ProgressDelta) -> Optional[SyncCheckpoint]:
        """Apply a batch outcome.

        Applying the same ``batch_id`` twice changes nothing, and completed
        checkpoints are left untouched.

        Returns:
            Checkpoint after the update, or None if it does not exist
        """
        with self._lock:
            checkpoint = self.repository.get(checkpoint_id)
            if checkpoint is None:
                logger.warning(f"Cannot update unknown checkpoint {checkpoint_id}")
                return None

            if checkpoint.is_completed:
                logger.info(f"Ignoring update to completed checkpoint {checkpoint_id}")
                return checkpoint

            if delta.batch_id in checkpoint.processed_batches:
                logger.debug(f"Batch {delta.batch_id} already applied to {checkpoint_id}")
                return checkpoint

            recovered = set(delta.recovered_record_ids)
            failed = [r for r in checkpoint.failed_records if r not in recovered]
            failed.extend(r for r in delta.failed_record_ids if r not in failed)

            updated = replace(
                checkpoint,
                processed_records=min(
                    checkpoint.total_records,
                    checkpoint.processed_records + max(0, delta.processed),
                ),
                current_batch_number=max(checkpoint.current_batch_number, delta.batch_number),
                processed_batches=[*checkpoint.processed_batches, delta.batch_id],
                failed_records=failed,
                last_error=delta.error or checkpoint.last_error,
            )
            self.repository.save(updated)

        logger.debug(
            f"Checkpoint {checkpoint_id}: {updated.progress_percentage:.1f}% "
            f"({updated.processed_records}/{updated.total_records}), batch {delta.batch_id}"
        )
        return updated

    def complete_checkpoint(self, checkpoint_id: str) -> bool:
        """Mark a checkpoint completed.

        Returns:
            True if this call completed it, False if missing or already completed
        """
        with self._lock:
            checkpoint = self.repository.get(checkpoint_id)
            if checkpoint is None or checkpoint.is_completed:
                return False
            self.repository.save(
                replace(checkpoint, is_completed=True, completed_at=self.clock())
            )
        logger.info(f"Completed checkpoint {checkpoint_id}")
        return True

    def record_error(self, checkpoint_id: str, error: str) -> None:
        with self._lock:
            checkpoint = self.repository.get(checkpoint_id)
            if checkpoint is None or checkpoint.is_completed:
                return
            self.repository.save(replace(checkpoint, last_error=error))
        logger.warning(f"Checkpoint {checkpoint_id} error: {error}")

    def update_context(self, checkpoint_id: str, values: Dict[str, Any]) -> None:
        with self._lock:
            checkpoint = self.repository.get(checkpoint_id)
            if checkpoint is None or checkpoint.is_completed:
                return
            self.repository.save(replace(checkpoint, context={**checkpoint.context, **values}))

    def list_active(self) -> List[SyncCheckpoint]:
        return [c for c in self.repository.list_all() if not c.is_completed]

    def list_stale(self, max_age: Optional[timedelta] = None) -> List[SyncCheckpoint]:
        now = self.clock()
        if max_age is None:
            max_age = self.max_age
        return [c for c in self.repository.list_all() if c.is_stale(now, max_age)]

    def is_stale(self, checkpoint: SyncCheckpoint) -> bool:
        return checkpoint.is_stale(self.clock(), self.max_age)

    def find_incomplete(self, job_kind: str) -> Optional[SyncCheckpoint]:
        """Most recent incomplete, non-stale checkpoint of ``job_kind``."""
        now = self.clock()
        candidates = [
            c
            for c in self.repository.list_all()
            if c.job_kind == job_kind and not c.is_completed and not c.is_stale(now, self.max_age)
        ]
        return candidates[-1] if candidates else None

    def cleanup(self, retention: Optional[timedelta] = None) -> int:
        """Purge checkpoints older than the retention window, completed or not.

        Returns:
            Number of checkpoints removed
        """
        now = self.clock()
        if retention is None:
            retention = self.retention
        removed = 0
        with self._lock:
            for checkpoint in self.repository.list_all():
                if now - checkpoint.start_time > retention:
                    self.repository.delete(checkpoint.id)
                    removed += 1
        if removed:
            logger.info(f"Cleaned up {removed} checkpoints older than {retention}")
        return removed

    def summary(self) -> Dict[str, Any]:
        """Checkpoint counts and active details for monitoring."""
        now = self.clock()
        checkpoints = self.repository.list_all()
        active = [c for c in checkpoints if not c.is_completed]
        return {
            "total_checkpoints": len(checkpoints),
            "active_checkpoints": len(active),
            "stale_checkpoints": len([c for c in active if c.is_stale(now, self.max_age)]),
            "completed_checkpoints": len(checkpoints) - len(active),
            "checkpoint_details": [c.to_dict(now) for c in active],
        }
