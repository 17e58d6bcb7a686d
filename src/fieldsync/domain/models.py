"""Domain models and value objects for records and sync operations."""

import uuid
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional


class RecordKind(str, Enum):
    """Kind of record, one local partition per kind."""

    READING = "reading"
    ROLLUP = "rollup"
    REFERENCE = "reference"

    @property
    def partition(self) -> str:
        return {
            RecordKind.READING: "readings",
            RecordKind.ROLLUP: "rollups",
            RecordKind.REFERENCE: "reference",
        }[self]


class RecordStatus(str, Enum):
    COMPLETE = "complete"
    INCOMPLETE = "incomplete"


class Operation(str, Enum):
    """Remote write intent carried by a queue entry."""

    CREATE = "create"
    UPDATE = "update"
    DELETE = "delete"


def _parse_dt(value: Optional[str]) -> Optional[datetime]:
    return datetime.fromisoformat(value) if value else None


def _format_dt(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


@dataclass
class Record:
    """A reading, daily rollup or cached reference entity persisted locally."""

    id: str
    project_id: str
    kind: RecordKind = RecordKind.READING
    payload: Dict[str, Any] = field(default_factory=dict)
    status: RecordStatus = RecordStatus.INCOMPLETE
    created_by: str = ""
    log_id: Optional[str] = None
    created_at: datetime = field(default_factory=datetime.now)
    updated_at: datetime = field(default_factory=datetime.now)
    synced: bool = False
    sync_error: Optional[str] = None
    sync_timestamp: Optional[datetime] = None

    def to_dict(self) -> Dict[str, Any]:
        """Serialize to the open mapping used by storage and the wire."""
        return {
            "id": self.id,
            "projectId": self.project_id,
            "kind": self.kind.value,
            "logId": self.log_id,
            "data": dict(self.payload),
            "status": self.status.value,
            "createdAt": _format_dt(self.created_at),
            "updatedAt": _format_dt(self.updated_at),
            "createdBy": self.created_by,
            "isSynced": self.synced,
            "syncError": self.sync_error,
            "syncTimestamp": _format_dt(self.sync_timestamp),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Record":
        return cls(
            id=data["id"],
            project_id=data["projectId"],
            kind=RecordKind(data.get("kind", RecordKind.READING.value)),
            log_id=data.get("logId"),
            payload=dict(data.get("data") or {}),
            status=RecordStatus(data.get("status", RecordStatus.INCOMPLETE.value)),
            created_at=_parse_dt(data.get("createdAt")) or datetime.now(),
            updated_at=_parse_dt(data.get("updatedAt")) or datetime.now(),
            created_by=data.get("createdBy", ""),
            synced=bool(data.get("isSynced", False)),
            sync_error=data.get("syncError"),
            sync_timestamp=_parse_dt(data.get("syncTimestamp")),
        )

    def remote_snapshot(self) -> Dict[str, Any]:
        """Payload written to the remote store, without local sync bookkeeping."""
        snapshot = self.to_dict()
        for key in ("isSynced", "syncError", "syncTimestamp"):
            snapshot.pop(key)
        return snapshot


@dataclass
class SyncQueueEntry:
    """One pending remote-write intent with an immutable payload snapshot."""

    operation: Operation
    collection: str
    document_id: str
    data: Dict[str, Any] = field(default_factory=dict)
    record_id: Optional[str] = None
    id: str = field(default_factory=lambda: uuid.uuid4().hex)
    created_at: datetime = field(default_factory=datetime.now)
    sequence: Optional[int] = None
    retry_count: int = 0
    last_error: Optional[str] = None
    last_attempt: Optional[datetime] = None
    retryable: bool = True

    @property
    def path(self) -> str:
        return f"{self.collection}/{self.document_id}"

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "operation": self.operation.value,
            "collection": self.collection,
            "documentId": self.document_id,
            "recordId": self.record_id,
            "data": self.data,
            "createdAt": _format_dt(self.created_at),
            "sequence": self.sequence,
            "retryCount": self.retry_count,
            "lastError": self.last_error,
            "lastAttempt": _format_dt(self.last_attempt),
            "retryable": self.retryable,
        }


@dataclass(frozen=True)
class RecordSelector:
    """Serializable selection of records for a bulk sync job."""

    project_id: Optional[str] = None
    kind: Optional[RecordKind] = None
    created_after: Optional[datetime] = None
    created_before: Optional[datetime] = None
    unsynced_only: bool = True

    def to_dict(self) -> Dict[str, Any]:
        return {
            "project_id": self.project_id,
            "kind": self.kind.value if self.kind else None,
            "created_after": _format_dt(self.created_after),
            "created_before": _format_dt(self.created_before),
            "unsynced_only": self.unsynced_only,
        }


@dataclass(frozen=True)
class SaveAck:
    """Acknowledgment that a record was stored and queued for sync."""

    record_id: str
    queue_entry_id: str
    accepted_at: datetime


@dataclass
class DrainResult:
    """Statistics for one drain of the sync queue."""

    started_at: datetime
    finished_at: Optional[datetime] = None
    attempted: int = 0
    succeeded: int = 0
    failed_transient: int = 0
    failed_permanent: int = 0
    skipped: bool = False
    errors: List[Dict[str, Any]] = field(default_factory=list)

    @property
    def failed(self) -> int:
        return self.failed_transient + self.failed_permanent

    @property
    def duration_seconds(self) -> float:
        if self.finished_at is None:
            return 0.0
        return (self.finished_at - self.started_at).total_seconds()

    @classmethod
    def skipped_run(cls) -> "DrainResult":
        """Result for a drain that did not run because another was in flight."""
        now = datetime.now()
        return cls(started_at=now, finished_at=now, skipped=True)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "started_at": self.started_at.isoformat(),
            "finished_at": _format_dt(self.finished_at),
            "attempted": self.attempted,
            "succeeded": self.succeeded,
            "failed_transient": self.failed_transient,
            "failed_permanent": self.failed_permanent,
            "skipped": self.skipped,
            "duration_seconds": self.duration_seconds,
            "errors": self.errors,
        }


@dataclass(frozen=True)
class SyncStatus:
    """Caller-facing status of a bulk sync job."""

    checkpoint_id: str
    job_kind: str
    progress: float
    processed_records: int
    total_records: int
    failed_records: List[str]
    stale: bool
    completed: bool
    last_error: Optional[str]
    recommendations: List[str]
