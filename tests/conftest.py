"""Shared fixtures: temporary local database, fake clock and scripted remote store."""

import threading
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional

import pytest

from fieldsync.config import SyncConfig
from fieldsync.domain.models import Record, RecordKind
from fieldsync.remote.base import RemoteStore
from fieldsync.services.sync_service import SyncService
from fieldsync.storage.database import LocalDatabase
from fieldsync.storage.record_store import RecordStore
from fieldsync.sync.engine import SyncEngine
from fieldsync.sync.queue import SyncQueue


class FakeClock:
    """Manually advanced clock."""

    def __init__(self, start: Optional[datetime] = None):
        self.now = start or datetime(2024, 6, 1, 8, 0, 0)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs: float) -> None:
        self.now += timedelta(**kwargs)


class FakeRemoteStore(RemoteStore):
    """In-memory document store that can be scripted to fail."""

    def __init__(self) -> None:
        self.documents: Dict[str, Dict[str, Any]] = {}
        self.calls: List[tuple] = []
        self._failures: Dict[Optional[str], List[Exception]] = {}
        self._lock = threading.Lock()
        self._gate: Optional[threading.Event] = None
        self.entered = threading.Event()

    def hold_next(self) -> threading.Event:
        """Block the next write until the returned event is set."""
        gate = threading.Event()
        with self._lock:
            self._gate = gate
            self.entered.clear()
        return gate

    def _wait_at_gate(self) -> None:
        with self._lock:
            gate, self._gate = self._gate, None
        if gate is not None:
            self.entered.set()
            gate.wait(timeout=5)

    def fail_next(self, *errors: Exception, path: Optional[str] = None) -> None:
        """Raise ``errors`` on the next calls, for one path or for any path."""
        with self._lock:
            self._failures.setdefault(path, []).extend(errors)

    def _maybe_fail(self, path: str) -> None:
        with self._lock:
            for key in (path, None):
                pending = self._failures.get(key)
                if pending:
                    raise pending.pop(0)

    def set_merge(self, path, data, timeout=None):
        with self._lock:
            self.calls.append(("set_merge", path, dict(data)))
        self._wait_at_gate()
        self._maybe_fail(path)
        with self._lock:
            self.documents.setdefault(path, {}).update(data)

    def get(self, path, timeout=None):
        with self._lock:
            document = self.documents.get(path)
            return dict(document) if document is not None else None

    def delete(self, path, timeout=None):
        with self._lock:
            self.calls.append(("delete", path, None))
        self._maybe_fail(path)
        with self._lock:
            self.documents.pop(path, None)

    def writes_to(self, path: str) -> List[Dict[str, Any]]:
        return [data for op, p, data in self.calls if op == "set_merge" and p == path]


def make_reading(
    record_id: str = "r1",
    temp: float = 70,
    project_id: str = "p1",
    log_id: str = "log1",
    created_at: Optional[datetime] = None,
) -> Record:
    return Record(
        id=record_id,
        project_id=project_id,
        kind=RecordKind.READING,
        log_id=log_id,
        payload={"hour": "08:00", "values": {"temp": temp}},
        created_by="operator-1",
        created_at=created_at or datetime(2024, 6, 1, 8, 0, 0),
    )


def reading_path(record_id: str = "r1", project_id: str = "p1", log_id: str = "log1") -> str:
    return f"projects/{project_id}/logs/{log_id}/entries/{record_id}"


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def database(tmp_path):
    db = LocalDatabase(str(tmp_path / "fieldsync.db"))
    db.init_database()
    return db


@pytest.fixture
def remote():
    return FakeRemoteStore()


@pytest.fixture
def record_store(database):
    return RecordStore(database)


@pytest.fixture
def queue(database, clock):
    return SyncQueue(database, clock=clock)


@pytest.fixture
def engine(record_store, queue, remote, clock):
    return SyncEngine(record_store, queue, remote, attempt_timeout=1.0, clock=clock)


@pytest.fixture
def service(database, remote, clock):
    svc = SyncService(database, remote, sync_config=SyncConfig(bulk_batch_size=10), clock=clock)
    yield svc
    svc.close()
