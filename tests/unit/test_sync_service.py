"""Tests for the caller-facing SyncService."""

from datetime import datetime
from unittest.mock import Mock, patch

from conftest import make_reading, reading_path

from fieldsync.domain.models import Record, RecordKind
from fieldsync.domain.results import Err, ErrorKind, Ok
from fieldsync.errors import LocalIOFailure, RemoteUnreachable
from fieldsync.services.sync_service import SyncService


class TestSyncService:
    """Test SyncService functionality."""

    def test_init(self, database, remote):
        """Test SyncService initialization wires its components."""
        service = SyncService(database, remote)

        assert service.remote is remote
        assert service.engine.queue is service.queue
        assert service.health_checker is not None
        service.close()

    def test_save_then_load_round_trip(self, service, clock):
        record = make_reading(temp=70)

        result = service.save_record(record)

        assert isinstance(result, Ok)
        assert result.value.record_id == "r1"
        assert result.value.accepted_at == clock()
        loaded = service.load_record("r1")
        assert loaded.payload == record.payload
        assert loaded.synced is False
        assert loaded.updated_at == clock()

        pending = service.queue.pending()
        assert [e.id for e in pending] == [result.value.queue_entry_id]
        assert pending[0].operation.value == "create"
        assert pending[0].path == "projects/p1/logs/log1/entries/r1"

    def test_second_save_queues_update(self, service):
        service.save_record(make_reading(temp=70))
        service.save_record(make_reading(temp=75))

        assert [e.operation.value for e in service.queue.pending()] == ["create", "update"]

    def test_save_resets_sync_flags(self, service):
        record = make_reading()
        record.synced = True
        record.sync_error = "old"

        service.save_record(record)

        loaded = service.load_record("r1")
        assert loaded.synced is False
        assert loaded.sync_error is None

    def test_invalid_payload_is_rejected(self, service):
        record = Record(id="r1", project_id="p1", kind=RecordKind.READING, log_id="log1")

        result = service.save_record(record)

        assert isinstance(result, Err)
        assert result.error.kind is ErrorKind.VALIDATION
        assert service.load_record("r1") is None
        assert len(service.queue) == 0

    def test_reading_without_log_is_rejected(self, service):
        record = make_reading()
        record.log_id = None

        result = service.save_record(record)

        assert isinstance(result, Err)
        assert "log id" in result.error.message

    def test_save_is_atomic_on_local_failure(self, service):
        with patch.object(
            service.queue, "enqueue", side_effect=LocalIOFailure("disk full")
        ):
            result = service.save_record(make_reading())

        assert isinstance(result, Err)
        assert result.error.kind is ErrorKind.LOCAL_IO_FAILURE
        assert service.load_record("r1") is None
        assert len(service.queue) == 0

    def test_datetime_values_are_stored_as_iso_strings(self, service, remote):
        record = make_reading()
        record.payload["values"]["recordedAt"] = datetime(2024, 6, 1, 8, 0)

        result = service.save_record(record)

        assert isinstance(result, Ok)
        loaded = service.load_record("r1")
        assert loaded.payload["values"]["recordedAt"] == "2024-06-01T08:00:00"
        snapshot = service.queue.pending()[0].data
        assert snapshot["data"]["values"]["recordedAt"] == "2024-06-01T08:00:00"

        service.drain_now()
        stored = remote.documents[reading_path()]
        assert stored["data"]["values"]["recordedAt"] == "2024-06-01T08:00:00"

    def test_unserializable_payload_is_rejected(self, service):
        record = make_reading()
        record.payload["values"]["sensor"] = object()

        result = service.save_record(record)

        assert isinstance(result, Err)
        assert result.error.kind is ErrorKind.VALIDATION
        assert service.load_record("r1") is None
        assert len(service.queue) == 0

    def test_list_unsynced(self, service, remote):
        service.save_record(make_reading("r1"))
        service.save_record(make_reading("r2", project_id="p2"))

        assert [r.id for r in service.list_unsynced()] == ["r2", "r1"]
        assert [r.id for r in service.list_unsynced("p2")] == ["r2"]

        service.drain_now()
        assert service.list_unsynced() == []

    def test_delete_record(self, service):
        service.save_record(make_reading())

        assert service.delete_record("r1") == Ok(True)
        assert service.delete_record("r1") == Ok(False)
        assert service.load_record("r1") is None
        assert [e.operation.value for e in service.queue.pending()] == ["create", "delete"]

    def test_drain_now_records_history(self, service, remote):
        service.save_record(make_reading("r1"))
        service.save_record(make_reading("r2"))
        remote.fail_next(RemoteUnreachable("down"))

        result = service.drain_now()

        assert result.attempted == 2
        runs = service.history.get_last_runs()
        assert len(runs) == 1
        assert runs[0]["success"] is False
        assert runs[0]["succeeded"] == 1
        assert runs[0]["failed_transient"] == 1

    def test_drain_now_exports_metrics(self, database, remote, clock):
        exporter = Mock()
        service = SyncService(database, remote, clock=clock, metrics_exporter=exporter)
        service.save_record(make_reading())

        service.drain_now()

        exporter.export_drain_metrics.assert_called_once()
        service.close()

    def test_queue_summary(self, service, remote):
        service.save_record(make_reading("r1"))
        service.save_record(make_reading("r2"))
        remote.fail_next(RemoteUnreachable("down"))
        service.drain_now()

        summary = service.queue_summary()

        assert summary["pending"] == 1
        assert summary["retrying"] == 1
        assert summary["unsynced_records"] == 1
        assert summary["draining"] is False
        assert summary["last_drain"]["succeeded"] == 1
        assert summary["active_checkpoints"] == 0

    def test_purge_entry(self, service):
        ack = service.save_record(make_reading()).value

        assert service.purge_entry(ack.queue_entry_id) is True
        assert len(service.queue) == 0

    def test_health_check(self, service):
        health = service.health_check()

        assert health["remote"]["status"] == "healthy"
        assert health["queue"]["status"] == "healthy"
        assert health["overall"]["status"] == "healthy"
