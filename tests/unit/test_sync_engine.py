"""Tests for draining the sync queue against the remote store."""

import threading

from conftest import make_reading, reading_path

from fieldsync.domain.models import Record, RecordKind
from fieldsync.domain.results import ErrorKind
from fieldsync.errors import RemoteRejected, RemoteUnreachable
from fieldsync.sync.engine import classify_exception


class TestClassifyException:
    """Test mapping of remote exceptions onto error kinds."""

    def test_known_exceptions(self):
        assert classify_exception(RemoteUnreachable("down")) is ErrorKind.REMOTE_UNREACHABLE
        assert classify_exception(RemoteRejected("no", 400)) is ErrorKind.REMOTE_REJECTED
        assert classify_exception(TimeoutError()) is ErrorKind.REMOTE_UNREACHABLE
        assert classify_exception(ConnectionError()) is ErrorKind.REMOTE_UNREACHABLE

    def test_unknown_exceptions_use_message(self):
        assert classify_exception(ValueError("Malformed document")) is ErrorKind.REMOTE_REJECTED
        assert classify_exception(RuntimeError("Permission denied")) is ErrorKind.REMOTE_REJECTED
        assert classify_exception(RuntimeError("boom")) is ErrorKind.REMOTE_UNREACHABLE


class TestSyncEngine:
    """Test SyncEngine drain behavior."""

    def test_updates_arrive_in_order_and_queue_empties(self, service, remote):
        """Two updates of one document end as the last value."""
        service.save_record(make_reading(temp=70))
        service.save_record(make_reading(temp=75))

        result = service.engine.drain_once()

        assert result.attempted == 2
        assert result.succeeded == 2
        writes = remote.writes_to(reading_path())
        assert [w["data"]["values"]["temp"] for w in writes] == [70, 75]
        assert remote.documents[reading_path()]["data"]["values"]["temp"] == 75
        assert len(service.queue) == 0

        record = service.load_record("r1")
        assert record.synced is True
        assert record.sync_timestamp is not None

    def test_remote_document_has_no_local_sync_fields(self, service, remote):
        service.save_record(make_reading())
        service.engine.drain_once()

        document = remote.documents[reading_path()]
        assert document["id"] == "r1"
        assert "isSynced" not in document
        assert "syncError" not in document

    def test_transient_failures_then_success(self, service, remote, clock):
        """Two unreachable attempts, then the third one lands."""
        service.save_record(make_reading())
        entry_id = service.queue.pending()[0].id
        remote.fail_next(RemoteUnreachable("network down"), RemoteUnreachable("network down"))

        first = service.engine.drain_once()
        assert first.failed_transient == 1
        assert service.queue.get(entry_id).retry_count == 1
        assert service.load_record("r1").synced is False

        # still inside the backoff window
        assert service.engine.drain_once().attempted == 0

        clock.advance(seconds=5)
        service.engine.drain_once()
        entry = service.queue.get(entry_id)
        assert entry.retry_count == 2
        assert entry.last_error == "network down"

        clock.advance(seconds=10)
        last = service.engine.drain_once()
        assert last.succeeded == 1
        assert service.queue.get(entry_id) is None

        record = service.load_record("r1")
        assert record.synced is True
        assert record.sync_error is None
        assert len(remote.writes_to(reading_path())) == 3

    def test_timeout_is_transient(self, service, remote):
        service.save_record(make_reading())
        remote.fail_next(RemoteUnreachable("read timed out", timed_out=True))

        result = service.engine.drain_once()

        assert result.failed_transient == 1
        assert result.failed_permanent == 0
        assert "outcome unknown" in result.errors[0]["message"]
        assert service.queue.pending()[0].retryable is True

    def test_rejection_is_permanent(self, service, remote, clock):
        service.save_record(make_reading(temp=70))
        remote.fail_next(RemoteRejected("403: permission denied", status_code=403))

        result = service.engine.drain_once()

        assert result.failed_permanent == 1
        assert result.errors[0]["kind"] == ErrorKind.REMOTE_REJECTED.value
        failed = service.queue.list_failed()
        assert len(failed) == 1
        record = service.load_record("r1")
        assert record.synced is False
        assert "permission denied" in record.sync_error

        # later writes of the same document wait behind the rejected entry
        service.save_record(make_reading(temp=75))
        clock.advance(hours=1)
        assert service.engine.drain_once().attempted == 0

        service.requeue_entry(failed[0].id)
        assert service.engine.drain_once().succeeded == 2
        assert remote.documents[reading_path()]["data"]["values"]["temp"] == 75

    def test_unexpected_exception_does_not_abort_drain(self, service, remote):
        service.save_record(make_reading("r1"))
        service.save_record(make_reading("r2"))
        remote.fail_next(RuntimeError("socket reset"), path=reading_path("r1"))

        result = service.engine.drain_once()

        assert result.attempted == 2
        assert result.succeeded == 1
        assert result.failed_transient == 1
        assert service.load_record("r2").synced is True
        assert service.load_record("r1").synced is False

    def test_failure_stops_rest_of_document_chain(self, service, remote):
        service.save_record(make_reading(temp=70))
        service.save_record(make_reading(temp=75))
        remote.fail_next(RemoteUnreachable("down"))

        result = service.engine.drain_once()

        assert result.attempted == 1
        assert len(remote.writes_to(reading_path())) == 1
        assert len(service.queue) == 2

    def test_record_stays_unsynced_while_entries_pending(self, service, remote):
        service.save_record(make_reading(temp=70))
        service.engine.drain_once()
        assert service.load_record("r1").synced is True

        service.save_record(make_reading(temp=75))
        assert service.load_record("r1").synced is False

        remote.fail_next(RemoteUnreachable("down"))
        service.engine.drain_once()
        assert service.load_record("r1").synced is False

    def test_concurrent_drain_is_skipped(self, service, remote):
        service.save_record(make_reading())
        gate = remote.hold_next()
        results = []

        worker = threading.Thread(target=lambda: results.append(service.engine.drain_once()))
        worker.start()
        assert remote.entered.wait(timeout=5)

        skipped = service.engine.drain_once()
        assert skipped.skipped is True
        assert skipped.attempted == 0

        gate.set()
        worker.join(timeout=5)
        assert results[0].succeeded == 1
        assert service.engine.is_draining is False

    def test_delete_is_sent_after_pending_write(self, service, remote):
        service.save_record(make_reading())
        service.delete_record("r1")

        result = service.engine.drain_once()

        assert result.succeeded == 2
        assert [call[0] for call in remote.calls] == ["set_merge", "delete"]
        assert reading_path() not in remote.documents
        assert len(service.queue) == 0

    def test_sync_records_requeues_orphaned_unsynced_record(self, service, remote):
        service.record_store.put(make_reading("r9"))

        outcome = service.engine.sync_records(["r9", "missing"])

        assert outcome == {"r9": None, "missing": None}
        assert reading_path("r9") in remote.documents
        assert service.load_record("r9").synced is True

    def test_sync_records_ignores_backoff_but_not_rejection(self, service, remote):
        service.save_record(make_reading("r1"))
        service.save_record(make_reading("r2"))
        remote.fail_next(RemoteUnreachable("down"), path=reading_path("r1"))
        remote.fail_next(RemoteRejected("invalid argument", 400), path=reading_path("r2"))
        service.engine.drain_once()

        outcome = service.engine.sync_records(["r1", "r2"])

        assert outcome["r1"] is None
        assert outcome["r2"] == "invalid argument"

    def test_rollup_goes_to_daily_metrics(self, service, remote):
        service.save_record(
            Record(
                id="2024-06-01",
                project_id="p1",
                kind=RecordKind.ROLLUP,
                payload={"date": "2024-06-01", "totalEntries": 24, "completedEntries": 12},
            )
        )
        service.engine.drain_once()
        assert "projects/p1/dailyMetrics/2024-06-01" in remote.documents
