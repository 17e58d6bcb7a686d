"""Tests for checkpoint accounting and recovery decisions."""

import threading
from datetime import timedelta

import pytest

from fieldsync.domain.results import ErrorKind
from fieldsync.sync.checkpoints import (
    CheckpointManager,
    InMemoryCheckpointRepository,
    ProgressDelta,
    SQLiteCheckpointRepository,
)
from fieldsync.sync.recovery import RecoveryStrategy


@pytest.fixture
def manager(clock):
    return CheckpointManager(InMemoryCheckpointRepository(), clock=clock)


class TestCheckpointManager:
    """Test CheckpointManager progress accounting."""

    def test_create_checkpoint(self, manager, clock):
        checkpoint = manager.create_checkpoint("readings", 10, {"projectId": "p1"})

        assert checkpoint.id.startswith("readings_")
        assert checkpoint.start_time == clock()
        assert checkpoint.processed_records == 0
        assert checkpoint.progress_percentage == 0.0
        assert manager.get(checkpoint.id) == checkpoint

    def test_progress_is_clamped_to_total(self, manager):
        """10 records: five batches of 2, then one more, ends at 10."""
        checkpoint = manager.create_checkpoint("readings", 10)
        for n in range(1, 6):
            manager.update_checkpoint(checkpoint.id, ProgressDelta(f"batch_{n}", n, processed=2))
        updated = manager.update_checkpoint(checkpoint.id, ProgressDelta("batch_6", 6, processed=1))

        assert updated.processed_records == 10
        assert updated.progress_percentage == 100.0
        assert updated.current_batch_number == 6

    def test_update_is_idempotent_per_batch(self, manager):
        checkpoint = manager.create_checkpoint("readings", 10)
        manager.update_checkpoint(checkpoint.id, ProgressDelta("batch_1", 1, processed=3))
        again = manager.update_checkpoint(checkpoint.id, ProgressDelta("batch_1", 1, processed=3))

        assert again.processed_records == 3
        assert again.processed_batches == ["batch_1"]

    def test_failed_records_are_tracked(self, manager):
        checkpoint = manager.create_checkpoint("readings", 4)
        manager.update_checkpoint(
            checkpoint.id,
            ProgressDelta("batch_1", 1, processed=2, failed_record_ids=["r3", "r4"], error="x"),
        )
        updated = manager.update_checkpoint(
            checkpoint.id,
            ProgressDelta("retry_1_1", 1, processed=1, recovered_record_ids=["r3"]),
        )

        assert updated.failed_records == ["r4"]
        assert updated.processed_records == 3
        assert updated.last_error == "x"

    def test_completion_is_monotonic(self, manager, clock):
        checkpoint = manager.create_checkpoint("readings", 2)

        assert manager.complete_checkpoint(checkpoint.id) is True
        assert manager.complete_checkpoint(checkpoint.id) is False

        after = manager.update_checkpoint(checkpoint.id, ProgressDelta("batch_1", 1, processed=2))
        assert after.is_completed is True
        assert after.processed_records == 0
        assert after.completed_at == clock()

    def test_unknown_checkpoint(self, manager):
        assert manager.update_checkpoint("nope", ProgressDelta("batch_1", 1)) is None
        assert manager.complete_checkpoint("nope") is False

    def test_staleness_boundary(self, manager, clock):
        checkpoint = manager.create_checkpoint("readings", 5)

        clock.advance(hours=2)
        assert manager.is_stale(manager.get(checkpoint.id)) is False

        clock.advance(seconds=1)
        assert manager.is_stale(manager.get(checkpoint.id)) is True
        assert [c.id for c in manager.list_stale()] == [checkpoint.id]

        manager.complete_checkpoint(checkpoint.id)
        assert manager.is_stale(manager.get(checkpoint.id)) is False

    def test_concurrent_updates_are_serialized(self, manager):
        checkpoint = manager.create_checkpoint("readings", 100)

        def apply(n):
            manager.update_checkpoint(checkpoint.id, ProgressDelta(f"batch_{n}", n, processed=5))

        threads = [threading.Thread(target=apply, args=(n,)) for n in range(1, 11)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        final = manager.get(checkpoint.id)
        assert final.processed_records == 50
        assert len(final.processed_batches) == 10
        assert final.current_batch_number == 10

    def test_find_incomplete_and_list_active(self, manager, clock):
        done = manager.create_checkpoint("readings", 1)
        manager.complete_checkpoint(done.id)
        clock.advance(seconds=1)
        running = manager.create_checkpoint("readings", 1)
        manager.create_checkpoint("rollups", 1)

        assert manager.find_incomplete("readings").id == running.id
        assert manager.find_incomplete("reference") is None
        assert len(manager.list_active()) == 2

    def test_cleanup_and_summary(self, manager, clock):
        old = manager.create_checkpoint("readings", 1)
        clock.advance(hours=25)
        fresh = manager.create_checkpoint("readings", 1)

        summary = manager.summary()
        assert summary["total_checkpoints"] == 2
        assert summary["active_checkpoints"] == 2
        assert summary["stale_checkpoints"] == 1
        assert len(summary["checkpoint_details"]) == 2

        assert manager.cleanup() == 1
        assert manager.get(old.id) is None
        assert manager.get(fresh.id) is not None

    def test_zero_windows_are_honoured(self, manager, clock):
        checkpoint = manager.create_checkpoint("readings", 1)
        clock.advance(seconds=1)

        assert [c.id for c in manager.list_stale(timedelta(0))] == [checkpoint.id]
        assert manager.list_stale() == []
        assert manager.cleanup(timedelta(0)) == 1
        assert manager.get(checkpoint.id) is None

    def test_sqlite_repository_survives_restart(self, database, clock):
        first = CheckpointManager(SQLiteCheckpointRepository(database), clock=clock)
        checkpoint = first.create_checkpoint("readings", 10, {"recordIds": ["r1"]})
        first.update_checkpoint(checkpoint.id, ProgressDelta("batch_1", 1, processed=4))

        second = CheckpointManager(SQLiteCheckpointRepository(database), clock=clock)
        loaded = second.get(checkpoint.id)
        assert loaded.processed_records == 4
        assert loaded.processed_batches == ["batch_1"]
        assert loaded.context == {"recordIds": ["r1"]}
        assert loaded.start_time == checkpoint.start_time


class TestRecoveryStrategy:
    """Test RecoveryStrategy verdicts and hints."""

    def test_recover_viable_checkpoint(self, manager, clock):
        checkpoint = manager.create_checkpoint("readings", 10, {"projectId": "p1"})
        manager.update_checkpoint(checkpoint.id, ProgressDelta("batch_3", 3, processed=6))
        clock.advance(minutes=30)

        plan = RecoveryStrategy(clock=clock).recover(manager.get(checkpoint.id))

        assert plan.viable is True
        assert plan.error is None
        assert plan.last_batch_number == 3
        context = plan.resume_context
        assert context["projectId"] == "p1"
        assert context["isResumed"] is True
        assert context["originalStartTime"] == checkpoint.start_time.isoformat()
        assert context["resumeTime"] == clock().isoformat()
        assert context["resumeCount"] == 1

    def test_recover_stale_checkpoint(self, manager, clock):
        checkpoint = manager.create_checkpoint("readings", 10)
        clock.advance(hours=3)

        plan = RecoveryStrategy(clock=clock).recover(manager.get(checkpoint.id))

        assert plan.viable is False
        assert plan.error.kind is ErrorKind.STALE_JOB

    def test_recover_completed_checkpoint(self, manager, clock):
        checkpoint = manager.create_checkpoint("readings", 1)
        manager.complete_checkpoint(checkpoint.id)

        plan = RecoveryStrategy(clock=clock).recover(manager.get(checkpoint.id))
        assert plan.viable is False

    def test_recommendations(self, manager, clock):
        strategy = RecoveryStrategy(max_age=timedelta(hours=2), clock=clock)

        healthy = manager.create_checkpoint("readings", 10)
        manager.update_checkpoint(healthy.id, ProgressDelta("batch_1", 1, processed=5))
        assert strategy.recommendations(manager.get(healthy.id)) == [
            "Checkpoint appears healthy for recovery"
        ]

        failing = manager.create_checkpoint("readings", 100)
        manager.update_checkpoint(
            failing.id, ProgressDelta("batch_1", 1, processed=1, failed_record_ids=["r1", "r2"])
        )
        clock.advance(hours=3)
        hints = strategy.recommendations(manager.get(failing.id))
        assert "Checkpoint is stale - consider restarting sync" in hints
        assert "2 records failed - inspect sync errors" in hints
        assert "Low progress - check network connectivity" in hints
        assert "Slow sync performance - consider reducing batch size" in hints

        manager.complete_checkpoint(healthy.id)
        assert strategy.recommendations(manager.get(healthy.id)) == ["Sync completed successfully"]
