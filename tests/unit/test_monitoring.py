"""Tests for metrics export, health checks and structured events."""

import json
from datetime import timedelta
from unittest.mock import Mock

from fieldsync.domain.models import DrainResult, Operation, SyncQueueEntry
from fieldsync.monitoring.health_check import HealthChecker
from fieldsync.monitoring.metrics_exporter import MetricsExporter
from fieldsync.utils.logging import StructuredLogger


def finished_drain(clock):
    return DrainResult(
        started_at=clock(),
        finished_at=clock() + timedelta(seconds=1),
        attempted=3,
        succeeded=2,
        failed_transient=1,
    )


class TestMetricsExporter:
    """Test MetricsExporter textfile output."""

    def test_export_drain_metrics(self, tmp_path, clock):
        exporter = MetricsExporter(str(tmp_path / "metrics"))

        exporter.export_drain_metrics(
            finished_drain(clock),
            {"pending": 4, "non_retryable": 1, "max_retry_count": 3},
            {"active_checkpoints": 1, "stale_checkpoints": 0, "completed_checkpoints": 2},
        )

        content = exporter.metrics_file.read_text()
        assert 'fieldsync_drain_entries{outcome="succeeded"} 2.0' in content
        assert "fieldsync_queue_pending 4.0" in content
        assert 'fieldsync_checkpoints{state="completed"} 2.0' in content
        assert "fieldsync_drain_success 0.0" in content

    def test_export_health_metrics(self, tmp_path):
        exporter = MetricsExporter(str(tmp_path / "metrics"))

        exporter.export_health_metrics(remote_healthy=True, queue_healthy=False)

        content = exporter.health_file.read_text()
        assert "fieldsync_remote_healthy 1.0" in content
        assert "fieldsync_overall_healthy 0.0" in content


class TestHealthChecker:
    """Test HealthChecker verdicts."""

    def test_unreachable_remote(self, queue):
        remote = Mock()
        remote.test_connection.side_effect = RuntimeError("dns failure")

        health = HealthChecker(remote, queue).check_all()

        assert health["remote"]["status"] == "unhealthy"
        assert health["remote"]["message"] == "dns failure"
        assert health["overall"]["status"] == "unhealthy"

    def test_rejected_entries_make_queue_unhealthy(self, queue, remote):
        entry_id = queue.enqueue(
            SyncQueueEntry(Operation.UPDATE, "projects/p1/reference", "e1", {"name": "x"})
        )
        queue.mark_failed(entry_id, "denied", retryable=False)

        healthy, message = HealthChecker(remote, queue).check_queue_health()

        assert healthy is False
        assert "1 entries rejected" in message

    def test_old_backlog_makes_queue_unhealthy(self, queue, remote, clock):
        queue.enqueue(
            SyncQueueEntry(
                Operation.UPDATE, "projects/p1/reference", "e1", {"name": "x"}, created_at=clock()
            )
        )
        checker = HealthChecker(remote, queue, max_queue_age_seconds=3600)
        assert checker.check_queue_health()[0] is True

        clock.advance(hours=2)
        assert checker.check_queue_health()[0] is False


class TestStructuredLogger:
    """Test StructuredLogger JSONL output."""

    def test_drain_completion_is_appended(self, tmp_path, clock):
        events = StructuredLogger(str(tmp_path / "logs"))

        events.log_drain_start(ready=3, pending=3)
        events.log_drain_complete(finished_drain(clock))

        lines = events.log_file.read_text().splitlines()
        assert len(lines) == 1
        entry = json.loads(lines[0])
        assert entry["operation"] == "drain"
        assert entry["status"] == "partial"
        assert entry["duration_ms"] == 1000
        assert entry["results"]["succeeded"] == 2
