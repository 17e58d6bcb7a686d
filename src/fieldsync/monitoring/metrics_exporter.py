"""Prometheus metrics exporter for monitoring."""

import os
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, Optional

from prometheus_client import CollectorRegistry, Gauge, Info, write_to_textfile

from ..domain.models import DrainResult


class MetricsExporter:
    """Export sync metrics to Prometheus textfile format."""

    def __init__(self, metrics_dir: str = "./data/metrics"):
        self.metrics_dir = Path(metrics_dir)
        self.metrics_dir.mkdir(parents=True, exist_ok=True)
        self.metrics_file = self.metrics_dir / "fieldsync.prom"
        self.health_file = self.metrics_dir / "health.prom"

    def export_drain_metrics(
        self,
        result: DrainResult,
        queue_stats: Dict[str, Any],
        checkpoint_summary: Optional[Dict[str, Any]] = None,
    ) -> None:
        """Export the latest drain result, queue depth and checkpoint counts."""
        registry = CollectorRegistry()

        Gauge(
            "fieldsync_drain_duration_seconds",
            "Duration of the last queue drain in seconds",
            registry=registry,
        ).set(result.duration_seconds)

        outcomes = Gauge(
            "fieldsync_drain_entries",
            "Queue entries handled by the last drain by outcome",
            ["outcome"],
            registry=registry,
        )
        outcomes.labels(outcome="attempted").set(result.attempted)
        outcomes.labels(outcome="succeeded").set(result.succeeded)
        outcomes.labels(outcome="failed_transient").set(result.failed_transient)
        outcomes.labels(outcome="failed_permanent").set(result.failed_permanent)

        Gauge(
            "fieldsync_queue_pending",
            "Entries waiting in the sync queue",
            registry=registry,
        ).set(queue_stats.get("pending", 0))

        Gauge(
            "fieldsync_queue_non_retryable",
            "Entries rejected by the remote store awaiting an operator",
            registry=registry,
        ).set(queue_stats.get("non_retryable", 0))

        Gauge(
            "fieldsync_queue_max_retry_count",
            "Highest retry count among pending entries",
            registry=registry,
        ).set(queue_stats.get("max_retry_count", 0))

        if checkpoint_summary is not None:
            checkpoints = Gauge(
                "fieldsync_checkpoints",
                "Bulk sync checkpoints by state",
                ["state"],
                registry=registry,
            )
            checkpoints.labels(state="active").set(checkpoint_summary.get("active_checkpoints", 0))
            checkpoints.labels(state="stale").set(checkpoint_summary.get("stale_checkpoints", 0))
            checkpoints.labels(state="completed").set(
                checkpoint_summary.get("completed_checkpoints", 0)
            )

        Gauge(
            "fieldsync_last_drain_timestamp",
            "Timestamp of last queue drain",
            registry=registry,
        ).set((result.finished_at or datetime.now()).timestamp())

        Gauge(
            "fieldsync_drain_success",
            "Whether last drain had no failures (1=success, 0=failure)",
            registry=registry,
        ).set(1 if result.failed == 0 else 0)

        Info("fieldsync_build_info", "Build information", registry=registry).info(
            {"version": os.getenv("APP_VERSION", "0.1.0")}
        )

        write_to_textfile(str(self.metrics_file), registry)

    def export_health_metrics(self, remote_healthy: bool, queue_healthy: bool) -> None:
        """Export health check metrics."""
        registry = CollectorRegistry()

        Gauge(
            "fieldsync_remote_healthy",
            "Remote store health status (1=healthy, 0=unhealthy)",
            registry=registry,
        ).set(1 if remote_healthy else 0)

        Gauge(
            "fieldsync_queue_healthy",
            "Sync queue health status (1=healthy, 0=unhealthy)",
            registry=registry,
        ).set(1 if queue_healthy else 0)

        Gauge(
            "fieldsync_overall_healthy",
            "Overall application health (1=healthy, 0=unhealthy)",
            registry=registry,
        ).set(1 if remote_healthy and queue_healthy else 0)

        write_to_textfile(str(self.health_file), registry)
