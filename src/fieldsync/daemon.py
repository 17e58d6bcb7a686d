"""Background daemon for scheduled and connectivity-triggered synchronization."""

import logging
from datetime import datetime
from typing import Optional

from apscheduler.schedulers.background import BackgroundScheduler

from .config import AppConfig
from .services.sync_service import SyncService
from .utils.logging import StructuredLogger

logger = logging.getLogger(__name__)

DRAIN_JOB_ID = "drain_job"
CONNECTIVITY_JOB_ID = "connectivity_job"


class SyncDaemon:
    """Manages scheduled queue drains and checkpoint housekeeping."""

    def __init__(
        self,
        config: AppConfig,
        service: SyncService,
        events: Optional[StructuredLogger] = None,
        scheduler: Optional[BackgroundScheduler] = None,
    ) -> None:
        """Initialize daemon.

        Args:
            config: Application configuration
            service: Sync service whose queue is drained
            events: Optional structured event logger
            scheduler: Scheduler to register jobs on (a background one by default)
        """
        self.config = config
        self.service = service
        self.events = events
        self.scheduler = scheduler or BackgroundScheduler()
        self.online = True

    def _drain_job(self) -> None:
        """Execute one drain of the sync queue."""
        if not self.online:
            logger.debug("Offline, skipping scheduled drain")
            return

        try:
            result = self.service.drain_now()
        except Exception as e:
            # Keep the scheduler alive; the next tick retries
            logger.error(f"Drain job failed with exception: {e}")
            return

        if result.skipped:
            logger.info("Previous drain still running, skipped")
        elif result.attempted:
            logger.info(
                f"Drain completed in {result.duration_seconds:.2f}s: "
                f"succeeded={result.succeeded}, failed={result.failed}"
            )

    def _connectivity_job(self) -> None:
        """Probe the remote store and report reachability transitions."""
        connected, message = self.service.health_checker.check_remote_health()
        if not connected:
            logger.debug(f"Remote store unreachable: {message}")
        self.on_connectivity_change(connected)

    def _cleanup_job(self) -> None:
        """Purge expired checkpoints and old drain history."""
        try:
            removed = self.service.cleanup_checkpoints()
            self.service.history.clear_old_records(
                self.config.monitoring.history_retention_days
            )
        except Exception as e:
            logger.error(f"Cleanup job failed with exception: {e}")
            return
        if removed:
            logger.info(f"Removed {removed} expired checkpoints")

    def _stale_sweep_job(self) -> None:
        """Log recommendations for checkpoints that stopped making progress."""
        for checkpoint in self.service.checkpoints.list_stale():
            if checkpoint.is_completed:
                continue
            hints = "; ".join(self.service.recovery.recommendations(checkpoint))
            logger.warning(
                f"Stale bulk sync {checkpoint.id} at {checkpoint.progress_percentage:.1f}%: {hints}"
            )

    def start(self) -> None:
        """Start the daemon."""
        logger.info("Starting SyncDaemon...")

        interval = self.config.sync.drain_interval_seconds
        logger.info(f"Scheduling queue drain every {interval}s")

        self.scheduler.add_job(
            self._drain_job,
            "interval",
            seconds=interval,
            id=DRAIN_JOB_ID,
            name="Sync queue drain",
            max_instances=1,
            coalesce=True,
        )
        self.scheduler.add_job(
            self._connectivity_job,
            "interval",
            seconds=self.config.sync.connectivity_check_interval_seconds,
            id=CONNECTIVITY_JOB_ID,
            name="Remote connectivity check",
            max_instances=1,
            coalesce=True,
        )
        self.scheduler.add_job(
            self._cleanup_job,
            "interval",
            seconds=self.config.checkpoints.cleanup_interval_seconds,
            id="cleanup_job",
            name="Checkpoint and history cleanup",
            max_instances=1,
            coalesce=True,
        )
        self.scheduler.add_job(
            self._stale_sweep_job,
            "interval",
            seconds=self.config.checkpoints.cleanup_interval_seconds,
            id="stale_sweep_job",
            name="Stale checkpoint sweep",
            max_instances=1,
            coalesce=True,
        )

        self.scheduler.start()
        logger.info("SyncDaemon started")

    def stop(self) -> None:
        """Stop the daemon."""
        logger.info("Stopping SyncDaemon...")
        self.scheduler.shutdown(wait=True)
        self.service.close()
        logger.info("SyncDaemon stopped")

    def on_connectivity_change(self, connected: bool) -> None:
        """Pause drains while offline and drain right away when back online."""
        if connected == self.online:
            return
        self.online = connected
        if self.events:
            self.events.log_connectivity_change(connected)

        job = self.scheduler.get_job(DRAIN_JOB_ID)
        if not connected:
            logger.info("Connectivity lost, pausing queue drains")
            if job:
                job.pause()
            return

        logger.info("Connectivity restored, draining queue")
        if job:
            job.resume()
            job.modify(next_run_time=datetime.now())
        else:
            self._drain_job()
