"""Health checks for the remote store and the local sync queue."""

import logging
from datetime import timedelta
from typing import Dict, Tuple

from ..remote.base import RemoteStore
from ..storage.record_store import db_timestamp
from ..sync.queue import SyncQueue

logger = logging.getLogger(__name__)

# Oldest pending entry age after which the queue counts as stuck
DEFAULT_MAX_QUEUE_AGE_SECONDS = 24 * 60 * 60


class HealthChecker:
    """Health check for the remote dependency and the local backlog."""

    def __init__(
        self,
        remote: RemoteStore,
        queue: SyncQueue,
        max_queue_age_seconds: int = DEFAULT_MAX_QUEUE_AGE_SECONDS,
    ):
        self.remote = remote
        self.queue = queue
        self.max_queue_age_seconds = max_queue_age_seconds

    def check_remote_health(self) -> Tuple[bool, str]:
        """Check remote store reachability."""
        try:
            if self.remote.test_connection():
                return True, "OK"
            return False, "Connection test failed"
        except Exception as e:
            logger.error(f"Remote health check failed: {e}")
            return False, str(e)

    def check_queue_health(self) -> Tuple[bool, str]:
        """Queue is unhealthy with rejected entries or a backlog older than the limit."""
        stats = self.queue.stats()
        if stats["non_retryable"]:
            return False, f"{stats['non_retryable']} entries rejected by remote store"

        oldest = stats["oldest_entry"]
        if oldest:
            now = self.queue.clock()
            age_cutoff = db_timestamp(now - timedelta(seconds=self.max_queue_age_seconds))
            if oldest < age_cutoff:
                return False, f"Oldest pending entry from {oldest}"

        return True, f"{stats['pending']} entries pending"

    def check_all(self) -> Dict[str, Dict[str, str]]:
        """Perform all health checks and return status."""
        remote_healthy, remote_msg = self.check_remote_health()
        queue_healthy, queue_msg = self.check_queue_health()

        return {
            "remote": {
                "status": "healthy" if remote_healthy else "unhealthy",
                "message": remote_msg,
            },
            "queue": {
                "status": "healthy" if queue_healthy else "unhealthy",
                "message": queue_msg,
            },
            "overall": {
                "status": "healthy" if remote_healthy and queue_healthy else "unhealthy",
                "message": (
                    "All checks healthy"
                    if remote_healthy and queue_healthy
                    else "One or more checks unhealthy"
                ),
            },
        }
