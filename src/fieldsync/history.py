"""Drain history tracking in the local database."""

import logging
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List

from .domain.models import DrainResult
from .storage.database import LocalDatabase
from .storage.record_store import db_timestamp

logger = logging.getLogger(__name__)


class SyncHistory:
    """Tracks queue drain runs."""

    def __init__(self, database: LocalDatabase, clock: Callable[[], datetime] = datetime.now) -> None:
        self.database = database
        self.clock = clock

    def record_drain(self, result: DrainResult) -> int:
        """Record a drain run; skipped runs are not recorded.

        Returns:
            ID of recorded run, or -1 if nothing was recorded
        """
        if result.skipped:
            return -1

        error = "; ".join(e["message"] for e in result.errors[:5]) if result.errors else None
        with self.database.transaction() as conn:
            cursor = conn.execute(
                """
                INSERT INTO sync_history
                    (timestamp, success, attempted, succeeded, failed_transient,
                     failed_permanent, duration_seconds, error)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    db_timestamp(result.finished_at or self.clock()),
                    result.failed == 0,
                    result.attempted,
                    result.succeeded,
                    result.failed_transient,
                    result.failed_permanent,
                    result.duration_seconds,
                    error,
                ),
            )
        run_id = cursor.lastrowid
        logger.debug(
            f"Recorded drain #{run_id}: succeeded={result.succeeded}, failed={result.failed}"
        )
        return int(run_id) if run_id is not None else -1

    def get_last_runs(self, limit: int = 50) -> List[Dict[str, Any]]:
        with self.database.get_connection() as conn:
            rows = conn.execute(
                "SELECT * FROM sync_history ORDER BY id DESC LIMIT ?", (limit,)
            ).fetchall()
        runs = []
        for row in rows:
            run = dict(row)
            run["success"] = bool(run["success"])
            runs.append(run)
        return runs

    def get_stats(self) -> Dict[str, Any]:
        """Get overall drain statistics.

        Returns:
            Dictionary of statistics
        """
        with self.database.get_connection() as conn:
            stats = conn.execute(
                """
                SELECT
                    COUNT(*) as total_runs,
                    SUM(CASE WHEN success = 1 THEN 1 ELSE 0 END) as successful,
                    SUM(CASE WHEN success = 0 THEN 1 ELSE 0 END) as failed,
                    SUM(succeeded) as total_synced,
                    SUM(failed_transient) as total_transient,
                    SUM(failed_permanent) as total_permanent,
                    AVG(duration_seconds) as avg_duration,
                    MAX(timestamp) as last_run
                FROM sync_history
                """
            ).fetchone()

        return {
            "total_runs": stats[0] or 0,
            "successful": stats[1] or 0,
            "failed": stats[2] or 0,
            "total_synced": stats[3] or 0,
            "total_transient": stats[4] or 0,
            "total_permanent": stats[5] or 0,
            "avg_duration": stats[6] or 0,
            "last_run": stats[7],
        }

    def clear_old_records(self, days: int = 30) -> int:
        """Delete runs older than N days.

        Returns:
            Number of rows removed
        """
        cutoff = db_timestamp(self.clock() - timedelta(days=days))
        with self.database.transaction() as conn:
            cursor = conn.execute("DELETE FROM sync_history WHERE timestamp < ?", (cutoff,))
        if cursor.rowcount:
            logger.info(f"Cleaned up {cursor.rowcount} drain records older than {days} days")
        return cursor.rowcount
