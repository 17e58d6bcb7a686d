"""Durable FIFO log of pending remote writes."""

import json
import logging
import sqlite3
import threading
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional, Set

from ..domain.models import Operation, SyncQueueEntry
from ..storage.database import LocalDatabase, to_json
from ..storage.record_store import db_timestamp
from .backoff import BackoffPolicy

logger = logging.getLogger(__name__)


class SyncQueue:
    """Append-mostly queue of remote write intents.

    Entries for the same document are always handed out in the order they were
    enqueued. A document is ready when its oldest pending entry is ready: not
    in flight, not flagged non-retryable, and outside its backoff window.
    """

    def __init__(
        self,
        database: LocalDatabase,
        backoff: Optional[BackoffPolicy] = None,
        max_retries: Optional[int] = None,
        clock: Callable[[], datetime] = datetime.now,
    ) -> None:
        """Initialize sync queue.

        Args:
            database: Local database holding the sync_queue partition
            backoff: Retry delay policy
            max_retries: Optional retry ceiling; unbounded when None
            clock: Source of the current time
        """
        self.database = database
        self.backoff = backoff or BackoffPolicy()
        self.max_retries = max_retries
        self.clock = clock
        self._in_flight: Set[str] = set()
        self._lock = threading.Lock()

    def enqueue(self, entry: SyncQueueEntry, conn: Optional[sqlite3.Connection] = None) -> str:
        """Append an entry; it is durable when this returns.

        Args:
            entry: Entry to append; its payload is snapshotted as JSON here
            conn: Open transaction to join; a private one is used otherwise

        Returns:
            Entry identity
        """
        params = (
            entry.id,
            entry.operation.value,
            entry.collection,
            entry.document_id,
            entry.record_id,
            to_json(entry.data),
            db_timestamp(entry.created_at),
            entry.retry_count,
            entry.last_error,
            db_timestamp(entry.last_attempt) if entry.last_attempt else None,
            1 if entry.retryable else 0,
        )
        sql = """
            INSERT INTO sync_queue
                (id, operation, collection, document_id, record_id, data, created_at,
                 retry_count, last_error, last_attempt, retryable)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
        """
        if conn is not None:
            cursor = conn.execute(sql, params)
        else:
            with self.database.transaction() as own:
                cursor = own.execute(sql, params)

        entry.sequence = cursor.lastrowid
        logger.debug(
            f"Queued {entry.operation.value} for {entry.path} (entry {entry.id}, seq {entry.sequence})"
        )
        return entry.id

    def dequeue_ready(self, limit: Optional[int] = None) -> List[SyncQueueEntry]:
        """Entries eligible for an attempt right now, in enqueue order.

        Every pending entry of a ready document is returned so the caller can
        apply the whole chain in order; documents whose oldest entry is
        blocked contribute nothing.
        """
        now = self.clock()
        ready: List[SyncQueueEntry] = []
        blocked: Set[tuple] = set()

        with self._lock:
            in_flight = set(self._in_flight)

        for entry in self.pending():
            doc_key = (entry.collection, entry.document_id)
            if doc_key in blocked:
                continue
            if not self._is_eligible(entry, in_flight, now):
                blocked.add(doc_key)
                continue
            ready.append(entry)
            if limit is not None and len(ready) >= limit:
                break

        return ready

    def _is_eligible(self, entry: SyncQueueEntry, in_flight: Set[str], now: datetime) -> bool:
        if entry.id in in_flight:
            return False
        if not entry.retryable:
            return False
        if self.max_retries is not None and entry.retry_count >= self.max_retries:
            return False
        return self.backoff.is_due(entry.retry_count, entry.last_attempt, now, key=entry.id)

    def claim(self, entry_ids: List[str]) -> None:
        """Mark entries as being processed so they are not handed out twice."""
        with self._lock:
            self._in_flight.update(entry_ids)

    def release(self, entry_ids: List[str]) -> None:
        with self._lock:
            self._in_flight.difference_update(entry_ids)

    def mark_succeeded(self, entry_id: str, conn: Optional[sqlite3.Connection] = None) -> None:
        """Durably remove an entry after its remote write was confirmed."""
        if conn is not None:
            conn.execute("DELETE FROM sync_queue WHERE id = ?", (entry_id,))
        else:
            with self.database.transaction() as own:
                own.execute("DELETE FROM sync_queue WHERE id = ?", (entry_id,))
        self.release([entry_id])

    def mark_failed(
        self,
        entry_id: str,
        error: str,
        retryable: bool = True,
        conn: Optional[sqlite3.Connection] = None,
    ) -> None:
        """Record a failed attempt; non-retryable entries wait for an operator."""
        params = (error, db_timestamp(self.clock()), 1 if retryable else 0, entry_id)
        sql = """
            UPDATE sync_queue
            SET retry_count = retry_count + 1, last_error = ?, last_attempt = ?, retryable = ?
            WHERE id = ?
        """
        if conn is not None:
            conn.execute(sql, params)
        else:
            with self.database.transaction() as own:
                own.execute(sql, params)
        self.release([entry_id])

    def get(self, entry_id: str) -> Optional[SyncQueueEntry]:
        with self.database.get_connection() as conn:
            row = conn.execute("SELECT * FROM sync_queue WHERE id = ?", (entry_id,)).fetchone()
        return self._row_to_entry(row) if row else None

    def pending(self) -> List[SyncQueueEntry]:
        """All queued entries in enqueue order."""
        with self.database.get_connection() as conn:
            rows = conn.execute("SELECT * FROM sync_queue ORDER BY seq").fetchall()
        return [self._row_to_entry(row) for row in rows]

    def pending_for_document(self, collection: str, document_id: str) -> List[SyncQueueEntry]:
        with self.database.get_connection() as conn:
            rows = conn.execute(
                "SELECT * FROM sync_queue WHERE collection = ? AND document_id = ? ORDER BY seq",
                (collection, document_id),
            ).fetchall()
        return [self._row_to_entry(row) for row in rows]

    def pending_for_record(self, record_id: str) -> List[SyncQueueEntry]:
        with self.database.get_connection() as conn:
            rows = conn.execute(
                "SELECT * FROM sync_queue WHERE record_id = ? ORDER BY seq", (record_id,)
            ).fetchall()
        return [self._row_to_entry(row) for row in rows]

    def has_pending_for_record(
        self, record_id: str, conn: Optional[sqlite3.Connection] = None
    ) -> bool:
        sql = "SELECT 1 FROM sync_queue WHERE record_id = ? LIMIT 1"
        if conn is not None:
            return conn.execute(sql, (record_id,)).fetchone() is not None
        with self.database.get_connection() as own:
            return own.execute(sql, (record_id,)).fetchone() is not None

    def list_failed(self) -> List[SyncQueueEntry]:
        """Entries flagged non-retryable, awaiting manual intervention."""
        with self.database.get_connection() as conn:
            rows = conn.execute(
                "SELECT * FROM sync_queue WHERE retryable = 0 ORDER BY seq"
            ).fetchall()
        return [self._row_to_entry(row) for row in rows]

    def requeue(self, entry_id: str) -> bool:
        """Clear failure state so an entry is attempted again on the next drain."""
        with self.database.transaction() as conn:
            cursor = conn.execute(
                """
                UPDATE sync_queue
                SET retryable = 1, retry_count = 0, last_attempt = NULL, last_error = NULL
                WHERE id = ?
                """,
                (entry_id,),
            )
        if cursor.rowcount:
            logger.info(f"Requeued sync entry {entry_id}")
        return cursor.rowcount > 0

    def purge(self, entry_id: str) -> bool:
        """Explicit operator removal of an entry without sending it."""
        with self.database.transaction() as conn:
            cursor = conn.execute("DELETE FROM sync_queue WHERE id = ?", (entry_id,))
        if cursor.rowcount:
            logger.warning(f"Purged sync entry {entry_id} without remote application")
        return cursor.rowcount > 0

    def __len__(self) -> int:
        with self.database.get_connection() as conn:
            return conn.execute("SELECT COUNT(*) FROM sync_queue").fetchone()[0]

    def stats(self) -> Dict[str, Any]:
        with self.database.get_connection() as conn:
            row = conn.execute(
                """
                SELECT
                    COUNT(*) AS total,
                    SUM(CASE WHEN retryable = 0 THEN 1 ELSE 0 END) AS non_retryable,
                    SUM(CASE WHEN retry_count > 0 AND retryable = 1 THEN 1 ELSE 0 END) AS retrying,
                    MAX(retry_count) AS max_retry_count,
                    MIN(created_at) AS oldest
                FROM sync_queue
                """
            ).fetchone()

        return {
            "pending": row["total"] or 0,
            "non_retryable": row["non_retryable"] or 0,
            "retrying": row["retrying"] or 0,
            "max_retry_count": row["max_retry_count"] or 0,
            "oldest_entry": row["oldest"],
        }

    @staticmethod
    def _row_to_entry(row: sqlite3.Row) -> SyncQueueEntry:
        return SyncQueueEntry(
            id=row["id"],
            operation=Operation(row["operation"]),
            collection=row["collection"],
            document_id=row["document_id"],
            record_id=row["record_id"],
            data=json.loads(row["data"]),
            created_at=datetime.fromisoformat(row["created_at"]),
            sequence=row["seq"],
            retry_count=row["retry_count"],
            last_error=row["last_error"],
            last_attempt=(
                datetime.fromisoformat(row["last_attempt"]) if row["last_attempt"] else None
            ),
            retryable=bool(row["retryable"]),
        )
