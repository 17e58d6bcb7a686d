"""Typed durable storage for application records."""

import json
import logging
import sqlite3
from dataclasses import dataclass
from datetime import datetime
from typing import Callable, Iterator, List, Optional

from ..domain.models import Record, RecordKind
from .database import LocalDatabase, to_json

logger = logging.getLogger(__name__)


def db_timestamp(value: datetime) -> str:
    """Fixed-width ISO timestamp so stored values sort chronologically."""
    return value.isoformat(timespec="microseconds")


@dataclass(frozen=True)
class RecordFilter:
    """Predicate for scanning records."""

    project_id: Optional[str] = None
    kind: Optional[RecordKind] = None
    synced: Optional[bool] = None
    created_after: Optional[datetime] = None
    created_before: Optional[datetime] = None
    predicate: Optional[Callable[[Record], bool]] = None
    ascending: bool = False


class RecordStore:
    """Plain persistence primitive for records; knows nothing about sync."""

    def __init__(self, database: LocalDatabase, fetch_size: int = 200) -> None:
        """Initialize record store.

        Args:
            database: Local database holding the record partitions
            fetch_size: Rows fetched per round trip while scanning
        """
        self.database = database
        self.fetch_size = fetch_size

    def put(self, record: Record, conn: Optional[sqlite3.Connection] = None) -> None:
        """Persist a record, overwriting any record with the same identity.

        Args:
            record: Record to store
            conn: Open transaction to join; a private one is used otherwise

        Raises:
            LocalIOFailure: If the write could not be made durable
        """
        params = (
            record.id,
            record.kind.partition,
            record.project_id,
            1 if record.synced else 0,
            db_timestamp(record.created_at),
            db_timestamp(record.updated_at),
            to_json(record.to_dict()),
        )
        sql = """
            INSERT OR REPLACE INTO records
                (id, partition, project_id, synced, created_at, updated_at, body)
            VALUES (?, ?, ?, ?, ?, ?, ?)
        """
        if conn is not None:
            conn.execute(sql, params)
            return

        with self.database.transaction() as own:
            own.execute(sql, params)
        logger.debug(f"Stored {record.kind.value} {record.id} (synced={record.synced})")

    def get(self, record_id: str) -> Optional[Record]:
        """Get a record by identity.

        Returns:
            The record, or None if it does not exist
        """
        with self.database.get_connection() as conn:
            row = conn.execute("SELECT body FROM records WHERE id = ?", (record_id,)).fetchone()
        return Record.from_dict(json.loads(row["body"])) if row else None

    def scan(self, record_filter: Optional[RecordFilter] = None) -> Iterator[Record]:
        """Lazily iterate records matching a filter.

        Each call starts a fresh pass, so the sequence can be restarted by
        calling ``scan`` again. Ordered by creation time, newest first unless
        ``ascending`` is set.
        """
        record_filter = record_filter or RecordFilter()
        query = "SELECT body FROM records WHERE 1=1"
        params: List[object] = []

        if record_filter.project_id is not None:
            query += " AND project_id = ?"
            params.append(record_filter.project_id)
        if record_filter.kind is not None:
            query += " AND partition = ?"
            params.append(record_filter.kind.partition)
        if record_filter.synced is not None:
            query += " AND synced = ?"
            params.append(1 if record_filter.synced else 0)
        if record_filter.created_after is not None:
            query += " AND created_at >= ?"
            params.append(db_timestamp(record_filter.created_after))
        if record_filter.created_before is not None:
            query += " AND created_at < ?"
            params.append(db_timestamp(record_filter.created_before))

        direction = "ASC" if record_filter.ascending else "DESC"
        query += f" ORDER BY created_at {direction}, id {direction}"

        with self.database.get_connection() as conn:
            cursor = conn.execute(query, params)
            while True:
                rows = cursor.fetchmany(self.fetch_size)
                if not rows:
                    break
                for row in rows:
                    record = Record.from_dict(json.loads(row["body"]))
                    if record_filter.predicate is None or record_filter.predicate(record):
                        yield record

    def delete(self, record_id: str, conn: Optional[sqlite3.Connection] = None) -> None:
        """Delete a record; deleting a missing record is a no-op."""
        if conn is not None:
            conn.execute("DELETE FROM records WHERE id = ?", (record_id,))
            return

        with self.database.transaction() as own:
            own.execute("DELETE FROM records WHERE id = ?", (record_id,))

    def mark_synced(
        self,
        record_id: str,
        timestamp: datetime,
        conn: Optional[sqlite3.Connection] = None,
    ) -> bool:
        """Record a confirmed remote write for ``record_id``.

        Returns:
            False if the record no longer exists locally
        """
        return self._update_sync_fields(record_id, True, None, timestamp, conn)

    def mark_sync_error(
        self,
        record_id: str,
        error: str,
        conn: Optional[sqlite3.Connection] = None,
    ) -> bool:
        """Attach a sync error to ``record_id``, leaving it unsynced."""
        return self._update_sync_fields(record_id, False, error, None, conn)

    def _update_sync_fields(
        self,
        record_id: str,
        synced: bool,
        error: Optional[str],
        timestamp: Optional[datetime],
        conn: Optional[sqlite3.Connection],
    ) -> bool:
        if conn is None:
            with self.database.transaction() as own:
                return self._update_sync_fields(record_id, synced, error, timestamp, own)

        row = conn.execute("SELECT body FROM records WHERE id = ?", (record_id,)).fetchone()
        if row is None:
            return False

        record = Record.from_dict(json.loads(row["body"]))
        record.synced = synced
        record.sync_error = error
        if timestamp is not None:
            record.sync_timestamp = timestamp
        conn.execute(
            "UPDATE records SET synced = ?, body = ? WHERE id = ?",
            (1 if synced else 0, to_json(record.to_dict()), record_id),
        )
        return True

    def count(self, project_id: Optional[str] = None, synced: Optional[bool] = None) -> int:
        query = "SELECT COUNT(*) FROM records WHERE 1=1"
        params: List[object] = []
        if project_id is not None:
            query += " AND project_id = ?"
            params.append(project_id)
        if synced is not None:
            query += " AND synced = ?"
            params.append(1 if synced else 0)
        with self.database.get_connection() as conn:
            return conn.execute(query, params).fetchone()[0]
