"""SQLite-backed local database shared by the record store, queue and checkpoints."""

import json
import logging
import os
import sqlite3
from contextlib import contextmanager
from datetime import date, datetime
from pathlib import Path
from typing import Any, Iterator, Optional

from ..errors import LocalIOFailure

logger = logging.getLogger(__name__)


def _json_default(value: Any) -> Any:
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    raise TypeError(f"Object of type {type(value).__name__} is not JSON serializable")


def to_json(value: Any) -> str:
    """Serialize a stored body; dates become ISO strings, anything else unknown raises TypeError."""
    return json.dumps(value, ensure_ascii=False, default=_json_default)


class LocalDatabase:
    """Durable local database.

    One file holds every partition: ``records`` (readings, rollups and cached
    reference data, keyed by kind), ``sync_queue``, ``checkpoints`` and
    ``sync_history``.
    """

    def __init__(self, db_path: Optional[str] = None, timeout: float = 30.0):
        """Initialize the local database.

        Args:
            db_path: Path to SQLite database file. Defaults to $DATA_DIR/fieldsync.db
            timeout: Seconds to wait for a locked database before failing
        """
        if db_path is None:
            data_dir = Path(os.getenv("DATA_DIR", "./data"))
            self.db_path = str(data_dir / "fieldsync.db")
        else:
            self.db_path = db_path
        Path(self.db_path).parent.mkdir(parents=True, exist_ok=True)
        self.timeout = timeout
        self.init_database()

    @contextmanager
    def get_connection(self) -> Iterator[sqlite3.Connection]:
        """Get database connection with proper cleanup.

        Raises:
            LocalIOFailure: If the database cannot be opened or used
        """
        try:
            conn = sqlite3.connect(self.db_path, timeout=self.timeout)
        except sqlite3.Error as e:
            raise LocalIOFailure(f"Cannot open local database {self.db_path}: {e}") from e
        conn.row_factory = sqlite3.Row
        try:
            yield conn
        except sqlite3.Error as e:
            raise LocalIOFailure(f"Local database error: {e}") from e
        finally:
            conn.close()

    @contextmanager
    def transaction(self) -> Iterator[sqlite3.Connection]:
        """Run several writes atomically; everything is rolled back on error."""
        with self.get_connection() as conn:
            try:
                conn.execute("BEGIN IMMEDIATE")
                yield conn
                conn.commit()
            except BaseException:
                conn.rollback()
                raise

    def init_database(self) -> None:
        """Create any missing tables and indexes."""
        with self.get_connection() as conn:
            self._create_schema(conn)
        logger.debug(f"Initialized local database at {self.db_path}")

    def _create_schema(self, conn: sqlite3.Connection) -> None:
        conn.executescript(
            """
            CREATE TABLE IF NOT EXISTS schema_migrations (
                version INTEGER PRIMARY KEY,
                applied_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
                description TEXT
            );

            CREATE TABLE IF NOT EXISTS records (
                id TEXT PRIMARY KEY,
                partition TEXT NOT NULL,
                project_id TEXT NOT NULL,
                synced INTEGER NOT NULL DEFAULT 0,
                created_at TEXT NOT NULL,
                updated_at TEXT NOT NULL,
                body TEXT NOT NULL  -- JSON string
            );

            CREATE TABLE IF NOT EXISTS sync_queue (
                seq INTEGER PRIMARY KEY AUTOINCREMENT,
                id TEXT NOT NULL UNIQUE,
                operation TEXT NOT NULL,  -- 'create', 'update', 'delete'
                collection TEXT NOT NULL,
                document_id TEXT NOT NULL,
                record_id TEXT,
                data TEXT NOT NULL,  -- JSON snapshot
                created_at TEXT NOT NULL,
                retry_count INTEGER NOT NULL DEFAULT 0,
                last_error TEXT,
                last_attempt TEXT,
                retryable INTEGER NOT NULL DEFAULT 1
            );

            CREATE TABLE IF NOT EXISTS checkpoints (
                id TEXT PRIMARY KEY,
                job_kind TEXT NOT NULL,
                start_time TEXT NOT NULL,
                is_completed INTEGER NOT NULL DEFAULT 0,
                body TEXT NOT NULL  -- JSON string
            );

            CREATE TABLE IF NOT EXISTS sync_history (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                timestamp TEXT NOT NULL,
                success BOOLEAN NOT NULL,
                attempted INTEGER DEFAULT 0,
                succeeded INTEGER DEFAULT 0,
                failed_transient INTEGER DEFAULT 0,
                failed_permanent INTEGER DEFAULT 0,
                duration_seconds REAL DEFAULT 0,
                error TEXT
            );

            CREATE INDEX IF NOT EXISTS idx_records_partition ON records(partition, project_id);
            CREATE INDEX IF NOT EXISTS idx_records_unsynced ON records(project_id, synced);
            CREATE INDEX IF NOT EXISTS idx_queue_document ON sync_queue(collection, document_id, seq);
            CREATE INDEX IF NOT EXISTS idx_queue_record ON sync_queue(record_id);
            CREATE INDEX IF NOT EXISTS idx_checkpoints_kind ON checkpoints(job_kind, is_completed);
        """
        )

        conn.execute(
            """
            INSERT OR IGNORE INTO schema_migrations (version, description)
            VALUES (1, 'Initial schema with records, sync_queue, checkpoints, sync_history')
        """
        )
        conn.commit()
