"""Drains the sync queue against the remote document store."""

import logging
import threading
from collections import OrderedDict
from concurrent.futures import ThreadPoolExecutor, as_completed
from datetime import datetime
from typing import Callable, Dict, Iterable, List, Optional, Tuple

from ..domain.models import DrainResult, Operation, SyncQueueEntry
from ..domain.payloads import PayloadError, remote_collection
from ..domain.results import Err, ErrorKind, Ok, Result, SyncError
from ..errors import LocalIOFailure, RemoteRejected, RemoteUnreachable
from ..remote.base import RemoteStore
from ..storage.record_store import RecordStore
from ..utils.logging import StructuredLogger
from .queue import SyncQueue

logger = logging.getLogger(__name__)

# Message fragments of unclassified exceptions that will not succeed on retry
PERMANENT_ERROR_PATTERNS = (
    "unauthorized",
    "forbidden",
    "permission denied",
    "invalid argument",
    "invalid data",
    "malformed",
    "validation",
    "bad request",
)


def classify_exception(error: Exception) -> ErrorKind:
    """Map an exception from the remote path onto the failure taxonomy.

    Anything not known to be permanent is treated as transient so field data
    is never dropped on an unfamiliar error.
    """
    if isinstance(error, RemoteRejected):
        return ErrorKind.REMOTE_REJECTED
    if isinstance(error, (RemoteUnreachable, TimeoutError, ConnectionError)):
        return ErrorKind.REMOTE_UNREACHABLE

    message = str(error).lower()
    if any(pattern in message for pattern in PERMANENT_ERROR_PATTERNS):
        return ErrorKind.REMOTE_REJECTED
    return ErrorKind.REMOTE_UNREACHABLE


class SyncEngine:
    """Applies queued writes to the remote store with retry bookkeeping.

    Only one drain runs at a time. Inside a drain, each document's chain of
    entries is sent in order on a worker thread, and a failure stops the rest
    of that chain; chains of different documents are independent. Queue and
    record bookkeeping happens on the draining thread.
    """

    def __init__(
        self,
        record_store: RecordStore,
        queue: SyncQueue,
        remote: RemoteStore,
        attempt_timeout: float = 30.0,
        max_workers: int = 4,
        clock: Callable[[], datetime] = datetime.now,
        events: Optional[StructuredLogger] = None,
    ) -> None:
        """Initialize sync engine.

        Args:
            record_store: Local record store receiving sync confirmations
            queue: Queue of pending remote writes
            remote: Remote document store
            attempt_timeout: Seconds allowed for each remote call
            max_workers: Upper bound on concurrent remote calls
            clock: Source of the current time
            events: Optional structured event logger
        """
        self.record_store = record_store
        self.queue = queue
        self.remote = remote
        self.attempt_timeout = attempt_timeout
        self.max_workers = max(1, max_workers)
        self.clock = clock
        self.events = events
        self._drain_lock = threading.Lock()
        self.last_drain: Optional[DrainResult] = None

    @property
    def is_draining(self) -> bool:
        return self._drain_lock.locked()

    def drain_once(self) -> DrainResult:
        """Attempt every ready queue entry once.

        A call made while another drain is in flight returns immediately with
        a skipped result.
        """
        if not self._drain_lock.acquire(blocking=False):
            logger.info("Drain already in progress, skipping")
            return DrainResult.skipped_run()

        try:
            entries = self.queue.dequeue_ready()
            if self.events:
                self.events.log_drain_start(ready=len(entries), pending=len(self.queue))
            result = self._process(entries)
            self.last_drain = result
            if self.events:
                self.events.log_drain_complete(result)
            return result
        finally:
            self._drain_lock.release()

    def sync_records(self, record_ids: Iterable[str]) -> Dict[str, Optional[str]]:
        """Push the pending writes of specific records, waiting for any running drain.

        Backoff windows are ignored because this is an explicit request, but
        entries flagged non-retryable are not resent.

        Returns:
            Mapping of record id to None on success or the failure message
        """
        record_ids = list(record_ids)
        with self._drain_lock:
            entries: List[SyncQueueEntry] = []
            blocked: Dict[str, str] = {}

            for record_id in record_ids:
                pending = self.queue.pending_for_record(record_id)
                if not pending:
                    healed = self._requeue_orphan(record_id)
                    pending = [healed] if healed else []
                for entry in pending:
                    if not entry.retryable:
                        blocked[record_id] = entry.last_error or "rejected by remote store"
                        break
                    entries.append(entry)

            result = self._process([e for e in entries if e.record_id not in blocked])

        outcome: Dict[str, Optional[str]] = {}
        errors_by_record = {e["recordId"]: e["message"] for e in result.errors if e.get("recordId")}
        for record_id in record_ids:
            if record_id in blocked:
                outcome[record_id] = blocked[record_id]
            elif self.queue.has_pending_for_record(record_id):
                outcome[record_id] = errors_by_record.get(record_id, "still pending")
            else:
                outcome[record_id] = None
        return outcome

    def _requeue_orphan(self, record_id: str) -> Optional[SyncQueueEntry]:
        """Queue a snapshot for an unsynced record that has no pending entry."""
        record = self.record_store.get(record_id)
        if record is None or record.synced:
            return None
        try:
            collection = remote_collection(record)
        except PayloadError as e:
            logger.error(f"Cannot requeue record {record_id}: {e}")
            return None

        entry = SyncQueueEntry(
            operation=Operation.UPDATE,
            collection=collection,
            document_id=record.id,
            data=record.remote_snapshot(),
            record_id=record.id,
        )
        self.queue.enqueue(entry)
        logger.warning(f"Record {record_id} was unsynced without a queue entry, requeued")
        return entry

    def _process(self, entries: List[SyncQueueEntry]) -> DrainResult:
        result = DrainResult(started_at=self.clock())
        if not entries:
            result.finished_at = self.clock()
            return result

        chains = self._group_chains(entries)
        entry_ids = [e.id for e in entries]
        self.queue.claim(entry_ids)
        logger.info(f"Draining {len(entries)} queue entries across {len(chains)} documents")

        try:
            workers = min(self.max_workers, len(chains))
            with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="fieldsync-drain") as pool:
                futures = [pool.submit(self._run_chain, chain) for chain in chains]
                for future in as_completed(futures):
                    for entry, outcome in future.result():
                        self._apply(entry, outcome, result)
        finally:
            self.queue.release(entry_ids)

        result.finished_at = self.clock()
        logger.info(
            f"Drain finished in {result.duration_seconds:.2f}s: attempted={result.attempted}, "
            f"succeeded={result.succeeded}, transient={result.failed_transient}, "
            f"permanent={result.failed_permanent}"
        )
        return result

    @staticmethod
    def _group_chains(entries: List[SyncQueueEntry]) -> List[List[SyncQueueEntry]]:
        chains: "OrderedDict[Tuple[str, str], List[SyncQueueEntry]]" = OrderedDict()
        for entry in entries:
            chains.setdefault((entry.collection, entry.document_id), []).append(entry)
        for chain in chains.values():
            chain.sort(key=lambda e: (e.sequence or 0))
        return list(chains.values())

    def _run_chain(
        self, chain: List[SyncQueueEntry]
    ) -> List[Tuple[SyncQueueEntry, Result[None, SyncError]]]:
        """Send one document's entries in order, stopping at the first failure."""
        outcomes: List[Tuple[SyncQueueEntry, Result[None, SyncError]]] = []
        for entry in chain:
            outcome = self._attempt(entry)
            outcomes.append((entry, outcome))
            if not outcome.is_ok:
                break
        return outcomes

    def _attempt(self, entry: SyncQueueEntry) -> Result[None, SyncError]:
        try:
            if entry.operation in (Operation.CREATE, Operation.UPDATE):
                self.remote.set_merge(entry.path, entry.data, timeout=self.attempt_timeout)
            elif entry.operation is Operation.DELETE:
                self.remote.delete(entry.path, timeout=self.attempt_timeout)
            else:
                return Err(SyncError(ErrorKind.REMOTE_REJECTED, f"Unknown operation {entry.operation}"))
        except RemoteUnreachable as e:
            kind_note = " (timed out, outcome unknown)" if e.timed_out else ""
            return Err(SyncError(ErrorKind.REMOTE_UNREACHABLE, f"{e}{kind_note}", entry.record_id))
        except Exception as e:  # classified below; never allowed to abort the drain
            return Err(SyncError(classify_exception(e), str(e), entry.record_id))
        return Ok(None)

    def _apply(
        self,
        entry: SyncQueueEntry,
        outcome: Result[None, SyncError],
        result: DrainResult,
    ) -> None:
        result.attempted += 1
        now = self.clock()

        try:
            with self.queue.database.transaction() as conn:
                if isinstance(outcome, Ok):
                    self.queue.mark_succeeded(entry.id, conn=conn)
                    if entry.record_id and not self.queue.has_pending_for_record(
                        entry.record_id, conn=conn
                    ):
                        self.record_store.mark_synced(entry.record_id, now, conn=conn)
                else:
                    error = outcome.error
                    self.queue.mark_failed(
                        entry.id, error.message, retryable=error.retryable, conn=conn
                    )
                    if entry.record_id:
                        self.record_store.mark_sync_error(entry.record_id, str(error), conn=conn)
        except LocalIOFailure as e:
            logger.error(f"Could not record outcome of entry {entry.id}: {e}")
            result.errors.append(self._error_dict(entry, ErrorKind.LOCAL_IO_FAILURE, str(e)))
            return

        if isinstance(outcome, Ok):
            result.succeeded += 1
            logger.debug(f"Synced {entry.operation.value} {entry.path}")
            return

        error = outcome.error
        if error.retryable:
            result.failed_transient += 1
            next_at = self.queue.backoff.next_attempt_at(entry.retry_count + 1, now, key=entry.id)
            logger.warning(
                f"Transient failure for {entry.path} (attempt {entry.retry_count + 1}): "
                f"{error.message}; next attempt after {next_at}"
            )
        else:
            result.failed_permanent += 1
            logger.error(f"Remote rejected {entry.path}, needs manual action: {error.message}")

        result.errors.append(self._error_dict(entry, error.kind, error.message))
        if self.events:
            self.events.log_entry_failed(entry, error)

    @staticmethod
    def _error_dict(entry: SyncQueueEntry, kind: ErrorKind, message: str) -> Dict[str, Optional[str]]:
        return {
            "entryId": entry.id,
            "documentId": entry.document_id,
            "recordId": entry.record_id,
            "kind": kind.value,
            "message": message,
        }
