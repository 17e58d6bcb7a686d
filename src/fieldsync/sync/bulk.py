"""Checkpointed bulk sync jobs running on a background worker."""

import logging
import threading
from concurrent.futures import Future, ThreadPoolExecutor, wait as wait_futures
from typing import Dict, Iterator, List, Optional, Sequence

from ..domain.models import RecordSelector
from ..domain.results import Err, ErrorKind, Ok, Result, SyncError
from ..errors import LocalIOFailure
from ..storage.record_store import RecordFilter, RecordStore
from ..utils.logging import StructuredLogger
from .checkpoints import CheckpointManager, ProgressDelta, SyncCheckpoint
from .engine import SyncEngine
from .recovery import RecoveryStrategy

logger = logging.getLogger(__name__)


def chunked(items: Sequence[str], size: int) -> Iterator[List[str]]:
    for start in range(0, len(items), size):
        yield list(items[start : start + size])


class BulkSyncHandle:
    """Caller's grip on a running bulk sync job."""

    def __init__(self, checkpoint_id: str, future: Future, cancel_event: threading.Event):
        self.checkpoint_id = checkpoint_id
        self._future = future
        self._cancel_event = cancel_event

    @property
    def done(self) -> bool:
        return self._future.done()

    @property
    def cancelled(self) -> bool:
        return self._cancel_event.is_set()

    def cancel(self) -> None:
        """Stop after the batch in progress; the checkpoint stays resumable."""
        self._cancel_event.set()

    def wait(self, timeout: Optional[float] = None) -> bool:
        """Block until the job finishes; returns False on timeout."""
        done, _ = wait_futures([self._future], timeout=timeout)
        return bool(done)

    def result(self, timeout: Optional[float] = None) -> SyncCheckpoint:
        """Final checkpoint of the job, re-raising anything that aborted it."""
        return self._future.result(timeout=timeout)


class BulkSyncRunner:
    """Pushes a selected set of records in checkpointed batches.

    Record ids are frozen into the checkpoint context when the job starts so a
    resumed job works through the same selection and skips batches that were
    already applied.
    """

    def __init__(
        self,
        engine: SyncEngine,
        record_store: RecordStore,
        checkpoints: CheckpointManager,
        recovery: RecoveryStrategy,
        batch_size: int = 10,
        events: Optional[StructuredLogger] = None,
    ) -> None:
        self.engine = engine
        self.record_store = record_store
        self.checkpoints = checkpoints
        self.recovery = recovery
        self.batch_size = max(1, batch_size)
        self.events = events
        self._executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="fieldsync-bulk")
        self._handles: Dict[str, BulkSyncHandle] = {}
        self._lock = threading.Lock()

    def start(self, job_kind: str, selector: RecordSelector) -> BulkSyncHandle:
        """Snapshot the selection into a new checkpoint and run it in the background."""
        record_filter = RecordFilter(
            project_id=selector.project_id,
            kind=selector.kind,
            synced=False if selector.unsynced_only else None,
            created_after=selector.created_after,
            created_before=selector.created_before,
            ascending=True,
        )
        record_ids = [record.id for record in self.record_store.scan(record_filter)]

        checkpoint = self.checkpoints.create_checkpoint(
            job_kind,
            len(record_ids),
            context={
                "selector": selector.to_dict(),
                "recordIds": record_ids,
                "batchSize": self.batch_size,
            },
        )
        logger.info(f"Starting bulk sync {checkpoint.id} over {len(record_ids)} records")
        if self.events:
            self.events.log_checkpoint("created", checkpoint)
        return self._launch(checkpoint.id)

    def resume(self, checkpoint_id: str) -> Result[BulkSyncHandle, SyncError]:
        """Resume an interrupted job if its checkpoint is still viable.

        A cancelled job that is still finishing its batch is not reused; the
        resumed run queues behind it on the single worker.
        """
        with self._lock:
            running = self._handles.get(checkpoint_id)
        if running is not None and not running.done and not running.cancelled:
            return Ok(running)

        checkpoint = self.checkpoints.get(checkpoint_id)
        if checkpoint is None:
            return Err(SyncError(ErrorKind.VALIDATION, f"unknown checkpoint {checkpoint_id}"))

        plan = self.recovery.recover(checkpoint)
        if not plan.viable:
            return Err(plan.error)

        self.checkpoints.update_context(checkpoint_id, plan.resume_context)
        logger.info(
            f"Resuming bulk sync {checkpoint_id} after batch {plan.last_batch_number} "
            f"(resume #{plan.resume_context['resumeCount']})"
        )
        if self.events:
            self.events.log_checkpoint("resumed", checkpoint)
        return Ok(self._launch(checkpoint_id))

    def get_handle(self, checkpoint_id: str) -> Optional[BulkSyncHandle]:
        with self._lock:
            return self._handles.get(checkpoint_id)

    def shutdown(self, wait: bool = True) -> None:
        with self._lock:
            handles = list(self._handles.values())
        for handle in handles:
            handle.cancel()
        self._executor.shutdown(wait=wait)

    def _launch(self, checkpoint_id: str) -> BulkSyncHandle:
        cancel_event = threading.Event()
        future = self._executor.submit(self._run, checkpoint_id, cancel_event)
        handle = BulkSyncHandle(checkpoint_id, future, cancel_event)
        future.add_done_callback(lambda f: self._log_crash(checkpoint_id, f))
        with self._lock:
            self._handles[checkpoint_id] = handle
        return handle

    @staticmethod
    def _log_crash(checkpoint_id: str, future: Future) -> None:
        if future.cancelled():
            return
        error = future.exception()
        if error is not None:
            logger.error(f"Bulk sync {checkpoint_id} aborted: {error}")

    def _run(self, checkpoint_id: str, cancel_event: threading.Event) -> SyncCheckpoint:
        checkpoint = self.checkpoints.get(checkpoint_id)
        if checkpoint is None:
            raise ValueError(f"Checkpoint {checkpoint_id} disappeared before the job started")

        record_ids: List[str] = list(checkpoint.context.get("recordIds", []))
        batch_size = int(checkpoint.context.get("batchSize", self.batch_size))
        resume_count = int(checkpoint.context.get("resumeCount", 0))

        try:
            if resume_count and checkpoint.failed_records:
                self._retry_failed(checkpoint, resume_count, batch_size, cancel_event)

            for number, batch in enumerate(chunked(record_ids, batch_size), start=1):
                if cancel_event.is_set():
                    logger.info(f"Bulk sync {checkpoint_id} cancelled before batch {number}")
                    return self.checkpoints.get(checkpoint_id)

                batch_id = f"batch_{number}"
                if batch_id in checkpoint.processed_batches:
                    continue
                self._sync_batch(checkpoint_id, batch_id, number, batch)
        except LocalIOFailure as e:
            logger.error(f"Bulk sync {checkpoint_id} stopped on local storage failure: {e}")
            self.checkpoints.record_error(checkpoint_id, str(e))
            return self.checkpoints.get(checkpoint_id)

        return self._finish(checkpoint_id)

    def _retry_failed(
        self,
        checkpoint: SyncCheckpoint,
        resume_count: int,
        batch_size: int,
        cancel_event: threading.Event,
    ) -> None:
        logger.info(
            f"Retrying {len(checkpoint.failed_records)} previously failed records "
            f"of {checkpoint.id}"
        )
        for number, batch in enumerate(chunked(checkpoint.failed_records, batch_size), start=1):
            if cancel_event.is_set():
                return
            self._sync_batch(
                checkpoint.id,
                f"retry_{resume_count}_{number}",
                checkpoint.current_batch_number,
                batch,
                retrying=True,
            )

    def _sync_batch(
        self,
        checkpoint_id: str,
        batch_id: str,
        batch_number: int,
        record_ids: List[str],
        retrying: bool = False,
    ) -> None:
        outcome = self.engine.sync_records(record_ids)
        succeeded = [rid for rid, error in outcome.items() if error is None]
        failed = [rid for rid, error in outcome.items() if error is not None]
        first_error = next((error for error in outcome.values() if error), None)

        updated = self.checkpoints.update_checkpoint(
            checkpoint_id,
            ProgressDelta(
                batch_id=batch_id,
                batch_number=batch_number,
                processed=len(succeeded),
                failed_record_ids=failed,
                recovered_record_ids=succeeded if retrying else (),
                error=first_error,
            ),
        )
        if failed:
            logger.warning(f"Batch {batch_id} of {checkpoint_id}: {len(failed)} records failed")
        if updated and self.events:
            self.events.log_checkpoint("progress", updated)

    def _finish(self, checkpoint_id: str) -> SyncCheckpoint:
        checkpoint = self.checkpoints.get(checkpoint_id)
        if checkpoint.processed_records >= checkpoint.total_records and not checkpoint.failed_records:
            self.checkpoints.complete_checkpoint(checkpoint_id)
            checkpoint = self.checkpoints.get(checkpoint_id)
            logger.info(f"Bulk sync {checkpoint_id} completed ({checkpoint.total_records} records)")
            if self.events:
                self.events.log_checkpoint("completed", checkpoint)
            return checkpoint

        error = SyncError(
            ErrorKind.PARTIAL_BATCH_FAILURE,
            f"{len(checkpoint.failed_records)} of {checkpoint.total_records} records failed to sync",
        )
        self.checkpoints.record_error(checkpoint_id, str(error))
        logger.warning(f"Bulk sync {checkpoint_id} finished with failures: {error.message}")
        checkpoint = self.checkpoints.get(checkpoint_id)
        if self.events:
            self.events.log_checkpoint("partial", checkpoint)
        return checkpoint
