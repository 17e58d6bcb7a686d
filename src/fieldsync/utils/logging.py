"""Structured logging setup for machine-readable sync events."""

import json
import logging
from datetime import datetime
from pathlib import Path
from typing import TYPE_CHECKING, Any, Dict

import structlog

if TYPE_CHECKING:
    from ..domain.models import DrainResult, SyncQueueEntry
    from ..domain.results import SyncError
    from ..sync.checkpoints import SyncCheckpoint


class StructuredLogger:
    """Handles structured JSON logging for sync operations."""

    def __init__(self, log_dir: str):
        self.log_dir = Path(log_dir)
        self.log_file = self.log_dir / "sync.jsonl"

        # Ensure log directory exists
        self.log_dir.mkdir(parents=True, exist_ok=True)

        structlog.configure(
            processors=[
                structlog.stdlib.filter_by_level,
                structlog.stdlib.add_logger_name,
                structlog.stdlib.add_log_level,
                structlog.stdlib.PositionalArgumentsFormatter(),
                structlog.processors.TimeStamper(fmt="ISO"),
                structlog.processors.StackInfoRenderer(),
                structlog.processors.format_exc_info,
                structlog.processors.UnicodeDecoder(),
                structlog.processors.JSONRenderer(),
            ],
            context_class=dict,
            logger_factory=structlog.stdlib.LoggerFactory(),
            wrapper_class=structlog.stdlib.BoundLogger,
            cache_logger_on_first_use=True,
        )

        self.logger = structlog.get_logger("fieldsync.events")

    def log_drain_start(self, ready: int, pending: int) -> None:
        """Log drain start."""
        self.logger.info(
            "drain_started",
            operation="drain",
            ready=ready,
            pending=pending,
            timestamp=datetime.now().isoformat(),
        )

    def log_drain_complete(self, result: "DrainResult") -> None:
        """Log drain completion and append it to the JSONL file."""
        if result.failed_permanent:
            status = "rejected"
        elif result.failed_transient:
            status = "partial"
        else:
            status = "success"

        log_entry = {
            "operation": "drain",
            "status": status,
            "duration_ms": int(result.duration_seconds * 1000),
            "results": {
                "attempted": result.attempted,
                "succeeded": result.succeeded,
                "failed_transient": result.failed_transient,
                "failed_permanent": result.failed_permanent,
            },
            "timestamp": datetime.now().isoformat(),
        }
        if result.errors:
            log_entry["errors"] = result.errors

        self.logger.info("drain_completed", **log_entry)
        self._write_to_file(log_entry)

    def log_entry_failed(self, entry: "SyncQueueEntry", error: "SyncError") -> None:
        """Log a failed remote attempt for one queue entry."""
        log = self.logger.warning if error.retryable else self.logger.error
        log(
            "entry_failed",
            operation="drain",
            entry_id=entry.id,
            path=entry.path,
            attempt=entry.retry_count + 1,
            kind=error.kind.value,
            retryable=error.retryable,
            error=error.message,
            timestamp=datetime.now().isoformat(),
        )

    def log_checkpoint(self, transition: str, checkpoint: "SyncCheckpoint") -> None:
        """Log a bulk sync checkpoint transition."""
        log_entry: Dict[str, Any] = {
            "operation": "bulk_sync",
            "transition": transition,
            "checkpoint_id": checkpoint.id,
            "job_kind": checkpoint.job_kind,
            "progress": round(checkpoint.progress_percentage, 1),
            "processed": checkpoint.processed_records,
            "total": checkpoint.total_records,
            "failed": len(checkpoint.failed_records),
            "timestamp": datetime.now().isoformat(),
        }
        self.logger.info("checkpoint_" + transition, **log_entry)
        if transition in ("completed", "partial"):
            self._write_to_file(log_entry)

    def log_connectivity_change(self, connected: bool) -> None:
        """Log network connectivity transitions."""
        self.logger.info(
            "connectivity_changed",
            operation="connectivity_check",
            connected=connected,
            timestamp=datetime.now().isoformat(),
        )

    def log_validation_error(self, errors: list) -> None:
        """Log configuration validation errors."""
        self.logger.error(
            "validation_failed",
            operation="validation",
            errors=errors,
            timestamp=datetime.now().isoformat(),
        )

    def _write_to_file(self, log_entry: Dict[str, Any]) -> None:
        """Write log entry to JSONL file."""
        try:
            with open(self.log_file, "a", encoding="utf-8") as f:
                f.write(json.dumps(log_entry, ensure_ascii=False, default=str) + "\n")
        except OSError as e:
            # Don't fail sync operation due to logging issues
            logging.getLogger(__name__).warning(f"Failed to write to log file: {e}")


def setup_console_logging(level: str) -> None:
    """Setup basic console logging."""
    logging.basicConfig(
        level=getattr(logging, level.upper()),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        handlers=[logging.StreamHandler()],
    )
