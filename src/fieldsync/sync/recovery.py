"""Decides whether an interrupted bulk sync can be resumed."""

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Optional

from ..domain.results import ErrorKind, SyncError
from .checkpoints import DEFAULT_MAX_AGE, SyncCheckpoint

logger = logging.getLogger(__name__)

LOW_PROGRESS_PERCENT = 10.0
SLOW_SECONDS_PER_RECORD = 1.0


@dataclass(frozen=True)
class RecoveryPlan:
    """Verdict of a recovery attempt and the context to resume with."""

    checkpoint_id: str
    viable: bool
    resume_context: Dict[str, Any] = field(default_factory=dict)
    error: Optional[SyncError] = None

    @property
    def last_batch_number(self) -> int:
        return self.resume_context.get("lastBatchNumber", 0)


class RecoveryStrategy:
    """Policy layer over checkpoints; never mutates them."""

    def __init__(
        self,
        max_age: timedelta = DEFAULT_MAX_AGE,
        clock: Callable[[], datetime] = datetime.now,
    ) -> None:
        self.max_age = max_age
        self.clock = clock

    def recover(self, checkpoint: SyncCheckpoint) -> RecoveryPlan:
        """Check whether ``checkpoint`` can be resumed and build its resume context."""
        now = self.clock()

        if checkpoint.is_completed:
            return RecoveryPlan(
                checkpoint_id=checkpoint.id,
                viable=False,
                error=SyncError(ErrorKind.VALIDATION, "checkpoint already completed"),
            )

        if checkpoint.is_stale(now, self.max_age):
            logger.warning(
                f"Checkpoint {checkpoint.id} is stale "
                f"(running {checkpoint.elapsed_time(now)}), not resuming"
            )
            return RecoveryPlan(
                checkpoint_id=checkpoint.id,
                viable=False,
                error=SyncError(
                    ErrorKind.STALE_JOB,
                    f"checkpoint older than {self.max_age} without completing",
                ),
            )

        logger.info(
            f"Recovering sync {checkpoint.id}: {checkpoint.progress_percentage:.1f}% "
            f"({checkpoint.processed_records}/{checkpoint.total_records})"
        )
        resume_context = {
            **checkpoint.context,
            "isResumed": True,
            "originalStartTime": checkpoint.start_time.isoformat(),
            "resumeTime": now.isoformat(),
            "lastBatchNumber": checkpoint.current_batch_number,
            "resumeCount": checkpoint.context.get("resumeCount", 0) + 1,
        }
        return RecoveryPlan(checkpoint_id=checkpoint.id, viable=True, resume_context=resume_context)

    def recommendations(self, checkpoint: SyncCheckpoint) -> List[str]:
        """Human-readable hints for operators; no side effects."""
        now = self.clock()
        recommendations: List[str] = []

        if checkpoint.is_completed:
            if checkpoint.failed_records:
                recommendations.append(
                    f"Completed with {len(checkpoint.failed_records)} records needing review"
                )
            else:
                recommendations.append("Sync completed successfully")
            return recommendations

        if checkpoint.is_stale(now, self.max_age):
            recommendations.append("Checkpoint is stale - consider restarting sync")

        if checkpoint.failed_records:
            recommendations.append(
                f"{len(checkpoint.failed_records)} records failed - inspect sync errors"
            )

        if checkpoint.total_records > 0 and checkpoint.progress_percentage < LOW_PROGRESS_PERCENT:
            recommendations.append("Low progress - check network connectivity")

        if checkpoint.processed_records > 0:
            seconds_per_record = (
                checkpoint.elapsed_time(now).total_seconds() / checkpoint.processed_records
            )
            if seconds_per_record > SLOW_SECONDS_PER_RECORD:
                recommendations.append("Slow sync performance - consider reducing batch size")

        if not recommendations:
            recommendations.append("Checkpoint appears healthy for recovery")

        return recommendations
