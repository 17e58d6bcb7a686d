"""Exponential backoff policy for queued remote writes."""

import random
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Optional


@dataclass(frozen=True)
class BackoffPolicy:
    """Capped exponential backoff keyed off retry count.

    The n-th retry waits ``base * 2**(n-1)`` seconds after the last attempt,
    never more than ``cap``. ``jitter_factor`` spreads the delay by up to
    that fraction in either direction; the spread is seeded by ``key`` so one
    entry always sees the same window for a given retry count.
    """

    base_seconds: float = 5.0
    cap_seconds: float = 300.0
    jitter_factor: float = 0.0

    def delay(self, retry_count: int, key: str = "") -> timedelta:
        if retry_count <= 0:
            return timedelta(0)

        exponential = self.base_seconds * (2 ** (retry_count - 1))
        capped = min(exponential, self.cap_seconds)

        if self.jitter_factor > 0:
            rng = random.Random(f"{key}:{retry_count}")  # nosec B311 - jitter, not crypto
            jitter = (rng.random() - 0.5) * 2 * capped * self.jitter_factor
            capped = max(0.0, capped + jitter)

        return timedelta(seconds=capped)

    def next_attempt_at(
        self, retry_count: int, last_attempt: Optional[datetime], key: str = ""
    ) -> Optional[datetime]:
        """Earliest time the next attempt may start, or None if due now."""
        if last_attempt is None or retry_count <= 0:
            return None
        return last_attempt + self.delay(retry_count, key)

    def is_due(
        self,
        retry_count: int,
        last_attempt: Optional[datetime],
        now: datetime,
        key: str = "",
    ) -> bool:
        next_at = self.next_attempt_at(retry_count, last_attempt, key)
        return next_at is None or now >= next_at
