"""Explicit result values for expected failure paths."""

from dataclasses import dataclass
from enum import Enum
from typing import Generic, Optional, TypeVar, Union

T = TypeVar("T")
E = TypeVar("E")


class ErrorKind(str, Enum):
    LOCAL_IO_FAILURE = "local_io_failure"
    REMOTE_UNREACHABLE = "remote_unreachable"
    REMOTE_REJECTED = "remote_rejected"
    STALE_JOB = "stale_job"
    PARTIAL_BATCH_FAILURE = "partial_batch_failure"
    VALIDATION = "validation"

    @property
    def retryable(self) -> bool:
        return self in (ErrorKind.REMOTE_UNREACHABLE, ErrorKind.PARTIAL_BATCH_FAILURE)


@dataclass(frozen=True)
class SyncError:
    """A classified failure."""

    kind: ErrorKind
    message: str
    record_id: Optional[str] = None

    @property
    def retryable(self) -> bool:
        return self.kind.retryable

    def __str__(self) -> str:
        return f"{self.kind.value}: {self.message}"


@dataclass(frozen=True)
class Ok(Generic[T]):
    value: T

    @property
    def is_ok(self) -> bool:
        return True


@dataclass(frozen=True)
class Err(Generic[E]):
    error: E

    @property
    def is_ok(self) -> bool:
        return False


Result = Union[Ok[T], Err[E]]
