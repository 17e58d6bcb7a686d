"""Exception taxonomy for local storage and remote store failures."""

from typing import Optional


class FieldSyncError(Exception):
    """Base class for all fieldsync errors."""


class LocalIOFailure(FieldSyncError):
    """Local store could not complete an operation (disk full, corruption)."""


class RemoteError(FieldSyncError):
    """Base class for remote store failures."""

    retryable = True


class RemoteUnreachable(RemoteError):
    """Remote store is unreachable or temporarily unavailable."""

    def __init__(self, message: str, timed_out: bool = False) -> None:
        super().__init__(message)
        self.timed_out = timed_out


class RemoteRejected(RemoteError):
    """Remote store rejected the write (schema or permission violation)."""

    retryable = False

    def __init__(self, message: str, status_code: Optional[int] = None) -> None:
        super().__init__(message)
        self.status_code = status_code
