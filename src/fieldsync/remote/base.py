"""Interface of the remote document store consumed by the sync engine."""

from abc import ABC, abstractmethod
from typing import Any, Dict, Optional


class RemoteStore(ABC):
    """Hierarchical document store addressed by slash-separated paths.

    Implementations raise ``RemoteUnreachable`` for failures worth retrying
    (network, timeouts, temporary unavailability) and ``RemoteRejected`` for
    writes the remote will never accept as sent.
    """

    @abstractmethod
    def set_merge(
        self, path: str, data: Dict[str, Any], timeout: Optional[float] = None
    ) -> None:
        """Idempotent upsert merging ``data`` into the document at ``path``."""

    @abstractmethod
    def get(self, path: str, timeout: Optional[float] = None) -> Optional[Dict[str, Any]]:
        """Return the document at ``path`` or None if it does not exist."""

    @abstractmethod
    def delete(self, path: str, timeout: Optional[float] = None) -> None:
        """Delete the document at ``path``; deleting a missing document succeeds."""

    def test_connection(self) -> bool:
        """Check whether the remote store is reachable."""
        return True
