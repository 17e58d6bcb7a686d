"""Minimal Firestore REST client implementing the remote document store."""

import logging
import re
import threading
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Tuple

import requests

from ..errors import RemoteRejected, RemoteUnreachable
from .base import RemoteStore

logger = logging.getLogger(__name__)

# Status codes the remote returns while it is busy or briefly unavailable
RETRYABLE_STATUS_CODES = {408, 425, 429, 500, 502, 503, 504}

_SIMPLE_FIELD = re.compile(r"^[A-Za-z_][A-Za-z_0-9]*$")


def rfc3339(value: datetime) -> str:
    """UTC timestamp with a trailing Z; naive values are taken as local time."""
    return value.astimezone(timezone.utc).strftime("%Y-%m-%dT%H:%M:%S.%fZ")


def encode_value(value: Any) -> Dict[str, Any]:
    """Encode a Python value as a Firestore REST ``Value``."""
    if value is None:
        return {"nullValue": None}
    if isinstance(value, bool):
        return {"booleanValue": value}
    if isinstance(value, int):
        return {"integerValue": str(value)}
    if isinstance(value, float):
        return {"doubleValue": value}
    if isinstance(value, datetime):
        return {"timestampValue": rfc3339(value)}
    if isinstance(value, dict):
        return {"mapValue": {"fields": encode_fields(value)}}
    if isinstance(value, (list, tuple)):
        return {"arrayValue": {"values": [encode_value(v) for v in value]}}
    return {"stringValue": str(value)}


def encode_fields(data: Dict[str, Any]) -> Dict[str, Any]:
    return {str(key): encode_value(value) for key, value in data.items()}


def decode_value(value: Dict[str, Any]) -> Any:
    """Decode a Firestore REST ``Value`` into a Python value."""
    if "nullValue" in value:
        return None
    if "booleanValue" in value:
        return bool(value["booleanValue"])
    if "integerValue" in value:
        return int(value["integerValue"])
    if "doubleValue" in value:
        return float(value["doubleValue"])
    if "timestampValue" in value:
        return value["timestampValue"]
    if "mapValue" in value:
        return decode_fields(value["mapValue"].get("fields", {}))
    if "arrayValue" in value:
        return [decode_value(v) for v in value["arrayValue"].get("values", [])]
    if "stringValue" in value:
        return value["stringValue"]
    logger.debug(f"Unsupported Firestore value type: {list(value)}")
    return None


def decode_fields(fields: Dict[str, Any]) -> Dict[str, Any]:
    return {key: decode_value(value) for key, value in fields.items()}


def field_path(key: str) -> str:
    """Quote a top-level field name for an update mask when needed."""
    if _SIMPLE_FIELD.match(key):
        return key
    escaped = key.replace("\\", "\\\\").replace("`", "\\`")
    return f"`{escaped}`"


class FirestoreClient(RemoteStore):
    """Firestore REST API client with merge upserts."""

    def __init__(
        self,
        project_id: str,
        api_token: Optional[str] = None,
        base_url: str = "https://firestore.googleapis.com/v1",
        database_id: str = "(default)",
        default_timeout: float = 30.0,
        session: Optional[requests.Session] = None,
    ) -> None:
        """Initialize Firestore client.

        Args:
            project_id: Cloud project owning the database
            api_token: OAuth bearer token (omit for the local emulator)
            base_url: REST base URL, e.g. http://localhost:8080/v1 for the emulator
            database_id: Firestore database identifier
            default_timeout: Request timeout used when a call passes none
            session: Session shared by every thread; by default each thread opens its own
        """
        self.base_url = base_url.rstrip("/")
        self.project_id = project_id
        self.database_id = database_id
        self.default_timeout = default_timeout
        self._shared_session = session
        self._local = threading.local()
        self.headers = {"Content-Type": "application/json"}
        if api_token:
            self.headers["Authorization"] = f"Bearer {api_token}"

    @property
    def session(self) -> requests.Session:
        """Session for the calling thread; each drain worker gets its own."""
        if self._shared_session is not None:
            return self._shared_session
        session = getattr(self._local, "session", None)
        if session is None:
            session = requests.Session()
            self._local.session = session
        return session

    def _document_url(self, path: str) -> str:
        return (
            f"{self.base_url}/projects/{self.project_id}/databases/{self.database_id}"
            f"/documents/{path.strip('/')}"
        )

    def _make_request(
        self,
        method: str,
        path: str,
        timeout: Optional[float] = None,
        allow_not_found: bool = False,
        **kwargs: Any,
    ) -> Optional[requests.Response]:
        """Make an authenticated request and classify failures.

        Returns:
            Response object, or None for an allowed 404

        Raises:
            RemoteUnreachable: Network errors, timeouts and retryable statuses
            RemoteRejected: Any other client error
        """
        url = self._document_url(path)
        try:
            response = self.session.request(
                method,
                url,
                headers=self.headers,
                timeout=timeout or self.default_timeout,
                **kwargs,
            )
        except requests.Timeout as e:
            raise RemoteUnreachable(f"{method} {path} timed out: {e}", timed_out=True) from e
        except requests.RequestException as e:
            raise RemoteUnreachable(f"{method} {path} failed: {e}") from e

        if response.status_code == 404 and allow_not_found:
            return None

        if response.status_code >= 400:
            message = self._error_message(response)
            logger.error(f"Firestore request {method} {path} failed: {response.status_code} {message}")
            if response.status_code in RETRYABLE_STATUS_CODES or response.status_code >= 500:
                raise RemoteUnreachable(f"{response.status_code}: {message}")
            raise RemoteRejected(f"{response.status_code}: {message}", status_code=response.status_code)

        return response

    @staticmethod
    def _error_message(response: requests.Response) -> str:
        try:
            error = response.json().get("error", {})
            return error.get("message") or response.text
        except ValueError:
            return response.text

    def set_merge(
        self, path: str, data: Dict[str, Any], timeout: Optional[float] = None
    ) -> None:
        params: List[Tuple[str, str]] = [
            ("updateMask.fieldPaths", field_path(key)) for key in data
        ]
        logger.debug(f"Merging {len(data)} fields into {path}")
        self._make_request(
            "PATCH",
            path,
            timeout=timeout,
            params=params,
            json={"fields": encode_fields(data)},
        )

    def get(self, path: str, timeout: Optional[float] = None) -> Optional[Dict[str, Any]]:
        response = self._make_request("GET", path, timeout=timeout, allow_not_found=True)
        if response is None:
            return None
        return decode_fields(response.json().get("fields", {}))

    def delete(self, path: str, timeout: Optional[float] = None) -> None:
        self._make_request("DELETE", path, timeout=timeout, allow_not_found=True)
        logger.debug(f"Deleted remote document {path}")

    def test_connection(self) -> bool:
        """Probe the database root; any non-error answer counts as reachable."""
        try:
            self._make_request("GET", "", timeout=10, allow_not_found=True, params={"pageSize": 1})
            return True
        except (RemoteUnreachable, RemoteRejected) as e:
            logger.error(f"Firestore connection test failed: {e}")
            return False
