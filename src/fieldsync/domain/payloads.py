"""Typed payload variants per record kind.

Storage and the wire keep the open ``payload`` mapping so new fields survive a
round trip; domain logic parses it into one of these variants first.
"""

from dataclasses import dataclass, field
from typing import Any, Dict, Optional, Union

from .models import Record, RecordKind


class PayloadError(ValueError):
    """Payload does not match the shape required by its record kind."""


@dataclass(frozen=True)
class ReadingPayload:
    hour: str
    values: Dict[str, Any] = field(default_factory=dict)
    notes: str = ""
    extra: Dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class RollupPayload:
    date: str
    total_entries: int = 0
    completed_entries: int = 0
    completion_status: str = "incomplete"
    is_locked: bool = False
    summary: Dict[str, Any] = field(default_factory=dict)
    extra: Dict[str, Any] = field(default_factory=dict)

    @property
    def completion_ratio(self) -> float:
        if self.total_entries <= 0:
            return 0.0
        return min(self.completed_entries / self.total_entries, 1.0)


@dataclass(frozen=True)
class ReferencePayload:
    name: str
    number: str = ""
    location: str = ""
    unit_number: str = ""
    metadata: Dict[str, Any] = field(default_factory=dict)
    extra: Dict[str, Any] = field(default_factory=dict)


Payload = Union[ReadingPayload, RollupPayload, ReferencePayload]

_READING_KEYS = {"hour", "values", "notes"}
_ROLLUP_KEYS = {
    "date",
    "totalEntries",
    "completedEntries",
    "completionStatus",
    "isLocked",
    "summary",
}
_REFERENCE_KEYS = {"name", "number", "location", "unitNumber", "metadata"}


def _require(data: Dict[str, Any], key: str, kind: RecordKind) -> Any:
    value = data.get(key)
    if value is None or value == "":
        raise PayloadError(f"{kind.value} payload requires '{key}'")
    return value


def _extra(data: Dict[str, Any], known: set) -> Dict[str, Any]:
    return {k: v for k, v in data.items() if k not in known}


def parse_payload(kind: RecordKind, data: Dict[str, Any]) -> Payload:
    """Parse an open payload mapping into the variant for ``kind``.

    Raises:
        PayloadError: If required fields are missing or mistyped
    """
    if kind is RecordKind.READING:
        values = data.get("values", {})
        if not isinstance(values, dict):
            raise PayloadError("reading payload 'values' must be a mapping")
        return ReadingPayload(
            hour=str(_require(data, "hour", kind)),
            values=dict(values),
            notes=str(data.get("notes", "")),
            extra=_extra(data, _READING_KEYS),
        )

    if kind is RecordKind.ROLLUP:
        try:
            total = int(data.get("totalEntries", 0))
            completed = int(data.get("completedEntries", 0))
        except (TypeError, ValueError) as e:
            raise PayloadError(f"rollup entry counts must be integers: {e}") from e
        return RollupPayload(
            date=str(_require(data, "date", kind)),
            total_entries=total,
            completed_entries=completed,
            completion_status=str(data.get("completionStatus", "incomplete")),
            is_locked=bool(data.get("isLocked", False)),
            summary=dict(data.get("summary") or {}),
            extra=_extra(data, _ROLLUP_KEYS),
        )

    return ReferencePayload(
        name=str(_require(data, "name", kind)),
        number=str(data.get("number", "")),
        location=str(data.get("location", "")),
        unit_number=str(data.get("unitNumber", "")),
        metadata=dict(data.get("metadata") or {}),
        extra=_extra(data, _REFERENCE_KEYS),
    )


def typed_payload(record: Record) -> Payload:
    return parse_payload(record.kind, record.payload)


def remote_collection(record: Record) -> str:
    """Collection path of ``record`` in the remote document store.

    Raises:
        PayloadError: If a reading has no log identity to file it under
    """
    if record.kind is RecordKind.READING:
        log_id: Optional[str] = record.log_id or record.payload.get("logId")
        if not log_id:
            raise PayloadError(f"reading {record.id} has no log id")
        return f"projects/{record.project_id}/logs/{log_id}/entries"
    if record.kind is RecordKind.ROLLUP:
        return f"projects/{record.project_id}/dailyMetrics"
    return f"projects/{record.project_id}/reference"
