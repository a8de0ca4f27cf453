"""Request payload schemas.

Incoming bodies are validated into ``Valid(value)`` or ``Invalid(reason)``
before any store is touched, then sanitized into the domain records the
stores persist.
"""

import re
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Generic, Literal, TypeVar

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic import ValidationError as PydanticValidationError
from pydantic.alias_generators import to_camel

from .sync.models import MAX_VERSION_HISTORY, Entry, Fault, GpsCoords
from .sync.results import ValidationError

MAX_BIB_LENGTH = 10
MAX_DEVICE_ID_LENGTH = 50
MAX_DEVICE_NAME_LENGTH = 100
MAX_NOTES_LENGTH = 500
MAX_TIMESTAMP_LENGTH = 64
MAX_HISTORY_STRING_LENGTH = 200

_UNSAFE_CHARS = re.compile(r"[<>&\x00-\x1f\x7f]")

M = TypeVar("M", bound=BaseModel)


def sanitize_string(value: Any, max_length: int) -> str:
    """Truncate to ``max_length`` then strip ``<>&`` and control characters.

    Non-string values become the empty string.
    """
    if not value or not isinstance(value, str):
        return ""
    return _UNSAFE_CHARS.sub("", value[:max_length])


def _sanitize_optional(value: Any, max_length: int) -> str | None:
    return sanitize_string(value, max_length) or None


# ==================== Valid / Invalid ====================


@dataclass
class Valid(Generic[M]):
    value: M


@dataclass
class Invalid:
    reason: str


def _describe(error: PydanticValidationError) -> str:
    first = error.errors()[0]
    path = ".".join(str(part) for part in first.get("loc", ()))
    message = first.get("msg", "Validation failed")
    return f"{path}: {message}" if path else message


def validate(model: type[M], data: Any) -> Valid[M] | Invalid:
    """Validate ``data`` against ``model`` without raising."""
    try:
        return Valid(model.model_validate(data))
    except PydanticValidationError as e:
        return Invalid(_describe(e))


def require(result: Valid[M] | Invalid, context: str | None = None) -> M:
    """Unwrap a validation result.

    Raises:
        ValidationError: If the result is Invalid.
    """
    if isinstance(result, Invalid):
        raise ValidationError(f"{context}: {result.reason}" if context else result.reason)
    return result.value


# ==================== Payload models ====================


class _Payload(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="ignore")


def _check_timestamp(value: str) -> str:
    try:
        datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        raise ValueError("Invalid timestamp format") from None
    return value


def _check_record_id(value: int | str) -> int | str:
    if isinstance(value, int) and value < 1:
        raise ValueError("id must be a positive number")
    if isinstance(value, str) and not value:
        raise ValueError("id must not be empty")
    return value


class GpsIn(_Payload):
    latitude: float
    longitude: float
    accuracy: float


class EntryIn(_Payload):
    id: int | str
    bib: str | None = Field(default=None, max_length=MAX_BIB_LENGTH)
    point: Literal["S", "F"]
    timestamp: str
    status: Literal["ok", "dns", "dnf", "dsq", "flt"] | None = None
    run: Literal[1, 2] | None = None
    photo: str | None = None
    gps_coords: GpsIn | None = None
    time_source: Literal["gps", "system"] | None = None
    gps_timestamp: float | None = None

    check_id = field_validator("id")(_check_record_id)
    check_timestamp = field_validator("timestamp")(_check_timestamp)


class FaultIn(_Payload):
    id: int | str
    bib: str = Field(min_length=1, max_length=MAX_BIB_LENGTH)
    run: Literal[1, 2]
    gate_number: int = Field(ge=1)
    fault_type: Literal["MG", "STR", "BR"]
    timestamp: str
    gate_range: list[int] = Field(min_length=2, max_length=2)
    notes: str | None = None
    notes_source: Literal["voice", "manual"] | None = None
    notes_timestamp: str | None = None
    current_version: int | None = None
    version_history: list[Any] | None = None
    marked_for_deletion: bool | None = None
    marked_for_deletion_at: str | None = None
    marked_for_deletion_by: str | None = None
    marked_for_deletion_by_device_id: str | None = None
    deletion_approved_at: str | None = None
    deletion_approved_by: str | None = None

    check_id = field_validator("id")(_check_record_id)
    check_timestamp = field_validator("timestamp")(_check_timestamp)


class SyncPostBody(_Payload):
    entry: EntryIn
    device_id: str | None = None
    device_name: str | None = None


class SyncDeleteBody(_Payload):
    entry_id: int | str
    device_id: str | None = None
    device_name: str | None = None


class FaultPostBody(_Payload):
    fault: FaultIn
    device_id: str | None = None
    device_name: str | None = None
    gate_range: list[Any] | None = None
    is_ready: bool | None = None
    first_gate_color: Any = None


class FaultDeleteBody(_Payload):
    fault_id: int | str
    device_id: str | None = None
    device_name: str | None = None
    approved_by: str | None = None


# ==================== Domain builders ====================


def device_identity(device_id: Any, device_name: Any) -> tuple[str, str]:
    """Sanitized (device_id, device_name) pair."""
    return (
        sanitize_string(device_id, MAX_DEVICE_ID_LENGTH),
        sanitize_string(device_name, MAX_DEVICE_NAME_LENGTH),
    )


def build_entry(entry: EntryIn, device_id: str, device_name: str) -> Entry:
    """Build the stored entry from a validated payload.

    The photo is left off; the request layer attaches it after the size and
    rate checks.
    """
    gps = None
    if entry.gps_coords is not None:
        gps = GpsCoords(
            latitude=entry.gps_coords.latitude,
            longitude=entry.gps_coords.longitude,
            accuracy=entry.gps_coords.accuracy,
        )
    return Entry(
        id=str(entry.id),
        bib=sanitize_string(entry.bib, MAX_BIB_LENGTH),
        point=entry.point,
        run=entry.run,
        timestamp=entry.timestamp,
        status=entry.status or "ok",
        device_id=device_id,
        device_name=device_name,
        gps_coords=gps,
        time_source=entry.time_source,
        gps_timestamp=entry.gps_timestamp,
    )


def _sanitize_history_value(value: Any) -> Any:
    if isinstance(value, str):
        return sanitize_string(value, MAX_HISTORY_STRING_LENGTH)
    if isinstance(value, (bool, int, float)):
        return value
    return None


def sanitize_version_history(items: list[Any] | None) -> list[dict[str, Any]]:
    """Keep the most recent history records, with every string sanitized.

    Nested objects (the ``data`` snapshot) keep only their scalar fields; lists
    inside history records are dropped.
    """
    if not items:
        return []

    sanitized = []
    for item in items[-MAX_VERSION_HISTORY:]:
        if not isinstance(item, dict):
            continue
        record: dict[str, Any] = {}
        for key, value in item.items():
            if isinstance(value, dict):
                record[key] = {
                    k: v
                    for k, v in ((k, _sanitize_history_value(v)) for k, v in value.items())
                    if v is not None
                }
            elif (clean := _sanitize_history_value(value)) is not None:
                record[key] = clean
        sanitized.append(record)
    return sanitized


def build_fault(fault: FaultIn, device_id: str, device_name: str) -> Fault:
    """Build the stored fault from a validated payload."""
    return Fault(
        id=str(fault.id),
        bib=sanitize_string(fault.bib, MAX_BIB_LENGTH),
        run=fault.run,
        gate_number=fault.gate_number,
        fault_type=fault.fault_type,
        timestamp=fault.timestamp,
        gate_range=list(fault.gate_range),
        device_id=device_id,
        device_name=device_name,
        notes=_sanitize_optional(fault.notes, MAX_NOTES_LENGTH),
        notes_source=fault.notes_source,
        notes_timestamp=_sanitize_optional(fault.notes_timestamp, MAX_TIMESTAMP_LENGTH),
        current_version=fault.current_version or 1,
        version_history=sanitize_version_history(fault.version_history),
        marked_for_deletion=fault.marked_for_deletion is True,
        marked_for_deletion_at=_sanitize_optional(
            fault.marked_for_deletion_at, MAX_TIMESTAMP_LENGTH
        ),
        marked_for_deletion_by=_sanitize_optional(
            fault.marked_for_deletion_by, MAX_DEVICE_NAME_LENGTH
        ),
        marked_for_deletion_by_device_id=_sanitize_optional(
            fault.marked_for_deletion_by_device_id, MAX_DEVICE_ID_LENGTH
        ),
        deletion_approved_at=_sanitize_optional(fault.deletion_approved_at, MAX_TIMESTAMP_LENGTH),
        deletion_approved_by=_sanitize_optional(fault.deletion_approved_by, MAX_DEVICE_NAME_LENGTH),
    )
