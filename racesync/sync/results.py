"""Outcome and error types shared by the sync stores."""

from dataclasses import dataclass, field
from typing import Any, Generic, TypeVar

T = TypeVar("T")
R = TypeVar("R")


# ==================== Errors ====================


class SyncError(Exception):
    """Base class for errors the request layer turns into client responses."""

    status_code = 500

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class ValidationError(SyncError):
    """Input rejected before touching storage."""

    status_code = 400


class LimitExceededError(SyncError):
    """Record-count ceiling reached for a race.

    Permanent until records are deleted.
    """

    status_code = 400


class ConflictError(SyncError):
    """CAS retry budget exhausted. The caller should retry later."""

    status_code = 409

    def __init__(self, message: str = "Concurrent modification conflict, please retry"):
        super().__init__(message)


# ==================== Transform decisions ====================


@dataclass
class Commit(Generic[T, R]):
    """Transform decision: write ``data`` back and hand ``result`` to the caller."""

    data: T
    result: R


@dataclass
class Abort(Generic[R]):
    """Transform decision: leave the document untouched."""

    result: R


# ==================== Update outcomes ====================


@dataclass
class Committed(Generic[T, R]):
    """The conditional write succeeded."""

    data: T
    result: R
    attempts: int = 1


@dataclass
class Aborted(Generic[R]):
    """The transform chose not to write (duplicate, limit, nothing to do)."""

    result: R
    attempts: int = 1


@dataclass
class Conflict:
    """Every attempt lost the race against another writer."""

    key: str
    attempts: int


UpdateOutcome = Committed | Aborted | Conflict


# ==================== Store results ====================


@dataclass
class CrossDeviceDuplicate:
    """The existing record another device already submitted for the same bib/point/run."""

    bib: str
    point: str
    run: int
    device_name: str
    timestamp: str

    def to_dict(self) -> dict[str, Any]:
        return {
            "bib": self.bib,
            "point": self.point,
            "run": self.run,
            "deviceName": self.device_name,
            "timestamp": self.timestamp,
        }


@dataclass
class AddResult:
    """Result of an add against a per-race document."""

    document: dict[str, Any]
    is_duplicate: bool = False
    cross_device_duplicate: CrossDeviceDuplicate | None = None

    def to_envelope(self) -> dict[str, Any]:
        envelope: dict[str, Any] = {
            "success": True,
            "data": self.document,
            "isDuplicate": self.is_duplicate,
        }
        if self.cross_device_duplicate is not None:
            envelope["crossDeviceDuplicate"] = self.cross_device_duplicate.to_dict()
        return envelope


@dataclass
class RemoveResult:
    """Result of an idempotent delete.

    ``was_removed`` is informational only; the tombstone is recorded either way.
    """

    was_removed: bool
    composite_id: str
    document: dict[str, Any] = field(default_factory=dict)

    def to_envelope(self) -> dict[str, Any]:
        return {
            "success": True,
            "data": {"deleted": self.was_removed, "compositeId": self.composite_id},
        }


def error_envelope(error: SyncError | str) -> dict[str, Any]:
    """Build the failure envelope for an error or message."""
    message = error.message if isinstance(error, SyncError) else error
    return {"success": False, "error": message}
