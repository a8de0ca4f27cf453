"""Sync stores built on bounded-retry compare-and-swap.

All per-race state lives in backend documents; every read-modify-write goes
through AtomicUpdater so concurrent devices never lose each other's writes.
"""

from .atomic import AtomicUpdater, parse_document
from .counter import MonotonicCounter, bib_number
from .duplicates import DuplicateCheck, detect_duplicates
from .engine import SyncEngine
from .entries import EntryStore
from .faults import VersionedFaultStore
from .gates import GateAssignmentRegistry
from .heartbeat import DeviceHeartbeat
from .models import DeviceRecord, Entry, Fault, FaultState, GateAssignment, GpsCoords
from .races import RaceRegistry, RaceSummary
from .rate_limit import RateLimiter, RateLimitPolicy, RateLimitResult
from .results import (
    Abort,
    Aborted,
    AddResult,
    Commit,
    Committed,
    Conflict,
    ConflictError,
    CrossDeviceDuplicate,
    LimitExceededError,
    RemoveResult,
    SyncError,
    ValidationError,
)
from .tombstones import TombstoneTracker, composite_id

__all__ = [
    "AtomicUpdater",
    "parse_document",
    "MonotonicCounter",
    "bib_number",
    "DuplicateCheck",
    "detect_duplicates",
    "SyncEngine",
    "EntryStore",
    "VersionedFaultStore",
    "GateAssignmentRegistry",
    "DeviceHeartbeat",
    "DeviceRecord",
    "Entry",
    "Fault",
    "FaultState",
    "GateAssignment",
    "GpsCoords",
    "RaceRegistry",
    "RaceSummary",
    "RateLimiter",
    "RateLimitPolicy",
    "RateLimitResult",
    "Abort",
    "Aborted",
    "AddResult",
    "Commit",
    "Committed",
    "Conflict",
    "ConflictError",
    "CrossDeviceDuplicate",
    "LimitExceededError",
    "RemoveResult",
    "SyncError",
    "ValidationError",
    "TombstoneTracker",
    "composite_id",
]
