"""Domain records stored in the per-race documents.

Documents hold the camelCase ``to_dict()`` form of these records so that every
device, whatever it runs, reads the same JSON.
"""

from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from enum import Enum
from typing import Any

MAX_VERSION_HISTORY = 100

VALID_POINTS = ("S", "F")
VALID_STATUSES = ("ok", "dns", "dnf", "dsq", "flt")
VALID_FAULT_TYPES = ("MG", "STR", "BR")
VALID_GATE_COLORS = ("red", "blue")


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def _drop_none(data: dict[str, Any]) -> dict[str, Any]:
    return {k: v for k, v in data.items() if v is not None}


@dataclass
class GpsCoords:
    latitude: float
    longitude: float
    accuracy: float

    def to_dict(self) -> dict[str, float]:
        return {
            "latitude": self.latitude,
            "longitude": self.longitude,
            "accuracy": self.accuracy,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "GpsCoords":
        return cls(
            latitude=float(data.get("latitude") or 0),
            longitude=float(data.get("longitude") or 0),
            accuracy=float(data.get("accuracy") or 0),
        )


@dataclass
class Entry:
    """A timestamped start/finish event recorded by one device."""

    id: str
    point: str  # "S" or "F"
    timestamp: str  # ISO-8601
    bib: str = ""
    run: int | None = None  # 1 or 2; absent means run 1
    status: str = "ok"
    device_id: str = ""
    device_name: str = ""
    synced_at: int | None = None  # ms epoch, set on arrival
    photo: str | None = None  # base64
    gps_coords: GpsCoords | None = None
    time_source: str | None = None  # "gps" or "system"
    gps_timestamp: float | None = None

    @property
    def effective_run(self) -> int:
        return self.run or 1

    def to_dict(self) -> dict[str, Any]:
        """Convert to the stored document form."""
        return _drop_none({
            "id": self.id,
            "bib": self.bib,
            "point": self.point,
            "run": self.run,
            "timestamp": self.timestamp,
            "status": self.status,
            "deviceId": self.device_id,
            "deviceName": self.device_name,
            "syncedAt": self.synced_at,
            "photo": self.photo,
            "gpsCoords": self.gps_coords.to_dict() if self.gps_coords else None,
            "timeSource": self.time_source,
            "gpsTimestamp": self.gps_timestamp,
        })

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Entry":
        """Create from the stored document form."""
        return cls(
            id=str(data["id"]),
            point=data["point"],
            timestamp=data["timestamp"],
            bib=data.get("bib") or "",
            run=data.get("run"),
            status=data.get("status") or "ok",
            device_id=data.get("deviceId") or "",
            device_name=data.get("deviceName") or "",
            synced_at=data.get("syncedAt"),
            photo=data.get("photo"),
            gps_coords=(
                GpsCoords.from_dict(data["gpsCoords"])
                if isinstance(data.get("gpsCoords"), dict)
                else None
            ),
            time_source=data.get("timeSource"),
            gps_timestamp=data.get("gpsTimestamp"),
        )


class FaultState(Enum):
    """Lifecycle of a fault. Hard deletion only happens through remove()."""

    ACTIVE = "active"
    MARKED_FOR_DELETION = "markedForDeletion"


@dataclass
class Fault:
    """A gate fault (missed gate, straddle, binding release) with version history."""

    id: str
    bib: str
    run: int
    gate_number: int
    fault_type: str  # "MG", "STR" or "BR"
    timestamp: str
    gate_range: list[int] = field(default_factory=lambda: [1, 1])
    device_id: str = ""
    device_name: str = ""
    synced_at: int | None = None
    notes: str | None = None
    notes_source: str | None = None  # "voice" or "manual"
    notes_timestamp: str | None = None
    current_version: int = 1
    version_history: list[dict[str, Any]] = field(default_factory=list)
    marked_for_deletion: bool = False
    marked_for_deletion_at: str | None = None
    marked_for_deletion_by: str | None = None
    marked_for_deletion_by_device_id: str | None = None
    deletion_approved_at: str | None = None
    deletion_approved_by: str | None = None

    @property
    def state(self) -> FaultState:
        if self.marked_for_deletion:
            return FaultState.MARKED_FOR_DELETION
        return FaultState.ACTIVE

    def version_data(self) -> dict[str, Any]:
        """Snapshot of the editable fields, as kept in versionHistory."""
        return _drop_none({
            "id": self.id,
            "bib": self.bib,
            "run": self.run,
            "gateNumber": self.gate_number,
            "faultType": self.fault_type,
            "timestamp": self.timestamp,
            "deviceId": self.device_id,
            "deviceName": self.device_name,
            "gateRange": list(self.gate_range),
            "notes": self.notes,
            "notesSource": self.notes_source,
            "notesTimestamp": self.notes_timestamp,
        })

    def _with_version(
        self,
        change_type: str,
        edited_by: str,
        edited_by_device_id: str,
        description: str | None = None,
        **changes: Any,
    ) -> "Fault":
        updated = replace(self, **changes)
        new_version = self.current_version + 1
        record = _drop_none({
            "version": new_version,
            "timestamp": _now_iso(),
            "editedBy": edited_by,
            "editedByDeviceId": edited_by_device_id,
            "changeType": change_type,
            "data": updated.version_data(),
            "changeDescription": description,
        })
        history = (list(self.version_history) + [record])[-MAX_VERSION_HISTORY:]
        return replace(updated, current_version=new_version, version_history=history)

    def edit(
        self,
        edited_by: str,
        edited_by_device_id: str,
        description: str | None = None,
        **changes: Any,
    ) -> "Fault":
        """Return the next version with ``changes`` applied.

        Raises:
            ValueError: If the fault is awaiting deletion.
        """
        if self.marked_for_deletion:
            raise ValueError(f"Fault {self.id} is marked for deletion")
        return self._with_version("edit", edited_by, edited_by_device_id, description, **changes)

    def mark_for_deletion(self, by: str, device_id: str) -> "Fault":
        """active -> markedForDeletion. The version is unchanged; the flag flip is the transition."""
        return replace(
            self,
            marked_for_deletion=True,
            marked_for_deletion_at=_now_iso(),
            marked_for_deletion_by=by,
            marked_for_deletion_by_device_id=device_id,
        )

    def reject_deletion(self, by: str, device_id: str) -> "Fault":
        """markedForDeletion -> active, with a version bump."""
        return self._with_version(
            "edit",
            by,
            device_id,
            "Deletion rejected by Chief Judge",
            marked_for_deletion=False,
            marked_for_deletion_at=None,
            marked_for_deletion_by=None,
            marked_for_deletion_by_device_id=None,
        )

    def approve_deletion(self, by: str) -> "Fault":
        """Record who approved a pending deletion, ahead of the remove() call.

        Raises:
            ValueError: If the fault is not marked for deletion.
        """
        if not self.marked_for_deletion:
            raise ValueError(f"Fault {self.id} is not marked for deletion")
        return replace(self, deletion_approved_at=_now_iso(), deletion_approved_by=by)

    def to_dict(self) -> dict[str, Any]:
        """Convert to the stored document form."""
        return {
            "id": self.id,
            "bib": self.bib,
            "run": self.run,
            "gateNumber": self.gate_number,
            "faultType": self.fault_type,
            "timestamp": self.timestamp,
            "gateRange": list(self.gate_range),
            "deviceId": self.device_id,
            "deviceName": self.device_name,
            "syncedAt": self.synced_at,
            "notes": self.notes,
            "notesSource": self.notes_source,
            "notesTimestamp": self.notes_timestamp,
            "currentVersion": self.current_version,
            "versionHistory": list(self.version_history),
            "markedForDeletion": self.marked_for_deletion,
            "markedForDeletionAt": self.marked_for_deletion_at,
            "markedForDeletionBy": self.marked_for_deletion_by,
            "markedForDeletionByDeviceId": self.marked_for_deletion_by_device_id,
            "deletionApprovedAt": self.deletion_approved_at,
            "deletionApprovedBy": self.deletion_approved_by,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Fault":
        """Create from the stored document form."""
        return cls(
            id=str(data["id"]),
            bib=data.get("bib") or "",
            run=data.get("run") or 1,
            gate_number=data["gateNumber"],
            fault_type=data["faultType"],
            timestamp=data["timestamp"],
            gate_range=list(data.get("gateRange") or [1, 1]),
            device_id=data.get("deviceId") or "",
            device_name=data.get("deviceName") or "",
            synced_at=data.get("syncedAt"),
            notes=data.get("notes"),
            notes_source=data.get("notesSource"),
            notes_timestamp=data.get("notesTimestamp"),
            current_version=data.get("currentVersion") or 1,
            version_history=list(data.get("versionHistory") or []),
            marked_for_deletion=data.get("markedForDeletion") is True,
            marked_for_deletion_at=data.get("markedForDeletionAt"),
            marked_for_deletion_by=data.get("markedForDeletionBy"),
            marked_for_deletion_by_device_id=data.get("markedForDeletionByDeviceId"),
            deletion_approved_at=data.get("deletionApprovedAt"),
            deletion_approved_by=data.get("deletionApprovedBy"),
        )


@dataclass
class DeviceRecord:
    """Liveness record for one device in a race."""

    device_id: str
    name: str
    last_seen: int  # ms epoch

    def to_dict(self) -> dict[str, Any]:
        return {"deviceId": self.device_id, "name": self.name, "lastSeen": self.last_seen}


@dataclass
class GateAssignment:
    """Which gates a judge's device is currently covering."""

    gate_start: int
    gate_end: int
    device_name: str = "Unknown"
    is_ready: bool = False
    first_gate_color: str = "red"
    last_seen: int = 0  # ms epoch, stamped by the registry

    def is_valid_range(self, max_gate: int = 100) -> bool:
        return 0 < self.gate_start <= self.gate_end <= max_gate

    def to_dict(self) -> dict[str, Any]:
        return {
            "deviceName": self.device_name,
            "gateStart": self.gate_start,
            "gateEnd": self.gate_end,
            "lastSeen": self.last_seen,
            "isReady": self.is_ready,
            "firstGateColor": self.first_gate_color,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "GateAssignment":
        return cls(
            gate_start=int(data["gateStart"]),
            gate_end=int(data["gateEnd"]),
            device_name=data.get("deviceName") or "Unknown",
            is_ready=data.get("isReady") is True,
            first_gate_color=data.get("firstGateColor") or "red",
            last_seen=int(data["lastSeen"]),
        )
