"""Duplicate classification for incoming records.

Works on the stored (camelCase dict) form so it can run inside a transform
without rebuilding model objects for every record in the race.
"""

from dataclasses import dataclass
from typing import Any, Iterable

from .results import CrossDeviceDuplicate


@dataclass
class DuplicateCheck:
    exact_duplicate: bool = False
    cross_device_duplicate: CrossDeviceDuplicate | None = None


def same_record(stored: dict[str, Any], record_id: str, device_id: str) -> bool:
    """Identity match: same id from the same device."""
    return str(stored.get("id")) == record_id and (stored.get("deviceId") or "") == device_id


def detect_duplicates(
    existing: Iterable[dict[str, Any]],
    candidate: dict[str, Any],
    cross_device: bool = True,
) -> DuplicateCheck:
    """Classify ``candidate`` against the records already stored.

    An exact duplicate is the same id from the same device. A cross-device
    duplicate is the same bib, point and run (missing run counts as run 1)
    submitted by a different device; it is advisory and never blocks a write.
    Candidates without a bib never match across devices.

    Args:
        existing: Stored records of the race.
        candidate: Stored form of the incoming record.
        cross_device: Whether to look for business-key duplicates.

    Returns:
        DuplicateCheck with the first cross-device match, if any.
    """
    record_id = str(candidate.get("id"))
    device_id = candidate.get("deviceId") or ""
    bib = candidate.get("bib")
    run = candidate.get("run") or 1

    check = DuplicateCheck()
    for stored in existing:
        if not check.exact_duplicate and same_record(stored, record_id, device_id):
            check.exact_duplicate = True

        if (
            cross_device
            and bib
            and check.cross_device_duplicate is None
            and stored.get("bib") == bib
            and stored.get("point") == candidate.get("point")
            and (stored.get("run") or 1) == run
            and (stored.get("deviceId") or "") != device_id
        ):
            check.cross_device_duplicate = CrossDeviceDuplicate(
                bib=stored["bib"],
                point=stored.get("point", ""),
                run=stored.get("run") or 1,
                device_name=stored.get("deviceName") or "Unknown device",
                timestamp=stored.get("timestamp", ""),
            )

        if check.exact_duplicate and (check.cross_device_duplicate or not cross_device or not bib):
            break

    return check
