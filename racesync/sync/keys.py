"""Backend key layout for per-race documents."""

import re

from .results import ValidationError

MAX_RACE_ID_LENGTH = 50

_RACE_ID_RE = re.compile(r"^[a-zA-Z0-9_-]+$")


def is_valid_race_id(race_id: object) -> bool:
    """Alphanumerics, hyphens and underscores, 1-50 characters."""
    if not race_id or not isinstance(race_id, str):
        return False
    if len(race_id) > MAX_RACE_ID_LENGTH:
        return False
    return bool(_RACE_ID_RE.match(race_id))


def normalize_race_id(race_id: object) -> str:
    """Validate and lowercase a race id.

    Race ids are case-insensitive; every key is built from the lowercased form.

    Raises:
        ValidationError: If the id is missing or malformed.
    """
    if not race_id:
        raise ValidationError("raceId is required")
    if not is_valid_race_id(race_id):
        raise ValidationError(
            "Invalid raceId format. Use alphanumeric characters, hyphens, "
            "and underscores only (max 50 chars)."
        )
    return race_id.lower()


def entries_key(race_id: str) -> str:
    return f"race:{race_id}"


def faults_key(race_id: str) -> str:
    return f"race:{race_id}:faults"


def devices_key(race_id: str) -> str:
    return f"race:{race_id}:devices"


def gate_assignments_key(race_id: str) -> str:
    return f"race:{race_id}:gate_assignments"


def highest_bib_key(race_id: str) -> str:
    return f"race:{race_id}:highestBib"


def deleted_entries_key(race_id: str) -> str:
    return f"race:{race_id}:deleted_entries"


def deleted_faults_key(race_id: str) -> str:
    return f"race:{race_id}:deleted_faults"


def race_tombstone_key(race_id: str) -> str:
    return f"race:{race_id}:deleted"


def rate_limit_key(prefix: str, method: str, identity: str, window_start: int) -> str:
    return f"ratelimit:{prefix}:{method}:{identity}:{window_start}"


# Suffixes of the auxiliary keys that live next to a race's entries document
AUXILIARY_SUFFIXES = (
    ":faults",
    ":devices",
    ":gate_assignments",
    ":highestBib",
    ":deleted_entries",
    ":deleted_faults",
    ":deleted",
)


def race_keys(race_id: str) -> list[str]:
    """Every data key belonging to a race (excluding its tombstone)."""
    return [
        entries_key(race_id),
        faults_key(race_id),
        devices_key(race_id),
        gate_assignments_key(race_id),
        highest_bib_key(race_id),
        deleted_entries_key(race_id),
        deleted_faults_key(race_id),
    ]
