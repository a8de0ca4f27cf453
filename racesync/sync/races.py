"""Race-level operations: listing races and deleting a race with a tombstone."""

import json
import logging
import time
from dataclasses import dataclass
from typing import Any, Callable

from ..backend import Backend
from .atomic import parse_document
from .heartbeat import DeviceHeartbeat
from .keys import AUXILIARY_SUFFIXES, normalize_race_id, race_keys, race_tombstone_key
from .tombstones import TOMBSTONE_EXPIRY_SECONDS

logger = logging.getLogger(__name__)

RACE_DELETED_MESSAGE = "Race deleted by administrator"


def _now_ms() -> int:
    return int(time.time() * 1000)


@dataclass
class RaceSummary:
    race_id: str
    entry_count: int
    device_count: int
    last_updated: int | None

    def to_dict(self) -> dict[str, Any]:
        return {
            "raceId": self.race_id,
            "entryCount": self.entry_count,
            "deviceCount": self.device_count,
            "lastUpdated": self.last_updated,
        }


class RaceRegistry:
    """Whole-race bookkeeping across all of a race's keys."""

    def __init__(
        self,
        backend: Backend,
        heartbeat: DeviceHeartbeat,
        tombstone_ttl_seconds: int = TOMBSTONE_EXPIRY_SECONDS,
        clock_ms: Callable[[], int] = _now_ms,
    ):
        self.backend = backend
        self.heartbeat = heartbeat
        self.tombstone_ttl_seconds = tombstone_ttl_seconds
        self._clock_ms = clock_ms

    async def get_tombstone(self, race_id: str) -> dict[str, Any] | None:
        """The deletion marker of a recently deleted race, if any."""
        race_id = normalize_race_id(race_id)
        raw = await self.backend.get(race_tombstone_key(race_id))
        if raw is None:
            return None
        tombstone = parse_document(raw, {})
        return {
            "deleted": True,
            "deletedAt": tombstone.get("deletedAt") or self._clock_ms(),
            "message": tombstone.get("message") or RACE_DELETED_MESSAGE,
        }

    async def delete_race(self, race_id: str) -> bool:
        """Delete every key of a race and leave a short-lived tombstone.

        Returns:
            False if the race has no entries document.

        Raises:
            ValidationError: If the race id is malformed.
        """
        race_id = normalize_race_id(race_id)
        keys = race_keys(race_id)
        if not await self.backend.exists(keys[0]):
            return False

        tombstone = {"deletedAt": self._clock_ms(), "message": RACE_DELETED_MESSAGE}
        await self.backend.set(
            race_tombstone_key(race_id),
            json.dumps(tombstone),
            ex=self.tombstone_ttl_seconds,
        )
        deleted = await self.backend.delete(*keys)
        logger.info(f"Deleted race {race_id} ({deleted} keys)")
        return True

    async def list_races(self) -> list[RaceSummary]:
        """Every race with an entries document, most recently updated first."""
        races: list[RaceSummary] = []
        seen: set[str] = set()

        for key in await self.backend.scan_keys("race:*"):
            if key.endswith(AUXILIARY_SUFFIXES):
                continue
            race_id = key[len("race:"):]
            if ":" in race_id or race_id in seen:
                continue
            seen.add(race_id)

            raw = await self.backend.get(key)
            if raw is None:
                continue
            try:
                data = json.loads(raw)
            except ValueError as e:
                logger.error(f"Error parsing race data at {key}: {e}")
                continue
            entries = data.get("entries") if isinstance(data, dict) else None

            device_count = await self.heartbeat.active_count(race_id)

            races.append(
                RaceSummary(
                    race_id=race_id,
                    entry_count=len(entries) if isinstance(entries, list) else 0,
                    device_count=device_count,
                    last_updated=data.get("lastUpdated") if isinstance(data, dict) else None,
                )
            )

        races.sort(key=lambda r: r.last_updated or 0, reverse=True)
        return races
