"""Ephemeral gate-assignment presence for gate judges.

Last write wins: assignments are advisory and refresh every poll, so a plain
upsert plus a staleness filter is enough.
"""

import json
import logging
import time
from dataclasses import replace
from typing import Any, Callable

from ..backend import Backend
from .atomic import CACHE_EXPIRY_SECONDS
from .keys import gate_assignments_key, normalize_race_id
from .models import VALID_GATE_COLORS, GateAssignment

logger = logging.getLogger(__name__)

GATE_STALE_THRESHOLD_MS = 60_000
MAX_GATE_NUMBER = 100


def _now_ms() -> int:
    return int(time.time() * 1000)


class GateAssignmentRegistry:
    """Per-race hash of deviceId -> GateAssignment."""

    def __init__(
        self,
        backend: Backend,
        stale_threshold_ms: int = GATE_STALE_THRESHOLD_MS,
        ttl_seconds: int = CACHE_EXPIRY_SECONDS,
        clock_ms: Callable[[], int] = _now_ms,
    ):
        self.backend = backend
        self.stale_threshold_ms = stale_threshold_ms
        self.ttl_seconds = ttl_seconds
        self._clock_ms = clock_ms

    async def upsert(self, race_id: str, device_id: str, assignment: GateAssignment) -> bool:
        """Store the device's assignment, stamping ``last_seen``.

        Assignments with an empty device id or an invalid gate range are
        ignored; unknown colors fall back to red.

        Returns:
            True if the assignment was stored.
        """
        race_id = normalize_race_id(race_id)
        if not device_id or not assignment.is_valid_range(MAX_GATE_NUMBER):
            return False

        color = assignment.first_gate_color
        stored = replace(
            assignment,
            first_gate_color=color if color in VALID_GATE_COLORS else "red",
            device_name=assignment.device_name or "Unknown",
            last_seen=self._clock_ms(),
        )

        key = gate_assignments_key(race_id)
        await self.backend.hset(key, device_id, json.dumps(stored.to_dict()))
        await self.backend.expire(key, self.ttl_seconds)
        return True

    async def list(self, race_id: str) -> list[dict[str, Any]]:
        """Assignments seen within the staleness window, with their device ids."""
        race_id = normalize_race_id(race_id)
        assignments = await self.backend.hgetall(gate_assignments_key(race_id))
        if not assignments:
            return []

        now = self._clock_ms()
        result = []
        for device_id, raw in assignments.items():
            try:
                assignment = GateAssignment.from_dict(json.loads(raw))
            except (TypeError, ValueError, KeyError):
                continue  # skip invalid data
            if now - assignment.last_seen <= self.stale_threshold_ms:
                result.append({"deviceId": device_id, **assignment.to_dict()})

        return result
