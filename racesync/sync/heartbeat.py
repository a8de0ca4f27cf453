"""Device liveness tracking.

Devices record a heartbeat every time they sync. A device is active while its
last heartbeat is within the staleness window; stale entries are removed
lazily by the reads that notice them.
"""

import json
import logging
import time
from typing import Callable

from ..backend import Backend
from .atomic import CACHE_EXPIRY_SECONDS
from .keys import devices_key, normalize_race_id
from .models import DeviceRecord

logger = logging.getLogger(__name__)

DEVICE_STALE_THRESHOLD_MS = 30_000


def _now_ms() -> int:
    return int(time.time() * 1000)


class DeviceHeartbeat:
    """Per-race hash of deviceId -> {name, lastSeen}."""

    def __init__(
        self,
        backend: Backend,
        stale_threshold_ms: int = DEVICE_STALE_THRESHOLD_MS,
        ttl_seconds: int = CACHE_EXPIRY_SECONDS,
        clock_ms: Callable[[], int] = _now_ms,
    ):
        self.backend = backend
        self.stale_threshold_ms = stale_threshold_ms
        self.ttl_seconds = ttl_seconds
        self._clock_ms = clock_ms

    async def touch(self, race_id: str, device_id: str, name: str = "") -> None:
        """Upsert the device's heartbeat and refresh the hash expiry.

        Requests without a device id are ignored.
        """
        race_id = normalize_race_id(race_id)
        if not device_id:
            return

        key = devices_key(race_id)
        payload = json.dumps({"name": name or "Unknown", "lastSeen": self._clock_ms()})
        await self.backend.hset(key, device_id, payload)
        await self.backend.expire(key, self.ttl_seconds)

    async def active_devices(self, race_id: str) -> list[DeviceRecord]:
        """Devices seen within the staleness window.

        Stale and unparseable records are deleted as a side effect.
        """
        race_id = normalize_race_id(race_id)
        key = devices_key(race_id)
        devices = await self.backend.hgetall(key)
        if not devices:
            return []

        now = self._clock_ms()
        active: list[DeviceRecord] = []
        stale: list[str] = []

        for device_id, raw in devices.items():
            try:
                data = json.loads(raw)
                last_seen = int(data["lastSeen"])
            except (TypeError, ValueError, KeyError):
                stale.append(device_id)
                continue

            if now - last_seen <= self.stale_threshold_ms:
                active.append(
                    DeviceRecord(
                        device_id=device_id,
                        name=data.get("name") or "Unknown",
                        last_seen=last_seen,
                    )
                )
            else:
                stale.append(device_id)

        if stale:
            await self.backend.hdel(key, *stale)
            logger.debug(f"Evicted {len(stale)} stale devices from race {race_id}")

        return active

    async def active_count(self, race_id: str) -> int:
        """Number of active devices, evicting stale ones."""
        return len(await self.active_devices(race_id))
