"""Wiring of the sync components around one backend handle."""

import logging

from ..backend import Backend
from ..config import SyncConfig
from .atomic import AtomicUpdater
from .counter import MonotonicCounter, bib_number
from .entries import EntryStore
from .faults import VersionedFaultStore
from .gates import GateAssignmentRegistry
from .heartbeat import DeviceHeartbeat
from .keys import highest_bib_key, normalize_race_id
from .races import RaceRegistry
from .rate_limit import RateLimiter
from .tombstones import TombstoneTracker

logger = logging.getLogger(__name__)


class SyncEngine:
    """Every sync component, sharing one injected backend.

    Construct once per process and reuse; the engine holds no per-request
    state, so concurrent requests only coordinate through the backend.
    """

    def __init__(self, backend: Backend, config: SyncConfig | None = None):
        config = config or SyncConfig()
        self.backend = backend
        self.config = config

        self.updater = AtomicUpdater(
            backend,
            ttl_seconds=config.cache_ttl_seconds,
            max_retries=config.max_atomic_retries,
        )
        self.tombstones = TombstoneTracker(backend, ttl_seconds=config.tombstone_ttl_seconds)
        self.entries = EntryStore(
            self.updater,
            self.tombstones,
            max_records=config.max_entries_per_race,
            default_page_limit=config.default_page_limit,
            max_page_limit=config.max_page_limit,
        )
        self.faults = VersionedFaultStore(
            self.updater, self.tombstones, max_records=config.max_faults_per_race
        )
        self.heartbeat = DeviceHeartbeat(
            backend,
            stale_threshold_ms=config.device_stale_seconds * 1000,
            ttl_seconds=config.cache_ttl_seconds,
        )
        self.gates = GateAssignmentRegistry(
            backend,
            stale_threshold_ms=config.gate_stale_seconds * 1000,
            ttl_seconds=config.cache_ttl_seconds,
        )
        self.counter = MonotonicCounter(self.updater)
        self.rate_limiter = RateLimiter(backend)
        self.races = RaceRegistry(
            backend, self.heartbeat, tombstone_ttl_seconds=config.tombstone_ttl_seconds
        )

    async def record_bib(self, race_id: str, bib: str | None) -> bool:
        """Ratchet the race's highest bib.

        Non-numeric bibs are ignored. Returns False only when the ratchet lost
        every CAS attempt; the entry itself is already saved at that point.
        """
        number = bib_number(bib)
        if number is None:
            return True
        race_id = normalize_race_id(race_id)
        return await self.counter.update_if_higher(highest_bib_key(race_id), number)

    async def highest_bib(self, race_id: str) -> int:
        race_id = normalize_race_id(race_id)
        return await self.counter.get(highest_bib_key(race_id))

    async def close(self) -> None:
        await self.backend.close()
