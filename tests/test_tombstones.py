"""Tests for deletion tombstones."""

import pytest

from racesync.backend import MemoryBackend
from racesync.sync.tombstones import TOMBSTONE_EXPIRY_SECONDS, TombstoneTracker, composite_id


class FakeClock:
    def __init__(self, now: float = 5_000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now


class TestCompositeId:
    def test_device_scoped(self):
        assert composite_id("e1", "dev-a") == "e1:dev-a"

    def test_unscoped(self):
        assert composite_id("e1") == "e1"
        assert composite_id("e1", "") == "e1"

    def test_numeric_id(self):
        assert composite_id(42, "d") == "42:d"


class TestTombstoneTracker:
    """Tests for TombstoneTracker."""

    @pytest.mark.asyncio
    async def test_record_and_list(self):
        tracker = TombstoneTracker(MemoryBackend())

        await tracker.record_deletion("set", "b:dev")
        await tracker.record_deletion("set", "a:dev")
        await tracker.record_deletion("set", "a:dev")

        assert await tracker.list_deleted("set") == ["a:dev", "b:dev"]

    @pytest.mark.asyncio
    async def test_default_ttl(self):
        backend = MemoryBackend(clock=FakeClock())
        tracker = TombstoneTracker(backend)

        await tracker.record_deletion("set", "x")

        assert backend.ttl("set") == TOMBSTONE_EXPIRY_SECONDS

    @pytest.mark.asyncio
    async def test_each_deletion_refreshes_ttl(self):
        clock = FakeClock()
        backend = MemoryBackend(clock=clock)
        tracker = TombstoneTracker(backend, ttl_seconds=60)

        await tracker.record_deletion("set", "x")
        clock.now += 50
        await tracker.record_deletion("set", "y")
        clock.now += 50

        assert await tracker.list_deleted("set") == ["x", "y"]

    @pytest.mark.asyncio
    async def test_tombstones_expire(self):
        clock = FakeClock()
        tracker = TombstoneTracker(MemoryBackend(clock=clock), ttl_seconds=60)

        await tracker.record_deletion("set", "x")
        clock.now += 61

        assert await tracker.list_deleted("set") == []
