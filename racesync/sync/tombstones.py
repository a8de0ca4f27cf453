"""Soft-deletion markers that let polling devices converge on deletes."""

import logging

from ..backend import Backend

logger = logging.getLogger(__name__)

TOMBSTONE_EXPIRY_SECONDS = 300  # must outlive at least one client polling cycle


def composite_id(record_id: str | int, device_id: str | None = None) -> str:
    """Tombstone member for a deletion.

    A device-scoped delete is recorded as ``"{id}:{deviceId}"`` so it does not
    hide other devices' copies of the same record id.
    """
    return f"{record_id}:{device_id}" if device_id else str(record_id)


class TombstoneTracker:
    """Records deleted ids in TTL'd sets, one set per race and record class."""

    def __init__(self, backend: Backend, ttl_seconds: int = TOMBSTONE_EXPIRY_SECONDS):
        self.backend = backend
        self.ttl_seconds = ttl_seconds

    async def record_deletion(self, set_key: str, member: str) -> None:
        """Add ``member`` to the set and refresh the set's expiry."""
        await self.backend.sadd(set_key, member, ex=self.ttl_seconds)
        logger.debug(f"Tombstoned {member} in {set_key}")

    async def list_deleted(self, set_key: str) -> list[str]:
        """All members currently in the set, sorted for stable output."""
        return sorted(await self.backend.smembers(set_key))
