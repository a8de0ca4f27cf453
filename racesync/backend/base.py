"""Key-value backend contract used by the sync engine."""

from __future__ import annotations

from abc import ABC, abstractmethod
from contextlib import AbstractAsyncContextManager


class BackendError(Exception):
    """Raised by backends that are not Redis-backed when the store is unreachable."""


class WatchedKey(ABC):
    """A single key under optimistic watch.

    Obtained from ``Backend.watch()``. ``commit()`` performs the conditional
    write: it only succeeds if nobody wrote the key since the watch began.
    """

    @property
    @abstractmethod
    def key(self) -> str:
        """The watched key."""
        pass

    @abstractmethod
    async def get(self) -> str | None:
        """Read the current raw value of the watched key."""
        pass

    @abstractmethod
    async def commit(self, value: str, ex: int | None = None) -> bool:
        """Conditionally write the key.

        Args:
            value: Serialized document to store.
            ex: Expiry in seconds.

        Returns:
            True if the write committed, False if an intervening write
            invalidated the watch.
        """
        pass

    @abstractmethod
    async def unwatch(self) -> None:
        """Release the watch without writing."""
        pass


class Backend(ABC):
    """Abstract key-value store with CAS, hash, set and counter primitives.

    Values are opaque strings (JSON documents). Implementations are
    constructed once and shared by every store; callers never reach for a
    global client.
    """

    name: str = "backend"

    @abstractmethod
    def watch(self, key: str) -> AbstractAsyncContextManager[WatchedKey]:
        """Begin an optimistic transaction on ``key``.

        The returned context manager always releases the watch on exit.
        """
        pass

    @abstractmethod
    async def get(self, key: str) -> str | None:
        pass

    @abstractmethod
    async def set(self, key: str, value: str, ex: int | None = None) -> None:
        pass

    @abstractmethod
    async def delete(self, *keys: str) -> int:
        pass

    @abstractmethod
    async def exists(self, key: str) -> bool:
        pass

    @abstractmethod
    async def expire(self, key: str, seconds: int) -> None:
        pass

    @abstractmethod
    async def hset(self, key: str, field: str, value: str) -> None:
        pass

    @abstractmethod
    async def hgetall(self, key: str) -> dict[str, str]:
        pass

    @abstractmethod
    async def hdel(self, key: str, *fields: str) -> int:
        pass

    @abstractmethod
    async def sadd(self, key: str, member: str, ex: int | None = None) -> None:
        """Add a set member, refreshing the set's expiry when ``ex`` is given."""
        pass

    @abstractmethod
    async def smembers(self, key: str) -> set[str]:
        pass

    @abstractmethod
    async def incr_with_expire(self, key: str, ex: int) -> int:
        """Atomically increment a counter and set its expiry.

        Returns:
            The counter value after the increment.
        """
        pass

    @abstractmethod
    async def scan_keys(self, pattern: str) -> list[str]:
        """List keys matching a glob-style pattern."""
        pass

    @abstractmethod
    async def ping(self) -> bool:
        pass

    def healthy(self) -> bool:
        """Whether the store is believed reachable right now."""
        return True

    async def close(self) -> None:
        """Release connections. Default is a no-op."""
        return None
