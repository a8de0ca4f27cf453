"""In-process backend with real CAS semantics.

Used by the test-suite and for local runs without Redis. Every write bumps a
per-key version, and a watched key only commits if its version is unchanged,
which mirrors Redis WATCH/MULTI/EXEC closely enough to exercise the retry
paths of the sync engine.
"""

from __future__ import annotations

import asyncio
import fnmatch
import logging
import time
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import Any, AsyncIterator, Callable

from .base import Backend, BackendError, WatchedKey

logger = logging.getLogger(__name__)


@dataclass
class _Slot:
    value: Any  # str, dict[str, str], set[str] or int
    expires_at: float | None = None


class MemoryWatchedKey(WatchedKey):
    """Watch handle over a MemoryBackend key."""

    def __init__(self, backend: "MemoryBackend", key: str):
        self._backend = backend
        self._key = key
        self._version = backend._version(key)
        self._released = False

    @property
    def key(self) -> str:
        return self._key

    async def get(self) -> str | None:
        # Yield so concurrent transactions interleave between read and commit
        await asyncio.sleep(0)
        self._backend._check()
        return self._backend._read_str(self._key)

    async def commit(self, value: str, ex: int | None = None) -> bool:
        await asyncio.sleep(0)
        self._backend._check()
        if self._released:
            raise RuntimeError(f"Watch on {self._key} already released")
        self._released = True
        if self._backend._version(self._key) != self._version:
            return False
        self._backend._write(self._key, value, ex)
        return True

    async def unwatch(self) -> None:
        self._released = True


class MemoryBackend(Backend):
    """Dictionary-backed implementation of the Backend contract.

    Args:
        clock: Time source in seconds, injectable so tests can expire keys.
    """

    name = "memory"

    def __init__(self, clock: Callable[[], float] = time.time):
        self._clock = clock
        self._data: dict[str, _Slot] = {}
        self._versions: dict[str, int] = {}
        self.fail_with: BaseException | None = None
        self.commit_count = 0

    # ---- internals ----

    def _check(self) -> None:
        if self.fail_with is not None:
            raise self.fail_with

    def _version(self, key: str) -> int:
        self._purge(key)
        return self._versions.get(key, 0)

    def _bump(self, key: str) -> None:
        self._versions[key] = self._versions.get(key, 0) + 1

    def _purge(self, key: str) -> None:
        slot = self._data.get(key)
        if slot and slot.expires_at is not None and slot.expires_at <= self._clock():
            del self._data[key]
            self._bump(key)

    def _slot(self, key: str) -> _Slot | None:
        self._purge(key)
        return self._data.get(key)

    def _read_str(self, key: str) -> str | None:
        slot = self._slot(key)
        if slot is None:
            return None
        if not isinstance(slot.value, str):
            raise BackendError(f"WRONGTYPE {key} does not hold a string")
        return slot.value

    def _write(self, key: str, value: Any, ex: int | None = None) -> None:
        expires_at = self._clock() + ex if ex is not None else None
        self._data[key] = _Slot(value=value, expires_at=expires_at)
        self._bump(key)
        self.commit_count += 1

    def _container(self, key: str, kind: type) -> Any:
        slot = self._slot(key)
        if slot is None:
            slot = _Slot(value=kind())
            self._data[key] = slot
        elif not isinstance(slot.value, kind):
            raise BackendError(f"WRONGTYPE {key} does not hold a {kind.__name__}")
        return slot

    def ttl(self, key: str) -> float | None:
        """Seconds until ``key`` expires, or None if it has no expiry."""
        slot = self._slot(key)
        if slot is None or slot.expires_at is None:
            return None
        return slot.expires_at - self._clock()

    # ---- Backend contract ----

    @asynccontextmanager
    async def watch(self, key: str) -> AsyncIterator[WatchedKey]:
        self._check()
        watched = MemoryWatchedKey(self, key)
        try:
            yield watched
        finally:
            await watched.unwatch()

    async def get(self, key: str) -> str | None:
        self._check()
        return self._read_str(key)

    async def set(self, key: str, value: str, ex: int | None = None) -> None:
        self._check()
        self._write(key, value, ex)

    async def delete(self, *keys: str) -> int:
        self._check()
        removed = 0
        for key in keys:
            if self._slot(key) is not None:
                del self._data[key]
                self._bump(key)
                removed += 1
        return removed

    async def exists(self, key: str) -> bool:
        self._check()
        return self._slot(key) is not None

    async def expire(self, key: str, seconds: int) -> None:
        self._check()
        slot = self._slot(key)
        if slot is not None:
            slot.expires_at = self._clock() + seconds

    async def hset(self, key: str, field: str, value: str) -> None:
        self._check()
        self._container(key, dict).value[field] = value
        self._bump(key)

    async def hgetall(self, key: str) -> dict[str, str]:
        self._check()
        slot = self._slot(key)
        if slot is None:
            return {}
        return dict(slot.value)

    async def hdel(self, key: str, *fields: str) -> int:
        self._check()
        slot = self._slot(key)
        if slot is None:
            return 0
        removed = 0
        for field in fields:
            if slot.value.pop(field, None) is not None:
                removed += 1
        if not slot.value:
            del self._data[key]
        self._bump(key)
        return removed

    async def sadd(self, key: str, member: str, ex: int | None = None) -> None:
        self._check()
        slot = self._container(key, set)
        slot.value.add(member)
        if ex is not None:
            slot.expires_at = self._clock() + ex
        self._bump(key)

    async def smembers(self, key: str) -> set[str]:
        self._check()
        slot = self._slot(key)
        if slot is None:
            return set()
        return set(slot.value)

    async def incr_with_expire(self, key: str, ex: int) -> int:
        self._check()
        slot = self._slot(key)
        count = int(slot.value) + 1 if slot is not None else 1
        self._write(key, str(count), ex)
        return count

    async def scan_keys(self, pattern: str) -> list[str]:
        self._check()
        for key in list(self._data):
            self._purge(key)
        return sorted(k for k in self._data if fnmatch.fnmatchcase(k, pattern))

    async def ping(self) -> bool:
        self._check()
        return True
