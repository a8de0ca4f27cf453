"""Redis implementation of the backend contract.

Lifecycle: construct one ``RedisBackend`` per process from a URL, pass it to
every store, and ``close()`` it on shutdown. The underlying client is created
lazily on first use. When a connection or timeout error is observed the
failure time is recorded; ``healthy()`` reports False until
``reconnect_delay`` seconds have passed, after which the next call drops the
old connection pool and builds a fresh client.
"""

from __future__ import annotations

import logging
import time
from contextlib import asynccontextmanager
from typing import AsyncIterator, Callable

import redis.asyncio as redis
from redis.exceptions import ConnectionError as RedisConnectionError
from redis.exceptions import TimeoutError as RedisTimeoutError
from redis.exceptions import WatchError

from .base import Backend, WatchedKey

logger = logging.getLogger(__name__)


class RedisWatchedKey(WatchedKey):
    """WATCH/MULTI/EXEC over a dedicated pipeline connection."""

    def __init__(self, pipe: "redis.client.Pipeline", key: str):
        self._pipe = pipe
        self._key = key
        self._done = False

    @property
    def key(self) -> str:
        return self._key

    async def get(self) -> str | None:
        # In watch mode the pipeline executes commands immediately
        return await self._pipe.get(self._key)

    async def commit(self, value: str, ex: int | None = None) -> bool:
        self._pipe.multi()
        self._pipe.set(self._key, value, ex=ex)
        try:
            await self._pipe.execute()
        except WatchError:
            return False
        finally:
            self._done = True
        return True

    async def unwatch(self) -> None:
        if not self._done:
            await self._pipe.unwatch()
            self._done = True


class RedisBackend(Backend):
    """Backend over a redis-py asyncio client."""

    name = "redis"

    def __init__(
        self,
        url: str,
        connect_timeout: float = 10.0,
        reconnect_delay: float = 5.0,
        clock: Callable[[], float] = time.monotonic,
    ):
        """Initialize the backend handle.

        Args:
            url: Redis URL, e.g. "redis://localhost:6379/0".
            connect_timeout: Socket connect timeout in seconds.
            reconnect_delay: Seconds to wait after an error before rebuilding
                the connection pool.
            clock: Monotonic time source.
        """
        if not url:
            raise ValueError("Redis URL is not configured")
        self.url = url
        self.connect_timeout = connect_timeout
        self.reconnect_delay = reconnect_delay
        self._clock = clock
        self._client: redis.Redis | None = None
        self._last_error: Exception | None = None
        self._last_error_at: float | None = None

    def healthy(self) -> bool:
        """False until ``reconnect_delay`` has passed since the last connection error."""
        if self._last_error_at is None:
            return True
        return self._clock() - self._last_error_at > self.reconnect_delay

    @property
    def last_error(self) -> Exception | None:
        return self._last_error

    async def _get_client(self) -> redis.Redis:
        if self._last_error_at is not None and self._client is not None:
            if self._clock() - self._last_error_at > self.reconnect_delay:
                logger.info("Attempting Redis reconnection after error")
                try:
                    await self._client.aclose()
                except (RedisConnectionError, RedisTimeoutError, OSError) as e:
                    logger.debug(f"Ignoring error while closing stale client: {e}")
                self._client = None
                self._last_error = None
                self._last_error_at = None

        if self._client is None:
            self._client = redis.from_url(
                self.url,
                decode_responses=True,
                socket_connect_timeout=self.connect_timeout,
                retry_on_timeout=True,
            )
            logger.info(f"Redis client created for {self.safe_url()}")
        return self._client

    def safe_url(self) -> str:
        # Hide credentials in logs
        if "@" in self.url:
            scheme, _, rest = self.url.partition("://")
            return f"{scheme}://***@{rest.split('@', 1)[1]}"
        return self.url

    @asynccontextmanager
    async def _tracking(self) -> AsyncIterator[None]:
        """Record connection failures, then re-raise them unchanged."""
        try:
            yield
        except (RedisConnectionError, RedisTimeoutError) as e:
            logger.error(f"Redis connection error: {e}")
            self._last_error = e
            self._last_error_at = self._clock()
            raise

    @asynccontextmanager
    async def watch(self, key: str) -> AsyncIterator[WatchedKey]:
        client = await self._get_client()
        async with self._tracking():
            async with client.pipeline(transaction=True) as pipe:
                await pipe.watch(key)
                watched = RedisWatchedKey(pipe, key)
                try:
                    yield watched
                finally:
                    await watched.unwatch()

    async def get(self, key: str) -> str | None:
        client = await self._get_client()
        async with self._tracking():
            return await client.get(key)

    async def set(self, key: str, value: str, ex: int | None = None) -> None:
        client = await self._get_client()
        async with self._tracking():
            await client.set(key, value, ex=ex)

    async def delete(self, *keys: str) -> int:
        if not keys:
            return 0
        client = await self._get_client()
        async with self._tracking():
            return await client.delete(*keys)

    async def exists(self, key: str) -> bool:
        client = await self._get_client()
        async with self._tracking():
            return bool(await client.exists(key))

    async def expire(self, key: str, seconds: int) -> None:
        client = await self._get_client()
        async with self._tracking():
            await client.expire(key, seconds)

    async def hset(self, key: str, field: str, value: str) -> None:
        client = await self._get_client()
        async with self._tracking():
            await client.hset(key, field, value)

    async def hgetall(self, key: str) -> dict[str, str]:
        client = await self._get_client()
        async with self._tracking():
            return await client.hgetall(key) or {}

    async def hdel(self, key: str, *fields: str) -> int:
        if not fields:
            return 0
        client = await self._get_client()
        async with self._tracking():
            return await client.hdel(key, *fields)

    async def sadd(self, key: str, member: str, ex: int | None = None) -> None:
        client = await self._get_client()
        async with self._tracking():
            async with client.pipeline(transaction=True) as pipe:
                pipe.sadd(key, member)
                if ex is not None:
                    pipe.expire(key, ex)
                await pipe.execute()

    async def smembers(self, key: str) -> set[str]:
        client = await self._get_client()
        async with self._tracking():
            return set(await client.smembers(key))

    async def incr_with_expire(self, key: str, ex: int) -> int:
        client = await self._get_client()
        async with self._tracking():
            async with client.pipeline(transaction=True) as pipe:
                pipe.incr(key)
                pipe.expire(key, ex)
                count, _ = await pipe.execute()
        return int(count)

    async def scan_keys(self, pattern: str) -> list[str]:
        client = await self._get_client()
        async with self._tracking():
            return [key async for key in client.scan_iter(match=pattern, count=100)]

    async def ping(self) -> bool:
        client = await self._get_client()
        async with self._tracking():
            return bool(await client.ping())

    async def close(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None
            logger.info("Redis connection closed")
