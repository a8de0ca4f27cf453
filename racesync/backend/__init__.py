"""Key-value backends for the race sync engine.

Provides the Backend contract plus a Redis implementation for production and
a CAS-capable in-memory implementation for tests and local runs.
"""

from .base import Backend, BackendError, WatchedKey
from .memory import MemoryBackend
from .redis_backend import RedisBackend

__all__ = [
    "Backend",
    "BackendError",
    "WatchedKey",
    "MemoryBackend",
    "RedisBackend",
    "create_backend",
]


def create_backend(config) -> Backend:
    """Build the backend described by a BackendConfig.

    Args:
        config: BackendConfig with ``kind`` of "redis" or "memory".

    Returns:
        A new backend handle. The caller owns it and must close it.
    """
    if config.kind == "memory":
        return MemoryBackend()
    if config.kind == "redis":
        return RedisBackend(
            config.url,
            connect_timeout=config.connect_timeout,
            reconnect_delay=config.reconnect_delay,
        )
    raise ValueError(f"Unknown backend kind: {config.kind}")
