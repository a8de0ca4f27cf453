"""Configuration loading for racesync."""

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import yaml


@dataclass
class ServerConfig:
    host: str = "0.0.0.0"
    port: int = 8080


@dataclass
class BackendConfig:
    """Where race documents live."""

    kind: str = "redis"  # "redis" or "memory"
    url: str = "redis://localhost:6379/0"
    connect_timeout: float = 10.0
    reconnect_delay: float = 5.0


@dataclass
class SyncConfig:
    """Limits and expiries for the sync stores."""

    cache_ttl_seconds: int = 86400  # refreshed on every write
    tombstone_ttl_seconds: int = 300
    max_atomic_retries: int = 5
    max_entries_per_race: int = 10000
    max_faults_per_race: int = 5000
    device_stale_seconds: int = 30
    gate_stale_seconds: int = 60
    default_page_limit: int = 500
    max_page_limit: int = 2000
    max_photo_length: int = 500000


@dataclass
class RateLimitConfig:
    """Fixed-window budget for one resource."""

    window: int = 60
    max_requests: int = 100
    max_posts: int = 30


@dataclass
class PhotoRateLimitConfig:
    window: int = 300
    max: int = 20


@dataclass
class RateLimitsConfig:
    sync: RateLimitConfig = field(default_factory=RateLimitConfig)
    faults: RateLimitConfig = field(
        default_factory=lambda: RateLimitConfig(window=60, max_requests=100, max_posts=50)
    )
    photo: PhotoRateLimitConfig = field(default_factory=PhotoRateLimitConfig)


@dataclass
class Config:
    server: ServerConfig = field(default_factory=ServerConfig)
    backend: BackendConfig = field(default_factory=BackendConfig)
    sync: SyncConfig = field(default_factory=SyncConfig)
    rate_limits: RateLimitsConfig = field(default_factory=RateLimitsConfig)


def _get_env(key: str, default: Any = None) -> Any:
    """Get environment variable with RACESYNC_ prefix."""
    return os.environ.get(f"RACESYNC_{key}", default)


def _apply_env_overrides(config: Config) -> Config:
    """Apply environment variable overrides to config."""
    # Backend overrides
    if url := _get_env("REDIS_URL"):
        config.backend.url = url
    if kind := _get_env("BACKEND"):
        config.backend.kind = kind.lower()

    # Server overrides
    if host := _get_env("HOST"):
        config.server.host = host
    if port := _get_env("PORT"):
        config.server.port = int(port)

    # Sync overrides
    if tombstone_ttl := _get_env("TOMBSTONE_TTL"):
        config.sync.tombstone_ttl_seconds = int(tombstone_ttl)
    if max_retries := _get_env("MAX_RETRIES"):
        config.sync.max_atomic_retries = int(max_retries)

    return config


def _parse_section(cls: type, data: dict | None, current: Any) -> Any:
    """Build a flat dataclass section, keeping current values for missing keys."""
    if not data:
        return current
    values = {
        name: data.get(name, getattr(current, name))
        for name in cls.__dataclass_fields__
    }
    return cls(**values)


def _parse_rate_limits(data: dict, current: RateLimitsConfig) -> RateLimitsConfig:
    """Parse the rate_limits section."""
    return RateLimitsConfig(
        sync=_parse_section(RateLimitConfig, data.get("sync"), current.sync),
        faults=_parse_section(RateLimitConfig, data.get("faults"), current.faults),
        photo=_parse_section(PhotoRateLimitConfig, data.get("photo"), current.photo),
    )


def load_config(config_path: str | Path | None = None) -> Config:
    """Load configuration from YAML file with environment variable overrides.

    Args:
        config_path: Path to YAML config file. If None, uses default config.

    Returns:
        Loaded and validated Config object.
    """
    config = Config()

    if config_path:
        path = Path(config_path)
        if path.exists():
            with open(path) as f:
                data = yaml.safe_load(f) or {}

            config.server = _parse_section(ServerConfig, data.get("server"), config.server)
            config.backend = _parse_section(BackendConfig, data.get("backend"), config.backend)
            config.sync = _parse_section(SyncConfig, data.get("sync"), config.sync)

            if "rate_limits" in data:
                config.rate_limits = _parse_rate_limits(
                    data["rate_limits"] or {}, config.rate_limits
                )

    config = _apply_env_overrides(config)
    _validate(config)
    return config


def _validate(config: Config) -> None:
    if config.backend.kind not in ("redis", "memory"):
        raise ValueError(f"backend.kind must be 'redis' or 'memory', got {config.backend.kind!r}")
    if config.sync.max_atomic_retries < 1:
        raise ValueError("sync.max_atomic_retries must be at least 1")
    if config.sync.tombstone_ttl_seconds < 1:
        raise ValueError("sync.tombstone_ttl_seconds must be positive")
    for name in ("sync", "faults", "photo"):
        if getattr(config.rate_limits, name).window < 1:
            raise ValueError(f"rate_limits.{name}.window must be positive")
