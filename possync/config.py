"""Configuration loading for possync."""

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import yaml


@dataclass
class ClientConfig:
    client_id: str = ""  # empty: generated once and kept in the cache


@dataclass
class RemoteConfig:
    """Where the sync server lives."""

    url: str = "http://localhost:8000"
    api_token: str | None = None
    timeout_seconds: float = 30.0


@dataclass
class QueueConfig:
    db_path: str = "~/.possync/queue.db"
    max_retries: int = 3


@dataclass
class CacheConfig:
    db_path: str = "~/.possync/cache.db"


@dataclass
class SyncConfig:
    """Client-side drain and pull scheduling."""

    drain_interval_seconds: float = 5.0
    pull_enabled: bool = True
    pull_limit: int = 1000
    connectivity_check_interval_seconds: float = 10.0


@dataclass
class ServerConfig:
    """Configuration for the sync server."""

    host: str = "0.0.0.0"
    port: int = 8000
    db_path: str = "~/.possync/server.db"
    api_tokens: list[str] = field(default_factory=list)
    default_pull_hours: int = 24
    default_pull_limit: int = 1000
    max_pull_limit: int = 5000
    idempotency_enabled: bool = True
    idempotency_retention_hours: int = 24


@dataclass
class Config:
    client: ClientConfig = field(default_factory=ClientConfig)
    remote: RemoteConfig = field(default_factory=RemoteConfig)
    queue: QueueConfig = field(default_factory=QueueConfig)
    cache: CacheConfig = field(default_factory=CacheConfig)
    sync: SyncConfig = field(default_factory=SyncConfig)
    server: ServerConfig = field(default_factory=ServerConfig)


def _get_env(key: str, default: Any = None) -> Any:
    """Get environment variable with POSSYNC_ prefix."""
    return os.environ.get(f"POSSYNC_{key}", default)


def _as_bool(value: str) -> bool:
    return value.lower() in ("true", "1", "yes")


def _apply_env_overrides(config: Config) -> Config:
    """Apply environment variable overrides to config."""
    if client_id := _get_env("CLIENT_ID"):
        config.client.client_id = client_id

    # Remote overrides
    if url := _get_env("REMOTE_URL"):
        config.remote.url = url
    if api_token := _get_env("REMOTE_API_TOKEN"):
        config.remote.api_token = api_token
    if timeout := _get_env("REMOTE_TIMEOUT"):
        config.remote.timeout_seconds = float(timeout)

    # Queue and cache overrides
    if queue_path := _get_env("QUEUE_DB_PATH"):
        config.queue.db_path = queue_path
    if max_retries := _get_env("QUEUE_MAX_RETRIES"):
        config.queue.max_retries = int(max_retries)
    if cache_path := _get_env("CACHE_DB_PATH"):
        config.cache.db_path = cache_path

    # Sync overrides
    if interval := _get_env("SYNC_DRAIN_INTERVAL"):
        config.sync.drain_interval_seconds = float(interval)
    if pull_enabled := _get_env("SYNC_PULL_ENABLED"):
        config.sync.pull_enabled = _as_bool(pull_enabled)
    if pull_limit := _get_env("SYNC_PULL_LIMIT"):
        config.sync.pull_limit = int(pull_limit)

    # Server overrides
    if host := _get_env("SERVER_HOST"):
        config.server.host = host
    if port := _get_env("SERVER_PORT"):
        config.server.port = int(port)
    if server_path := _get_env("SERVER_DB_PATH"):
        config.server.db_path = server_path
    if tokens := _get_env("SERVER_API_TOKENS"):
        config.server.api_tokens = [t.strip() for t in tokens.split(",") if t.strip()]
    if idempotency := _get_env("SERVER_IDEMPOTENCY_ENABLED"):
        config.server.idempotency_enabled = _as_bool(idempotency)

    return config


def _merge_section(section: Any, data: dict[str, Any] | None) -> Any:
    """Build a new section dataclass from YAML data over current values."""
    if not data:
        return section
    values = {
        name: data.get(name, getattr(section, name))
        for name in section.__dataclass_fields__
    }
    return type(section)(**values)


def load_config(config_path: str | Path | None = None) -> Config:
    """Load configuration from YAML file with environment variable overrides.

    Args:
        config_path: Path to YAML config file. If None, uses default config.

    Returns:
        Loaded Config object.
    """
    config = Config()

    if config_path:
        path = Path(config_path)
        if path.exists():
            with open(path) as f:
                data = yaml.safe_load(f) or {}

            config.client = _merge_section(config.client, data.get("client"))
            config.remote = _merge_section(config.remote, data.get("remote"))
            config.queue = _merge_section(config.queue, data.get("queue"))
            config.cache = _merge_section(config.cache, data.get("cache"))
            config.sync = _merge_section(config.sync, data.get("sync"))
            config.server = _merge_section(config.server, data.get("server"))

            # A single token is accepted in place of a list
            if isinstance(config.server.api_tokens, str):
                config.server.api_tokens = [config.server.api_tokens]

    return _apply_env_overrides(config)
