"""Configuration loading for ledgersync."""

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import yaml


@dataclass
class DeviceConfig:
    device_id: str | None = None  # Generated and persisted on first run
    user_id: str = ""


@dataclass
class StorageConfig:
    """Local replica storage."""

    db_path: str = "~/.ledgersync/ledger.db"
    schema_version: int = 1
    quota_mb: int = 50
    cleanup_max_age_days: int = 90

    @property
    def quota_bytes(self) -> int:
        return self.quota_mb * 1024 * 1024


@dataclass
class QueueConfig:
    """Offline operation queue limits and retry policy."""

    max_queue_size: int = 1000
    batch_size: int = 10
    concurrency: int = 4
    max_retries: int = 3
    processing_timeout_seconds: float = 300.0


@dataclass
class SyncConfig:
    """Background sync behaviour."""

    enabled: bool = True
    interval_seconds: float | None = None  # None follows network quality
    max_backoff_seconds: float = 3600.0
    auto_merge: bool = True
    coalesce: bool = True


@dataclass
class RemoteConfig:
    """Remote store of record."""

    base_url: str = "http://localhost:8000"
    timeout_seconds: float = 15.0
    token: str | None = None


@dataclass
class APIConfig:
    """Local status API for UI and notification layers."""

    enabled: bool = False
    host: str = "127.0.0.1"
    port: int = 8090


@dataclass
class Config:
    device: DeviceConfig = field(default_factory=DeviceConfig)
    storage: StorageConfig = field(default_factory=StorageConfig)
    queue: QueueConfig = field(default_factory=QueueConfig)
    sync: SyncConfig = field(default_factory=SyncConfig)
    remote: RemoteConfig = field(default_factory=RemoteConfig)
    api: APIConfig = field(default_factory=APIConfig)


def _get_env(key: str, default: Any = None) -> Any:
    """Get environment variable with LEDGERSYNC_ prefix."""
    return os.environ.get(f"LEDGERSYNC_{key}", default)


def _is_true(value: str) -> bool:
    return value.lower() in ("true", "1", "yes")


def _apply_env_overrides(config: Config) -> Config:
    """Apply environment variable overrides to config."""
    # Device overrides
    if device_id := _get_env("DEVICE_ID"):
        config.device.device_id = device_id
    if user_id := _get_env("USER_ID"):
        config.device.user_id = user_id

    # Storage overrides
    if db_path := _get_env("DB_PATH"):
        config.storage.db_path = db_path
    if quota := _get_env("QUOTA_MB"):
        config.storage.quota_mb = int(quota)

    # Queue overrides
    if max_size := _get_env("QUEUE_MAX_SIZE"):
        config.queue.max_queue_size = int(max_size)
    if batch_size := _get_env("QUEUE_BATCH_SIZE"):
        config.queue.batch_size = int(batch_size)
    if max_retries := _get_env("QUEUE_MAX_RETRIES"):
        config.queue.max_retries = int(max_retries)

    # Sync overrides
    if sync_enabled := _get_env("SYNC_ENABLED"):
        config.sync.enabled = _is_true(sync_enabled)
    if interval := _get_env("SYNC_INTERVAL"):
        config.sync.interval_seconds = float(interval)
    if auto_merge := _get_env("SYNC_AUTO_MERGE"):
        config.sync.auto_merge = _is_true(auto_merge)

    # Remote overrides
    if base_url := _get_env("REMOTE_URL"):
        config.remote.base_url = base_url
    if timeout := _get_env("REMOTE_TIMEOUT"):
        config.remote.timeout_seconds = float(timeout)
    if token := _get_env("REMOTE_TOKEN"):
        config.remote.token = token

    # API overrides
    if api_enabled := _get_env("API_ENABLED"):
        config.api.enabled = _is_true(api_enabled)
    if host := _get_env("API_HOST"):
        config.api.host = host
    if port := _get_env("API_PORT"):
        config.api.port = int(port)

    return config


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

            if "device" in data:
                device_data = data["device"]
                config.device = DeviceConfig(
                    device_id=device_data.get("device_id", config.device.device_id),
                    user_id=device_data.get("user_id", config.device.user_id),
                )

            if "storage" in data:
                storage_data = data["storage"]
                config.storage = StorageConfig(
                    db_path=storage_data.get("db_path", config.storage.db_path),
                    schema_version=storage_data.get(
                        "schema_version", config.storage.schema_version
                    ),
                    quota_mb=storage_data.get("quota_mb", config.storage.quota_mb),
                    cleanup_max_age_days=storage_data.get(
                        "cleanup_max_age_days", config.storage.cleanup_max_age_days
                    ),
                )

            if "queue" in data:
                queue_data = data["queue"]
                config.queue = QueueConfig(
                    max_queue_size=queue_data.get(
                        "max_queue_size", config.queue.max_queue_size
                    ),
                    batch_size=queue_data.get("batch_size", config.queue.batch_size),
                    concurrency=queue_data.get("concurrency", config.queue.concurrency),
                    max_retries=queue_data.get("max_retries", config.queue.max_retries),
                    processing_timeout_seconds=queue_data.get(
                        "processing_timeout_seconds",
                        config.queue.processing_timeout_seconds,
                    ),
                )

            if "sync" in data:
                sync_data = data["sync"]
                config.sync = SyncConfig(
                    enabled=sync_data.get("enabled", config.sync.enabled),
                    interval_seconds=sync_data.get(
                        "interval_seconds", config.sync.interval_seconds
                    ),
                    max_backoff_seconds=sync_data.get(
                        "max_backoff_seconds", config.sync.max_backoff_seconds
                    ),
                    auto_merge=sync_data.get("auto_merge", config.sync.auto_merge),
                    coalesce=sync_data.get("coalesce", config.sync.coalesce),
                )

            if "remote" in data:
                remote_data = data["remote"]
                config.remote = RemoteConfig(
                    base_url=remote_data.get("base_url", config.remote.base_url),
                    timeout_seconds=remote_data.get(
                        "timeout_seconds", config.remote.timeout_seconds
                    ),
                    token=remote_data.get("token", config.remote.token),
                )

            if "api" in data:
                api_data = data["api"]
                config.api = APIConfig(
                    enabled=api_data.get("enabled", config.api.enabled),
                    host=api_data.get("host", config.api.host),
                    port=api_data.get("port", config.api.port),
                )

    return _apply_env_overrides(config)
