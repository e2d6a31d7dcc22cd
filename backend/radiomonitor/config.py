from __future__ import annotations

import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Literal

import yaml

StorageBackend = Literal["mongo", "memory"]

ENV_PREFIX = "RADIOMONITOR__"

_LEVEL_ALIASES: dict[str, int] = {
    "CRITICAL": logging.CRITICAL,
    "FATAL": logging.CRITICAL,
    "ERROR": logging.ERROR,
    "WARN": logging.WARNING,
    "WARNING": logging.WARNING,
    "INFO": logging.INFO,
    "DEBUG": logging.DEBUG,
}


class ConfigError(ValueError):
    """Raised when essential startup configuration is missing or invalid."""


@dataclass
class ServerConfig:
    bind_address: str = "127.0.0.1"
    port: int = 8087
    # Per-subscriber queue depth before a slow WebSocket client is dropped
    subscriber_queue_size: int = 500


@dataclass
class StorageConfig:
    """Event log connection settings."""

    backend: StorageBackend = "mongo"
    uri: str | None = None
    database: str = "trunk_recorder"
    collection: str = "radio_events"
    connect_timeout_s: float = 60.0
    connect_retries: int = 5
    retry_backoff_cap_s: float = 10.0
    primary_poll_interval_s: float = 2.0
    primary_wait_timeout_s: float = 120.0
    # Cool-down before reopening a change feed that errored or closed
    feed_cooldown_s: float = 5.0
    status_interval_s: float = 30.0


@dataclass
class RegistryConfig:
    data_dir: str = "data"
    save_interval_s: float = 300.0
    watch: bool = True
    watch_debounce_s: float = 0.5

    @property
    def talkgroups_dir(self) -> Path:
        return Path(self.data_dir) / "talkgroups"

    @property
    def alias_file(self) -> Path:
        return Path(self.data_dir) / "system-alias.csv"


@dataclass
class IngestConfig:
    dedup_window_s: float = 5.0


@dataclass
class LoggingConfig:
    level: str = "info"
    # Rotating log file; None disables file logging
    file: str | None = "logs/radiomonitor.log"


@dataclass
class AppConfig:
    server: ServerConfig = field(default_factory=ServerConfig)
    storage: StorageConfig = field(default_factory=StorageConfig)
    registry: RegistryConfig = field(default_factory=RegistryConfig)
    ingest: IngestConfig = field(default_factory=IngestConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)

    def validate(self) -> None:
        """Check the settings the process cannot start without."""
        if self.storage.backend not in ("mongo", "memory"):
            raise ConfigError(f"Unknown storage backend: {self.storage.backend}")
        if self.storage.backend == "mongo" and not self.storage.uri:
            raise ConfigError(
                "storage.uri is required for the mongo backend "
                f"(set {ENV_PREFIX}STORAGE__URI)"
            )
        if self.storage.connect_retries < 1:
            raise ConfigError("storage.connect_retries must be at least 1")


_SECTIONS = ("server", "storage", "registry", "ingest", "logging")


def default_config_path() -> str:
    """Get default config path relative to module location."""
    module_dir = Path(__file__).resolve().parent
    config_path = module_dir.parent / "config" / "radiomonitor.yaml"
    if config_path.exists():
        return str(config_path)
    return "config/radiomonitor.yaml"


def _read_yaml(path: Path) -> dict[str, Any]:
    if not path.exists():
        return {}
    with path.open("r", encoding="utf-8") as f:
        data = yaml.safe_load(f) or {}
        if not isinstance(data, dict):
            raise ConfigError("Config root must be a mapping")
        return data


def load_config(path_str: str | None) -> AppConfig:
    raw: dict[str, Any] = _read_yaml(Path(path_str)) if path_str else {}

    # Environment overrides (prefix RADIOMONITOR__SECTION__KEY)
    # Example: RADIOMONITOR__STORAGE__URI=mongodb://localhost:27017/?replicaSet=rs0
    for k, v in os_environ_items():
        if not k.startswith(ENV_PREFIX):
            continue
        parts = k[len(ENV_PREFIX) :].split("__")
        if len(parts) != 2:
            continue
        section, key = (p.lower() for p in parts)
        if section not in _SECTIONS:
            continue
        target = raw.setdefault(section, {})
        if isinstance(target, dict):
            target[key] = coerce_env_value(v)

    try:
        cfg = AppConfig(
            server=ServerConfig(**_section(raw, "server")),
            storage=StorageConfig(**_section(raw, "storage")),
            registry=RegistryConfig(**_section(raw, "registry")),
            ingest=IngestConfig(**_section(raw, "ingest")),
            logging=LoggingConfig(**_section(raw, "logging")),
        )
    except TypeError as e:
        raise ConfigError(f"Invalid configuration: {e}") from e

    cfg.validate()
    return cfg


def _section(raw: dict[str, Any], name: str) -> dict[str, Any]:
    value = raw.get(name) or {}
    if not isinstance(value, dict):
        raise ConfigError(f"Config section '{name}' must be a mapping")
    return value


def coerce_env_value(val: str) -> Any:
    # Basic bool/int/float coercion for convenience
    lower = val.lower()
    if lower in {"true", "false"}:
        return lower == "true"
    try:
        return int(val)
    except ValueError:
        pass
    try:
        return float(val)
    except ValueError:
        return val


def os_environ_items() -> list[tuple[str, str]]:
    # Wrapped for testability
    from os import environ

    return [(k, v) for k, v in environ.items()]


def parse_log_level(value: str | None, default: int = logging.INFO) -> int:
    """Parse a log level string into a numeric level."""
    if not value:
        return default
    raw = value.strip()
    if raw.isdigit():
        return int(raw)
    return _LEVEL_ALIASES.get(raw.upper(), default)
