"""Event log backends."""

from __future__ import annotations

from typing import TYPE_CHECKING

from radiomonitor.config import ConfigError, StorageConfig
from radiomonitor.storage.base import (
    Change,
    ChangeFeed,
    EventLog,
    FeedError,
    StorageError,
    StorageUnavailableError,
)
from radiomonitor.storage.memory import MemoryEventLog

if TYPE_CHECKING:
    from radiomonitor.storage.mongo import MongoEventLog

__all__ = [
    "Change",
    "ChangeFeed",
    "EventLog",
    "FeedError",
    "MemoryEventLog",
    "StorageError",
    "StorageUnavailableError",
    "create_event_log",
]


def create_event_log(cfg: StorageConfig) -> EventLog:
    if cfg.backend == "memory":
        return MemoryEventLog()
    if cfg.backend == "mongo":
        if not cfg.uri:
            raise ConfigError("storage.uri is required for the mongo backend")
        # Lazy import so the memory backend works without a MongoDB driver session
        from radiomonitor.storage.mongo import MongoEventLog

        log: MongoEventLog = MongoEventLog(cfg.uri, cfg.database, cfg.collection)
        return log
    raise ConfigError(f"Unknown storage backend: {cfg.backend}")
