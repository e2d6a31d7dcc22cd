from radiomonitor.registry.aliases import (
    InvalidAliasError,
    InvalidSystemNameError,
    SystemAliasRegistry,
    generate_default_alias,
    is_valid_short_name,
)
from radiomonitor.registry.talkgroups import InvalidRecordError, TalkgroupRecord, TalkgroupRegistry
from radiomonitor.registry.watcher import RegistryWatcher
from radiomonitor.registry.writer import SerializedWriter

__all__ = [
    "InvalidAliasError",
    "InvalidRecordError",
    "InvalidSystemNameError",
    "RegistryWatcher",
    "SerializedWriter",
    "SystemAliasRegistry",
    "TalkgroupRecord",
    "TalkgroupRegistry",
    "generate_default_alias",
    "is_valid_short_name",
]
