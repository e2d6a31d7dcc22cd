from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any

from .broadcaster import EventBroadcaster, EventEnricher
from .config import AppConfig
from .consumer import ChangeConsumer
from .history import HistoryService
from .ingest import DedupGate
from .registry import RegistryWatcher, SystemAliasRegistry, TalkgroupRegistry
from .storage import EventLog, create_event_log

logger = logging.getLogger(__name__)


@dataclass
class AppState:
    config: AppConfig
    log: EventLog
    talkgroups: TalkgroupRegistry
    aliases: SystemAliasRegistry
    broadcaster: EventBroadcaster
    consumer: ChangeConsumer
    dedup: DedupGate
    history: HistoryService
    watcher: RegistryWatcher | None = None
    config_path: str | None = None
    # Background tasks owned by the app (periodic save, dedup sweeper)
    tasks: list[asyncio.Task[Any]] = field(default_factory=list)

    @classmethod
    def from_config(
        cls,
        cfg: AppConfig,
        config_path: str | None = None,
        log: EventLog | None = None,
    ) -> AppState:
        event_log = log if log is not None else create_event_log(cfg.storage)

        talkgroups = TalkgroupRegistry(cfg.registry.talkgroups_dir)
        aliases = SystemAliasRegistry(cfg.registry.alias_file)

        enricher = EventEnricher(talkgroups, aliases)
        broadcaster = EventBroadcaster(enricher, queue_size=cfg.server.subscriber_queue_size)

        # Registry change notices go straight to stream subscribers
        talkgroups.add_listener(broadcaster.publish_control)
        aliases.add_listener(broadcaster.publish_control)

        consumer = ChangeConsumer(event_log, talkgroups, aliases, broadcaster, cfg.storage)
        dedup = DedupGate(event_log, window_s=cfg.ingest.dedup_window_s)
        history = HistoryService(event_log, enricher)

        watcher = None
        if cfg.registry.watch:
            watcher = RegistryWatcher(debounce_s=cfg.registry.watch_debounce_s)
            watcher.watch(cfg.registry.talkgroups_dir, talkgroups.reload_file, suffix=".csv")
            alias_file = cfg.registry.alias_file
            watcher.watch(alias_file.parent, lambda _path: aliases.reload(), names={alias_file.name})

        return cls(
            config=cfg,
            log=event_log,
            talkgroups=talkgroups,
            aliases=aliases,
            broadcaster=broadcaster,
            consumer=consumer,
            dedup=dedup,
            history=history,
            watcher=watcher,
            config_path=config_path,
        )

    async def start(self) -> None:
        """Load registries and start consuming the event log.

        Raises:
            StartupError: the event log could not be reached
        """
        await self.talkgroups.load()
        await self.aliases.load()
        await self.consumer.start()
        if self.watcher is not None:
            self.watcher.start()
        self.tasks.append(asyncio.create_task(
            self.talkgroups.run_periodic_save(self.config.registry.save_interval_s),
            name="talkgroup-periodic-save",
        ))
        self.tasks.append(asyncio.create_task(self.dedup.run_sweeper(), name="dedup-sweeper"))

    async def stop(self) -> None:
        await self.consumer.stop()
        if self.watcher is not None:
            await self.watcher.stop()
        for task in self.tasks:
            task.cancel()
        if self.tasks:
            await asyncio.gather(*self.tasks, return_exceptions=True)
        self.tasks.clear()

        await self.talkgroups.flush()
        await self.aliases.flush()
        self.broadcaster.close()
        await self.log.close()

    def known_systems(self) -> list[dict[str, str]]:
        """Systems seen in talkgroup files or the alias table, with display names."""
        names = set(self.talkgroups.systems())
        names.update(entry["shortName"] for entry in self.aliases.systems())
        return [
            {"shortName": name, "displayName": self.aliases.get_alias(name)}
            for name in sorted(names)
        ]
