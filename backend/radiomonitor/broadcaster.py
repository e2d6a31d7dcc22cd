"""Event enrichment and fan-out to stream subscribers."""

from __future__ import annotations

import asyncio
import itertools
import logging
from collections.abc import Mapping
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

from radiomonitor.events import ControlEvent, RadioEvent

if TYPE_CHECKING:
    from radiomonitor.registry.aliases import SystemAliasRegistry
    from radiomonitor.registry.talkgroups import TalkgroupRegistry

logger = logging.getLogger(__name__)

_ids = itertools.count(1)


class EventEnricher:
    """Attaches registry metadata to events."""

    def __init__(self, talkgroups: TalkgroupRegistry, aliases: SystemAliasRegistry) -> None:
        self._talkgroups = talkgroups
        self._aliases = aliases

    def enrich(self, event: RadioEvent | Mapping[str, Any]) -> dict[str, Any]:
        if not isinstance(event, RadioEvent):
            event = RadioEvent.from_document(event)
        data = event.to_dict()
        record = self._talkgroups.get(event.system, event.talkgroup_or_source)
        if record is not None:
            data["talkgroupInfo"] = record.to_info()
            if record.system:
                data["systemInfo"] = {
                    "shortName": record.system,
                    "displayName": self._aliases.get_alias(record.system),
                }
        return data


@dataclass
class Subscription:
    """One stream subscriber.

    The queue holds ``limit`` messages plus one slot reserved for the end
    marker, so a lagged or closed subscription can always be woken.
    """

    limit: int
    id: int = field(default_factory=lambda: next(_ids))
    lagged: bool = False
    closed: bool = False
    queue: asyncio.Queue[dict[str, Any] | None] = field(init=False)

    def __post_init__(self) -> None:
        self.queue = asyncio.Queue(maxsize=self.limit + 1)

    def offer(self, message: dict[str, Any]) -> bool:
        """Enqueue without blocking; returns False once the subscriber lags."""
        if self.closed:
            return False
        if self.queue.qsize() >= self.limit:
            self.lagged = True
            self.close()
            return False
        self.queue.put_nowait(message)
        return True

    def close(self) -> None:
        if not self.closed:
            self.closed = True
            self.queue.put_nowait(None)

    async def next(self) -> dict[str, Any] | None:
        """Next message in order; None after the subscription ended."""
        return await self.queue.get()


class EventBroadcaster:
    """Fans enriched events and control notices out to every subscriber.

    Publishing never blocks: a subscriber that cannot keep up is dropped
    (marked lagged) instead of slowing the feed for everyone else.
    """

    def __init__(self, enricher: EventEnricher, queue_size: int = 500) -> None:
        self.enricher = enricher
        self.queue_size = queue_size
        self._subscribers: dict[int, Subscription] = {}
        self.published = 0
        self.dropped = 0

    def subscribe(self) -> Subscription:
        sub = Subscription(limit=self.queue_size)
        self._subscribers[sub.id] = sub
        logger.info(f"Stream subscriber {sub.id} connected ({len(self._subscribers)} total)")
        return sub

    def unsubscribe(self, sub: Subscription) -> None:
        if self._subscribers.pop(sub.id, None) is not None:
            logger.info(f"Stream subscriber {sub.id} disconnected ({len(self._subscribers)} total)")
        sub.close()

    @property
    def subscriber_count(self) -> int:
        return len(self._subscribers)

    def _broadcast(self, message: dict[str, Any]) -> None:
        for sub in list(self._subscribers.values()):
            if not sub.offer(message):
                self._subscribers.pop(sub.id, None)
                self.dropped += 1
                logger.warning(f"Stream subscriber {sub.id} fell behind and was dropped")

    def publish_event(self, event: RadioEvent | Mapping[str, Any]) -> dict[str, Any]:
        enriched = self.enricher.enrich(event)
        self._broadcast({"type": "radioEvent", "event": enriched})
        self.published += 1
        return enriched

    def publish_control(self, kind: ControlEvent | str) -> None:
        value = kind.value if isinstance(kind, ControlEvent) else str(kind)
        logger.debug(f"Broadcasting control message {value}")
        self._broadcast({"type": "control", "event": value})

    def close(self) -> None:
        for sub in list(self._subscribers.values()):
            self.unsubscribe(sub)

    def get_stats(self) -> dict[str, Any]:
        return {
            "subscribers": len(self._subscribers),
            "published": self.published,
            "dropped": self.dropped,
            "queueSize": self.queue_size,
        }
