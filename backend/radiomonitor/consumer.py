"""Change feed consumer.

Tails the event log and drives everything downstream of ingestion: unknown
talkgroups and systems are provisioned in the registries, then the event is
enriched and fanned out to subscribers.

Lifecycle::

    disconnected -> connecting -> waiting-for-primary -> watching
        watching -> (feed error | feed closed) -> backing-off -> connecting
        any -> stopped

Connecting at startup is bounded (retry budget, primary wait timeout) and
failing it is fatal. Once watching, the consumer recovers from feed errors
indefinitely, resuming after the last processed change so nothing is lost
or replayed.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from enum import Enum
from typing import TYPE_CHECKING, Any

from radiomonitor.config import StorageConfig
from radiomonitor.events import ControlEvent, InvalidEventError, RadioEvent
from radiomonitor.storage.base import Change, ChangeFeed, EventLog, StorageError, StorageUnavailableError

if TYPE_CHECKING:
    from radiomonitor.broadcaster import EventBroadcaster
    from radiomonitor.registry.aliases import SystemAliasRegistry
    from radiomonitor.registry.talkgroups import TalkgroupRegistry

logger = logging.getLogger(__name__)

SleepFn = Callable[[float], Awaitable[Any]]


class ConsumerState(str, Enum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    WAITING_FOR_PRIMARY = "waiting-for-primary"
    WATCHING = "watching"
    BACKING_OFF = "backing-off"
    STOPPED = "stopped"


class StartupError(RuntimeError):
    """The event log could not be reached within the startup budget."""


class ChangeConsumer:
    def __init__(
        self,
        log: EventLog,
        talkgroups: TalkgroupRegistry,
        aliases: SystemAliasRegistry,
        broadcaster: EventBroadcaster,
        cfg: StorageConfig | None = None,
        sleep: SleepFn = asyncio.sleep,
    ) -> None:
        self._log = log
        self._talkgroups = talkgroups
        self._aliases = aliases
        self._broadcaster = broadcaster
        self.cfg = cfg or StorageConfig()
        self._sleep = sleep

        self.state = ConsumerState.DISCONNECTED
        self._resume_token: Any = None
        self._feed: ChangeFeed | None = None
        self._watch_task: asyncio.Task[None] | None = None
        self._status_task: asyncio.Task[None] | None = None
        self._stopping = False

        self.processed = 0
        self.skipped = 0
        self.reconnects = 0
        self._interval_count = 0

    # ------------------------------------------------------------------
    # Connection
    # ------------------------------------------------------------------

    async def connect(self) -> None:
        """Connect with a bounded number of attempts.

        Raises:
            StartupError: every attempt failed
        """
        retries = max(1, self.cfg.connect_retries)
        for attempt in range(1, retries + 1):
            self.state = ConsumerState.CONNECTING
            try:
                await self._log.connect(self.cfg.connect_timeout_s)
                logger.info("Connected to event log")
                return
            except StorageUnavailableError as e:
                logger.error(f"Event log connection attempt {attempt}/{retries} failed: {e}")
            if attempt < retries:
                delay = min(2**attempt, self.cfg.retry_backoff_cap_s)
                logger.info(f"Retrying event log connection in {delay}s")
                await self._sleep(delay)
        self.state = ConsumerState.DISCONNECTED
        raise StartupError(f"Could not connect to event log after {retries} attempts")

    async def wait_for_primary(self, fatal: bool = True) -> None:
        """Poll until the log accepts writes (a replica set has elected a primary).

        Raises:
            StartupError: ``fatal`` and the wait timed out
        """
        self.state = ConsumerState.WAITING_FOR_PRIMARY
        waited = 0.0
        while not self._stopping:
            try:
                if await self._log.is_writable_primary():
                    return
            except StorageError as e:
                logger.warning(f"Primary check failed: {e}")
            if fatal and waited >= self.cfg.primary_wait_timeout_s:
                raise StartupError(
                    f"No writable primary after {self.cfg.primary_wait_timeout_s:.0f}s"
                )
            logger.info("Waiting for writable primary...")
            await self._sleep(self.cfg.primary_poll_interval_s)
            waited += self.cfg.primary_poll_interval_s

    async def start(self) -> None:
        """Connect, wait for a primary, then start tailing the feed.

        Raises:
            StartupError: connection or primary election did not succeed in time
        """
        self._stopping = False
        await self.connect()
        await self.wait_for_primary(fatal=True)
        self._watch_task = asyncio.create_task(self._watch_loop(), name="change-feed")
        self._status_task = asyncio.create_task(self._status_loop(), name="change-feed-status")

    async def stop(self) -> None:
        self._stopping = True
        tasks = [t for t in (self._watch_task, self._status_task) if t is not None]
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        self._watch_task = None
        self._status_task = None
        await self._close_feed()
        self.state = ConsumerState.STOPPED
        logger.info("Change feed consumer stopped")

    async def _close_feed(self) -> None:
        feed, self._feed = self._feed, None
        if feed is None:
            return
        try:
            await feed.aclose()
        except StorageError as e:
            logger.debug(f"Error closing change feed: {e}")

    # ------------------------------------------------------------------
    # Feed processing
    # ------------------------------------------------------------------

    async def _watch_loop(self) -> None:
        while not self._stopping:
            try:
                self._feed = await self._log.watch(resume_after=self._resume_token)
                self.state = ConsumerState.WATCHING
                logger.info("Watching event log for changes")
                async for change in self._feed:
                    self.handle_change(change)
                logger.warning("Change feed closed")
            except StorageError as e:
                logger.error(f"Change feed error: {e}")
            except Exception as e:
                logger.exception(f"Unexpected error in change feed: {e}")
            finally:
                await self._close_feed()

            if self._stopping:
                break
            self.reconnects += 1
            self.state = ConsumerState.BACKING_OFF
            logger.info(f"Reopening change feed in {self.cfg.feed_cooldown_s}s")
            await self._sleep(self.cfg.feed_cooldown_s)
            self.state = ConsumerState.CONNECTING
            await self.wait_for_primary(fatal=False)

    def handle_change(self, change: Change) -> None:
        self.handle_document(change.document)
        if change.token is not None:
            self._resume_token = change.token

    def handle_document(self, document: dict[str, Any]) -> dict[str, Any] | None:
        """Provision registries for one inserted event and broadcast it.

        Returns the broadcast event dict, or None when the document was skipped.
        """
        try:
            event = RadioEvent.from_document(document)
        except InvalidEventError as e:
            self.skipped += 1
            logger.warning(f"Skipping malformed event: {e}")
            return None

        if event.talkgroup_or_source:
            self._talkgroups.register_unknown(event.system, event.talkgroup_or_source)
        if event.system and self._aliases.ensure_system(event.system):
            self._broadcaster.publish_control(ControlEvent.SYSTEMS_UPDATED)

        enriched = self._broadcaster.publish_event(event)
        self.processed += 1
        self._interval_count += 1
        return enriched

    async def _status_loop(self) -> None:
        interval = self.cfg.status_interval_s
        while True:
            await asyncio.sleep(interval)
            count, self._interval_count = self._interval_count, 0
            logger.info(f"Processed {count} events in the last {interval:.0f} seconds")

    def to_dict(self) -> dict[str, Any]:
        return {
            "state": self.state.value,
            "processed": self.processed,
            "skipped": self.skipped,
            "reconnects": self.reconnects,
        }
