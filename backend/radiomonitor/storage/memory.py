"""In-process event log.

Used for development (``storage.backend: memory``) and by the test suite.
Documents live in a list; the list index doubles as the change feed
resume token.
"""

from __future__ import annotations

import asyncio
import copy
import logging
from collections.abc import AsyncIterator, Iterable
from datetime import datetime
from typing import Any

from radiomonitor.events import format_timestamp
from radiomonitor.storage.base import Change, FeedError, StorageUnavailableError

logger = logging.getLogger(__name__)

_CLOSED = object()


class MemoryChangeFeed:
    """Change feed backed by an asyncio queue fed by MemoryEventLog.append()."""

    def __init__(self, log: MemoryEventLog, start_index: int) -> None:
        self._log = log
        self._queue: asyncio.Queue[Any] = asyncio.Queue()
        self._closed = False
        for index in range(start_index, len(log._documents)):
            self._queue.put_nowait(index)

    def _push(self, item: Any) -> None:
        if not self._closed:
            self._queue.put_nowait(item)

    async def __anext__(self) -> Change:
        if self._closed:
            raise StopAsyncIteration
        item = await self._queue.get()
        if item is _CLOSED:
            self._closed = True
            raise StopAsyncIteration
        if isinstance(item, BaseException):
            self._closed = True
            raise FeedError(str(item)) from item
        return Change(document=copy.deepcopy(self._log._documents[item]), token=item)

    def __aiter__(self) -> AsyncIterator[Change]:
        return self

    async def aclose(self) -> None:
        self._closed = True
        self._log._detach(self)


class MemoryEventLog:
    def __init__(self, writable_primary: bool = True) -> None:
        self._documents: list[dict[str, Any]] = []
        self._feeds: list[MemoryChangeFeed] = []
        self.writable_primary = writable_primary
        self.connected = False
        # Number of upcoming connect() calls that should fail
        self.fail_connects = 0
        self.connect_attempts = 0
        self.watch_calls = 0

    async def connect(self, timeout_s: float) -> None:
        self.connect_attempts += 1
        if self.fail_connects > 0:
            self.fail_connects -= 1
            raise StorageUnavailableError("memory log refused connection")
        self.connected = True

    async def is_writable_primary(self) -> bool:
        return self.connected and self.writable_primary

    async def append(self, document: dict[str, Any]) -> None:
        doc = copy.deepcopy(document)
        doc.setdefault("timestamp", format_timestamp())
        self._documents.append(doc)
        index = len(self._documents) - 1
        for feed in list(self._feeds):
            feed._push(index)

    async def watch(self, resume_after: Any = None) -> MemoryChangeFeed:
        if not self.connected:
            raise FeedError("not connected")
        self.watch_calls += 1
        start = len(self._documents) if resume_after is None else int(resume_after) + 1
        feed = MemoryChangeFeed(self, start)
        self._feeds.append(feed)
        return feed

    def close_feeds(self) -> None:
        """End every open feed as if the server closed the cursor."""
        for feed in list(self._feeds):
            feed._push(_CLOSED)
            self._detach(feed)

    def fail_feeds(self, error: BaseException) -> None:
        """Make every open feed raise ``error`` on its next read."""
        for feed in list(self._feeds):
            feed._push(error)
            self._detach(feed)

    def _detach(self, feed: MemoryChangeFeed) -> None:
        if feed in self._feeds:
            self._feeds.remove(feed)

    @property
    def documents(self) -> list[dict[str, Any]]:
        return [copy.deepcopy(d) for d in self._documents]

    async def query(
        self,
        *,
        talkgroup: str | None = None,
        since: datetime | None = None,
        exclude_types: Iterable[str] = (),
        limit: int | None = None,
        newest_first: bool = False,
    ) -> list[dict[str, Any]]:
        excluded = set(exclude_types)
        since_str = format_timestamp(since) if since is not None else None
        matches = [
            doc for doc in self._documents
            if (talkgroup is None or str(doc.get("talkgroupOrSource")) == talkgroup)
            and (since_str is None or str(doc.get("timestamp", "")) >= since_str)
            and doc.get("eventType") not in excluded
        ]
        # Stable sort keeps log order for equal timestamps
        if newest_first:
            matches.reverse()
        matches.sort(key=lambda d: str(d.get("timestamp", "")), reverse=newest_first)
        if limit is not None:
            matches = matches[:limit]
        return [copy.deepcopy(d) for d in matches]

    async def close(self) -> None:
        self.close_feeds()
        self.connected = False
        logger.info("Memory event log closed")
