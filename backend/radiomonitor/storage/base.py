from __future__ import annotations

from collections.abc import AsyncIterator, Iterable
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Protocol


class StorageError(Exception):
    """Base class for event log failures."""


class StorageUnavailableError(StorageError):
    """The event log could not be reached."""


class FeedError(StorageError):
    """The change feed failed while it was being consumed."""


@dataclass(frozen=True)
class Change:
    """An insert observed on the change feed.

    ``token`` is opaque; passing the token of the last processed change to
    ``EventLog.watch(resume_after=...)`` resumes the feed right after it.
    """

    document: dict[str, Any]
    token: Any = None


class ChangeFeed(Protocol):
    def __aiter__(self) -> AsyncIterator[Change]: ...

    async def aclose(self) -> None: ...


class EventLog(Protocol):
    """Ordered append-only log of radio events with a watch primitive."""

    async def connect(self, timeout_s: float) -> None:
        """Open the connection; raises StorageUnavailableError."""
        ...

    async def is_writable_primary(self) -> bool: ...

    async def append(self, document: dict[str, Any]) -> None: ...

    async def watch(self, resume_after: Any = None) -> ChangeFeed:
        """Open a change feed of inserts; raises FeedError."""
        ...

    async def query(
        self,
        *,
        talkgroup: str | None = None,
        since: datetime | None = None,
        exclude_types: Iterable[str] = (),
        limit: int | None = None,
        newest_first: bool = False,
    ) -> list[dict[str, Any]]: ...

    async def close(self) -> None: ...
