"""Per-partition serialized, coalescing writes.

Each registry file is written by at most one save at a time. A save
requested while another one for the same key is in flight is not run
concurrently; it marks the key dirty so exactly one more save follows the
current one. Any number of requests arriving during a save collapse into
that single follow-up, which always writes the latest in-memory state.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable, Hashable

logger = logging.getLogger(__name__)

WriteFn = Callable[[Hashable], Awaitable[None]]


class SerializedWriter:
    def __init__(self, write: WriteFn, name: str = "registry") -> None:
        self._write = write
        self._name = name
        self._locks: dict[Hashable, asyncio.Lock] = {}
        self._dirty: set[Hashable] = set()
        self._tasks: dict[Hashable, asyncio.Task[bool]] = {}
        self.writes = 0
        self.failures = 0

    def lock(self, key: Hashable) -> asyncio.Lock:
        """Lock held while ``key`` is being written; readers of the same file take it too."""
        lock = self._locks.get(key)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[key] = lock
        return lock

    def schedule(self, key: Hashable) -> asyncio.Task[bool]:
        """Request a write of ``key``; returns the task that will perform it.

        The task result is True when the last write it performed succeeded.
        """
        self._dirty.add(key)
        task = self._tasks.get(key)
        if task is None or task.done():
            task = asyncio.create_task(self._drain(key), name=f"{self._name}-save-{key}")
            self._tasks[key] = task
        return task

    async def write_now(self, key: Hashable) -> bool:
        """Request a write of ``key`` and wait until it has landed."""
        return await self.schedule(key)

    async def _drain(self, key: Hashable) -> bool:
        ok = True
        while key in self._dirty:
            self._dirty.discard(key)
            async with self.lock(key):
                try:
                    await self._write(key)
                    self.writes += 1
                    ok = True
                except Exception as e:
                    # In-memory state stays authoritative; the periodic save retries
                    self.failures += 1
                    ok = False
                    logger.error(f"Failed to write {self._name} '{key}': {e}")
        return ok

    @property
    def pending(self) -> int:
        return sum(1 for task in self._tasks.values() if not task.done())

    async def flush(self) -> None:
        """Wait for every in-flight and queued write to finish."""
        while True:
            tasks = [task for task in self._tasks.values() if not task.done()]
            if not tasks:
                return
            await asyncio.gather(*tasks, return_exceptions=True)
