"""Watch registry files for external edits.

watchdog delivers events on its observer thread; they are handed to the
event loop with ``call_soon_threadsafe`` and debounced there per path, so a
burst of writes from an editor (truncate, write, rename) causes one reload.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from pathlib import Path
from typing import Any

from watchdog.events import FileSystemEvent, FileSystemEventHandler
from watchdog.observers import Observer

logger = logging.getLogger(__name__)

ChangeCallback = Callable[[Path], Awaitable[Any]]


class _ForwardingHandler(FileSystemEventHandler):
    def __init__(self, watcher: RegistryWatcher) -> None:
        self._watcher = watcher

    def on_modified(self, event: FileSystemEvent) -> None:
        if not event.is_directory:
            self._watcher.notify_threadsafe(event.src_path)

    def on_created(self, event: FileSystemEvent) -> None:
        if not event.is_directory:
            self._watcher.notify_threadsafe(event.src_path)

    # Editors and our own atomic saves write a temp file and rename it
    def on_moved(self, event: FileSystemEvent) -> None:
        if not event.is_directory:
            self._watcher.notify_threadsafe(getattr(event, "dest_path", "") or event.src_path)


class RegistryWatcher:
    """Routes file changes under watched directories to async callbacks.

    Example:
        watcher = RegistryWatcher(debounce_s=0.5)
        watcher.watch(talkgroups_dir, registry.reload_file, suffix=".csv")
        watcher.watch(alias_file.parent, lambda p: aliases.reload(), names={alias_file.name})
        watcher.start()
    """

    def __init__(self, debounce_s: float = 0.5) -> None:
        self.debounce_s = debounce_s
        self._routes: list[tuple[Path, ChangeCallback, str | None, frozenset[str] | None]] = []
        self._observer: Any = None
        self._loop: asyncio.AbstractEventLoop | None = None
        self._pending: dict[Path, asyncio.TimerHandle] = {}
        self._tasks: set[asyncio.Task[Any]] = set()
        self.reloads = 0

    def watch(
        self,
        directory: str | Path,
        callback: ChangeCallback,
        suffix: str | None = None,
        names: set[str] | None = None,
    ) -> None:
        self._routes.append((
            Path(directory).resolve(),
            callback,
            suffix,
            frozenset(names) if names is not None else None,
        ))

    @property
    def running(self) -> bool:
        return self._observer is not None

    def start(self) -> None:
        if self._observer is not None:
            return
        self._loop = asyncio.get_running_loop()
        observer = Observer()
        handler = _ForwardingHandler(self)
        for directory in {route[0] for route in self._routes}:
            directory.mkdir(parents=True, exist_ok=True)
            observer.schedule(handler, str(directory), recursive=False)
            logger.info(f"Watching {directory} for registry changes")
        observer.daemon = True
        observer.start()
        self._observer = observer

    async def stop(self) -> None:
        observer, self._observer = self._observer, None
        if observer is not None:
            observer.stop()
            await asyncio.to_thread(observer.join, 5.0)
        for handle in self._pending.values():
            handle.cancel()
        self._pending.clear()
        tasks = list(self._tasks)
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

    def notify_threadsafe(self, path: str | bytes) -> None:
        """Called from the observer thread."""
        loop = self._loop
        if loop is None or loop.is_closed():
            return
        text = path.decode() if isinstance(path, bytes) else path
        loop.call_soon_threadsafe(self.notify, Path(text))

    def _route_for(self, path: Path) -> ChangeCallback | None:
        name = path.name
        # Temp files from atomic saves (".talkgroups.csv.abc123.tmp")
        if name.startswith("."):
            return None
        directory = path.parent.resolve()
        for root, callback, suffix, names in self._routes:
            if directory != root:
                continue
            if names is not None and name not in names:
                continue
            if suffix is not None and not name.endswith(suffix):
                continue
            return callback
        return None

    def notify(self, path: Path) -> None:
        """Debounce a change on the event loop thread."""
        callback = self._route_for(path)
        if callback is None:
            return
        key = path.resolve()
        handle = self._pending.pop(key, None)
        if handle is not None:
            handle.cancel()
        loop = asyncio.get_running_loop()
        self._pending[key] = loop.call_later(self.debounce_s, self._fire, key, callback)

    def _fire(self, path: Path, callback: ChangeCallback) -> None:
        self._pending.pop(path, None)
        task = asyncio.ensure_future(self._run(path, callback))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def _run(self, path: Path, callback: ChangeCallback) -> None:
        try:
            await callback(path)
            self.reloads += 1
        except Exception as e:
            logger.error(f"Error reloading {path}: {e}")
