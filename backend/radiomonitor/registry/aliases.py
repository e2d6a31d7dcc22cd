"""System short name -> display name table (``system-alias.csv``)."""

from __future__ import annotations

import asyncio
import csv
import hashlib
import io
import logging
import os
import re
import tempfile
from collections.abc import Callable
from pathlib import Path
from typing import Any

from radiomonitor.events import ControlEvent
from radiomonitor.registry.writer import SerializedWriter

logger = logging.getLogger(__name__)

ALIAS_HEADER = ["shortName", "alias"]
SHORT_NAME_PATTERN = re.compile(r"^[A-Za-z0-9_-]+$")

_TABLE_KEY = "aliases"


class InvalidSystemNameError(ValueError):
    """Short name does not match ``[A-Za-z0-9_-]+``."""


class InvalidAliasError(ValueError):
    """Explicit alias edit with a blank display name."""


def is_valid_short_name(system: str | None) -> bool:
    return bool(system) and SHORT_NAME_PATTERN.match(system) is not None


def generate_default_alias(system: str) -> str:
    """Derive a readable display name from a short name.

    ``hamco`` -> ``Ham``, ``butler-1`` -> ``Butler 1``, ``west_chester`` ->
    ``West Chester``.
    """
    base = system[:-2] if system.endswith("co") else system
    tokens = [t for t in re.split(r"[_-]", base) if t]
    if not tokens:
        return system
    return " ".join(t[:1].upper() + t[1:].lower() for t in tokens)


def _digest(text: str) -> str:
    return hashlib.sha1(text.encode("utf-8")).hexdigest()


class SystemAliasRegistry:
    """Display names for radio systems, persisted as a two-column CSV."""

    def __init__(self, path: str | Path) -> None:
        self.path = Path(path)
        self._aliases: dict[str, str] = {}
        self._listeners: list[Callable[[ControlEvent], None]] = []
        self._last_content: str | None = None
        self._writer = SerializedWriter(self._write_table, name="system aliases")

    # ------------------------------------------------------------------
    # File I/O
    # ------------------------------------------------------------------

    def _render(self) -> str:
        buffer = io.StringIO()
        writer = csv.writer(buffer, lineterminator="\n")
        writer.writerow(ALIAS_HEADER)
        for short_name in sorted(self._aliases):
            writer.writerow([short_name, self._aliases[short_name]])
        return buffer.getvalue()

    def _atomic_write(self, content: str) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp_name = tempfile.mkstemp(prefix=f".{self.path.name}.", suffix=".tmp", dir=self.path.parent)
        try:
            with os.fdopen(fd, "w", encoding="utf-8", newline="") as f:
                f.write(content)
            os.replace(tmp_name, self.path)
        except BaseException:
            Path(tmp_name).unlink(missing_ok=True)
            raise

    async def _write_table(self, _key: object) -> None:
        content = self._render()
        await asyncio.to_thread(self._atomic_write, content)
        self._last_content = _digest(content)
        logger.info(f"Saved {len(self._aliases)} system aliases to {self.path}")

    def _parse(self, text: str) -> dict[str, str]:
        rows = [row for row in csv.reader(io.StringIO(text, newline="")) if any(c.strip() for c in row)]
        if not rows:
            return {}
        first = [c.strip().lower() for c in rows[0]]
        if first[:2] == ["shortname", "alias"]:
            rows = rows[1:]
        else:
            logger.warning(f"{self.path} has no 'shortName,alias' header; reading all rows as data")

        aliases: dict[str, str] = {}
        for row in rows:
            short_name = row[0].strip() if row else ""
            alias = row[1].strip() if len(row) > 1 else ""
            if not is_valid_short_name(short_name):
                logger.warning(f"Skipping invalid system short name in {self.path.name}: {short_name!r}")
                continue
            if not alias:
                logger.warning(f"Skipping system {short_name} without alias in {self.path.name}")
                continue
            aliases[short_name] = alias
        return aliases

    async def _read(self) -> str | None:
        try:
            return await asyncio.to_thread(self.path.read_text, encoding="utf-8")
        except FileNotFoundError:
            return None

    async def load(self) -> int:
        """Read the alias file, creating it with a header when missing."""
        async with self._writer.lock(_TABLE_KEY):
            text = await self._read()
            if text is None:
                logger.info(f"Creating {self.path}")
                self._aliases = {}
                content = self._render()
                await asyncio.to_thread(self._atomic_write, content)
                self._last_content = _digest(content)
                return 0
            self._aliases = self._parse(text)
            self._last_content = _digest(text)
        logger.info(f"Loaded {len(self._aliases)} system aliases from {self.path}")
        return len(self._aliases)

    async def reload(self) -> bool:
        """Re-read the file after an external edit; own writes are ignored."""
        async with self._writer.lock(_TABLE_KEY):
            text = await self._read()
            if text is None or _digest(text) == self._last_content:
                return False
            self._aliases = self._parse(text)
            self._last_content = _digest(text)
        logger.info(f"Detected change in {self.path.name}, reloaded {len(self._aliases)} system aliases")
        self._notify(ControlEvent.ALIASES_UPDATED)
        return True

    async def flush(self) -> None:
        await self._writer.flush()

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def get_alias(self, system: str) -> str:
        return self._aliases.get(system, system)

    def has_system(self, system: str) -> bool:
        return system in self._aliases

    def systems(self) -> list[dict[str, str]]:
        return [
            {"shortName": short_name, "displayName": self._aliases[short_name]}
            for short_name in sorted(self._aliases)
        ]

    def snapshot(self) -> list[dict[str, str]]:
        return self.systems()

    # ------------------------------------------------------------------
    # Mutations
    # ------------------------------------------------------------------

    def _store(self, system: str, alias: str | None) -> tuple[bool, bool]:
        """Returns (changed, differs_from_default)."""
        if not is_valid_short_name(system):
            raise InvalidSystemNameError(f"Invalid system short name: {system!r}")
        default = generate_default_alias(system)
        if alias is None:
            if system in self._aliases:
                return False, False
            alias = default
        else:
            alias = alias.strip()
            if self._aliases.get(system) == alias:
                return False, alias != default
        self._aliases[system] = alias
        return True, alias != default

    async def add_system(self, system: str, alias: str | None = None) -> bool:
        """Register a system, keeping an existing alias when none is given.

        Raises:
            InvalidSystemNameError: short name has an invalid format
        """
        changed, custom = self._store(system, alias)
        if not changed:
            return False
        logger.info(f"Added system {system} with alias {self._aliases[system]!r}")
        await self._writer.write_now(_TABLE_KEY)
        if custom:
            self._notify(ControlEvent.ALIASES_UPDATED)
        return True

    def ensure_system(self, system: str | None) -> bool:
        """Feed-path variant of add_system(): the save is scheduled, not awaited.

        Returns True when the system had not been seen before. Invalid names
        are logged and ignored.
        """
        if system is None:
            return False
        try:
            changed, _ = self._store(system, None)
        except InvalidSystemNameError as e:
            logger.warning(str(e))
            return False
        if changed:
            logger.info(f"Discovered new system {system}, default alias {self._aliases[system]!r}")
            self._writer.schedule(_TABLE_KEY)
        return changed

    async def update_alias(self, system: str, alias: str) -> str:
        if not is_valid_short_name(system):
            raise InvalidSystemNameError(f"Invalid system short name: {system!r}")
        if not isinstance(alias, str) or not alias.strip():
            raise InvalidAliasError("alias must be a non-empty string")
        self._aliases[system] = alias.strip()
        await self._writer.write_now(_TABLE_KEY)
        self._notify(ControlEvent.ALIASES_UPDATED)
        return self._aliases[system]

    # ------------------------------------------------------------------
    # Notifications
    # ------------------------------------------------------------------

    def add_listener(self, callback: Callable[[ControlEvent], None]) -> Callable[[], None]:
        self._listeners.append(callback)

        def remove() -> None:
            if callback in self._listeners:
                self._listeners.remove(callback)

        return remove

    def _notify(self, event: ControlEvent) -> None:
        for callback in list(self._listeners):
            try:
                callback(event)
            except Exception as e:
                logger.error(f"Error in alias registry listener: {e}")

    def to_dict(self) -> dict[str, Any]:
        return {"path": str(self.path), "systems": len(self._aliases)}
