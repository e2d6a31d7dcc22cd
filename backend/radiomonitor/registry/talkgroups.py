"""File-backed talkgroup registry.

Talkgroup metadata is kept in CSV files under one directory:

- ``talkgroups.csv`` holds the global partition (talkgroups not tied to a
  system, and the fallback for lookups)
- ``{system}-talkgroups.csv`` holds one system's partition

Talkgroups seen in live traffic but missing from every file are added as
placeholders ("Talkgroup 1234", tag/category "Unknown") and written back
immediately so they can be filled in by hand. Files may be edited while the
server runs; the watcher calls reload_file() for the changed partition.
"""

from __future__ import annotations

import asyncio
import csv
import hashlib
import logging
import os
import tempfile
from collections.abc import Callable, Mapping
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from radiomonitor.events import ControlEvent, id_sort_key, is_decimal_id
from radiomonitor.registry.aliases import is_valid_short_name
from radiomonitor.registry.csv_format import (
    HEADER,
    HeaderNotFoundError,
    TalkgroupRow,
    parse_talkgroups,
    serialize_talkgroups,
)
from radiomonitor.registry.writer import SerializedWriter

logger = logging.getLogger(__name__)

GLOBAL_FILE = "talkgroups.csv"
SYSTEM_FILE_SUFFIX = "-talkgroups.csv"
UNKNOWN_LABEL = "Unknown"
PLACEHOLDER_MODE = "D"

Partition = str | None


class InvalidRecordError(ValueError):
    """An explicit talkgroup edit was rejected."""


def _digest(text: str) -> str:
    return hashlib.sha1(text.encode("utf-8")).hexdigest()


@dataclass
class TalkgroupRecord:
    """Metadata for one talkgroup within a partition.

    Attributes:
        decimal: Talkgroup ID (decimal string, the primary key)
        hex: Hex form of the ID as exported by RadioReference
        alpha_tag: Short display label
        mode: Radio mode ("D" digital, "A" analog, "E" encrypted, ...)
        description: Free-text description
        tag: Broad service tag (e.g. "Law Dispatch")
        category: Grouping category (e.g. "Sheriff")
        system: Owning system short name; None for the global partition
        unknown: True for auto-created placeholders not yet edited
    """
    decimal: str
    hex: str = ""
    alpha_tag: str = ""
    mode: str = ""
    description: str = ""
    tag: str = UNKNOWN_LABEL
    category: str = UNKNOWN_LABEL
    system: str | None = None
    unknown: bool = False

    @classmethod
    def placeholder(cls, decimal: str, system: str | None) -> TalkgroupRecord:
        return cls(
            decimal=decimal,
            alpha_tag=f"Talkgroup {decimal}",
            mode=PLACEHOLDER_MODE,
            system=system,
            unknown=True,
        )

    @classmethod
    def from_row(cls, row: TalkgroupRow, system: str | None) -> TalkgroupRecord:
        record = cls(
            decimal=row.decimal,
            hex=row.hex,
            alpha_tag=row.alpha_tag or f"Talkgroup {row.decimal}",
            mode=row.mode,
            description=row.description,
            tag=row.tag or UNKNOWN_LABEL,
            category=row.category or UNKNOWN_LABEL,
            system=system,
        )
        # A written-back placeholder that nobody has edited yet stays unknown
        record.unknown = record.is_placeholder_content()
        return record

    def is_placeholder_content(self) -> bool:
        return (
            self.alpha_tag == f"Talkgroup {self.decimal}"
            and not self.hex
            and not self.description
            and self.tag == UNKNOWN_LABEL
            and self.category == UNKNOWN_LABEL
        )

    def to_row(self) -> TalkgroupRow:
        return TalkgroupRow(
            decimal=self.decimal,
            hex=self.hex,
            alpha_tag=self.alpha_tag,
            mode=self.mode,
            description=self.description,
            tag=self.tag,
            category=self.category,
        )

    def to_info(self) -> dict[str, str]:
        """Metadata attached to broadcast events as ``talkgroupInfo``."""
        return {
            "hex": self.hex,
            "alphaTag": self.alpha_tag,
            "mode": self.mode,
            "description": self.description,
            "tag": self.tag,
            "category": self.category,
        }

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {"decimal": self.decimal}
        data.update(self.to_info())
        data["shortName"] = self.system
        data["unknown"] = self.unknown
        return data


class TalkgroupRegistry:
    """Talkgroup metadata partitioned by system and backed by CSV files.

    A given (partition, decimal) pair maps to at most one record. Lookups
    for a system fall back to the global partition. Writes to a partition
    file are serialized through a SerializedWriter; reloading a file takes
    the same per-partition lock, so a reload never interleaves with a save.
    """

    def __init__(self, directory: str | Path) -> None:
        self.directory = Path(directory)
        self._partitions: dict[Partition, dict[str, TalkgroupRecord]] = {None: {}}
        self._listeners: list[Callable[[ControlEvent], None]] = []
        # resolved path -> digest of the content this process last wrote or read
        self._known_content: dict[Path, str] = {}
        self._writer = SerializedWriter(self._write_partition, name="talkgroups")

    # ------------------------------------------------------------------
    # Files
    # ------------------------------------------------------------------

    def path_for(self, system: Partition) -> Path:
        if system is None:
            return self.directory / GLOBAL_FILE
        return self.directory / f"{system}{SYSTEM_FILE_SUFFIX}"

    def partition_of(self, path: str | Path) -> tuple[bool, Partition]:
        """Map a file path to its partition.

        Returns:
            (is_registry_file, partition)
        """
        name = Path(path).name
        if name == GLOBAL_FILE:
            return True, None
        if name.endswith(SYSTEM_FILE_SUFFIX):
            system = name[: -len(SYSTEM_FILE_SUFFIX)]
            if is_valid_short_name(system):
                return True, system
        return False, None

    def _ensure_directory(self) -> None:
        if not self.directory.exists():
            logger.info(f"Creating talkgroups directory {self.directory}")
            self.directory.mkdir(parents=True, exist_ok=True)
        default_file = self.path_for(None)
        if not default_file.exists():
            logger.info(f"Creating default {default_file}")
            default_file.write_text(",".join(HEADER) + "\n", encoding="utf-8")

    def _list_files(self) -> list[tuple[Partition, Path]]:
        files: list[tuple[Partition, Path]] = [(None, self.path_for(None))]
        for path in sorted(self.directory.glob(f"*{SYSTEM_FILE_SUFFIX}")):
            is_registry_file, system = self.partition_of(path)
            if is_registry_file and system is not None:
                files.append((system, path))
            else:
                logger.warning(f"Ignoring talkgroup file with invalid system name: {path.name}")
        return files

    async def _read_file(self, path: Path, system: Partition) -> tuple[str, dict[str, TalkgroupRecord]] | None:
        try:
            text = await asyncio.to_thread(path.read_text, encoding="utf-8")
        except FileNotFoundError:
            logger.warning(f"Talkgroup file not found: {path}")
            return None
        except (OSError, UnicodeDecodeError) as e:
            logger.error(f"Error reading talkgroup file {path}: {e}")
            return None

        try:
            rows = parse_talkgroups(text, source=str(path))
        except HeaderNotFoundError:
            logger.error(f"{path} must have a header with at least 'Decimal' and 'Alpha Tag' columns")
            return None
        except csv.Error as e:
            logger.error(f"Error parsing talkgroup file {path}: {e}")
            return None

        records = {row.decimal: TalkgroupRecord.from_row(row, system) for row in rows}
        return text, records

    def _atomic_write(self, path: Path, content: str) -> None:
        path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp_name = tempfile.mkstemp(prefix=f".{path.name}.", suffix=".tmp", dir=path.parent)
        try:
            with os.fdopen(fd, "w", encoding="utf-8", newline="") as f:
                f.write(content)
            os.replace(tmp_name, path)
        except BaseException:
            Path(tmp_name).unlink(missing_ok=True)
            raise

    async def _write_partition(self, system: Partition) -> None:
        records = list(self._partitions.get(system, {}).values())
        known = sorted((r for r in records if not r.unknown), key=lambda r: id_sort_key(r.decimal))
        unknown = sorted((r for r in records if r.unknown), key=lambda r: id_sort_key(r.decimal))
        content = serialize_talkgroups(r.to_row() for r in known + unknown)

        path = self.path_for(system)
        await asyncio.to_thread(self._atomic_write, path, content)
        self._known_content[path.resolve()] = _digest(content)
        logger.info(f"Saved {len(records)} talkgroups to {path}")

    # ------------------------------------------------------------------
    # Loading
    # ------------------------------------------------------------------

    async def load(self) -> int:
        """Rebuild every partition from disk. Returns the number of records loaded."""
        await asyncio.to_thread(self._ensure_directory)
        files = await asyncio.to_thread(self._list_files)

        partitions: dict[Partition, dict[str, TalkgroupRecord]] = {None: {}}
        for system, path in files:
            async with self._writer.lock(system):
                result = await self._read_file(path, system)
            if result is None:
                continue
            text, records = result
            self._known_content[path.resolve()] = _digest(text)
            partitions[system] = records
            logger.info(f"Loaded {len(records)} talkgroups from {path}")

        self._partitions = partitions
        return self.count

    async def reload_file(self, path: str | Path) -> bool:
        """Reload one partition after an external edit.

        Placeholders that the edited file does not mention are kept. Returns
        False when the file is not a registry file, is unreadable, or holds
        exactly the content this process last wrote.
        """
        path = Path(path)
        is_registry_file, system = self.partition_of(path)
        if not is_registry_file:
            return False

        async with self._writer.lock(system):
            result = await self._read_file(path, system)
            if result is None:
                return False
            text, records = result
            digest = _digest(text)
            resolved = path.resolve()
            if self._known_content.get(resolved) == digest:
                return False
            self._known_content[resolved] = digest

            current = self._partitions.get(system, {})
            for decimal, record in current.items():
                if record.unknown and decimal not in records:
                    records[decimal] = record
            self._partitions[system] = records

        logger.info(f"Detected change in {path.name}, reloaded {len(records)} talkgroups")
        self._notify(ControlEvent.TALKGROUPS_RELOADED)
        return True

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def get(self, system: str | None, decimal: str | int | None) -> TalkgroupRecord | None:
        """Look up a talkgroup in a system's partition, falling back to global."""
        if decimal is None:
            return None
        key = str(decimal).strip()
        if system is not None:
            record = self._partitions.get(system, {}).get(key)
            if record is not None:
                return record
        return self._partitions[None].get(key)

    def _locate(self, decimal: str) -> Partition:
        for system in sorted(s for s in self._partitions if s is not None):
            if decimal in self._partitions[system]:
                return system
        return None

    @property
    def count(self) -> int:
        return sum(len(p) for p in self._partitions.values())

    def systems(self) -> list[str]:
        return sorted(s for s in self._partitions if s is not None)

    def records(self, system: Partition = None) -> list[TalkgroupRecord]:
        return list(self._partitions.get(system, {}).values())

    def snapshot(self) -> dict[str, Any]:
        talkgroups: dict[str, dict[str, Any]] = {}
        unknown: set[str] = set()
        # Global first so system partitions take precedence for the same id
        for system in [None, *self.systems()]:
            for decimal, record in self._partitions.get(system, {}).items():
                if record.unknown:
                    unknown.add(decimal)
                else:
                    talkgroups[decimal] = record.to_dict()
        return {
            "talkgroups": talkgroups,
            "unknownTalkgroups": sorted(unknown - talkgroups.keys(), key=id_sort_key),
        }

    # ------------------------------------------------------------------
    # Mutations
    # ------------------------------------------------------------------

    def register_unknown(self, system: str | None, decimal: str | int | None) -> bool:
        """Add a placeholder for a talkgroup nobody has described yet.

        Idempotent: only the first call for an id schedules a write-back.
        Returns True when a placeholder was created.
        """
        if decimal is None:
            return False
        key = str(decimal).strip()
        if not is_decimal_id(key):
            return False
        if system is not None and not is_valid_short_name(system):
            logger.warning(f"Invalid system name {system!r}; using global talkgroup partition")
            system = None
        if self.get(system, key) is not None:
            return False

        logger.info(f"Adding new unknown talkgroup: {key} ({system or 'global'})")
        self._partitions.setdefault(system, {})[key] = TalkgroupRecord.placeholder(key, system)
        self._writer.schedule(system)
        return True

    async def upsert(
        self,
        decimal: str | int,
        fields: Mapping[str, Any],
        system: str | None = None,
    ) -> TalkgroupRecord:
        """Apply an explicit edit and persist the affected partition.

        Raises:
            InvalidRecordError: alphaTag missing/blank, or bad id/system name
        """
        key = str(decimal).strip()
        if not is_decimal_id(key):
            raise InvalidRecordError(f"Talkgroup id must be numeric: {decimal!r}")
        alpha_tag = fields.get("alphaTag", fields.get("alpha_tag"))
        if not isinstance(alpha_tag, str) or not alpha_tag.strip():
            raise InvalidRecordError("alphaTag is required")
        if system is not None and not is_valid_short_name(system):
            raise InvalidRecordError(f"Invalid system name: {system!r}")

        partition = system if system is not None else self._locate(key)

        def text(name: str, default: str = "") -> str:
            value = fields.get(name)
            return str(value).strip() if value not in (None, "") else default

        record = TalkgroupRecord(
            decimal=key,
            hex=text("hex"),
            alpha_tag=alpha_tag.strip(),
            mode=text("mode"),
            description=text("description"),
            tag=text("tag", UNKNOWN_LABEL),
            category=text("category", UNKNOWN_LABEL),
            system=partition,
            unknown=False,
        )
        self._partitions.setdefault(partition, {})[key] = record

        # A placeholder created under another partition is resolved by this edit
        for other, records in self._partitions.items():
            stale = records.get(key)
            if other != partition and stale is not None and stale.unknown:
                del records[key]
                self._writer.schedule(other)

        await self._writer.write_now(partition)
        return record

    # ------------------------------------------------------------------
    # Persistence
    # ------------------------------------------------------------------

    async def save(self, system: str | None = None) -> bool:
        """Write one partition (global when ``system`` is None) to its file."""
        return await self._writer.write_now(system)

    async def save_all(self) -> bool:
        tasks = [self._writer.schedule(system) for system in [None, *self.systems()]]
        results = await asyncio.gather(*tasks)
        return all(results)

    async def run_periodic_save(self, interval_s: float) -> None:
        """Safety net for immediate saves that failed or were missed."""
        while True:
            await asyncio.sleep(interval_s)
            await self.save_all()

    async def flush(self) -> None:
        await self._writer.flush()

    @property
    def writer(self) -> SerializedWriter:
        return self._writer

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
                logger.error(f"Error in talkgroup registry listener: {e}")
