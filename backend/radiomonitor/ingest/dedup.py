"""Ingestion dedup gate.

Suppresses re-submission of an identical event within a short window.
Recorders frequently report the same affiliation or call state several
times in a burst (retransmissions, multiple sites hearing the same unit),
and this gate keeps those repeats out of the event log.

The gate is single-process and in-memory; it gives no guarantee across
multiple ingestion processes.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections import OrderedDict
from dataclasses import dataclass
from typing import Any, Callable, Mapping

from radiomonitor.events import InvalidEventError, RadioEvent, format_timestamp
from radiomonitor.storage.base import EventLog

logger = logging.getLogger(__name__)

DedupKey = tuple[str | None, str | None, str, str | None]


@dataclass(frozen=True)
class SubmitResult:
    """Outcome of DedupGate.submit()."""

    accepted: bool
    event: RadioEvent
    reason: str | None = None

    def to_dict(self) -> dict[str, Any]:
        if self.accepted:
            return {"status": "success", "message": "Event logged successfully"}
        return {"status": "skipped", "message": self.reason or "Duplicate event within time window"}


class DedupGate:
    """Forwards events to the log unless an identical one was seen recently.

    Events are identified by (system, radioId, eventType, talkgroupOrSource).
    Each accepted key is stored with a deadline of ``now + window_s``; until
    the deadline passes, submissions with the same key are rejected without
    side effects (the deadline is not extended).

    Example:
        gate = DedupGate(log, window_s=5.0)

        await gate.submit({"system": "hamco", "radioId": "5", "eventType": "on",
                           "talkgroupOrSource": "100"})   # accepted
        await gate.submit({...same...})                  # rejected: duplicate
    """

    def __init__(
        self,
        log: EventLog,
        window_s: float = 5.0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._log = log
        self.window_s = window_s
        self._clock = clock

        # key -> deadline; insertion order == deadline order (constant window)
        self._deadlines: OrderedDict[DedupKey, float] = OrderedDict()

        self._accepted = 0
        self._rejected = 0

    @staticmethod
    def validate(event: RadioEvent) -> None:
        missing = [
            name for name, value in (
                ("system", event.system),
                ("radioId", event.radio_id),
                ("eventType", event.event_type),
            )
            if not value
        ]
        if missing:
            raise InvalidEventError(f"Missing required fields: {', '.join(missing)}")

    def is_suppressed(self, key: DedupKey) -> bool:
        deadline = self._deadlines.get(key)
        return deadline is not None and self._clock() < deadline

    async def submit(self, document: Mapping[str, Any] | RadioEvent) -> SubmitResult:
        """Forward an event to the log unless it duplicates a recent one.

        Raises:
            InvalidEventError: required fields are missing
            StorageError: the log rejected the write (the key is released)
        """
        event = document if isinstance(document, RadioEvent) else RadioEvent.from_document(document)
        self.validate(event)

        key = event.dedup_key
        if self.is_suppressed(key):
            self._rejected += 1
            logger.debug(f"Suppressed duplicate event {key}")
            return SubmitResult(accepted=False, event=event, reason="Duplicate event within time window")

        self._deadlines.pop(key, None)
        self._deadlines[key] = self._clock() + self.window_s

        # Stamped at ingestion, whole seconds, to compare byte-for-byte with file timestamps
        stamped = event.with_timestamp(format_timestamp())
        try:
            await self._log.append(stamped.to_dict())
        except Exception:
            self._deadlines.pop(key, None)
            raise

        self._accepted += 1
        return SubmitResult(accepted=True, event=stamped)

    def sweep(self) -> int:
        """Drop expired keys. Returns the number removed."""
        now = self._clock()
        removed = 0
        while self._deadlines:
            if next(iter(self._deadlines.values())) > now:
                break
            self._deadlines.popitem(last=False)
            removed += 1
        return removed

    async def run_sweeper(self, interval_s: float = 1.0) -> None:
        """Background task that purges expired keys."""
        while True:
            await asyncio.sleep(interval_s)
            self.sweep()

    def clear(self) -> None:
        self._deadlines.clear()

    def get_stats(self) -> dict[str, Any]:
        total = self._accepted + self._rejected
        return {
            "trackedEvents": len(self._deadlines),
            "accepted": self._accepted,
            "duplicatesDetected": self._rejected,
            "duplicateRate": self._rejected / total if total > 0 else 0,
            "dedupWindowS": self.window_s,
        }
