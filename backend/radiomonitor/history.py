"""Historical event queries against the event log."""

from __future__ import annotations

import logging
from collections.abc import Callable
from datetime import datetime, timedelta, timezone
from typing import Any

from radiomonitor.broadcaster import EventEnricher
from radiomonitor.events import EventType, InvalidEventError
from radiomonitor.storage.base import EventLog

logger = logging.getLogger(__name__)

# Backfill windows offered to clients, in minutes
DURATION_MINUTES = {
    "30m": 30,
    "2h": 120,
    "6h": 360,
    "12h": 720,
}

TALKGROUP_HISTORY_LIMIT = 200
TALKGROUP_HISTORY_WINDOW = timedelta(hours=24)


class InvalidDurationError(ValueError):
    """Requested history bucket is not one of DURATION_MINUTES."""


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class HistoryService:
    def __init__(
        self,
        log: EventLog,
        enricher: EventEnricher,
        now: Callable[[], datetime] = _utcnow,
    ) -> None:
        self._log = log
        self._enricher = enricher
        self._now = now

    async def talkgroup_history(self, talkgroup: str) -> dict[str, Any]:
        """Recent activity on one talkgroup, newest first.

        Fetches both the last 200 events and the last 24 hours and returns
        whichever list is smaller: a busy talkgroup is capped by count, a
        quiet one by time.
        """
        recent = await self._log.query(
            talkgroup=talkgroup,
            limit=TALKGROUP_HISTORY_LIMIT,
            newest_first=True,
        )
        day = await self._log.query(
            talkgroup=talkgroup,
            since=self._now() - TALKGROUP_HISTORY_WINDOW,
            newest_first=True,
        )
        documents = recent if len(recent) <= len(day) else day
        events = self._enrich_all(documents)

        unique_radios: list[str] = []
        for event in events:
            radio_id = event.get("radioId")
            if radio_id and radio_id not in unique_radios:
                unique_radios.append(radio_id)

        return {
            "talkgroupId": talkgroup,
            "totalEvents": len(events),
            "uniqueRadios": unique_radios,
            "events": events,
        }

    async def events_since(self, duration: str) -> list[dict[str, Any]]:
        """Events in the requested bucket, oldest first, without location reports.

        Raises:
            InvalidDurationError: unknown bucket
        """
        minutes = DURATION_MINUTES.get(duration)
        if minutes is None:
            raise InvalidDurationError(
                f"Invalid duration {duration!r}; expected one of {', '.join(DURATION_MINUTES)}"
            )
        documents = await self._log.query(
            since=self._now() - timedelta(minutes=minutes),
            exclude_types=(EventType.LOCATION.value,),
        )
        return self._enrich_all(documents)

    def _enrich_all(self, documents: list[dict[str, Any]]) -> list[dict[str, Any]]:
        events = []
        for doc in documents:
            try:
                events.append(self._enricher.enrich(doc))
            except InvalidEventError as e:
                logger.debug(f"Skipping malformed stored event: {e}")
        return events
