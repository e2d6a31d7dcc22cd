"""Client-side per-talkgroup activity state.

Fed by the broadcast stream (and by history backfill), the aggregator keeps
one TalkgroupState per talkgroup: which radios are currently affiliated,
how many calls were seen, when the talkgroup was last active, and a short
lived "glow" that marks recent activity in the viewer.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections import deque
from collections.abc import Callable, Iterable, Mapping
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Literal

from radiomonitor.events import InvalidEventError, RadioEvent, id_sort_key, parse_timestamp

logger = logging.getLogger(__name__)

CALL_WINDOW = timedelta(minutes=5)
GLOW_DURATION_S = 30.0
HISTORY_CHUNK_SIZE = 1000

SortKey = Literal["id", "calls", "recent"]


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class RadioStatus:
    event_type: str
    system: str | None = None


@dataclass
class TalkgroupState:
    talkgroup: str
    radios: dict[str, RadioStatus] = field(default_factory=dict)
    last_timestamp: datetime | None = None
    system: str | None = None
    call_count: int = 0
    call_times: deque[datetime] = field(default_factory=deque)
    glow: str | None = None
    glow_deadline: float | None = None

    def clear(self) -> None:
        self.radios.clear()
        self.last_timestamp = None
        self.system = None
        self.call_count = 0
        self.call_times.clear()
        self.glow = None
        self.glow_deadline = None

    def purge_calls(self, cutoff: datetime) -> None:
        while self.call_times and self.call_times[0] < cutoff:
            self.call_times.popleft()

    @property
    def recent_calls(self) -> int:
        return len(self.call_times)


@dataclass
class ViewOptions:
    active_only: bool = False
    category: str | None = None
    tag: str | None = None
    system: str | None = None
    show_unassociated: bool = True
    excluded: frozenset[str] = frozenset()
    sort: SortKey = "id"


@dataclass
class TalkgroupEntry:
    """One row of the viewer: state plus whatever metadata is known."""

    talkgroup: str
    state: TalkgroupState
    info: Mapping[str, Any] | None
    glow: str | None


class TalkgroupAggregator:
    """Applies radio events to per-talkgroup state.

    Args:
        clock: Monotonic clock used for glow deadlines
        now: Wall clock used for the 5-minute call window
    """

    def __init__(
        self,
        clock: Callable[[], float] = time.monotonic,
        now: Callable[[], datetime] = _utcnow,
    ) -> None:
        self._clock = clock
        self._now = now
        self._states: dict[str, TalkgroupState] = {}
        self._metadata: dict[str, Mapping[str, Any]] = {}
        self.events_handled = 0

    # ------------------------------------------------------------------
    # Events
    # ------------------------------------------------------------------

    def handle_event(self, event: RadioEvent | Mapping[str, Any]) -> TalkgroupState | None:
        """Apply one event. Returns the talkgroup's state, or None if ignored."""
        if not isinstance(event, RadioEvent):
            try:
                event = RadioEvent.from_document(event)
            except InvalidEventError as e:
                logger.debug(f"Ignoring malformed event: {e}")
                return None

        talkgroup = event.talkgroup_or_source
        if not talkgroup:
            return None

        state = self._states.get(talkgroup)
        if state is None:
            state = TalkgroupState(talkgroup=talkgroup)
            self._states[talkgroup] = state

        moment = parse_timestamp(event.timestamp) or self._now()

        if event.is_call:
            state.call_count += 1
            state.call_times.append(moment)
            state.purge_calls(self._now() - CALL_WINDOW)
        elif event.is_off:
            if event.radio_id:
                state.radios.pop(event.radio_id, None)
        elif event.radio_id:
            state.radios[event.radio_id] = RadioStatus(event_type=event.event_type, system=event.system)

        state.last_timestamp = moment
        state.system = event.system
        # A newer event replaces both value and deadline
        state.glow = event.event_type
        state.glow_deadline = self._clock() + GLOW_DURATION_S

        self.events_handled += 1
        return state

    async def load_history(
        self,
        events: Iterable[RadioEvent | Mapping[str, Any]],
        chunk_size: int = HISTORY_CHUNK_SIZE,
    ) -> int:
        """Reset, then replay historical events (oldest first) in chunks.

        Yields to the event loop between chunks so a large backfill does not
        starve the live stream.
        """
        self.reset()
        count = 0
        for event in events:
            self.handle_event(event)
            count += 1
            if count % chunk_size == 0:
                await asyncio.sleep(0)
        logger.info(f"Loaded {count} historical events")
        return count

    def reset(self) -> None:
        """Clear activity but keep the talkgroups already seen."""
        for state in self._states.values():
            state.clear()

    def glow(self, talkgroup: str) -> str | None:
        state = self._states.get(talkgroup)
        if state is None or state.glow_deadline is None:
            return None
        if self._clock() >= state.glow_deadline:
            return None
        return state.glow

    def sweep(self) -> None:
        """Drop expired glows and stale call timestamps. Safe to call any time."""
        now = self._clock()
        cutoff = self._now() - CALL_WINDOW
        for state in self._states.values():
            if state.glow_deadline is not None and now >= state.glow_deadline:
                state.glow = None
                state.glow_deadline = None
            state.purge_calls(cutoff)

    # ------------------------------------------------------------------
    # Metadata and views
    # ------------------------------------------------------------------

    def set_metadata(self, talkgroups: Mapping[str, Any]) -> None:
        """Install talkgroup metadata, either a registry snapshot or its
        ``talkgroups`` mapping."""
        table = talkgroups.get("talkgroups", talkgroups)
        self._metadata = {str(k): v for k, v in table.items() if isinstance(v, Mapping)}

    def info(self, talkgroup: str) -> Mapping[str, Any] | None:
        return self._metadata.get(talkgroup)

    def state(self, talkgroup: str) -> TalkgroupState | None:
        return self._states.get(talkgroup)

    def __len__(self) -> int:
        return len(self._states)

    def known_systems(self) -> list[str]:
        systems: set[str] = set()
        for state in self._states.values():
            if state.system:
                systems.add(state.system)
            systems.update(r.system for r in state.radios.values() if r.system)
        return sorted(systems)

    def _matches(self, state: TalkgroupState, info: Mapping[str, Any] | None, view: ViewOptions) -> bool:
        if state.talkgroup in view.excluded:
            return False
        if view.active_only and state.call_count == 0:
            return False
        if not view.show_unassociated and info is None:
            return False
        if view.category and (info is None or info.get("category") != view.category):
            return False
        if view.tag and (info is None or info.get("tag") != view.tag):
            return False
        if view.system:
            radio_systems = {r.system for r in state.radios.values()}
            if state.system != view.system and view.system not in radio_systems:
                return False
        return True

    def entries(self, view: ViewOptions | None = None) -> list[TalkgroupEntry]:
        view = view or ViewOptions()
        rows = [
            TalkgroupEntry(
                talkgroup=tg,
                state=state,
                info=self._metadata.get(tg),
                glow=self.glow(tg),
            )
            for tg, state in self._states.items()
        ]
        rows = [row for row in rows if self._matches(row.state, row.info, view)]

        if view.sort == "calls":
            rows.sort(key=lambda r: (-r.state.call_count, id_sort_key(r.talkgroup)))
        elif view.sort == "recent":
            oldest = datetime.min.replace(tzinfo=timezone.utc)
            rows.sort(key=lambda r: id_sort_key(r.talkgroup))
            rows.sort(key=lambda r: r.state.last_timestamp or oldest, reverse=True)
        else:
            rows.sort(key=lambda r: id_sort_key(r.talkgroup))
        return rows
