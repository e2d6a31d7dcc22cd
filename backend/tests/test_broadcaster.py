"""Tests for event enrichment and subscriber fan-out."""

from __future__ import annotations

from pathlib import Path

import pytest

from radiomonitor.broadcaster import EventBroadcaster, EventEnricher
from radiomonitor.events import ControlEvent
from radiomonitor.registry import SystemAliasRegistry, TalkgroupRegistry
from radiomonitor.registry.csv_format import HEADER

GLOBAL_CSV = ",".join(HEADER) + '\n"200","c8","FIRE","D","Fire Dispatch","Fire Dispatch","Fire"\n'
HAMCO_CSV = ",".join(HEADER) + '\n"100","64","HAMCO DISP","D","","Law Dispatch","Police"\n'


@pytest.fixture
async def enricher(tmp_path: Path) -> EventEnricher:
    tg_dir = tmp_path / "talkgroups"
    tg_dir.mkdir()
    (tg_dir / "talkgroups.csv").write_text(GLOBAL_CSV, encoding="utf-8")
    (tg_dir / "hamco-talkgroups.csv").write_text(HAMCO_CSV, encoding="utf-8")
    talkgroups = TalkgroupRegistry(tg_dir)
    await talkgroups.load()
    aliases = SystemAliasRegistry(tmp_path / "system-alias.csv")
    await aliases.load()
    await aliases.add_system("hamco", "Hamilton County")
    return EventEnricher(talkgroups, aliases)


def event(talkgroup: str, radio_id: str = "1", system: str = "hamco") -> dict:
    return {
        "system": system,
        "radioId": radio_id,
        "talkgroupOrSource": talkgroup,
        "eventType": "join",
        "timestamp": "2026-01-01T00:00:00Z",
    }


@pytest.mark.anyio
async def test_enrich_system_record_adds_system_info(enricher: EventEnricher) -> None:
    data = enricher.enrich(event("100"))

    assert data["talkgroupInfo"]["alphaTag"] == "HAMCO DISP"
    assert data["systemInfo"] == {"shortName": "hamco", "displayName": "Hamilton County"}


@pytest.mark.anyio
async def test_enrich_global_record_has_no_system_info(enricher: EventEnricher) -> None:
    data = enricher.enrich(event("200"))

    assert data["talkgroupInfo"]["alphaTag"] == "FIRE"
    assert "systemInfo" not in data


@pytest.mark.anyio
async def test_enrich_unknown_talkgroup_is_passed_through(enricher: EventEnricher) -> None:
    data = enricher.enrich(event("999", radio_id="42"))

    assert "talkgroupInfo" not in data
    assert data["radioId"] == "42"
    assert data["talkgroupOrSource"] == "999"


@pytest.mark.anyio
async def test_every_subscriber_sees_events_in_order(enricher: EventEnricher) -> None:
    broadcaster = EventBroadcaster(enricher)
    first = broadcaster.subscribe()
    second = broadcaster.subscribe()

    for radio_id in ("1", "2", "3"):
        broadcaster.publish_event(event("100", radio_id=radio_id))

    for sub in (first, second):
        messages = [await sub.next() for _ in range(3)]
        assert [m["type"] for m in messages] == ["radioEvent"] * 3
        assert [m["event"]["radioId"] for m in messages] == ["1", "2", "3"]
    assert broadcaster.published == 3


@pytest.mark.anyio
async def test_slow_subscriber_is_dropped_without_affecting_others(enricher: EventEnricher) -> None:
    broadcaster = EventBroadcaster(enricher, queue_size=2)
    slow = broadcaster.subscribe()
    fast = broadcaster.subscribe()

    broadcaster.publish_event(event("100", radio_id="1"))
    assert (await fast.next())["event"]["radioId"] == "1"
    broadcaster.publish_event(event("100", radio_id="2"))
    assert (await fast.next())["event"]["radioId"] == "2"
    broadcaster.publish_event(event("100", radio_id="3"))

    assert slow.lagged
    assert broadcaster.subscriber_count == 1
    assert broadcaster.dropped == 1
    # Queued messages are still delivered, then the end marker
    assert [(await slow.next())["event"]["radioId"] for _ in range(2)] == ["1", "2"]
    assert await slow.next() is None
    assert (await fast.next())["event"]["radioId"] == "3"


@pytest.mark.anyio
async def test_control_messages(enricher: EventEnricher) -> None:
    broadcaster = EventBroadcaster(enricher)
    sub = broadcaster.subscribe()

    broadcaster.publish_control(ControlEvent.TALKGROUPS_RELOADED)
    broadcaster.publish_control("custom")

    assert await sub.next() == {"type": "control", "event": ControlEvent.TALKGROUPS_RELOADED.value}
    assert await sub.next() == {"type": "control", "event": "custom"}


@pytest.mark.anyio
async def test_unsubscribe_wakes_waiting_reader(enricher: EventEnricher) -> None:
    broadcaster = EventBroadcaster(enricher, queue_size=1)
    sub = broadcaster.subscribe()
    broadcaster.publish_control(ControlEvent.SYSTEMS_UPDATED)

    broadcaster.unsubscribe(sub)
    broadcaster.publish_control(ControlEvent.SYSTEMS_UPDATED)

    assert (await sub.next())["type"] == "control"
    assert await sub.next() is None
    assert not sub.lagged
    assert broadcaster.get_stats()["subscribers"] == 0
