"""Tests for the ingestion dedup gate."""

from __future__ import annotations

import re
from typing import Any

import pytest

from conftest import FakeClock
from radiomonitor.events import InvalidEventError
from radiomonitor.ingest import DedupGate
from radiomonitor.storage import MemoryEventLog, StorageError

EVENT = {"system": "hamco", "radioId": "1234", "talkgroupOrSource": "100", "eventType": "join"}


def make_gate(clock: FakeClock, window_s: float = 5.0) -> tuple[DedupGate, MemoryEventLog]:
    log = MemoryEventLog()
    return DedupGate(log, window_s=window_s, clock=clock), log


@pytest.mark.anyio
async def test_duplicate_within_window_is_rejected(clock: FakeClock) -> None:
    gate, log = make_gate(clock)

    first = await gate.submit(EVENT)
    clock.advance(4.9)
    second = await gate.submit(EVENT)

    assert first.accepted
    assert not second.accepted
    assert first.to_dict()["status"] == "success"
    assert second.to_dict()["status"] == "skipped"
    assert len(log.documents) == 1


@pytest.mark.anyio
async def test_accepted_again_once_deadline_passes(clock: FakeClock) -> None:
    gate, log = make_gate(clock)

    await gate.submit(EVENT)
    clock.advance(5.0)
    again = await gate.submit(EVENT)

    assert again.accepted
    assert len(log.documents) == 2


@pytest.mark.anyio
async def test_rejection_does_not_extend_deadline(clock: FakeClock) -> None:
    gate, _ = make_gate(clock)

    await gate.submit(EVENT)
    clock.advance(4.0)
    assert not (await gate.submit(EVENT)).accepted
    clock.advance(1.0)

    assert (await gate.submit(EVENT)).accepted


@pytest.mark.anyio
async def test_key_covers_all_four_fields(clock: FakeClock) -> None:
    gate, log = make_gate(clock)

    await gate.submit(EVENT)
    for change in ({"eventType": "call"}, {"radioId": "99"}, {"talkgroupOrSource": "200"}, {"system": "butler"}):
        result = await gate.submit({**EVENT, **change})
        assert result.accepted, change

    assert len(log.documents) == 5


@pytest.mark.anyio
@pytest.mark.parametrize("missing", ["system", "radioId", "eventType"])
async def test_missing_required_field_is_invalid(clock: FakeClock, missing: str) -> None:
    gate, log = make_gate(clock)
    payload = {k: v for k, v in EVENT.items() if k != missing}

    with pytest.raises(InvalidEventError):
        await gate.submit(payload)
    assert log.documents == []


@pytest.mark.anyio
async def test_stored_event_is_normalized_and_stamped(clock: FakeClock) -> None:
    gate, log = make_gate(clock)

    await gate.submit({
        "systemShortName": "hamco",
        "radioID": 5551,
        "talkgroupOrSource": 100,
        "eventType": "CALL",
        "timestamp": "1999-01-01T00:00:00Z",
    })

    doc = log.documents[0]
    assert doc["system"] == "hamco"
    assert doc["radioId"] == "5551"
    assert doc["talkgroupOrSource"] == "100"
    assert doc["eventType"] == "call"
    # Producer timestamps are replaced by the ingestion time
    assert doc["timestamp"] != "1999-01-01T00:00:00Z"
    assert re.fullmatch(r"\d{4}-\d{2}-\d{2}T\d{2}:\d{2}:\d{2}Z", doc["timestamp"])


@pytest.mark.anyio
async def test_failed_append_releases_key(clock: FakeClock) -> None:
    gate, log = make_gate(clock)
    working_append = log.append

    async def broken_append(document: dict[str, Any]) -> None:
        raise StorageError("log unavailable")

    log.append = broken_append  # type: ignore[method-assign]
    with pytest.raises(StorageError):
        await gate.submit(EVENT)

    log.append = working_append  # type: ignore[method-assign]
    retry = await gate.submit(EVENT)

    assert retry.accepted
    assert len(log.documents) == 1


@pytest.mark.anyio
async def test_sweep_removes_only_expired_keys(clock: FakeClock) -> None:
    gate, _ = make_gate(clock)

    await gate.submit(EVENT)
    clock.advance(3.0)
    await gate.submit({**EVENT, "eventType": "call"})
    clock.advance(2.0)

    assert gate.sweep() == 1
    assert gate.get_stats()["trackedEvents"] == 1
    assert gate.sweep() == 0


@pytest.mark.anyio
async def test_stats_count_duplicates(clock: FakeClock) -> None:
    gate, _ = make_gate(clock)

    await gate.submit(EVENT)
    await gate.submit(EVENT)
    await gate.submit(EVENT)

    stats = gate.get_stats()
    assert stats["accepted"] == 1
    assert stats["duplicatesDetected"] == 2
