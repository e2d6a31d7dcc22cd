"""Tests for the change feed consumer."""

from __future__ import annotations

from pathlib import Path
from typing import Any

import pytest

from conftest import wait_until
from radiomonitor.broadcaster import EventBroadcaster, EventEnricher, Subscription
from radiomonitor.config import StorageConfig
from radiomonitor.consumer import ChangeConsumer, ConsumerState, StartupError
from radiomonitor.events import ControlEvent
from radiomonitor.registry import SystemAliasRegistry, TalkgroupRegistry
from radiomonitor.storage import FeedError, MemoryEventLog


def event(radio_id: str, talkgroup: str = "100", system: str = "hamco") -> dict[str, Any]:
    return {
        "system": system,
        "radioId": radio_id,
        "talkgroupOrSource": talkgroup,
        "eventType": "call",
        "timestamp": "2026-01-01T00:00:00Z",
    }


class Harness:
    def __init__(self, tmp_path: Path, sleep: Any, log: MemoryEventLog | None = None, **cfg: Any) -> None:
        self.log = log or MemoryEventLog()
        self.talkgroups = TalkgroupRegistry(tmp_path / "talkgroups")
        self.aliases = SystemAliasRegistry(tmp_path / "system-alias.csv")
        self.broadcaster = EventBroadcaster(EventEnricher(self.talkgroups, self.aliases))
        self.consumer = ChangeConsumer(
            self.log,
            self.talkgroups,
            self.aliases,
            self.broadcaster,
            StorageConfig(backend="memory", **cfg),
            sleep=sleep,
        )

    async def close(self) -> None:
        await self.consumer.stop()
        await self.talkgroups.flush()
        await self.aliases.flush()


def received(sub: Subscription) -> list[dict[str, Any]]:
    messages = []
    while not sub.queue.empty():
        message = sub.queue.get_nowait()
        if message is not None:
            messages.append(message)
    return messages


@pytest.mark.anyio
async def test_connect_gives_up_after_retry_budget(tmp_path: Path, fake_sleep) -> None:
    delays, sleep = fake_sleep
    h = Harness(tmp_path, sleep, connect_retries=5)
    h.log.fail_connects = 10

    with pytest.raises(StartupError):
        await h.consumer.connect()

    assert h.log.connect_attempts == 5
    assert delays == [2, 4, 8, 10]
    assert h.consumer.state == ConsumerState.DISCONNECTED


@pytest.mark.anyio
async def test_connect_recovers_within_budget(tmp_path: Path, fake_sleep) -> None:
    delays, sleep = fake_sleep
    h = Harness(tmp_path, sleep)
    h.log.fail_connects = 2

    await h.consumer.connect()

    assert h.log.connect_attempts == 3
    assert delays == [2, 4]


@pytest.mark.anyio
async def test_wait_for_primary_times_out_at_startup(tmp_path: Path, fake_sleep) -> None:
    delays, sleep = fake_sleep
    h = Harness(
        tmp_path,
        sleep,
        log=MemoryEventLog(writable_primary=False),
        primary_poll_interval_s=2,
        primary_wait_timeout_s=6,
    )

    with pytest.raises(StartupError):
        await h.consumer.start()

    assert delays == [2, 2, 2]
    assert h.consumer.state == ConsumerState.WAITING_FOR_PRIMARY


@pytest.mark.anyio
async def test_events_are_provisioned_and_broadcast(tmp_path: Path, fake_sleep) -> None:
    _, sleep = fake_sleep
    h = Harness(tmp_path, sleep)
    sub = h.broadcaster.subscribe()
    await h.consumer.start()
    await wait_until(lambda: h.consumer.state == ConsumerState.WATCHING)
    try:
        await h.log.append(event("1"))
        await h.log.append(event("2"))
        await wait_until(lambda: h.consumer.processed == 2)
    finally:
        await h.close()

    messages = received(sub)
    assert messages[0] == {"type": "control", "event": ControlEvent.SYSTEMS_UPDATED.value}
    radio_events = [m["event"] for m in messages if m["type"] == "radioEvent"]
    assert [e["radioId"] for e in radio_events] == ["1", "2"]
    # Placeholder metadata is attached as soon as the talkgroup is provisioned
    assert radio_events[0]["talkgroupInfo"]["alphaTag"] == "Talkgroup 100"
    assert radio_events[0]["systemInfo"] == {"shortName": "hamco", "displayName": "Ham"}
    assert h.talkgroups.get("hamco", "100").unknown
    assert "hamco,Ham" in (tmp_path / "system-alias.csv").read_text(encoding="utf-8")
    assert "Talkgroup 100" in (tmp_path / "talkgroups" / "hamco-talkgroups.csv").read_text(encoding="utf-8")


@pytest.mark.anyio
async def test_reconnect_after_feed_closure_loses_and_repeats_nothing(tmp_path: Path, fake_sleep) -> None:
    delays, sleep = fake_sleep
    h = Harness(tmp_path, sleep, feed_cooldown_s=5)
    sub = h.broadcaster.subscribe()
    await h.consumer.start()
    await wait_until(lambda: h.consumer.state == ConsumerState.WATCHING)
    try:
        await h.log.append(event("1"))
        await wait_until(lambda: h.consumer.processed == 1)

        h.log.close_feeds()
        await h.log.append(event("2"))
        await h.log.append(event("3"))
        await wait_until(lambda: h.consumer.processed == 3)
    finally:
        await h.close()

    radio_ids = [m["event"]["radioId"] for m in received(sub) if m["type"] == "radioEvent"]
    assert radio_ids == ["1", "2", "3"]
    assert h.consumer.reconnects == 1
    assert h.log.watch_calls == 2
    assert 5 in delays


@pytest.mark.anyio
async def test_feed_error_is_recovered(tmp_path: Path, fake_sleep) -> None:
    _, sleep = fake_sleep
    h = Harness(tmp_path, sleep)
    await h.consumer.start()
    await wait_until(lambda: h.consumer.state == ConsumerState.WATCHING)
    try:
        await h.log.append(event("1"))
        await wait_until(lambda: h.consumer.processed == 1)

        h.log.fail_feeds(RuntimeError("cursor killed"))
        await h.log.append(event("2"))
        await wait_until(lambda: h.consumer.processed == 2)
        await wait_until(lambda: h.consumer.state == ConsumerState.WATCHING)
    finally:
        await h.close()

    assert h.consumer.reconnects == 1
    assert h.consumer.state == ConsumerState.STOPPED


@pytest.mark.anyio
async def test_reopen_failure_keeps_retrying(tmp_path: Path, fake_sleep) -> None:
    _, sleep = fake_sleep
    h = Harness(tmp_path, sleep)
    await h.consumer.start()
    await wait_until(lambda: h.consumer.state == ConsumerState.WATCHING)
    original_watch = h.log.watch
    failures = 0

    async def flaky_watch(resume_after: Any = None) -> Any:
        nonlocal failures
        if failures < 2:
            failures += 1
            raise FeedError("not primary")
        return await original_watch(resume_after)

    try:
        await h.log.append(event("1"))
        await wait_until(lambda: h.consumer.processed == 1)

        h.log.watch = flaky_watch  # type: ignore[method-assign]
        h.log.close_feeds()
        await h.log.append(event("2"))
        await wait_until(lambda: h.consumer.processed == 2)
    finally:
        await h.close()

    assert failures == 2
    assert h.consumer.reconnects == 3


@pytest.mark.anyio
async def test_systems_updated_sent_once_per_new_system(tmp_path: Path, fake_sleep) -> None:
    _, sleep = fake_sleep
    h = Harness(tmp_path, sleep)
    sub = h.broadcaster.subscribe()

    h.consumer.handle_document(event("1"))
    h.consumer.handle_document(event("2"))
    h.consumer.handle_document(event("3", system="butler"))
    await h.close()

    controls = [m for m in received(sub) if m["type"] == "control"]
    assert len(controls) == 2


@pytest.mark.anyio
async def test_malformed_document_is_skipped(tmp_path: Path, fake_sleep) -> None:
    _, sleep = fake_sleep
    h = Harness(tmp_path, sleep)

    assert h.consumer.handle_document({"system": "hamco", "radioId": "1"}) is None
    await h.close()

    assert h.consumer.skipped == 1
    assert h.consumer.processed == 0
