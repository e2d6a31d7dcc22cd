"""Tests for registry file watching and debouncing."""

from __future__ import annotations

import asyncio
from pathlib import Path

import pytest

from conftest import wait_until
from radiomonitor.registry import RegistryWatcher


class Recorder:
    def __init__(self) -> None:
        self.paths: list[Path] = []

    async def __call__(self, path: Path) -> None:
        self.paths.append(path)


@pytest.mark.anyio
async def test_burst_of_changes_fires_once(tmp_path: Path) -> None:
    recorder = Recorder()
    watcher = RegistryWatcher(debounce_s=0.05)
    watcher.watch(tmp_path, recorder, suffix=".csv")
    target = tmp_path / "hamco-talkgroups.csv"

    for _ in range(5):
        watcher.notify(target)
        await asyncio.sleep(0.01)
    await asyncio.sleep(0.15)

    assert recorder.paths == [target.resolve()]
    assert watcher.reloads == 1


@pytest.mark.anyio
async def test_each_path_is_debounced_separately(tmp_path: Path) -> None:
    recorder = Recorder()
    watcher = RegistryWatcher(debounce_s=0.02)
    watcher.watch(tmp_path, recorder, suffix=".csv")

    watcher.notify(tmp_path / "talkgroups.csv")
    watcher.notify(tmp_path / "hamco-talkgroups.csv")
    await wait_until(lambda: watcher.reloads == 2)

    assert sorted(p.name for p in recorder.paths) == ["hamco-talkgroups.csv", "talkgroups.csv"]


@pytest.mark.anyio
async def test_unrelated_and_temp_files_are_ignored(tmp_path: Path) -> None:
    recorder = Recorder()
    watcher = RegistryWatcher(debounce_s=0.01)
    watcher.watch(tmp_path, recorder, names={"system-alias.csv"})

    watcher.notify(tmp_path / "notes.txt")
    watcher.notify(tmp_path / ".system-alias.csv.abc123.tmp")
    watcher.notify(tmp_path / "other" / "system-alias.csv")
    await asyncio.sleep(0.05)

    assert recorder.paths == []


@pytest.mark.anyio
async def test_callback_errors_are_contained(tmp_path: Path) -> None:
    calls = 0

    async def broken(path: Path) -> None:
        nonlocal calls
        calls += 1
        raise OSError("permission denied")

    watcher = RegistryWatcher(debounce_s=0.01)
    watcher.watch(tmp_path, broken, suffix=".csv")

    watcher.notify(tmp_path / "talkgroups.csv")
    await wait_until(lambda: calls == 1)
    await asyncio.sleep(0.01)

    assert watcher.reloads == 0


@pytest.mark.anyio
async def test_observer_picks_up_file_writes(tmp_path: Path) -> None:
    recorder = Recorder()
    watcher = RegistryWatcher(debounce_s=0.05)
    watcher.watch(tmp_path, recorder, suffix=".csv")
    watcher.start()
    try:
        (tmp_path / "talkgroups.csv").write_text("Decimal,Alpha Tag\n", encoding="utf-8")
        await wait_until(lambda: watcher.reloads >= 1, timeout=5.0)
    finally:
        await watcher.stop()

    assert {p.name for p in recorder.paths} == {"talkgroups.csv"}
    assert not watcher.running
