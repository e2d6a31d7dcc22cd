"""Shared pytest fixtures for radiomonitor tests."""

from __future__ import annotations

import asyncio
from collections.abc import Callable
from pathlib import Path

import pytest

from radiomonitor.config import AppConfig, LoggingConfig, RegistryConfig, StorageConfig


@pytest.fixture
def anyio_backend() -> str:
    return "asyncio"


class FakeClock:
    """Monotonic clock advanced by hand."""

    def __init__(self, start: float = 1000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def fake_sleep() -> tuple[list[float], Callable[[float], object]]:
    """Sleep replacement that records requested delays and only yields once."""
    delays: list[float] = []

    async def _sleep(seconds: float) -> None:
        delays.append(seconds)
        await asyncio.sleep(0)

    return delays, _sleep


@pytest.fixture
def app_config(tmp_path: Path) -> AppConfig:
    """In-memory storage, registries under tmp_path, no file watching."""
    return AppConfig(
        storage=StorageConfig(backend="memory"),
        registry=RegistryConfig(data_dir=str(tmp_path / "data"), watch=False),
        logging=LoggingConfig(level="warning", file=None),
    )


async def wait_until(predicate: Callable[[], bool], timeout: float = 2.0) -> None:
    """Poll ``predicate`` on the running loop until it holds."""
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not met in time")
        await asyncio.sleep(0.01)
