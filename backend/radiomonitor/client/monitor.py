"""Async client for the radiomonitor HTTP API and broadcast stream."""

from __future__ import annotations

import asyncio
import json
import logging
from collections.abc import AsyncIterator, Awaitable, Callable, Mapping
from typing import Any

import aiohttp
import websockets
from websockets.exceptions import ConnectionClosed, InvalidHandshake

from radiomonitor.client.aggregator import TalkgroupAggregator

logger = logging.getLogger(__name__)

DEFAULT_BASE_URL = "http://localhost:8087"
MAX_RECONNECT_ATTEMPTS = 5
RECONNECT_DELAY_S = 5.0


class MonitorError(RuntimeError):
    """The server answered with an error status."""

    def __init__(self, status: int, detail: Any) -> None:
        super().__init__(f"HTTP {status}: {detail}")
        self.status = status
        self.detail = detail


class MonitorClient:
    """HTTP + WebSocket client.

    Example:
        async with MonitorClient("http://localhost:8087") as client:
            snapshot = await client.fetch_talkgroups()
            async for message in client.stream():
                ...
    """

    def __init__(
        self,
        base_url: str = DEFAULT_BASE_URL,
        session: aiohttp.ClientSession | None = None,
        timeout_s: float = 10.0,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self._session = session
        self._owns_session = session is None
        self._timeout = aiohttp.ClientTimeout(total=timeout_s)

    async def __aenter__(self) -> MonitorClient:
        return self

    async def __aexit__(self, *exc: Any) -> None:
        await self.close()

    async def close(self) -> None:
        if self._session is not None and self._owns_session:
            await self._session.close()
        self._session = None

    def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None:
            self._session = aiohttp.ClientSession(timeout=self._timeout)
        return self._session

    @property
    def stream_url(self) -> str:
        if self.base_url.startswith("https://"):
            root = "wss://" + self.base_url[len("https://"):]
        elif self.base_url.startswith("http://"):
            root = "ws://" + self.base_url[len("http://"):]
        else:
            root = self.base_url
        return f"{root}/api/v1/stream"

    async def _request(self, method: str, path: str, body: Mapping[str, Any] | None = None) -> Any:
        url = f"{self.base_url}/api/v1{path}"
        async with self._get_session().request(method, url, json=body) as resp:
            try:
                data = await resp.json()
            except aiohttp.ContentTypeError:
                data = await resp.text()
            if resp.status >= 400:
                detail = data.get("detail", data) if isinstance(data, dict) else data
                raise MonitorError(resp.status, detail)
            return data

    # ------------------------------------------------------------------
    # REST
    # ------------------------------------------------------------------

    async def submit_event(self, event: Mapping[str, Any]) -> dict[str, Any]:
        return await self._request("POST", "/event", event)

    async def fetch_talkgroups(self) -> dict[str, Any]:
        return await self._request("GET", "/talkgroups")

    async def reload_talkgroups(self) -> dict[str, Any]:
        return await self._request("POST", "/talkgroups/reload")

    async def update_talkgroup(self, decimal: str, fields: Mapping[str, Any]) -> dict[str, Any]:
        return await self._request("POST", f"/talkgroups/{decimal}", fields)

    async def fetch_talkgroup_history(self, decimal: str) -> dict[str, Any]:
        return await self._request("GET", f"/talkgroups/{decimal}/history")

    async def fetch_history(self, duration: str) -> list[dict[str, Any]]:
        return await self._request("GET", f"/history/{duration}")

    async def fetch_systems(self) -> list[dict[str, str]]:
        return await self._request("GET", "/systems")

    async def get_alias(self, short_name: str) -> str:
        data = await self._request("GET", f"/systems/{short_name}/alias")
        return str(data["alias"])

    async def set_alias(self, short_name: str, alias: str) -> str:
        data = await self._request("PUT", f"/systems/{short_name}/alias", {"alias": alias})
        return str(data["alias"])

    async def fetch_status(self) -> dict[str, Any]:
        return await self._request("GET", "/status")

    # ------------------------------------------------------------------
    # Stream
    # ------------------------------------------------------------------

    async def stream(
        self,
        max_reconnects: int = MAX_RECONNECT_ATTEMPTS,
        reconnect_delay_s: float = RECONNECT_DELAY_S,
    ) -> AsyncIterator[dict[str, Any]]:
        """Yield broadcast messages, reconnecting when the connection drops.

        Each (re)connection first yields ``{"type": "connected", "reconnect":
        bool}`` so callers can re-sync state missed while disconnected. Gives
        up after ``max_reconnects`` consecutive failed attempts.
        """
        attempts = 0
        connected_before = False
        while True:
            try:
                async with websockets.connect(self.stream_url) as ws:
                    attempts = 0
                    yield {"type": "connected", "reconnect": connected_before}
                    connected_before = True
                    async for raw in ws:
                        try:
                            message = json.loads(raw)
                        except ValueError:
                            logger.warning(f"Ignoring non-JSON stream message: {raw!r}")
                            continue
                        if isinstance(message, dict):
                            yield message
                logger.warning("Stream connection closed by server")
            except ConnectionClosed as e:
                if e.rcvd is not None and e.rcvd.code == 1013:
                    logger.warning("Stream dropped because this client fell behind")
                else:
                    logger.warning(f"Stream connection lost: {e}")
            except (OSError, InvalidHandshake) as e:
                logger.warning(f"Stream connection failed: {e}")

            attempts += 1
            if attempts > max_reconnects:
                logger.error(f"Giving up on stream after {max_reconnects} reconnect attempts")
                return
            logger.info(f"Reconnecting to stream in {reconnect_delay_s}s ({attempts}/{max_reconnects})")
            await asyncio.sleep(reconnect_delay_s)


class LiveMonitor:
    """Keeps a TalkgroupAggregator in sync with a server.

    Loads metadata, optionally backfills history, then applies live events.
    Control messages trigger a metadata re-fetch; a reconnect triggers a
    full re-sync because events may have been missed.
    """

    def __init__(
        self,
        client: MonitorClient,
        aggregator: TalkgroupAggregator | None = None,
        history_duration: str | None = None,
        on_update: Callable[[], Awaitable[None] | None] | None = None,
    ) -> None:
        self.client = client
        self.aggregator = aggregator if aggregator is not None else TalkgroupAggregator()
        self.history_duration = history_duration
        self._on_update = on_update
        self.systems: list[dict[str, str]] = []

    async def refresh_metadata(self) -> None:
        self.aggregator.set_metadata(await self.client.fetch_talkgroups())
        self.systems = await self.client.fetch_systems()

    async def sync(self) -> None:
        await self.refresh_metadata()
        if self.history_duration:
            events = await self.client.fetch_history(self.history_duration)
            await self.aggregator.load_history(events)

    async def _notify(self) -> None:
        if self._on_update is None:
            return
        result = self._on_update()
        if asyncio.iscoroutine(result):
            await result

    async def handle_message(self, message: Mapping[str, Any]) -> None:
        kind = message.get("type")
        if kind == "radioEvent":
            event = message.get("event")
            if isinstance(event, Mapping):
                self.aggregator.handle_event(event)
        elif kind == "control":
            logger.info(f"Registry changed ({message.get('event')}), refreshing metadata")
            await self.refresh_metadata()
        elif kind == "connected" and message.get("reconnect"):
            await self.sync()
        await self._notify()

    async def run(self) -> None:
        await self.sync()
        await self._notify()
        async for message in self.client.stream():
            await self.handle_message(message)
