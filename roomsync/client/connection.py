# roomsync/client/connection.py
from __future__ import annotations

import asyncio
import logging
from typing import Optional

import httpx

from roomsync.client.api_client import MeetingApiClient
from roomsync.client.events import CONNECTION_LOST, CONNECTION_RESTORED, EventBus, spawn
from roomsync.client.storage import KeyValueStore

logger = logging.getLogger(__name__)

SERVER_IP_KEY = "serverIP"
DEFAULT_PORT = 3000


def build_fallback_urls(current_base: str, server_ip: Optional[str] = None) -> list[str]:
    """
    Ordered fallback API base URLs, excluding `current_base`.

    1. same scheme and host without a port
    2. `http://localhost:3000/api`
    3. the stored server IP on port 3000, when one is configured
    """
    candidates: list[str] = []
    try:
        url = httpx.URL(current_base)
        if url.host:
            candidates.append(f"{url.scheme}://{url.host}/api")
    except httpx.InvalidURL:
        pass
    candidates.append(f"http://localhost:{DEFAULT_PORT}/api")
    if server_ip:
        candidates.append(f"http://{server_ip}:{DEFAULT_PORT}/api")

    current = current_base.rstrip("/")
    urls: list[str] = []
    for candidate in candidates:
        if candidate != current and candidate not in urls:
            urls.append(candidate)
    return urls


class ConnectionProber:
    """
    Tracks whether the meetings service is reachable.

    State starts unknown (`connected is None`). Each `check()` fetches the
    list once with a short deadline:

    - success: the failure count resets; coming back from a lost state
      emits `connectionRestored`.
    - failure: the failure count grows; leaving a connected or unknown
      state emits `connectionLost`. After `max_failures` consecutive
      failures the fallback base URLs are tried in order and the first
      that answers is adopted. If none answers the count resets.

    The loop started by `start()` waits `interval` between checks while
    connected and `fast_interval` otherwise.
    """

    def __init__(
        self,
        api: MeetingApiClient,
        bus: EventBus,
        storage: Optional[KeyValueStore] = None,
        interval: float = 30.0,
        fast_interval: float = 5.0,
        timeout: float = 10.0,
        max_failures: int = 3,
    ) -> None:
        self.api = api
        self.bus = bus
        self.storage = storage or KeyValueStore()
        self.interval = interval
        self.fast_interval = fast_interval
        self.timeout = timeout
        self.max_failures = max_failures

        self.connected: Optional[bool] = None
        self.failure_count = 0
        self._task: Optional[asyncio.Task] = None

    @property
    def next_delay(self) -> float:
        return self.interval if self.connected else self.fast_interval

    def fallback_urls(self) -> list[str]:
        return build_fallback_urls(self.api.base_url, self.storage.get(SERVER_IP_KEY))

    def set_server_ip(self, server_ip: Optional[str]) -> None:
        if server_ip:
            self.storage.set(SERVER_IP_KEY, server_ip)
        else:
            self.storage.delete(SERVER_IP_KEY)

    def mark_connected(self) -> None:
        was = self.connected
        self.connected = True
        self.failure_count = 0
        if was is False:
            logger.info("Connected to API server at %s", self.api.base_url)
            self.bus.emit(CONNECTION_RESTORED, {"baseUrl": self.api.base_url})

    def mark_degraded(self, error: str) -> None:
        was = self.connected
        self.connected = False
        self.failure_count += 1
        if was is not False:
            logger.warning("API connection lost: %s", error)
            self.bus.emit(
                CONNECTION_LOST, {"error": error, "retryCount": self.failure_count}
            )

    async def check(self) -> bool:
        if await self.api.probe(timeout=self.timeout):
            self.mark_connected()
            return True

        self.mark_degraded(f"Server at {self.api.base_url} did not answer")
        if self.failure_count >= self.max_failures:
            return await self.try_alternatives()
        return False

    async def try_alternatives(self) -> bool:
        for url in self.fallback_urls():
            if await self.api.probe(url, timeout=self.timeout):
                logger.info("Alternative connection successful: %s", url)
                self.api.base_url = url
                self.mark_connected()
                return True
            logger.warning("Alternative connection failed for %s", url)

        self.failure_count = 0
        return False

    async def _run(self) -> None:
        while True:
            try:
                await self.check()
            except asyncio.CancelledError:
                raise
            except Exception:
                logger.exception("Connection check failed")
            await asyncio.sleep(self.next_delay)

    def start(self) -> None:
        if self._task is None or self._task.done():
            self._task = spawn(self._run(), name="connection-prober")

    async def stop(self) -> None:
        if self._task is not None:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
