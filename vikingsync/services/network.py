from __future__ import annotations

import asyncio
import inspect
import logging
import time
from typing import Awaitable, Callable

import httpx

from vikingsync.services.telemetry import increment_counter, set_gauge


logger = logging.getLogger(__name__)

Probe = Callable[[], Awaitable[bool]]
TransitionListener = Callable[[bool], Awaitable[None] | None]


def http_health_probe(backend_url: str, *, timeout_s: float = 5.0, client: httpx.AsyncClient | None = None) -> Probe:
    # The backend exposes /health; any 2xx means the upstream path is reachable.
    url = f"{backend_url.rstrip('/')}/health"

    async def _probe() -> bool:
        try:
            if client is not None:
                response = await client.get(url, timeout=timeout_s)
            else:
                async with httpx.AsyncClient(timeout=timeout_s) as owned:
                    response = await owned.get(url)
        except httpx.HTTPError as exc:
            logger.debug("network_probe_failed url=%s error=%s", url, exc)
            return False
        return response.is_success

    return _probe


class NetworkMonitor:
    """Single source of online/offline truth, polled before every upstream call."""

    def __init__(
        self,
        probe: Probe | None = None,
        *,
        probe_interval_s: float = 30.0,
        initial_online: bool = True,
        time_source: Callable[[], float] | None = None,
    ) -> None:
        self._probe = probe
        self._probe_interval_s = probe_interval_s
        self._time = time_source or time.monotonic
        self._online = initial_online
        self._checked_at: float | None = None
        self._listeners: list[TransitionListener] = []
        self._probe_lock = asyncio.Lock()

    @property
    def last_known_online(self) -> bool:
        return self._online

    async def is_online(self) -> bool:
        if self._probe is None:
            return self._online
        now = self._time()
        if self._checked_at is not None and (now - self._checked_at) < self._probe_interval_s:
            return self._online
        async with self._probe_lock:
            # Another caller may have refreshed while we waited.
            if self._checked_at is not None and (self._time() - self._checked_at) < self._probe_interval_s:
                return self._online
            try:
                online = bool(await self._probe())
            except Exception:  # noqa: BLE001 - a broken probe means we cannot prove connectivity
                logger.exception("network_probe_error")
                online = False
            self._checked_at = self._time()
        await self._apply(online)
        return online

    async def set_online(self, online: bool) -> None:
        # Platform connectivity signals push state here instead of waiting for the next probe.
        self._checked_at = self._time()
        await self._apply(online)

    def subscribe(self, listener: TransitionListener) -> Callable[[], None]:
        self._listeners.append(listener)

        def _unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return _unsubscribe

    async def _apply(self, online: bool) -> None:
        previous = self._online
        self._online = online
        set_gauge("network_online", 1.0 if online else 0.0)
        if previous == online:
            return
        logger.info("network_transition online=%s", online)
        increment_counter(f"network_transition_total.{'online' if online else 'offline'}")
        for listener in list(self._listeners):
            try:
                result = listener(online)
                if inspect.isawaitable(result):
                    await result
            except Exception:  # noqa: BLE001 - one bad subscriber must not starve the rest
                logger.exception("network_listener_failed")

    async def watch(self, interval_s: float, stop: asyncio.Event) -> None:
        # Background polling loop; cancelled or stopped by the owner.
        while not stop.is_set():
            self._checked_at = None
            await self.is_online()
            try:
                await asyncio.wait_for(stop.wait(), timeout=interval_s)
            except asyncio.TimeoutError:
                continue
