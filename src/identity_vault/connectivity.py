"""Online/offline signal sources consumed by the offline mutation queue."""

from __future__ import annotations

import asyncio
import contextlib
import logging
from collections.abc import Callable
from typing import Protocol

import httpx

_logger = logging.getLogger(__name__)

ConnectivityCallback = Callable[[bool], None]
Unsubscribe = Callable[[], None]


class ConnectivityObserver(Protocol):
    """Anything that can report reachability and announce transitions."""

    def is_online(self) -> bool: ...

    def subscribe(self, callback: ConnectivityCallback) -> Unsubscribe: ...


class _Subscribers:
    def __init__(self) -> None:
        self._callbacks: list[ConnectivityCallback] = []

    def add(self, callback: ConnectivityCallback) -> Unsubscribe:
        self._callbacks.append(callback)

        def unsubscribe() -> None:
            with contextlib.suppress(ValueError):
                self._callbacks.remove(callback)

        return unsubscribe

    def notify(self, online: bool) -> None:
        for callback in list(self._callbacks):
            try:
                callback(online)
            except Exception:
                _logger.exception("connectivity.callback_failed", extra={"online": online})

    def __len__(self) -> int:
        return len(self._callbacks)


class ManualConnectivity:
    """Observer whose state is set explicitly by the embedding application."""

    def __init__(self, online: bool = True) -> None:
        self._online = online
        self._subscribers = _Subscribers()

    def is_online(self) -> bool:
        return self._online

    def subscribe(self, callback: ConnectivityCallback) -> Unsubscribe:
        return self._subscribers.add(callback)

    def set_online(self, online: bool) -> None:
        if online == self._online:
            return
        self._online = online
        self._subscribers.notify(online)


class HttpConnectivityProbe:
    """Poll a health endpoint and report transitions.

    A response below 500 counts as reachable; a transport error or timeout as
    offline. Subscribers are notified only when the state flips.
    """

    def __init__(
        self,
        url: str,
        *,
        interval_seconds: float = 30.0,
        timeout_seconds: float = 5.0,
        transport: httpx.AsyncBaseTransport | None = None,
        initial: bool = True,
    ) -> None:
        if not url:
            raise ValueError("probe url must not be empty")
        self._url = url
        self._interval = max(0.1, float(interval_seconds))
        self._timeout = float(timeout_seconds)
        self._transport = transport
        self._online = initial
        self._subscribers = _Subscribers()
        self._task: asyncio.Task[None] | None = None

    def is_online(self) -> bool:
        return self._online

    def subscribe(self, callback: ConnectivityCallback) -> Unsubscribe:
        return self._subscribers.add(callback)

    async def check(self) -> bool:
        """Probe once, update the state and return it."""
        try:
            async with httpx.AsyncClient(transport=self._transport, timeout=self._timeout) as client:
                response = await client.get(self._url)
            online = response.status_code < 500
        except httpx.HTTPError as exc:
            _logger.debug("connectivity.probe_failed", extra={"url": self._url, "error": str(exc)[:200]})
            online = False
        if online != self._online:
            self._online = online
            _logger.info("connectivity.changed", extra={"url": self._url, "online": online})
            self._subscribers.notify(online)
        return online

    async def _run(self) -> None:
        while True:
            await self.check()
            await asyncio.sleep(self._interval)

    def start(self) -> None:
        if self._task is None or self._task.done():
            self._task = asyncio.create_task(self._run())

    async def stop(self) -> None:
        task, self._task = self._task, None
        if task is None:
            return
        task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await task
