"""Offline/online state monitor.

The monitor is the single source of truth for connectivity.  Going offline
sets an ``asyncio.Event`` that in-flight fetches race against, so they are
abandoned immediately instead of waiting out their timeouts.  Going online
schedules the registered warm-up coroutines as background tasks; they never
delay the caller that reported the transition.
"""

from __future__ import annotations

import asyncio
import logging
from enum import Enum
from typing import Awaitable, Callable, List, Optional, Set


class ConnectivityState(Enum):
    """Connectivity as last reported to the monitor."""

    ONLINE = "online"
    OFFLINE = "offline"


class ConnectivityMonitor:
    """Tracks connectivity transitions and notifies interested components."""

    def __init__(self, online: bool = True) -> None:
        self.logger = logging.getLogger(self.__class__.__name__)
        self._online = online
        self._offline_event = asyncio.Event()
        if not online:
            self._offline_event.set()
        self._listeners: List[Callable[[ConnectivityState], None]] = []
        self._warmups: List[Callable[[], Awaitable[object]]] = []
        self._tasks: Set[asyncio.Task] = set()
        self._watch_task: Optional[asyncio.Task] = None

    @property
    def is_online(self) -> bool:
        return self._online

    @property
    def state(self) -> ConnectivityState:
        return ConnectivityState.ONLINE if self._online else ConnectivityState.OFFLINE

    def add_listener(self, callback: Callable[[ConnectivityState], None]) -> None:
        """Register a synchronous callback invoked on every transition."""
        self._listeners.append(callback)

    def add_warmup(self, warmup: Callable[[], Awaitable[object]]) -> None:
        """Register a coroutine function run in the background when going online."""
        self._warmups.append(warmup)

    def set_online(self, online: bool) -> bool:
        """Report the current connectivity.

        Returns:
            True if this call changed the state
        """
        if online == self._online:
            return False

        self._online = online
        if online:
            self._offline_event.clear()
            self.logger.info("Connection restored")
        else:
            self._offline_event.set()
            self.logger.warning("Connection lost, serving from cache")

        state = self.state
        for callback in list(self._listeners):
            try:
                callback(state)
            except Exception as e:
                self.logger.error("Connectivity listener failed: %s", e, exc_info=True)

        if online:
            self._schedule_warmups()
        return True

    def mark_online(self) -> bool:
        return self.set_online(True)

    def mark_offline(self) -> bool:
        return self.set_online(False)

    def _schedule_warmups(self) -> None:
        if not self._warmups:
            return
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            self.logger.debug("No running event loop, skipping warm-up")
            return
        for warmup in self._warmups:
            task = loop.create_task(self._run_warmup(warmup))
            self._tasks.add(task)
            task.add_done_callback(self._tasks.discard)

    async def _run_warmup(self, warmup: Callable[[], Awaitable[object]]) -> None:
        name = getattr(warmup, "__qualname__", repr(warmup))
        try:
            await warmup()
            self.logger.debug("Warm-up %s finished", name)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            self.logger.warning("Warm-up %s failed: %s", name, e)

    @property
    def pending_warmups(self) -> int:
        return len(self._tasks)

    async def wait_warmups(self) -> None:
        """Wait for every scheduled warm-up task to finish."""
        if self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    async def wait_offline(self) -> None:
        """Return as soon as the monitor reports offline."""
        await self._offline_event.wait()

    async def watch(
        self,
        check: Callable[[], Awaitable[bool]],
        interval: float = 30.0,
    ) -> None:
        """Poll ``check`` every ``interval`` seconds and feed the result in.

        A check that raises counts as offline.  Runs until cancelled.
        """
        self.logger.info("Connectivity watch started (interval: %.0fs)", interval)
        while True:
            try:
                online = bool(await check())
            except asyncio.CancelledError:
                raise
            except Exception as e:
                self.logger.debug("Connectivity check failed: %s", e)
                online = False
            self.set_online(online)
            await asyncio.sleep(interval)

    def start_watch(self, check: Callable[[], Awaitable[bool]], interval: float = 30.0) -> None:
        """Run ``watch`` as a background task owned by the monitor."""
        if self._watch_task is not None and not self._watch_task.done():
            self.logger.warning("Connectivity watch is already running")
            return
        self._watch_task = asyncio.create_task(self.watch(check, interval))

    async def close(self) -> None:
        """Cancel the watch task and any warm-up still running."""
        tasks = list(self._tasks)
        if self._watch_task is not None:
            tasks.append(self._watch_task)
            self._watch_task = None
        for task in tasks:
            task.cancel()
        for task in tasks:
            try:
                await task
            except asyncio.CancelledError:
                pass
        self._tasks.clear()
