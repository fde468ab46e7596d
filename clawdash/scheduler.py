"""Periodic tick trigger with pause/resume and manual one-shot refreshes."""

from __future__ import annotations

import asyncio

from clawdash.log import get_logger
from clawdash.models import Snapshot
from clawdash.state import SnapshotStateMachine

logger = get_logger("scheduler")


class Scheduler:
    """Drives ``SnapshotStateMachine.tick`` on a fixed interval.

    Ticks never overlap: the periodic loop awaits each tick before sleeping
    again, and manual triggers are dropped by the machine while a tick is
    in flight. Pausing stops new periodic ticks without touching one that
    is already running; resuming waits a fresh full interval.
    """

    def __init__(self, machine: SnapshotStateMachine, interval: float) -> None:
        self._machine = machine
        self._interval = interval
        self._running = asyncio.Event()
        self._running.set()
        self._epoch = 0
        self._task: asyncio.Task[None] | None = None
        self._manual: set[asyncio.Task[Snapshot | None]] = set()

    @property
    def interval(self) -> float:
        return self._interval

    @interval.setter
    def interval(self, value: float) -> None:
        self._interval = max(0.1, float(value))
        self._epoch += 1
        logger.info("refresh interval set to %gs", self._interval)

    @property
    def paused(self) -> bool:
        return not self._running.is_set()

    def start(self) -> None:
        if self._task is None or self._task.done():
            self._task = asyncio.ensure_future(self._loop())

    async def stop(self) -> None:
        tasks = [t for t in (self._task, *self._manual) if t is not None]
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        self._task = None
        self._manual.clear()

    def pause(self) -> None:
        if self.paused:
            return
        self._running.clear()
        self._machine.pause()

    def resume(self) -> None:
        if not self.paused:
            return
        self._epoch += 1
        self._machine.resume()
        self._running.set()

    def toggle_pause(self) -> bool:
        if self.paused:
            self.resume()
        else:
            self.pause()
        return self.paused

    def trigger(self) -> asyncio.Task[Snapshot | None]:
        """Request an immediate one-shot tick (accepted while paused)."""
        task = asyncio.ensure_future(self._machine.tick())
        self._manual.add(task)
        task.add_done_callback(self._manual.discard)
        return task

    async def _sleep_interval(self) -> None:
        """Sleep one full interval, restarting if resumed or re-timed meanwhile."""
        while True:
            epoch = self._epoch
            await asyncio.sleep(self._interval)
            if epoch == self._epoch:
                return

    async def _loop(self) -> None:
        await self._machine.tick()
        while True:
            await self._sleep_interval()
            if self.paused:
                await self._running.wait()
                continue
            await self._machine.tick()
