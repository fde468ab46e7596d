"""Snapshot state machine: one refresh cycle from parallel fetch to render.

The machine owns the committed snapshot, the token throughput map and the
history buffers. A tick either commits a complete snapshot or commits
nothing; in the latter case whatever was rendered last stays on screen.
"""

from __future__ import annotations

import asyncio
import time
from collections.abc import Callable, Mapping
from enum import Enum
from types import MappingProxyType
from typing import Any

from clawdash.config import Settings
from clawdash.errors import RenderError
from clawdash.history import CPU_HISTORY, MEMORY_HISTORY, NETWORK_HISTORY, HistoryBuffer
from clawdash.log import get_logger
from clawdash.models import (
    CpuReading,
    Disabled,
    MemoryReading,
    NetworkReading,
    RuntimeStatus,
    Snapshot,
    Unavailable,
)
from clawdash.rates import update_throughput
from clawdash.samplers import TOGGLES, Sampler

logger = get_logger("state")

RenderSink = Callable[[Snapshot], None]


class Phase(str, Enum):
    IDLE = "idle"
    SAMPLING = "sampling"
    DERIVING = "deriving"
    COMMITTING = "committing"
    RENDERING = "rendering"


class SnapshotStateMachine:
    """Runs ticks: Idle → Sampling → Deriving → Committing → Rendering → Idle.

    ``paused`` is orthogonal to the phase: it only tells the scheduler to
    stop issuing periodic ticks. Manual ticks are accepted while paused.
    A tick requested while another is in flight is skipped.
    """

    def __init__(
        self,
        samplers: Mapping[str, Sampler[Any]],
        settings: Settings,
        sink: RenderSink | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._samplers = dict(samplers)
        self.settings = settings
        self._sink = sink
        self._clock = clock

        self.phase = Phase.IDLE
        self.paused = False
        self.ticks = 0

        self._committed: Snapshot | None = None
        self._last_tick_time: float | None = None
        self._history: dict[str, HistoryBuffer] = {
            "cpu": HistoryBuffer(CPU_HISTORY),
            "memory": HistoryBuffer(MEMORY_HISTORY),
            "net_rx": HistoryBuffer(NETWORK_HISTORY),
            "net_tx": HistoryBuffer(NETWORK_HISTORY),
        }

    @property
    def snapshot(self) -> Snapshot | None:
        """The last committed snapshot."""
        return self._committed

    @property
    def busy(self) -> bool:
        return self.phase is not Phase.IDLE

    def pause(self) -> None:
        self.paused = True
        logger.info("paused")

    def resume(self) -> None:
        self.paused = False
        logger.info("resumed")

    def set_sink(self, sink: RenderSink | None) -> None:
        self._sink = sink

    # ── Cycle ──────────────────────────────────────────────────────────

    async def tick(self) -> Snapshot | None:
        """Run one refresh cycle. Returns the committed snapshot, or None.

        None means the tick was skipped (another one is in flight) or
        aborted by an unexpected error; the previous snapshot is untouched.
        """
        if self.busy:
            logger.debug("tick skipped: %s in progress", self.phase.value)
            return None
        try:
            now = self._clock()
            elapsed_ms = (
                (now - self._last_tick_time) * 1000.0 if self._last_tick_time is not None else 0.0
            )

            self.phase = Phase.SAMPLING
            results = await self._sample_all()

            self.phase = Phase.DERIVING
            snapshot = self._derive(results, now, elapsed_ms)

            self.phase = Phase.COMMITTING
            self._commit_history(snapshot)
            self._committed = snapshot
            self._last_tick_time = now
            self.ticks = snapshot.tick

            self.phase = Phase.RENDERING
            self._render(snapshot)
            return snapshot
        except Exception:
            logger.exception("tick aborted; keeping previous snapshot")
            return None
        finally:
            self.phase = Phase.IDLE

    async def _sample_all(self) -> dict[str, Any]:
        """Fire every enabled sampler at once and wait for all of them."""
        timeout = self.settings.command_timeout
        results: dict[str, Any] = {}
        pending: dict[str, asyncio.Task[Any]] = {}

        for name, sampler in self._samplers.items():
            toggle = TOGGLES.get(name)
            if toggle is not None and not getattr(self.settings, toggle):
                results[name] = Disabled(name)
                continue
            pending[name] = asyncio.ensure_future(sampler.sample(timeout))

        outcomes = await asyncio.gather(*pending.values(), return_exceptions=True)
        for name, outcome in zip(pending, outcomes):
            if isinstance(outcome, BaseException):
                if isinstance(outcome, asyncio.CancelledError):
                    raise outcome
                logger.warning("%s sampler raised past its boundary: %r", name, outcome)
                outcome = Unavailable(name, type(outcome).__name__)
            results[name] = outcome
        return results

    def _derive(self, results: dict[str, Any], now: float, elapsed_ms: float) -> Snapshot:
        previous = self._committed

        def field(name: str) -> Any:
            return results.get(name, Disabled(name))

        # Runtime connectivity fails closed: no stale sessions or agents.
        runtime = field("runtime")
        if isinstance(runtime, RuntimeStatus):
            reachable = runtime.reachable
            sessions = runtime.sessions
            agents = runtime.agents
            from_file = results.get("sessions_file")
            if isinstance(from_file, tuple):
                sessions = from_file
        else:
            reachable, sessions, agents = False, (), ()

        throughput = update_throughput(
            sessions,
            previous.sessions if previous is not None else (),
            previous.throughput if previous is not None else {},
            elapsed_ms,
        )

        # A failed log fetch keeps the lines already on screen.
        logs = field("logs")
        logs_stale = False
        if isinstance(logs, tuple):
            log_lines = logs
        elif isinstance(logs, Unavailable) and previous is not None:
            log_lines, logs_stale = previous.logs, True
        else:
            log_lines = ()
        logs_status = logs if isinstance(logs, (Unavailable, Disabled)) else None

        history = self._next_history(field("cpu"), field("memory"), field("network"))

        return Snapshot(
            tick=(previous.tick + 1) if previous is not None else 1,
            taken_at=now,
            cpu=field("cpu"),
            memory=field("memory"),
            gpu=field("gpu"),
            disk=field("disk"),
            network=field("network"),
            system=field("system"),
            runtime=runtime,
            version=field("version"),
            sessions=sessions,
            agents=agents,
            reachable=reachable,
            throughput=MappingProxyType(throughput),
            logs=log_lines,
            logs_stale=logs_stale,
            logs_status=logs_status,
            history=MappingProxyType(history),
        )

    def _next_history(self, cpu: Any, memory: Any, network: Any) -> dict[str, tuple[float, ...]]:
        """Windows after this tick's samples; a missing reading repeats the last value.

        The buffers themselves only advance in ``_commit_history``.
        """
        cpu_hist = self._history["cpu"]
        mem_hist = self._history["memory"]
        samples = {
            "cpu": cpu.average if isinstance(cpu, CpuReading) else cpu_hist.latest(),
            "memory": memory.percent if isinstance(memory, MemoryReading) else mem_hist.latest(),
            "net_rx": 0.0,
            "net_tx": 0.0,
        }
        if isinstance(network, NetworkReading):
            samples["net_rx"] = network.rx_sec or 0.0
            samples["net_tx"] = network.tx_sec or 0.0
        return {name: self._history[name].preview(value) for name, value in samples.items()}

    def _commit_history(self, snapshot: Snapshot) -> None:
        for name, values in snapshot.history.items():
            self._history[name].push(values[-1])

    def _render(self, snapshot: Snapshot) -> None:
        if self._sink is None:
            return
        try:
            self._sink(snapshot)
        except (RenderError, OSError) as e:
            logger.warning("render failed, will retry next tick: %s", e)
