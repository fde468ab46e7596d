"""Value types shared by the samplers, the state machine and the renderers.

Every snapshot field holds either a reading or one of two sentinels:
``Unavailable`` (the source was asked and failed) or ``Disabled`` (the
source was switched off in the settings and never asked). Both are falsy
so render code can write ``if snap.gpu:``.
"""

from __future__ import annotations

import re
from collections.abc import Mapping
from dataclasses import dataclass, field
from typing import TypeVar, Union

T = TypeVar("T")

_BUILD_SUFFIX = re.compile(r"-\d+$")


# ── Sentinels ──────────────────────────────────────────────────────────────


@dataclass(frozen=True, slots=True)
class Unavailable:
    """A source that was sampled this tick and produced nothing usable."""

    source: str
    reason: str = ""

    def __bool__(self) -> bool:
        return False


@dataclass(frozen=True, slots=True)
class Disabled:
    """A source skipped this tick because its settings toggle is off."""

    source: str

    def __bool__(self) -> bool:
        return False


Field = Union[T, Unavailable, Disabled]


# ── Host readings ──────────────────────────────────────────────────────────


@dataclass(frozen=True, slots=True)
class CpuReading:
    average: float
    per_core: tuple[float, ...] = ()


@dataclass(frozen=True, slots=True)
class MemoryReading:
    """Memory usage. ``used`` honours the cache policy; ``cached`` is always reported."""

    used: int
    total: int
    percent: float
    actual_used: int
    cached: int


@dataclass(frozen=True, slots=True)
class GpuReading:
    """Any sub-field may be None; a partial reading is still a reading."""

    model: str | None = None
    utilization: float | None = None
    frequency_mhz: int | None = None
    source: str = ""


@dataclass(frozen=True, slots=True)
class DiskReading:
    mount: str
    used: int
    total: int
    percent: float


@dataclass(frozen=True, slots=True)
class NetworkReading:
    """Cumulative counters plus derived per-second rates (None on the first tick)."""

    interface: str
    rx_bytes: int
    tx_bytes: int
    rx_sec: float | None = None
    tx_sec: float | None = None


@dataclass(frozen=True, slots=True)
class SystemInfo:
    distro: str
    release: str
    arch: str
    python: str

    def describe(self) -> str:
        return f"{self.distro} {self.release} ({self.arch}) Python {self.python}"


# ── External runtime ───────────────────────────────────────────────────────


@dataclass(frozen=True, slots=True)
class Session:
    key: str
    display_name: str = ""
    model: str | None = None
    channel: str | None = None
    total_tokens: int | None = None
    context_tokens: int | None = None
    updated_at: int | None = None  # epoch milliseconds
    percent_used: float | None = None
    agent_id: str | None = None

    @property
    def short_id(self) -> str:
        return self.key.split(":")[-1]


@dataclass(frozen=True, slots=True)
class Agent:
    id: str
    enabled: bool = True
    schedule: str | None = None
    bootstrap_pending: bool = False
    sessions_count: int = 0


@dataclass(frozen=True, slots=True)
class RuntimeStatus:
    """Parsed status document of the external runtime."""

    reachable: bool
    sessions: tuple[Session, ...] = ()
    agents: tuple[Agent, ...] = ()
    total_sessions: int = 0


@dataclass(frozen=True, slots=True)
class VersionInfo:
    current: str
    latest: str | None = None

    @property
    def clean(self) -> str:
        """Version with the trailing package build revision (``-<digits>``) removed."""
        return _BUILD_SUFFIX.sub("", self.current.strip())

    @property
    def update_available(self) -> bool:
        return (
            self.latest is not None
            and self.current != "unknown"
            and self.clean != self.latest
        )

    @property
    def is_latest(self) -> bool:
        return self.latest is not None and self.clean == self.latest


# ── Rates ──────────────────────────────────────────────────────────────────


@dataclass(frozen=True, slots=True)
class RateSample:
    """A cumulative counter value and the monotonic time (seconds) it was read."""

    value: float
    timestamp: float


@dataclass(frozen=True, slots=True)
class TokenThroughput:
    """Last positive tokens/sec for a session; ``active`` is False once it stops moving."""

    value: float
    active: bool = True


# ── Snapshot ───────────────────────────────────────────────────────────────


@dataclass(frozen=True, slots=True)
class Snapshot:
    """One tick's fully-merged data set. Never mutated once committed."""

    tick: int
    taken_at: float
    cpu: Field[CpuReading]
    memory: Field[MemoryReading]
    gpu: Field[GpuReading]
    disk: Field[DiskReading]
    network: Field[NetworkReading]
    system: Field[SystemInfo]
    runtime: Field[RuntimeStatus]
    version: Field[VersionInfo]
    sessions: tuple[Session, ...] = ()
    agents: tuple[Agent, ...] = ()
    reachable: bool = False
    throughput: Mapping[str, TokenThroughput] = field(default_factory=dict)
    logs: tuple[str, ...] = ()
    logs_stale: bool = False
    # Why the log field has no fresh lines this tick; None when it does.
    logs_status: Unavailable | Disabled | None = None
    history: Mapping[str, tuple[float, ...]] = field(default_factory=dict)

    def running_agents(self) -> frozenset[str]:
        """Agents whose freshest session is still producing tokens."""
        freshest: dict[str, Session] = {}
        for session in self.sessions:
            if session.agent_id is None:
                continue
            best = freshest.get(session.agent_id)
            if best is None or (session.updated_at or 0) > (best.updated_at or 0):
                freshest[session.agent_id] = session
        return frozenset(
            agent_id
            for agent_id, session in freshest.items()
            if (tp := self.throughput.get(session.key)) is not None and tp.active
        )
