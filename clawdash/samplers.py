"""Samplers: one failure-isolated fetch unit per data source.

Every sampler exposes ``await sampler.sample(timeout)`` which returns a
reading or ``Unavailable`` and never raises. Host metrics go through a
``HostMetricsProvider`` port (psutil by default); the external runtime is
queried through its CLI with ``asyncio`` subprocesses, and the latest
release through a single aiohttp GET.
"""

from __future__ import annotations

import asyncio
import json
import platform
import re
import sys
import time
from abc import ABC, abstractmethod
from collections.abc import Awaitable, Callable
from pathlib import Path
from typing import Any, Generic, NamedTuple, TypeVar

import aiohttp
import psutil
import pynvml

from clawdash.config import Settings
from clawdash.errors import (
    CommandError,
    CommandTimeout,
    SamplerError,
    SessionsFileCorrupt,
    SessionsFileError,
)
from clawdash.log import get_logger
from clawdash.logfeed import tail
from clawdash.models import (
    CpuReading,
    DiskReading,
    GpuReading,
    MemoryReading,
    NetworkReading,
    RateSample,
    RuntimeStatus,
    Session,
    SystemInfo,
    Unavailable,
    VersionInfo,
)
from clawdash.rates import NETWORK_MIN_ELAPSED_MS, sample_rate
from clawdash.runtime import load_sessions_file, parse_release_tag, parse_status

logger = get_logger("samplers")

T = TypeVar("T")

REMOTE_TIMEOUT = 3.0
GPU_PROBE_TIMEOUT = 3.0
# Share of the field timeout the GPU chain may spend; the rest is headroom
# so partial readings are returned before the outer deadline fires.
GPU_CHAIN_SHARE = 0.8

# Everything a sampler may legitimately hit while reading a flaky source.
_SOFT_ERRORS = (
    SamplerError,
    SessionsFileError,
    OSError,
    ValueError,
    KeyError,
    IndexError,
    TypeError,
    asyncio.TimeoutError,
    psutil.Error,
    pynvml.NVMLError,
)


# ── External commands ──────────────────────────────────────────────────────


async def run_command(argv: list[str] | tuple[str, ...], timeout: float) -> str:
    """Run ``argv`` without a shell and return its stdout.

    Raises:
        CommandError: If the command can't be spawned or exits non-zero.
        CommandTimeout: If it runs longer than ``timeout`` seconds.
    """
    argv = list(argv)
    if not argv:
        raise CommandError(argv, "empty command")
    try:
        proc = await asyncio.create_subprocess_exec(
            *argv,
            stdin=asyncio.subprocess.DEVNULL,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.DEVNULL,
        )
    except OSError as e:
        raise CommandError(argv, e.strerror or str(e)) from e

    try:
        stdout, _ = await asyncio.wait_for(proc.communicate(), timeout=timeout)
    except asyncio.TimeoutError:
        raise CommandTimeout(argv, timeout) from None
    finally:
        if proc.returncode is None:
            try:
                proc.kill()
            except ProcessLookupError:
                pass
            await proc.wait()

    if proc.returncode != 0:
        raise CommandError(argv, f"exit status {proc.returncode}")
    return stdout.decode("utf-8", errors="replace")


async def fetch_latest_release(url: str, timeout: float = REMOTE_TIMEOUT) -> str | None:
    """Latest published version from the releases endpoint, or None on any failure."""
    client_timeout = aiohttp.ClientTimeout(total=timeout)
    headers = {"User-Agent": "clawdash", "Accept": "application/json"}
    try:
        async with aiohttp.ClientSession(timeout=client_timeout, headers=headers) as session:
            async with session.get(url) as response:
                if response.status != 200:
                    logger.debug("release lookup returned HTTP %s", response.status)
                    return None
                payload = await response.json(content_type=None)
    except (aiohttp.ClientError, asyncio.TimeoutError, ValueError) as e:
        logger.debug("release lookup failed: %s", e)
        return None
    return parse_release_tag(payload)


# ── Host metrics port ──────────────────────────────────────────────────────


class NetCounters(NamedTuple):
    rx_bytes: int
    tx_bytes: int


class HostMetricsProvider(ABC):
    """What the core needs from the operating system, and nothing more."""

    @abstractmethod
    def cpu(self) -> CpuReading: ...

    @abstractmethod
    def memory(self, include_cache: bool) -> MemoryReading: ...

    @abstractmethod
    def disk(self, mount: str) -> DiskReading: ...

    @abstractmethod
    def net_counters(self) -> dict[str, NetCounters]: ...

    @abstractmethod
    def system_info(self) -> SystemInfo: ...


class PsutilProvider(HostMetricsProvider):
    """Host metrics via psutil; calls are non-blocking."""

    def __init__(self) -> None:
        # Warm-up psutil internal deltas (first call returns 0.0)
        psutil.cpu_percent(interval=None)
        psutil.cpu_percent(interval=None, percpu=True)

    def cpu(self) -> CpuReading:
        return CpuReading(
            average=float(psutil.cpu_percent(interval=None)),
            per_core=tuple(float(p) for p in psutil.cpu_percent(interval=None, percpu=True)),
        )

    def memory(self, include_cache: bool) -> MemoryReading:
        vm = psutil.virtual_memory()
        if vm.total <= 0:
            raise SamplerError("memory", "total memory reported as zero")
        actual_used = max(0, vm.total - vm.available)
        cached = int(getattr(vm, "cached", 0) or 0) + int(getattr(vm, "buffers", 0) or 0)
        used = min(vm.total, actual_used + cached) if include_cache else actual_used
        return MemoryReading(
            used=used,
            total=vm.total,
            percent=round(used / vm.total * 100, 1),
            actual_used=actual_used,
            cached=cached,
        )

    def disk(self, mount: str) -> DiskReading:
        usage = psutil.disk_usage(mount)
        return DiskReading(mount=mount, used=usage.used, total=usage.total, percent=usage.percent)

    def net_counters(self) -> dict[str, NetCounters]:
        counters = psutil.net_io_counters(pernic=True) or {}
        return {
            nic: NetCounters(c.bytes_recv, c.bytes_sent) for nic, c in counters.items()
        }

    def system_info(self) -> SystemInfo:
        system = platform.system()
        distro, release = system, platform.release()
        if system == "Darwin":
            distro, release = "macOS", platform.mac_ver()[0] or release
        elif system == "Linux":
            try:
                os_release = platform.freedesktop_os_release()
                distro = os_release.get("NAME", system)
                release = os_release.get("VERSION_ID", release)
            except OSError:
                pass
        return SystemInfo(
            distro=distro,
            release=release,
            arch=platform.machine(),
            python=platform.python_version(),
        )


# ── Sampler contract ───────────────────────────────────────────────────────


class Sampler(ABC, Generic[T]):
    """Fetch-with-timeout, fail-soft wrapper around one data source."""

    name: str = "sampler"
    # Multiplier on the per-source timeout for samplers with slower sub-sources.
    deadline_factor: float = 1.0

    async def sample(self, timeout: float) -> T | Unavailable:
        try:
            return await asyncio.wait_for(
                self.fetch(timeout), timeout=timeout * self.deadline_factor
            )
        except asyncio.TimeoutError:
            logger.debug("%s: timed out after %.1fs", self.name, timeout * self.deadline_factor)
            return Unavailable(self.name, "timeout")
        except _SOFT_ERRORS as e:
            logger.debug("%s: unavailable (%s)", self.name, e)
            return Unavailable(self.name, str(e) or type(e).__name__)

    @abstractmethod
    async def fetch(self, timeout: float) -> T:
        """Return a reading or raise; ``sample`` maps the failure."""


class CpuSampler(Sampler[CpuReading]):
    name = "cpu"

    def __init__(self, provider: HostMetricsProvider) -> None:
        self._provider = provider

    async def fetch(self, timeout: float) -> CpuReading:
        return await asyncio.to_thread(self._provider.cpu)


class MemorySampler(Sampler[MemoryReading]):
    name = "memory"

    def __init__(self, provider: HostMetricsProvider, include_cache: bool = False) -> None:
        self._provider = provider
        self._include_cache = include_cache

    async def fetch(self, timeout: float) -> MemoryReading:
        return await asyncio.to_thread(self._provider.memory, self._include_cache)


class DiskSampler(Sampler[DiskReading]):
    name = "disk"

    def __init__(self, provider: HostMetricsProvider, mount: str = "/") -> None:
        self._provider = provider
        self._mount = mount

    async def fetch(self, timeout: float) -> DiskReading:
        return await asyncio.to_thread(self._provider.disk, self._mount)


class SystemSampler(Sampler[SystemInfo]):
    name = "system"

    def __init__(self, provider: HostMetricsProvider) -> None:
        self._provider = provider

    async def fetch(self, timeout: float) -> SystemInfo:
        return await asyncio.to_thread(self._provider.system_info)


class NetworkSampler(Sampler[NetworkReading]):
    """Counters plus rx/tx rates against the previous accepted sample.

    The first tick (and the first tick after an interface switch or a
    counter reset) reports counters only. A sample taken too soon after
    the baseline does not move the baseline.
    """

    name = "network"

    def __init__(
        self,
        provider: HostMetricsProvider,
        interface: str | None = None,
        clock: Callable[[], float] = time.monotonic,
        min_elapsed_ms: float = NETWORK_MIN_ELAPSED_MS,
    ) -> None:
        self._provider = provider
        self._interface = interface
        self._clock = clock
        self._min_elapsed_ms = min_elapsed_ms
        self._prev: tuple[str, RateSample, RateSample] | None = None

    def _pick_interface(self, counters: dict[str, NetCounters]) -> str:
        if self._interface is not None:
            if self._interface not in counters:
                raise SamplerError(self.name, f"interface {self._interface!r} not found")
            return self._interface
        candidates = {
            nic: c for nic, c in counters.items() if not nic.startswith("lo")
        } or counters
        if not candidates:
            raise SamplerError(self.name, "no network interfaces")
        return max(candidates, key=lambda nic: candidates[nic].rx_bytes + candidates[nic].tx_bytes)

    async def fetch(self, timeout: float) -> NetworkReading:
        counters = await asyncio.to_thread(self._provider.net_counters)
        now = self._clock()
        nic = self._pick_interface(counters)
        rx = RateSample(float(counters[nic].rx_bytes), now)
        tx = RateSample(float(counters[nic].tx_bytes), now)

        rx_sec = tx_sec = None
        if self._prev is not None and self._prev[0] == nic:
            _, prev_rx, prev_tx = self._prev
            elapsed_ms = (now - prev_rx.timestamp) * 1000.0
            if elapsed_ms < self._min_elapsed_ms:
                # Too soon: report counters, keep the older baseline.
                return NetworkReading(nic, int(rx.value), int(tx.value))
            rx_sec = sample_rate(rx, prev_rx, self._min_elapsed_ms)
            tx_sec = sample_rate(tx, prev_tx, self._min_elapsed_ms)

        self._prev = (nic, rx, tx)
        return NetworkReading(nic, int(rx.value), int(tx.value), rx_sec, tx_sec)


# ── GPU ────────────────────────────────────────────────────────────────────


_NOT_SUPPORTED = {"", "[not supported]", "[n/a]", "n/a"}
_IOREG_MODEL = re.compile(r'"model"\s*=\s*<"([^"]+)"')
_CHIPSET_MODEL = re.compile(r"Chipset Model:\s*(.+)")
_PLAIN_MODEL = re.compile(r"^\s*Model:\s*(.+)$", re.MULTILINE)
_PM_RESIDENCY = re.compile(r"GPU (?:HW )?active residency:\s+(\d+(?:\.\d+)?)%")
_PM_FREQUENCY = re.compile(r"GPU (?:HW )?(?:active )?frequency:\s+(\d+)\s*MHz")
_LSPCI_DISPLAY = re.compile(r"(?:VGA compatible controller|3D controller|Display controller):\s*(.+)")


def _csv_float(value: str) -> float | None:
    value = value.strip()
    if value.lower() in _NOT_SUPPORTED:
        return None
    return float(value)


def parse_nvidia_smi(text: str) -> GpuReading:
    line = text.strip().splitlines()[0]
    parts = [p.strip() for p in line.split(",")]
    if len(parts) < 3:
        raise SamplerError("gpu", f"unexpected nvidia-smi output: {line!r}")
    freq = _csv_float(parts[1])
    return GpuReading(
        model=parts[2] or None,
        utilization=_csv_float(parts[0]),
        frequency_mhz=int(freq) if freq is not None else None,
        source="nvidia-smi",
    )


def parse_system_profiler_json(text: str) -> GpuReading:
    doc = json.loads(text)
    displays = doc.get("SPDisplaysDataType") if isinstance(doc, dict) else None
    if not displays or not isinstance(displays[0], dict):
        raise SamplerError("gpu", "no displays reported")
    gpu = displays[0]
    util = gpu.get("spdisplays_utilization")
    return GpuReading(
        model=gpu.get("sppci_model") or gpu.get("_name"),
        utilization=float(str(util).rstrip("%")) if util else None,
        source="system_profiler",
    )


def parse_ioreg(text: str) -> GpuReading:
    match = _IOREG_MODEL.search(text)
    return GpuReading(model=match.group(1) if match else None, source="ioreg")


def parse_system_profiler_text(text: str) -> GpuReading:
    match = _CHIPSET_MODEL.search(text) or _PLAIN_MODEL.search(text)
    return GpuReading(model=match.group(1).strip() if match else None, source="system_profiler")


def parse_powermetrics(text: str) -> GpuReading:
    util = _PM_RESIDENCY.search(text)
    freq = _PM_FREQUENCY.search(text)
    return GpuReading(
        utilization=float(util.group(1)) if util else None,
        frequency_mhz=int(freq.group(1)) if freq else None,
        source="powermetrics",
    )


def parse_lspci(text: str) -> GpuReading:
    match = _LSPCI_DISPLAY.search(text)
    return GpuReading(model=match.group(1).strip() if match else None, source="lspci")


class GpuProbe(NamedTuple):
    argv: tuple[str, ...]
    parse: Callable[[str], GpuReading] | None
    platforms: tuple[str, ...]
    # In-process reader used instead of running ``argv``.
    read: Callable[[], GpuReading] | None = None


def read_nvml() -> GpuReading:
    """Query the first NVIDIA device through NVML; blocking, run it in a thread."""
    pynvml.nvmlInit()
    try:
        if pynvml.nvmlDeviceGetCount() < 1:
            raise SamplerError("nvml", "no devices")
        handle = pynvml.nvmlDeviceGetHandleByIndex(0)
        name = pynvml.nvmlDeviceGetName(handle)
        if isinstance(name, bytes):
            name = name.decode("utf-8", errors="replace")
        util = pynvml.nvmlDeviceGetUtilizationRates(handle)
        clock = pynvml.nvmlDeviceGetClockInfo(handle, pynvml.NVML_CLOCK_GRAPHICS)
        return GpuReading(
            model=name or None,
            utilization=float(util.gpu),
            frequency_mhz=int(clock) if clock else None,
            source="nvml",
        )
    finally:
        pynvml.nvmlShutdown()


GPU_PROBES: tuple[GpuProbe, ...] = (
    GpuProbe(
        (
            "nvidia-smi",
            "--query-gpu=utilization.gpu,clocks.current.graphics,name",
            "--format=csv,noheader,nounits",
        ),
        parse_nvidia_smi,
        ("linux", "win32", "darwin"),
    ),
    GpuProbe(("system_profiler", "SPDisplaysDataType", "-json"), parse_system_profiler_json, ("darwin",)),
    GpuProbe(("ioreg", "-l"), parse_ioreg, ("darwin",)),
    GpuProbe(("system_profiler", "SPDisplaysDataType"), parse_system_profiler_text, ("darwin",)),
    GpuProbe(("powermetrics", "--samplers", "gpu_power", "-n", "1", "-i", "100"), parse_powermetrics, ("darwin",)),
    GpuProbe(("lspci",), parse_lspci, ("linux",)),
    GpuProbe(("nvml",), None, ("linux", "win32"), read_nvml),
)


class GpuSampler(Sampler[GpuReading]):
    """Walks the probe chain, merging partial readings until model and load are known.

    Each probe is isolated: one failing probe just hands over to the next.
    The whole chain shares the field's timeout, so a stalled probe eats into
    the budget of the ones after it rather than extending the tick.
    The last model seen is remembered so a tick that only learns the
    utilization still shows which GPU it belongs to.
    """

    name = "gpu"

    def __init__(self, probes: tuple[GpuProbe, ...] = GPU_PROBES, platform_name: str | None = None) -> None:
        self._probes = probes
        self._platform = platform_name or sys.platform
        self._last_model: str | None = None

    async def _run(self, probe: GpuProbe, timeout: float) -> GpuReading:
        if probe.read is not None:
            return await asyncio.to_thread(probe.read)
        return probe.parse(await run_command(probe.argv, timeout))

    async def _probe(self, probe: GpuProbe, timeout: float) -> GpuReading | None:
        try:
            return await asyncio.wait_for(self._run(probe, timeout), timeout=timeout)
        except _SOFT_ERRORS as e:
            logger.debug("gpu source %s failed: %s", probe.argv[0], e)
            return None

    async def fetch(self, timeout: float) -> GpuReading:
        model: str | None = None
        utilization: float | None = None
        frequency: int | None = None
        sources: list[str] = []

        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout * GPU_CHAIN_SHARE
        for probe in self._probes:
            if not self._platform.startswith(probe.platforms):
                continue
            remaining = deadline - loop.time()
            if remaining <= 0:
                logger.debug("gpu: chain budget spent before %s", probe.argv[0])
                break
            reading = await self._probe(probe, min(remaining, GPU_PROBE_TIMEOUT))
            if reading is None:
                continue
            if model is None and reading.model:
                model = reading.model.strip()
                sources.append(reading.source)
            if utilization is None and reading.utilization is not None:
                utilization = reading.utilization
                sources.append(reading.source)
            if frequency is None and reading.frequency_mhz is not None:
                frequency = reading.frequency_mhz
            if model is not None and utilization is not None:
                break

        if model is None:
            model = self._last_model
        if model is None and utilization is None and frequency is None:
            raise SamplerError(self.name, "not detected")
        self._last_model = model
        return GpuReading(
            model=model,
            utilization=utilization,
            frequency_mhz=frequency,
            source="+".join(dict.fromkeys(sources)),
        )


# ── External runtime ───────────────────────────────────────────────────────


class StatusSampler(Sampler[RuntimeStatus]):
    name = "runtime"

    def __init__(self, argv: tuple[str, ...]) -> None:
        self._argv = argv

    async def fetch(self, timeout: float) -> RuntimeStatus:
        return parse_status(await run_command(self._argv, timeout))


class LogSampler(Sampler[tuple[str, ...]]):
    name = "logs"

    def __init__(self, argv: list[str], limit: int) -> None:
        self._argv = argv
        self._limit = limit

    async def fetch(self, timeout: float) -> tuple[str, ...]:
        return tail(await run_command(self._argv, timeout), self._limit)


class SessionsFileSampler(Sampler[tuple[Session, ...]]):
    """Alternate session ingestion from the runtime's persisted store."""

    name = "sessions_file"

    def __init__(self, path: Path) -> None:
        self._path = path

    async def fetch(self, timeout: float) -> tuple[Session, ...]:
        try:
            return load_sessions_file(self._path)
        except SessionsFileCorrupt as e:
            logger.warning("sessions file unusable: %s", e)
            raise


class VersionSampler(Sampler[VersionInfo]):
    """Installed runtime version plus the latest release, cached between checks.

    The CLI call and the remote lookup run side by side. A CLI failure only
    degrades the installed version to ``"unknown"``; a failed lookup is not
    cached, so the next tick asks again.
    """

    name = "version"
    deadline_factor = 2.0

    def __init__(
        self,
        argv: tuple[str, ...],
        latest_url: str | None,
        check_interval: float = 3600.0,
        clock: Callable[[], float] = time.monotonic,
        lookup: Callable[[str], Awaitable[str | None]] = fetch_latest_release,
    ) -> None:
        self._argv = argv
        self._latest_url = latest_url
        self._check_interval = check_interval
        self._clock = clock
        self._lookup = lookup
        self._current: str | None = None
        self._current_at: float | None = None
        self._latest: str | None = None
        self._latest_at: float | None = None

    def _fresh(self, checked_at: float | None, now: float) -> bool:
        return checked_at is not None and now - checked_at < self._check_interval

    async def _installed(self, timeout: float) -> str:
        output = (await run_command(self._argv, timeout)).strip()
        if not output:
            return "unknown"
        # "openclaw 2026.1.5-1" -> "2026.1.5-1"
        return output.splitlines()[0].split()[-1].lstrip("v")

    async def fetch(self, timeout: float) -> VersionInfo:
        now = self._clock()
        jobs: dict[str, Awaitable[str | None]] = {}
        if not self._fresh(self._current_at, now):
            jobs["current"] = self._installed(timeout)
        if self._latest_url and not self._fresh(self._latest_at, now):
            jobs["latest"] = self._lookup(self._latest_url)

        outcomes = await asyncio.gather(*jobs.values(), return_exceptions=True)
        for key, outcome in zip(jobs, outcomes):
            if isinstance(outcome, BaseException) and not isinstance(outcome, _SOFT_ERRORS):
                raise outcome
            if key == "current":
                if isinstance(outcome, BaseException):
                    logger.debug("version: %s failed: %s", self._argv[0], outcome)
                    self._current, self._current_at = "unknown", None
                else:
                    self._current = outcome
                    self._current_at = now if outcome != "unknown" else None
            elif isinstance(outcome, BaseException) or outcome is None:
                logger.debug("version: latest release lookup failed: %s", outcome)
            else:
                self._latest, self._latest_at = outcome, now

        return VersionInfo(current=self._current or "unknown", latest=self._latest)


# ── Registry ───────────────────────────────────────────────────────────────

# source name -> settings toggle
TOGGLES: dict[str, str] = {
    "cpu": "show_cpu",
    "memory": "show_memory",
    "gpu": "show_gpu",
    "disk": "show_disk",
    "network": "show_network",
    "system": "show_system",
    "runtime": "show_runtime",
    "logs": "show_logs",
    "version": "show_version",
    "sessions_file": "show_runtime",
}


def build_samplers(settings: Settings, provider: HostMetricsProvider | None = None) -> dict[str, Sampler[Any]]:
    """Instantiate every sampler the settings can ask for."""
    provider = provider or PsutilProvider()
    samplers: dict[str, Sampler[Any]] = {
        "cpu": CpuSampler(provider),
        "memory": MemorySampler(provider, settings.memory_includes_cache),
        "gpu": GpuSampler(),
        "disk": DiskSampler(provider, settings.disk_mount),
        "network": NetworkSampler(provider, settings.network_interface),
        "system": SystemSampler(provider),
        "runtime": StatusSampler(settings.status_command),
        "logs": LogSampler(settings.logs_argv(), settings.log_lines),
        "version": VersionSampler(
            settings.version_command,
            settings.latest_release_url if settings.version_check else None,
            check_interval=settings.version_check_interval,
        ),
    }
    if settings.sessions_file is not None:
        samplers["sessions_file"] = SessionsFileSampler(settings.sessions_file)
    return samplers
