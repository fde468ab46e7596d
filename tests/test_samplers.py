"""Tests for clawdash.samplers."""

from __future__ import annotations

import asyncio
import json
from pathlib import Path
from unittest.mock import AsyncMock, MagicMock, patch

import psutil
import pytest

from clawdash.config import Settings
from clawdash.errors import CommandError, CommandTimeout, SamplerError
from clawdash.formatting import fmt_bits
from clawdash.models import (
    CpuReading,
    DiskReading,
    GpuReading,
    MemoryReading,
    NetworkReading,
    RuntimeStatus,
    SystemInfo,
    Unavailable,
    VersionInfo,
)
from clawdash.samplers import (
    GpuProbe,
    GpuSampler,
    HostMetricsProvider,
    LogSampler,
    MemorySampler,
    NetCounters,
    NetworkSampler,
    PsutilProvider,
    Sampler,
    SessionsFileSampler,
    StatusSampler,
    VersionSampler,
    build_samplers,
    parse_ioreg,
    parse_lspci,
    parse_nvidia_smi,
    parse_powermetrics,
    parse_system_profiler_json,
    read_nvml,
    run_command,
)


class FakeProvider(HostMetricsProvider):
    """Scripted host: each ``net_counters`` call pops the next reading."""

    def __init__(self, counters: list[dict[str, NetCounters]] | None = None) -> None:
        self._counters = list(counters or [])

    def cpu(self) -> CpuReading:
        return CpuReading(12.5, (10.0, 15.0))

    def memory(self, include_cache: bool) -> MemoryReading:
        return MemoryReading(4, 16, 25.0, 4, 2)

    def disk(self, mount: str) -> DiskReading:
        return DiskReading(mount, 50, 100, 50.0)

    def net_counters(self) -> dict[str, NetCounters]:
        return self._counters.pop(0)

    def system_info(self) -> SystemInfo:
        return SystemInfo("Linux", "6.1", "x86_64", "3.12.0")


class Clock:
    def __init__(self, start: float = 100.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now


# ── run_command ────────────────────────────────────────────────────────────


def _proc(stdout: bytes = b"", returncode: int = 0) -> MagicMock:
    proc = MagicMock()
    proc.returncode = returncode
    proc.communicate = AsyncMock(return_value=(stdout, b""))
    proc.wait = AsyncMock(return_value=returncode)
    return proc


class TestRunCommand:
    @pytest.mark.asyncio
    async def test_returns_stdout(self) -> None:
        with patch("asyncio.create_subprocess_exec", AsyncMock(return_value=_proc(b"ok\n"))):
            assert await run_command(["openclaw", "status"], 5) == "ok\n"

    @pytest.mark.asyncio
    async def test_nonzero_exit(self) -> None:
        with patch("asyncio.create_subprocess_exec", AsyncMock(return_value=_proc(returncode=2))):
            with pytest.raises(CommandError, match="exit status 2"):
                await run_command(["openclaw", "status"], 5)

    @pytest.mark.asyncio
    async def test_missing_binary(self) -> None:
        spawn = AsyncMock(side_effect=FileNotFoundError(2, "No such file or directory"))
        with patch("asyncio.create_subprocess_exec", spawn):
            with pytest.raises(CommandError):
                await run_command(["nope"], 5)

    @pytest.mark.asyncio
    async def test_timeout_kills_process(self) -> None:
        proc = _proc()
        proc.returncode = None

        async def hang() -> tuple[bytes, bytes]:
            await asyncio.sleep(10)
            return b"", b""

        proc.communicate = hang
        with patch("asyncio.create_subprocess_exec", AsyncMock(return_value=proc)):
            with pytest.raises(CommandTimeout):
                await run_command(["slow"], 0.01)
        proc.kill.assert_called_once()

    @pytest.mark.asyncio
    async def test_empty_argv(self) -> None:
        with pytest.raises(CommandError):
            await run_command([], 5)


# ── Sampler contract ───────────────────────────────────────────────────────


class _Raising(Sampler[int]):
    name = "boom"

    def __init__(self, exc: BaseException) -> None:
        self._exc = exc

    async def fetch(self, timeout: float) -> int:
        raise self._exc


class _Slow(Sampler[int]):
    name = "slow"

    async def fetch(self, timeout: float) -> int:
        await asyncio.sleep(10)
        return 1


class TestSamplerBoundary:
    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "exc",
        [
            CommandError(["x"], "exit status 1"),
            OSError("gone"),
            ValueError("bad"),
            KeyError("k"),
            psutil.AccessDenied(),
        ],
    )
    async def test_failure_becomes_unavailable(self, exc: BaseException) -> None:
        result = await _Raising(exc).sample(1.0)
        assert isinstance(result, Unavailable)
        assert result.source == "boom"
        assert not result

    @pytest.mark.asyncio
    async def test_timeout_becomes_unavailable(self) -> None:
        result = await _Slow().sample(0.01)
        assert result == Unavailable("slow", "timeout")


# ── Host samplers ──────────────────────────────────────────────────────────


class TestNetworkSampler:
    @pytest.mark.asyncio
    async def test_rate_from_counters(self) -> None:
        clock = Clock()
        provider = FakeProvider(
            [{"eth0": NetCounters(1000, 0)}, {"eth0": NetCounters(1500, 0)}]
        )
        sampler = NetworkSampler(provider, clock=clock)

        first = await sampler.sample(5)
        assert isinstance(first, NetworkReading)
        assert first.rx_sec is None

        clock.now += 1.0
        second = await sampler.sample(5)
        assert isinstance(second, NetworkReading)
        assert second.rx_sec == 500.0
        assert fmt_bits(second.rx_sec) == "4K"
        # Flat tx counter is not a rate
        assert second.tx_sec is None

    @pytest.mark.asyncio
    async def test_too_soon_keeps_baseline(self) -> None:
        clock = Clock()
        provider = FakeProvider(
            [
                {"eth0": NetCounters(1000, 0)},
                {"eth0": NetCounters(1200, 0)},
                {"eth0": NetCounters(3000, 0)},
            ]
        )
        sampler = NetworkSampler(provider, clock=clock)
        await sampler.sample(5)
        clock.now += 0.5
        early = await sampler.sample(5)
        assert isinstance(early, NetworkReading)
        assert early.rx_bytes == 1200
        assert early.rx_sec is None
        clock.now += 0.5
        later = await sampler.sample(5)
        assert isinstance(later, NetworkReading)
        assert later.rx_sec == 2000.0

    @pytest.mark.asyncio
    async def test_counter_reset_yields_no_rate(self) -> None:
        clock = Clock()
        provider = FakeProvider([{"eth0": NetCounters(5000, 10)}, {"eth0": NetCounters(100, 20)}])
        sampler = NetworkSampler(provider, clock=clock)
        await sampler.sample(5)
        clock.now += 2.0
        reading = await sampler.sample(5)
        assert isinstance(reading, NetworkReading)
        assert reading.rx_sec is None
        assert reading.tx_sec == 5.0

    @pytest.mark.asyncio
    async def test_picks_busiest_non_loopback(self) -> None:
        provider = FakeProvider(
            [{"lo": NetCounters(10**9, 10**9), "eth0": NetCounters(10, 10), "wlan0": NetCounters(500, 0)}]
        )
        reading = await NetworkSampler(provider).sample(5)
        assert isinstance(reading, NetworkReading)
        assert reading.interface == "wlan0"

    @pytest.mark.asyncio
    async def test_configured_interface_missing(self) -> None:
        provider = FakeProvider([{"eth0": NetCounters(1, 1)}])
        reading = await NetworkSampler(provider, interface="en7").sample(5)
        assert isinstance(reading, Unavailable)


class TestPsutilProvider:
    def _vm(self, **kw: int) -> MagicMock:
        vm = MagicMock()
        vm.total = kw.get("total", 16_000)
        vm.available = kw.get("available", 10_000)
        vm.cached = kw.get("cached", 3_000)
        vm.buffers = kw.get("buffers", 1_000)
        return vm

    @patch("clawdash.samplers.psutil")
    def test_memory_excludes_cache(self, mock_psutil: MagicMock) -> None:
        mock_psutil.virtual_memory.return_value = self._vm()
        reading = PsutilProvider().memory(include_cache=False)
        assert reading.used == 6_000
        assert reading.actual_used == 6_000
        assert reading.cached == 4_000
        assert reading.percent == 37.5

    @patch("clawdash.samplers.psutil")
    def test_memory_includes_cache(self, mock_psutil: MagicMock) -> None:
        mock_psutil.virtual_memory.return_value = self._vm()
        reading = PsutilProvider().memory(include_cache=True)
        assert reading.used == 10_000
        assert reading.percent == 62.5

    @patch("clawdash.samplers.psutil")
    def test_cpu(self, mock_psutil: MagicMock) -> None:
        mock_psutil.cpu_percent.side_effect = [0.0, [0.0, 0.0], 42.0, [40.0, 44.0]]
        reading = PsutilProvider().cpu()
        assert reading == CpuReading(42.0, (40.0, 44.0))

    @pytest.mark.asyncio
    async def test_memory_sampler_passes_policy(self) -> None:
        provider = MagicMock(spec=HostMetricsProvider)
        provider.memory.return_value = MemoryReading(1, 2, 50.0, 1, 0)
        await MemorySampler(provider, include_cache=True).sample(5)
        provider.memory.assert_called_once_with(True)


# ── GPU ────────────────────────────────────────────────────────────────────


class TestGpuParsers:
    def test_nvidia_smi(self) -> None:
        reading = parse_nvidia_smi("37, 1830, NVIDIA GeForce RTX 4090\n")
        assert reading == GpuReading("NVIDIA GeForce RTX 4090", 37.0, 1830, "nvidia-smi")

    def test_nvidia_smi_not_supported(self) -> None:
        reading = parse_nvidia_smi("[N/A], [N/A], Tesla T4")
        assert reading.utilization is None
        assert reading.frequency_mhz is None
        assert reading.model == "Tesla T4"

    def test_system_profiler_json(self) -> None:
        doc = {"SPDisplaysDataType": [{"sppci_model": "Apple M2 Pro", "spdisplays_utilization": "14%"}]}
        reading = parse_system_profiler_json(json.dumps(doc))
        assert reading.model == "Apple M2 Pro"
        assert reading.utilization == 14.0

    def test_ioreg(self) -> None:
        assert parse_ioreg('  | "model" = <"Apple M1">\n').model == "Apple M1"

    def test_powermetrics(self) -> None:
        text = "GPU HW active frequency: 389 MHz\nGPU HW active residency:  12.34% (389 MHz: 12%)\n"
        reading = parse_powermetrics(text)
        assert reading.utilization == 12.34
        assert reading.frequency_mhz == 389

    def test_lspci(self) -> None:
        text = "00:02.0 VGA compatible controller: Intel Corporation UHD Graphics 620 (rev 07)\n"
        assert parse_lspci(text).model == "Intel Corporation UHD Graphics 620 (rev 07)"


def _probe(name: str, reading: GpuReading | Exception) -> GpuProbe:
    def parse(text: str) -> GpuReading:
        if isinstance(reading, Exception):
            raise reading
        return reading

    return GpuProbe((name,), parse, ("linux",))


class TestGpuSampler:
    @pytest.mark.asyncio
    async def test_chain_merges_partial_readings(self) -> None:
        probes = (
            _probe("a", ValueError("no nvidia")),
            _probe("b", GpuReading(model="Apple M3", source="b")),
            _probe("c", GpuReading(utilization=20.0, frequency_mhz=900, source="c")),
            _probe("d", GpuReading(model="never reached", utilization=99.0, source="d")),
        )
        sampler = GpuSampler(probes, platform_name="linux")
        with patch("clawdash.samplers.run_command", AsyncMock(return_value="")) as run:
            reading = await sampler.sample(5)
        assert reading == GpuReading("Apple M3", 20.0, 900, "b+c")
        assert run.await_count == 3

    @pytest.mark.asyncio
    async def test_skips_other_platforms(self) -> None:
        probe = GpuProbe(("x",), lambda _: GpuReading(model="X"), ("darwin",))
        sampler = GpuSampler((probe,), platform_name="linux")
        with patch("clawdash.samplers.run_command", AsyncMock(return_value="")) as run:
            result = await sampler.sample(5)
        assert result == Unavailable("gpu", "gpu: not detected")
        run.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_remembers_last_model(self) -> None:
        readings = [GpuReading(model="RTX", utilization=5.0), GpuReading(utilization=7.0)]
        probe = GpuProbe(("nvidia-smi",), lambda _: readings.pop(0), ("linux",))
        sampler = GpuSampler((probe,), platform_name="linux")
        with patch("clawdash.samplers.run_command", AsyncMock(return_value="")):
            await sampler.sample(5)
            second = await sampler.sample(5)
        assert isinstance(second, GpuReading)
        assert second.model == "RTX"
        assert second.utilization == 7.0

    @pytest.mark.asyncio
    async def test_all_probes_failing(self) -> None:
        sampler = GpuSampler((_probe("a", CommandError(["a"], "missing")),), platform_name="linux")
        with patch("clawdash.samplers.run_command", AsyncMock(return_value="")):
            assert isinstance(await sampler.sample(5), Unavailable)

    @pytest.mark.asyncio
    async def test_chain_shares_one_timeout(self) -> None:
        async def run(argv: tuple[str, ...], timeout: float) -> str:
            if argv[0] == "slow":
                await asyncio.sleep(10)
            return ""

        probes = (
            _probe("fast", GpuReading(model="Apple M3", source="fast")),
            _probe("slow", GpuReading(utilization=1.0, source="slow")),
        )
        sampler = GpuSampler(probes, platform_name="linux")
        loop = asyncio.get_running_loop()
        started = loop.time()
        with patch("clawdash.samplers.run_command", AsyncMock(side_effect=run)):
            reading = await sampler.sample(0.5)
        assert loop.time() - started < 0.5
        assert reading == GpuReading("Apple M3", None, None, "fast")


def _nvml(mock_nvml: MagicMock, count: int = 1) -> MagicMock:
    mock_nvml.nvmlDeviceGetCount.return_value = count
    mock_nvml.nvmlDeviceGetName.return_value = b"Tesla T4"
    mock_nvml.nvmlDeviceGetUtilizationRates.return_value = MagicMock(gpu=37)
    mock_nvml.nvmlDeviceGetClockInfo.return_value = 1590
    return mock_nvml


@patch("clawdash.samplers.pynvml")
class TestNvml:
    def test_reads_first_device(self, mock_nvml: MagicMock) -> None:
        _nvml(mock_nvml)
        assert read_nvml() == GpuReading("Tesla T4", 37.0, 1590, "nvml")
        mock_nvml.nvmlDeviceGetHandleByIndex.assert_called_once_with(0)
        mock_nvml.nvmlShutdown.assert_called_once()

    def test_no_devices(self, mock_nvml: MagicMock) -> None:
        _nvml(mock_nvml, count=0)
        with pytest.raises(SamplerError):
            read_nvml()
        mock_nvml.nvmlShutdown.assert_called_once()

    @pytest.mark.asyncio
    async def test_chain_ends_with_nvml(self, mock_nvml: MagicMock) -> None:
        _nvml(mock_nvml)
        sampler = GpuSampler(platform_name="linux")
        missing = AsyncMock(side_effect=CommandError(["nvidia-smi"], "not found"))
        with patch("clawdash.samplers.run_command", missing):
            reading = await sampler.sample(5)
        assert reading == GpuReading("Tesla T4", 37.0, 1590, "nvml")
        assert [c.args[0][0] for c in missing.await_args_list] == ["nvidia-smi", "lspci"]


# ── External runtime ───────────────────────────────────────────────────────


class TestRuntimeSamplers:
    @pytest.mark.asyncio
    async def test_status(self) -> None:
        doc = {"gateway": {"reachable": True}, "sessions": {"recent": [{"key": "a"}]}}
        with patch("clawdash.samplers.run_command", AsyncMock(return_value=json.dumps(doc))):
            status = await StatusSampler(("openclaw", "status", "--json")).sample(5)
        assert isinstance(status, RuntimeStatus)
        assert status.reachable is True

    @pytest.mark.asyncio
    async def test_status_command_failure(self) -> None:
        failing = AsyncMock(side_effect=CommandTimeout(["openclaw"], 5))
        with patch("clawdash.samplers.run_command", failing):
            status = await StatusSampler(("openclaw",)).sample(5)
        assert isinstance(status, Unavailable)
        assert status.source == "runtime"

    @pytest.mark.asyncio
    async def test_logs_tail(self) -> None:
        output = "\n".join(f"line {i}" for i in range(10))
        with patch("clawdash.samplers.run_command", AsyncMock(return_value=output)):
            lines = await LogSampler(["openclaw", "logs"], 3).sample(5)
        assert lines == ("line 7", "line 8", "line 9")

    @pytest.mark.asyncio
    async def test_sessions_file_absent_vs_corrupt(self, tmp_path: Path) -> None:
        path = tmp_path / "sessions.json"
        absent = await SessionsFileSampler(path).sample(5)
        assert isinstance(absent, Unavailable)
        assert "not found" in absent.reason

        path.write_text("{oops")
        corrupt = await SessionsFileSampler(path).sample(5)
        assert isinstance(corrupt, Unavailable)
        assert "invalid JSON" in corrupt.reason

    @pytest.mark.asyncio
    async def test_sessions_file_ok(self, tmp_path: Path) -> None:
        path = tmp_path / "sessions.json"
        path.write_text(json.dumps({"agent:main:x": {"updatedAt": 1}}))
        sessions = await SessionsFileSampler(path).sample(5)
        assert isinstance(sessions, tuple)
        assert sessions[0].agent_id == "main"


class TestVersionSampler:
    @pytest.mark.asyncio
    async def test_parses_and_caches(self) -> None:
        clock = Clock(0.0)
        lookup = AsyncMock(return_value="2026.1.5")
        sampler = VersionSampler(("openclaw", "--version"), "https://example.invalid", 3600, clock, lookup)
        run = AsyncMock(return_value="openclaw v2026.1.5-2\n")
        with patch("clawdash.samplers.run_command", run):
            first = await sampler.sample(5)
            clock.now = 10.0
            second = await sampler.sample(5)
            clock.now = 4000.0
            await sampler.sample(5)
        assert first == VersionInfo("2026.1.5-2", "2026.1.5")
        assert isinstance(first, VersionInfo) and first.is_latest
        assert second == first
        assert run.await_count == 2
        assert lookup.await_count == 2

    @pytest.mark.asyncio
    async def test_remote_check_disabled(self) -> None:
        lookup = AsyncMock()
        sampler = VersionSampler(("openclaw", "--version"), None, lookup=lookup)
        with patch("clawdash.samplers.run_command", AsyncMock(return_value="1.2.3")):
            info = await sampler.sample(5)
        assert info == VersionInfo("1.2.3", None)
        lookup.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_cli_failure_keeps_latest(self) -> None:
        lookup = AsyncMock(return_value="2026.1.5")
        sampler = VersionSampler(("openclaw", "--version"), "https://example.invalid", lookup=lookup)
        failing = AsyncMock(side_effect=CommandError(["openclaw", "--version"], "not found"))
        with patch("clawdash.samplers.run_command", failing):
            info = await sampler.sample(5)
        assert info == VersionInfo("unknown", "2026.1.5")
        lookup.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_failed_lookup_is_retried(self) -> None:
        clock = Clock(0.0)
        lookup = AsyncMock(side_effect=[None, "2026.1.5"])
        sampler = VersionSampler(("openclaw", "--version"), "https://example.invalid", 3600, clock, lookup)
        run = AsyncMock(return_value="2026.1.4")
        with patch("clawdash.samplers.run_command", run):
            first = await sampler.sample(5)
            clock.now = 60.0
            second = await sampler.sample(5)
        assert first == VersionInfo("2026.1.4", None)
        assert isinstance(second, VersionInfo)
        assert second.latest == "2026.1.5"
        assert run.await_count == 1

    @pytest.mark.asyncio
    async def test_lookup_runs_alongside_cli(self) -> None:
        lookup_started = asyncio.Event()

        async def lookup(url: str) -> str:
            lookup_started.set()
            return "2026.1.5"

        async def run(argv: tuple[str, ...], timeout: float) -> str:
            await asyncio.wait_for(lookup_started.wait(), 1)
            return "2026.1.4"

        sampler = VersionSampler(("openclaw", "--version"), "https://example.invalid", lookup=lookup)
        with patch("clawdash.samplers.run_command", AsyncMock(side_effect=run)):
            info = await sampler.sample(5)
        assert info == VersionInfo("2026.1.4", "2026.1.5")


# ── Registry ───────────────────────────────────────────────────────────────


class TestBuildSamplers:
    def test_sessions_file_only_when_configured(self, tmp_path: Path) -> None:
        provider = FakeProvider()
        assert "sessions_file" not in build_samplers(Settings(), provider)
        with_file = build_samplers(Settings(sessions_file=tmp_path / "s.json"), provider)
        assert isinstance(with_file["sessions_file"], SessionsFileSampler)

    def test_every_source_present(self) -> None:
        samplers = build_samplers(Settings(), FakeProvider())
        assert set(samplers) == {
            "cpu", "memory", "gpu", "disk", "network", "system", "runtime", "logs", "version",
        }
