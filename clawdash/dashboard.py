"""Interactive terminal dashboard for the agent runtime and the host it runs on.

Displays CPU, memory, GPU, disk, network, runtime status, sessions,
agents, logs and version panels using curses. Each panel is a pure
function from a committed ``Snapshot`` to styled lines; the layout table
decides where it goes. Adding a metric means adding one ``PANELS`` entry.

Usage:
    clawdash
    clawdash start --config path/to/settings.json --log-file /tmp/clawdash.log
"""

from __future__ import annotations

import asyncio
import curses
import sys
import time
from collections.abc import Callable
from dataclasses import dataclass
from pathlib import Path
from typing import Any, TextIO

from clawdash.config import Settings, save_settings
from clawdash.errors import DisplayError, RenderError
from clawdash.formatting import (
    fmt_age,
    fmt_bits,
    fmt_bytes,
    fmt_gb,
    fmt_percent,
    fmt_tokens,
    gauge,
    severity_level,
    short_model,
    sparkline,
)
from clawdash.log import get_logger
from clawdash.logfeed import Severity, filter_lines
from clawdash.models import (
    CpuReading,
    Disabled,
    DiskReading,
    GpuReading,
    MemoryReading,
    NetworkReading,
    RuntimeStatus,
    Snapshot,
    SystemInfo,
    Unavailable,
    VersionInfo,
)
from clawdash.rates import display_rate
from clawdash.samplers import HostMetricsProvider, build_samplers
from clawdash.scheduler import Scheduler
from clawdash.state import SnapshotStateMachine

logger = get_logger("dashboard")

# Curses colour-pair IDs
C_NORMAL = 1
C_WARNING = 2
C_CRITICAL = 3
C_TITLE = 4
C_DIM = 5
C_ACCENT = 6
C_MAGENTA = 7

STYLE_PAIRS: dict[str, int] = {
    "normal": C_NORMAL,
    "warning": C_WARNING,
    "critical": C_CRITICAL,
    "title": C_TITLE,
    "dim": C_DIM,
    "accent": C_ACCENT,
    "magenta": C_MAGENTA,
}

Line = tuple[str, str]  # (text, style)


@dataclass
class ViewState:
    """What the renderer needs besides the snapshot."""

    settings: Settings
    paused: bool = False


# ── Panel content ──────────────────────────────────────────────────────────


def _missing(value: object, unavailable: str = "unavailable") -> list[Line] | None:
    if isinstance(value, Disabled):
        return [("disabled", "dim")]
    if isinstance(value, Unavailable):
        return [(unavailable, "critical")]
    return None


def cpu_lines(snap: Snapshot, view: ViewState, width: int) -> list[Line]:
    if (missing := _missing(snap.cpu)) is not None:
        return missing
    assert isinstance(snap.cpu, CpuReading)
    level = severity_level(snap.cpu.average)
    lines: list[Line] = [
        (f"{snap.cpu.average:.0f}%  ({len(snap.cpu.per_core)} cores)", level),
        (gauge(snap.cpu.average), level),
    ]
    history = snap.history.get("cpu", ())
    if history:
        lines.append((sparkline(history, width, 100.0), "accent"))
    return lines


def memory_lines(snap: Snapshot, view: ViewState, width: int) -> list[Line]:
    if (missing := _missing(snap.memory)) is not None:
        return missing
    assert isinstance(snap.memory, MemoryReading)
    mem = snap.memory
    lines: list[Line] = [
        (f"{fmt_gb(mem.used)} / {fmt_gb(mem.total)}", "magenta"),
        (gauge(mem.percent), "magenta"),
        (f"cache {fmt_gb(mem.cached)}", "dim"),
    ]
    history = snap.history.get("memory", ())
    if history:
        lines.append((sparkline(history, width, 100.0), "accent"))
    return lines


def gpu_lines(snap: Snapshot, view: ViewState, width: int) -> list[Line]:
    if (missing := _missing(snap.gpu, "Not detected")) is not None:
        return missing
    assert isinstance(snap.gpu, GpuReading)
    gpu = snap.gpu
    name = (gpu.model or "GPU").replace("Apple ", "")[:14]
    lines: list[Line] = [(name, "accent")]
    if gpu.utilization is not None:
        lines.append((f"{gpu.utilization:.0f}% util", severity_level(gpu.utilization)))
    if gpu.frequency_mhz:
        lines.append((f"{gpu.frequency_mhz} MHz", "dim"))
    return lines


def disk_lines(snap: Snapshot, view: ViewState, width: int) -> list[Line]:
    if (missing := _missing(snap.disk)) is not None:
        return missing
    assert isinstance(snap.disk, DiskReading)
    disk = snap.disk
    level = severity_level(disk.percent, 85.0, 95.0)
    return [
        (f"{disk.mount}  {fmt_bytes(disk.used)} / {fmt_bytes(disk.total)}", "dim"),
        (f"{gauge(disk.percent)} {disk.percent:.0f}%", level),
    ]


def network_lines(snap: Snapshot, view: ViewState, width: int) -> list[Line]:
    if (missing := _missing(snap.network)) is not None:
        return missing
    assert isinstance(snap.network, NetworkReading)
    net = snap.network
    spark_w = max(0, width - 12)
    return [
        (net.interface, "dim"),
        (f"rx {fmt_bits(net.rx_sec):>6}b/s {sparkline(snap.history.get('net_rx', ()), spark_w)}", "normal"),
        (f"tx {fmt_bits(net.tx_sec):>6}b/s {sparkline(snap.history.get('net_tx', ()), spark_w)}", "accent"),
    ]


def runtime_lines(snap: Snapshot, view: ViewState, width: int) -> list[Line]:
    if isinstance(snap.runtime, Disabled):
        return [("disabled", "dim")]
    if not isinstance(snap.runtime, RuntimeStatus):
        return [("Not Available", "critical")]
    state = ("● Online", "normal") if snap.reachable else ("● Offline", "critical")
    return [
        state,
        (f"{snap.runtime.total_sessions} sessions", "dim"),
        (f"{len(snap.agents)} agents", "dim"),
    ]


def session_lines(snap: Snapshot, view: ViewState, width: int) -> list[Line]:
    if isinstance(snap.runtime, Disabled):
        return [("disabled", "dim")]
    lines: list[Line] = [(f"{'ID':<14}{'Model':<12}{'TPS':>7}{'Tokens':>8}{'%':>6}{'Age':>6}", "title")]
    if not snap.sessions:
        lines.append(("No sessions", "dim"))
        return lines
    now_ms = int(time.time() * 1000)
    for session in snap.sessions:
        tp = snap.throughput.get(session.key)
        tps = display_rate(tp.value if tp is not None else None)
        style = "normal" if tp is not None and tp.active else "dim"
        lines.append(
            (
                f"{session.short_id[:12]:<14}{short_model(session.model):<12}{tps:>7}"
                f"{fmt_tokens(session.total_tokens):>8}{fmt_percent(session.percent_used):>6}"
                f"{fmt_age(session.updated_at, now_ms):>6}",
                style,
            )
        )
    return lines


def agent_lines(snap: Snapshot, view: ViewState, width: int) -> list[Line]:
    if isinstance(snap.runtime, Disabled):
        return [("disabled", "dim")]
    if not snap.agents:
        return [("No agents", "dim")]
    running = snap.running_agents()
    lines: list[Line] = []
    for agent in snap.agents:
        if not agent.enabled:
            marker, style = "○", "dim"
        elif agent.bootstrap_pending:
            marker, style = "⏳", "warning"
        elif agent.id in running:
            marker, style = "▶", "normal"
        else:
            marker, style = "●", "accent"
        schedule = f" {agent.schedule}" if agent.schedule else ""
        lines.append((f"{agent.id[:10]:<10} {marker} {agent.sessions_count}s{schedule}", style))
    return lines


_SEVERITY_STYLES: dict[Severity, str] = {
    Severity.ERROR: "critical",
    Severity.WARN: "warning",
    Severity.INFO: "normal",
    Severity.DEBUG: "dim",
}


def log_lines(snap: Snapshot, view: ViewState, width: int) -> list[Line]:
    if isinstance(snap.logs_status, Disabled):
        return [("disabled", "dim")]
    if isinstance(snap.logs_status, Unavailable) and not snap.logs:
        return [("unavailable", "critical")]
    lines = [
        (entry.text, "dim" if snap.logs_stale else _SEVERITY_STYLES[entry.severity])
        for entry in filter_lines(snap.logs, view.settings.log_level)
    ]
    return lines or [("No log lines", "dim")]


def system_lines(snap: Snapshot, view: ViewState, width: int) -> list[Line]:
    if (missing := _missing(snap.system)) is not None:
        return missing
    assert isinstance(snap.system, SystemInfo)
    return [(snap.system.describe(), "normal")]


def version_lines(snap: Snapshot, view: ViewState, width: int) -> list[Line]:
    if isinstance(snap.version, Disabled):
        return [("disabled", "dim")]
    if not isinstance(snap.version, VersionInfo):
        return [("unknown", "dim")]
    info = snap.version
    current = info.current[:20]
    if info.update_available:
        return [(current, "warning"), (f"Update: {info.latest}", "warning")]
    # No known release counts as up to date.
    if info.is_latest or info.latest is None:
        return [(current, "normal"), ("✓ Latest", "normal")]
    return [(current, "accent")]


@dataclass(frozen=True)
class Panel:
    key: str
    title: str
    lines: Callable[[Snapshot, ViewState, int], list[Line]]
    # Render the newest lines when content overflows (log tail).
    bottom_up: bool = False


PANELS: dict[str, Panel] = {
    p.key: p
    for p in (
        Panel("cpu", "CPU", cpu_lines),
        Panel("memory", "MEMORY", memory_lines),
        Panel("gpu", "GPU", gpu_lines),
        Panel("runtime", "OPENCLAW", runtime_lines),
        Panel("sessions", "SESSIONS", session_lines),
        Panel("agents", "AGENTS", agent_lines),
        Panel("disk", "DISK", disk_lines),
        Panel("network", "NETWORK", network_lines),
        Panel("system", "SYSTEM", system_lines),
        Panel("version", "VERSION", version_lines),
        Panel("logs", "LOGS", log_lines, bottom_up=True),
    )
}

# (row weight, [(panel key, column weight), ...])
LAYOUT: tuple[tuple[int, tuple[tuple[str, int], ...]], ...] = (
    (3, (("cpu", 3), ("memory", 3), ("gpu", 3), ("runtime", 3))),
    (4, (("sessions", 8), ("agents", 4))),
    (3, (("disk", 3), ("network", 5), ("system", 2), ("version", 2))),
    (4, (("logs", 12),)),
)


def render_text(snap: Snapshot, view: ViewState, width: int = 80) -> str:
    """Plain-text rendering of every panel, in layout order."""
    out: list[str] = []
    for _, row in LAYOUT:
        for key, _ in row:
            panel = PANELS[key]
            out.append(f"── {panel.title} " + "─" * max(0, width - len(panel.title) - 4))
            out.extend(text for text, _ in panel.lines(snap, view, width - 2))
    return "\n".join(out) + "\n"


# ── Sinks ──────────────────────────────────────────────────────────────────


class TextSink:
    """Writes each committed snapshot as plain text (headless mode)."""

    def __init__(self, view: ViewState, stream: TextIO | None = None, width: int = 80) -> None:
        self._view = view
        self._stream = stream or sys.stdout
        self._width = width

    def __call__(self, snap: Snapshot) -> None:
        try:
            self._stream.write(render_text(snap, self._view, self._width))
            self._stream.flush()
        except (BrokenPipeError, ValueError) as e:
            raise RenderError(f"output stream closed: {e}") from e


def _init_colors() -> None:
    curses.start_color()
    curses.use_default_colors()
    curses.init_pair(C_NORMAL, curses.COLOR_GREEN, -1)
    curses.init_pair(C_WARNING, curses.COLOR_YELLOW, -1)
    curses.init_pair(C_CRITICAL, curses.COLOR_RED, -1)
    curses.init_pair(C_TITLE, curses.COLOR_CYAN, -1)
    curses.init_pair(C_DIM, curses.COLOR_WHITE, -1)
    curses.init_pair(C_ACCENT, curses.COLOR_BLUE, -1)
    curses.init_pair(C_MAGENTA, curses.COLOR_MAGENTA, -1)


def _safe(win: curses.window, *args: Any) -> None:
    """addstr wrapper that swallows out-of-bounds errors."""
    try:
        win.addstr(*args)
    except curses.error:
        pass


def _draw_box(
    win: curses.window,
    y: int,
    x: int,
    h: int,
    w: int,
    title: str = "",
) -> curses.window | None:
    """Draw a bordered box and return the inner sub-window."""
    max_y, max_x = win.getmaxyx()
    h = min(h, max_y - y)
    w = min(w, max_x - x)
    if h < 3 or w < 4:
        return None
    try:
        sub = win.subwin(h, w, y, x)
        sub.box()
        if title and len(title) + 4 < w:
            sub.addstr(0, 2, f" {title} ", curses.color_pair(C_TITLE) | curses.A_BOLD)
        return sub
    except curses.error:
        return None


def _split(total: int, weights: list[int]) -> list[int]:
    """Split ``total`` cells proportionally; the last part absorbs rounding."""
    whole = sum(weights)
    sizes = [total * w // whole for w in weights[:-1]]
    sizes.append(total - sum(sizes))
    return sizes


class CursesSink:
    """Draws the fixed panel grid into a curses screen."""

    MIN_W = 60
    MIN_H = 20

    def __init__(self, stdscr: curses.window, view: ViewState) -> None:
        self._scr = stdscr
        self._view = view

    def __call__(self, snap: Snapshot) -> None:
        try:
            self.draw(snap)
        except curses.error as e:
            raise RenderError(str(e)) from e

    def _draw_header(self, w: int, snap: Snapshot) -> None:
        attr = curses.color_pair(C_TITLE) | curses.A_REVERSE
        _safe(self._scr, 0, 0, " " * (w - 1), attr)
        title = "◉ CLAW DASHBOARD ◉"
        _safe(self._scr, 0, max(0, (w - len(title)) // 2), title, attr | curses.A_BOLD)
        _safe(self._scr, 0, 1, time.strftime("%H:%M:%S"), attr)
        if self._view.paused:
            _safe(self._scr, 0, max(0, w - 10), "PAUSED", attr | curses.A_BOLD)

    def _draw_footer(self, y: int, w: int) -> None:
        settings = self._view.settings
        hint = (
            f"q quit | r refresh | p pause | i interval {settings.refresh_interval}s"
            f" | l logs: {settings.log_level.value}"
        )
        _safe(self._scr, y, max(0, (w - len(hint)) // 2), hint[: w - 1], curses.color_pair(C_DIM))

    def _draw_panel(self, panel: Panel, snap: Snapshot, y: int, x: int, h: int, w: int) -> None:
        title = panel.title
        if panel.key == "logs" and snap.logs_stale:
            title += " (stale)"
        box = _draw_box(self._scr, y, x, h, w, title)
        if box is None:
            return
        inner_h, inner_w = h - 2, w - 3
        lines = panel.lines(snap, self._view, inner_w)
        if len(lines) > inner_h:
            lines = lines[-inner_h:] if panel.bottom_up else lines[:inner_h]
        for row, (text, style) in enumerate(lines, start=1):
            _safe(box, row, 1, text[:inner_w], curses.color_pair(STYLE_PAIRS.get(style, C_NORMAL)))

    def draw(self, snap: Snapshot) -> None:
        max_y, max_x = self._scr.getmaxyx()
        self._scr.erase()
        if max_y < self.MIN_H or max_x < self.MIN_W:
            _safe(self._scr, 0, 0, f"Terminal too small (need {self.MIN_W}x{self.MIN_H}+)")
            self._scr.refresh()
            return

        self._draw_header(max_x, snap)
        body_h = max_y - 2
        heights = _split(body_h, [weight for weight, _ in LAYOUT])
        y = 1
        for (_, row), row_h in zip(LAYOUT, heights):
            widths = _split(max_x, [weight for _, weight in row])
            x = 0
            for (key, _), col_w in zip(row, widths):
                self._draw_panel(PANELS[key], snap, y, x, row_h, col_w)
                x += col_w
            y += row_h
        self._draw_footer(max_y - 1, max_x)
        self._scr.refresh()


# ── Main loop ──────────────────────────────────────────────────────────────


class DashboardApp:
    """Wires settings, samplers, state machine, scheduler and the curses sink."""

    def __init__(
        self,
        stdscr: curses.window,
        settings: Settings,
        settings_path: Path | None = None,
        provider: HostMetricsProvider | None = None,
    ) -> None:
        self._scr = stdscr
        self._settings_path = settings_path
        self.view = ViewState(settings)
        self.sink = CursesSink(stdscr, self.view)
        self.machine = SnapshotStateMachine(build_samplers(settings, provider), settings, self.sink)
        self.scheduler = Scheduler(self.machine, settings.refresh_interval)

    def _redraw(self) -> None:
        if self.machine.snapshot is None or self.machine.busy:
            return
        try:
            self.sink(self.machine.snapshot)
        except RenderError as e:
            logger.warning("redraw failed: %s", e)

    def _apply(self, settings: Settings) -> None:
        self.view.settings = settings
        self.machine.settings = settings
        self.scheduler.interval = settings.refresh_interval
        try:
            save_settings(settings, self._settings_path)
        except OSError as e:
            logger.warning("could not save settings: %s", e)
        self._redraw()

    def handle_key(self, key: int) -> bool:
        """React to one keypress. Returns False when the app should exit."""
        if key in (ord("q"), ord("Q")):
            return False
        if key in (ord("r"), ord("R")):
            self.scheduler.trigger()
        elif key in (ord("p"), ord("P")):
            self.view.paused = self.scheduler.toggle_pause()
            self._redraw()
        elif key in (ord("i"), ord("I")):
            self._apply(self.view.settings.next_interval())
        elif key in (ord("l"), ord("L")):
            self._apply(self.view.settings.next_log_level())
        elif key == curses.KEY_RESIZE:
            self._scr.clear()
            self._redraw()
        return True

    async def run(self) -> None:
        self.scheduler.start()
        try:
            while True:
                key = self._scr.getch()
                if key == -1:
                    await asyncio.sleep(0.05)
                    continue
                if not self.handle_key(key):
                    return
        finally:
            await self.scheduler.stop()


def _dashboard_loop(
    stdscr: curses.window,
    settings: Settings,
    settings_path: Path | None,
) -> None:
    _init_colors()
    try:
        curses.curs_set(0)
    except curses.error:
        pass
    stdscr.nodelay(True)
    asyncio.run(DashboardApp(stdscr, settings, settings_path).run())


def run_dashboard(settings: Settings, settings_path: Path | None = None) -> None:
    """Take over the terminal until the user quits.

    Raises:
        DisplayError: If curses cannot initialise the terminal at all.
    """
    try:
        curses.wrapper(_dashboard_loop, settings, settings_path)
    except curses.error as e:
        raise DisplayError(f"cannot initialise terminal: {e}") from e


async def run_once(
    settings: Settings,
    stream: TextIO | None = None,
    provider: HostMetricsProvider | None = None,
) -> Snapshot | None:
    """One headless tick rendered as plain text."""
    view = ViewState(settings)
    machine = SnapshotStateMachine(
        build_samplers(settings, provider), settings, TextSink(view, stream)
    )
    return await machine.tick()
