"""Human-readable formatting for dashboard values."""

from __future__ import annotations

from collections.abc import Sequence

SPARK = " ▁▂▃▄▅▆▇█"
BAR_FILL = "█"
BAR_EMPTY = "░"
NO_VALUE = "--"


def fmt_bytes(n: int | float) -> str:
    """Human-readable byte count (binary prefixes)."""
    v = float(n)
    for unit in ("B", "KiB", "MiB", "GiB"):
        if abs(v) < 1024:
            return f"{v:.1f} {unit}"
        v /= 1024
    return f"{v:.1f} TiB"


def fmt_gb(n: int | float) -> str:
    return f"{n / 1024**3:.1f}GB"


def _trim(value: float) -> str:
    text = f"{value:.1f}"
    return text[:-2] if text.endswith(".0") else text


def fmt_bits(bytes_per_sec: float | None) -> str:
    """Network rate as bits/sec with decimal prefixes: 500 B/s -> ``4K``."""
    if bytes_per_sec is None:
        return NO_VALUE
    v = bytes_per_sec * 8
    for unit in ("", "K", "M", "G"):
        if abs(v) < 1000:
            return f"{_trim(v)}{unit}"
        v /= 1000
    return f"{_trim(v)}T"


def fmt_tokens(n: int | None) -> str:
    if n is None:
        return NO_VALUE
    if n >= 1_000_000:
        return f"{_trim(n / 1_000_000)}M"
    if n >= 1_000:
        return f"{_trim(n / 1_000)}k"
    return str(n)


def fmt_percent(value: float | None) -> str:
    return NO_VALUE if value is None else f"{value:.0f}%"


def fmt_age(updated_at_ms: int | None, now_ms: int) -> str:
    if updated_at_ms is None:
        return NO_VALUE
    seconds = max(0, (now_ms - updated_at_ms) // 1000)
    if seconds < 60:
        return f"{seconds}s"
    if seconds < 3600:
        return f"{seconds // 60}m"
    if seconds < 86400:
        return f"{seconds // 3600}h"
    return f"{seconds // 86400}d"


def short_model(model: str | None, width: int = 10) -> str:
    """``anthropic/claude-sonnet-4`` -> ``claude-son`` (last path segment, clipped)."""
    if not model:
        return "?"
    return model.split("/")[-1][:width]


def gauge(percent: float, width: int = 12) -> str:
    """Fixed-width block gauge."""
    pct = min(max(percent, 0.0), 100.0)
    filled = round(pct / 100 * width)
    return BAR_FILL * filled + BAR_EMPTY * (width - filled)


def sparkline(values: Sequence[float], width: int, max_val: float | None = None) -> str:
    """Render the most recent ``width`` values; ``max_val=None`` scales to the window peak."""
    window = list(values)[-width:] if width > 0 else []
    if not window:
        return ""
    top = max_val if max_val is not None else max(window)
    if top <= 0:
        return SPARK[0] * len(window)
    chars: list[str] = []
    for v in window:
        idx = int(min(max(v, 0.0) / top, 1.0) * (len(SPARK) - 1))
        chars.append(SPARK[idx])
    return "".join(chars)


def severity_level(value: float, warn: float = 50.0, crit: float = 80.0) -> str:
    """``normal`` / ``warning`` / ``critical`` for colouring a percentage."""
    if value > crit:
        return "critical"
    if value > warn:
        return "warning"
    return "normal"
