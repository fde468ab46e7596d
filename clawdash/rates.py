"""Rate engine: turns two readings of a monotonic counter into a per-second rate.

The same function serves network throughput and per-session token
throughput; only the minimum interval differs. A counter that went down
(process restart, wrap) or did not move yields ``None``, never a negative
or zero rate.
"""

from __future__ import annotations

from collections.abc import Iterable, Mapping

from clawdash.models import RateSample, Session, TokenThroughput

TOKEN_MIN_ELAPSED_MS = 100.0
# One full tick at the fastest refresh interval.
NETWORK_MIN_ELAPSED_MS = 1000.0


def rate(
    curr: float | None,
    prev: float | None,
    elapsed_ms: float,
    min_elapsed_ms: float,
) -> float | None:
    """Return ``(curr - prev) / seconds`` or None when no rate can be trusted."""
    if curr is None or prev is None:
        return None
    if elapsed_ms < min_elapsed_ms or elapsed_ms <= 0:
        return None
    delta = curr - prev
    if delta <= 0:
        return None
    return delta / (elapsed_ms / 1000.0)


def sample_rate(
    curr: RateSample,
    prev: RateSample | None,
    min_elapsed_ms: float,
) -> float | None:
    """``rate`` over two timestamped samples (timestamps in seconds)."""
    if prev is None:
        return None
    elapsed_ms = (curr.timestamp - prev.timestamp) * 1000.0
    return rate(curr.value, prev.value, elapsed_ms, min_elapsed_ms)


def display_rate(value: float | None) -> str:
    """One-decimal rendering for display; comparisons use the raw float."""
    if value is None:
        return "--"
    return f"{value:.1f}"


def update_throughput(
    sessions: Iterable[Session],
    previous_sessions: Iterable[Session],
    previous_state: Mapping[str, TokenThroughput],
    elapsed_ms: float,
    min_elapsed_ms: float = TOKEN_MIN_ELAPSED_MS,
) -> dict[str, TokenThroughput]:
    """Compute the token throughput map for the current tick.

    A session whose token count moved gets a fresh active entry. A session
    that stalled keeps its last positive value with ``active=False`` so the
    table does not flicker to zero between bursts. Sessions that are no
    longer reported drop out of the map entirely.
    """
    prev_by_key = {s.key: s for s in previous_sessions}
    result: dict[str, TokenThroughput] = {}

    for session in sessions:
        tps: float | None = None
        prev = prev_by_key.get(session.key)
        if prev is not None:
            tps = rate(session.total_tokens, prev.total_tokens, elapsed_ms, min_elapsed_ms)

        if tps is not None:
            result[session.key] = TokenThroughput(value=tps, active=True)
            continue

        last = previous_state.get(session.key)
        if last is not None:
            result[session.key] = TokenThroughput(value=last.value, active=False)

    return result
