"""Fixed-length rolling windows feeding the sparkline panels."""

from __future__ import annotations

from collections import deque

CPU_HISTORY = 60
MEMORY_HISTORY = 60
NETWORK_HISTORY = 30


class HistoryBuffer:
    """Zero-filled ring of numeric samples, oldest first.

    The buffer starts full of zeros so the first render draws a flat line
    instead of an empty panel; every push drops the oldest value.
    """

    __slots__ = ("_values",)

    def __init__(self, capacity: int) -> None:
        if capacity < 1:
            raise ValueError(f"capacity must be positive, got {capacity}")
        self._values: deque[float] = deque([0.0] * capacity, maxlen=capacity)

    @property
    def capacity(self) -> int:
        return self._values.maxlen or 0

    def push(self, value: float | None) -> None:
        self._values.append(float(value) if value is not None else 0.0)

    def values(self) -> tuple[float, ...]:
        return tuple(self._values)

    def preview(self, value: float | None) -> tuple[float, ...]:
        """The window ``push(value)`` would produce, without changing the buffer."""
        return tuple(self._values)[1:] + (float(value) if value is not None else 0.0,)

    def latest(self) -> float:
        return self._values[-1]

    def __len__(self) -> int:
        return len(self._values)

    def __repr__(self) -> str:
        return f"HistoryBuffer(capacity={self.capacity}, latest={self.latest()!r})"
