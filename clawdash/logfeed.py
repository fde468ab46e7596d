"""Severity classification and filtering for the runtime log feed."""

from __future__ import annotations

import re
from dataclasses import dataclass
from enum import Enum, IntEnum


class Severity(IntEnum):
    DEBUG = 10
    INFO = 20
    WARN = 30
    ERROR = 40


class LogFilter(str, Enum):
    """Minimum-severity filter. ``DEBUG`` is exact-match, not "debug and above"."""

    ALL = "all"
    ERROR = "error"
    WARN = "warn"
    INFO = "info"
    DEBUG = "debug"

    def next(self) -> LogFilter:
        members = list(LogFilter)
        return members[(members.index(self) + 1) % len(members)]


_ALIASES: dict[str, Severity] = {
    "fatal": Severity.ERROR,
    "error": Severity.ERROR,
    "err": Severity.ERROR,
    "warning": Severity.WARN,
    "warn": Severity.WARN,
    "info": Severity.INFO,
    "debug": Severity.DEBUG,
    "trace": Severity.DEBUG,
}

_LEVELS = "|".join(sorted(_ALIASES, key=len, reverse=True))

_BRACKET_TAG = re.compile(rf"\[({_LEVELS})\]", re.IGNORECASE)

# 2025-01-30T10:15:02.123Z error ...  /  10:15:02 WARN: ...
_TIMESTAMP_TOKEN = re.compile(
    r"^\s*(?:\d{4}-\d{2}-\d{2}[T ])?\d{2}:\d{2}:\d{2}(?:[.,]\d+)?"
    r"(?:Z|[+-]\d{2}:?\d{2})?\s+"
    rf"({_LEVELS})\b",
    re.IGNORECASE,
)

_THRESHOLDS: dict[LogFilter, Severity] = {
    LogFilter.ERROR: Severity.ERROR,
    LogFilter.WARN: Severity.WARN,
    LogFilter.INFO: Severity.INFO,
}


@dataclass(frozen=True, slots=True)
class LogLine:
    text: str
    severity: Severity
    classified: bool = True


def classify(line: str) -> LogLine:
    """Classify one raw line. Bracketed ``[LEVEL]`` tags win over timestamp tokens.

    Lines matching neither form are kept at INFO so they stay visible
    unless the filter is stricter than info.
    """
    match = _BRACKET_TAG.search(line) or _TIMESTAMP_TOKEN.match(line)
    if match is None:
        return LogLine(line, Severity.INFO, classified=False)
    return LogLine(line, _ALIASES[match.group(1).lower()])


def passes(severity: Severity, log_filter: LogFilter) -> bool:
    if log_filter is LogFilter.ALL:
        return True
    if log_filter is LogFilter.DEBUG:
        return severity is Severity.DEBUG
    return severity >= _THRESHOLDS[log_filter]


def filter_lines(lines: list[str] | tuple[str, ...], log_filter: LogFilter) -> list[LogLine]:
    """Classify ``lines`` and keep the ones that pass ``log_filter``, order preserved."""
    classified = (classify(line) for line in lines)
    return [entry for entry in classified if passes(entry.severity, log_filter)]


def tail(text: str, limit: int) -> tuple[str, ...]:
    """Split command output into non-empty lines and keep the last ``limit``."""
    lines = [line.rstrip() for line in text.splitlines() if line.strip()]
    if limit <= 0:
        return ()
    return tuple(lines[-limit:])
