"""Exception types for clawdash.

Samplers raise these internally; ``Sampler.sample`` converts them to
``Unavailable`` so none of them ever reach the state machine's commit step.
"""

from __future__ import annotations


class ClawdashError(Exception):
    """Base exception for all clawdash errors."""


class SamplerError(ClawdashError):
    """A data source failed to produce a structurally valid reading."""

    def __init__(self, source: str, reason: str) -> None:
        self.source = source
        self.reason = reason
        super().__init__(f"{source}: {reason}")


class CommandError(SamplerError):
    """An external command could not be spawned or exited non-zero."""

    def __init__(self, argv: list[str], reason: str) -> None:
        self.argv = list(argv)
        super().__init__(argv[0] if argv else "command", reason)


class CommandTimeout(CommandError):
    """An external command did not finish within its timeout."""

    def __init__(self, argv: list[str], timeout: float) -> None:
        self.timeout = timeout
        super().__init__(argv, f"timed out after {timeout:g}s")


class SessionsFileError(ClawdashError):
    """Base exception for the persisted sessions file."""

    def __init__(self, path: str, message: str) -> None:
        self.path = path
        super().__init__(f"{path}: {message}")


class SessionsFileNotFound(SessionsFileError):
    """The sessions file does not exist (not an error condition by itself)."""

    def __init__(self, path: str) -> None:
        super().__init__(path, "not found")


class SessionsFileCorrupt(SessionsFileError):
    """The sessions file exists but could not be read or parsed."""


class RenderError(ClawdashError):
    """The output device went away mid-write; the tick itself still counts."""


class DisplayError(ClawdashError):
    """No usable display surface could be acquired at startup."""
