"""Settings loading for clawdash.

Loads toggles from a JSON settings file merged over defaults.
Search order: explicit --config path → $CLAWDASH_SETTINGS →
~/.config/clawdash/settings.json → defaults only.
"""

from __future__ import annotations

import json
import os
import sys
from dataclasses import asdict, dataclass, fields, replace
from pathlib import Path
from typing import Any

from clawdash.logfeed import LogFilter

SETTINGS_VERSION = 1
REFRESH_INTERVALS: tuple[int, ...] = (1, 2, 5, 10)
MIN_COMMAND_TIMEOUT = 2.0
MAX_COMMAND_TIMEOUT = 5.0

LATEST_RELEASE_URL = "https://api.github.com/repos/openclaw/openclaw/releases/latest"

DEFAULT_CONFIG: dict[str, Any] = {
    "version": SETTINGS_VERSION,
    "refresh_interval": 2,
    "show_cpu": True,
    "show_memory": True,
    "show_gpu": True,
    "show_disk": True,
    "show_network": True,
    "show_system": True,
    "show_runtime": True,
    "show_logs": True,
    "show_version": True,
    "log_level": "all",
    "log_lines": 200,
    "memory_includes_cache": False,
    "disk_mount": "/",
    "network_interface": None,
    "status_command": ["openclaw", "status", "--json"],
    "logs_command": ["openclaw", "logs", "--plain", "--limit", "{log_lines}"],
    "version_command": ["openclaw", "--version"],
    "sessions_file": None,
    "command_timeout": 5.0,
    "version_check": True,
    "version_check_interval": 3600,
    "latest_release_url": LATEST_RELEASE_URL,
}


def default_settings_path() -> Path:
    override = os.environ.get("CLAWDASH_SETTINGS")
    if override:
        return Path(override).expanduser()
    return Path.home() / ".config" / "clawdash" / "settings.json"


@dataclass(frozen=True)
class Settings:
    """Typed view of the merged settings. Unknown keys never reach this."""

    version: int = SETTINGS_VERSION
    refresh_interval: int = 2
    show_cpu: bool = True
    show_memory: bool = True
    show_gpu: bool = True
    show_disk: bool = True
    show_network: bool = True
    show_system: bool = True
    show_runtime: bool = True
    show_logs: bool = True
    show_version: bool = True
    log_level: LogFilter = LogFilter.ALL
    log_lines: int = 200
    memory_includes_cache: bool = False
    disk_mount: str = "/"
    network_interface: str | None = None
    status_command: tuple[str, ...] = ("openclaw", "status", "--json")
    logs_command: tuple[str, ...] = ("openclaw", "logs", "--plain", "--limit", "{log_lines}")
    version_command: tuple[str, ...] = ("openclaw", "--version")
    sessions_file: Path | None = None
    command_timeout: float = 5.0
    version_check: bool = True
    version_check_interval: int = 3600
    latest_release_url: str = LATEST_RELEASE_URL

    @classmethod
    def from_dict(cls, raw: dict[str, Any]) -> Settings:
        """Build from a merged dict, falling back to defaults for bad values."""
        defaults = cls()
        values: dict[str, Any] = {}
        for f in fields(cls):
            if f.name not in raw:
                continue
            coerced = _coerce(f.name, raw[f.name], getattr(defaults, f.name))
            if coerced is not None or f.name in _NULLABLE:
                values[f.name] = coerced
        return replace(defaults, **values)

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["log_level"] = self.log_level.value
        data["sessions_file"] = str(self.sessions_file) if self.sessions_file else None
        for key in ("status_command", "logs_command", "version_command"):
            data[key] = list(data[key])
        return data

    def logs_argv(self) -> list[str]:
        return [part.replace("{log_lines}", str(self.log_lines)) for part in self.logs_command]

    def next_interval(self) -> Settings:
        """Cycle ``refresh_interval`` through the allowed set."""
        idx = REFRESH_INTERVALS.index(self.refresh_interval)
        return replace(self, refresh_interval=REFRESH_INTERVALS[(idx + 1) % len(REFRESH_INTERVALS)])

    def next_log_level(self) -> Settings:
        return replace(self, log_level=self.log_level.next())


_NULLABLE = {"network_interface", "sessions_file"}


def _coerce(name: str, value: Any, default: Any) -> Any:
    """Return ``value`` coerced to the type of ``default``, or None if unusable."""
    if name == "refresh_interval":
        return value if isinstance(value, int) and value in REFRESH_INTERVALS else None
    if name == "log_level":
        try:
            return LogFilter(str(value).lower())
        except ValueError:
            return None
    if name == "command_timeout":
        if isinstance(value, bool) or not isinstance(value, (int, float)):
            return None
        return min(MAX_COMMAND_TIMEOUT, max(MIN_COMMAND_TIMEOUT, float(value)))
    if name in ("status_command", "logs_command", "version_command"):
        if isinstance(value, list) and value and all(isinstance(p, str) for p in value):
            return tuple(value)
        return None
    if name == "sessions_file":
        return Path(value).expanduser() if isinstance(value, str) and value else None
    if name == "network_interface":
        return value if isinstance(value, str) and value else None
    if isinstance(default, bool):
        return value if isinstance(value, bool) else None
    if isinstance(default, int):
        ok = isinstance(value, int) and not isinstance(value, bool) and value > 0
        return value if ok else None
    if isinstance(default, str):
        return value if isinstance(value, str) and value else None
    return None


def _deep_merge(base: dict[str, Any], overlay: dict[str, Any]) -> dict[str, Any]:
    """Merge overlay into base. Nested dicts are merged at the first level only."""
    merged = dict(base)
    for key, value in overlay.items():
        if key in merged and isinstance(merged[key], dict) and isinstance(value, dict):
            merged[key] = {**merged[key], **value}
        else:
            merged[key] = value
    return merged


def _read_json(path: Path) -> dict[str, Any]:
    data = json.loads(path.read_text(encoding="utf-8"))
    if not isinstance(data, dict):
        raise ValueError("settings file must contain a JSON object")
    return data


def load_settings(path: Path | None = None) -> Settings:
    """Load settings, merging the user's JSON over defaults.

    Args:
        path: Explicit settings file path (from --config). If None, tries
              $CLAWDASH_SETTINGS, then ~/.config/clawdash/settings.json.

    Returns:
        Merged, typed settings.

    Raises:
        SystemExit: If an explicit path doesn't exist or can't be parsed.
    """
    if path is not None:
        if not path.is_file():
            print(f"clawdash: settings file not found: {path}", file=sys.stderr)
            raise SystemExit(1)
        try:
            user_config = _read_json(path)
        except (json.JSONDecodeError, ValueError) as e:
            print(f"clawdash: invalid settings in {path}: {e}", file=sys.stderr)
            raise SystemExit(1) from e
        return Settings.from_dict(_deep_merge(DEFAULT_CONFIG, user_config))

    default_path = default_settings_path()
    if default_path.is_file():
        try:
            user_config = _read_json(default_path)
            return Settings.from_dict(_deep_merge(DEFAULT_CONFIG, user_config))
        except (OSError, json.JSONDecodeError, ValueError):
            print(
                f"clawdash: warning: ignoring invalid settings in {default_path}",
                file=sys.stderr,
            )

    return Settings.from_dict(dict(DEFAULT_CONFIG))


def save_settings(settings: Settings, path: Path | None = None) -> Path:
    """Write ``settings`` as JSON, creating the parent directory if needed."""
    target = path or default_settings_path()
    target.parent.mkdir(parents=True, exist_ok=True)
    target.write_text(json.dumps(settings.to_dict(), indent=2) + "\n", encoding="utf-8")
    return target


def dump_default_settings() -> str:
    """Return the default settings as a JSON string."""
    return json.dumps(DEFAULT_CONFIG, indent=2) + "\n"
