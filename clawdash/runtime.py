"""Parsers for the external agent runtime's status document and sessions file.

Both inputs are treated as untrusted: missing keys become None, wrong
types are ignored, and a document that is not a JSON object fails closed.
"""

from __future__ import annotations

import json
from pathlib import Path
from typing import Any

from clawdash.errors import SamplerError, SessionsFileCorrupt, SessionsFileNotFound
from clawdash.models import Agent, RuntimeStatus, Session

SOURCE = "runtime"


# ── Field coercion ─────────────────────────────────────────────────────────


def _as_int(value: Any) -> int | None:
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return int(value)
    return None


def _as_str(value: Any) -> str | None:
    if isinstance(value, str) and value:
        return value
    return None


def _resolve_model(model: Any) -> str | None:
    """Coerce a model value (str, {"primary": "..."} dict, None) to a string."""
    if isinstance(model, str):
        return model or None
    if isinstance(model, dict):
        for value in model.values():
            if isinstance(value, str) and value:
                return value
    return None


def _token_total(entry: dict[str, Any]) -> int | None:
    total = _as_int(entry.get("totalTokens"))
    if total is not None:
        return total
    usage = entry.get("tokenUsage")
    if not isinstance(usage, dict):
        return None
    output = entry.get("tokenUsageOutput")
    output_total = _as_int(output.get("total")) if isinstance(output, dict) else None
    return (_as_int(usage.get("total")) or 0) + (output_total or 0)


def _agent_from_key(key: str) -> str | None:
    # agent:<id>:<rest>
    parts = key.split(":")
    if len(parts) >= 3 and parts[0] == "agent" and parts[1]:
        return parts[1]
    return None


# ── Sessions ───────────────────────────────────────────────────────────────


def parse_session(key: str, entry: dict[str, Any]) -> Session:
    total = _token_total(entry)
    context = _as_int(entry.get("contextTokens"))

    percent = entry.get("percentUsed")
    if isinstance(percent, bool) or not isinstance(percent, (int, float)):
        percent = None
    if percent is None and total is not None and context:
        percent = round(min(999.0, total / context * 100), 1)

    return Session(
        key=key,
        display_name=_as_str(entry.get("displayName")) or _as_str(entry.get("label")) or "",
        model=_resolve_model(entry.get("model") or entry.get("modelOverride")),
        channel=_as_str(entry.get("channel")) or _as_str(entry.get("lastChannel")),
        total_tokens=total,
        context_tokens=context,
        updated_at=_as_int(entry.get("updatedAt")),
        percent_used=float(percent) if percent is not None else None,
        agent_id=_as_str(entry.get("agentId")) or _agent_from_key(key),
    )


def _parse_sessions(raw: Any) -> tuple[Session, ...]:
    if not isinstance(raw, list):
        return ()
    sessions: list[Session] = []
    seen: set[str] = set()
    for entry in raw:
        if not isinstance(entry, dict):
            continue
        key = _as_str(entry.get("key")) or _as_str(entry.get("sessionId"))
        if key is None or key in seen:
            continue
        seen.add(key)
        sessions.append(parse_session(key, entry))
    return tuple(sessions)


# ── Agents ─────────────────────────────────────────────────────────────────


def _parse_agent(entry: dict[str, Any]) -> Agent | None:
    agent_id = _as_str(entry.get("id")) or _as_str(entry.get("agentId"))
    if agent_id is None:
        return None
    schedule = entry.get("every") or entry.get("schedule") or entry.get("interval")
    enabled = entry.get("enabled")
    return Agent(
        id=agent_id,
        enabled=enabled if isinstance(enabled, bool) else True,
        schedule=str(schedule) if schedule not in (None, "") else None,
        bootstrap_pending=bool(entry.get("bootstrapPending")),
        sessions_count=_as_int(entry.get("sessionsCount")) or 0,
    )


def _agent_entries(doc: dict[str, Any]) -> list[Any]:
    agents = doc.get("agents")
    if isinstance(agents, dict) and isinstance(agents.get("agents"), list):
        return agents["agents"]
    if isinstance(agents, list):
        return agents
    heartbeat = doc.get("heartbeat")
    if isinstance(heartbeat, dict) and isinstance(heartbeat.get("agents"), list):
        return heartbeat["agents"]
    return []


def _parse_agents(doc: dict[str, Any]) -> tuple[Agent, ...]:
    agents = (
        _parse_agent(entry) for entry in _agent_entries(doc) if isinstance(entry, dict)
    )
    return tuple(agent for agent in agents if agent is not None)


# ── Status document ────────────────────────────────────────────────────────


def parse_status(text: str) -> RuntimeStatus:
    """Parse ``<runtime> status --json`` output.

    Raises:
        SamplerError: If the text is not a JSON object.
    """
    try:
        doc = json.loads(text)
    except json.JSONDecodeError as e:
        raise SamplerError(SOURCE, f"invalid status JSON: {e.msg}") from e
    if not isinstance(doc, dict):
        raise SamplerError(SOURCE, "status document is not an object")

    gateway = doc.get("gateway")
    reachable = isinstance(gateway, dict) and gateway.get("reachable") is True

    sessions_block = doc.get("sessions")
    recent = sessions_block.get("recent") if isinstance(sessions_block, dict) else None
    sessions = _parse_sessions(recent)

    agents_block = doc.get("agents")
    total = None
    if isinstance(agents_block, dict):
        total = _as_int(agents_block.get("totalSessions"))
    if total is None and isinstance(sessions_block, dict):
        total = _as_int(sessions_block.get("count"))

    return RuntimeStatus(
        reachable=reachable,
        sessions=sessions,
        agents=_parse_agents(doc),
        total_sessions=total if total is not None else len(sessions),
    )


# ── Sessions file ──────────────────────────────────────────────────────────


def load_sessions_file(path: Path) -> tuple[Session, ...]:
    """Read the persisted sessions store, newest first.

    Raises:
        SessionsFileNotFound: If ``path`` does not exist.
        SessionsFileCorrupt: If it exists but cannot be read or parsed.
    """
    if not path.exists():
        raise SessionsFileNotFound(str(path))
    try:
        store = json.loads(path.read_text(encoding="utf-8"))
    except (OSError, UnicodeDecodeError) as e:
        raise SessionsFileCorrupt(str(path), f"unreadable: {e}") from e
    except json.JSONDecodeError as e:
        raise SessionsFileCorrupt(str(path), f"invalid JSON: {e.msg}") from e
    if not isinstance(store, dict):
        raise SessionsFileCorrupt(str(path), "expected an object keyed by session id")

    sessions = [
        parse_session(str(key), entry)
        for key, entry in store.items()
        if isinstance(entry, dict)
    ]
    sessions.sort(key=lambda s: s.updated_at or 0, reverse=True)
    return tuple(sessions)


# ── Version ────────────────────────────────────────────────────────────────


def parse_release_tag(payload: Any) -> str | None:
    """Extract ``tag_name`` from a releases API payload, minus any leading ``v``."""
    if not isinstance(payload, dict):
        return None
    tag = payload.get("tag_name")
    if not isinstance(tag, str) or not tag:
        return None
    return tag[1:] if tag.startswith("v") else tag
