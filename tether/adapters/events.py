"""Frame types exchanged between the client panel and the prompt server.

Every frame on the wire is one JSON object with a ``type`` discriminator
and camelCase keys. Each frame kind is parsed into a typed dataclass with
snake_case fields for safe consumption by the assembler and the branch
manager, and serialized back with ``event_to_dict``.
"""
from __future__ import annotations

import json
import re
from dataclasses import dataclass, field
from typing import Any


@dataclass
class TetherEvent:
    """Base frame. ``event_type`` maps to the wire ``type`` key."""
    event_type: str = ""
    timestamp: float | None = None


# ── Inbound (server → client) ──


@dataclass
class StreamChunk(TetherEvent):
    event_type: str = "stream"
    prompt_id: str = ""
    chunk: str = ""
    done: bool = False


@dataclass
class ToolEvent(TetherEvent):
    event_type: str = "tool"
    prompt_id: str = ""
    tool_name: str = ""
    status: str = "started"  # "started", "completed", "failed"
    input: Any = None
    output: Any = None


@dataclass
class Result(TetherEvent):
    event_type: str = "result"
    prompt_id: str = ""
    success: bool = True
    result: str | None = None
    error: str | None = None
    cost_usd: float | None = None
    duration_ms: float | None = None


@dataclass
class ErrorEvent(TetherEvent):
    event_type: str = "error"
    prompt_id: str | None = None
    message: str = ""


@dataclass
class StatusEvent(TetherEvent):
    event_type: str = "status"
    status: str = "idle"  # "connected", "processing", "idle"
    prompt_id: str | None = None
    branch_name: str | None = None


@dataclass
class SessionCleared(TetherEvent):
    event_type: str = "session_cleared"


@dataclass
class Stopped(TetherEvent):
    event_type: str = "stopped"


@dataclass
class History(TetherEvent):
    """Bulk conversation snapshot delivered once per connection."""
    event_type: str = "history"
    entries: list = field(default_factory=list)


@dataclass
class BranchesList(TetherEvent):
    event_type: str = "branches_list"
    branches: list = field(default_factory=list)


@dataclass
class BranchSwitched(TetherEvent):
    event_type: str = "branch_switched"
    branch_name: str = ""
    success: bool = False
    error: str | None = None
    # Set when the switch succeeded but restoring stashed work conflicted.
    warning: str | None = None


@dataclass
class BranchCreated(TetherEvent):
    event_type: str = "branch_created"
    branch_name: str = ""
    success: bool = False
    error: str | None = None


@dataclass
class GitStatus(TetherEvent):
    event_type: str = "git_status"
    branch_name: str = ""
    changes: list = field(default_factory=list)  # [{file, status}]
    has_pr: bool = False
    pr_url: str | None = None


# ── Outbound (client → server) ──


@dataclass
class Prompt(TetherEvent):
    event_type: str = "prompt"
    id: str = ""
    content: str = ""
    # Server-side reference ids returned by the upload side channel.
    image_paths: list | None = None


@dataclass
class NewSession(TetherEvent):
    event_type: str = "new_session"


@dataclass
class Stop(TetherEvent):
    event_type: str = "stop"


@dataclass
class DiscardChanges(TetherEvent):
    event_type: str = "discard_changes"


@dataclass
class ListBranches(TetherEvent):
    event_type: str = "list_branches"


@dataclass
class SwitchBranch(TetherEvent):
    event_type: str = "switch_branch"
    branch_name: str = ""


@dataclass
class CreateBranch(TetherEvent):
    event_type: str = "create_branch"
    branch_name: str = ""


# Map of wire type strings to dataclass constructors
_EVENT_MAP: dict[str, type[TetherEvent]] = {
    "stream": StreamChunk,
    "tool": ToolEvent,
    "result": Result,
    "error": ErrorEvent,
    "status": StatusEvent,
    "session_cleared": SessionCleared,
    "stopped": Stopped,
    "history": History,
    "branches_list": BranchesList,
    "branch_switched": BranchSwitched,
    "branch_created": BranchCreated,
    "git_status": GitStatus,
    "prompt": Prompt,
    "new_session": NewSession,
    "stop": Stop,
    "discard_changes": DiscardChanges,
    "list_branches": ListBranches,
    "switch_branch": SwitchBranch,
    "create_branch": CreateBranch,
}

# Wire keys whose snake_case form is not derivable mechanically
_KEY_ALIASES: dict[str, str] = {"hasPR": "has_pr"}
_FIELD_ALIASES: dict[str, str] = {v: k for k, v in _KEY_ALIASES.items()}

_CAMEL_RE = re.compile(r"(?<!^)(?=[A-Z])")


def to_snake(key: str) -> str:
    if key in _KEY_ALIASES:
        return _KEY_ALIASES[key]
    return _CAMEL_RE.sub("_", key).lower()


def to_camel(name: str) -> str:
    if name in _FIELD_ALIASES:
        return _FIELD_ALIASES[name]
    head, *rest = name.split("_")
    return head + "".join(part.title() for part in rest)


def frame_type(frame: dict[str, Any] | str) -> str | None:
    """Return the ``type`` discriminator of a raw or decoded frame.

    Text that is not a JSON object has no type.
    """
    if isinstance(frame, str):
        try:
            frame = json.loads(frame)
        except ValueError:
            return None
    if not isinstance(frame, dict):
        return None
    value = frame.get("type")
    return value if isinstance(value, str) else None


def event_to_dict(event: TetherEvent) -> dict[str, Any]:
    """Convert a typed frame dataclass to a wire dict (None fields dropped)."""
    d: dict[str, Any] = {"type": event.event_type}
    for f in event.__dataclass_fields__:
        if f == "event_type":
            continue
        val = getattr(event, f)
        if val is not None:
            d[to_camel(f)] = val
    return d


def dict_to_event(data: dict[str, Any]) -> TetherEvent:
    """Convert a wire dict to a typed frame dataclass.

    Unknown ``type`` values come back as a bare ``TetherEvent`` carrying
    the type string, so callers can log and skip them.
    """
    event_type = data.get("type", "")
    cls = _EVENT_MAP.get(event_type, TetherEvent)
    valid_fields = {f.name for f in cls.__dataclass_fields__.values()}
    filtered: dict[str, Any] = {}
    for key, value in data.items():
        if key == "type":
            continue
        name = to_snake(key)
        if name in valid_fields and name != "event_type":
            filtered[name] = value
    if cls is TetherEvent:
        filtered["event_type"] = event_type
    return cls(**filtered)
