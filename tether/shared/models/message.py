"""Display records produced by the message assembler.

A conversation is an ordered list of records. Assistant output is grouped
into Turns made of Parts; everything else (the user's prompts, result
metadata, errors, history snapshot entries) is a flat record.
"""

from __future__ import annotations

import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Union


def _now_ms() -> float:
    return time.time() * 1000


class Completion(Enum):
    COMPLETE = "complete"
    INTERRUPTED = "interrupted"


class ToolStatus(Enum):
    STARTED = "started"
    COMPLETED = "completed"
    FAILED = "failed"


@dataclass
class TextPart:
    id: str
    content: str = ""


@dataclass
class ToolPart:
    id: str
    tool_name: str
    status: ToolStatus
    input: Any = None
    output: Any = None
    timestamp: float | None = None


Part = Union[TextPart, ToolPart]


@dataclass
class Turn:
    """The assistant's response to one request id.

    Live while ``completion`` is None; frozen once it is set.
    """
    prompt_id: str
    parts: list[Part] = field(default_factory=list)
    completion: Completion | None = None
    timestamp: float = field(default_factory=_now_ms)

    @property
    def is_live(self) -> bool:
        return self.completion is None

    @property
    def text(self) -> str:
        return "".join(p.content for p in self.parts if isinstance(p, TextPart))


@dataclass
class UserPromptRecord:
    content: str
    images: list[str] = field(default_factory=list)
    # True until the server reports it started processing.
    pending: bool = False
    timestamp: float = field(default_factory=_now_ms)


@dataclass
class ResultRecord:
    """Result metadata. ``result`` is kept only when no Parts were rendered."""
    prompt_id: str
    success: bool
    result: str | None = None
    error: str | None = None
    cost_usd: float | None = None
    duration_ms: float | None = None
    timestamp: float = field(default_factory=_now_ms)


@dataclass
class ErrorRecord:
    message: str
    prompt_id: str | None = None
    timestamp: float = field(default_factory=_now_ms)


@dataclass
class HistoryResultRecord:
    content: str
    timestamp: float | None = None


@dataclass
class ToolRecord:
    tool_name: str
    status: ToolStatus
    input: Any = None
    output: Any = None
    timestamp: float | None = None


@dataclass
class SystemRecord:
    kind: str  # "error", "stopped", "info"
    content: str
    timestamp: float | None = None


DisplayRecord = Union[
    Turn,
    UserPromptRecord,
    ResultRecord,
    ErrorRecord,
    HistoryResultRecord,
    ToolRecord,
    SystemRecord,
]


def parse_tool_status(value: Any) -> ToolStatus:
    try:
        return ToolStatus(value)
    except ValueError:
        return ToolStatus.FAILED


def record_from_history(entry: dict[str, Any]) -> DisplayRecord | None:
    """Map one persisted conversation entry to a frozen display record.

    Entries with an unknown role yield None.
    """
    role = entry.get("role")
    timestamp = entry.get("timestamp")
    if role == "user":
        return UserPromptRecord(
            content=entry.get("content", ""),
            images=list(entry.get("imagePaths") or []),
            timestamp=timestamp if timestamp is not None else _now_ms(),
        )
    if role == "assistant":
        return HistoryResultRecord(
            content=entry.get("content", ""), timestamp=timestamp,
        )
    if role == "tool":
        return ToolRecord(
            tool_name=entry.get("toolName", ""),
            status=parse_tool_status(entry.get("status")),
            input=entry.get("input"),
            output=entry.get("output"),
            timestamp=timestamp,
        )
    if role == "system":
        return SystemRecord(
            kind=entry.get("type", "info"),
            content=entry.get("content", ""),
            timestamp=timestamp,
        )
    return None
