"""Coding-agent backends for the prompt server.

A backend runs one prompt to completion, reporting streamed text and
tool activity through an async ``emit`` callback, and returns the
terminal result. The server owns cancellation: stopping a prompt
cancels the task running ``run``.
"""
from __future__ import annotations

import json
import logging
import os
import shutil
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import Any, Protocol

from tether.adapters.events import StreamChunk, TetherEvent, ToolEvent

logger = logging.getLogger(__name__)

EmitFn = Callable[[TetherEvent], Awaitable[None]]

SYSTEM_PROMPT_APPEND = """You are running as part of Tether, a tool that relays instructions from a developer's phone to this machine. The developer watches the running app on their device and sends requests while away from the keyboard.

IMPORTANT CONSTRAINTS:
- The app picks up changes through live reload; keep edits incremental
- DO NOT add new dependencies unless the user EXPLICITLY asks for it
- Adding dependencies may require a full native rebuild, which is slow and disruptive
- If a new dependency is truly necessary, clearly warn the user first"""


@dataclass
class AgentRunResult:
    success: bool
    result: str | None = None
    error: str | None = None
    cost_usd: float | None = None
    duration_ms: float | None = None
    session_id: str | None = None


class AgentBackend(Protocol):
    """Runs prompts against a coding agent."""

    async def run(
        self,
        prompt: str,
        *,
        session_id: str | None,
        image_paths: list[str] | None,
        emit: EmitFn,
    ) -> AgentRunResult: ...


def build_prompt(content: str, image_paths: list[str] | None) -> str:
    """Append read-the-image instructions for attached images."""
    if not image_paths:
        return content
    instructions = "\n".join(
        f"Use the Read tool to view the image at: {p}" for p in image_paths
    )
    if content:
        return f"{content}\n\n[Attached images, please view them first]\n{instructions}"
    return f"[Attached images, please view them]\n{instructions}"


def _stringify(value: Any, limit: int = 4000) -> Any:
    """Tool payloads go on the wire as JSON; trim oversized text."""
    if isinstance(value, str):
        return value[:limit]
    if isinstance(value, list):
        texts = [
            item.get("text", "") if isinstance(item, dict) else str(getattr(item, "text", item))
            for item in value
        ]
        return "\n".join(texts)[:limit]
    try:
        json.dumps(value)
    except (TypeError, ValueError):
        return str(value)[:limit]
    return value


class ClaudeAgentBackend:
    """Backend on top of claude_agent_sdk.query() with session resume."""

    def __init__(
        self,
        cwd: str,
        *,
        model: str | None = None,
        permission_mode: str = "bypassPermissions",
        system_prompt_append: str = SYSTEM_PROMPT_APPEND,
    ) -> None:
        self._cwd = cwd
        self._model = model
        self._permission_mode = permission_mode
        self._system_prompt_append = system_prompt_append

    def is_available(self) -> bool:
        """Check if claude CLI is installed."""
        return shutil.which("claude") is not None

    async def run(
        self,
        prompt: str,
        *,
        session_id: str | None,
        image_paths: list[str] | None,
        emit: EmitFn,
    ) -> AgentRunResult:
        # Import SDK lazily so the client side never needs it
        try:
            from claude_agent_sdk import ClaudeAgentOptions, query
        except ImportError:
            return AgentRunResult(
                success=False, error="claude_agent_sdk not installed",
            )

        options_kwargs: dict[str, Any] = dict(
            cwd=self._cwd,
            permission_mode=self._permission_mode,
            include_partial_messages=True,
            setting_sources=["project"],
            system_prompt={
                "type": "preset",
                "preset": "claude_code",
                "append": self._system_prompt_append,
            },
        )
        if self._model:
            options_kwargs["model"] = self._model
        if session_id:
            options_kwargs["resume"] = session_id
        # A nested CLI refuses to start when this is inherited.
        os.environ.pop("CLAUDECODE", None)
        options = ClaudeAgentOptions(**options_kwargs)

        logger.info(
            "Starting agent query model=%s mode=%s resume=%s images=%d",
            self._model or "<default>", self._permission_mode,
            session_id or "-", len(image_paths or []),
        )

        tool_calls: dict[str, tuple[str, Any]] = {}
        current_session = session_id
        outcome = AgentRunResult(success=False, error="Agent finished without a result")

        async for message in query(prompt=build_prompt(prompt, image_paths), options=options):
            sid = getattr(message, "session_id", None)
            if sid is None:
                data = getattr(message, "data", None)
                if isinstance(data, dict):
                    sid = data.get("session_id")
            if sid and sid != current_session:
                current_session = sid
                logger.info("Agent session id: %s", sid)

            event = getattr(message, "event", None)
            if isinstance(event, dict):
                if event.get("type") == "content_block_delta":
                    delta = event.get("delta") or {}
                    if delta.get("type") == "text_delta" and delta.get("text"):
                        await emit(StreamChunk(chunk=delta["text"]))
                continue

            if hasattr(message, "total_cost_usd"):
                is_error = bool(getattr(message, "is_error", False))
                success = getattr(message, "subtype", "") == "success" and not is_error
                result_text = getattr(message, "result", None)
                outcome = AgentRunResult(
                    success=success,
                    result=result_text if success else None,
                    error=None if success else (result_text or getattr(message, "subtype", "error")),
                    cost_usd=message.total_cost_usd,
                    duration_ms=getattr(message, "duration_ms", None),
                    session_id=current_session,
                )
                continue

            for block in getattr(message, "content", None) or []:
                if isinstance(block, str):
                    continue
                if hasattr(block, "name") and hasattr(block, "input"):
                    tool_calls[getattr(block, "id", "")] = (block.name, block.input)
                    await emit(ToolEvent(tool_name=block.name, status="started", input=block.input))
                elif hasattr(block, "tool_use_id"):
                    name, tool_input = tool_calls.pop(block.tool_use_id, ("tool", None))
                    failed = bool(getattr(block, "is_error", False))
                    await emit(ToolEvent(
                        tool_name=name,
                        status="failed" if failed else "completed",
                        input=tool_input,
                        output=_stringify(getattr(block, "content", None)),
                    ))

        outcome.session_id = outcome.session_id or current_session
        return outcome
