"""Conversation history snapshot: <project>/.tether.local.json.

Holds the agent session id and the conversation entries the server sends
as one ``history`` frame whenever a client connects. Other keys in the
file are preserved across saves. Writes are atomic (temp file + fsync +
rename) so a crash never leaves a truncated snapshot.
"""
from __future__ import annotations

import json
import logging
import os
import tempfile
import time
from pathlib import Path
from typing import Any

logger = logging.getLogger(__name__)

HISTORY_FILENAME = ".tether.local.json"


def _now_ms() -> int:
    return int(time.time() * 1000)


def atomic_write_text(path: Path, content: str, *, encoding: str = "utf-8") -> None:
    """Write *content* to *path* via a fsynced temp file and rename."""
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_name = tempfile.mkstemp(prefix=f".{path.name}.", suffix=".tmp", dir=str(path.parent))
    tmp_path = Path(tmp_name)
    try:
        with os.fdopen(fd, "w", encoding=encoding) as f:
            f.write(content)
            f.flush()
            os.fsync(f.fileno())
        os.replace(tmp_path, path)
    finally:
        if tmp_path.exists():
            try:
                tmp_path.unlink()
            except OSError:
                pass


class HistoryStore:
    """Session id + ordered conversation entries for one project."""

    def __init__(self, project_root: str | Path, filename: str = HISTORY_FILENAME) -> None:
        self.path = Path(project_root) / filename
        self.session_id: str | None = None
        self.entries: list[dict[str, Any]] = []

    def load(self) -> None:
        """Read the snapshot; a missing or corrupt file leaves it empty."""
        data = self._read()
        session_id = data.get("sessionId")
        self.session_id = session_id if isinstance(session_id, str) else None
        entries = data.get("conversationHistory")
        self.entries = [e for e in entries if isinstance(e, dict)] if isinstance(entries, list) else []
        if self.session_id:
            logger.info("Loaded session: %s", self.session_id)
        if self.entries:
            logger.info("Loaded %d history entries from %s", len(self.entries), self.path)

    def save(self) -> None:
        data = self._read()
        data["sessionId"] = self.session_id
        data["conversationHistory"] = self.entries
        try:
            atomic_write_text(self.path, json.dumps(data, indent=2))
        except OSError as exc:
            logger.error("Failed to save session to %s: %s", self.path, exc)
            return
        logger.debug("Saved session with %d history entries", len(self.entries))

    def clear(self) -> None:
        """Forget the session and its history, on disk too."""
        self.session_id = None
        self.entries = []
        if not self.path.exists():
            return
        data = self._read()
        data.pop("sessionId", None)
        data.pop("conversationHistory", None)
        try:
            atomic_write_text(self.path, json.dumps(data, indent=2))
        except OSError as exc:
            logger.error("Failed to clear session in %s: %s", self.path, exc)

    def snapshot(self) -> list[dict[str, Any]]:
        return list(self.entries)

    # ── Entry builders ──

    def add_user(self, content: str, image_paths: list[str] | None = None) -> None:
        entry: dict[str, Any] = {"role": "user", "content": content, "timestamp": _now_ms()}
        if image_paths:
            entry["imagePaths"] = list(image_paths)
        self.entries.append(entry)

    def add_assistant(self, content: str) -> None:
        self.entries.append({"role": "assistant", "content": content, "timestamp": _now_ms()})

    def add_tool(self, tool_name: str, status: str, input: Any = None, output: Any = None) -> None:
        entry: dict[str, Any] = {
            "role": "tool",
            "toolName": tool_name,
            "status": status,
            "timestamp": _now_ms(),
        }
        if input is not None:
            entry["input"] = input
        if output is not None:
            entry["output"] = output
        self.entries.append(entry)

    def add_system(self, kind: str, content: str) -> None:
        self.entries.append({
            "role": "system", "type": kind, "content": content, "timestamp": _now_ms(),
        })

    def _read(self) -> dict[str, Any]:
        if not self.path.is_file():
            return {}
        try:
            data = json.loads(self.path.read_text(encoding="utf-8"))
        except (OSError, ValueError) as exc:
            logger.error("Failed to load session from %s: %s", self.path, exc)
            return {}
        return data if isinstance(data, dict) else {}
