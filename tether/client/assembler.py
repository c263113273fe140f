"""Streaming message assembler.

Reduces the flat, time-ordered stream of typed events coming back from
the prompt server into a stable list of display records plus at most
one live Turn. The assembler never talks to the network; it is a pure
reducer driven by ``handle`` and by the local ``submit_prompt`` /
``interrupt`` actions.
"""

from __future__ import annotations

import logging
from collections.abc import Callable

from tether.adapters.events import (
    ErrorEvent,
    History,
    Result,
    SessionCleared,
    StatusEvent,
    Stopped,
    StreamChunk,
    TetherEvent,
    ToolEvent,
)
from tether.engine.config import fire_callback
from tether.shared.models.message import (
    Completion,
    DisplayRecord,
    ErrorRecord,
    Part,
    ResultRecord,
    TextPart,
    ToolPart,
    ToolStatus,
    Turn,
    UserPromptRecord,
    parse_tool_status,
    record_from_history,
)

logger = logging.getLogger(__name__)


class MessageAssembler:
    """Turns server events into frozen records and one live Turn.

    Invariants:
    - at most one live Turn; events for a new request id freeze the old
      one as interrupted before the new one opens
    - Parts keep arrival order; a tool only becomes a Part once it
      leaves ``started``
    - freezing a Turn that has no Parts appends nothing
    """

    def __init__(self, on_change: Callable[[], None] | None = None) -> None:
        self._records: list[DisplayRecord] = []
        self._live: Turn | None = None
        self._part_counter = 0
        self._on_change = on_change

    # ── Views ──

    @property
    def records(self) -> list[DisplayRecord]:
        return list(self._records)

    @property
    def live_turn(self) -> Turn | None:
        return self._live

    @property
    def live_parts(self) -> list[Part]:
        return list(self._live.parts) if self._live is not None else []

    # ── Event reduction ──

    def handle(self, event: TetherEvent) -> bool:
        """Apply one server event. Returns False for events it ignores."""
        if isinstance(event, StreamChunk):
            self._on_stream(event)
        elif isinstance(event, ToolEvent):
            self._on_tool(event)
        elif isinstance(event, Result):
            self._on_result(event)
        elif isinstance(event, ErrorEvent):
            self._freeze(Completion.INTERRUPTED)
            self._records.append(ErrorRecord(
                message=event.message,
                prompt_id=event.prompt_id,
                **self._stamp(event),
            ))
        elif isinstance(event, Stopped):
            self._freeze(Completion.INTERRUPTED)
        elif isinstance(event, SessionCleared):
            self.reset()
            return True
        elif isinstance(event, History):
            self._on_history(event)
        elif isinstance(event, StatusEvent):
            if event.status != "processing":
                return True
            self._acknowledge_prompt()
        else:
            return False
        self._changed()
        return True

    def _on_stream(self, event: StreamChunk) -> None:
        turn = self._turn_for(event.prompt_id)
        if not event.chunk:
            return
        last = turn.parts[-1] if turn.parts else None
        if isinstance(last, TextPart):
            last.content += event.chunk
        else:
            turn.parts.append(TextPart(id=self._next_id("text"), content=event.chunk))

    def _on_tool(self, event: ToolEvent) -> None:
        turn = self._turn_for(event.prompt_id)
        status = parse_tool_status(event.status)
        if status is ToolStatus.STARTED:
            return
        turn.parts.append(ToolPart(
            id=self._next_id("tool"),
            tool_name=event.tool_name,
            status=status,
            input=event.input,
            output=event.output,
            timestamp=event.timestamp,
        ))

    def _on_result(self, event: Result) -> None:
        rendered = self._live is not None and bool(self._live.parts)
        self._freeze(Completion.COMPLETE)
        has_metadata = event.cost_usd is not None or event.duration_ms is not None
        failed_visibly = not event.success and (bool(event.error) or not rendered)
        if not (has_metadata or failed_visibly):
            return
        self._records.append(ResultRecord(
            prompt_id=event.prompt_id,
            success=event.success,
            # Rendered Parts already carry the payload text.
            result=None if rendered else event.result,
            error=event.error,
            cost_usd=event.cost_usd,
            duration_ms=event.duration_ms,
            **self._stamp(event),
        ))

    def _on_history(self, event: History) -> None:
        records: list[DisplayRecord] = []
        for entry in event.entries:
            if not isinstance(entry, dict):
                logger.warning("Skipping malformed history entry: %r", entry)
                continue
            record = record_from_history(entry)
            if record is None:
                logger.debug("Skipping history entry with role %r", entry.get("role"))
                continue
            records.append(record)
        self._records = records
        self._live = None
        logger.debug("Loaded %d history record(s)", len(records))

    def _acknowledge_prompt(self) -> None:
        if not self._records:
            return
        last = self._records[-1]
        if isinstance(last, UserPromptRecord) and last.pending:
            last.pending = False

    # ── Local actions ──

    def submit_prompt(
        self, content: str, attachments: list[str] | None = None,
    ) -> UserPromptRecord:
        """Echo a prompt locally as pending; any live Turn is interrupted."""
        self._freeze(Completion.INTERRUPTED)
        record = UserPromptRecord(
            content=content, images=list(attachments or []), pending=True,
        )
        self._records.append(record)
        self._changed()
        return record

    def interrupt(self) -> bool:
        """Freeze the live Turn as interrupted. Returns True if one existed."""
        if self._live is None:
            return False
        self._freeze(Completion.INTERRUPTED)
        self._changed()
        return True

    def replace_turn(self, prompt_id: str, parts: list[Part]) -> bool:
        """Swap a frozen Turn's Parts for an authoritative server snapshot."""
        for record in reversed(self._records):
            if isinstance(record, Turn) and record.prompt_id == prompt_id:
                record.parts = list(parts)
                self._changed()
                return True
        logger.debug("replace_turn: no frozen turn for %s", prompt_id)
        return False

    def reset(self) -> None:
        """Forget everything, including the part id counter."""
        self._records = []
        self._live = None
        self._part_counter = 0
        self._changed()

    # ── Internals ──

    def _turn_for(self, prompt_id: str) -> Turn:
        if self._live is not None and self._live.prompt_id == prompt_id:
            return self._live
        self._freeze(Completion.INTERRUPTED)
        self._live = Turn(prompt_id=prompt_id)
        return self._live

    def _freeze(self, completion: Completion) -> None:
        turn = self._live
        if turn is None:
            return
        self._live = None
        if not turn.parts:
            return
        turn.completion = completion
        self._records.append(turn)

    def _next_id(self, kind: str) -> str:
        part_id = f"{kind}-{self._part_counter}"
        self._part_counter += 1
        return part_id

    @staticmethod
    def _stamp(event: TetherEvent) -> dict:
        return {"timestamp": event.timestamp} if event.timestamp is not None else {}

    def _changed(self) -> None:
        fire_callback(self._on_change)
