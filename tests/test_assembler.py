"""Tests for the streaming message assembler.

Covers:
- History snapshot followed by a streamed, completed prompt
- Interleaved text and tool parts in arrival order
- Switching request ids mid-stream (interrupted turn, parts intact)
- Result metadata rules (no duplicated payload text)
- Errors, stops, session reset and part id counter
"""
from __future__ import annotations

from tether.adapters.events import (
    ErrorEvent,
    History,
    Result,
    SessionCleared,
    StatusEvent,
    Stopped,
    StreamChunk,
    ToolEvent,
)
from tether.client.assembler import MessageAssembler
from tether.shared.models.message import (
    Completion,
    ErrorRecord,
    HistoryResultRecord,
    ResultRecord,
    SystemRecord,
    TextPart,
    ToolPart,
    ToolRecord,
    ToolStatus,
    Turn,
    UserPromptRecord,
)


def _turns(assembler: MessageAssembler) -> list[Turn]:
    return [r for r in assembler.records if isinstance(r, Turn)]


def test_history_then_streamed_prompt():
    asm = MessageAssembler()
    asm.handle(History(entries=[
        {"role": "user", "content": "hello", "timestamp": 1},
        {"role": "assistant", "content": "hi there", "timestamp": 2},
    ]))
    records = asm.records
    assert len(records) == 2
    assert isinstance(records[0], UserPromptRecord) and records[0].content == "hello"
    assert isinstance(records[1], HistoryResultRecord) and records[1].content == "hi there"

    asm.submit_prompt("add a button")
    asm.handle(StreamChunk(prompt_id="p1", chunk="Sure, ", done=False))
    asm.handle(StreamChunk(prompt_id="p1", chunk="adding it.", done=True))
    asm.handle(Result(prompt_id="p1", success=True))

    turns = _turns(asm)
    assert len(turns) == 1
    turn = turns[0]
    assert turn.completion is Completion.COMPLETE
    assert len(turn.parts) == 1
    assert isinstance(turn.parts[0], TextPart)
    assert turn.parts[0].content == "Sure, adding it."
    assert not any(isinstance(r, ResultRecord) for r in asm.records)
    assert asm.live_turn is None


def test_history_maps_every_role():
    asm = MessageAssembler()
    asm.handle(History(entries=[
        {"role": "user", "content": "q", "imagePaths": ["/img/a.png"]},
        {"role": "tool", "toolName": "Edit", "status": "completed", "input": {"file": "a"}},
        {"role": "system", "type": "stopped", "content": "Stopped by user"},
        {"role": "bogus", "content": "?"},
        "not a dict",
    ]))
    records = asm.records
    assert [type(r) for r in records] == [UserPromptRecord, ToolRecord, SystemRecord]
    assert records[0].images == ["/img/a.png"]
    assert records[1].status is ToolStatus.COMPLETED
    assert records[2].kind == "stopped"


def test_tool_started_is_invisible_and_parts_keep_order():
    asm = MessageAssembler()
    asm.handle(StreamChunk(prompt_id="p1", chunk="Reading "))
    asm.handle(ToolEvent(prompt_id="p1", tool_name="Read", status="started"))
    assert len(asm.live_parts) == 1

    asm.handle(ToolEvent(prompt_id="p1", tool_name="Read", status="completed", output="ok"))
    asm.handle(StreamChunk(prompt_id="p1", chunk="done"))
    asm.handle(ToolEvent(prompt_id="p1", tool_name="Bash", status="failed"))

    parts = asm.live_parts
    assert [type(p) for p in parts] == [TextPart, ToolPart, TextPart, ToolPart]
    assert [p.id for p in parts] == ["text-0", "tool-1", "text-2", "tool-3"]
    assert parts[3].status is ToolStatus.FAILED


def test_new_request_id_interrupts_live_turn():
    asm = MessageAssembler()
    asm.handle(StreamChunk(prompt_id="p1", chunk="partial"))
    asm.handle(ToolEvent(prompt_id="p1", tool_name="Edit", status="completed"))
    asm.handle(StreamChunk(prompt_id="p2", chunk="fresh"))

    turns = _turns(asm)
    assert len(turns) == 1
    assert turns[0].prompt_id == "p1"
    assert turns[0].completion is Completion.INTERRUPTED
    assert [type(p) for p in turns[0].parts] == [TextPart, ToolPart]
    assert asm.live_turn is not None and asm.live_turn.prompt_id == "p2"
    assert asm.live_turn.is_live and not turns[0].is_live


def test_result_with_metrics_appends_metadata_without_payload_text():
    asm = MessageAssembler()
    asm.handle(StreamChunk(prompt_id="p1", chunk="All done."))
    asm.handle(Result(
        prompt_id="p1", success=True, result="All done.", cost_usd=0.02, duration_ms=1500,
    ))
    meta = asm.records[-1]
    assert isinstance(meta, ResultRecord)
    assert meta.result is None
    assert meta.cost_usd == 0.02
    assert meta.duration_ms == 1500


def test_failure_without_parts_keeps_payload():
    asm = MessageAssembler()
    asm.handle(Result(prompt_id="p1", success=False, result="partial output"))
    meta = asm.records[-1]
    assert isinstance(meta, ResultRecord)
    assert meta.success is False
    assert meta.result == "partial output"
    assert _turns(asm) == []


def test_success_without_parts_or_metrics_adds_nothing():
    asm = MessageAssembler()
    asm.handle(Result(prompt_id="p1", success=True, result="text"))
    assert asm.records == []


def test_error_freezes_live_turn_as_interrupted():
    asm = MessageAssembler()
    asm.handle(StreamChunk(prompt_id="p1", chunk="working"))
    asm.handle(ErrorEvent(prompt_id="p1", message="agent crashed"))

    turn, err = asm.records
    assert isinstance(turn, Turn) and turn.completion is Completion.INTERRUPTED
    assert isinstance(err, ErrorRecord) and err.message == "agent crashed"


def test_error_without_live_turn_appends_alone():
    asm = MessageAssembler()
    asm.handle(ErrorEvent(message="Invalid JSON message"))
    assert len(asm.records) == 1
    assert isinstance(asm.records[0], ErrorRecord)


def test_stop_preserves_partial_parts_and_is_noop_when_idle():
    asm = MessageAssembler()
    asm.handle(Stopped())
    assert asm.records == []

    asm.handle(StreamChunk(prompt_id="p1", chunk="half"))
    asm.handle(Stopped())
    turns = _turns(asm)
    assert len(turns) == 1
    assert turns[0].completion is Completion.INTERRUPTED
    assert turns[0].text == "half"


def test_session_reset_clears_everything_and_restarts_ids():
    asm = MessageAssembler()
    asm.handle(StreamChunk(prompt_id="p1", chunk="a"))
    asm.handle(Result(prompt_id="p1", success=True))
    asm.handle(SessionCleared())
    assert asm.records == []
    assert asm.live_turn is None

    asm.handle(StreamChunk(prompt_id="p2", chunk="b"))
    assert asm.live_parts[0].id == "text-0"


def test_processing_status_acknowledges_pending_prompt():
    asm = MessageAssembler()
    record = asm.submit_prompt("go", ["/tmp/a.png"])
    assert record.pending is True
    assert asm.handle(StatusEvent(status="idle")) is True
    assert record.pending is True
    asm.handle(StatusEvent(status="processing", prompt_id="p1"))
    assert record.pending is False


def test_interrupt_and_replace_turn():
    asm = MessageAssembler()
    assert asm.interrupt() is False
    asm.handle(StreamChunk(prompt_id="p1", chunk="trunc"))
    assert asm.interrupt() is True

    replaced = asm.replace_turn("p1", [TextPart(id="server-0", content="full text")])
    assert replaced is True
    assert _turns(asm)[0].text == "full text"
    assert asm.replace_turn("missing", []) is False


def test_change_callback_fires():
    calls: list[int] = []
    asm = MessageAssembler(on_change=lambda: calls.append(1))
    asm.handle(StreamChunk(prompt_id="p1", chunk="x"))
    asm.submit_prompt("y")
    assert len(calls) == 2
