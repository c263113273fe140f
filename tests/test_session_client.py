"""Tests for SessionClient composition over a fake socket."""
from __future__ import annotations

import pytest

from tether.adapters.connection import ConnectionStatus
from tether.adapters.event_bus import EventBus
from tether.adapters.retry import FixedIntervalPolicy
from tether.client.session import COMMIT_PROMPT, SessionClient, classify_inbound
from tether.engine.errors import SendWhileDisconnected, UploadFailure
from tether.shared.models.message import Completion, Turn, UserPromptRecord

ADDRESS = "ws://127.0.0.1:3847/?secret=tok"


class FakeUploader:
    def __init__(self, refs: list[str] | None = None, error: Exception | None = None) -> None:
        self.refs = refs or []
        self.error = error
        self.calls: list[list[str]] = []
        self.closed = False

    async def upload(self, paths):
        self.calls.append(list(paths))
        if self.error is not None:
            raise self.error
        return self.refs

    async def close(self) -> None:
        self.closed = True


def _client(socket_factory, uploader=None, bus=None) -> SessionClient:
    return SessionClient(
        ADDRESS,
        policy=FixedIntervalPolicy(interval=0, max_attempts=3),
        socket_factory=socket_factory,
        uploader=uploader or FakeUploader(),
        bus=bus,
    )


def test_classify_inbound():
    assert classify_inbound({"type": "status", "status": "processing"}) is ConnectionStatus.PROCESSING
    assert classify_inbound({"type": "status", "status": "idle"}) is ConnectionStatus.CONNECTED
    assert classify_inbound({"type": "result", "success": True}) is ConnectionStatus.CONNECTED
    assert classify_inbound({"type": "stream", "chunk": "x"}) is None


@pytest.mark.asyncio
async def test_prompt_while_disconnected_echoes_and_reports(socket_factory):
    client = _client(socket_factory)
    prompt_id = await client.submit_prompt("hello")

    assert prompt_id is None
    assert isinstance(client.last_error, SendWhileDisconnected)
    records = client.assembler.records
    assert isinstance(records[-1], UserPromptRecord)
    assert records[-1].content == "hello"
    await client.aclose()


@pytest.mark.asyncio
async def test_prompt_with_attachments_carries_server_refs(socket_factory, wait_until):
    uploader = FakeUploader(refs=["/proj/.tether-images/abc.png"])
    client = _client(socket_factory, uploader=uploader)
    client.connect()
    await wait_until(lambda: client.is_connected)

    prompt_id = await client.submit_prompt("look at this", ["/tmp/shot.png"])
    assert prompt_id is not None
    assert client.status is ConnectionStatus.SENDING
    await wait_until(lambda: socket_factory.last.sent)

    frame = socket_factory.last.sent_frames()[0]
    assert frame == {
        "type": "prompt",
        "id": prompt_id,
        "content": "look at this",
        "imagePaths": ["/proj/.tether-images/abc.png"],
    }
    assert uploader.calls == [["/tmp/shot.png"]]
    await client.aclose()
    assert uploader.closed


@pytest.mark.asyncio
async def test_upload_failure_still_sends_prompt(socket_factory, wait_until):
    uploader = FakeUploader(error=UploadFailure("http://h/upload", "HTTP 500"))
    client = _client(socket_factory, uploader=uploader)
    client.connect()
    await wait_until(lambda: client.is_connected)

    prompt_id = await client.submit_prompt("with a broken image", ["/tmp/x.png"])
    assert prompt_id is not None
    await wait_until(lambda: socket_factory.last.sent)
    frame = socket_factory.last.sent_frames()[0]
    assert "imagePaths" not in frame
    assert isinstance(client.last_error, UploadFailure)
    await client.aclose()


@pytest.mark.asyncio
async def test_inbound_frames_reach_assembler_branches_and_bus(socket_factory, wait_until):
    bus = EventBus()
    client = _client(socket_factory, bus=bus)
    client.connect()
    await wait_until(lambda: client.is_connected)

    sock = socket_factory.last
    sock.feed({"type": "status", "status": "connected"})
    sock.feed({"type": "history", "entries": [{"role": "user", "content": "earlier"}]})
    sock.feed({"type": "git_status", "branchName": "dev", "changes": [], "hasPR": False})
    sock.feed({"type": "stream", "promptId": "p1", "chunk": "Hi", "done": False})
    await wait_until(lambda: bus.pending() == 4)

    assert client.branches.branch_name == "dev"
    assert client.assembler.records[0].content == "earlier"
    assert client.assembler.live_turn is not None
    await client.aclose()


@pytest.mark.asyncio
async def test_drop_interrupts_live_turn_and_reconnects(socket_factory, wait_until):
    client = _client(socket_factory)
    client.connect()
    await wait_until(lambda: client.is_connected)

    socket_factory.last.feed({"type": "stream", "promptId": "p1", "chunk": "half", "done": False})
    await wait_until(lambda: client.assembler.live_turn is not None)

    socket_factory.last.drop()
    await wait_until(lambda: len(socket_factory.sockets) == 2 and client.is_connected)

    turns = [r for r in client.assembler.records if isinstance(r, Turn)]
    assert len(turns) == 1
    assert turns[0].completion is Completion.INTERRUPTED
    assert turns[0].text == "half"
    # The bearer token survives the reconnect untouched.
    assert socket_factory.addresses == [ADDRESS, ADDRESS]
    await client.aclose()


@pytest.mark.asyncio
async def test_reconnect_catch_up_replaces_interrupted_turn(socket_factory, wait_until):
    client = _client(socket_factory)
    client.connect()
    await wait_until(lambda: client.is_connected)
    socket_factory.last.feed({"type": "stream", "promptId": "p1", "chunk": "half", "done": False})
    await wait_until(lambda: client.assembler.live_turn is not None)

    socket_factory.last.drop()
    await wait_until(lambda: len(socket_factory.sockets) == 2 and client.is_connected)
    socket_factory.last.feed({"type": "status", "status": "processing", "promptId": "p1"})
    socket_factory.last.feed({
        "type": "stream", "promptId": "p1", "chunk": "half and the rest", "done": False,
    })
    await wait_until(lambda: any(
        isinstance(r, Turn) and r.text == "half and the rest" for r in client.assembler.records
    ))

    turns = [r for r in client.assembler.records if isinstance(r, Turn)]
    assert len(turns) == 1
    assert client.assembler.live_turn is None
    await client.aclose()


@pytest.mark.asyncio
async def test_new_prompt_after_drop_leaves_interrupted_turn(socket_factory, wait_until):
    client = _client(socket_factory)
    client.connect()
    await wait_until(lambda: client.is_connected)
    socket_factory.last.feed({"type": "stream", "promptId": "p1", "chunk": "half", "done": False})
    await wait_until(lambda: client.assembler.live_turn is not None)

    socket_factory.last.drop()
    await wait_until(lambda: len(socket_factory.sockets) == 2 and client.is_connected)
    socket_factory.last.feed({"type": "stream", "promptId": "p2", "chunk": "fresh", "done": False})
    await wait_until(lambda: client.assembler.live_turn is not None)

    turns = [r for r in client.assembler.records if isinstance(r, Turn)]
    assert [t.text for t in turns] == ["half"]
    assert client.assembler.live_turn.prompt_id == "p2"
    await client.aclose()


@pytest.mark.asyncio
async def test_commit_shortcut_sends_canned_prompt(socket_factory, wait_until):
    client = _client(socket_factory)
    client.connect()
    await wait_until(lambda: client.is_connected)

    await client.commit_changes()
    await wait_until(lambda: socket_factory.last.sent)
    assert socket_factory.last.sent_frames()[0]["content"] == COMMIT_PROMPT

    assert client.stop() is True
    assert client.new_session() is True
    await wait_until(lambda: len(socket_factory.last.sent) == 3)
    kinds = [f["type"] for f in socket_factory.last.sent_frames()]
    assert kinds == ["prompt", "stop", "new_session"]
    await client.aclose()
