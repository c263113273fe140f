"""Shared fakes for connection-level tests."""
from __future__ import annotations

import asyncio
import json
from types import SimpleNamespace

import aiohttp
import pytest


class FakeSocket:
    """In-memory stand-in for aiohttp's ClientWebSocketResponse."""

    def __init__(self, address: str) -> None:
        self.address = address
        self.sent: list[str] = []
        self.closed = False
        self._inbox: asyncio.Queue = asyncio.Queue()

    async def send_str(self, data: str) -> None:
        if self.closed:
            raise ConnectionResetError("socket closed")
        self.sent.append(data)

    async def close(self) -> bool:
        if not self.closed:
            self.closed = True
            self._inbox.put_nowait(None)
        return True

    def feed(self, data) -> None:
        """Deliver a text frame from the remote side."""
        text = data if isinstance(data, str) else json.dumps(data)
        self._inbox.put_nowait(SimpleNamespace(type=aiohttp.WSMsgType.TEXT, data=text))

    def drop(self) -> None:
        """Simulate the remote side going away."""
        self.closed = True
        self._inbox.put_nowait(None)

    def sent_frames(self) -> list:
        return [json.loads(s) for s in self.sent]

    def __aiter__(self):
        return self

    async def __anext__(self):
        msg = await self._inbox.get()
        if msg is None:
            raise StopAsyncIteration
        return msg


class FakeSocketFactory:
    """Hands out FakeSockets; can be told to refuse connections."""

    def __init__(self) -> None:
        self.sockets: list[FakeSocket] = []
        self.addresses: list[str] = []
        self.refuse = False

    async def __call__(self, address: str) -> FakeSocket:
        self.addresses.append(address)
        if self.refuse:
            raise aiohttp.ClientConnectionError("connection refused")
        socket = FakeSocket(address)
        self.sockets.append(socket)
        return socket

    @property
    def last(self) -> FakeSocket:
        return self.sockets[-1]


async def _wait_until(predicate, timeout: float = 2.0) -> None:
    deadline = asyncio.get_running_loop().time() + timeout
    while not predicate():
        if asyncio.get_running_loop().time() > deadline:
            raise AssertionError("condition not reached in time")
        await asyncio.sleep(0.005)


@pytest.fixture
def socket_factory() -> FakeSocketFactory:
    return FakeSocketFactory()


@pytest.fixture
def wait_until():
    return _wait_until
