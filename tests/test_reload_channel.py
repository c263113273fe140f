"""Tests for the build-reload channel wrapper."""
from __future__ import annotations

import json

import pytest
from aiohttp import test_utils, web

from tether.adapters.reload_channel import (
    SETUP_FRAME_TYPES,
    CloseInfo,
    ReloadChannel,
    is_reload_address,
)
from tether.adapters.retry import ExponentialBackoffPolicy, FixedIntervalPolicy
from tether.engine.config import TetherConfig
from tether.engine.errors import TransportExhausted

HOT = "ws://127.0.0.1:8081/hot?platform=ios"
REGISTER = json.dumps({"type": "register-entrypoints", "entryPoints": ["index.bundle"]})
LOG_OPT_IN = json.dumps({"type": "log-opt-in"})


def _channel(socket_factory, **kwargs) -> ReloadChannel:
    kwargs.setdefault("policy", FixedIntervalPolicy(interval=0, max_attempts=3))
    kwargs.setdefault("config", TetherConfig(settle_delay=0))
    return ReloadChannel(HOT, socket_factory=socket_factory, **kwargs)


def test_is_reload_address():
    assert is_reload_address(HOT)
    assert is_reload_address("wss://tunnel.example/hot")
    assert not is_reload_address("ws://127.0.0.1:3847/?secret=x")
    assert SETUP_FRAME_TYPES == ("register-entrypoints", "log-opt-in")


def test_non_reload_address_is_flagged(caplog):
    with caplog.at_level("WARNING", logger="tether.adapters.reload_channel"):
        ReloadChannel("ws://127.0.0.1:3847/?secret=x", config=TetherConfig())
    assert "may not be a bundler reload socket" in caplog.text
    assert "secret=x" not in caplog.text

    caplog.clear()
    with caplog.at_level("WARNING", logger="tether.adapters.reload_channel"):
        ReloadChannel(HOT, config=TetherConfig())
    assert caplog.text == ""


def test_default_policy_is_exponential_backoff():
    channel = ReloadChannel(HOT, config=TetherConfig())
    assert isinstance(channel.policy, ExponentialBackoffPolicy)
    assert channel.policy.max_attempts == 50


def test_unknown_listener_event_rejected(socket_factory):
    channel = _channel(socket_factory)
    with pytest.raises(ValueError):
        channel.add_listener("reconnect", lambda: None)


@pytest.mark.asyncio
async def test_drop_is_invisible_and_setup_frames_replayed(socket_factory, wait_until):
    retriggers: list[int] = []
    channel = _channel(socket_factory, retrigger=lambda: retriggers.append(1))
    events: list[str] = []
    messages: list[str] = []
    channel.add_listener("open", lambda: events.append("open"))
    channel.add_listener("close", lambda info: events.append("close"))
    channel.add_listener("message", messages.append)

    channel.open()
    await wait_until(lambda: events == ["open"])
    channel.send(REGISTER)
    channel.send(LOG_OPT_IN)
    channel.send('{"type": "other"}')
    socket_factory.last.feed('{"type": "update-start"}')
    await wait_until(lambda: messages)
    assert messages == ['{"type": "update-start"}']

    socket_factory.last.drop()
    await wait_until(lambda: len(socket_factory.sockets) == 2 and events == ["open", "open"])
    assert socket_factory.last.sent == [REGISTER, LOG_OPT_IN]
    await wait_until(lambda: retriggers == [1])
    assert "close" not in events
    await channel.aclose()


@pytest.mark.asyncio
async def test_exhaustion_emits_error_then_abnormal_close(socket_factory, wait_until):
    socket_factory.refuse = True
    channel = _channel(socket_factory, policy=FixedIntervalPolicy(interval=0, max_attempts=1))
    errors: list[Exception] = []
    closes: list[CloseInfo] = []
    channel.add_listener("error", errors.append)
    channel.add_listener("close", closes.append)

    channel.open()
    await wait_until(lambda: closes)
    assert isinstance(errors[0], TransportExhausted)
    assert closes == [CloseInfo(1006, "Max reconnect attempts reached")]
    await channel.aclose()
    assert len(closes) == 1


@pytest.mark.asyncio
async def test_intentional_close_dispatches_once(socket_factory, wait_until):
    channel = _channel(socket_factory)
    closes: list[CloseInfo] = []
    channel.add_listener("close", closes.append)
    channel.open()
    await wait_until(lambda: channel.connection.is_connected)

    channel.close(1000, "bye")
    channel.close(1000, "again")
    assert closes == [CloseInfo(1000, "bye")]
    assert not channel.connection.reconnect_pending
    await channel.aclose()


@pytest.mark.asyncio
async def test_request_retrigger_posts_to_prompt_server():
    seen: list[str] = []

    async def retrigger(request: web.Request) -> web.Response:
        seen.append(request.query.get("secret", ""))
        return web.json_response({"touched": 2})

    app = web.Application()
    app.router.add_post("/hmr-retrigger", retrigger)
    async with test_utils.TestServer(app) as server:
        address = f"ws://127.0.0.1:{server.port}/?secret=tok"
        channel = ReloadChannel(HOT, server_address=address)
        await channel.request_retrigger()
        await channel.aclose()

    assert seen == ["tok"]


@pytest.mark.asyncio
async def test_request_retrigger_swallows_connection_errors():
    channel = ReloadChannel(HOT, server_address="ws://127.0.0.1:9/")
    await channel.request_retrigger()
    await channel.aclose()
