"""Resilient persistent connection with transparent reconnection.

Wraps one logical WebSocket connection. Unexpected drops are retried
under a pluggable RetryPolicy using event-loop timers; a small set of
captured setup frames is replayed after every reconnection, before the
connection is reported ready. Transport failures never escape this
module: they surface as status transitions and callbacks.

All methods must be called from the event loop that owns the instance.
"""
from __future__ import annotations

import asyncio
import inspect
import json
import logging
from collections.abc import Awaitable, Callable
from enum import Enum
from typing import Any, Protocol

import aiohttp

from tether.adapters.addresses import mask_secret
from tether.adapters.events import frame_type
from tether.adapters.retry import RetryPolicy
from tether.engine.config import fire_callback
from tether.engine.errors import (
    SendWhileDisconnected,
    TransportDrop,
    TransportExhausted,
)

logger = logging.getLogger(__name__)

Frame = dict[str, Any] | str


class ConnectionStatus(str, Enum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    SENDING = "sending"
    PROCESSING = "processing"


_OPEN_STATES = frozenset({
    ConnectionStatus.CONNECTED,
    ConnectionStatus.SENDING,
    ConnectionStatus.PROCESSING,
})


class FrameSocket(Protocol):
    """The subset of aiohttp's ClientWebSocketResponse used here."""

    closed: bool

    async def send_str(self, data: str) -> None: ...

    async def close(self) -> Any: ...

    def __aiter__(self) -> Any: ...


SocketFactory = Callable[[str], Awaitable[FrameSocket]]


class AiohttpSocketFactory:
    """Opens WebSocket connections with a shared aiohttp ClientSession."""

    def __init__(
        self,
        connect_timeout: float = 10.0,
        heartbeat: float | None = 20.0,
    ) -> None:
        self._connect_timeout = connect_timeout
        self._heartbeat = heartbeat
        self._session: aiohttp.ClientSession | None = None

    async def __call__(self, address: str) -> FrameSocket:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession()
        return await asyncio.wait_for(
            self._session.ws_connect(address, heartbeat=self._heartbeat),
            timeout=self._connect_timeout,
        )

    async def close(self) -> None:
        if self._session is not None and not self._session.closed:
            await self._session.close()
        self._session = None


class CaptureBuffer:
    """At most one frame per message kind; latest wins, first position kept."""

    def __init__(self) -> None:
        self._frames: dict[str, str] = {}

    def store(self, kind: str, data: str) -> bool:
        """Store *data* under *kind*; return True if it replaced a frame."""
        replaced = kind in self._frames
        self._frames[kind] = data
        return replaced

    def frames(self) -> list[str]:
        return list(self._frames.values())

    def kinds(self) -> list[str]:
        return list(self._frames)

    def clear(self) -> None:
        self._frames.clear()

    def __len__(self) -> int:
        return len(self._frames)

    def __contains__(self, kind: object) -> bool:
        return kind in self._frames


def capture_types(*kinds: str) -> Callable[[Frame], bool]:
    """Build a capture predicate matching frames by ``type``."""
    wanted = frozenset(kinds)

    def _predicate(frame: Frame) -> bool:
        return frame_type(frame) in wanted

    return _predicate


class ResilientConnection:
    """One logical persistent connection that survives drops.

    Status: disconnected → connecting → connected → (sending|processing →
    connected); connecting is re-entered after every unexpected close
    until the policy's attempt cap is hit or ``disconnect`` is called.
    """

    def __init__(
        self,
        policy: RetryPolicy,
        *,
        name: str = "session",
        socket_factory: SocketFactory | None = None,
        capture: Callable[[Frame], bool] | None = None,
        decode_json: bool = True,
        on_message: Callable[[Any], None] | None = None,
        on_status: Callable[[ConnectionStatus], None] | None = None,
        on_connect: Callable[[], None] | None = None,
        on_disconnect: Callable[[TransportDrop], None] | None = None,
        on_exhausted: Callable[[TransportExhausted], None] | None = None,
        on_error: Callable[[Exception], None] | None = None,
        after_ready: Callable[[], Any] | None = None,
        settle_delay: float = 2.0,
        outbound_status: Callable[[dict[str, Any]], ConnectionStatus | None] | None = None,
        inbound_status: Callable[[dict[str, Any]], ConnectionStatus | None] | None = None,
    ) -> None:
        self._policy = policy
        self._name = name
        self._factory: SocketFactory = socket_factory or AiohttpSocketFactory()
        self._capture_predicate = capture
        self._decode_json = decode_json
        self._on_message = on_message
        self._on_status = on_status
        self._on_connect = on_connect
        self._on_disconnect = on_disconnect
        self._on_exhausted = on_exhausted
        self._on_error = on_error
        self._after_ready = after_ready
        self._settle_delay = settle_delay
        self._outbound_status = outbound_status
        self._inbound_status = inbound_status

        self._address: str | None = None
        self._socket: FrameSocket | None = None
        self._status = ConnectionStatus.DISCONNECTED
        self._attempts = 0
        self._intentional = False
        self._exhausted = False
        self._capture = CaptureBuffer()
        # Set after a drop (or a capture while closed): replay on next open.
        self._needs_replay = False
        # Bumped whenever the current socket is superseded, so callbacks
        # from stale sockets/attempts can be recognized and ignored.
        self._generation = 0

        self._reconnect_timer: asyncio.TimerHandle | None = None
        self._settle_timer: asyncio.TimerHandle | None = None
        self._open_task: asyncio.Task | None = None
        self._reader_task: asyncio.Task | None = None
        self._writer_task: asyncio.Task | None = None
        self._outbox: asyncio.Queue[str] | None = None
        self._background: set[asyncio.Task] = set()

    # ── Properties ──

    @property
    def name(self) -> str:
        return self._name

    @property
    def status(self) -> ConnectionStatus:
        return self._status

    @property
    def attempts(self) -> int:
        return self._attempts

    @property
    def exhausted(self) -> bool:
        return self._exhausted

    @property
    def address(self) -> str | None:
        return self._address

    @property
    def policy(self) -> RetryPolicy:
        return self._policy

    @property
    def is_connected(self) -> bool:
        return self._socket is not None and self._status in _OPEN_STATES

    @property
    def reconnect_pending(self) -> bool:
        return self._reconnect_timer is not None

    def captured_frames(self) -> list[str]:
        return self._capture.frames()

    # ── Public API ──

    def connect(self, address: str, policy: RetryPolicy | None = None) -> None:
        """Start connecting in the background; returns immediately."""
        if policy is not None:
            self._policy = policy
        if self.is_connected and address == self._address:
            return
        if self._address is not None and address != self._address:
            if self._socket is not None and len(self._capture):
                # A new endpoint has never seen the setup frames.
                self._needs_replay = True
            self._supersede_socket()
        self._address = address
        self._intentional = False
        self._exhausted = False
        self._attempts = 0
        self._cancel_timer()
        logger.info(
            "[%s] Connecting to %s", self._name, mask_secret(address),
        )
        self._start_attempt()

    def send(self, frame: Frame) -> bool:
        """Transmit *frame* if connected; capture it if it is a setup frame.

        Returns True when the frame was handed to the socket writer. Frames
        are never queued across a drop.
        """
        data = frame if isinstance(frame, str) else json.dumps(frame)
        kind = frame_type(frame)
        captured = False
        if (
            self._capture_predicate is not None
            and kind is not None
            and self._capture_predicate(frame)
        ):
            replaced = self._capture.store(kind, data)
            captured = True
            logger.debug(
                "[%s] Captured %s frame for reconnection replay (replaced=%s)",
                self._name, kind, replaced,
            )

        if not self.is_connected or self._outbox is None:
            if captured:
                self._needs_replay = True
            else:
                logger.debug(
                    "[%s] Dropping %s frame while %s",
                    self._name, kind or "<untyped>", self._status.value,
                )
                fire_callback(
                    self._on_error, SendWhileDisconnected(self._name, kind),
                )
            return False

        self._outbox.put_nowait(data)
        if self._outbound_status is not None and isinstance(frame, dict):
            status = self._outbound_status(frame)
            if status is not None:
                self._set_status(status)
        return True

    def disconnect(self) -> None:
        """Close intentionally. Timers are cleared before this returns."""
        self._intentional = True
        self._cancel_timer()
        if self._settle_timer is not None:
            self._settle_timer.cancel()
            self._settle_timer = None
        self._supersede_socket()
        self._attempts = 0
        self._set_status(ConnectionStatus.DISCONNECTED)
        if self._address is not None:
            logger.info(
                "[%s] Disconnected from %s",
                self._name, mask_secret(self._address),
            )

    async def aclose(self) -> None:
        """Disconnect and wait for background teardown to finish."""
        self.disconnect()
        pending = [t for t in self._background if not t.done()]
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)
        close = getattr(self._factory, "close", None)
        if close is not None:
            await close()

    # ── Internals ──

    def _set_status(self, status: ConnectionStatus) -> None:
        if status == self._status:
            return
        self._status = status
        fire_callback(self._on_status, status)

    def _spawn(self, coro) -> asyncio.Task:
        task = asyncio.get_running_loop().create_task(coro)
        self._background.add(task)
        task.add_done_callback(self._background.discard)
        return task

    def _cancel_timer(self) -> None:
        if self._reconnect_timer is not None:
            self._reconnect_timer.cancel()
            self._reconnect_timer = None

    def _start_attempt(self) -> None:
        self._reconnect_timer = None
        self._set_status(ConnectionStatus.CONNECTING)
        self._generation += 1
        self._open_task = self._spawn(self._open(self._generation))

    def _is_current(self, generation: int) -> bool:
        return generation == self._generation and not self._intentional

    async def _open(self, generation: int) -> None:
        address = self._address
        if address is None:
            logger.error("[%s] Open requested without an address", self._name)
            self._set_status(ConnectionStatus.DISCONNECTED)
            return
        try:
            socket = await self._factory(address)
        except (aiohttp.ClientError, OSError, asyncio.TimeoutError) as exc:
            if not self._is_current(generation):
                return
            logger.warning(
                "[%s] Connection attempt to %s failed: %s",
                self._name, mask_secret(address), exc,
            )
            self._handle_drop(f"connect failed: {exc}")
            return

        if not self._is_current(generation):
            self._spawn(socket.close())
            return

        was_reconnect = self._needs_replay
        self._attempts = 0
        self._socket = socket

        if was_reconnect and len(self._capture):
            # Replayed before the writer starts and before "connected" is
            # raised, so no application frame can overtake setup frames.
            frames = self._capture.frames()
            logger.info(
                "[%s] Replaying %d captured frame(s): %s",
                self._name, len(frames), ", ".join(self._capture.kinds()),
            )
            for data in frames:
                try:
                    await socket.send_str(data)
                except (aiohttp.ClientError, ConnectionError, RuntimeError) as exc:
                    logger.warning(
                        "[%s] Failed to replay captured frame: %s",
                        self._name, exc,
                    )
            if not self._is_current(generation):
                return
        self._needs_replay = False

        outbox: asyncio.Queue[str] = asyncio.Queue()
        self._outbox = outbox
        self._writer_task = self._spawn(self._write_loop(socket, outbox))
        self._reader_task = self._spawn(self._read_loop(socket, generation))

        logger.info(
            "[%s] %s to %s",
            self._name,
            "Reconnected" if was_reconnect else "Connected",
            mask_secret(address),
        )
        self._set_status(ConnectionStatus.CONNECTED)
        fire_callback(self._on_connect)

        if was_reconnect and self._after_ready is not None:
            if self._settle_timer is not None:
                self._settle_timer.cancel()
            self._settle_timer = asyncio.get_running_loop().call_later(
                self._settle_delay, self._run_after_ready,
            )

    def _run_after_ready(self) -> None:
        self._settle_timer = None
        if not self.is_connected or self._after_ready is None:
            return
        try:
            result = self._after_ready()
        except Exception:
            logger.exception("[%s] Post-reconnect hook failed", self._name)
            return
        if inspect.isawaitable(result):
            self._spawn(self._await_hook(result))

    async def _await_hook(self, awaitable: Awaitable[Any]) -> None:
        try:
            await awaitable
        except Exception:
            logger.exception("[%s] Post-reconnect hook failed", self._name)

    async def _write_loop(self, socket: FrameSocket, outbox: asyncio.Queue[str]) -> None:
        while True:
            data = await outbox.get()
            try:
                await socket.send_str(data)
            except (aiohttp.ClientError, ConnectionError, RuntimeError) as exc:
                # At-most-once: the reader will notice the drop.
                logger.warning(
                    "[%s] Dropped outbound frame %s: %s",
                    self._name, frame_type(data) or "<untyped>", exc,
                )

    async def _read_loop(self, socket: FrameSocket, generation: int) -> None:
        reason = "closed by remote"
        try:
            async for msg in socket:
                if msg.type == aiohttp.WSMsgType.TEXT:
                    self._dispatch(msg.data)
                elif msg.type == aiohttp.WSMsgType.ERROR:
                    reason = f"socket error: {msg.data!r}"
                    break
                else:
                    logger.debug(
                        "[%s] Ignoring %s message", self._name, msg.type,
                    )
        except (aiohttp.ClientError, ConnectionError) as exc:
            reason = f"read failed: {exc}"

        if not self._is_current(generation):
            return
        logger.warning("[%s] Connection dropped (%s)", self._name, reason)
        self._handle_drop(reason)

    def _dispatch(self, data: str) -> None:
        if not self._decode_json:
            fire_callback(self._on_message, data)
            return
        try:
            frame = json.loads(data)
        except ValueError:
            logger.warning(
                "[%s] Failed to parse frame: %r", self._name, data[:200],
            )
            return
        if not isinstance(frame, dict):
            logger.warning(
                "[%s] Ignoring non-object frame: %r", self._name, data[:200],
            )
            return
        if self._inbound_status is not None:
            status = self._inbound_status(frame)
            if status is not None:
                self._set_status(status)
        fire_callback(self._on_message, frame)

    def _supersede_socket(self) -> None:
        """Detach the current socket and attempt; close the socket async."""
        self._generation += 1
        socket = self._socket
        self._socket = None
        self._outbox = None
        current = asyncio.current_task()
        for task in (self._writer_task, self._reader_task, self._open_task):
            if task is not None and task is not current and not task.done():
                task.cancel()
        self._writer_task = None
        self._reader_task = None
        self._open_task = None
        if socket is not None and not socket.closed:
            self._spawn(socket.close())

    def _handle_drop(self, reason: str) -> None:
        self._needs_replay = True
        self._supersede_socket()
        fire_callback(self._on_disconnect, TransportDrop(self._name, reason))
        self._schedule_reconnect()

    def _schedule_reconnect(self) -> None:
        if self._intentional:
            return
        self._cancel_timer()
        if self._attempts >= self._policy.max_attempts:
            self._exhausted = True
            logger.warning(
                "[%s] Gave up reconnecting after %d attempts",
                self._name, self._attempts,
            )
            self._set_status(ConnectionStatus.DISCONNECTED)
            fire_callback(
                self._on_exhausted,
                TransportExhausted(self._name, self._attempts),
            )
            return
        self._attempts += 1
        delay = self._policy.delay_for(self._attempts)
        logger.info(
            "[%s] Reconnecting in %.1fs (attempt %d/%d)",
            self._name, delay, self._attempts, self._policy.max_attempts,
        )
        self._set_status(ConnectionStatus.CONNECTING)
        self._reconnect_timer = asyncio.get_running_loop().call_later(
            delay, self._start_attempt,
        )
