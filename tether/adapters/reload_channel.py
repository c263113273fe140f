"""Resilient build-reload channel.

The dev bundler's hot-reload socket forgets a client when the connection
drops: the client's entrypoint registration and log opt-in are lost, and
edits made while the app was offline are never pushed. ReloadChannel
keeps one such socket alive with exponential backoff, replays the setup
frames on every reconnect, and asks the prompt server to re-touch
modified files once the bundler has settled.

Consumers see a socket-like object: ``add_listener`` for ``open``,
``message``, ``close`` and ``error``; ``send`` and ``close``. A close
event is dispatched only for an intentional close or once retrying has
been given up on; transient drops are invisible.
"""
from __future__ import annotations

import asyncio
import logging
from collections import defaultdict
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any

import aiohttp
from yarl import URL

from tether.adapters.addresses import mask_secret, retrigger_url
from tether.adapters.connection import (
    ConnectionStatus,
    ResilientConnection,
    SocketFactory,
    capture_types,
)
from tether.adapters.retry import ExponentialBackoffPolicy, RetryPolicy, reload_policy
from tether.engine.config import TetherConfig, fire_callback
from tether.engine.errors import TransportDrop, TransportExhausted

logger = logging.getLogger(__name__)

RELOAD_PATH_MARKER = "/hot"

# Frames the bundler needs to see again after every reconnect.
SETUP_FRAME_TYPES = ("register-entrypoints", "log-opt-in")

ABNORMAL_CLOSE = 1006
NORMAL_CLOSE = 1000


def is_reload_address(address: str) -> bool:
    """True for bundler hot-reload addresses; other sockets pass through."""
    return RELOAD_PATH_MARKER in URL(address).path


@dataclass
class CloseInfo:
    code: int
    reason: str


class ReloadChannel:
    """Socket-like wrapper around a ResilientConnection for the bundler."""

    EVENTS = ("open", "message", "close", "error")

    def __init__(
        self,
        address: str,
        *,
        server_address: str | None = None,
        config: TetherConfig | None = None,
        policy: RetryPolicy | None = None,
        socket_factory: SocketFactory | None = None,
        retrigger: Callable[[], Any] | None = None,
    ) -> None:
        if not is_reload_address(address):
            logger.warning(
                "%s has no %s path; it may not be a bundler reload socket",
                mask_secret(address), RELOAD_PATH_MARKER,
            )
        self._config = config or TetherConfig()
        self._address = address
        self._server_address = server_address
        self._listeners: dict[str, list[Callable[..., Any]]] = defaultdict(list)
        self._closed = False
        self._http: aiohttp.ClientSession | None = None
        self._conn = ResilientConnection(
            policy or reload_policy(self._config),
            name="reload",
            socket_factory=socket_factory,
            capture=capture_types(*SETUP_FRAME_TYPES),
            decode_json=False,
            on_message=self._emit_message,
            on_connect=self._emit_open,
            on_disconnect=self._on_drop,
            on_exhausted=self._on_exhausted,
            after_ready=retrigger or self.request_retrigger,
            settle_delay=self._config.settle_delay,
        )

    # ── Socket-like surface ──

    @property
    def address(self) -> str:
        return self._address

    @property
    def status(self) -> ConnectionStatus:
        return self._conn.status

    @property
    def connection(self) -> ResilientConnection:
        return self._conn

    @property
    def policy(self) -> ExponentialBackoffPolicy | RetryPolicy:
        return self._conn.policy

    def add_listener(self, event: str, callback: Callable[..., Any]) -> None:
        if event not in self.EVENTS:
            raise ValueError(f"Unknown reload channel event: {event}")
        self._listeners[event].append(callback)

    def open(self) -> None:
        self._closed = False
        self._conn.connect(self._address)

    def send(self, data: str) -> bool:
        return self._conn.send(data)

    def close(self, code: int = NORMAL_CLOSE, reason: str = "") -> None:
        if self._closed:
            return
        self._closed = True
        self._conn.disconnect()
        self._dispatch("close", CloseInfo(code, reason))

    async def aclose(self) -> None:
        self.close()
        await self._conn.aclose()
        if self._http is not None and not self._http.closed:
            await self._http.close()
        self._http = None

    # ── Post-reconnect side effect ──

    async def request_retrigger(self) -> None:
        """POST the prompt server's retrigger endpoint.

        Failures are logged and otherwise ignored; a missed retrigger only
        means the user saves the file again.
        """
        if not self._server_address:
            logger.debug("No prompt server address; skipping reload retrigger")
            return
        url = retrigger_url(self._server_address)
        if self._http is None or self._http.closed:
            self._http = aiohttp.ClientSession()
        try:
            async with self._http.post(
                url, timeout=aiohttp.ClientTimeout(total=10),
            ) as resp:
                if resp.status >= 400:
                    logger.warning(
                        "Reload retrigger rejected (%d) by %s",
                        resp.status, mask_secret(url),
                    )
                    return
                payload = await resp.json(content_type=None)
                logger.info(
                    "Reload retrigger touched %s file(s)",
                    payload.get("touched", "?") if isinstance(payload, dict) else "?",
                )
        except (aiohttp.ClientError, OSError, asyncio.TimeoutError, ValueError) as exc:
            logger.warning(
                "Reload retrigger to %s failed: %s", mask_secret(url), exc,
            )

    # ── Connection callbacks ──

    def _dispatch(self, event: str, *args: Any) -> None:
        for callback in list(self._listeners[event]):
            fire_callback(callback, *args)

    def _emit_open(self) -> None:
        self._dispatch("open")

    def _emit_message(self, data: str) -> None:
        self._dispatch("message", data)

    def _on_drop(self, drop: TransportDrop) -> None:
        logger.debug("Reload channel drop hidden from listeners: %s", drop)

    def _on_exhausted(self, exc: TransportExhausted) -> None:
        self._dispatch("error", exc)
        if not self._closed:
            self._closed = True
            self._dispatch(
                "close", CloseInfo(ABNORMAL_CLOSE, "Max reconnect attempts reached"),
            )
