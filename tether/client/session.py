"""Session client: one owned connection feeding the assembler and branch manager.

SessionClient is the explicit owner of the session channel. UI code holds
a SessionClient instance and calls its methods; there is no module-level
"current client".
"""

from __future__ import annotations

import logging
import uuid
from collections.abc import Callable
from pathlib import Path
from typing import Any

from tether.adapters.connection import (
    ConnectionStatus,
    ResilientConnection,
    SocketFactory,
)
from tether.adapters.event_bus import EventBus
from tether.adapters.events import (
    NewSession,
    Prompt,
    Stop,
    StreamChunk,
    TetherEvent,
    dict_to_event,
    event_to_dict,
)
from tether.adapters.retry import RetryPolicy, session_policy
from tether.adapters.upload import AttachmentUploader
from tether.client.assembler import MessageAssembler
from tether.client.branches import BranchManager
from tether.engine.config import TetherConfig, fire_callback
from tether.engine.errors import (
    RequestRejected,
    SendWhileDisconnected,
    TransportDrop,
    TransportExhausted,
    UploadFailure,
)
from tether.shared.models.message import TextPart

logger = logging.getLogger(__name__)

COMMIT_PROMPT = (
    "Look at my current git changes and create a commit with a good "
    "conventional commit message. Stage all changes, commit them, and push "
    "to the remote."
)

CREATE_PR_PROMPT = (
    "Create a pull request for my current branch. First commit any "
    "uncommitted changes with a good message. Then generate a title and "
    "description based on the commits, and use `gh pr create --title \"...\" "
    "--body \"...\"` (non-interactive mode) to create it. Push to remote "
    "first if needed."
)


def _gen_prompt_id() -> str:
    return uuid.uuid4().hex[:12]


def classify_outbound(frame: dict[str, Any]) -> ConnectionStatus | None:
    if frame.get("type") == "prompt":
        return ConnectionStatus.SENDING
    return None


def classify_inbound(frame: dict[str, Any]) -> ConnectionStatus | None:
    kind = frame.get("type")
    if kind == "status":
        status = frame.get("status")
        if status == "processing":
            return ConnectionStatus.PROCESSING
        if status in ("idle", "connected"):
            return ConnectionStatus.CONNECTED
        return None
    if kind in ("result", "error", "stopped", "session_cleared"):
        return ConnectionStatus.CONNECTED
    return None


class SessionClient:
    """Composes the session connection, the assembler and the branch manager."""

    def __init__(
        self,
        address: str,
        *,
        config: TetherConfig | None = None,
        policy: RetryPolicy | None = None,
        socket_factory: SocketFactory | None = None,
        uploader: AttachmentUploader | None = None,
        bus: EventBus | None = None,
        on_change: Callable[[], None] | None = None,
        on_status: Callable[[ConnectionStatus], None] | None = None,
        on_exhausted: Callable[[TransportExhausted], None] | None = None,
    ) -> None:
        self._config = config or TetherConfig()
        self._address = address
        self._bus = bus
        self._on_status = on_status
        self._on_exhausted = on_exhausted
        self.last_error: Exception | None = None
        # Prompt whose live Turn a drop cut short, awaiting the server's catch-up.
        self._resume_prompt_id: str | None = None

        self.assembler = MessageAssembler(on_change=on_change)
        self.branches = BranchManager(
            self.send_frame, on_change=on_change, on_rejected=self._rejected,
        )
        self.uploader = uploader or AttachmentUploader(
            address, timeout=self._config.upload_timeout,
        )
        self.connection = ResilientConnection(
            policy or session_policy(self._config),
            name="session",
            socket_factory=socket_factory,
            on_message=self._on_frame,
            on_status=self._status_changed,
            on_disconnect=self._on_drop,
            on_exhausted=self._exhausted,
            on_error=self._send_refused,
            outbound_status=classify_outbound,
            inbound_status=classify_inbound,
        )

    @property
    def address(self) -> str:
        return self._address

    @property
    def status(self) -> ConnectionStatus:
        return self.connection.status

    @property
    def is_connected(self) -> bool:
        return self.connection.is_connected

    # ── Lifecycle ──

    def connect(self) -> None:
        self.last_error = None
        self.connection.connect(self._address)

    def disconnect(self) -> None:
        self.connection.disconnect()

    async def aclose(self) -> None:
        await self.connection.aclose()
        await self.uploader.close()

    # ── Requests ──

    def send_frame(self, frame: dict[str, Any]) -> bool:
        return self.connection.send(frame)

    async def submit_prompt(
        self,
        content: str,
        attachments: list[str | Path] | None = None,
    ) -> str | None:
        """Echo *content* locally, upload attachments, send the prompt.

        Returns the prompt id, or None if the prompt could not be sent.
        An attachment upload failure is logged and the prompt goes out
        without attachments.
        """
        local_refs = [str(p) for p in attachments or []]
        self.assembler.submit_prompt(content, local_refs)
        if not self.is_connected:
            self._send_refused(SendWhileDisconnected("session", "prompt"))
            return None

        image_paths: list[str] | None = None
        if local_refs:
            try:
                image_paths = await self.uploader.upload(local_refs) or None
            except UploadFailure as exc:
                logger.error("Attachment upload failed, sending prompt without it: %s", exc)
                self.last_error = exc

        prompt_id = _gen_prompt_id()
        frame = event_to_dict(Prompt(id=prompt_id, content=content, image_paths=image_paths))
        if not self.send_frame(frame):
            return None
        logger.info("Sent prompt %s (%d chars)", prompt_id, len(content))
        return prompt_id

    def new_session(self) -> bool:
        return self.send_frame(event_to_dict(NewSession()))

    def stop(self) -> bool:
        return self.send_frame(event_to_dict(Stop()))

    async def commit_changes(self) -> str | None:
        return await self.submit_prompt(COMMIT_PROMPT)

    async def create_pull_request(self) -> str | None:
        return await self.submit_prompt(CREATE_PR_PROMPT)

    # ── Connection callbacks ──

    def _on_frame(self, frame: dict[str, Any]) -> None:
        event = dict_to_event(frame)
        self._route(event)
        if self._bus is not None:
            self._bus.publish(event)

    def _route(self, event: TetherEvent) -> None:
        if isinstance(event, StreamChunk) and self._resume_prompt_id is not None:
            if self._apply_catch_up(event):
                return
        if self.assembler.handle(event):
            return
        if self.branches.handle(event):
            return
        logger.debug("Unhandled session event: %s", event.event_type or "<untyped>")

    def _status_changed(self, status: ConnectionStatus) -> None:
        logger.debug("Session status -> %s", status.value)
        fire_callback(self._on_status, status)

    def _apply_catch_up(self, event: StreamChunk) -> bool:
        """Replace the cut-short Turn with the server's accumulated text.

        After a reconnect the first chunk for a still-running prompt carries
        everything streamed so far, not a delta.
        """
        prompt_id, self._resume_prompt_id = self._resume_prompt_id, None
        if event.prompt_id != prompt_id or not event.chunk:
            return False
        snapshot = [TextPart(id=f"{prompt_id}-catch-up", content=event.chunk)]
        if not self.assembler.replace_turn(prompt_id, snapshot):
            return False
        logger.info("Restored interrupted turn %s from server catch-up", prompt_id)
        return True

    def _on_drop(self, drop: TransportDrop) -> None:
        live = self.assembler.live_turn
        if self.assembler.interrupt():
            self._resume_prompt_id = live.prompt_id
            logger.info("Live turn interrupted by connection drop")
        self.last_error = drop

    def _exhausted(self, exc: TransportExhausted) -> None:
        self.last_error = exc
        logger.error("Session channel gave up: %s", exc)
        fire_callback(self._on_exhausted, exc)

    def _send_refused(self, exc: Exception) -> None:
        self.last_error = exc
        logger.warning("%s", exc)

    def _rejected(self, exc: RequestRejected) -> None:
        self.last_error = exc
