"""Prompt server: the executing side of the relay.

One aiohttp application serves:
- ``GET /``: the session WebSocket (history snapshot on connect, prompts,
  stop/new-session, discard and branch requests)
- ``POST /upload``: multipart attachment upload (field ``images``)
- ``POST /hmr-retrigger``: re-touch modified files so the bundler
  re-pushes them
- ``GET /health``

When a secret is configured every request must carry it as the
``secret`` query parameter.
"""
from __future__ import annotations

import asyncio
import hmac
import json
import logging
import mimetypes
import os
import shutil
import time
import uuid
from pathlib import Path
from typing import Any

import aiohttp
from aiohttp import web

from tether.adapters.events import (
    BranchesList,
    ErrorEvent,
    GitStatus,
    History,
    Result,
    SessionCleared,
    StatusEvent,
    Stopped,
    StreamChunk,
    TetherEvent,
    ToolEvent,
    event_to_dict,
)
from tether.engine.config import TetherConfig
from tether.engine.errors import GitCommandError
from tether.server.backend import AgentBackend, AgentRunResult, ClaudeAgentBackend
from tether.shared.services.branch_service import BranchService
from tether.shared.services.git_ops import GitOperations
from tether.shared.services.history_store import HistoryStore

logger = logging.getLogger(__name__)

IMAGE_DIRNAME = ".tether-images"

INVALID_FORMAT = (
    'Invalid message format. Expected: {"type":"prompt","content":"..."} or '
    '{"type":"new_session"} or {"type":"stop"} or {"type":"discard_changes"}'
)


def _now_ms() -> int:
    return int(time.time() * 1000)


def _frame(event: TetherEvent) -> dict[str, Any]:
    if event.timestamp is None:
        event.timestamp = _now_ms()
    return event_to_dict(event)


class TetherServer:
    """HTTP + WebSocket server relaying prompts to a coding agent."""

    def __init__(
        self,
        config: TetherConfig | None = None,
        *,
        backend: AgentBackend | None = None,
        git: GitOperations | None = None,
        history: HistoryStore | None = None,
    ) -> None:
        self._config = config or TetherConfig()
        self._project_root = Path(self._config.project_root).resolve()
        self._host = self._config.host
        self._port = self._config.port
        self._secret = self._config.secret
        self._backend: AgentBackend = backend or ClaudeAgentBackend(
            str(self._project_root),
            model=self._config.model,
            permission_mode=self._config.permission_mode,
        )
        self._git = git or GitOperations(self._project_root)
        self._branches = BranchService(
            self._git,
            base_branch=self._config.base_branch,
            remote=self._config.remote,
        )
        self._history = history or HistoryStore(self._project_root)
        self._history.load()

        self._clients: set[web.WebSocketResponse] = set()
        self._prompt_task: asyncio.Task | None = None
        self._active_prompt_id: str | None = None
        self._streamed_text = ""
        self._watch_task: asyncio.Task | None = None
        self._last_git_state: tuple[str, str] | None = None
        self._runner: web.AppRunner | None = None

        self._app = web.Application(
            middlewares=[self._request_logging_middleware, self._auth_middleware],
        )
        self._app.on_startup.append(self._on_startup)
        self._app.on_shutdown.append(self._on_shutdown)
        self._setup_routes()
        logger.info(
            "TetherServer init host=%s port=%s project=%s secret=%s pid=%s",
            self._host, self._port, self._project_root,
            "set" if self._secret else "none", os.getpid(),
        )

    @property
    def app(self) -> web.Application:
        return self._app

    @property
    def image_dir(self) -> Path:
        return self._project_root / IMAGE_DIRNAME

    @property
    def history(self) -> HistoryStore:
        return self._history

    @property
    def active_prompt_id(self) -> str | None:
        return self._active_prompt_id

    # ── Middleware ──

    @web.middleware
    async def _request_logging_middleware(self, request: web.Request, handler) -> web.StreamResponse:
        req_id = str(uuid.uuid4())[:8]
        start = time.monotonic()
        path = request.path
        logger.info("HTTP %s %s req=%s from=%s", request.method, path, req_id, request.remote)
        try:
            response = await handler(request)
            elapsed_ms = (time.monotonic() - start) * 1000
            logger.info(
                "HTTP %s %s req=%s status=%s duration_ms=%.1f",
                request.method, path, req_id,
                getattr(response, "status", "?"), elapsed_ms,
            )
            return response
        except web.HTTPException:
            raise
        except Exception:
            elapsed_ms = (time.monotonic() - start) * 1000
            logger.exception("HTTP %s %s req=%s failed duration_ms=%.1f",
                             request.method, path, req_id, elapsed_ms)
            raise

    @web.middleware
    async def _auth_middleware(self, request: web.Request, handler) -> web.StreamResponse:
        if request.method == "OPTIONS":
            return self._with_cors(web.Response(status=204))
        if self._secret:
            supplied = request.query.get("secret", "")
            if not hmac.compare_digest(supplied.encode(), self._secret.encode()):
                logger.warning("Rejected unauthorized request to %s", request.path)
                return self._with_cors(web.Response(status=401, text="Unauthorized"))
        response = await handler(request)
        if not isinstance(response, web.WebSocketResponse):
            self._with_cors(response)
        return response

    @staticmethod
    def _with_cors(response: web.StreamResponse) -> web.StreamResponse:
        response.headers["Access-Control-Allow-Origin"] = "*"
        response.headers["Access-Control-Allow-Methods"] = "GET, POST, OPTIONS"
        response.headers["Access-Control-Allow-Headers"] = "Content-Type"
        return response

    # ── Route setup ──

    def _setup_routes(self) -> None:
        r = self._app.router
        r.add_get("/", self._handle_ws)
        r.add_get("/health", self._handle_health)
        r.add_post("/upload", self._handle_upload)
        r.add_post("/hmr-retrigger", self._handle_retrigger)

    # ── Lifecycle ──

    async def _on_startup(self, app: web.Application) -> None:
        if isinstance(self._backend, ClaudeAgentBackend) and not self._backend.is_available():
            logger.warning("claude CLI not found on PATH; prompts will fail until it is installed")
        if self._config.git_status_enabled:
            self._watch_task = asyncio.create_task(self._git_watch_loop())

    async def _on_shutdown(self, app: web.Application) -> None:
        if self._watch_task is not None:
            self._watch_task.cancel()
            self._watch_task = None
        await self._cancel_prompt()
        for ws in list(self._clients):
            await ws.close(code=aiohttp.WSCloseCode.GOING_AWAY, message=b"Server shutdown")
        self._clients.clear()

    async def start(self) -> int:
        """Start listening; returns the bound port."""
        self._runner = web.AppRunner(self._app)
        await self._runner.setup()
        site = web.TCPSite(self._runner, self._host, self._port)
        await site.start()
        addresses = getattr(self._runner, "addresses", None) or ()
        if addresses and isinstance(addresses[0], tuple):
            self._port = int(addresses[0][1])
        logger.info("Tether server listening on %s:%d", self._host, self._port)
        return self._port

    async def stop(self) -> None:
        if self._runner is not None:
            await self._runner.cleanup()
            self._runner = None

    async def run_forever(self) -> None:
        await self.start()
        try:
            await asyncio.Event().wait()
        except (KeyboardInterrupt, asyncio.CancelledError):
            logger.info("Server shutting down")
        finally:
            await self.stop()

    # ── HTTP handlers ──

    async def _handle_health(self, request: web.Request) -> web.Response:
        return web.json_response({
            "status": "ok",
            "clients": len(self._clients),
            "processing": self._active_prompt_id is not None,
        })

    async def _handle_upload(self, request: web.Request) -> web.Response:
        if not request.content_type.startswith("multipart/"):
            return web.json_response({"error": "Expected multipart/form-data"}, status=400)
        self.image_dir.mkdir(parents=True, exist_ok=True)
        paths: list[str] = []
        try:
            reader = await request.multipart()
            async for part in reader:
                if part.name != "images" or not part.filename:
                    continue
                ext = self._image_extension(part.filename, part.headers.get(aiohttp.hdrs.CONTENT_TYPE))
                dest = self.image_dir / f"{uuid.uuid4()}{ext}"
                with open(dest, "wb") as f:
                    while chunk := await part.read_chunk():
                        f.write(chunk)
                paths.append(str(dest))
        except (ValueError, OSError, aiohttp.ClientError) as exc:
            logger.error("Upload error: %s", exc)
            return web.json_response({"error": str(exc)}, status=500)
        logger.info("Uploaded %d image(s)", len(paths))
        return web.json_response({"paths": paths})

    @staticmethod
    def _image_extension(filename: str, content_type: str | None) -> str:
        if content_type and content_type.startswith("image/"):
            guessed = mimetypes.guess_extension(content_type.split(";")[0].strip())
            if guessed:
                return ".jpg" if guessed in (".jpe", ".jpeg") else guessed
        suffix = Path(filename).suffix
        return suffix if suffix else ".png"

    async def _handle_retrigger(self, request: web.Request) -> web.Response:
        touched = await self._branches.retouch_changed_files()
        logger.info("Reload retrigger: re-touched %d file(s)", touched)
        return web.json_response({"touched": touched})

    # ── WebSocket ──

    async def _handle_ws(self, request: web.Request) -> web.StreamResponse:
        ws = web.WebSocketResponse(heartbeat=30.0)
        await ws.prepare(request)
        self._clients.add(ws)
        logger.info("Client connected (%d total)", len(self._clients))
        try:
            await self._greet(ws)
            async for msg in ws:
                if msg.type == aiohttp.WSMsgType.TEXT:
                    try:
                        data = json.loads(msg.data)
                    except ValueError:
                        await self._send(ws, _frame(ErrorEvent(message="Invalid JSON message")))
                        continue
                    await self._handle_frame(ws, data)
                elif msg.type == aiohttp.WSMsgType.ERROR:
                    logger.warning("WebSocket error: %s", ws.exception())
        finally:
            self._clients.discard(ws)
            logger.info("Client disconnected (%d remaining)", len(self._clients))
        return ws

    async def _greet(self, ws: web.WebSocketResponse) -> None:
        await self._send(ws, _frame(StatusEvent(status="connected")))
        entries = self._history.snapshot()
        if entries:
            await self._send(ws, _frame(History(entries=entries)))
            logger.info("Sent %d history entries to client", len(entries))
        if self._active_prompt_id is not None:
            # Catch a reconnecting client up with the running prompt.
            await self._send(ws, _frame(StatusEvent(
                status="processing", prompt_id=self._active_prompt_id,
            )))
            if self._streamed_text:
                await self._send(ws, _frame(StreamChunk(
                    prompt_id=self._active_prompt_id, chunk=self._streamed_text,
                )))
        if self._config.git_status_enabled:
            await self._send(ws, await self._git_status_frame())

    async def _handle_frame(self, ws: web.WebSocketResponse, data: Any) -> None:
        kind = data.get("type") if isinstance(data, dict) else None
        if kind == "prompt" and isinstance(data.get("content"), str):
            await self._start_prompt(ws, data)
        elif kind == "new_session":
            await self._new_session(ws)
        elif kind == "stop":
            await self._stop(ws)
        elif kind == "discard_changes":
            await self._discard_changes(ws)
        elif kind == "list_branches":
            branches = await self._branches.list_branches()
            await self._send(ws, _frame(BranchesList(branches=[b.to_wire() for b in branches])))
            logger.info("Sent %d branches to client", len(branches))
        elif kind == "switch_branch" and isinstance(data.get("branchName"), str):
            result = await self._branches.switch_branch(data["branchName"])
            if result.success:
                await self._broadcast_git_status()
            await self._send(ws, _frame(result))
        elif kind == "create_branch" and isinstance(data.get("branchName"), str):
            result = await self._branches.create_branch(data["branchName"])
            if result.success:
                await self._broadcast_git_status()
            await self._send(ws, _frame(result))
        else:
            logger.warning("Unknown or malformed frame: %r", kind)
            await self._send(ws, _frame(ErrorEvent(message=INVALID_FORMAT)))

    # ── Session commands ──

    async def _new_session(self, ws: web.WebSocketResponse) -> None:
        await self._cancel_prompt()
        self._history.clear()
        if self.image_dir.exists():
            shutil.rmtree(self.image_dir, ignore_errors=True)
            logger.info("Cleaned up temp images")
        await self._send(ws, _frame(SessionCleared()))
        logger.info("Session cleared, starting fresh")

    async def _stop(self, ws: web.WebSocketResponse) -> None:
        if self._prompt_task is not None and not self._prompt_task.done():
            logger.info("Prompt %s stopped by user", self._active_prompt_id)
            self._history.add_system("stopped", "Stopped by user")
            await self._cancel_prompt()
        # Keep the session id so the next prompt continues the conversation.
        self._history.save()
        await self._send(ws, _frame(Stopped()))

    async def _discard_changes(self, ws: web.WebSocketResponse) -> None:
        logger.info("Discarding all git changes")
        try:
            await self._branches.discard_changes()
        except GitCommandError as exc:
            logger.error("Failed to discard changes: %s", exc)
            await self._send(ws, _frame(ErrorEvent(message=f"Failed to discard changes: {exc}")))
            return
        await self._broadcast_git_status()

    async def _cancel_prompt(self) -> None:
        task = self._prompt_task
        if task is None or task.done():
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass

    # ── Prompt execution ──

    async def _start_prompt(self, ws: web.WebSocketResponse, data: dict[str, Any]) -> None:
        prompt_id = data.get("id") or str(uuid.uuid4())
        if self._prompt_task is not None and not self._prompt_task.done():
            await self._send(ws, _frame(ErrorEvent(
                prompt_id=prompt_id,
                message=f"Prompt {self._active_prompt_id} is still running; stop it first",
            )))
            return
        content = data["content"]
        raw_images = data.get("imagePaths") or []
        image_paths = self._persist_images([p for p in raw_images if isinstance(p, str)])
        logger.info("Received prompt %s: %s", prompt_id, content[:50])
        self._active_prompt_id = prompt_id
        self._streamed_text = ""
        self._prompt_task = asyncio.create_task(
            self._run_prompt(prompt_id, content, image_paths or None)
        )

    def _persist_images(self, sources: list[str]) -> list[str]:
        """Copy attachments into the image dir (uploads already live there)."""
        if not sources:
            return []
        self.image_dir.mkdir(parents=True, exist_ok=True)
        image_dir = self.image_dir.resolve()
        persisted: list[str] = []
        for src in sources:
            path = Path(src)
            if not path.is_file():
                logger.error("Image file not found, skipping: %s", src)
                continue
            if path.resolve().parent == image_dir:
                persisted.append(str(path))
                continue
            dest = self.image_dir / f"{uuid.uuid4()}{path.suffix or '.png'}"
            try:
                shutil.copyfile(path, dest)
            except OSError as exc:
                logger.error("Failed to persist image %s: %s", src, exc)
                continue
            persisted.append(str(dest))
        return persisted

    async def _run_prompt(self, prompt_id: str, content: str, image_paths: list[str] | None) -> None:
        self._history.add_user(content, image_paths)
        await self._broadcast(_frame(StatusEvent(status="processing", prompt_id=prompt_id)))

        async def emit(event: TetherEvent) -> None:
            if isinstance(event, StreamChunk):
                event.prompt_id = prompt_id
                self._streamed_text += event.chunk
            elif isinstance(event, ToolEvent):
                event.prompt_id = prompt_id
                if event.status != "started":
                    self._history.add_tool(event.tool_name, event.status, event.input, event.output)
            await self._broadcast(_frame(event))

        try:
            outcome = await self._backend.run(
                content,
                session_id=self._history.session_id,
                image_paths=image_paths,
                emit=emit,
            )
            await self._finish_prompt(prompt_id, outcome)
        except asyncio.CancelledError:
            logger.info("Prompt %s cancelled", prompt_id)
            raise
        except Exception as exc:
            logger.exception("Agent error for prompt %s", prompt_id)
            self._history.add_system("error", str(exc))
            self._history.save()
            await self._broadcast(_frame(ErrorEvent(prompt_id=prompt_id, message=str(exc))))
        finally:
            self._active_prompt_id = None
            self._streamed_text = ""
            await self._broadcast(_frame(StatusEvent(status="idle")))

    async def _finish_prompt(self, prompt_id: str, outcome: AgentRunResult) -> None:
        if outcome.session_id:
            self._history.session_id = outcome.session_id
        await self._broadcast(_frame(StreamChunk(prompt_id=prompt_id, chunk="", done=True)))
        await self._broadcast(_frame(Result(
            prompt_id=prompt_id,
            success=outcome.success,
            result=outcome.result if outcome.success else None,
            error=None if outcome.success else (outcome.error or "Unknown error"),
            cost_usd=outcome.cost_usd,
            duration_ms=outcome.duration_ms,
        )))
        if outcome.success:
            response = self._streamed_text.strip() or outcome.result
            if response:
                self._history.add_assistant(response)
            self._history.save()
            logger.info("Prompt %s completed in %sms, cost=%s",
                        prompt_id, outcome.duration_ms, outcome.cost_usd)
            touched = await self._branches.retouch_changed_files()
            logger.info("Re-touched %d file(s) after completion", touched)
        else:
            self._history.add_system("error", outcome.error or "Unknown error")
            self._history.save()
            logger.error("Prompt %s failed: %s", prompt_id, outcome.error)

    # ── Git status ──

    async def _git_status_frame(self) -> dict[str, Any]:
        branch, changes, has_pr, pr_url = await self._branches.status()
        wire_changes = [c.to_wire() for c in changes]
        self._last_git_state = (branch, json.dumps(wire_changes))
        return _frame(GitStatus(
            branch_name=branch, changes=wire_changes, has_pr=has_pr, pr_url=pr_url,
        ))

    async def _broadcast_git_status(self) -> None:
        frame = await self._git_status_frame()
        await self._broadcast(frame)
        logger.info("Git status updated: %s (%d changes, PR: %s)",
                    frame.get("branchName"), len(frame.get("changes", [])), frame.get("hasPR"))

    async def _git_watch_loop(self) -> None:
        interval = self._config.git_poll_interval
        while True:
            await asyncio.sleep(interval)
            if not self._clients or self._branches.busy:
                continue
            try:
                branch = await asyncio.to_thread(self._git.current_branch, self._config.base_branch)
                changes = await asyncio.to_thread(self._git.get_changes)
            except Exception:
                logger.exception("Git watcher poll failed")
                continue
            state = (branch, json.dumps([c.to_wire() for c in changes]))
            if state != self._last_git_state:
                await self._broadcast_git_status()

    # ── Sending ──

    async def _send(self, ws: web.WebSocketResponse, frame: dict[str, Any]) -> None:
        if ws.closed:
            return
        try:
            await ws.send_json(frame)
        except (ConnectionResetError, RuntimeError) as exc:
            logger.debug("Dropping frame %s for closed client: %s", frame.get("type"), exc)

    async def _broadcast(self, frame: dict[str, Any]) -> None:
        for ws in list(self._clients):
            await self._send(ws, frame)
