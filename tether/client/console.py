"""Terminal front end for the session client.

Renders session events with rich and reads prompts and slash commands
from stdin. Branch state and the conversation come from the
SessionClient's BranchManager and MessageAssembler; the console only
draws what they already decided.
"""

from __future__ import annotations

import asyncio
import logging
import sys
from pathlib import Path
from typing import Optional

from rich.console import Console
from rich.table import Table
from rich.text import Text

from tether.adapters.addresses import mask_secret
from tether.adapters.event_bus import EventBus
from tether.adapters.events import (
    BranchCreated,
    BranchesList,
    BranchSwitched,
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
)
from tether.adapters.reload_channel import CloseInfo, ReloadChannel
from tether.client.branches import BranchManager
from tether.client.session import SessionClient
from tether.shared.models.message import (
    ErrorRecord,
    HistoryResultRecord,
    SystemRecord,
    ToolRecord,
    Turn,
    UserPromptRecord,
)

logger = logging.getLogger(__name__)

HELP_TEXT = """\
Type a prompt and press Enter. Commands:
  /attach PATH     attach an image to the next prompt
  /stop            stop the running prompt
  /new             start a new session
  /branches        list branches
  /switch NAME     switch branch (work is auto-stashed per branch)
  /create NAME     create a branch from the base branch
  /discard         discard all uncommitted changes
  /commit          ask the agent to commit and push
  /pr              ask the agent to open a pull request
  /quit            exit"""


def parse_command(line: str) -> tuple[str, str] | None:
    """Split ``/name rest`` into (name, rest); None for a plain prompt."""
    line = line.strip()
    if not line.startswith("/"):
        return None
    name, _, rest = line[1:].partition(" ")
    return name.lower(), rest.strip()


def _format_duration(duration_ms: float | None) -> str:
    if duration_ms is None:
        return ""
    secs = duration_ms / 1000
    if secs < 60:
        return f"{secs:.1f}s"
    m, s = divmod(int(secs), 60)
    return f"{m}m {s}s"


def render_event(event: TetherEvent) -> Optional[Text]:
    """One-line rendering for events that are not streamed text."""
    if isinstance(event, ToolEvent):
        if event.status == "started":
            return Text(f"  ⚙ {event.tool_name}", style="cyan")
        style = "green" if event.status == "completed" else "red"
        return Text(f"  ⚙ {event.tool_name} {event.status}", style=style)
    if isinstance(event, Result):
        parts = []
        if event.duration_ms is not None:
            parts.append(_format_duration(event.duration_ms))
        if event.cost_usd is not None:
            parts.append(f"${event.cost_usd:.4f}")
        if event.success:
            return Text(f"✓ done {' '.join(parts)}".rstrip(), style="green")
        return Text(f"✗ failed: {event.error or 'unknown error'}", style="red bold")
    if isinstance(event, ErrorEvent):
        return Text(f"Error: {event.message}", style="red bold")
    if isinstance(event, Stopped):
        return Text("Stopped", style="yellow")
    if isinstance(event, SessionCleared):
        return Text("Session cleared", style="dim")
    if isinstance(event, StatusEvent) and event.status == "processing":
        return Text("● processing", style="yellow")
    if isinstance(event, BranchSwitched):
        if event.success:
            line = Text(f"Switched to {event.branch_name}", style="green")
            if event.warning:
                line.append(f"\n{event.warning}", style="yellow")
            return line
        return Text(f"Switch to {event.branch_name} failed: {event.error}", style="red")
    if isinstance(event, BranchCreated):
        if event.success:
            return Text(f"Created {event.branch_name}", style="green")
        return Text(f"Create {event.branch_name} failed: {event.error}", style="red")
    return None


def render_git_status(branches: BranchManager) -> Text:
    bar = Text()
    bar.append(f" {branches.branch_name} ", style="bold")
    bar.append(" │ ", style="dim")
    count = len(branches.changes)
    bar.append(f"{count} change{'s' if count != 1 else ''}",
               style="yellow" if count else "dim")
    if branches.has_pr:
        bar.append(" │ ", style="dim")
        number = branches.pr_number
        bar.append(f"PR #{number}" if number else "PR open", style="magenta")
    return bar


def render_branch_table(branches: BranchManager) -> Table:
    table = Table(show_header=True, header_style="bold")
    table.add_column("")
    table.add_column("Branch")
    table.add_column("PR")
    table.add_column("Last commit", style="dim")
    for record in branches.branches:
        pr = f"#{record.pr_number} {record.pr_title or ''}".strip() if record.pr_number else ""
        name = f"{record.name} (remote)" if record.is_remote else record.name
        table.add_row(
            "●" if record.is_current else "",
            name,
            pr,
            record.last_commit_date or "",
        )
    return table


class ConsoleClient:
    """Interactive terminal loop over a SessionClient."""

    def __init__(
        self,
        client: SessionClient,
        bus: EventBus,
        *,
        console: Console | None = None,
        reload_channel: ReloadChannel | None = None,
    ) -> None:
        self.client = client
        self.bus = bus
        self.console = console or Console()
        self.reload_channel = reload_channel
        self._attachments: list[str] = []
        self._streaming = False
        self._quit = asyncio.Event()

    async def run(self) -> None:
        self.console.print(Text(f"Connecting to {mask_secret(self.client.address)}", style="dim"))
        self.client.connect()
        if self.reload_channel is not None:
            self.reload_channel.add_listener("close", self._on_reload_close)
            self.reload_channel.open()
        self.console.print(HELP_TEXT, style="dim")
        render_task = asyncio.create_task(self._render_loop())
        input_task = asyncio.create_task(self._input_loop())
        try:
            await self._quit.wait()
        finally:
            input_task.cancel()
            self.bus.close()
            await asyncio.gather(render_task, return_exceptions=True)
            if self.reload_channel is not None:
                await self.reload_channel.aclose()
            await self.client.aclose()

    def _on_reload_close(self, info: CloseInfo) -> None:
        if info.code != 1000:
            self.console.print(Text(f"Reload channel closed: {info.reason}", style="red"))

    # ── Rendering ──

    async def _render_loop(self) -> None:
        async for event in self.bus.consume():
            self.render(event)

    def render(self, event: TetherEvent) -> None:
        if isinstance(event, StreamChunk):
            if event.chunk:
                self.console.print(event.chunk, end="", markup=False, highlight=False)
                self._streaming = True
            return
        self._end_stream()
        if isinstance(event, History):
            self._render_history()
            return
        if isinstance(event, GitStatus):
            self.console.print(render_git_status(self.client.branches))
            return
        if isinstance(event, BranchesList):
            self.console.print(render_branch_table(self.client.branches))
            return
        line = render_event(event)
        if line is not None:
            self.console.print(line)

    def _end_stream(self) -> None:
        if self._streaming:
            self.console.print()
            self._streaming = False

    def _render_history(self) -> None:
        for record in self.client.assembler.records:
            if isinstance(record, UserPromptRecord):
                self.console.print(Text(f"> {record.content}", style="bold"))
            elif isinstance(record, Turn):
                self.console.print(record.text, markup=False, highlight=False)
            elif isinstance(record, HistoryResultRecord):
                self.console.print(record.content, markup=False, highlight=False)
            elif isinstance(record, ToolRecord):
                self.console.print(Text(f"  ⚙ {record.tool_name} {record.status.value}", style="dim"))
            elif isinstance(record, SystemRecord):
                self.console.print(Text(record.content, style="yellow"))
            elif isinstance(record, ErrorRecord):
                self.console.print(Text(f"Error: {record.message}", style="red"))
        self.console.rule(style="dim")

    # ── Input ──

    async def _input_loop(self) -> None:
        while not self._quit.is_set():
            line = await asyncio.to_thread(sys.stdin.readline)
            if not line:
                self._quit.set()
                return
            line = line.strip()
            if line:
                await self.handle_line(line)

    async def handle_line(self, line: str) -> None:
        command = parse_command(line)
        if command is None:
            attachments, self._attachments = self._attachments, []
            self.console.print(Text(f"> {line}", style="bold"))
            if await self.client.submit_prompt(line, attachments) is None:
                self.console.print(Text(f"Not sent: {self.client.last_error}", style="red"))
            return

        name, arg = command
        branches = self.client.branches
        if name in ("quit", "exit"):
            self._quit.set()
        elif name == "help":
            self.console.print(HELP_TEXT, style="dim")
        elif name == "attach":
            if not arg or not Path(arg).is_file():
                self.console.print(Text(f"No such file: {arg}", style="red"))
            else:
                self._attachments.append(arg)
                self.console.print(Text(f"Attached {arg}", style="dim"))
        elif name == "stop":
            self.client.stop()
        elif name == "new":
            self.client.new_session()
        elif name == "branches":
            if branches.selector_open:
                branches.close_selector()
            branches.toggle_selector()
        elif name == "switch" and arg:
            if branches.select(arg):
                self.console.print(Text(f"Switching to {arg}...", style="dim"))
            else:
                self.console.print(Text(branches.error or "Switch refused", style="red"))
        elif name == "create" and arg:
            if not branches.create(arg):
                self.console.print(Text(branches.error or "Create refused", style="red"))
        elif name == "discard":
            branches.discard_changes()
        elif name == "commit":
            await self.client.commit_changes()
        elif name == "pr":
            await self.client.create_pull_request()
        else:
            self.console.print(Text(f"Unknown command: /{name}", style="red"))
