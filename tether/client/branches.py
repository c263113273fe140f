"""Client half of the branch lifecycle.

Branch switches are optimistic: the local view flips to the target at
once and is rolled back if the server reports failure. Branch creation
is not optimistic; the selector stays open until the server answers.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from typing import Any

from tether.adapters.events import (
    BranchCreated,
    BranchesList,
    BranchSwitched,
    CreateBranch,
    DiscardChanges,
    GitStatus,
    ListBranches,
    SwitchBranch,
    TetherEvent,
    event_to_dict,
)
from tether.engine.config import fire_callback
from tether.engine.errors import RequestRejected
from tether.shared.models.branch import (
    BranchMutation,
    BranchRecord,
    GitChange,
    normalize_current,
    pr_number_from_url,
)

logger = logging.getLogger(__name__)

NOT_CONNECTED = "Not connected"

SendFn = Callable[[dict[str, Any]], bool]


class BranchManager:
    """Owns the branch list, the current branch and the switch mutation."""

    def __init__(
        self,
        send: SendFn,
        *,
        initial_branch: str = "main",
        on_change: Callable[[], None] | None = None,
        on_rejected: Callable[[RequestRejected], None] | None = None,
    ) -> None:
        self._send = send
        self._on_change = on_change
        self._on_rejected = on_rejected

        self.branch_name = initial_branch
        self.branches: list[BranchRecord] = []
        self.changes: list[GitChange] = []
        self.has_pr = False
        self.pr_url: str | None = None

        self.selector_open = False
        self.loading = False
        self.error: str | None = None
        # Non-fatal message from the last switch, e.g. a stash conflict.
        self.notice: str | None = None
        self.create_pending = False
        self.mutation = BranchMutation()

    @property
    def pr_number(self) -> str | None:
        return pr_number_from_url(self.pr_url)

    @property
    def current(self) -> BranchRecord | None:
        return next((b for b in self.branches if b.is_current), None)

    # ── User actions ──

    def select(self, name: str) -> bool:
        """Optimistically switch to *name*. Returns whether the request went out."""
        current = self.current
        prior = current.name if current is not None else self.branch_name
        self.error = None
        self.notice = None
        self.mutation = BranchMutation.pending(target=name, prior=prior)
        self._set_current(name)
        self.selector_open = False
        logger.info("Switching branch %s -> %s (optimistic)", prior, name)

        if not self._send(event_to_dict(SwitchBranch(branch_name=name))):
            self._rollback(NOT_CONNECTED)
            return False
        self._changed()
        return True

    def create(self, name: str) -> bool:
        """Request a new branch. Local state changes only on the response."""
        self.error = None
        if not self._send(event_to_dict(CreateBranch(branch_name=name))):
            self.error = NOT_CONNECTED
            self._changed()
            return False
        self.create_pending = True
        self._changed()
        return True

    def toggle_selector(self) -> None:
        """Open or close the selector; opening refreshes the branch list."""
        self.selector_open = not self.selector_open
        if self.selector_open:
            self.loading = True
            if not self._send(event_to_dict(ListBranches())):
                self.loading = False
                self.error = NOT_CONNECTED
        self._changed()

    def close_selector(self) -> None:
        self.selector_open = False
        self._changed()

    def discard_changes(self) -> bool:
        return self._send(event_to_dict(DiscardChanges()))

    # ── Server responses ──

    def handle(self, event: TetherEvent) -> bool:
        """Apply one branch-related server event. False for anything else."""
        if isinstance(event, GitStatus):
            self.changes = [
                GitChange(file=str(c.get("file", "")), status=str(c.get("status", "")))
                for c in event.changes
                if isinstance(c, dict)
            ]
            self.has_pr = bool(event.has_pr)
            self.pr_url = event.pr_url
            # A pending switch owns the displayed branch until it resolves.
            if not self.mutation.is_pending and event.branch_name:
                self._set_current(event.branch_name)
        elif isinstance(event, BranchesList):
            self.branches = normalize_current(
                [BranchRecord.from_wire(b) for b in event.branches if isinstance(b, dict)],
                self.branch_name,
            )
            if self.mutation.is_pending:
                # The optimistic target stays current until the switch resolves.
                if any(b.name == self.branch_name for b in self.branches):
                    self._set_current(self.branch_name)
            elif self.current is not None:
                self.branch_name = self.current.name
            self.loading = False
        elif isinstance(event, BranchSwitched):
            self._on_switched(event)
        elif isinstance(event, BranchCreated):
            self._on_created(event)
        else:
            return False
        self._changed()
        return True

    def _on_switched(self, event: BranchSwitched) -> None:
        if event.success:
            self.mutation = BranchMutation.committed(event.branch_name)
            self.error = None
            self.notice = event.warning
            if event.branch_name:
                self._set_current(event.branch_name)
            if event.warning:
                logger.warning("Branch switch warning: %s", event.warning)
            return
        error = event.error or f"Failed to switch to {event.branch_name}"
        self._rollback(error)
        fire_callback(self._on_rejected, RequestRejected("switch_branch", error))

    def _on_created(self, event: BranchCreated) -> None:
        self.create_pending = False
        if event.success:
            self.selector_open = False
            self.error = None
            if event.branch_name:
                self._set_current(event.branch_name)
                if not any(b.name == event.branch_name for b in self.branches):
                    self.branches.insert(
                        0, BranchRecord(name=event.branch_name, is_current=True),
                    )
                    normalize_current(self.branches, event.branch_name)
            return
        self.error = event.error or f"Failed to create {event.branch_name}"
        logger.warning("Branch creation failed: %s", self.error)
        fire_callback(self._on_rejected, RequestRejected("create_branch", self.error))

    # ── Internals ──

    def _set_current(self, name: str) -> None:
        self.branch_name = name
        for b in self.branches:
            b.is_current = b.name == name

    def _rollback(self, error: str) -> None:
        prior = self.mutation.prior if self.mutation.is_pending else None
        if prior is not None:
            self._set_current(prior)
        self.mutation = BranchMutation.rolled_back(self.mutation.target, error)
        self.selector_open = True
        self.error = error
        logger.warning(
            "Branch switch rolled back to %s: %s", prior or self.branch_name, error,
        )
        self._changed()

    def _changed(self) -> None:
        fire_callback(self._on_change)

