"""Server half of the branch lifecycle.

Sequences the git primitives for branch switches and creation:
stash the current branch's work, move HEAD, and (for switches) restore
the target branch's own auto-stash. Only one branch operation runs at a
time; the blocking git calls run in a worker thread so the event loop
keeps serving sockets.
"""
from __future__ import annotations

import asyncio
import logging

from tether.adapters.events import BranchCreated, BranchSwitched
from tether.engine.errors import GitCommandError
from tether.shared.models.branch import BranchRecord, GitChange
from tether.shared.services.git_ops import GitOperations, is_valid_branch_name

logger = logging.getLogger(__name__)

INVALID_BRANCH_NAME = "Invalid branch name"


class BranchService:
    """Serialized, thread-offloaded branch operations for one project."""

    def __init__(
        self,
        git: GitOperations,
        *,
        base_branch: str = "main",
        remote: str = "origin",
    ) -> None:
        self.git = git
        self.base_branch = base_branch
        self.remote = remote
        self._lock = asyncio.Lock()

    @property
    def busy(self) -> bool:
        return self._lock.locked()

    async def list_branches(self) -> list[BranchRecord]:
        return await asyncio.to_thread(self.git.list_branches, self.remote)

    async def status(self) -> tuple[str, list[GitChange], bool, str | None]:
        """(branch, changes, has_pr, pr_url) snapshot."""
        return await asyncio.to_thread(self._status_sync)

    def _status_sync(self) -> tuple[str, list[GitChange], bool, str | None]:
        branch = self.git.current_branch(self.base_branch)
        changes = self.git.get_changes()
        has_pr, pr_url = self.git.pr_status()
        return branch, changes, has_pr, pr_url

    async def switch_branch(self, name: str) -> BranchSwitched:
        if not is_valid_branch_name(name):
            return BranchSwitched(branch_name=name, success=False, error=INVALID_BRANCH_NAME)
        async with self._lock:
            return await asyncio.to_thread(self._switch_sync, name)

    async def create_branch(self, name: str) -> BranchCreated:
        if not is_valid_branch_name(name):
            return BranchCreated(branch_name=name, success=False, error=INVALID_BRANCH_NAME)
        async with self._lock:
            return await asyncio.to_thread(self._create_sync, name)

    async def discard_changes(self) -> None:
        async with self._lock:
            await asyncio.to_thread(self.git.discard_all_changes)

    async def retouch_changed_files(self) -> int:
        return await asyncio.to_thread(self.git.retouch_changed_files)

    # ── Blocking sequences (worker thread) ──

    def _switch_sync(self, name: str) -> BranchSwitched:
        previous = self.git.current_branch(self.base_branch)
        stash = self.git.stash(previous)
        if stash.error:
            logger.error("Failed to stash before switch: %s", stash.error)
            return BranchSwitched(
                branch_name=name, success=False,
                error=f"Failed to stash changes: {stash.error}",
            )

        try:
            self.git.checkout_branch(name)
        except GitCommandError as exc:
            self._rollback_stash(stash.did_stash, "checkout")
            logger.error("Failed to switch branch to %s: %s", name, exc)
            return BranchSwitched(branch_name=name, success=False, error=str(exc))

        warning = None
        try:
            pop = self.git.pop_stash(name)
        except GitCommandError as exc:
            # Reset after a conflicting pop failed; the tree needs attention.
            logger.error("Recovering from stash conflict on %s failed: %s", name, exc)
            return BranchSwitched(
                branch_name=name, success=True,
                warning=f"Auto-stash for {name} conflicted and cleanup failed: {exc}",
            )
        if pop.conflict:
            warning = pop.message
            logger.warning("Stash conflict after switching to %s: %s", name, pop.message)
        elif pop.popped:
            logger.info("Restored auto-stashed changes for branch %s", name)

        current = self.git.current_branch(self.base_branch)
        logger.info("Switched to branch: %s", current)
        return BranchSwitched(branch_name=current, success=True, warning=warning)

    def _create_sync(self, name: str) -> BranchCreated:
        previous = self.git.current_branch(self.base_branch)
        stash = self.git.stash(previous)
        if stash.error:
            logger.error("Failed to stash before create: %s", stash.error)
            return BranchCreated(
                branch_name=name, success=False,
                error=f"Failed to stash changes: {stash.error}",
            )

        try:
            # The stash stays put until the user returns to the old branch.
            self.git.create_branch_from_base(name, self.base_branch, self.remote)
        except GitCommandError as exc:
            self._rollback_stash(stash.did_stash, "branch creation")
            logger.error("Failed to create branch %s: %s", name, exc)
            return BranchCreated(branch_name=name, success=False, error=str(exc))

        current = self.git.current_branch(self.base_branch)
        logger.info("Created new branch: %s", current)
        return BranchCreated(branch_name=current, success=True)

    def _rollback_stash(self, did_stash: bool, step: str) -> None:
        if not did_stash:
            return
        if self.git.restore_stash_after_failure():
            logger.info("Restored stash after failed %s", step)
        else:
            logger.error("Failed to restore stash after failed %s", step)
