"""Blocking git primitives for the executing side.

Every method shells out to ``git`` (or ``gh``) in the project root and
returns when the command finishes. Query helpers degrade to empty
results when git is unavailable; mutations raise GitCommandError so the
caller can report the failure. The stash primitives never drop a stash
entry that failed to apply.
"""
from __future__ import annotations

import json
import logging
import re
import shutil
import subprocess
from dataclasses import dataclass
from pathlib import Path

from tether.engine.errors import GitCommandError, StashConflict
from tether.shared.models.branch import BranchRecord, GitChange

logger = logging.getLogger(__name__)

STASH_PREFIX = "tether-auto-stash:"

_INVALID_BRANCH_CHARS = re.compile(r"[\s~^:?*\[\]\\]")


def stash_label(tag: str) -> str:
    return f"{STASH_PREFIX}{tag}"


def is_valid_branch_name(name: str) -> bool:
    """Subset of git's ref-name rules, enough to reject hostile input."""
    if not name or name.strip() != name or len(name) > 250:
        return False
    if _INVALID_BRANCH_CHARS.search(name):
        return False
    if ".." in name or "//" in name or "@{" in name:
        return False
    if name.endswith((".", "/", ".lock")):
        return False
    if name.startswith(("-", ".", "/")):
        return False
    return True


def classify_status(code: str) -> str:
    """Map a two-letter porcelain status code to a GitChange status."""
    if code == "??":
        return "untracked"
    if "A" in code:
        return "added"
    if "D" in code:
        return "deleted"
    if "R" in code:
        return "renamed"
    return "modified"


@dataclass
class StashResult:
    did_stash: bool
    error: str | None = None


@dataclass
class PopResult:
    popped: bool
    conflict: bool = False
    message: str | None = None
    stash_ref: str | None = None


class GitOperations:
    """Git commands scoped to one project root."""

    def __init__(self, project_root: str | Path, *, timeout: float = 30.0) -> None:
        self.project_root = Path(project_root)
        self.timeout = timeout

    # ── Command runners ──

    def _run_tool(self, tool: str, args: list[str], timeout: float | None = None) -> str:
        cmd = [tool, *args]
        try:
            result = subprocess.run(
                cmd,
                cwd=str(self.project_root),
                capture_output=True,
                text=True,
                timeout=timeout or self.timeout,
            )
        except FileNotFoundError as exc:
            raise GitCommandError(cmd, 127, f"{tool} not found: {exc}") from exc
        except subprocess.TimeoutExpired as exc:
            raise GitCommandError(cmd, -1, f"timed out after {exc.timeout}s") from exc
        if result.returncode != 0:
            raise GitCommandError(cmd, result.returncode, result.stderr or result.stdout)
        return result.stdout

    def git(self, *args: str, timeout: float | None = None) -> str:
        """Run ``git <args>``; return raw stdout or raise GitCommandError."""
        return self._run_tool("git", list(args), timeout)

    # ── Queries ──

    def current_branch(self, default: str = "main") -> str:
        try:
            return self.git("rev-parse", "--abbrev-ref", "HEAD", timeout=5).strip() or default
        except GitCommandError as exc:
            logger.debug("current_branch failed: %s", exc)
            return default

    def get_changes(self) -> list[GitChange]:
        """Uncommitted changes, including untracked files."""
        try:
            out = self.git("status", "--porcelain", "-u", "-z", timeout=10)
        except GitCommandError as exc:
            logger.debug("get_changes failed: %s", exc)
            return []
        changes: list[GitChange] = []
        entries = out.split("\0")
        i = 0
        while i < len(entries):
            entry = entries[i]
            i += 1
            if len(entry) < 4:
                continue
            code, path = entry[:2], entry[3:]
            if "R" in code or "C" in code:
                # -z puts the rename source in the following entry
                i += 1
            changes.append(GitChange(file=path, status=classify_status(code)))
        return changes

    def has_uncommitted_changes(self) -> bool:
        try:
            return bool(self.git("status", "--porcelain", "-u", timeout=10).strip())
        except GitCommandError as exc:
            logger.debug("has_uncommitted_changes failed: %s", exc)
            return False

    def git_root(self) -> Path:
        try:
            return Path(self.git("rev-parse", "--show-toplevel", timeout=5).strip())
        except GitCommandError:
            return self.project_root

    def gh_available(self) -> bool:
        return shutil.which("gh") is not None

    def pr_status(self) -> tuple[bool, str | None]:
        """(has_pr, pr_url) for the current branch via ``gh``."""
        if not self.gh_available():
            return False, None
        try:
            url = self._run_tool("gh", ["pr", "view", "--json", "url", "-q", ".url"], 10).strip()
        except GitCommandError:
            return False, None
        return True, url or None

    def list_branches(self, remote: str = "origin") -> list[BranchRecord]:
        """Local branches by recency, then remote-only branches, PR-enriched."""
        fmt = "--format=%(refname:short)|%(committerdate:iso8601)"
        try:
            local_out = self.git("branch", "--sort=-committerdate", fmt, timeout=10)
        except GitCommandError as exc:
            logger.warning("Listing branches failed: %s", exc)
            return []

        current = self.current_branch()
        branches: list[BranchRecord] = []
        for line in local_out.splitlines():
            name, _, date = line.partition("|")
            name = name.strip()
            if not name:
                continue
            branches.append(BranchRecord(
                name=name,
                is_current=name == current,
                last_commit_date=date.strip() or None,
            ))

        local_names = {b.name for b in branches}
        try:
            remote_out = self.git("branch", "-r", "--sort=-committerdate", fmt, timeout=10)
        except GitCommandError as exc:
            logger.debug("Listing remote branches failed: %s", exc)
            remote_out = ""
        prefix = f"{remote}/"
        for line in remote_out.splitlines():
            raw, _, date = line.partition("|")
            raw = raw.strip()
            if not raw or raw == remote or raw.endswith("/HEAD"):
                continue
            name = raw[len(prefix):] if raw.startswith(prefix) else raw
            if name in local_names:
                continue
            local_names.add(name)
            branches.append(BranchRecord(
                name=name, last_commit_date=date.strip() or None, is_remote=True,
            ))

        self._enrich_with_prs(branches)
        return branches

    def _enrich_with_prs(self, branches: list[BranchRecord]) -> None:
        if not branches or not self.gh_available():
            return
        try:
            out = self._run_tool(
                "gh", ["pr", "list", "--json", "headRefName,number,title", "--limit", "10"], 15,
            )
            prs = json.loads(out or "[]")
        except (GitCommandError, ValueError) as exc:
            logger.debug("PR enrichment skipped: %s", exc)
            return
        by_name = {b.name: b for b in branches}
        for pr in prs:
            branch = by_name.get(pr.get("headRefName"))
            if branch is not None:
                branch.pr_number = str(pr.get("number"))
                branch.pr_title = pr.get("title")

    # ── Stash primitives ──

    def stash(self, tag: str) -> StashResult:
        """Stash all uncommitted work (untracked included) under *tag*."""
        if not self.has_uncommitted_changes():
            return StashResult(did_stash=False)
        try:
            self.git("stash", "push", "-u", "-m", stash_label(tag))
        except GitCommandError as exc:
            logger.warning("Auto-stash for %s failed: %s", tag, exc)
            return StashResult(did_stash=False, error=str(exc))
        logger.info("Auto-stashed changes as %s", stash_label(tag))
        return StashResult(did_stash=True)

    def find_stash(self, tag: str) -> str | None:
        """Ref (``stash@{N}``) of the newest stash labeled for *tag*."""
        label = stash_label(tag)
        for line in self.git("stash", "list").splitlines():
            if line.endswith(label):
                return line.split(":", 1)[0]
        return None

    def pop_stash(self, tag: str) -> PopResult:
        """Re-apply the auto-stash for *tag*, if any.

        Runs on a clean tree (right after a checkout). On conflict the tree
        is reset to HEAD, leftovers from the failed apply are cleaned, and
        the stash entry stays in place for manual recovery.
        """
        try:
            ref = self.find_stash(tag)
        except GitCommandError as exc:
            logger.warning("Reading stash list failed: %s", exc)
            return PopResult(popped=False, message=str(exc))
        if ref is None:
            return PopResult(popped=False)

        try:
            self.git("stash", "pop", ref)
        except GitCommandError as exc:
            logger.warning("Auto-stash pop for %s conflicted: %s", tag, exc)
            # Must not raise past here without reporting: the stash is kept.
            self.git("reset", "--hard", "HEAD")
            self.git("clean", "-fd")
            conflict = StashConflict(tag, ref)
            return PopResult(
                popped=False, conflict=True, message=str(conflict), stash_ref=ref,
            )
        logger.info("Restored auto-stash %s", stash_label(tag))
        return PopResult(popped=True, stash_ref=ref)

    def restore_stash_after_failure(self) -> bool:
        """Plain ``git stash pop`` used to undo a stash before a failed step."""
        try:
            self.git("stash", "pop")
        except GitCommandError as exc:
            logger.error("Restoring stash after failure failed: %s", exc)
            return False
        return True

    # ── Mutations ──

    def checkout_branch(self, name: str) -> None:
        self.git("checkout", name)

    def create_branch_from_base(
        self, name: str, base: str = "main", remote: str = "origin",
    ) -> None:
        """Fetch *remote*/*base* and branch from it.

        Falls back to the local *base* when the remote cannot be fetched.
        """
        try:
            self.git("fetch", remote, base, timeout=60)
            start = f"{remote}/{base}"
        except GitCommandError as exc:
            logger.warning("Fetching %s/%s failed, branching from local %s: %s",
                           remote, base, base, exc)
            start = base
        self.git("checkout", "-b", name, start)

    def discard_all_changes(self) -> None:
        self.git("checkout", "--", ".")
        self.git("clean", "-fd")

    def retouch_changed_files(self) -> int:
        """Rewrite every uncommitted, non-deleted file with its own bytes.

        File watchers see a fresh modification for each; returns how many
        files were touched.
        """
        root = self.git_root()
        touched = 0
        for change in self.get_changes():
            if change.status == "deleted":
                continue
            path = root / change.file
            if not path.is_file():
                continue
            try:
                path.write_bytes(path.read_bytes())
            except OSError as exc:
                logger.warning("Could not re-touch %s: %s", path, exc)
                continue
            touched += 1
        return touched
