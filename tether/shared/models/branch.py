"""Branch listing and branch-mutation state models."""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

_PR_NUMBER_RE = re.compile(r"/pull/(\d+)")


@dataclass
class BranchRecord:
    name: str
    is_current: bool = False
    pr_number: str | None = None
    pr_title: str | None = None
    last_commit_date: str | None = None
    is_remote: bool = False

    @classmethod
    def from_wire(cls, data: dict[str, Any]) -> BranchRecord:
        pr_number = data.get("prNumber")
        return cls(
            name=str(data.get("name", "")),
            is_current=bool(data.get("isCurrent", False)),
            pr_number=str(pr_number) if pr_number is not None else None,
            pr_title=data.get("prTitle"),
            last_commit_date=data.get("lastCommitDate"),
            is_remote=bool(data.get("isRemote", False)),
        )

    def to_wire(self) -> dict[str, Any]:
        d: dict[str, Any] = {"name": self.name, "isCurrent": self.is_current}
        if self.pr_number is not None:
            d["prNumber"] = self.pr_number
        if self.pr_title is not None:
            d["prTitle"] = self.pr_title
        if self.last_commit_date is not None:
            d["lastCommitDate"] = self.last_commit_date
        if self.is_remote:
            d["isRemote"] = True
        return d


@dataclass
class GitChange:
    file: str
    status: str  # "added", "modified", "deleted", "renamed", "untracked"

    def to_wire(self) -> dict[str, str]:
        return {"file": self.file, "status": self.status}


class MutationPhase(Enum):
    IDLE = "idle"
    PENDING = "pending"
    COMMITTED = "committed"
    ROLLED_BACK = "rolled_back"


@dataclass
class BranchMutation:
    """Tagged state of the optimistic branch switch.

    ``prior`` is meaningful only while PENDING; ``error`` only once
    ROLLED_BACK.
    """
    phase: MutationPhase = MutationPhase.IDLE
    target: str | None = None
    prior: str | None = None
    error: str | None = None

    @classmethod
    def pending(cls, target: str, prior: str) -> BranchMutation:
        return cls(MutationPhase.PENDING, target=target, prior=prior)

    @classmethod
    def committed(cls, target: str) -> BranchMutation:
        return cls(MutationPhase.COMMITTED, target=target)

    @classmethod
    def rolled_back(cls, target: str | None, error: str) -> BranchMutation:
        return cls(MutationPhase.ROLLED_BACK, target=target, error=error)

    @property
    def is_pending(self) -> bool:
        return self.phase is MutationPhase.PENDING


def pr_number_from_url(url: str | None) -> str | None:
    """``https://github.com/org/repo/pull/12`` → ``"12"``."""
    if not url:
        return None
    match = _PR_NUMBER_RE.search(url)
    return match.group(1) if match else None


def normalize_current(branches: list[BranchRecord], current: str | None) -> list[BranchRecord]:
    """Ensure exactly one record is current (when the list is non-empty).

    Preference: the first record the server flagged, then the record
    named *current*, then the first record.
    """
    if not branches:
        return branches
    names = [b.name for b in branches]
    flagged = [b.name for b in branches if b.is_current]
    if flagged:
        chosen = flagged[0]
    elif current in names:
        chosen = current
    else:
        chosen = names[0]
    seen = False
    for b in branches:
        b.is_current = b.name == chosen and not seen
        seen = seen or b.is_current
    return branches
