"""Tests for the client-side branch manager.

Covers:
- Optimistic switch applied before the response
- Rollback restoring the prior branch and reopening the selector
- Commit on success (with an optional stash warning)
- Non-optimistic branch creation
- Branch list normalization (exactly one current branch)
"""
from __future__ import annotations

from tether.adapters.events import BranchCreated, BranchesList, BranchSwitched, GitStatus
from tether.client.branches import NOT_CONNECTED, BranchManager
from tether.shared.models.branch import BranchRecord, MutationPhase, normalize_current


class RecordingSend:
    def __init__(self, accept: bool = True) -> None:
        self.accept = accept
        self.frames: list[dict] = []

    def __call__(self, frame: dict) -> bool:
        if self.accept:
            self.frames.append(frame)
        return self.accept


def _manager(send: RecordingSend | None = None) -> BranchManager:
    mgr = BranchManager(send or RecordingSend(), initial_branch="A")
    mgr.handle(BranchesList(branches=[
        {"name": "A", "isCurrent": True},
        {"name": "B", "isCurrent": False},
    ]))
    return mgr


def _current_names(mgr: BranchManager) -> list[str]:
    return [b.name for b in mgr.branches if b.is_current]


def test_switch_is_optimistic():
    send = RecordingSend()
    mgr = _manager(send)
    mgr.toggle_selector()

    assert mgr.select("B") is True
    assert mgr.branch_name == "B"
    assert _current_names(mgr) == ["B"]
    assert mgr.selector_open is False
    assert mgr.mutation.phase is MutationPhase.PENDING
    assert mgr.mutation.prior == "A"
    assert send.frames[-1] == {"type": "switch_branch", "branchName": "B"}


def test_failed_switch_rolls_back_with_server_error():
    mgr = _manager()
    mgr.select("B")
    mgr.handle(BranchSwitched(
        branch_name="B", success=False,
        error="error: Your local changes would be overwritten by checkout",
    ))

    assert mgr.branch_name == "A"
    assert _current_names(mgr) == ["A"]
    assert mgr.selector_open is True
    assert mgr.error == "error: Your local changes would be overwritten by checkout"
    assert mgr.mutation.phase is MutationPhase.ROLLED_BACK


def test_rollback_restores_branch_learned_from_listing():
    mgr = BranchManager(RecordingSend())
    mgr.handle(BranchesList(branches=[
        {"name": "A", "isCurrent": True},
        {"name": "B", "isCurrent": False},
    ]))
    assert mgr.branch_name == "A"

    mgr.select("B")
    assert mgr.mutation.prior == "A"
    mgr.handle(BranchSwitched(branch_name="B", success=False, error="checkout failed"))

    assert mgr.branch_name == "A"
    assert _current_names(mgr) == ["A"]
    assert mgr.selector_open is True


def test_listing_during_pending_switch_keeps_target_current():
    mgr = BranchManager(RecordingSend())
    mgr.handle(BranchesList(branches=[{"name": "A", "isCurrent": True}, {"name": "B"}]))
    mgr.select("B")
    mgr.handle(BranchesList(branches=[{"name": "A", "isCurrent": True}, {"name": "B"}]))
    assert mgr.branch_name == "B"
    assert _current_names(mgr) == ["B"]


def test_successful_switch_commits_and_keeps_warning():
    mgr = _manager()
    mgr.error = "old error"
    mgr.select("B")
    mgr.handle(BranchSwitched(branch_name="B", success=True, warning="stash kept as stash@{0}"))

    assert mgr.branch_name == "B"
    assert _current_names(mgr) == ["B"]
    assert mgr.error is None
    assert mgr.notice == "stash kept as stash@{0}"
    assert mgr.mutation.phase is MutationPhase.COMMITTED


def test_switch_refused_while_disconnected_rolls_back():
    mgr = _manager(RecordingSend(accept=False))
    assert mgr.select("B") is False
    assert mgr.branch_name == "A"
    assert _current_names(mgr) == ["A"]
    assert mgr.error == NOT_CONNECTED


def test_git_status_does_not_override_pending_switch():
    mgr = _manager()
    mgr.select("B")
    mgr.handle(GitStatus(branch_name="A", changes=[{"file": "x.py", "status": "modified"}]))
    assert mgr.branch_name == "B"
    assert mgr.changes[0].file == "x.py"

    mgr.handle(BranchSwitched(branch_name="B", success=True))
    mgr.handle(GitStatus(branch_name="B", has_pr=True, pr_url="https://github.com/o/r/pull/42"))
    assert mgr.has_pr is True
    assert mgr.pr_number == "42"


def test_create_is_not_optimistic():
    send = RecordingSend()
    mgr = _manager(send)
    mgr.toggle_selector()

    assert mgr.create("feature/x") is True
    assert mgr.branch_name == "A"
    assert mgr.selector_open is True
    assert mgr.create_pending is True

    mgr.handle(BranchCreated(branch_name="feature/x", success=False, error="already exists"))
    assert mgr.selector_open is True
    assert mgr.branch_name == "A"
    assert mgr.error == "already exists"
    assert mgr.create_pending is False

    mgr.create("feature/y")
    mgr.handle(BranchCreated(branch_name="feature/y", success=True))
    assert mgr.selector_open is False
    assert mgr.branch_name == "feature/y"
    assert _current_names(mgr) == ["feature/y"]


def test_refused_requests_reported_as_rejections():
    rejected = []
    mgr = BranchManager(RecordingSend(), initial_branch="A", on_rejected=rejected.append)
    mgr.select("B")
    mgr.handle(BranchSwitched(branch_name="B", success=False, error="checkout failed"))
    mgr.create("B")
    mgr.handle(BranchCreated(branch_name="B", success=False, error="already exists"))

    assert [(r.request_type, r.reason) for r in rejected] == [
        ("switch_branch", "checkout failed"),
        ("create_branch", "already exists"),
    ]


def test_toggle_selector_requests_listing():
    send = RecordingSend()
    mgr = BranchManager(send)
    mgr.toggle_selector()
    assert mgr.loading is True
    assert send.frames == [{"type": "list_branches"}]

    mgr.handle(BranchesList(branches=[{"name": "main", "isCurrent": True}]))
    assert mgr.loading is False
    assert mgr.current is not None and mgr.current.name == "main"


def test_normalize_current_leaves_exactly_one():
    both = [BranchRecord("a", is_current=True), BranchRecord("b", is_current=True)]
    assert [b.name for b in normalize_current(both, "b") if b.is_current] == ["a"]

    none = [BranchRecord("a"), BranchRecord("b")]
    assert [b.name for b in normalize_current(none, "b") if b.is_current] == ["b"]

    unknown = [BranchRecord("a"), BranchRecord("b")]
    assert [b.name for b in normalize_current(unknown, "zzz") if b.is_current] == ["a"]
