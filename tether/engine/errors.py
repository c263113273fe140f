"""Exception hierarchy for the relay.

One exception per failure mode. Transport failures are converted to
status transitions or callbacks at the connection boundary and are
never raised out of it; they are still modeled here so callbacks
receive typed, descriptive errors.
"""
from __future__ import annotations


class TetherError(Exception):
    """Base exception for all relay errors."""


class TransportError(TetherError):
    """Base for failures of a persistent connection."""

    def __init__(self, channel: str, message: str):
        self.channel = channel
        super().__init__(f"[{channel}] {message}")


class TransportDrop(TransportError):
    """The connection closed without the caller asking for it."""

    def __init__(self, channel: str, reason: str = "connection lost"):
        self.reason = reason
        super().__init__(channel, f"Connection dropped: {reason}")


class TransportExhausted(TransportError):
    """Reconnect attempt cap reached; no further retries will happen."""

    def __init__(self, channel: str, attempts: int):
        self.attempts = attempts
        super().__init__(
            channel,
            f"Gave up reconnecting after {attempts} attempts",
        )


class SendWhileDisconnected(TransportError):
    """A frame was dropped because the connection is not open."""

    def __init__(self, channel: str, frame_type: str | None):
        self.frame_type = frame_type
        super().__init__(
            channel,
            f"Not connected; dropped frame {frame_type or '<untyped>'}",
        )


class RequestRejected(TetherError):
    """The remote side refused a specific request."""

    def __init__(self, request_type: str, reason: str):
        self.request_type = request_type
        self.reason = reason
        super().__init__(f"{request_type} rejected: {reason}")


class GitCommandError(TetherError):
    """A git (or gh) subprocess exited non-zero."""

    def __init__(self, args: list[str], returncode: int, stderr: str):
        self.args_list = list(args)
        self.returncode = returncode
        self.stderr = stderr.strip()
        detail = self.stderr or f"exit status {returncode}"
        super().__init__(f"{' '.join(self.args_list)}: {detail}")


class StashConflict(TetherError):
    """Popping an auto-stash conflicted; the stash entry was kept."""

    def __init__(self, tag: str, stash_ref: str):
        self.tag = tag
        self.stash_ref = stash_ref
        super().__init__(
            f"Auto-stashed changes for '{tag}' conflict with the checked-out "
            f"branch. The working tree was reset and the stash was kept as "
            f"{stash_ref}; resolve manually with 'git stash apply {stash_ref}'."
        )


class UploadFailure(TetherError):
    """Attachment upload over the side channel failed."""

    def __init__(self, url: str, reason: str):
        self.url = url
        self.reason = reason
        super().__init__(f"Upload to {url} failed: {reason}")
