"""Tether engine: configuration and error taxonomy shared by client and server."""
from .config import TetherConfig
from .errors import (
    GitCommandError,
    RequestRejected,
    SendWhileDisconnected,
    StashConflict,
    TetherError,
    TransportDrop,
    TransportError,
    TransportExhausted,
    UploadFailure,
)

__all__ = [
    "TetherConfig",
    "GitCommandError",
    "RequestRejected",
    "SendWhileDisconnected",
    "StashConflict",
    "TetherError",
    "TransportDrop",
    "TransportError",
    "TransportExhausted",
    "UploadFailure",
]
