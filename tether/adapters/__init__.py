"""Adapters: wire frames, resilient connections and side channels."""
from .connection import ConnectionStatus, ResilientConnection
from .event_bus import EventBus
from .events import TetherEvent, dict_to_event, event_to_dict
from .reload_channel import ReloadChannel, is_reload_address
from .retry import ExponentialBackoffPolicy, FixedIntervalPolicy
from .upload import AttachmentUploader

__all__ = [
    "AttachmentUploader",
    "ConnectionStatus",
    "EventBus",
    "ExponentialBackoffPolicy",
    "FixedIntervalPolicy",
    "ReloadChannel",
    "ResilientConnection",
    "TetherEvent",
    "dict_to_event",
    "event_to_dict",
    "is_reload_address",
]
