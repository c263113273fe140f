"""Reconnect policies for ResilientConnection.

The session channel and the build-reload channel fail for different
reasons and at different costs, so they carry independent policies:
a fixed interval without jitter for the session channel, exponential
backoff with jitter for the reload channel.
"""
from __future__ import annotations

import random
from dataclasses import dataclass, field
from typing import Protocol


class RetryPolicy(Protocol):
    """Decides how long to wait before reconnect attempt *attempt* (1-based)."""

    max_attempts: int

    def delay_for(self, attempt: int) -> float: ...


@dataclass
class FixedIntervalPolicy:
    interval: float = 3.0
    max_attempts: int = 10

    def delay_for(self, attempt: int) -> float:
        return self.interval


@dataclass
class ExponentialBackoffPolicy:
    """``min(base * factor**(n-1), max_delay)`` scaled by ±jitter."""

    base: float = 2.0
    factor: float = 1.5
    max_delay: float = 30.0
    jitter: float = 0.2
    max_attempts: int = 50
    rng: random.Random = field(default_factory=random.Random, repr=False)

    def delay_for(self, attempt: int) -> float:
        delay = min(self.base * self.factor ** max(attempt - 1, 0), self.max_delay)
        spread = 1.0 - self.jitter + self.rng.random() * 2 * self.jitter
        return delay * spread


def session_policy(config) -> FixedIntervalPolicy:
    """Build the session-channel policy from a TetherConfig."""
    return FixedIntervalPolicy(
        interval=config.session_reconnect_interval,
        max_attempts=config.session_max_attempts,
    )


def reload_policy(config) -> ExponentialBackoffPolicy:
    """Build the reload-channel policy from a TetherConfig."""
    return ExponentialBackoffPolicy(
        base=config.reload_backoff_base,
        factor=config.reload_backoff_factor,
        max_delay=config.reload_backoff_max,
        jitter=config.reload_backoff_jitter,
        max_attempts=config.reload_max_attempts,
    )
