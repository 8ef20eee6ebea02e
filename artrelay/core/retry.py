"""Retry policy and the bounded retry state machine used by the fetch engine.

The retry bound is structural: a ``RetryTracker`` hands out at most
``max_retries`` attempts and then moves to ``EXHAUSTED``.  Delays follow
``min(base * 2**attempt + jitter, max_delay)`` where jitter is drawn from
``[0, jitter_factor * base * 2**attempt]``.  With ``jitter_factor < 1`` the
delay is non-decreasing in the attempt index.
"""

from __future__ import annotations

import logging
import random
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable, List, Optional

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RetryPolicy:
    """Backoff parameters for one proxy's attempt budget."""

    max_retries: int = 3
    base_delay: float = 1.0
    max_delay: float = 30.0
    jitter_factor: float = 0.3

    def __post_init__(self) -> None:
        if self.max_retries < 1:
            raise ValueError("max_retries must be at least 1")
        if self.base_delay < 0:
            raise ValueError("base_delay must be non-negative")
        if self.max_delay < self.base_delay:
            raise ValueError("max_delay must be >= base_delay")
        if not 0.0 <= self.jitter_factor < 1.0:
            raise ValueError("jitter_factor must be in [0, 1)")

    def compute_delay(
        self,
        attempt: int,
        rng: Callable[[], float] = random.random,
    ) -> float:
        """Delay to wait after the failed attempt with index ``attempt`` (0-based)."""
        if attempt < 0:
            raise ValueError("attempt must be non-negative")
        exponential = self.base_delay * (2**attempt)
        jitter = rng() * self.jitter_factor * exponential
        return min(exponential + jitter, self.max_delay)

    @classmethod
    def from_config(cls, config) -> "RetryPolicy":
        return cls(
            max_retries=int(config.get("retry.max_retries", 3)),
            base_delay=float(config.get("retry.base_delay", 1.0)),
            max_delay=float(config.get("retry.max_delay", 30.0)),
            jitter_factor=float(config.get("retry.jitter_factor", 0.3)),
        )


class RetryState(Enum):
    """States of a single proxy's attempt budget."""

    IDLE = "idle"
    ATTEMPTING = "attempting"
    BACKING_OFF = "backing_off"
    EXHAUSTED = "exhausted"


@dataclass
class RetryTracker:
    """Explicit ``Idle -> Attempting -> BackingOff -> Exhausted`` state machine."""

    policy: RetryPolicy
    rng: Callable[[], float] = random.random
    state: RetryState = RetryState.IDLE
    attempts: int = 0
    delays: List[float] = field(default_factory=list)

    @property
    def remaining(self) -> int:
        return self.policy.max_retries - self.attempts

    def begin_attempt(self) -> int:
        """Enter ``ATTEMPTING`` and return the 0-based attempt index."""
        if self.state in (RetryState.ATTEMPTING, RetryState.EXHAUSTED):
            raise RuntimeError(f"Cannot start an attempt from state {self.state.value}")
        self.state = RetryState.ATTEMPTING
        self.attempts += 1
        return self.attempts - 1

    def record_failure(self, retry_after: Optional[float] = None) -> float:
        """Enter ``BACKING_OFF`` and return the delay to wait.

        ``retry_after`` (seconds, e.g. from a 429 response) replaces the
        computed delay, still capped at ``max_delay``.
        """
        if self.state is not RetryState.ATTEMPTING:
            raise RuntimeError(f"No attempt in progress (state {self.state.value})")
        if retry_after is not None:
            delay = min(max(retry_after, 0.0), self.policy.max_delay)
        else:
            delay = self.policy.compute_delay(self.attempts - 1, self.rng)
        self.delays.append(delay)
        self.state = RetryState.BACKING_OFF
        return delay

    def finish_backoff(self) -> RetryState:
        """Leave ``BACKING_OFF``: back to ``IDLE`` or ``EXHAUSTED`` when the budget is spent."""
        if self.state is not RetryState.BACKING_OFF:
            raise RuntimeError(f"Not backing off (state {self.state.value})")
        self.state = RetryState.IDLE if self.remaining > 0 else RetryState.EXHAUSTED
        return self.state

    def exhaust(self) -> None:
        """Abandon the budget without further attempts."""
        self.state = RetryState.EXHAUSTED
