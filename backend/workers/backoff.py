"""
Woza Mali Engine - Shared Backoff Schedule

Exponential backoff with full jitter for reconnect loops.

Usage:
    from backend.workers.backoff import backoff_delays

    for delay in backoff_delays(base_ms=1000, factor=2, cap_ms=30000, max_attempts=8):
        if try_reconnect():
            break
        await asyncio.sleep(delay)

Schedule:
    pre-jitter delay for attempt n (1-based) = min(cap, base * factor ** (n - 1))
    jittered delay = pre-jitter delay * uniform(0.5, 1.0)
"""

from __future__ import annotations

import random
from dataclasses import dataclass, field
from typing import Iterator, Optional

# Defaults for realtime reconnection
INITIAL_BACKOFF_MS = 1000
MAX_BACKOFF_MS = 30000
BACKOFF_MULTIPLIER = 2.0
MAX_ATTEMPTS = 8
JITTER_FLOOR = 0.5


def pre_jitter_delay_ms(
    attempt: int,
    base_ms: float = INITIAL_BACKOFF_MS,
    factor: float = BACKOFF_MULTIPLIER,
    cap_ms: float = MAX_BACKOFF_MS,
) -> float:
    """Delay in ms before jitter for a 1-based attempt number."""
    if attempt < 1:
        raise ValueError(f"attempt must be >= 1, got {attempt}")
    return min(cap_ms, base_ms * factor ** (attempt - 1))


def backoff_delays(
    base_ms: float = INITIAL_BACKOFF_MS,
    factor: float = BACKOFF_MULTIPLIER,
    cap_ms: float = MAX_BACKOFF_MS,
    max_attempts: Optional[int] = MAX_ATTEMPTS,
    jitter: bool = True,
    rng: Optional[random.Random] = None,
) -> Iterator[float]:
    """
    Yield one delay (in seconds) per attempt.

    Args:
        base_ms: Delay before the first retry
        factor: Growth per attempt
        cap_ms: Ceiling applied before jitter
        max_attempts: Number of delays to yield; None for unbounded
        jitter: Multiply each delay by uniform(0.5, 1.0)
        rng: Random source (inject a seeded Random in tests)
    """
    rng = rng or random.Random()
    attempt = 0
    while max_attempts is None or attempt < max_attempts:
        attempt += 1
        delay_ms = pre_jitter_delay_ms(attempt, base_ms, factor, cap_ms)
        if jitter:
            delay_ms *= rng.uniform(JITTER_FLOOR, 1.0)
        yield delay_ms / 1000.0


@dataclass
class BackoffState:
    """
    Tracks consecutive failures for a reconnect loop.

    Attributes:
        consecutive_failures: Failures since the last success
        total_failures: Failures since creation (diagnostics)
    """

    base_ms: float = INITIAL_BACKOFF_MS
    factor: float = BACKOFF_MULTIPLIER
    cap_ms: float = MAX_BACKOFF_MS
    max_attempts: int = MAX_ATTEMPTS
    consecutive_failures: int = 0
    total_failures: int = 0
    rng: random.Random = field(default_factory=random.Random, repr=False)

    def record_failure(self) -> float:
        """Record a failure and return the jittered delay in seconds."""
        self.consecutive_failures += 1
        self.total_failures += 1
        delay_ms = pre_jitter_delay_ms(
            self.consecutive_failures, self.base_ms, self.factor, self.cap_ms
        )
        return delay_ms * self.rng.uniform(JITTER_FLOOR, 1.0) / 1000.0

    def record_success(self) -> None:
        """Reset consecutive failures; total is kept for diagnostics."""
        self.consecutive_failures = 0

    @property
    def exhausted(self) -> bool:
        return self.consecutive_failures >= self.max_attempts

    def reset(self) -> None:
        self.consecutive_failures = 0
        self.total_failures = 0
