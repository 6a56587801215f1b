"""Retry policy for runs: exponential backoff with bounded jitter."""

from __future__ import annotations

import random
from dataclasses import dataclass


def compute_backoff(
    attempt: int,
    *,
    base_seconds: float,
    max_seconds: float,
    jitter: float = 0.0,
) -> float:
    """Delay before the next attempt: ``min(max, base * 2**attempt + jitter)``.

    ``attempt`` is zero-based (0 after the first failure). ``jitter`` is the
    already-drawn random component so the function stays deterministic.
    """

    if attempt < 0:
        raise ValueError("attempt must be >= 0")
    return min(max_seconds, base_seconds * (2**attempt) + max(0.0, jitter))


@dataclass(slots=True)
class RetryPolicy:
    max_attempts: int = 3
    base_seconds: float = 5.0
    max_seconds: float = 300.0
    jitter_seconds: float = 1.0

    def should_retry(self, attempts_made: int) -> bool:
        return attempts_made < self.max_attempts

    def delay_after(self, attempts_made: int, *, rng: random.Random) -> float:
        """Backoff after ``attempts_made`` failed attempts (1-based)."""

        jitter = rng.uniform(0, self.jitter_seconds) if self.jitter_seconds > 0 else 0.0
        return compute_backoff(
            max(attempts_made - 1, 0),
            base_seconds=self.base_seconds,
            max_seconds=self.max_seconds,
            jitter=jitter,
        )
