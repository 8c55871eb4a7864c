"""Retry backoff shared by the HTTP embedding providers."""

from __future__ import annotations

import random
from dataclasses import dataclass

__all__ = ["RetryPolicy"]


@dataclass(frozen=True, slots=True)
class RetryPolicy:
    """Exponential backoff with symmetric jitter.

    The first attempt never waits; attempt ``n`` (n >= 2) waits
    ``base * multiplier ** (n - 2)`` seconds capped at ``cap``, scaled by a
    random factor in ``[1 - jitter, 1 + jitter]``.

    Example:
        >>> policy = RetryPolicy(jitter_ratio=0.0)
        >>> [policy.delay(n, random.Random(0)) for n in (1, 2, 3, 6, 9)]
        [0.0, 0.5, 1.0, 8.0, 8.0]
    """

    max_attempts: int = 5
    base: float = 0.5
    multiplier: float = 2.0
    cap: float = 8.0
    jitter_ratio: float = 0.2

    def __post_init__(self) -> None:
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be >= 1")

    def delay(self, attempt: int, rng: random.Random) -> float:
        if attempt <= 1:
            return 0.0
        base = min(self.base * (self.multiplier ** (attempt - 2)), self.cap)
        jitter = 1.0 + rng.uniform(-self.jitter_ratio, self.jitter_ratio)
        return round(base * jitter, 2)
