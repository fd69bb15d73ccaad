"""Bounded exponential backoff policy.

Shared by the broker connect cycle and the mailer retry loop.

Version: 1.0.0
"""

from __future__ import annotations

from dataclasses import dataclass


@dataclass(frozen=True)
class ExponentialBackoff:
    """Exponential backoff with a capped delay and a capped attempt count.

    Attributes:
        attempts: Maximum number of attempts (>= 1).
        base_seconds: Delay after the first failed attempt.
        factor: Multiplier applied after each further failure.
        max_seconds: Upper bound for a single delay.

    Example:
        >>> policy = ExponentialBackoff(attempts=4, base_seconds=1, max_seconds=5)
        >>> [policy.delay_for(n) for n in range(1, 4)]
        [1.0, 2.0, 4.0]
    """

    attempts: int = 5
    base_seconds: float = 1.0
    factor: float = 2.0
    max_seconds: float = 30.0

    def __post_init__(self) -> None:
        if self.attempts < 1:
            raise ValueError("attempts must be >= 1")
        if self.base_seconds < 0 or self.max_seconds < 0:
            raise ValueError("delays cannot be negative")

    def delay_for(self, attempt: int) -> float:
        """Delay to wait after the given failed attempt (1-based)."""
        if attempt < 1:
            raise ValueError("attempt is 1-based")
        delay = self.base_seconds * (self.factor ** (attempt - 1))
        return float(min(delay, self.max_seconds))
