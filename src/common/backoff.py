from __future__ import annotations

from dataclasses import dataclass


@dataclass(frozen=True)
class RetryPolicy:
    """
    Bounded retry with capped exponential backoff.

    - `attempts`: total tries, including the first one.
    - Delay before retry `n` (0-based attempt that just failed) is
      `min(base_delay * 2**n, max_delay)` seconds.
    """

    attempts: int = 3
    base_delay: float = 0.1
    max_delay: float = 2.0

    def __post_init__(self) -> None:
        if self.attempts <= 0:
            raise ValueError("attempts must be > 0")
        if self.base_delay < 0 or self.max_delay < 0:
            raise ValueError("delays must be >= 0")

    def delay_for(self, attempt: int) -> float:
        """Return seconds to wait after the failed `attempt` (>= 0)."""
        return min(self.base_delay * (2 ** attempt), self.max_delay)

    def should_retry(self, attempt: int) -> bool:
        return attempt < self.attempts - 1
