"""
Policy value objects consumed by kernel services.

The kernel never reads configuration; ``inventory_config.bridges`` builds
these from the loaded YAML, and tests construct them directly.
"""

import random
from dataclasses import dataclass


@dataclass(frozen=True)
class OutboxPolicy:
    """
    Retry schedule and retention for outbox entries.

    Delay before attempt ``n + 1`` after ``n`` failures:
    ``min(base_delay_ms * 2**n, max_delay_ms) + uniform(0, jitter_ms)``.
    """

    max_attempts: int = 5
    base_delay_ms: int = 1000
    max_delay_ms: int = 300_000
    jitter_ms: int = 5000
    retention_days: int = 7

    def __post_init__(self) -> None:
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be >= 1")
        if self.base_delay_ms < 0 or self.max_delay_ms < self.base_delay_ms:
            raise ValueError("delays must satisfy 0 <= base_delay_ms <= max_delay_ms")
        if self.jitter_ms < 0:
            raise ValueError("jitter_ms must be >= 0")

    def backoff_ms(self, attempt: int, rng: random.Random | None = None) -> int:
        """Delay in ms after ``attempt`` failed attempts (attempt >= 1)."""
        delay = min(self.base_delay_ms * (2 ** attempt), self.max_delay_ms)
        if self.jitter_ms:
            delay += int((rng or random).uniform(0, self.jitter_ms))
        return delay
