"""Exponential back-off with jitter for retrying transient failures."""

from __future__ import annotations

import random
from dataclasses import dataclass

from cadenza.core.models.resilience import ResilienceConfig


@dataclass
class RetryBackoff:
    initial_ms: int
    max_ms: int
    max_attempts: int  # 0 = retry forever
    attempts: int = 0

    @classmethod
    def from_config(cls, config: ResilienceConfig) -> RetryBackoff:
        return cls(
            initial_ms=config.db_retry_initial_ms,
            max_ms=config.db_retry_max_ms,
            max_attempts=config.db_retry_max_attempts,
        )

    def reset(self) -> None:
        self.attempts = 0

    def can_retry(self) -> bool:
        match self.max_attempts:
            case 0:
                return True
            case _:
                return self.attempts < self.max_attempts

    def next_delay_seconds(self) -> float:
        self.attempts += 1
        exponent = max(0, self.attempts - 1)
        base_ms = min(self.max_ms, int(self.initial_ms * (2**exponent)))
        jitter_range = base_ms * 0.25
        delay_ms = base_ms + random.uniform(-jitter_range, jitter_range)
        return max(0.1, delay_ms / 1000.0)
