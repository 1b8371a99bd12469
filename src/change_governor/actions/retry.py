"""
Retry policy for transient platform errors.

RetryConfig computes exponential backoff delays with jitter so that many
actions failing against the same platform outage do not retry in lockstep.
Retries happen inside the execution timeout budget; the lifecycle manager
gives up as soon as either attempts or time run out.
"""

import random
from dataclasses import dataclass


@dataclass
class RetryConfig:
    """
    Configuration for platform-call retry behavior.

    Attributes:
        max_attempts: Total attempts including the first (default 3)
        min_wait_seconds: Wait before the first retry (default 0.5)
        max_wait_seconds: Upper bound on any single wait (default 8.0)
        exponential_base: Base for exponential calculation (default 2.0)
        jitter_fraction: Fraction of wait time to add as jitter (default 0.5)

    Example:
        config = RetryConfig(max_attempts=5, min_wait_seconds=1.0)
        await asyncio.sleep(config.delay_for(attempt=1))
        # Sleeps ~2-3 seconds (2s base + jitter)
    """

    max_attempts: int = 3
    min_wait_seconds: float = 0.5
    max_wait_seconds: float = 8.0
    exponential_base: float = 2.0
    jitter_fraction: float = 0.5

    def delay_for(self, attempt: int) -> float:
        """
        Seconds to wait before retry number ``attempt``.

        Formula: min(max_wait, min_wait * base^attempt) + random(0, wait * jitter)

        Args:
            attempt: 0 for the first retry, 1 for the second, etc.
        """
        wait = min(
            self.max_wait_seconds,
            self.min_wait_seconds * (self.exponential_base**attempt),
        )
        return wait + random.uniform(0, wait * self.jitter_fraction)

    def should_retry(self, attempts_made: int) -> bool:
        """True if another attempt is allowed after ``attempts_made`` attempts."""
        return attempts_made < self.max_attempts
