"""Retry policy and backoff delay computation.

Everything here is pure: no I/O, no clock. The scheduler in
``hookrelay.webhooks.scheduler`` turns a computed delay into a retry job.
"""

from __future__ import annotations

import random
from dataclasses import dataclass, field
from enum import Enum

# Jitter spread as a fraction of the computed delay (±10%)
JITTER_RATIO = 0.1

DEFAULT_RETRY_STATUSES: frozenset[int] = frozenset({408, 429, 500, 502, 503, 504})


class BackoffStrategy(str, Enum):
    """How the wait between attempts grows."""

    FIXED = "fixed"
    LINEAR = "linear"
    EXPONENTIAL = "exponential"


@dataclass(frozen=True)
class RetryPolicy:
    """Retry configuration embedded in a webhook endpoint."""

    enabled: bool = True
    max_attempts: int = 5
    backoff_strategy: BackoffStrategy = BackoffStrategy.EXPONENTIAL
    initial_delay_ms: int = 1000
    max_delay_ms: int = 60000
    retry_on_status: frozenset[int] = field(default_factory=lambda: DEFAULT_RETRY_STATUSES)
    jitter: bool = False

    @property
    def effective_max_attempts(self) -> int:
        """Attempt budget a new delivery gets (one when retries are off)."""
        return self.max_attempts if self.enabled else 1

    def validate(self) -> list[str]:
        """Return a list of problems; empty when the policy is consistent."""
        errors = []
        if self.max_attempts < 1:
            errors.append("retry_policy.max_attempts must be at least 1")
        if self.initial_delay_ms < 0:
            errors.append("retry_policy.initial_delay_ms must not be negative")
        if self.max_delay_ms < 0:
            errors.append("retry_policy.max_delay_ms must not be negative")
        if self.initial_delay_ms > self.max_delay_ms:
            errors.append("retry_policy.initial_delay_ms must not exceed max_delay_ms")
        bad_codes = sorted(code for code in self.retry_on_status if not 100 <= code <= 599)
        if bad_codes:
            errors.append(f"retry_policy.retry_on_status has invalid HTTP codes: {bad_codes}")
        return errors

    def is_retryable_status(self, status_code: int) -> bool:
        return status_code in self.retry_on_status


def compute_delay(
    strategy: BackoffStrategy | str,
    attempt: int,
    initial_delay: int,
    max_delay: int,
    jitter: bool = False,
    rng: random.Random | None = None,
) -> int:
    """
    Compute the wait before the next attempt.

    Args:
        strategy: fixed, linear or exponential
        attempt: 1-based number of the attempt that just failed
        initial_delay: Base delay (any unit; the result uses the same unit)
        max_delay: Ceiling applied after the strategy and jitter
        jitter: Spread the delay by up to ±10%
        rng: Random source for jitter (defaults to the module RNG)

    Returns:
        The delay, clamped to ``[0, max_delay]``
    """
    if attempt < 1:
        raise ValueError(f"attempt must be 1-based, got {attempt}")

    strategy = BackoffStrategy(strategy)
    if strategy is BackoffStrategy.FIXED:
        delay = initial_delay
    elif strategy is BackoffStrategy.LINEAR:
        delay = initial_delay * attempt
    else:
        # Clamp the exponent so very large attempt numbers stay cheap
        exponent = min(attempt - 1, 62)
        delay = initial_delay * (2**exponent)

    delay = min(delay, max_delay)

    if jitter and delay > 0:
        source = rng or random
        spread = delay * JITTER_RATIO
        delay = delay + source.uniform(-spread, spread)
        delay = min(max(delay, 0), max_delay)

    return int(delay)
