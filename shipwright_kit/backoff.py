"""Retry delays for remote calls.

``RetryDelay`` maps a 1-based attempt number to the pause before the next
attempt. It holds no state, so one policy can be shared by every loop
that retries the generation gateway, the template fetcher or the
deployment platform.
"""

from __future__ import annotations

import random
from dataclasses import dataclass


@dataclass(frozen=True)
class RetryDelay:
    """Capped exponential delay, optionally jittered.

    The pause after attempt *n* is ``initial_s * multiplier ** (n - 1)``,
    capped at ``max_s``. With jitter the pause is scaled into the upper
    half of that value.
    """

    initial_s: float = 1.0
    max_s: float = 30.0
    multiplier: float = 2.0
    jitter: bool = True

    def __post_init__(self) -> None:
        if self.initial_s <= 0 or self.max_s < self.initial_s or self.multiplier < 1.0:
            raise ValueError(
                f"Invalid retry delay: initial={self.initial_s} max={self.max_s} "
                f"multiplier={self.multiplier}"
            )

    def for_attempt(self, attempt: int) -> float:
        """Seconds to wait after failed *attempt* before trying again."""
        exponent = max(attempt, 1) - 1
        try:
            delay = min(self.initial_s * self.multiplier ** exponent, self.max_s)
        except OverflowError:
            delay = self.max_s
        if self.jitter:
            delay *= random.uniform(0.5, 1.0)
        return round(delay, 4)
