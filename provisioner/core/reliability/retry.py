"""
Retry policy — exponential backoff between attempts of one step.

Network-dependent installers (toolchain downloads, shell framework
fetches) fail transiently. A step may declare ``retries``; the engine
asks this policy how long to wait before each further attempt.
"""

from __future__ import annotations

import random
from dataclasses import dataclass


@dataclass(frozen=True)
class RetryPolicy:
    """Backoff schedule for step retries.

    delay(n) = min(base_delay * 2**(n-1), max_delay), plus up to
    ``jitter`` × delay of random spread.
    """

    base_delay: float = 2.0
    max_delay: float = 60.0
    jitter: float = 0.3

    def delay_for(self, attempt: int) -> float:
        """Seconds to wait after failed attempt number ``attempt`` (1-based)."""
        if attempt < 1:
            return 0.0
        delay = min(self.base_delay * (2 ** (attempt - 1)), self.max_delay)
        if self.jitter > 0:
            delay += random.uniform(0, delay * self.jitter)
        return delay
