"""Exponential backoff with jitter for reconnects and dispatch retries."""

import random
from dataclasses import dataclass


@dataclass(frozen=True)
class Backoff:
    """Capped exponential backoff.

    delay(n) = min(base * 2**(n-1) + uniform(0, jitter), max_delay)
    """

    base_delay: float = 1.0
    max_delay: float = 60.0
    jitter: float = 1.0

    def delay(self, attempt: int) -> float:
        """Seconds to wait before retry number ``attempt`` (1-based)."""
        exponent = max(0, attempt - 1)
        raw = self.base_delay * (2 ** exponent)
        if self.jitter > 0:
            raw += random.uniform(0, self.jitter)
        return min(raw, self.max_delay)
