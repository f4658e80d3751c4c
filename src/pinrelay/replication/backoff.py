"""Exponential backoff with jitter for backend retries."""

from __future__ import annotations

import random
from dataclasses import dataclass


@dataclass(frozen=True)
class RetryPolicy:
    """How often and how late a failed (identifier, backend) pin is retried.

    ``delay(n)`` is the wait after the n-th failed attempt. Jitter only ever
    lengthens a delay, so as long as ``jitter < factor - 1`` consecutive
    delays grow strictly until they reach ``cap``.
    """

    max_attempts: int = 10
    base: float = 1.0
    factor: float = 2.0
    cap: float = 300.0
    jitter: float = 0.1

    def delay(self, attempt: int) -> float:
        raw = self.base * self.factor ** max(attempt - 1, 0)
        if raw >= self.cap:
            return self.cap
        if self.jitter > 0:
            raw *= 1 + random.uniform(0, self.jitter)
        return min(raw, self.cap)

    def exhausted(self, attempts: int) -> bool:
        return attempts >= self.max_attempts
