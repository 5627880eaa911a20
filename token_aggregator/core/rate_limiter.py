"""Token-bucket rate limiter with failure-driven backoff.

Every upstream source owns one limiter. The bucket refills continuously at
``max_tokens / window`` units per second. When a caller has to wait, the wait
grows exponentially with the number of consecutive reported failures, so an
unhealthy upstream is polled more slowly even though the nominal refill rate
is unchanged.
"""

from __future__ import annotations

import asyncio
import time
from typing import Awaitable, Callable, Dict

from token_aggregator.core.logging import get_logger
from token_aggregator.core.retry import backoff_delay

log = get_logger("rate_limiter")

# 2^5 = 32x the base per-unit interval
MAX_BACKOFF_EXPONENT = 5


class RateLimiter:
    """Per-source admission control."""

    def __init__(
        self,
        max_tokens: float,
        refill_rate: float,
        name: str,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        if max_tokens <= 0 or refill_rate <= 0:
            raise ValueError("max_tokens and refill_rate must be positive")
        self.max_tokens = float(max_tokens)
        self.refill_rate = float(refill_rate)  # units per second
        self.name = name
        self._clock = clock
        self._sleep = sleep
        self._tokens = float(max_tokens)
        self._last_refill = clock()
        self.failures = 0

    @classmethod
    def create(
        cls,
        max_requests: int,
        window_seconds: float,
        name: str,
        **kwargs,
    ) -> "RateLimiter":
        """Build a limiter allowing ``max_requests`` per ``window_seconds``."""
        return cls(max_requests, max_requests / window_seconds, name, **kwargs)

    def _refill(self) -> None:
        now = self._clock()
        elapsed = max(0.0, now - self._last_refill)
        self._tokens = min(self.max_tokens, self._tokens + elapsed * self.refill_rate)
        self._last_refill = now

    def try_acquire(self) -> bool:
        """Take one unit if available; never waits."""
        self._refill()
        if self._tokens >= 1:
            self._tokens -= 1
            return True
        return False

    def current_wait_seconds(self) -> float:
        """Delay a caller will sleep for when the bucket is empty."""
        multiplier = 2 ** min(self.failures, MAX_BACKOFF_EXPONENT)
        return (1.0 / self.refill_rate) * multiplier

    async def wait_for_token(self) -> None:
        """Suspend the calling task until a unit is granted."""
        while not self.try_acquire():
            wait = self.current_wait_seconds()
            log.debug(f"[{self.name}] waiting {wait * 1000:.0f}ms")
            await self._sleep(wait)

    def report_success(self) -> None:
        self.failures = 0

    def report_failure(self) -> None:
        self.failures += 1
        log.warning(f"[{self.name}] failure #{self.failures}")

    def available_tokens(self) -> int:
        self._refill()
        return int(self._tokens)

    @staticmethod
    def get_backoff_delay(attempt: int) -> float:
        """Retry delay in seconds: 1s * 2^attempt capped at 30s, plus up to 1s jitter."""
        return backoff_delay(attempt, base_delay=1.0, max_delay=30.0, jitter=1.0)

    def status(self) -> Dict[str, object]:
        return {
            "name": self.name,
            "available": self.available_tokens(),
            "capacity": int(self.max_tokens),
            "consecutive_failures": self.failures,
        }
