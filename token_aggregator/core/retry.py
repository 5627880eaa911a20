"""Bounded retry with exponential backoff and jitter."""

from __future__ import annotations

import asyncio
import random
from typing import Awaitable, Callable, Optional, TypeVar

T = TypeVar("T")


def backoff_delay(attempt: int, base_delay: float, max_delay: float, jitter: float) -> float:
    return min(base_delay * (2 ** attempt), max_delay) + random.uniform(0, jitter)


async def with_retry(
    fn: Callable[[], Awaitable[T]],
    max_retries: int = 3,
    base_delay: float = 1.0,
    max_delay: float = 30.0,
    jitter: float = 1.0,
    on_retry: Optional[Callable[[Exception, int], None]] = None,
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
) -> T:
    """Run ``fn`` up to ``max_retries + 1`` times.

    Usage:
        data = await with_retry(lambda: client.get(url), max_retries=3)

    The last error is re-raised once attempts are exhausted.
    """
    attempt = 0
    while True:
        try:
            return await fn()
        except Exception as exc:  # noqa: BLE001
            if attempt >= max_retries:
                raise
            if on_retry is not None:
                on_retry(exc, attempt)
            await sleep(backoff_delay(attempt, base_delay, max_delay, jitter))
            attempt += 1
