"""Abstract upstream source: rate limiting, retries and record transformation."""

from __future__ import annotations

import asyncio
import math
from abc import ABC, abstractmethod
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Dict, Iterable, List, Optional

import httpx

from token_aggregator.core.errors import PayloadError, UpstreamError
from token_aggregator.core.logging import get_logger
from token_aggregator.core.rate_limiter import RateLimiter
from token_aggregator.core.retry import with_retry
from token_aggregator.schemas.token import Token

DEFAULT_HEADERS = {"Accept": "application/json", "User-Agent": "TokenAggregator/1.0"}
RATE_WINDOW_SECONDS = 60

# Reference-rate fallback (USD per SOL) until the first price lookup succeeds
DEFAULT_REFERENCE_RATE = 200.0


def to_float(value: Any) -> float:
    """Lenient numeric parse; upstreams send numbers, numeric strings or nothing."""
    if value is None or value == "":
        return 0.0
    try:
        result = float(value)
    except (TypeError, ValueError, OverflowError):
        return 0.0
    # float() accepts "nan" and "inf"
    return result if math.isfinite(result) else 0.0


def parse_timestamp(value: Any) -> Optional[datetime]:
    if not value:
        return None
    try:
        if isinstance(value, (int, float)):
            # epoch milliseconds
            return datetime.fromtimestamp(value / 1000, tz=timezone.utc)
        if isinstance(value, str):
            parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
            if parsed.tzinfo is None:
                parsed = parsed.replace(tzinfo=timezone.utc)
            return parsed.astimezone(timezone.utc)
    except (ValueError, OverflowError, OSError):
        return None
    return None


def per_reference(value_usd: float, reference_rate: float) -> float:
    return value_usd / reference_rate if reference_rate else 0.0


class BaseSource(ABC):
    """One upstream market-data API.

    Every outbound request first waits on the source's own limiter, then runs
    under the retry wrapper. Exhausted retries surface as ``UpstreamError``.
    """

    name: str

    def __init__(
        self,
        base_url: str,
        rate_limit: int,
        timeout: float = 10.0,
        max_retries: int = 3,
        client: Optional[httpx.AsyncClient] = None,
        limiter: Optional[RateLimiter] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.client = client or httpx.AsyncClient(base_url=base_url, timeout=timeout, headers=DEFAULT_HEADERS)
        self.limiter = limiter or RateLimiter.create(rate_limit, RATE_WINDOW_SECONDS, self.name)
        self.max_retries = max_retries
        self._sleep = sleep
        self.log = get_logger("ingestion", source=self.name)

    def _on_retry(self, exc: Exception, attempt: int) -> None:
        self.limiter.report_failure()
        self.log.warning(f"[{self.name}] attempt {attempt + 1} failed, retrying: {exc}")

    async def _get(self, path: str, params: Optional[Dict[str, Any]] = None) -> Any:
        await self.limiter.wait_for_token()

        async def attempt() -> Any:
            resp = await self.client.get(path, params=params)
            resp.raise_for_status()
            return resp.json()

        try:
            data = await with_retry(
                attempt,
                max_retries=self.max_retries,
                on_retry=self._on_retry,
                sleep=self._sleep,
            )
        except (httpx.HTTPError, ValueError) as exc:
            self.limiter.report_failure()
            status = exc.response.status_code if isinstance(exc, httpx.HTTPStatusError) else None
            raise UpstreamError(self.name, f"GET {path} failed: {exc}", status_code=status) from exc
        self.limiter.report_success()
        return data

    @abstractmethod
    def transform(self, raw: Dict[str, Any], reference_rate: float = DEFAULT_REFERENCE_RATE) -> Token:
        """Map one upstream record onto the unified token shape."""

    @abstractmethod
    async def fetch_tokens(self, reference_rate: float = DEFAULT_REFERENCE_RATE) -> List[Token]:
        """Pull this source's current listing, already transformed."""

    def safe_transform(self, raw: Dict[str, Any], reference_rate: float, **kwargs: Any) -> Optional[Token]:
        try:
            return self.transform(raw, reference_rate, **kwargs)
        except (PayloadError, KeyError, TypeError, ValueError, OverflowError, AttributeError, IndexError) as exc:
            self.log.warning(f"[{self.name}] skipping malformed record: {exc}")
            return None

    def transform_many(self, raws: Iterable[Dict[str, Any]], reference_rate: float) -> List[Token]:
        tokens = []
        for raw in raws:
            token = self.safe_transform(raw, reference_rate)
            if token is not None:
                tokens.append(token)
        return tokens

    def rate_limit_status(self) -> Dict[str, object]:
        return self.limiter.status()

    async def aclose(self) -> None:
        await self.client.aclose()
