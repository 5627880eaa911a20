"""Token aggregation engine.

Pulls listings from every configured source, reconciles them into one record
per token address, emits domain events when prices or volumes move, and
serves filtered, sorted, cursor-paginated views.

Usage:
    aggregator = TokenAggregator(primary=dex, discovery=jup, pools=gecko, cache=cache, event_sink=hub)
    await aggregator.initialize()
    page = await aggregator.get_tokens(TokenFilter(min_volume=1000), TokenSort(field="volume"))
"""

from __future__ import annotations

import asyncio
import time
from datetime import datetime
from typing import Any, Dict, List, Optional, Tuple

from pydantic import BaseModel, Field, ValidationError

from token_aggregator.core.errors import InitializationError
from token_aggregator.core.logging import get_logger
from token_aggregator.ingestion.base import DEFAULT_REFERENCE_RATE, BaseSource
from token_aggregator.ingestion.dexscreener import DexScreenerSource
from token_aggregator.ingestion.geckoterminal import GeckoTerminalSource
from token_aggregator.ingestion.jupiter import JupiterSource
from token_aggregator.schemas.query import (
    PaginatedResponse,
    PaginationInfo,
    PaginationOptions,
    QueryMeta,
    TokenFilter,
    TokenSort,
)
from token_aggregator.schemas.token import PriceUpdate, Token, VolumeSpike, utcnow
from token_aggregator.services import query
from token_aggregator.services.cache import BaseCache
from token_aggregator.services.events import NEW_TOKEN, PRICE_UPDATE, VOLUME_SPIKE, EventSink, emit

log = get_logger("aggregator")

ALL_TOKENS_KEY = "tokens:all"
PRICE_CHANGE_THRESHOLD = 1.0  # percent, absolute move
VOLUME_SPIKE_THRESHOLD = 50.0  # percent, increase only
VOLUME_SPIKE_WINDOW = "5m"

# Fields overwritten by incoming data unless the incoming value is zero
PREFER_NONZERO_FIELDS = (
    "price_sol",
    "price_usd",
    "market_cap_sol",
    "market_cap_usd",
    "volume_sol",
    "volume_usd",
    "liquidity_sol",
    "liquidity_usd",
    "price_1hr_change",
    "price_24hr_change",
    "price_7d_change",
    "volume_1hr",
    "volume_24hr",
    "volume_7d",
)


def token_key(address: str) -> str:
    return f"token:{address}"


class RefreshResult(BaseModel):
    succeeded: List[str] = Field(default_factory=list)
    failed: Dict[str, str] = Field(default_factory=dict)
    total_tokens: int = 0
    elapsed_ms: int = 0
    completed_at: datetime = Field(default_factory=utcnow)

    @property
    def all_failed(self) -> bool:
        return not self.succeeded and bool(self.failed)


class SourceOutcome(BaseModel):
    ok: bool
    tokens: int = 0
    error: Optional[str] = None
    at: datetime = Field(default_factory=utcnow)


class TokenAggregator:
    """Owns the canonical token map; every mutation goes through ``merge_token``."""

    def __init__(
        self,
        cache: BaseCache,
        primary: Optional[DexScreenerSource] = None,
        discovery: Optional[JupiterSource] = None,
        pools: Optional[GeckoTerminalSource] = None,
        event_sink: Optional[EventSink] = None,
        cache_ttl: int = 30,
        default_page_size: int = 30,
        default_reference_rate: float = DEFAULT_REFERENCE_RATE,
    ):
        self.cache = cache
        self.primary = primary
        self.discovery = discovery
        self.pools = pools
        self.event_sink = event_sink
        self.cache_ttl = cache_ttl
        self.default_page_size = default_page_size

        self._tokens: Dict[str, Token] = {}
        self._previous_prices: Dict[str, float] = {}
        self._previous_volumes: Dict[str, float] = {}
        self._outcomes: Dict[str, SourceOutcome] = {}
        self._reference_rate = default_reference_rate
        self.last_full_refresh: Optional[datetime] = None

    @property
    def sources(self) -> List[BaseSource]:
        return [s for s in (self.primary, self.pools, self.discovery) if s is not None]

    @property
    def reference_rate(self) -> float:
        return self._reference_rate

    # -------------------------------------------------------------------------
    # Refresh
    # -------------------------------------------------------------------------

    async def initialize(self) -> RefreshResult:
        log.info("Initializing token aggregator...")
        try:
            await self.refresh_reference_rate()
            result = await self.refresh_all()
        except Exception as exc:
            log.exception(f"Initial refresh failed: {exc}")
            raise InitializationError(str(exc)) from exc
        log.info(f"Token aggregator initialized with {len(self._tokens)} tokens")
        return result

    async def refresh_reference_rate(self) -> float:
        """Update the USD-per-SOL rate; failures keep the previous value."""
        if self.discovery is None:
            return self._reference_rate
        try:
            rate = await self.discovery.get_reference_rate()
        except Exception as exc:  # noqa: BLE001
            log.warning(f"Reference rate refresh failed, keeping {self._reference_rate}: {exc}")
            return self._reference_rate
        if rate and rate > 0:
            self._reference_rate = rate
            log.debug(f"Reference rate updated: ${rate}")
        return self._reference_rate

    async def _refresh_source(self, source: BaseSource) -> int:
        tokens = await source.fetch_tokens(self._reference_rate)
        for token in tokens:
            self.merge_token(token)
        return len(tokens)

    async def refresh_all(self) -> RefreshResult:
        """Fetch from every source concurrently and merge what arrives.

        One failing source never aborts the others; its error is recorded
        in the result and in ``source_status()``.
        """
        start = time.perf_counter()
        sources = self.sources
        log.info(f"Starting full refresh across {len(sources)} sources...")

        outcomes = await asyncio.gather(
            *(self._refresh_source(s) for s in sources),
            return_exceptions=True,
        )

        result = RefreshResult()
        for source, outcome in zip(sources, outcomes):
            if isinstance(outcome, BaseException):
                log.error(f"Refresh from {source.name} failed: {outcome}")
                result.failed[source.name] = str(outcome) or type(outcome).__name__
                self._outcomes[source.name] = SourceOutcome(ok=False, error=result.failed[source.name])
            else:
                result.succeeded.append(source.name)
                self._outcomes[source.name] = SourceOutcome(ok=True, tokens=outcome)

        self.last_full_refresh = utcnow()
        await self._write_snapshot()

        result.total_tokens = len(self._tokens)
        result.elapsed_ms = int((time.perf_counter() - start) * 1000)
        log.info(
            f"Full refresh completed in {result.elapsed_ms}ms: "
            f"{len(result.succeeded)}/{len(sources)} sources succeeded, {result.total_tokens} tokens"
        )
        return result

    async def _write_snapshot(self) -> None:
        tokens = list(self._tokens.values())
        try:
            await self.cache.set(ALL_TOKENS_KEY, tokens, self.cache_ttl)
            for token in tokens:
                await self.cache.set(token_key(token.token_address), token, self.cache_ttl)
        except Exception as exc:  # noqa: BLE001
            log.error(f"Failed to cache token snapshot: {exc}")

    async def _cache_get(self, key: str) -> Any:
        """Read through the cache; a backend error counts as a miss."""
        try:
            return await self.cache.get(key)
        except Exception as exc:  # noqa: BLE001
            log.warning(f"Cache read {key} failed, treating as miss: {exc}")
            return None

    async def _cache_set(self, key: str, value: Any) -> None:
        try:
            await self.cache.set(key, value, self.cache_ttl)
        except Exception as exc:  # noqa: BLE001
            log.error(f"Cache write {key} failed: {exc}")

    # -------------------------------------------------------------------------
    # Merge
    # -------------------------------------------------------------------------

    def merge_token(self, incoming: Token) -> Token:
        """Fold ``incoming`` into the canonical record for its address."""
        address = incoming.token_address
        existing = self._tokens.get(address)
        if existing is None:
            self._tokens[address] = incoming
            emit(self.event_sink, NEW_TOKEN, incoming)
            return incoming

        prev_price = self._previous_prices.get(address) or existing.price_usd
        prev_volume = self._previous_volumes.get(address) or existing.volume_24hr

        updates: Dict[str, Any] = {
            field: getattr(incoming, field) or getattr(existing, field) for field in PREFER_NONZERO_FIELDS
        }
        updates["transaction_count"] = max(incoming.transaction_count, existing.transaction_count)
        updates["sources"] = existing.sources + [s for s in incoming.sources if s not in existing.sources]
        updates["image_url"] = incoming.image_url or existing.image_url
        updates["website"] = incoming.website or existing.website
        updates["socials"] = existing.socials.model_copy(
            update=incoming.socials.model_dump(exclude_none=True)
        )
        updates["last_updated"] = max(utcnow(), existing.last_updated)
        merged = existing.model_copy(update=updates)
        self._tokens[address] = merged

        self._detect_changes(merged, prev_price, prev_volume)

        self._previous_prices[address] = merged.price_usd
        self._previous_volumes[address] = merged.volume_24hr
        return merged

    def _detect_changes(self, merged: Token, prev_price: float, prev_volume: float) -> None:
        if prev_price > 0 and merged.price_usd > 0:
            change = (merged.price_usd - prev_price) / prev_price * 100
            if abs(change) >= PRICE_CHANGE_THRESHOLD:
                emit(
                    self.event_sink,
                    PRICE_UPDATE,
                    PriceUpdate(
                        token_address=merged.token_address,
                        old_price=prev_price,
                        new_price=merged.price_usd,
                        price_change_percent=change,
                        volume_24hr=merged.volume_24hr,
                    ),
                )

        if prev_volume > 0 and merged.volume_24hr > 0:
            change = (merged.volume_24hr - prev_volume) / prev_volume * 100
            if change >= VOLUME_SPIKE_THRESHOLD:
                emit(
                    self.event_sink,
                    VOLUME_SPIKE,
                    VolumeSpike(
                        token_address=merged.token_address,
                        token_ticker=merged.token_ticker,
                        volume_change_percent=change,
                        current_volume=merged.volume_24hr,
                        previous_volume=prev_volume,
                        time_window=VOLUME_SPIKE_WINDOW,
                    ),
                )

    # -------------------------------------------------------------------------
    # Reads
    # -------------------------------------------------------------------------

    @staticmethod
    def _decode(raw: Any) -> Optional[Token]:
        try:
            return Token.model_validate(raw)
        except ValidationError as exc:
            log.warning(f"Discarding undecodable cached token: {exc}")
            return None

    async def _snapshot(self) -> Tuple[List[Token], bool]:
        cached = await self._cache_get(ALL_TOKENS_KEY)
        if isinstance(cached, list) and cached:
            tokens = [t for t in map(self._decode, cached) if t is not None]
            if tokens:
                return tokens, True
        return list(self._tokens.values()), False

    async def get_tokens(
        self,
        flt: Optional[TokenFilter] = None,
        sort: Optional[TokenSort] = None,
        pagination: Optional[PaginationOptions] = None,
    ) -> PaginatedResponse[Token]:
        tokens, cache_hit = await self._snapshot()
        tokens = query.apply_filters(tokens, flt)
        tokens = query.apply_sorting(tokens, sort)

        limit = pagination.limit if pagination and pagination.limit and pagination.limit > 0 else self.default_page_size
        page, next_cursor, prev_cursor, has_more = query.apply_pagination(
            tokens, limit, pagination.cursor if pagination else None
        )
        return PaginatedResponse[Token](
            data=page,
            pagination=PaginationInfo(
                limit=limit,
                next_cursor=next_cursor,
                prev_cursor=prev_cursor,
                total_count=len(tokens),
                has_more=has_more,
            ),
            meta=QueryMeta(cache_hit=cache_hit, sources=self.active_sources()),
        )

    async def get_token(self, address: str) -> Optional[Token]:
        """Cache, then memory, then one best-effort lookup on the primary source."""
        cached = await self._cache_get(token_key(address))
        if cached:
            token = self._decode(cached)
            if token is not None:
                return token

        token = self._tokens.get(address)
        if token is not None:
            return token

        if self.primary is None:
            return None
        try:
            pairs = await self.primary.get_token_pairs(address)
        except Exception as exc:  # noqa: BLE001
            log.error(f"Failed to fetch token {address}: {exc}")
            return None
        if not pairs:
            return None
        fetched = self.primary.safe_transform(pairs[0], self._reference_rate)
        if fetched is None:
            return None
        merged = self.merge_token(fetched)
        await self._cache_set(token_key(merged.token_address), merged)
        return merged

    def _match(self, text: str) -> List[Token]:
        needle = text.lower()
        return [
            t for t in self._tokens.values()
            if needle in t.token_name.lower() or needle in t.token_ticker.lower()
        ]

    async def search_tokens(self, text: str, limit: int = 20) -> List[Token]:
        found = self._match(text)
        if len(found) >= limit:
            return found[:limit]

        lookups = []
        if self.primary is not None:
            lookups.append((self.primary, self.primary.search_pairs(text)))
        if self.pools is not None:
            lookups.append((self.pools, self.pools.search_pools(text)))
        outcomes = await asyncio.gather(*(coro for _, coro in lookups), return_exceptions=True)

        for (source, _), outcome in zip(lookups, outcomes):
            if isinstance(outcome, BaseException):
                log.warning(f"Search on {source.name} failed: {outcome}")
                continue
            for token in source.transform_many(outcome, self._reference_rate):
                if source is self.primary and token.chain_id != "solana":
                    continue
                self.merge_token(token)

        return self._match(text)[:limit]

    async def get_many(self, addresses: List[str]) -> Tuple[List[Token], List[str]]:
        """Resolve each address in order; returns ``(found, not_found)``."""
        found: List[Token] = []
        missing: List[str] = []
        for address in addresses:
            token = await self.get_token(address)
            if token is None:
                missing.append(address)
            else:
                found.append(token)
        return found, missing

    def get_all_tokens(self) -> List[Token]:
        return list(self._tokens.values())

    def active_sources(self) -> List[str]:
        seen: List[str] = []
        for token in self._tokens.values():
            for source in token.sources:
                if source not in seen:
                    seen.append(source)
        return seen

    def source_status(self) -> Dict[str, Dict[str, Any]]:
        roles = {"primary": self.primary, "discovery": self.discovery, "pools": self.pools}
        status: Dict[str, Dict[str, Any]] = {}
        for role, source in roles.items():
            if source is None:
                continue
            outcome = self._outcomes.get(source.name)
            status[source.name] = {
                "role": role,
                "rate_limit": source.rate_limit_status(),
                "last_refresh": outcome.model_dump(mode="json") if outcome else None,
            }
        return status

    def get_stats(self) -> Dict[str, Any]:
        cache_stats = self.cache.stats()
        return {
            "total_tokens": len(self._tokens),
            "last_refresh": self.last_full_refresh,
            "sources": self.active_sources(),
            "reference_rate": self._reference_rate,
            "cache": {
                "backend": getattr(self.cache, "backend", type(self.cache).__name__),
                "connected": self.cache.is_connected(),
                **cache_stats.model_dump(),
            },
        }

    async def aclose(self) -> None:
        for source in self.sources:
            await source.aclose()
