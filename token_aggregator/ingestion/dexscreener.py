"""DexScreener source: primary pair-level market data."""

from __future__ import annotations

from typing import Any, Dict, List, Set

from token_aggregator.core.config import settings
from token_aggregator.core.errors import PayloadError, UpstreamError
from token_aggregator.core.logging import get_logger
from token_aggregator.schemas.token import Token, TokenSocials, utcnow
from .base import DEFAULT_REFERENCE_RATE, BaseSource, parse_timestamp, per_reference, to_float

log = get_logger("ingestion.dexscreener")

DISCOVERY_QUERIES = ("pump", "meme", "pepe", "doge", "cat", "ai")
QUERY_PAUSE_SECONDS = 0.2


class DexScreenerSource(BaseSource):
    """Pairs from DexScreener's public search and token endpoints."""

    name = "dexscreener"

    def __init__(self, **kwargs: Any):
        kwargs.setdefault("base_url", settings.DEXSCREENER_BASE_URL)
        kwargs.setdefault("rate_limit", settings.DEXSCREENER_RATE_LIMIT)
        kwargs.setdefault("timeout", settings.DEXSCREENER_TIMEOUT_SECONDS)
        kwargs.setdefault("max_retries", settings.UPSTREAM_MAX_RETRIES)
        super().__init__(**kwargs)

    async def search_pairs(self, query: str) -> List[Dict[str, Any]]:
        data = await self._get("/latest/dex/search", params={"q": query})
        return (data or {}).get("pairs") or []

    async def get_token_pairs(self, address: str) -> List[Dict[str, Any]]:
        data = await self._get(f"/latest/dex/tokens/{address}")
        return (data or {}).get("pairs") or []

    async def get_trending_pairs(self) -> List[Dict[str, Any]]:
        pairs = [p for p in await self.search_pairs("solana") if p.get("chainId") == "solana"]
        return sorted(pairs, key=lambda p: to_float((p.get("volume") or {}).get("h24")), reverse=True)

    async def get_pairs_by_chain(self, chain: str = "solana", limit: int = 100) -> List[Dict[str, Any]]:
        """Discover pairs on ``chain`` through a fixed set of keyword searches.

        Results are deduplicated by base-token address. A failed keyword is
        logged and skipped; only when every keyword fails is the error raised.
        """
        results: List[Dict[str, Any]] = []
        seen: Set[str] = set()
        failures = 0
        for query in DISCOVERY_QUERIES:
            try:
                pairs = await self.search_pairs(query)
            except UpstreamError as exc:
                failures += 1
                log.warning(f"Search '{query}' failed: {exc}")
                continue
            for pair in pairs:
                address = (pair.get("baseToken") or {}).get("address")
                if pair.get("chainId") == chain and address and address not in seen:
                    seen.add(address)
                    results.append(pair)
            if len(results) >= limit:
                break
            await self._sleep(QUERY_PAUSE_SECONDS)

        if failures == len(DISCOVERY_QUERIES):
            raise UpstreamError(self.name, "all discovery searches failed")
        return results[:limit]

    async def fetch_tokens(self, reference_rate: float = DEFAULT_REFERENCE_RATE) -> List[Token]:
        pairs = await self.get_pairs_by_chain("solana", 100)
        tokens = self.transform_many(pairs, reference_rate)
        log.info(f"Fetched {len(tokens)} tokens from DexScreener")
        return tokens

    def transform(self, raw: Dict[str, Any], reference_rate: float = DEFAULT_REFERENCE_RATE) -> Token:
        base = raw.get("baseToken") or {}
        address = base.get("address")
        if not address:
            raise PayloadError(self.name, "pair without baseToken.address")

        price_usd = to_float(raw.get("priceUsd"))
        volume = raw.get("volume") or {}
        vol_24h = to_float(volume.get("h24"))
        liquidity_usd = to_float((raw.get("liquidity") or {}).get("usd"))
        market_cap = to_float(raw.get("fdv"))
        txns = (raw.get("txns") or {}).get("h24") or {}
        change = raw.get("priceChange") or {}
        info = raw.get("info") or {}
        websites = info.get("websites") or []
        dex_id = raw.get("dexId") or "unknown"

        return Token(
            token_address=address,
            token_name=base.get("name") or "",
            token_ticker=base.get("symbol") or "",
            price_sol=per_reference(price_usd, reference_rate),
            price_usd=price_usd,
            market_cap_sol=per_reference(market_cap, reference_rate),
            market_cap_usd=market_cap,
            volume_sol=per_reference(vol_24h, reference_rate),
            volume_usd=vol_24h,
            liquidity_sol=per_reference(liquidity_usd, reference_rate),
            liquidity_usd=liquidity_usd,
            transaction_count=int(to_float(txns.get("buys")) + to_float(txns.get("sells"))),
            price_1hr_change=to_float(change.get("h1")),
            price_24hr_change=to_float(change.get("h24")),
            volume_1hr=to_float(volume.get("h1")),
            volume_24hr=vol_24h,
            protocol=dex_id,
            dex_id=dex_id,
            chain_id=raw.get("chainId") or "solana",
            pair_address=raw.get("pairAddress") or "",
            created_at=parse_timestamp(raw.get("pairCreatedAt")) or utcnow(),
            sources=[self.name],
            image_url=info.get("imageUrl"),
            website=websites[0].get("url") if websites else None,
            socials=self._socials(info.get("socials") or []),
        )

    @staticmethod
    def _socials(entries: List[Dict[str, Any]]) -> TokenSocials:
        found = {}
        for entry in entries:
            kind = entry.get("type")
            if kind in ("twitter", "telegram", "discord"):
                found[kind] = entry.get("url")
        return TokenSocials(**found)
