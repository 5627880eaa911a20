"""GeckoTerminal source: trending and newly created pools."""

from __future__ import annotations

import asyncio
from typing import Any, Dict, List, Optional

from token_aggregator.core.config import settings
from token_aggregator.core.errors import PayloadError, UpstreamError
from token_aggregator.core.logging import get_logger
from token_aggregator.schemas.token import Token, utcnow
from .base import DEFAULT_REFERENCE_RATE, BaseSource, parse_timestamp, per_reference, to_float

log = get_logger("ingestion.geckoterminal")


class GeckoTerminalSource(BaseSource):
    name = "geckoterminal"

    def __init__(self, **kwargs: Any):
        kwargs.setdefault("base_url", settings.GECKOTERMINAL_BASE_URL)
        kwargs.setdefault("rate_limit", settings.GECKOTERMINAL_RATE_LIMIT)
        kwargs.setdefault("timeout", settings.GECKOTERMINAL_TIMEOUT_SECONDS)
        kwargs.setdefault("max_retries", settings.UPSTREAM_MAX_RETRIES)
        super().__init__(**kwargs)

    async def _pools(self, path: str, params: Dict[str, Any]) -> List[Dict[str, Any]]:
        data = await self._get(path, params=params)
        return (data or {}).get("data") or []

    async def get_trending_pools(self, network: str = "solana", page: int = 1) -> List[Dict[str, Any]]:
        return await self._pools(f"/networks/{network}/trending_pools", {"page": page})

    async def get_new_pools(self, network: str = "solana", page: int = 1) -> List[Dict[str, Any]]:
        return await self._pools(f"/networks/{network}/new_pools", {"page": page})

    async def get_top_pools(self, network: str = "solana", page: int = 1) -> List[Dict[str, Any]]:
        return await self._pools(f"/networks/{network}/pools", {"page": page, "sort": "h24_volume_usd_desc"})

    async def search_pools(self, query: str, network: str = "solana") -> List[Dict[str, Any]]:
        return await self._pools("/search/pools", {"query": query, "network": network})

    async def get_pool(self, network: str, address: str) -> Optional[Dict[str, Any]]:
        try:
            data = await self._get(f"/networks/{network}/pools/{address}")
        except UpstreamError as exc:
            log.warning(f"Pool lookup {address} failed: {exc}")
            return None
        return (data or {}).get("data") or None

    async def fetch_tokens(self, reference_rate: float = DEFAULT_REFERENCE_RATE) -> List[Token]:
        trending, fresh = await asyncio.gather(
            self.get_trending_pools("solana"),
            self.get_new_pools("solana"),
        )
        tokens = self.transform_many(trending + fresh, reference_rate)
        log.info(f"Fetched {len(tokens)} tokens from GeckoTerminal")
        return tokens

    def transform(self, raw: Dict[str, Any], reference_rate: float = DEFAULT_REFERENCE_RATE) -> Token:
        attrs = raw.get("attributes")
        if not attrs:
            raise PayloadError(self.name, "pool without attributes")
        relationships = raw.get("relationships") or {}
        base_id = (((relationships.get("base_token") or {}).get("data")) or {}).get("id")
        if not base_id:
            raise PayloadError(self.name, "pool without base_token relationship")
        # relationship ids are "<network>_<address>"
        address = base_id.split("_", 1)[1] if "_" in base_id else base_id

        label = (attrs.get("name") or "").split("/")[0].strip()
        price_usd = to_float(attrs.get("base_token_price_usd"))
        market_cap = to_float(attrs.get("market_cap_usd")) or to_float(attrs.get("fdv_usd"))
        liquidity_usd = to_float(attrs.get("reserve_in_usd"))
        volume = attrs.get("volume_usd") or {}
        vol_24h = to_float(volume.get("h24"))
        txns = (attrs.get("transactions") or {}).get("h24") or {}
        change = attrs.get("price_change_percentage") or {}
        dex_id = (((relationships.get("dex") or {}).get("data")) or {}).get("id") or "unknown"

        return Token(
            token_address=address,
            token_name=label,
            token_ticker=label,
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
            chain_id="solana",
            pair_address=attrs.get("address") or "",
            created_at=parse_timestamp(attrs.get("pool_created_at")) or utcnow(),
            sources=[self.name],
        )
