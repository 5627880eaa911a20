"""Jupiter source: token discovery plus the reference-rate price lookup."""

from __future__ import annotations

from typing import Any, Dict, List, Set

from token_aggregator.core.config import settings
from token_aggregator.core.errors import PayloadError, UpstreamError
from token_aggregator.core.logging import get_logger
from token_aggregator.schemas.token import Token
from .base import DEFAULT_REFERENCE_RATE, BaseSource, per_reference, to_float

log = get_logger("ingestion.jupiter")

SOL_MINT = "So11111111111111111111111111111111111111112"
DISCOVERY_QUERIES = ("meme", "pump", "pepe", "doge", "cat", "ai", "sol")
QUERY_PAUSE_SECONDS = 0.2


class JupiterSource(BaseSource):
    name = "jupiter"

    def __init__(self, **kwargs: Any):
        kwargs.setdefault("base_url", settings.JUPITER_BASE_URL)
        kwargs.setdefault("rate_limit", settings.JUPITER_RATE_LIMIT)
        kwargs.setdefault("timeout", settings.JUPITER_TIMEOUT_SECONDS)
        kwargs.setdefault("max_retries", settings.UPSTREAM_MAX_RETRIES)
        super().__init__(**kwargs)

    async def _search(self, query: str) -> List[Dict[str, Any]]:
        data = await self._get("/tokens/v2/search", params={"query": query})
        return data if isinstance(data, list) else []

    async def search_tokens(self, query: str) -> List[Dict[str, Any]]:
        """Keyword search; errors degrade to an empty result."""
        try:
            return await self._search(query)
        except UpstreamError as exc:
            log.warning(f"Jupiter search failed: {exc}")
            return []

    async def get_trending_tokens(self, limit: int = 50) -> List[Dict[str, Any]]:
        results: List[Dict[str, Any]] = []
        seen: Set[str] = set()
        failures = 0
        for query in DISCOVERY_QUERIES:
            try:
                tokens = await self._search(query)
            except UpstreamError as exc:
                failures += 1
                log.warning(f"Jupiter search '{query}' failed: {exc}")
                continue
            for item in tokens:
                address = _address(item)
                if address and address not in seen:
                    seen.add(address)
                    results.append(item)
            if len(results) >= limit:
                break
            await self._sleep(QUERY_PAUSE_SECONDS)

        if failures == len(DISCOVERY_QUERIES):
            raise UpstreamError(self.name, "all discovery searches failed")
        results.sort(key=lambda t: to_float(t.get("daily_volume")), reverse=True)
        return results[:limit]

    async def get_token_prices(self, addresses: List[str]) -> Dict[str, float]:
        """USD prices keyed by mint. Any failure yields an empty map."""
        if not addresses:
            return {}
        try:
            data = await self._get("/price/v3", params={"ids": ",".join(addresses)})
        except UpstreamError as exc:
            log.warning(f"Jupiter price lookup failed: {exc}")
            return {}
        if not isinstance(data, dict):
            return {}
        # older responses nest entries under "data"
        entries = data.get("data") if isinstance(data.get("data"), dict) else data
        prices: Dict[str, float] = {}
        for mint, entry in entries.items():
            if not isinstance(entry, dict):
                continue
            price = to_float(entry.get("usdPrice", entry.get("price")))
            if price > 0:
                prices[mint] = price
        return prices

    async def get_reference_rate(self) -> float:
        """Current USD price of SOL, or 0 when unavailable."""
        prices = await self.get_token_prices([SOL_MINT])
        return prices.get(SOL_MINT, 0.0)

    async def fetch_tokens(self, reference_rate: float = DEFAULT_REFERENCE_RATE) -> List[Token]:
        listed = await self.get_trending_tokens(50)
        prices = await self.get_token_prices([a for a in map(_address, listed) if a])
        tokens = []
        for raw in listed:
            token = self.safe_transform(raw, reference_rate, price_usd=prices.get(_address(raw) or "", 0.0))
            if token is not None:
                tokens.append(token)
        log.info(f"Fetched {len(tokens)} tokens from Jupiter")
        return tokens

    def transform(
        self,
        raw: Dict[str, Any],
        reference_rate: float = DEFAULT_REFERENCE_RATE,
        price_usd: float = 0.0,
    ) -> Token:
        address = _address(raw)
        if not address:
            raise PayloadError(self.name, "token without address")
        vol_24h = to_float(raw.get("daily_volume"))
        return Token(
            token_address=address,
            token_name=raw.get("name") or "",
            token_ticker=raw.get("symbol") or "",
            price_sol=per_reference(price_usd, reference_rate),
            price_usd=price_usd,
            volume_sol=per_reference(vol_24h, reference_rate),
            volume_usd=vol_24h,
            volume_24hr=vol_24h,
            protocol="jupiter",
            dex_id="jupiter",
            chain_id="solana",
            sources=[self.name],
            image_url=raw.get("logoURI") or raw.get("icon"),
        )


def _address(raw: Dict[str, Any]) -> str:
    return raw.get("address") or raw.get("id") or ""
