"""Refresh entrypoint - one-shot refresh outside the web process.

Usage:
    python -m token_aggregator.refresh_entrypoint                  # All sources
    python -m token_aggregator.refresh_entrypoint dexscreener      # Single source
    python -m token_aggregator.refresh_entrypoint geckoterminal
    python -m token_aggregator.refresh_entrypoint jupiter
"""

import asyncio
import sys
from typing import Optional

from token_aggregator.core.config import settings
from token_aggregator.core.logging import get_logger
from token_aggregator.ingestion.base import DEFAULT_REFERENCE_RATE
from token_aggregator.ingestion.dexscreener import DexScreenerSource
from token_aggregator.ingestion.geckoterminal import GeckoTerminalSource
from token_aggregator.ingestion.jupiter import JupiterSource
from token_aggregator.services.aggregator import RefreshResult, TokenAggregator
from token_aggregator.services.cache import RedisCache, create_cache

logger = get_logger("refresh_entrypoint")

SOURCE_NAMES = ("dexscreener", "geckoterminal", "jupiter")


async def run_refresh(only: Optional[str] = None) -> RefreshResult:
    """Refresh every source (or just ``only``) and write the cache snapshot."""
    cache = create_cache(settings)
    if isinstance(cache, RedisCache):
        await cache.connect()

    # Jupiter always supplies the reference rate; it is only refreshed when selected
    jupiter = JupiterSource()
    rate = await jupiter.get_reference_rate()
    aggregator = TokenAggregator(
        cache=cache,
        primary=DexScreenerSource() if only in (None, "dexscreener") else None,
        pools=GeckoTerminalSource() if only in (None, "geckoterminal") else None,
        discovery=jupiter if only in (None, "jupiter") else None,
        cache_ttl=settings.CACHE_TTL_SECONDS,
        default_reference_rate=rate or DEFAULT_REFERENCE_RATE,
    )
    try:
        return await aggregator.refresh_all()
    finally:
        await aggregator.aclose()
        if aggregator.discovery is None:
            await jupiter.aclose()
        await cache.close()


def main():
    """Main entry point for a one-shot refresh."""
    logger.info("Refresh starting...")

    only = None
    if len(sys.argv) > 1:
        only = sys.argv[1]
        if only not in SOURCE_NAMES:
            logger.error(f"Invalid source: {only}. Must be one of: {', '.join(SOURCE_NAMES)}")
            sys.exit(1)

    result = asyncio.run(run_refresh(only))
    logger.info(
        f"Refresh completed: succeeded={result.succeeded} failed={list(result.failed)} "
        f"tokens={result.total_tokens} elapsed={result.elapsed_ms}ms"
    )

    # Exit with error code if no source succeeded
    if result.all_failed:
        sys.exit(1)

    return result


if __name__ == "__main__":
    main()
