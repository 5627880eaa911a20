"""Token routes - listing, search, lookup and curated lists."""

from typing import Any, Dict, Optional

from fastapi import APIRouter, Body, Depends, Query, Request

from token_aggregator.api.deps import ApiError, get_aggregator, ok
from token_aggregator.core.config import settings
from token_aggregator.schemas.api import BatchResult, TokenList
from token_aggregator.schemas.query import PaginationOptions, TokenFilter, TokenSort
from token_aggregator.services.aggregator import TokenAggregator

router = APIRouter(prefix="/tokens", tags=["tokens"])

MIN_ADDRESS_LENGTH = 32
MAX_BATCH_ADDRESSES = 100
CURATED_LIST_MAX = 50
DEFAULT_SEARCH_LIMIT = 20


def _clamp(limit: Optional[int], default: int, ceiling: int) -> int:
    if not limit or limit < 1:
        return default
    return min(limit, ceiling)


# -----------------------------------------------------------------------------
# Listing
# -----------------------------------------------------------------------------


@router.get("")
async def list_tokens(
    request: Request,
    time_period: Optional[str] = Query(None, description="1h, 24h or 7d (unknown values mean 24h)"),
    min_volume: Optional[float] = Query(None),
    max_volume: Optional[float] = Query(None),
    min_market_cap: Optional[float] = Query(None),
    max_market_cap: Optional[float] = Query(None),
    min_liquidity: Optional[float] = Query(None),
    protocol: Optional[str] = Query(None, description="Venue, case-insensitive"),
    chain: Optional[str] = Query(None, description="Chain id, case-insensitive"),
    search: Optional[str] = Query(None, description="Substring of name, ticker or address"),
    sort_by: Optional[str] = Query(None, description="volume, price_change, market_cap, liquidity, transaction_count, created_at"),
    sort_dir: str = Query("desc", description="asc or desc"),
    limit: Optional[int] = Query(None, description=f"Page size (max {settings.MAX_PAGE_SIZE})"),
    cursor: Optional[str] = Query(None, description="Opaque cursor from a previous page"),
    aggregator: TokenAggregator = Depends(get_aggregator),
):
    """
    Filtered, sorted, cursor-paginated token listing.

    Unrecognized sort fields fall back to volume and unrecognized time
    periods to 24h; invalid cursors restart from the first page.
    """
    flt = TokenFilter(
        time_period=time_period,
        min_volume=min_volume,
        max_volume=max_volume,
        min_market_cap=min_market_cap,
        max_market_cap=max_market_cap,
        min_liquidity=min_liquidity,
        protocol=protocol,
        chain=chain,
        search=search,
    )
    sort = None
    if sort_by:
        sort = TokenSort(
            field=sort_by,
            direction="asc" if sort_dir == "asc" else "desc",
            time_period=time_period,
        )
    pagination = PaginationOptions(
        limit=_clamp(limit, settings.DEFAULT_PAGE_SIZE, settings.MAX_PAGE_SIZE),
        cursor=cursor,
    )
    result = await aggregator.get_tokens(None if flt.is_empty() else flt, sort, pagination)
    return ok(request, result)


@router.get("/search")
async def search_tokens(
    request: Request,
    q: Optional[str] = Query(None, description="Name or ticker fragment"),
    limit: Optional[int] = Query(None),
    aggregator: TokenAggregator = Depends(get_aggregator),
):
    if not q:
        raise ApiError(400, "INVALID_QUERY", "Search query must be at least 1 character")
    tokens = await aggregator.search_tokens(q, _clamp(limit, DEFAULT_SEARCH_LIMIT, settings.MAX_PAGE_SIZE))
    return ok(request, TokenList(tokens=tokens, count=len(tokens)))


@router.post("/batch")
async def batch_tokens(
    request: Request,
    payload: Dict[str, Any] = Body(default={}),
    aggregator: TokenAggregator = Depends(get_aggregator),
):
    """Look up many addresses at once; unknown ones are listed in ``not_found``."""
    addresses = payload.get("addresses")
    if not isinstance(addresses, list) or not addresses or not all(isinstance(a, str) for a in addresses):
        raise ApiError(400, "INVALID_REQUEST", "Request body must contain an array of addresses")
    if len(addresses) > MAX_BATCH_ADDRESSES:
        raise ApiError(400, "TOO_MANY_ADDRESSES", f"Maximum {MAX_BATCH_ADDRESSES} addresses per request")
    found, missing = await aggregator.get_many(addresses)
    return ok(request, BatchResult(tokens=found, not_found=missing))


@router.post("/refresh")
async def refresh_tokens(request: Request, aggregator: TokenAggregator = Depends(get_aggregator)):
    """Run a full refresh now instead of waiting for the scheduler."""
    result = await aggregator.refresh_all()
    return ok(request, result)


# -----------------------------------------------------------------------------
# Curated lists
# -----------------------------------------------------------------------------


@router.get("/trending/list")
async def trending_tokens(
    request: Request,
    limit: Optional[int] = Query(None),
    aggregator: TokenAggregator = Depends(get_aggregator),
):
    result = await aggregator.get_tokens(
        TokenFilter(min_volume=1000),
        TokenSort(field="volume", direction="desc"),
        PaginationOptions(limit=_clamp(limit, DEFAULT_SEARCH_LIMIT, CURATED_LIST_MAX)),
    )
    return ok(request, result)


@router.get("/gainers/list")
async def top_gainers(
    request: Request,
    limit: Optional[int] = Query(None),
    time_period: str = Query("24h"),
    aggregator: TokenAggregator = Depends(get_aggregator),
):
    result = await aggregator.get_tokens(
        TokenFilter(time_period=time_period, min_volume=100),
        TokenSort(field="price_change", direction="desc", time_period=time_period),
        PaginationOptions(limit=_clamp(limit, DEFAULT_SEARCH_LIMIT, CURATED_LIST_MAX)),
    )
    return ok(request, result)


@router.get("/losers/list")
async def top_losers(
    request: Request,
    limit: Optional[int] = Query(None),
    time_period: str = Query("24h"),
    aggregator: TokenAggregator = Depends(get_aggregator),
):
    result = await aggregator.get_tokens(
        TokenFilter(time_period=time_period, min_volume=100),
        TokenSort(field="price_change", direction="asc", time_period=time_period),
        PaginationOptions(limit=_clamp(limit, DEFAULT_SEARCH_LIMIT, CURATED_LIST_MAX)),
    )
    return ok(request, result)


# -----------------------------------------------------------------------------
# Single token (declared last so the fixed paths above win)
# -----------------------------------------------------------------------------


@router.get("/{address}")
async def get_token(
    request: Request,
    address: str,
    aggregator: TokenAggregator = Depends(get_aggregator),
):
    if len(address) < MIN_ADDRESS_LENGTH:
        raise ApiError(400, "INVALID_ADDRESS", "Invalid token address format")
    token = await aggregator.get_token(address)
    if token is None:
        raise ApiError(404, "TOKEN_NOT_FOUND", f"Token with address {address} not found")
    return ok(request, token)
