"""Filtering, sorting and cursor pagination over token lists.

All helpers are pure and return new lists; callers' inputs are not mutated.
"""

from __future__ import annotations

import base64
import binascii
from typing import List, Optional, Tuple

from token_aggregator.schemas.query import SORT_FIELDS, TIME_PERIODS, TokenFilter, TokenSort
from token_aggregator.schemas.token import Token

DEFAULT_TIME_PERIOD = "24h"
DEFAULT_SORT_FIELD = "volume"


def normalize_time_period(period: Optional[str]) -> str:
    return period if period in TIME_PERIODS else DEFAULT_TIME_PERIOD


def volume_for_period(token: Token, period: Optional[str]) -> float:
    """Period volume, falling back to ``volume_usd`` when the period value is zero."""
    period = normalize_time_period(period)
    if period == "1h":
        value = token.volume_1hr
    elif period == "7d":
        value = token.volume_7d
    else:
        value = token.volume_24hr
    return value or token.volume_usd


def price_change_for_period(token: Token, period: Optional[str]) -> float:
    period = normalize_time_period(period)
    if period == "1h":
        return token.price_1hr_change
    if period == "7d":
        return token.price_7d_change
    return token.price_24hr_change


def _matches(token: Token, flt: TokenFilter) -> bool:
    volume = volume_for_period(token, flt.time_period)
    if flt.min_volume is not None and volume < flt.min_volume:
        return False
    if flt.max_volume is not None and volume > flt.max_volume:
        return False
    if flt.min_market_cap is not None and token.market_cap_usd < flt.min_market_cap:
        return False
    if flt.max_market_cap is not None and token.market_cap_usd > flt.max_market_cap:
        return False
    if flt.min_liquidity is not None and token.liquidity_usd < flt.min_liquidity:
        return False
    if flt.protocol and token.protocol.lower() != flt.protocol.lower():
        return False
    if flt.chain and token.chain_id.lower() != flt.chain.lower():
        return False
    if flt.search:
        needle = flt.search.lower()
        haystack = (token.token_name.lower(), token.token_ticker.lower(), token.token_address.lower())
        if not any(needle in field for field in haystack):
            return False
    return True


def apply_filters(tokens: List[Token], flt: Optional[TokenFilter]) -> List[Token]:
    if flt is None:
        return list(tokens)
    return [t for t in tokens if _matches(t, flt)]


def _sort_key(field: str, period: str):
    if field == "price_change":
        return lambda t: price_change_for_period(t, period)
    if field == "market_cap":
        return lambda t: t.market_cap_usd
    if field == "liquidity":
        return lambda t: t.liquidity_usd
    if field == "transaction_count":
        return lambda t: t.transaction_count
    if field == "created_at":
        return lambda t: t.created_at.timestamp()
    return lambda t: volume_for_period(t, period)


def apply_sorting(tokens: List[Token], sort: Optional[TokenSort]) -> List[Token]:
    """Stable sort; ties keep their input order in both directions."""
    if sort is None:
        return list(tokens)
    field = sort.field if sort.field in SORT_FIELDS else DEFAULT_SORT_FIELD
    key = _sort_key(field, normalize_time_period(sort.time_period))
    # reverse=True on sorted() keeps equal elements in input order
    return sorted(tokens, key=key, reverse=sort.direction == "desc")


def encode_cursor(offset: int) -> str:
    return base64.b64encode(str(offset).encode("ascii")).decode("ascii")


def decode_cursor(cursor: Optional[str]) -> int:
    """Offset encoded in ``cursor``; anything undecodable means the first page."""
    if not cursor:
        return 0
    try:
        offset = int(base64.b64decode(cursor, validate=True).decode("ascii"))
    except (binascii.Error, ValueError, UnicodeDecodeError):
        return 0
    return max(offset, 0)


def apply_pagination(
    tokens: List[Token], limit: int, cursor: Optional[str] = None
) -> Tuple[List[Token], Optional[str], Optional[str], bool]:
    """Slice one page. Returns ``(page, next_cursor, prev_cursor, has_more)``."""
    start = decode_cursor(cursor)
    end = min(start + limit, len(tokens))
    page = tokens[start:end]
    has_more = end < len(tokens)
    next_cursor = encode_cursor(end) if has_more else None
    prev_cursor = encode_cursor(max(0, start - limit)) if start > 0 else None
    return page, next_cursor, prev_cursor, has_more
