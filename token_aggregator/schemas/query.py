"""Query value objects: filters, sorting, cursor pagination."""

from __future__ import annotations

from datetime import datetime
from typing import Generic, List, Optional, TypeVar

from pydantic import BaseModel, Field

from token_aggregator.schemas.token import utcnow

T = TypeVar("T")

TIME_PERIODS = ("1h", "24h", "7d")
SORT_FIELDS = ("volume", "price_change", "market_cap", "liquidity", "transaction_count", "created_at")


class TokenFilter(BaseModel):
    """All constraints are optional and AND-combined."""

    time_period: Optional[str] = None
    min_volume: Optional[float] = None
    max_volume: Optional[float] = None
    min_market_cap: Optional[float] = None
    max_market_cap: Optional[float] = None
    min_liquidity: Optional[float] = None
    protocol: Optional[str] = None
    chain: Optional[str] = None
    search: Optional[str] = None

    def is_empty(self) -> bool:
        return not self.model_dump(exclude_none=True)


class TokenSort(BaseModel):
    field: str = "volume"
    direction: str = "desc"
    time_period: Optional[str] = None


class PaginationOptions(BaseModel):
    limit: Optional[int] = None
    cursor: Optional[str] = None


class PaginationInfo(BaseModel):
    limit: int
    next_cursor: Optional[str] = None
    prev_cursor: Optional[str] = None
    total_count: int
    has_more: bool


class QueryMeta(BaseModel):
    timestamp: datetime = Field(default_factory=utcnow)
    cache_hit: bool = False
    sources: List[str] = Field(default_factory=list)


class PaginatedResponse(BaseModel, Generic[T]):
    data: List[T]
    pagination: PaginationInfo
    meta: QueryMeta
