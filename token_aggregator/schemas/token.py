"""Unified token record and the domain events derived from it."""

from __future__ import annotations

from datetime import datetime, timezone
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class TokenSocials(BaseModel):
    twitter: Optional[str] = None
    telegram: Optional[str] = None
    discord: Optional[str] = None


class Token(BaseModel):
    """One tradable asset, merged across every source that reported it.

    ``token_address`` is the identity key. Numeric fields default to zero,
    which the merge step reads as "unknown".
    """

    model_config = ConfigDict(from_attributes=True)

    token_address: str
    token_name: str = ""
    token_ticker: str = ""

    price_sol: float = 0.0
    price_usd: float = 0.0
    market_cap_sol: float = 0.0
    market_cap_usd: float = 0.0
    volume_sol: float = 0.0
    volume_usd: float = 0.0
    liquidity_sol: float = 0.0
    liquidity_usd: float = 0.0
    transaction_count: int = 0

    price_1hr_change: float = 0.0
    price_24hr_change: float = 0.0
    price_7d_change: float = 0.0
    volume_1hr: float = 0.0
    volume_24hr: float = 0.0
    volume_7d: float = 0.0

    protocol: str = "unknown"
    dex_id: str = "unknown"
    chain_id: str = "solana"
    pair_address: str = ""

    created_at: datetime = Field(default_factory=utcnow)
    last_updated: datetime = Field(default_factory=utcnow)

    sources: List[str] = Field(default_factory=list)
    image_url: Optional[str] = None
    website: Optional[str] = None
    socials: TokenSocials = Field(default_factory=TokenSocials)


class PriceUpdate(BaseModel):
    token_address: str
    old_price: float
    new_price: float
    price_change_percent: float
    volume_24hr: float


class VolumeSpike(BaseModel):
    token_address: str
    token_ticker: str
    volume_change_percent: float
    current_volume: float
    previous_volume: float
    time_window: str
