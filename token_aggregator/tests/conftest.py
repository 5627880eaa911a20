"""Shared fixtures and fakes for the test suite."""

from typing import Any, Dict, List, Optional

import pytest

from token_aggregator.schemas.token import PriceUpdate, Token, VolumeSpike
from token_aggregator.services.cache import MemoryCache
from token_aggregator.services.events import EventSink


def address(n: int) -> str:
    """A deterministic 44-character token address."""
    return f"Tok{n:041d}"


def make_token(n: int = 1, **fields: Any) -> Token:
    data: Dict[str, Any] = {
        "token_address": address(n),
        "token_name": f"Token {n}",
        "token_ticker": f"TK{n}",
        "sources": ["dexscreener"],
    }
    data.update(fields)
    return Token(**data)


class FakeClock:
    def __init__(self, start: float = 1000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class RecordingSleep:
    """Async sleep stand-in that records delays and optionally moves a clock."""

    def __init__(self, clock: Optional[FakeClock] = None):
        self.clock = clock
        self.calls: List[float] = []

    async def __call__(self, seconds: float) -> None:
        self.calls.append(seconds)
        if self.clock is not None:
            self.clock.advance(seconds)


class RecordingSink(EventSink):
    def __init__(self):
        self.price_updates: List[PriceUpdate] = []
        self.volume_spikes: List[VolumeSpike] = []
        self.new_tokens: List[Token] = []

    def on_price_update(self, event: PriceUpdate) -> None:
        self.price_updates.append(event)

    def on_volume_spike(self, event: VolumeSpike) -> None:
        self.volume_spikes.append(event)

    def on_new_token(self, token: Token) -> None:
        self.new_tokens.append(token)


class FakeSource:
    """In-memory stand-in for an upstream source.

    Raw records are plain token dicts, so ``transform`` is just validation.
    """

    def __init__(
        self,
        name: str,
        tokens: Optional[List[Token]] = None,
        error: Optional[Exception] = None,
        pairs: Optional[Dict[str, List[Token]]] = None,
        search_hits: Optional[List[Token]] = None,
        reference_rate: float = 0.0,
    ):
        self.name = name
        self.tokens = tokens or []
        self.error = error
        self.pairs = pairs or {}
        self.search_hits = search_hits or []
        self.reference_rate = reference_rate
        self.fetch_calls = 0
        self.search_calls = 0
        self.closed = False

    async def fetch_tokens(self, reference_rate: float = 200.0) -> List[Token]:
        self.fetch_calls += 1
        if self.error:
            raise self.error
        return list(self.tokens)

    async def get_token_pairs(self, addr: str) -> List[Dict[str, Any]]:
        if self.error:
            raise self.error
        return [t.model_dump() for t in self.pairs.get(addr, [])]

    async def search_pairs(self, query: str) -> List[Dict[str, Any]]:
        self.search_calls += 1
        if self.error:
            raise self.error
        return [t.model_dump() for t in self.search_hits]

    search_pools = search_pairs

    async def get_reference_rate(self) -> float:
        if self.error:
            raise self.error
        return self.reference_rate

    def safe_transform(self, raw: Dict[str, Any], reference_rate: float, **kwargs: Any) -> Token:
        return Token.model_validate(raw)

    def transform_many(self, raws: List[Dict[str, Any]], reference_rate: float) -> List[Token]:
        return [Token.model_validate(r) for r in raws]

    def rate_limit_status(self) -> Dict[str, object]:
        return {"name": self.name, "available": 10, "capacity": 10, "consecutive_failures": 0}

    async def aclose(self) -> None:
        self.closed = True


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def memory_cache():
    return MemoryCache(prefix="test:", default_ttl=30)


@pytest.fixture
def sink():
    return RecordingSink()
