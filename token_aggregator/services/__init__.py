# Services package
from token_aggregator.services.aggregator import RefreshResult, TokenAggregator
from token_aggregator.services.cache import BaseCache, MemoryCache, RedisCache, create_cache
from token_aggregator.services.events import EventSink, NullEventSink, QueueEventSink

__all__ = [
    "RefreshResult",
    "TokenAggregator",
    "BaseCache",
    "MemoryCache",
    "RedisCache",
    "create_cache",
    "EventSink",
    "NullEventSink",
    "QueueEventSink",
]
