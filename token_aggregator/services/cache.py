"""Read-through cache with two interchangeable backends.

The cache is an optimization, never a dependency: backend failures degrade
to misses and no-ops and are not propagated to callers.

Usage:
    cache = create_cache(settings)
    await cache.set("tokens:all", tokens, ttl=30)
    snapshot = await cache.get("tokens:all")
"""

from __future__ import annotations

import asyncio
import fnmatch
import json
import time
from abc import ABC, abstractmethod
from typing import Any, Callable, Dict, List, Optional, Tuple

from pydantic import BaseModel, TypeAdapter
from redis import asyncio as aioredis

from token_aggregator.core.config import Settings
from token_aggregator.core.logging import get_logger

log = get_logger("cache")

_json_adapter: TypeAdapter[Any] = TypeAdapter(Any)


def _dumps(value: Any) -> str:
    """Serialize values, including pydantic models and datetimes, to JSON."""
    return _json_adapter.dump_json(value).decode("utf-8")


class CacheStats(BaseModel):
    hits: int
    misses: int
    hit_rate: float
    size: int


class BaseCache(ABC):
    """Common contract for both backends."""

    def __init__(self, prefix: str = "", default_ttl: int = 30):
        self.prefix = prefix
        self.default_ttl = default_ttl
        self.hits = 0
        self.misses = 0

    def _key(self, key: str) -> str:
        return f"{self.prefix}{key}"

    def _strip(self, key: str) -> str:
        return key[len(self.prefix):] if key.startswith(self.prefix) else key

    def _record(self, hit: bool) -> None:
        if hit:
            self.hits += 1
        else:
            self.misses += 1

    def _hit_rate(self) -> float:
        total = self.hits + self.misses
        return self.hits / total if total else 0.0

    @abstractmethod
    async def get(self, key: str) -> Optional[Any]:
        """Return the decoded value or None on miss."""

    @abstractmethod
    async def set(self, key: str, value: Any, ttl: Optional[int] = None) -> None:
        """Store ``value`` for ``ttl`` seconds (default TTL when omitted)."""

    @abstractmethod
    async def delete(self, key: str) -> None: ...

    @abstractmethod
    async def exists(self, key: str) -> bool: ...

    @abstractmethod
    async def keys(self, pattern: str) -> List[str]:
        """Unprefixed keys matching a glob pattern."""

    @abstractmethod
    async def flush(self) -> None: ...

    @abstractmethod
    def stats(self) -> CacheStats: ...

    @abstractmethod
    def is_connected(self) -> bool: ...

    async def close(self) -> None:
        """Release backend resources."""


class MemoryCache(BaseCache):
    """Process-local TTL map; fine for a single instance."""

    backend = "memory"

    def __init__(
        self,
        prefix: str = "",
        default_ttl: int = 30,
        clock: Callable[[], float] = time.monotonic,
    ):
        super().__init__(prefix, default_ttl)
        self._data: Dict[str, Tuple[str, float]] = {}
        self._clock = clock
        self._sweeper: Optional[asyncio.Task] = None

    def _live(self, full_key: str) -> Optional[str]:
        entry = self._data.get(full_key)
        if entry is None:
            return None
        raw, expiry = entry
        if self._clock() > expiry:
            del self._data[full_key]
            return None
        return raw

    async def get(self, key: str) -> Optional[Any]:
        raw = self._live(self._key(key))
        self._record(raw is not None)
        return json.loads(raw) if raw is not None else None

    async def set(self, key: str, value: Any, ttl: Optional[int] = None) -> None:
        ttl = self.default_ttl if ttl is None else ttl
        self._data[self._key(key)] = (_dumps(value), self._clock() + ttl)

    async def delete(self, key: str) -> None:
        self._data.pop(self._key(key), None)

    async def exists(self, key: str) -> bool:
        return self._live(self._key(key)) is not None

    async def keys(self, pattern: str) -> List[str]:
        full_pattern = self._key(pattern)
        return [
            self._strip(k)
            for k in list(self._data)
            if fnmatch.fnmatchcase(k, full_pattern) and self._live(k) is not None
        ]

    async def flush(self) -> None:
        self._data.clear()
        self.hits = self.misses = 0

    def stats(self) -> CacheStats:
        return CacheStats(hits=self.hits, misses=self.misses, hit_rate=self._hit_rate(), size=len(self._data))

    def is_connected(self) -> bool:
        return True

    def sweep_expired(self) -> int:
        """Drop every expired entry, returning how many were removed."""
        now = self._clock()
        expired = [k for k, (_, expiry) in self._data.items() if now > expiry]
        for k in expired:
            del self._data[k]
        return len(expired)

    def start_sweeper(self, interval_seconds: float = 60) -> None:
        if self._sweeper is not None:
            log.warning("Cache sweeper already running")
            return
        self._sweeper = asyncio.create_task(self._sweep_loop(interval_seconds))
        log.info(f"Started cache sweeper (interval: {interval_seconds}s)")

    def stop_sweeper(self) -> None:
        if self._sweeper:
            self._sweeper.cancel()
            self._sweeper = None
            log.info("Stopped cache sweeper")

    async def _sweep_loop(self, interval_seconds: float) -> None:
        while True:
            try:
                await asyncio.sleep(interval_seconds)
                removed = self.sweep_expired()
                if removed:
                    log.debug(f"Swept {removed} expired cache entries")
            except asyncio.CancelledError:
                break

    async def close(self) -> None:
        self.stop_sweeper()


class RedisCache(BaseCache):
    """Shared key-value backend for multi-instance deployments."""

    backend = "redis"

    def __init__(
        self,
        url: str = "redis://localhost:6379",
        password: Optional[str] = None,
        prefix: str = "",
        default_ttl: int = 30,
        client: Any = None,
    ):
        super().__init__(prefix, default_ttl)
        if client is None:
            client = aioredis.from_url(url, password=password, decode_responses=True)
        self._client = client
        self._connected = False

    async def connect(self) -> bool:
        try:
            await self._client.ping()
            self._connected = True
            log.info("Redis connected")
        except Exception as exc:  # noqa: BLE001
            self._connected = False
            log.error(f"Redis connection failed: {exc}")
        return self._connected

    def _failed(self, op: str, key: str, exc: Exception) -> None:
        self._connected = False
        log.error(f"Cache {op} error [{key}]: {exc}")

    async def get(self, key: str) -> Optional[Any]:
        try:
            raw = await self._client.get(self._key(key))
        except Exception as exc:  # noqa: BLE001
            self._failed("get", key, exc)
            self._record(False)
            return None
        if raw is None:
            self._record(False)
            return None
        try:
            value = json.loads(raw)
        except ValueError as exc:
            self._failed("decode", key, exc)
            self._record(False)
            return None
        self._connected = True
        self._record(True)
        return value

    async def set(self, key: str, value: Any, ttl: Optional[int] = None) -> None:
        ttl = self.default_ttl if ttl is None else ttl
        try:
            await self._client.setex(self._key(key), ttl, _dumps(value))
            self._connected = True
        except Exception as exc:  # noqa: BLE001
            self._failed("set", key, exc)

    async def delete(self, key: str) -> None:
        try:
            await self._client.delete(self._key(key))
        except Exception as exc:  # noqa: BLE001
            self._failed("delete", key, exc)

    async def exists(self, key: str) -> bool:
        try:
            return bool(await self._client.exists(self._key(key)))
        except Exception as exc:  # noqa: BLE001
            self._failed("exists", key, exc)
            return False

    async def keys(self, pattern: str) -> List[str]:
        try:
            return [self._strip(k) async for k in self._client.scan_iter(match=self._key(pattern))]
        except Exception as exc:  # noqa: BLE001
            self._failed("keys", pattern, exc)
            return []

    async def flush(self) -> None:
        found = [self._key(k) for k in await self.keys("*")]
        if found:
            try:
                await self._client.delete(*found)
            except Exception as exc:  # noqa: BLE001
                self._failed("flush", "*", exc)
        self.hits = self.misses = 0

    def stats(self) -> CacheStats:
        # Remote keyspace size is not tracked
        return CacheStats(hits=self.hits, misses=self.misses, hit_rate=self._hit_rate(), size=-1)

    def is_connected(self) -> bool:
        return self._connected

    async def close(self) -> None:
        try:
            await self._client.aclose()
        except Exception as exc:  # noqa: BLE001
            log.warning(f"Redis close failed: {exc}")


def create_cache(config: Settings) -> BaseCache:
    """Pick the backend from configuration."""
    if config.USE_MEMORY_CACHE:
        log.info("Using in-memory cache")
        return MemoryCache(prefix=config.CACHE_PREFIX, default_ttl=config.CACHE_TTL_SECONDS)
    log.info("Using Redis cache")
    return RedisCache(
        url=config.REDIS_URL,
        password=config.REDIS_PASSWORD,
        prefix=config.CACHE_PREFIX,
        default_ttl=config.CACHE_TTL_SECONDS,
    )
