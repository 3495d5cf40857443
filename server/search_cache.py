"""Search result caching with Redis and an in-process LRU fallback."""

import hashlib
import json
import logging
import time
from collections import OrderedDict
from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, Optional, Tuple

import redis.asyncio as aioredis
from redis.exceptions import RedisError

from config.settings import RedisConfig, SearchConfig

logger = logging.getLogger(__name__)

CACHE_PREFIX = 'search:'


def generate_query_hash(query: str, filters: Optional[Dict[str, Any]] = None,
                        options: Optional[Dict[str, Any]] = None) -> str:
    """Stable 16-hex key for a normalised query with its filters and options."""
    key_data = {
        'query': query.lower().strip(),
        'filters': filters or {},
        'options': options or {},
    }
    key_string = json.dumps(key_data, sort_keys=True, default=str)
    return hashlib.sha256(key_string.encode()).hexdigest()[:16]


class CacheStatus(str, Enum):
    HIT = "hit"
    MISS = "miss"
    UNAVAILABLE = "unavailable"


@dataclass
class CacheResult:
    status: CacheStatus
    value: Optional[Dict[str, Any]] = None

    @property
    def hit(self) -> bool:
        return self.status == CacheStatus.HIT


class MemoryCache:
    """In-memory LRU cache with per-entry expiry."""

    def __init__(self, max_size: int = 1000):
        self.max_size = max_size
        self._entries: 'OrderedDict[str, Tuple[Any, float]]' = OrderedDict()

    def get(self, key: str) -> Optional[Any]:
        entry = self._entries.get(key)
        if entry is None:
            return None
        value, expires_at = entry
        if expires_at < time.time():
            del self._entries[key]
            return None
        self._entries.move_to_end(key)
        return value

    def set(self, key: str, value: Any, ttl: Optional[int] = None) -> None:
        expires_at = time.time() + ttl if ttl else float('inf')
        self._entries[key] = (value, expires_at)
        self._entries.move_to_end(key)
        while len(self._entries) > self.max_size:
            self._entries.popitem(last=False)

    def delete(self, key: str) -> bool:
        return self._entries.pop(key, None) is not None

    def clear(self) -> None:
        self._entries.clear()

    def size(self) -> int:
        return len(self._entries)

    def stats(self) -> Dict[str, Any]:
        return {
            'size': len(self._entries),
            'max_size': self.max_size,
            'utilization': len(self._entries) / self.max_size if self.max_size > 0 else 0,
        }


class SearchResultsCache:
    """Caches serialised search responses under ``search:<hash>``.

    Entries carry the time they were written and are discarded on read once
    older than ``max_cache_age`` even if Redis still holds them. Without a
    reachable Redis the in-process LRU serves instead.
    """

    def __init__(self, config: Optional[SearchConfig] = None, redis_config: Optional[RedisConfig] = None,
                 client: Optional[aioredis.Redis] = None):
        self.config = config or SearchConfig()
        self.redis_config = redis_config
        self.client = client
        self.memory = MemoryCache(self.config.memory_cache_size)

    async def connect(self) -> bool:
        if self.client is not None or self.redis_config is None:
            return self.client is not None
        try:
            client = aioredis.from_url(self.redis_config.url, decode_responses=True)
            await client.ping()
            self.client = client
            logger.info("Search cache connected to Redis")
            return True
        except (RedisError, OSError) as e:
            logger.warning(f"Redis not available for search cache, using memory cache: {e}")
            self.client = None
            return False

    @staticmethod
    def key(query_hash: str) -> str:
        return f"{CACHE_PREFIX}{query_hash}"

    def _fresh(self, entry: Dict[str, Any]) -> bool:
        return time.time() - entry.get('timestamp', 0) <= self.config.max_cache_age

    async def get(self, query_hash: str) -> CacheResult:
        key = self.key(query_hash)
        if self.client is None:
            entry = self.memory.get(key)
            if entry is None or not self._fresh(entry):
                return CacheResult(CacheStatus.MISS)
            return CacheResult(CacheStatus.HIT, entry['data'])

        try:
            raw = await self.client.get(key)
            if raw is None:
                return CacheResult(CacheStatus.MISS)
            entry = json.loads(raw)
            if not self._fresh(entry):
                await self.client.delete(key)
                return CacheResult(CacheStatus.MISS)
            return CacheResult(CacheStatus.HIT, entry['data'])
        except (RedisError, OSError, ValueError) as e:
            logger.warning(f"Search cache read failed for {key}: {e}")
            return CacheResult(CacheStatus.UNAVAILABLE)

    async def set(self, query_hash: str, value: Dict[str, Any], ttl: Optional[int] = None) -> bool:
        key = self.key(query_hash)
        ttl = ttl or self.config.cache_ttl
        entry = {'data': value, 'timestamp': time.time()}
        if self.client is None:
            self.memory.set(key, entry, ttl)
            return True

        try:
            await self.client.setex(key, ttl, json.dumps(entry, default=str))
            return True
        except (RedisError, OSError, TypeError) as e:
            logger.warning(f"Search cache write failed for {key}: {e}")
            return False

    async def invalidate(self) -> int:
        """Drop every cached search response."""
        if self.client is None:
            count = self.memory.size()
            self.memory.clear()
            return count

        count = 0
        try:
            async for key in self.client.scan_iter(match=f"{CACHE_PREFIX}*"):
                count += await self.client.delete(key)
        except (RedisError, OSError) as e:
            logger.warning(f"Search cache invalidation failed: {e}")
        return count

    async def close(self) -> None:
        if self.client is not None:
            await self.client.aclose()
            self.client = None
