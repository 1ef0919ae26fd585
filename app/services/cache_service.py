"""
Branch-Isolated Stock Cache.

Sits in front of the remote query executor and keeps branch stock, item
records and item listings for a short while, so repeated lookups do not
reach the branch databases.

All keys carry the branch id right after the namespace:

    {namespace}:{branch_id}:stock:{item_code}:{almacen}
    {namespace}:{branch_id}:item:{item_code}
    {namespace}:{branch_id}:list:{signature}

so a whole branch can be dropped with one prefix clear.

Supports:
1. Redis (when REDIS_URL is set)
2. In-memory (default, per process)

Usage:
    cache = StockCache(get_cache_backend())

    hits, misses = await cache.get_multiple(branch_id, codes)
    await cache.set_multiple(branch_id, fetched)

    await cache.invalidate(branch_id)              # whole branch
    await cache.invalidate(branch_id, "ABC01001")  # one item
"""
import json
import hashlib
from typing import Any, Dict, Iterable, List, Optional, Tuple
from datetime import datetime, timedelta, timezone
from abc import ABC, abstractmethod
import asyncio
import logging

from app.config import settings

logger = logging.getLogger(__name__)


class CacheBackend(ABC):
    """Abstract cache backend interface."""

    @abstractmethod
    async def get(self, key: str) -> Optional[Any]:
        """Get value from cache."""
        pass

    @abstractmethod
    async def set(self, key: str, value: Any, ttl: int = 3600) -> bool:
        """Set value in cache with TTL (seconds)."""
        pass

    @abstractmethod
    async def delete(self, key: str) -> bool:
        """Delete key from cache."""
        pass

    @abstractmethod
    async def clear_pattern(self, pattern: str) -> int:
        """Clear all keys matching pattern."""
        pass

    async def stats(self) -> Dict[str, Any]:
        return {"backend": type(self).__name__}


class InMemoryCache(CacheBackend):
    """
    In-memory cache for single-process deployments and tests.

    Note: entries are not shared across server instances; use Redis
    when running more than one worker.
    """

    def __init__(self):
        self._cache: Dict[str, Tuple[Any, datetime]] = {}
        self._lock = asyncio.Lock()
        self.hits = 0
        self.misses = 0

    async def get(self, key: str) -> Optional[Any]:
        async with self._lock:
            if key in self._cache:
                value, expires_at = self._cache[key]
                if expires_at > datetime.now(timezone.utc):
                    self.hits += 1
                    return value
                else:
                    del self._cache[key]
            self.misses += 1
            return None

    async def set(self, key: str, value: Any, ttl: int = 3600) -> bool:
        async with self._lock:
            expires_at = datetime.now(timezone.utc) + timedelta(seconds=ttl)
            self._cache[key] = (value, expires_at)
            return True

    async def delete(self, key: str) -> bool:
        async with self._lock:
            if key in self._cache:
                del self._cache[key]
                return True
            return False

    async def clear_pattern(self, pattern: str) -> int:
        """Clear keys matching pattern (simple prefix match)."""
        async with self._lock:
            prefix = pattern.rstrip('*')
            keys_to_delete = [k for k in self._cache.keys() if k.startswith(prefix)]
            for key in keys_to_delete:
                del self._cache[key]
            return len(keys_to_delete)

    async def cleanup_expired(self) -> int:
        """Remove expired entries. Call periodically to prevent memory bloat."""
        async with self._lock:
            now = datetime.now(timezone.utc)
            expired_keys = [
                k for k, (_, expires_at) in self._cache.items()
                if expires_at <= now
            ]
            for key in expired_keys:
                del self._cache[key]
            return len(expired_keys)

    async def stats(self) -> Dict[str, Any]:
        async with self._lock:
            return {
                "backend": "memory",
                "keys": len(self._cache),
                "hits": self.hits,
                "misses": self.misses,
            }


class RedisCache(CacheBackend):
    """Redis cache backend. Redis errors count as cache misses."""

    def __init__(self, redis_url: str):
        self._redis_url = redis_url
        self._client = None

    async def _get_client(self):
        if self._client is None:
            import redis.asyncio as redis
            self._client = redis.from_url(self._redis_url, decode_responses=True)
        return self._client

    async def get(self, key: str) -> Optional[Any]:
        try:
            client = await self._get_client()
            value = await client.get(key)
            if value is not None:
                return json.loads(value)
            return None
        except Exception as e:
            logger.warning(f"Redis get failed for {key}: {e}")
            return None

    async def set(self, key: str, value: Any, ttl: int = 3600) -> bool:
        try:
            client = await self._get_client()
            await client.set(key, json.dumps(value, default=str), ex=ttl)
            return True
        except Exception as e:
            logger.warning(f"Redis set failed for {key}: {e}")
            return False

    async def delete(self, key: str) -> bool:
        try:
            client = await self._get_client()
            await client.delete(key)
            return True
        except Exception as e:
            logger.warning(f"Redis delete failed for {key}: {e}")
            return False

    async def clear_pattern(self, pattern: str) -> int:
        try:
            client = await self._get_client()
            cursor = 0
            deleted = 0
            while True:
                cursor, keys = await client.scan(cursor, match=pattern, count=100)
                if keys:
                    await client.delete(*keys)
                    deleted += len(keys)
                if cursor == 0:
                    break
            return deleted
        except Exception as e:
            logger.warning(f"Redis clear failed for {pattern}: {e}")
            return 0

    async def stats(self) -> Dict[str, Any]:
        try:
            client = await self._get_client()
            return {"backend": "redis", "keys": await client.dbsize()}
        except Exception as e:
            return {"backend": "redis", "error": str(e)}


class StockCache:
    """
    Branch-isolated cache for stock values, item records and listings.

    Stock entries expire fastest (CACHE_TTL_STOCK); item records and
    listings live longer (CACHE_TTL_ITEMS).
    """

    def __init__(
        self,
        backend: CacheBackend,
        stock_ttl: Optional[int] = None,
        item_ttl: Optional[int] = None,
        namespace: str = "inv",
        enabled: Optional[bool] = None,
    ):
        self.backend = backend
        self.stock_ttl = stock_ttl or settings.CACHE_TTL_STOCK
        self.item_ttl = item_ttl or settings.CACHE_TTL_ITEMS
        self.namespace = namespace
        self.enabled = settings.CACHE_ENABLED if enabled is None else enabled

    def _make_key(self, branch_id: int, key: str) -> str:
        return f"{self.namespace}:{branch_id}:{key}"

    @staticmethod
    def _stock_key(item_code: str, almacen: int) -> str:
        return f"stock:{item_code}:{almacen}"

    @staticmethod
    def _item_key(item_code: str) -> str:
        return f"item:{item_code}"

    @staticmethod
    def hash_params(params: dict) -> str:
        """Create a short signature from listing filters."""
        sorted_params = sorted(params.items())
        param_str = json.dumps(sorted_params, sort_keys=True, default=str)
        return hashlib.md5(param_str.encode()).hexdigest()[:12]

    async def get(self, branch_id: int, key: str) -> Optional[Any]:
        if not self.enabled:
            return None
        return await self.backend.get(self._make_key(branch_id, key))

    async def set(self, branch_id: int, key: str, value: Any, ttl: int) -> bool:
        if not self.enabled:
            return False
        return await self.backend.set(self._make_key(branch_id, key), value, ttl)

    # ==================== Stock ====================

    async def get_stock(self, branch_id: int, item_code: str, almacen: int = 1) -> Optional[float]:
        return await self.get(branch_id, self._stock_key(item_code, almacen))

    async def set_stock(self, branch_id: int, item_code: str, stock: float, almacen: int = 1) -> bool:
        return await self.set(branch_id, self._stock_key(item_code, almacen), stock, self.stock_ttl)

    async def get_multiple(
        self,
        branch_id: int,
        item_codes: Iterable[str],
        almacen: int = 1,
    ) -> Tuple[Dict[str, float], List[str]]:
        """Split item codes into cached stock values and misses."""
        hits: Dict[str, float] = {}
        misses: List[str] = []
        for code in item_codes:
            value = await self.get_stock(branch_id, code, almacen)
            if value is None:
                misses.append(code)
            else:
                hits[code] = value
        return hits, misses

    async def set_multiple(self, branch_id: int, stocks: Dict[str, float], almacen: int = 1) -> int:
        stored = 0
        for code, stock in stocks.items():
            if await self.set_stock(branch_id, code, stock, almacen):
                stored += 1
        return stored

    # ==================== Items ====================

    async def get_item(self, branch_id: int, item_code: str) -> Optional[dict]:
        return await self.get(branch_id, self._item_key(item_code))

    async def set_item(self, branch_id: int, item_code: str, data: dict) -> bool:
        return await self.set(branch_id, self._item_key(item_code), data, self.item_ttl)

    # ==================== Listings ====================

    async def get_listing(self, branch_id: int, name: str, params: Optional[dict] = None) -> Optional[Any]:
        return await self.get(branch_id, f"list:{name}:{self.hash_params(params or {})}")

    async def set_listing(self, branch_id: int, name: str, params: Optional[dict], data: Any) -> bool:
        key = f"list:{name}:{self.hash_params(params or {})}"
        return await self.set(branch_id, key, data, self.item_ttl)

    # ==================== Invalidation ====================

    async def invalidate(self, branch_id: int, item_code: Optional[str] = None) -> int:
        """
        Drop cached data of a branch.

        With an item code only that item's stock (every warehouse) and
        record go; without it every key of the branch goes.
        """
        if item_code:
            # Trailing ':' keeps ABC from also matching ABC01
            count = await self.backend.clear_pattern(
                self._make_key(branch_id, f"stock:{item_code}:*")
            )
            if await self.backend.delete(self._make_key(branch_id, self._item_key(item_code))):
                count += 1
            return count
        count = await self.backend.clear_pattern(f"{self.namespace}:{branch_id}:*")
        logger.info(f"Cache invalidated for branch {branch_id}: {count} keys")
        return count

    async def flush_all(self) -> int:
        return await self.backend.clear_pattern(f"{self.namespace}:*")

    async def stats(self) -> Dict[str, Any]:
        data = await self.backend.stats()
        data.update({
            "enabled": self.enabled,
            "stock_ttl": self.stock_ttl,
            "item_ttl": self.item_ttl,
        })
        return data


def get_cache_backend() -> CacheBackend:
    """Pick the cache backend from settings."""
    if settings.REDIS_URL and settings.CACHE_ENABLED:
        logger.info("Cache initialized with Redis backend")
        return RedisCache(settings.REDIS_URL)
    logger.info("Cache initialized with in-memory backend")
    return InMemoryCache()
