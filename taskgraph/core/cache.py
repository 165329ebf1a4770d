"""Cache service with Redis (production) or in-memory (single-process) backend.

The in-memory backend is sufficient when the engine runs in one process;
Redis is used when executions must survive a process restart.
Values are stored as JSON in both backends so reads never alias live objects.
"""

import fnmatch
import json
from typing import Any, Dict, List, Optional, Set

import redis.asyncio as redis
from redis.exceptions import RedisError

from taskgraph.core.config import Settings
from taskgraph.core.logging import get_logger, log_cache_operation

logger = get_logger(__name__)


class CacheService:
    """Async key/value, list and set storage.

    Backend selection:
    - Redis: When TASKGRAPH_REDIS_ENABLED=true and a URL is configured
    - Memory: Otherwise, or when Redis cannot be reached at startup
    """

    def __init__(self, settings: Settings):
        self.settings = settings
        self.redis: Optional[redis.Redis] = None
        self.memory_cache: Dict[str, str] = {}
        self.memory_lists: Dict[str, List[str]] = {}
        self.memory_sets: Dict[str, Set[str]] = {}
        self.use_redis = settings.use_redis

    async def startup(self):
        """Initialize cache connection."""
        if self.use_redis:
            try:
                self.redis = redis.from_url(
                    self.settings.redis_url,
                    encoding="utf-8",
                    decode_responses=True,
                    socket_timeout=5,
                    socket_connect_timeout=5,
                    retry_on_timeout=True
                )
                await self.redis.ping()
                logger.info("Redis cache initialized", url=self.settings.redis_url)
            except (RedisError, OSError) as e:
                logger.warning("Redis connection failed, falling back to memory", error=str(e))
                self.use_redis = False
                self.redis = None
        else:
            logger.info("Using in-memory cache", redis_enabled=self.settings.redis_enabled)

    async def shutdown(self):
        """Close cache connections."""
        if self.redis:
            await self.redis.aclose()
            logger.info("Redis cache connections closed")

        self.memory_cache.clear()
        self.memory_lists.clear()
        self.memory_sets.clear()

    def is_redis_available(self) -> bool:
        """Check if Redis backend is active."""
        return self.use_redis and self.redis is not None

    # =========================================================================
    # KEY/VALUE
    # =========================================================================

    async def get(self, key: str) -> Optional[Any]:
        """Get value from cache."""
        if self.is_redis_available():
            value = await self.redis.get(key)
        else:
            value = self.memory_cache.get(key)

        log_cache_operation(logger, "get", key, hit=value is not None)
        return json.loads(value) if value is not None else None

    async def set(self, key: str, value: Any, ttl: Optional[int] = None) -> bool:
        """Set value in cache with optional TTL (Redis only)."""
        serialized = json.dumps(value, default=str)

        if self.is_redis_available():
            if ttl:
                await self.redis.setex(key, ttl, serialized)
            else:
                await self.redis.set(key, serialized)
        else:
            self.memory_cache[key] = serialized

        log_cache_operation(logger, "set", key, ttl=ttl)
        return True

    async def delete(self, key: str) -> bool:
        """Delete a key of any type."""
        if self.is_redis_available():
            deleted = bool(await self.redis.delete(key))
        else:
            deleted = False
            for store in (self.memory_cache, self.memory_lists, self.memory_sets):
                if key in store:
                    del store[key]
                    deleted = True

        log_cache_operation(logger, "delete", key, deleted=deleted)
        return deleted

    async def exists(self, key: str) -> bool:
        """Check if key exists."""
        if self.is_redis_available():
            return bool(await self.redis.exists(key))
        return key in self.memory_cache or key in self.memory_lists or key in self.memory_sets

    async def expire(self, key: str, ttl: int) -> bool:
        """Set TTL on an existing key. No-op for the memory backend."""
        if self.is_redis_available():
            return bool(await self.redis.expire(key, ttl))
        return False

    async def clear_pattern(self, pattern: str) -> int:
        """Delete every key matching a glob pattern."""
        if self.is_redis_available():
            keys = [key async for key in self.redis.scan_iter(match=pattern)]
            if keys:
                await self.redis.delete(*keys)
            return len(keys)

        count = 0
        for store in (self.memory_cache, self.memory_lists, self.memory_sets):
            for key in [k for k in store if fnmatch.fnmatchcase(k, pattern)]:
                del store[key]
                count += 1
        return count

    # =========================================================================
    # LISTS (append-only logs)
    # =========================================================================

    async def list_append(self, key: str, value: Any) -> int:
        """Append a JSON value to the list at key, returning the new length."""
        serialized = json.dumps(value, default=str)

        if self.is_redis_available():
            length = await self.redis.rpush(key, serialized)
        else:
            items = self.memory_lists.setdefault(key, [])
            items.append(serialized)
            length = len(items)

        log_cache_operation(logger, "list_append", key, length=length)
        return length

    async def list_range(self, key: str, start: int = 0, end: int = -1) -> List[Any]:
        """Read a slice of the list at key (inclusive end, Redis semantics)."""
        if self.is_redis_available():
            raw = await self.redis.lrange(key, start, end)
        else:
            items = self.memory_lists.get(key, [])
            stop = None if end == -1 else end + 1
            raw = items[start:stop]

        return [json.loads(item) for item in raw]

    # =========================================================================
    # SETS
    # =========================================================================

    async def set_add(self, key: str, *members: str) -> int:
        """Add members to the set at key."""
        if self.is_redis_available():
            return await self.redis.sadd(key, *members)
        target = self.memory_sets.setdefault(key, set())
        before = len(target)
        target.update(members)
        return len(target) - before

    async def set_remove(self, key: str, *members: str) -> int:
        """Remove members from the set at key."""
        if self.is_redis_available():
            return await self.redis.srem(key, *members)
        target = self.memory_sets.get(key, set())
        removed = [m for m in members if m in target]
        target.difference_update(removed)
        return len(removed)

    async def set_members(self, key: str) -> Set[str]:
        """Return all members of the set at key."""
        if self.is_redis_available():
            return set(await self.redis.smembers(key))
        return set(self.memory_sets.get(key, set()))
