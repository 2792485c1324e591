"""
Cache for transit provider lookups.

Purpose:
- Avoid hitting the provider for route/stop data on every command
- Share cached lookups across processes through Redis when REDIS_URL is set
- Keep the last good payload in process so lookups survive a provider outage

Usage:
- await cache.get(key)            # fresh value or None
- await cache.set(key, value)     # JSON-serializable value, default TTL
- cache.get_stale(key)            # last value ever stored, ignoring TTL

Redis is optional: REDIS_URL="disabled" (the default) keeps everything in
process, and any Redis error falls back to the in-process copy.
"""
import json
import logging
import time
from typing import Any, Dict, Optional, Tuple

import redis.asyncio as redis

logger = logging.getLogger(__name__)

KEY_PREFIX = "busnotifier:"

class ResponseCache:
    """TTL cache with an in-process last-good copy of every entry."""

    def __init__(self, redis_url: str | None = None, ttl_seconds: int = 300):
        self.redis_url = redis_url if redis_url and redis_url != "disabled" else None
        self.ttl_seconds = ttl_seconds
        self._redis: Optional[redis.Redis] = None
        # key -> (expires_at monotonic, value)
        self._memory: Dict[str, Tuple[float, Any]] = {}

    def _client(self) -> Optional[redis.Redis]:
        """
        Lazily create the Redis client.
        Returns None when Redis is disabled or cannot be created.
        """
        if self.redis_url is None:
            return None
        if self._redis is None:
            try:
                self._redis = redis.Redis.from_url(self.redis_url, encoding="utf-8", decode_responses=True)
                logger.info("Redis cache enabled at %s", self.redis_url)
            except Exception as e:
                logger.error("Failed to create Redis client: %s", e)
                self.redis_url = None
                return None
        return self._redis

    async def get(self, key: str) -> Any:
        """Fresh value for `key`, or None when missing or expired."""
        client = self._client()
        if client is not None:
            try:
                raw = await client.get(KEY_PREFIX + key)
                if raw is not None:
                    return json.loads(raw)
            except Exception as e:
                logger.warning("Redis GET error for %s: %s", key, e)

        entry = self._memory.get(key)
        if entry and entry[0] > time.monotonic():
            return entry[1]
        return None

    async def set(self, key: str, value: Any, ttl: int | None = None) -> bool:
        """Store `value`; returns False only if Redis was configured and failed."""
        ttl = ttl or self.ttl_seconds
        self._memory[key] = (time.monotonic() + ttl, value)
        client = self._client()
        if client is None:
            return True
        try:
            await client.setex(KEY_PREFIX + key, ttl, json.dumps(value))
            return True
        except Exception as e:
            logger.warning("Redis SETEX error for %s: %s", key, e)
            return False

    def get_stale(self, key: str) -> Any:
        """Last value stored in this process for `key`, even if expired."""
        entry = self._memory.get(key)
        return entry[1] if entry else None

    def clear(self):
        self._memory.clear()

    async def close(self):
        if self._redis is not None:
            await self._redis.aclose()
            self._redis = None
