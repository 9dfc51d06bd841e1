from __future__ import annotations

import hashlib
import time
import uuid
from typing import Tuple

import redis.asyncio as aioredis
from redis import Redis

# Sliding-window log: one sorted-set member per accepted request, scored by
# its timestamp. Returns {allowed, remaining, retry_after_seconds}.
_SLIDING_WINDOW_SCRIPT = """
local key = KEYS[1]
local now = tonumber(ARGV[1])
local window = tonumber(ARGV[2])
local limit = tonumber(ARGV[3])
local member = ARGV[4]

redis.call('ZREMRANGEBYSCORE', key, '-inf', now - window)
local used = redis.call('ZCARD', key)
if used >= limit then
  local oldest = redis.call('ZRANGE', key, 0, 0, 'WITHSCORES')
  local retry_after = math.ceil(tonumber(oldest[2]) + window - now)
  return {0, 0, math.max(retry_after, 1)}
end
redis.call('ZADD', key, now, member)
redis.call('EXPIRE', key, math.ceil(window))
return {1, limit - used - 1, 0}
"""

DEFAULT_TIMEOUT_SECONDS = 5.0


def rate_key(subject: str) -> str:
    """Namespaced key; the subject is hashed so raw IPs never appear in Redis."""
    return "ssoidp:rate:" + hashlib.sha256(subject.encode()).hexdigest()


def _window_args(limit: int, window_seconds: int) -> list:
    return [time.time(), window_seconds, limit, uuid.uuid4().hex]


def _decode(result) -> Tuple[bool, int, int]:
    allowed, remaining, retry_after = (int(value) for value in result)
    return bool(allowed), max(0, remaining), retry_after


class RedisCache:
    """Shared rate-limit windows on an asyncio Redis client."""

    def __init__(self, redis_url: str, *, timeout_seconds: float = DEFAULT_TIMEOUT_SECONDS):
        self.redis_url = redis_url
        self.timeout_seconds = timeout_seconds
        self.client = aioredis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=timeout_seconds,
            socket_connect_timeout=timeout_seconds,
        )
        self._window = self.client.register_script(_SLIDING_WINDOW_SCRIPT)

    def verify_connection(self) -> bool:
        # Ping with a throwaway sync client; the async one belongs to the serving loop
        client = Redis.from_url(self.redis_url, socket_connect_timeout=self.timeout_seconds)
        try:
            return bool(client.ping())
        finally:
            client.close()

    async def check_rate_limit(self, key: str, limit: int, window_seconds: int) -> Tuple[bool, int, int]:
        """Record one request under ``key``; returns ``(allowed, remaining, retry_after)``."""
        result = await self._window(keys=[rate_key(key)], args=_window_args(limit, window_seconds))
        return _decode(result)

    async def reset_rate_limit(self, key: str) -> None:
        await self.client.delete(rate_key(key))

    async def close(self) -> None:
        await self.client.aclose()


class SyncRedisCache:
    """Same surface as :class:`RedisCache` over a blocking client.

    Used under TEST_MODE, where every test run owns a fresh event loop that an
    asyncio connection pool would otherwise outlive.
    """

    def __init__(self, redis_url: str, *, timeout_seconds: float = DEFAULT_TIMEOUT_SECONDS):
        self.redis_url = redis_url
        self.client = Redis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=timeout_seconds,
            socket_connect_timeout=timeout_seconds,
        )
        self._window = self.client.register_script(_SLIDING_WINDOW_SCRIPT)

    def verify_connection(self) -> bool:
        return bool(self.client.ping())

    async def check_rate_limit(self, key: str, limit: int, window_seconds: int) -> Tuple[bool, int, int]:
        return _decode(self._window(keys=[rate_key(key)], args=_window_args(limit, window_seconds)))

    async def reset_rate_limit(self, key: str) -> None:
        self.client.delete(rate_key(key))

    def close_sync(self) -> None:
        self.client.close()

    async def close(self) -> None:
        self.close_sync()
