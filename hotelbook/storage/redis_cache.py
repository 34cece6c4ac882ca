from __future__ import annotations

import hashlib
import time
from typing import Tuple

import redis.asyncio as aioredis
from redis import Redis


class RedisCache:
    """Thin Redis wrapper for shared rate-limit buckets."""

    # Atomic refill + consume so concurrent workers share one budget
    _TOKEN_BUCKET_SCRIPT = """
local key = KEYS[1]
local now = tonumber(ARGV[1])
local refill_rate = tonumber(ARGV[2])
local capacity = tonumber(ARGV[3])
local cost = tonumber(ARGV[4])

local data = redis.call('HMGET', key, 'tokens', 'ts')
local tokens = tonumber(data[1])
local last = tonumber(data[2])

if tokens == nil or last == nil then
  tokens = capacity
  last = now
end

local delta = math.max(0, now - last)
tokens = math.min(capacity, tokens + delta * refill_rate)

if tokens < cost then
  redis.call('HMSET', key, 'tokens', tokens, 'ts', now)
  local reset_after = math.ceil((cost - tokens) / refill_rate)
  redis.call('EXPIRE', key, math.max(reset_after, 1))
  return {0, tokens, reset_after}
end

tokens = tokens - cost
redis.call('HMSET', key, 'tokens', tokens, 'ts', now)
local ttl = math.ceil(capacity / refill_rate)
redis.call('EXPIRE', key, math.max(ttl, 1))
return {1, tokens, 0}
"""

    def __init__(self, redis_url: str, *, socket_timeout: float = 5.0):
        self.redis_url = redis_url
        self.client = aioredis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )
        self._token_bucket = self.client.register_script(self._TOKEN_BUCKET_SCRIPT)

    def verify_connection(self) -> None:
        """Assert Redis connectivity before enabling dependent features."""
        # Short-lived sync client so the async client is not bound to a startup loop
        sync_client = Redis.from_url(self.redis_url, decode_responses=True)
        try:
            sync_client.ping()
        finally:
            sync_client.close()

    @staticmethod
    def _normalize_rate_key(key: str) -> str:
        """Hash rate keys so user-supplied parts cannot inject delimiters."""

        digest = hashlib.sha256(key.encode()).hexdigest()
        return f"rate:{digest}"

    async def check_rate_limit(
        self,
        key: str,
        limit: int,
        window_seconds: int,
        *,
        cost: int = 1,
    ) -> Tuple[bool, int, int]:
        """Consume from a Redis token bucket.

        Returns ``(allowed, remaining, reset_seconds)``.
        """

        safe_key = self._normalize_rate_key(key)
        refill_rate = float(limit) / float(window_seconds)
        allowed, tokens, reset_after = await self._token_bucket(
            keys=[safe_key],
            args=[time.time(), refill_rate, limit, max(1, cost)],
        )
        return (bool(int(allowed)), max(0, int(float(tokens))), int(reset_after) if reset_after else 0)

    async def close(self) -> None:
        """Close Redis connection pool. Call when shutting down or resetting runtime."""
        await self.client.close()
        await self.client.connection_pool.disconnect()
