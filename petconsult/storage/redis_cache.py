from __future__ import annotations

import hashlib
import time
from typing import Tuple, Union

import redis.asyncio as aioredis
from redis import Redis


class RedisCache:
    """Thin Redis wrapper for request rate limits."""

    # Atomic refill + consume
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
        """Assert Redis connectivity before enabling rate limits."""

        # Short-lived sync client so the async one is not bound to a startup loop.
        sync_client = Redis.from_url(self.redis_url, decode_responses=True)
        try:
            sync_client.ping()
        finally:
            sync_client.close()

    async def ping(self) -> bool:
        return bool(await self.client.ping())

    @staticmethod
    def _normalize_rate_key(key: str) -> str:
        """Hash rate keys so caller-supplied parts cannot collide on delimiters."""

        digest = hashlib.sha256(key.encode()).hexdigest()
        return f"rate:{digest}"

    async def check_rate_limit(
        self,
        key: str,
        limit: int,
        window_seconds: int,
        *,
        return_remaining: bool = False,
        cost: int = 1,
    ) -> Union[bool, Tuple[bool, int, int]]:
        """Check a rate limit using the Redis-backed token bucket."""

        safe_key = self._normalize_rate_key(key)
        refill_rate = float(limit) / float(window_seconds)
        allowed, tokens, reset_after = await self._token_bucket(
            keys=[safe_key],
            args=[time.time(), refill_rate, limit, max(1, cost)],
        )

        allowed_bool = bool(int(allowed))
        remaining = max(0, int(tokens))
        reset_seconds = int(reset_after) if reset_after else 0
        if return_remaining:
            return (allowed_bool, remaining, reset_seconds)
        return allowed_bool

    async def close(self) -> None:
        """Close the Redis connection pool."""
        await self.client.close()
        await self.client.connection_pool.disconnect()
