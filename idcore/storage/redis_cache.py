from __future__ import annotations

from typing import Optional

import redis.asyncio as aioredis
from redis import Redis


class RedisCache:
    """Thin Redis wrapper for OTP codes, attempt counters and rate limits."""

    DEFAULT_OPERATION_TIMEOUT = 5.0

    # INCR and the first EXPIRE must land together, otherwise a crash between
    # them leaves a counter that never resets.
    _INCR_WITH_TTL_SCRIPT = """
local value = redis.call('INCR', KEYS[1])
if value == 1 and tonumber(ARGV[1]) > 0 then
  redis.call('EXPIRE', KEYS[1], ARGV[1])
end
return value
"""

    def __init__(
        self,
        redis_url: str,
        *,
        socket_timeout: float = DEFAULT_OPERATION_TIMEOUT,
        key_prefix: str = "idcore:",
    ):
        self.redis_url = redis_url
        self.key_prefix = key_prefix
        self.client = aioredis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )
        self._incr_with_ttl = self.client.register_script(self._INCR_WITH_TTL_SCRIPT)

    def _key(self, key: str) -> str:
        return f"{self.key_prefix}{key}"

    def verify_connection(self) -> None:
        """Assert Redis connectivity before enabling dependent features."""
        # Use a short-lived synchronous client to avoid binding the async client to a
        # temporary event loop during startup checks.
        sync_client = Redis.from_url(self.redis_url, decode_responses=True)
        try:
            sync_client.ping()
        finally:
            sync_client.close()

    async def get(self, key: str) -> Optional[str]:
        return await self.client.get(self._key(key))

    async def set(self, key: str, value: str, ttl_seconds: int) -> None:
        await self.client.set(self._key(key), value, ex=max(1, int(ttl_seconds)))

    async def delete(self, *keys: str) -> int:
        if not keys:
            return 0
        return int(await self.client.delete(*(self._key(k) for k in keys)))

    async def incr(self, key: str, ttl_seconds: Optional[int] = None) -> int:
        result = await self._incr_with_ttl(
            keys=[self._key(key)], args=[int(ttl_seconds or 0)]
        )
        return int(result)

    async def expire(self, key: str, ttl_seconds: int) -> bool:
        return bool(await self.client.expire(self._key(key), max(1, int(ttl_seconds))))

    async def ttl(self, key: str) -> int:
        remaining = await self.client.ttl(self._key(key))
        # -2: no such key, -1: key without expiry
        return max(0, int(remaining))

    async def close(self) -> None:
        """Close Redis connection pool. Call when shutting down or resetting runtime."""
        await self.client.aclose()
