from __future__ import annotations

import hashlib
from typing import Tuple, Union

import redis.asyncio as aioredis
from redis import Redis


class RedisCache:
    """Redis connection shared by every worker for request counting."""

    # INCRBY and the first EXPIRE must happen together or a crash between them
    # leaves a counter that never resets
    _FIXED_WINDOW_SCRIPT = """
local hits = redis.call('INCRBY', KEYS[1], ARGV[1])
local ttl = redis.call('TTL', KEYS[1])
if ttl < 0 then
  redis.call('EXPIRE', KEYS[1], ARGV[2])
  ttl = tonumber(ARGV[2])
end
return {hits, ttl}
"""

    def __init__(self, redis_url: str, *, socket_timeout: float = 5.0):
        self.redis_url = redis_url
        self.client = aioredis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )
        self._count_hit = self.client.register_script(self._FIXED_WINDOW_SCRIPT)

    def verify_connection(self) -> None:
        """Ping with a throwaway sync client; the async pool belongs to the app loop."""
        sync_client = Redis.from_url(self.redis_url, decode_responses=True)
        try:
            sync_client.ping()
        finally:
            sync_client.close()

    @staticmethod
    def _window_key(key: str) -> str:
        # subjects include raw emails; hashing keeps them out of the keyspace
        return "rate:" + hashlib.sha256(key.encode()).hexdigest()

    async def check_rate_limit(
        self,
        key: str,
        limit: int,
        window_seconds: int,
        *,
        return_remaining: bool = False,
    ) -> Union[bool, Tuple[bool, int, int]]:
        """Count one hit against ``key``'s current window.

        Returns ``allowed`` or, with ``return_remaining``, the tuple
        ``(allowed, remaining, seconds_until_window_resets)``.
        """
        hits, ttl = await self._count_hit(keys=[self._window_key(key)], args=[1, window_seconds])
        hits = int(hits)
        allowed = hits <= limit
        if return_remaining:
            return (allowed, max(0, limit - hits), max(1, int(ttl)))
        return allowed

    async def close(self) -> None:
        await self.client.aclose()
