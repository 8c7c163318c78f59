from __future__ import annotations

import math
import re
import threading
import time
from typing import Any, Callable, Dict, Iterable, List, Optional, Tuple

import redis.asyncio as aioredis
from redis import Redis

_GLOB_SPECIALS = re.compile(r"([*?\[\]\\])")


def escape_glob(value: str) -> str:
    """Escape Redis glob metacharacters so a literal prefix can be scanned."""
    return _GLOB_SPECIALS.sub(r"\\\1", value)


class RedisCache:
    """Thin Redis wrapper for sessions, rate-limit counters and short-lived records."""

    DEFAULT_OPERATION_TIMEOUT = 5.0

    # INCR and set the window expiry on the first hit, atomically
    _FIXED_WINDOW_SCRIPT = """
local count = redis.call('INCR', KEYS[1])
if count == 1 then
  redis.call('EXPIRE', KEYS[1], tonumber(ARGV[1]))
end
local ttl = redis.call('TTL', KEYS[1])
if ttl < 0 then
  redis.call('EXPIRE', KEYS[1], tonumber(ARGV[1]))
  ttl = tonumber(ARGV[1])
end
return {count, ttl}
"""

    def __init__(self, redis_url: str, *, socket_timeout: float = DEFAULT_OPERATION_TIMEOUT):
        self.redis_url = redis_url
        self.socket_timeout = socket_timeout
        self.client = aioredis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )
        self._fixed_window = self.client.register_script(self._FIXED_WINDOW_SCRIPT)

    def verify_connection(self) -> None:
        """Assert Redis connectivity.

        Uses a short-lived synchronous client so the async client is not bound
        to a temporary event loop during startup or health checks.
        """
        sync_client = Redis.from_url(
            self.redis_url,
            decode_responses=True,
            socket_timeout=self.socket_timeout,
            socket_connect_timeout=self.socket_timeout,
        )
        try:
            sync_client.ping()
        finally:
            sync_client.close()

    async def get(self, key: str) -> Optional[str]:
        return await self.client.get(key)

    async def set(self, key: str, value: str, *, ttl_seconds: Optional[int] = None) -> None:
        await self.client.set(key, value, ex=ttl_seconds)

    async def delete(self, *keys: str) -> int:
        if not keys:
            return 0
        return int(await self.client.delete(*keys))

    async def exists(self, key: str) -> bool:
        return bool(await self.client.exists(key))

    async def expire(self, key: str, ttl_seconds: int) -> bool:
        return bool(await self.client.expire(key, ttl_seconds))

    async def ttl(self, key: str) -> int:
        return int(await self.client.ttl(key))

    async def mget(self, keys: List[str]) -> List[Optional[str]]:
        if not keys:
            return []
        return list(await self.client.mget(keys))

    async def keys_with_prefix(self, prefix: str) -> List[str]:
        """SCAN for keys starting with a literal prefix.

        Only for small, bounded key spaces (e.g. one identity's sessions).
        """
        pattern = f"{escape_glob(prefix)}*"
        return [key async for key in self.client.scan_iter(match=pattern, count=100)]

    async def incr_window(self, key: str, window_seconds: int) -> Tuple[int, int]:
        count, ttl = await self._fixed_window(keys=[key], args=[int(window_seconds)])
        return int(count), int(ttl)

    async def incr(self, key: str, *, ttl_seconds: Optional[int] = None) -> int:
        async with self.client.pipeline(transaction=True) as pipe:
            pipe.incr(key)
            if ttl_seconds:
                pipe.expire(key, ttl_seconds)
            results = await pipe.execute()
        return int(results[0])

    async def list_push(
        self, key: str, value: str, *, max_length: int, ttl_seconds: Optional[int] = None
    ) -> None:
        """Prepend to a list capped at ``max_length`` entries, oldest dropped."""
        async with self.client.pipeline(transaction=True) as pipe:
            pipe.lpush(key, value)
            pipe.ltrim(key, 0, max_length - 1)
            if ttl_seconds:
                pipe.expire(key, ttl_seconds)
            await pipe.execute()

    async def list_range(self, key: str, start: int, stop: int) -> List[str]:
        return list(await self.client.lrange(key, start, stop))

    async def close(self) -> None:
        """Close the Redis connection pool. Call when shutting down."""
        await self.client.aclose()
        await self.client.connection_pool.disconnect()


class MemoryCache:
    """In-process stand-in for RedisCache under TEST_MODE or ALLOW_REDIS_FALLBACK_DEV.

    Values expire lazily on access. Not shared across processes.
    """

    def __init__(self, *, clock: Callable[[], float] = time.monotonic) -> None:
        self._clock = clock
        self._data: Dict[str, Tuple[Any, Optional[float]]] = {}
        self._lock = threading.RLock()

    def verify_connection(self) -> None:
        return None

    def _remaining(self, expires_at: float) -> int:
        # whole seconds, rounded up so a live key never reports 0
        return max(0, math.ceil(expires_at - self._clock()))

    def _alive(self, key: str) -> Optional[Tuple[Any, Optional[float]]]:
        entry = self._data.get(key)
        if entry is None:
            return None
        _, expires_at = entry
        if expires_at is not None and expires_at <= self._clock():
            self._data.pop(key, None)
            return None
        return entry

    async def get(self, key: str) -> Optional[str]:
        with self._lock:
            entry = self._alive(key)
            return entry[0] if entry else None

    async def set(self, key: str, value: str, *, ttl_seconds: Optional[int] = None) -> None:
        with self._lock:
            expires_at = self._clock() + ttl_seconds if ttl_seconds else None
            self._data[key] = (value, expires_at)

    async def delete(self, *keys: str) -> int:
        removed = 0
        with self._lock:
            for key in keys:
                if self._alive(key) is not None:
                    self._data.pop(key, None)
                    removed += 1
        return removed

    async def exists(self, key: str) -> bool:
        with self._lock:
            return self._alive(key) is not None

    async def expire(self, key: str, ttl_seconds: int) -> bool:
        with self._lock:
            entry = self._alive(key)
            if entry is None:
                return False
            self._data[key] = (entry[0], self._clock() + ttl_seconds)
            return True

    async def ttl(self, key: str) -> int:
        with self._lock:
            entry = self._alive(key)
            if entry is None:
                return -2
            if entry[1] is None:
                return -1
            return self._remaining(entry[1])

    async def mget(self, keys: Iterable[str]) -> List[Optional[str]]:
        with self._lock:
            values = []
            for key in keys:
                entry = self._alive(key)
                values.append(entry[0] if entry else None)
            return values

    async def keys_with_prefix(self, prefix: str) -> List[str]:
        with self._lock:
            return [key for key in list(self._data) if key.startswith(prefix) and self._alive(key)]

    async def incr_window(self, key: str, window_seconds: int) -> Tuple[int, int]:
        with self._lock:
            entry = self._alive(key)
            if entry is None:
                count, expires_at = 1, self._clock() + window_seconds
            else:
                count, expires_at = int(entry[0]) + 1, entry[1]
                if expires_at is None:
                    expires_at = self._clock() + window_seconds
            self._data[key] = (str(count), expires_at)
            return count, self._remaining(expires_at)

    async def incr(self, key: str, *, ttl_seconds: Optional[int] = None) -> int:
        with self._lock:
            entry = self._alive(key)
            count = int(entry[0]) + 1 if entry else 1
            if ttl_seconds:
                expires_at = self._clock() + ttl_seconds
            else:
                expires_at = entry[1] if entry else None
            self._data[key] = (str(count), expires_at)
            return count

    async def list_push(
        self, key: str, value: str, *, max_length: int, ttl_seconds: Optional[int] = None
    ) -> None:
        with self._lock:
            entry = self._alive(key)
            items = [value, *(entry[0] if entry else [])][:max_length]
            if ttl_seconds:
                expires_at = self._clock() + ttl_seconds
            else:
                expires_at = entry[1] if entry else None
            self._data[key] = (items, expires_at)

    async def list_range(self, key: str, start: int, stop: int) -> List[str]:
        with self._lock:
            entry = self._alive(key)
            if entry is None:
                return []
            # inclusive stop, -1 meaning the end
            return list(entry[0][start : None if stop == -1 else stop + 1])

    async def close(self) -> None:
        with self._lock:
            self._data.clear()


CacheStore = RedisCache | MemoryCache
