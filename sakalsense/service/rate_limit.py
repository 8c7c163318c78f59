from __future__ import annotations

import re
import time
from dataclasses import dataclass
from typing import Callable, Dict

from sakalsense.logging import get_logger
from sakalsense.storage.redis_cache import CacheStore

logger = get_logger(__name__)

_UNSAFE_KEY_CHARS = re.compile(r"[:/\\]")


@dataclass(frozen=True)
class RateLimitPolicy:
    name: str
    max_requests: int
    window_seconds: int


POLICIES: Dict[str, RateLimitPolicy] = {
    "default": RateLimitPolicy("default", 100, 60),
    "strict": RateLimitPolicy("strict", 10, 60),
    "auth": RateLimitPolicy("auth", 5, 300),
}


@dataclass(frozen=True)
class RateLimitResult:
    allowed: bool
    remaining: int
    reset_at: int
    retry_after: int
    limit: int


def sanitize_client_key(client_key: str) -> str:
    return _UNSAFE_KEY_CHARS.sub("_", client_key).lower()


class RateLimiter:
    """Fixed-window counters in the cache store.

    The counter and its expiry are created atomically on the first hit. A client
    can burst up to twice the limit across a window boundary.
    """

    def __init__(
        self,
        cache: CacheStore,
        *,
        prefix: str = "ratelimit",
        policies: Dict[str, RateLimitPolicy] | None = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.cache = cache
        self.prefix = prefix
        self.policies = dict(policies or POLICIES)
        self._clock = clock

    def policy(self, name: str) -> RateLimitPolicy:
        try:
            return self.policies[name]
        except KeyError:
            raise ValueError(f"unknown rate limit policy {name}") from None

    def _key(self, client_key: str, policy: RateLimitPolicy) -> str:
        return f"{self.prefix}:{policy.name}:{sanitize_client_key(client_key)}"

    @staticmethod
    def _window_left(policy: RateLimitPolicy, ttl: int) -> int:
        # a negative TTL means no expiry was found; 0 is the last second of the window
        return max(1, ttl) if ttl >= 0 else policy.window_seconds

    def _result(self, policy: RateLimitPolicy, count: int, ttl: int) -> RateLimitResult:
        ttl = self._window_left(policy, ttl)
        allowed = count <= policy.max_requests
        return RateLimitResult(
            allowed=allowed,
            remaining=max(0, policy.max_requests - count),
            reset_at=int(self._clock()) + ttl,
            retry_after=0 if allowed else ttl,
            limit=policy.max_requests,
        )

    async def consume(self, client_key: str, policy_name: str = "default") -> RateLimitResult:
        policy = self.policy(policy_name)
        count, ttl = await self.cache.incr_window(self._key(client_key, policy), policy.window_seconds)
        result = self._result(policy, count, ttl)
        if not result.allowed:
            logger.info(
                "rate_limit_exceeded",
                policy=policy.name,
                count=count,
                retry_after=result.retry_after,
            )
        return result

    async def check(self, client_key: str, policy_name: str = "default") -> RateLimitResult:
        """Report the current window without consuming a slot."""
        policy = self.policy(policy_name)
        key = self._key(client_key, policy)
        raw = await self.cache.get(key)
        if raw is None:
            return RateLimitResult(
                allowed=True,
                remaining=policy.max_requests,
                reset_at=int(self._clock()) + policy.window_seconds,
                retry_after=0,
                limit=policy.max_requests,
            )
        count = int(raw)
        ttl = self._window_left(policy, await self.cache.ttl(key))
        # the next call would be the (count + 1)-th
        allowed = count < policy.max_requests
        return RateLimitResult(
            allowed=allowed,
            remaining=max(0, policy.max_requests - count),
            reset_at=int(self._clock()) + ttl,
            retry_after=0 if allowed else ttl,
            limit=policy.max_requests,
        )

    async def reset(self, client_key: str, policy_name: str = "default") -> bool:
        policy = self.policy(policy_name)
        return bool(await self.cache.delete(self._key(client_key, policy)))
