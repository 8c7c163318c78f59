import pytest

from sakalsense.service.rate_limit import POLICIES, RateLimiter, sanitize_client_key
from sakalsense.storage.redis_cache import MemoryCache


class FakeClock:
    def __init__(self, now: float = 1000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now


def _limiter(clock: FakeClock) -> RateLimiter:
    return RateLimiter(MemoryCache(clock=clock), prefix="ratelimit", clock=clock)


def test_default_policies():
    assert (POLICIES["default"].max_requests, POLICIES["default"].window_seconds) == (100, 60)
    assert (POLICIES["strict"].max_requests, POLICIES["strict"].window_seconds) == (10, 60)
    assert (POLICIES["auth"].max_requests, POLICIES["auth"].window_seconds) == (5, 300)


def test_sanitize_client_key():
    assert sanitize_client_key("2001:DB8::1") == "2001_db8__1"
    assert sanitize_client_key("a/b\\c") == "a_b_c"


def test_unknown_policy_rejected():
    with pytest.raises(ValueError):
        _limiter(FakeClock()).policy("burst")


async def test_auth_policy_blocks_sixth_request():
    clock = FakeClock()
    limiter = _limiter(clock)
    results = [await limiter.consume("10.0.0.1", "auth") for _ in range(6)]

    assert [r.allowed for r in results] == [True] * 5 + [False]
    assert [r.remaining for r in results[:5]] == [4, 3, 2, 1, 0]
    blocked = results[-1]
    assert blocked.retry_after == 300
    assert blocked.reset_at == 1300
    assert blocked.limit == 5


async def test_window_expiry_restores_quota():
    clock = FakeClock()
    limiter = _limiter(clock)
    for _ in range(10):
        await limiter.consume("10.0.0.1", "strict")
    assert not (await limiter.consume("10.0.0.1", "strict")).allowed

    clock.now += 61
    result = await limiter.consume("10.0.0.1", "strict")
    assert result.allowed
    assert result.remaining == 9


async def test_retry_after_counts_down_within_window():
    clock = FakeClock()
    limiter = _limiter(clock)
    for _ in range(5):
        await limiter.consume("10.0.0.1", "auth")
    clock.now += 100
    blocked = await limiter.consume("10.0.0.1", "auth")
    assert blocked.retry_after == 200


async def test_check_does_not_consume():
    clock = FakeClock()
    limiter = _limiter(clock)
    fresh = await limiter.check("10.0.0.1", "auth")
    assert fresh.allowed and fresh.remaining == 5

    for _ in range(4):
        await limiter.consume("10.0.0.1", "auth")
    peek = await limiter.check("10.0.0.1", "auth")
    assert peek.allowed and peek.remaining == 1
    assert (await limiter.check("10.0.0.1", "auth")).remaining == 1

    await limiter.consume("10.0.0.1", "auth")
    exhausted = await limiter.check("10.0.0.1", "auth")
    assert not exhausted.allowed
    assert exhausted.retry_after > 0


async def test_policies_and_clients_count_separately():
    limiter = _limiter(FakeClock())
    for _ in range(5):
        await limiter.consume("10.0.0.1", "auth")

    assert (await limiter.consume("10.0.0.2", "auth")).allowed
    assert (await limiter.consume("10.0.0.1", "strict")).allowed


async def test_reset_clears_window():
    limiter = _limiter(FakeClock())
    for _ in range(6):
        await limiter.consume("10.0.0.1", "auth")

    assert await limiter.reset("10.0.0.1", "auth")
    assert (await limiter.consume("10.0.0.1", "auth")).allowed


async def test_last_moment_of_window_reports_one_second():
    clock = FakeClock()
    limiter = _limiter(clock)
    for _ in range(5):
        await limiter.consume("10.0.0.1", "auth")

    clock.now = 1299.6
    blocked = await limiter.consume("10.0.0.1", "auth")
    assert not blocked.allowed
    assert blocked.retry_after == 1
    assert blocked.reset_at == 1300

    peek = await limiter.check("10.0.0.1", "auth")
    assert peek.retry_after == 1


async def test_zero_ttl_from_store_is_not_a_new_window():
    class ExpiringCache:
        async def incr_window(self, key, window_seconds):
            return 6, 0

    limiter = RateLimiter(ExpiringCache(), clock=FakeClock())
    blocked = await limiter.consume("10.0.0.1", "auth")

    assert blocked.retry_after == 1
    assert blocked.reset_at == 1001
