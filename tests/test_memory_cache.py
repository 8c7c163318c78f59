from sakalsense.storage.redis_cache import MemoryCache, escape_glob


class FakeClock:
    def __init__(self, now: float = 0.0):
        self.now = now

    def __call__(self) -> float:
        return self.now


def test_escape_glob():
    assert escape_glob("session:USER:a*b?[c]:") == "session:USER:a\\*b\\?\\[c\\]:"


async def test_values_expire_lazily():
    clock = FakeClock()
    cache = MemoryCache(clock=clock)
    await cache.set("k", "v", ttl_seconds=10)
    await cache.set("forever", "v")

    assert await cache.ttl("k") == 10
    assert await cache.ttl("forever") == -1
    assert await cache.ttl("missing") == -2

    clock.now = 10
    assert await cache.get("k") is None
    assert await cache.exists("forever")


async def test_delete_counts_live_keys_only():
    clock = FakeClock()
    cache = MemoryCache(clock=clock)
    await cache.set("a", "1")
    await cache.set("b", "2", ttl_seconds=1)
    clock.now = 5

    assert await cache.delete("a", "b", "c") == 1
    assert await cache.delete() == 0


async def test_prefix_scan_and_mget():
    cache = MemoryCache()
    await cache.set("session:USER:x:1", "one")
    await cache.set("session:USER:x:2", "two")
    await cache.set("session:ADMIN:x:1", "other")

    keys = sorted(await cache.keys_with_prefix("session:USER:x:"))
    assert keys == ["session:USER:x:1", "session:USER:x:2"]
    assert await cache.mget(keys + ["nope"]) == ["one", "two", None]


async def test_incr_window_keeps_first_expiry():
    clock = FakeClock()
    cache = MemoryCache(clock=clock)

    assert await cache.incr_window("w", 60) == (1, 60)
    clock.now = 20
    assert await cache.incr_window("w", 60) == (2, 40)
    clock.now = 60
    assert await cache.incr_window("w", 60) == (1, 60)


async def test_expire_only_touches_live_keys():
    clock = FakeClock()
    cache = MemoryCache(clock=clock)
    await cache.set("k", "v", ttl_seconds=5)

    assert await cache.expire("k", 100)
    clock.now = 50
    assert await cache.get("k") == "v"
    assert not await cache.expire("missing", 10)


async def test_remaining_ttl_rounds_up():
    clock = FakeClock()
    cache = MemoryCache(clock=clock)
    await cache.set("k", "v", ttl_seconds=10)
    assert await cache.incr_window("w", 60) == (1, 60)

    clock.now = 9.6
    assert await cache.ttl("k") == 1
    clock.now = 59.6
    assert await cache.incr_window("w", 60) == (2, 1)


async def test_capped_list_keeps_newest_first():
    clock = FakeClock()
    cache = MemoryCache(clock=clock)
    for value in ("a", "b", "c", "d"):
        await cache.list_push("idx", value, max_length=3, ttl_seconds=10)

    assert await cache.list_range("idx", 0, -1) == ["d", "c", "b"]
    assert await cache.list_range("idx", 0, 1) == ["d", "c"]
    assert await cache.list_range("missing", 0, -1) == []

    clock.now = 10
    assert await cache.list_range("idx", 0, -1) == []


async def test_incr_counts_and_refreshes_expiry():
    clock = FakeClock()
    cache = MemoryCache(clock=clock)

    assert await cache.incr("n", ttl_seconds=5) == 1
    clock.now = 4
    assert await cache.incr("n", ttl_seconds=5) == 2
    assert await cache.ttl("n") == 5
    assert await cache.incr("plain") == 1
    assert await cache.ttl("plain") == -1
