"""Tests for the rate limiter and its counter stores."""

from unittest.mock import AsyncMock

from capturebot.core.ratelimit import MemoryCounterStore, RateLimiter, RedisCounterStore, build_counter_store


class FakeClock:

    def __init__(self, start=1000.0):
        self.now = start

    def __call__(self):
        return self.now


async def test_allows_up_to_max_attempts():
    limiter = RateLimiter(MemoryCounterStore(), max_attempts=3, window_seconds=60)

    results = [await limiter.hit("auth:1.2.3.4") for _ in range(4)]

    assert [r.allowed for r in results] == [True, True, True, False]
    assert [r.remaining for r in results] == [2, 1, 0, 0]


async def test_window_resets():
    clock = FakeClock()
    limiter = RateLimiter(MemoryCounterStore(clock=clock), max_attempts=1, window_seconds=60)

    assert (await limiter.hit("k")).allowed
    assert not (await limiter.hit("k")).allowed

    clock.now += 61
    result = await limiter.hit("k")
    assert result.allowed
    assert result.reset_in == 60


async def test_keys_are_independent_and_resettable():
    limiter = RateLimiter(MemoryCounterStore(), max_attempts=1, window_seconds=60)

    await limiter.hit("a")
    assert not (await limiter.hit("a")).allowed
    assert (await limiter.hit("b")).allowed

    await limiter.reset("a")
    assert (await limiter.hit("a")).allowed


async def test_memory_store_stays_within_max_keys():
    clock = FakeClock()
    store = MemoryCounterStore(clock=clock, max_keys=3)

    for n in range(3):
        await store.incr(f"k{n}", 60)
        clock.now += 1
    await store.incr("k0", 60)  # existing key, no eviction
    await store.incr("k3", 60)

    assert len(store._counters) == 3
    assert "k0" not in store._counters  # closest to reset
    assert set(store._counters) == {"k1", "k2", "k3"}


async def test_redis_store_sets_expiry_on_first_hit():
    client = AsyncMock()
    client.incr.return_value = 1
    client.ttl.return_value = 900
    store = RedisCounterStore(client)

    count, ttl = await store.incr("auth:x", 900)

    assert (count, ttl) == (1, 900.0)
    client.incr.assert_awaited_once_with("ratelimit:auth:x")
    client.expire.assert_awaited_once_with("ratelimit:auth:x", 900)


async def test_redis_store_repairs_missing_expiry():
    client = AsyncMock()
    client.incr.return_value = 4
    client.ttl.return_value = -1
    store = RedisCounterStore(client, prefix="rl")

    count, ttl = await store.incr("k", 60)

    assert (count, ttl) == (4, 60.0)
    client.expire.assert_awaited_once_with("rl:k", 60)


def test_build_counter_store_without_redis():
    assert isinstance(build_counter_store(None), MemoryCounterStore)
