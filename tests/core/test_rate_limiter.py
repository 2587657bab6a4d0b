import asyncio
import json

import pytest
from unittest.mock import AsyncMock, MagicMock

from loanflow.core.rate_limiter import HOUR, MemoryRateLimitStore, RateLimiter, RedisRateLimitStore
from loanflow.errors import RateLimitError


class Clock:
    def __init__(self, t=1_000_000.0):
        self.t = t

    def __call__(self):
        return self.t


def _limiter(clock, per_minute=3, per_hour=100):
    return RateLimiter(per_minute=per_minute, per_hour=per_hour, minute_block_sec=300,
                       hour_block_sec=3600, clock=clock)


def test_limit_plus_one_is_rejected_within_a_minute():
    clock = Clock()
    limiter = _limiter(clock)

    async def scenario():
        for _ in range(3):
            await limiter.check_and_record("u1")
            clock.t += 1
        with pytest.raises(RateLimitError) as info:
            await limiter.check_and_record("u1")
        return info.value

    err = asyncio.run(scenario())
    assert err.retry_after == 300
    assert err.to_dict()["retryAfterSec"] == 300
    assert "5 minute" in err.message


def test_other_users_are_not_affected():
    clock = Clock()
    limiter = _limiter(clock, per_minute=1)

    async def scenario():
        await limiter.check_and_record("u1")
        with pytest.raises(RateLimitError):
            await limiter.check_and_record("u1")
        await limiter.check_and_record("u2")

    asyncio.run(scenario())


def test_block_holds_then_expires_with_fresh_history():
    clock = Clock()
    limiter = _limiter(clock, per_minute=2)

    async def scenario():
        await limiter.check_and_record("u1")
        await limiter.check_and_record("u1")
        with pytest.raises(RateLimitError):
            await limiter.check_and_record("u1")

        clock.t += 120
        with pytest.raises(RateLimitError) as info:
            await limiter.check_and_record("u1")
        assert info.value.retry_after == pytest.approx(180)

        clock.t += 181
        await limiter.check_and_record("u1")
        await limiter.check_and_record("u1")

    asyncio.run(scenario())


def test_window_slides_after_a_minute():
    clock = Clock()
    limiter = _limiter(clock, per_minute=2)

    async def scenario():
        await limiter.check_and_record("u1")
        await limiter.check_and_record("u1")
        clock.t += 61
        await limiter.check_and_record("u1")

    asyncio.run(scenario())


def test_hourly_limit_blocks_for_an_hour():
    clock = Clock()
    limiter = _limiter(clock, per_minute=100, per_hour=5)

    async def scenario():
        for _ in range(5):
            await limiter.check_and_record("u1")
            clock.t += 120
        with pytest.raises(RateLimitError) as info:
            await limiter.check_and_record("u1")
        return info.value

    assert asyncio.run(scenario()).retry_after == 3600


def test_redis_store_persists_block_raised_inside_transaction():
    data = {}
    redis = MagicMock()
    redis.get = AsyncMock(side_effect=lambda key: data.get(key))

    async def fake_set(key, value, ex=None):
        data[key] = value

    redis.set = AsyncMock(side_effect=fake_set)
    clock = Clock()
    limiter = RateLimiter(store=RedisRateLimitStore(redis), per_minute=1, per_hour=10,
                          minute_block_sec=300, hour_block_sec=3600, clock=clock)

    async def scenario():
        await limiter.check_and_record("u1")
        with pytest.raises(RateLimitError):
            await limiter.check_and_record("u1")

    asyncio.run(scenario())

    record = json.loads(data["ratelimit:u1"])
    assert record["blocked"] is True
    assert record["blockExpiry"] == clock.t + 300
    redis.lock.assert_called_with("ratelimit:u1:lock", timeout=5.0)


def test_idle_users_are_swept_but_blocked_users_kept():
    clock = Clock()
    store = MemoryRateLimitStore(clock=clock)
    limiter = RateLimiter(store=store, per_minute=100, per_hour=1, minute_block_sec=300,
                          hour_block_sec=2 * HOUR, clock=clock)

    async def scenario():
        await limiter.check_and_record("idle")
        await limiter.check_and_record("blocked")
        with pytest.raises(RateLimitError):
            await limiter.check_and_record("blocked")
        assert len(store) == 2
        assert store.active() == 0

        clock.t += HOUR + 60
        await limiter.check_and_record("fresh")

    asyncio.run(scenario())
    assert len(store) == 2
    assert store.active() == 0
    assert "idle" not in store._records
