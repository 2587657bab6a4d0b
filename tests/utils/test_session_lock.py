import asyncio

import pytest
from unittest.mock import AsyncMock, MagicMock

from loanflow.utils.lock import RedisSessionLocks, SessionLocks, SessionLockTimeout


def test_same_session_turns_never_overlap():
    locks = SessionLocks()
    inside = []
    max_inside = []

    async def turn():
        async with locks.hold("u1"):
            inside.append(1)
            max_inside.append(len(inside))
            await asyncio.sleep(0.01)
            inside.pop()

    async def scenario():
        await asyncio.gather(*(turn() for _ in range(5)))

    asyncio.run(scenario())
    assert max(max_inside) == 1
    assert locks.active() == 0


def test_different_sessions_run_concurrently():
    locks = SessionLocks()
    inside = set()
    overlap = []

    async def turn(uid):
        async with locks.hold(uid):
            inside.add(uid)
            await asyncio.sleep(0.02)
            overlap.append(len(inside))
            inside.discard(uid)

    async def scenario():
        await asyncio.gather(turn("a"), turn("b"))

    asyncio.run(scenario())
    assert max(overlap) == 2


def test_lock_is_released_when_body_raises():
    locks = SessionLocks()

    async def scenario():
        with pytest.raises(RuntimeError):
            async with locks.hold("u1"):
                raise RuntimeError("boom")
        async with locks.hold("u1"):
            pass

    asyncio.run(scenario())
    assert locks.active() == 0


def test_redis_lock_sets_and_releases_owned_key():
    redis = MagicMock()
    redis.set = AsyncMock(return_value=True)
    redis.eval = AsyncMock(return_value=1)
    locks = RedisSessionLocks(redis, ttl_ms=5000)

    async def scenario():
        async with locks.hold("u1"):
            pass

    asyncio.run(scenario())
    args, kwargs = redis.set.call_args
    assert args[0] == "lock:session:u1"
    assert kwargs == {"px": 5000, "nx": True}
    token = args[1]
    assert redis.eval.call_args.args[1:] == (1, "lock:session:u1", token)


def test_redis_lock_times_out():
    redis = MagicMock()
    redis.set = AsyncMock(return_value=None)
    redis.eval = AsyncMock()
    locks = RedisSessionLocks(redis, ttl_ms=5000, spins=2, spin_sleep=0)

    async def scenario():
        async with locks.hold("u1"):
            pass

    with pytest.raises(SessionLockTimeout):
        asyncio.run(scenario())
    assert redis.set.await_count == 3
    redis.eval.assert_not_called()
    assert locks.active() == 0
