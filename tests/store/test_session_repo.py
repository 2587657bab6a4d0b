import asyncio
import json

from unittest.mock import AsyncMock, MagicMock, patch

from loanflow.store.models import KYC, LedgerEntry, Session
from loanflow.store.session_repo import (
    InMemorySessionStore,
    RedisSessionStore,
    deserialize_session,
    serialize_session,
)

DAY = 24 * 3600


class Clock:
    def __init__(self, t=5_000_000.0):
        self.t = t

    def __call__(self):
        return self.t


def _saved_session():
    s = Session(userId="u1", opportunityId="OPP-9", currentStep="VERIFY_KYC")
    s.referenceLedger[KYC] = LedgerEntry(referenceId="K-1", status="PENDING")
    s.failedAttempts["VERIFY_KYC"] = 2
    s.userInfo.pan = "ABCDE1234F"
    return s


def test_session_restored_just_before_a_day():
    clock = Clock()
    store = InMemorySessionStore(max_age_sec=DAY, clock=clock)

    async def scenario():
        assert await store.save("u1", _saved_session()) is True
        clock.t += DAY - 60
        return await store.load("u1")

    loaded = asyncio.run(scenario())
    assert loaded.currentStep == "VERIFY_KYC"
    assert loaded.opportunityId == "OPP-9"
    assert loaded.referenceLedger[KYC].referenceId == "K-1"
    assert loaded.failedAttempts == {"VERIFY_KYC": 2}
    assert loaded.userInfo.pan == "ABCDE1234F"


def test_session_older_than_a_day_starts_fresh():
    clock = Clock()
    store = InMemorySessionStore(max_age_sec=DAY, clock=clock)

    async def scenario():
        await store.save("u1", _saved_session())
        clock.t += DAY + 60
        return await store.load("u1")

    with patch("loanflow.store.session_repo.log") as mock_log:
        loaded = asyncio.run(scenario())
    assert loaded.currentStep == "INIT"
    assert loaded.userId == "u1"
    assert loaded.referenceLedger == {}
    assert mock_log.call_args.kwargs["event"] == "session_stale"


def test_unknown_user_gets_fresh_session():
    loaded = asyncio.run(InMemorySessionStore().load("nobody"))
    assert loaded.userId == "nobody"
    assert loaded.currentStep == "INIT"


def test_save_failure_is_logged_and_swallowed():
    store = InMemorySessionStore()
    store._write = AsyncMock(side_effect=ConnectionError("redis down"))

    with patch("loanflow.store.session_repo.log") as mock_log:
        ok = asyncio.run(store.save("u1", Session(userId="u1")))

    assert ok is False
    assert mock_log.call_args.kwargs["event"] == "session_save_failed"
    assert mock_log.call_args.kwargs["errorType"] == "ConnectionError"


def test_deserialize_ignores_unknown_fields():
    data = serialize_session(_saved_session())
    data["legacyField"] = 1
    data["referenceLedger"][KYC]["obsolete"] = True
    data["userInfo"]["nickname"] = "x"

    s = deserialize_session(data)
    assert s.referenceLedger[KYC].status == "PENDING"
    assert s.userInfo.pan == "ABCDE1234F"


def test_redis_store_writes_with_expiry():
    redis = MagicMock()
    redis.set = AsyncMock()
    redis.get = AsyncMock(return_value=None)
    clock = Clock()
    store = RedisSessionStore(redis, max_age_sec=DAY, clock=clock)

    asyncio.run(store.save("u1", Session(userId="u1")))

    key, raw = redis.set.call_args.args
    assert key == "session:u1"
    assert redis.set.call_args.kwargs == {"ex": DAY}
    record = json.loads(raw)
    assert record["savedAt"] == clock.t
    assert record["session"]["userId"] == "u1"


def test_memory_store_evicts_expired_sessions():
    clock = Clock()
    store = InMemorySessionStore(max_age_sec=DAY, clock=clock)

    async def scenario():
        await store.save("u1", Session(userId="u1"))
        await store.save("u2", Session(userId="u2"))
        clock.t += DAY
        await store.save("u3", Session(userId="u3"))
        assert len(store) == 1

        clock.t += DAY
        loaded = await store.load("u3")
        assert loaded.currentStep == "INIT"
        assert len(store) == 0

    asyncio.run(scenario())
