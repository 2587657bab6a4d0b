import asyncio
import uuid
from contextlib import asynccontextmanager
from typing import Dict

from loanflow.settings import settings

_RELEASE_SCRIPT = """
if redis.call("get", KEYS[1]) == ARGV[1] then
    return redis.call("del", KEYS[1])
else
    return 0
end
"""


class SessionLockTimeout(RuntimeError):
    pass


class SessionLocks:
    """
    Single-writer lock per session id inside one process.
    Turns for one user queue behind each other; different users never contend.
    """

    def __init__(self):
        self._locks: Dict[str, asyncio.Lock] = {}
        self._holders: Dict[str, int] = {}

    @asynccontextmanager
    async def hold(self, session_id: str):
        lock = self._locks.setdefault(session_id, asyncio.Lock())
        self._holders[session_id] = self._holders.get(session_id, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._holders[session_id] -= 1
            if self._holders[session_id] <= 0:
                self._holders.pop(session_id, None)
                self._locks.pop(session_id, None)

    def active(self) -> int:
        return len(self._locks)


class RedisSessionLocks(SessionLocks):
    """
    Distributed variant: the in-process lock orders local turns, then a
    Redis SET NX PX key guards against other instances.
    """

    def __init__(self, redis, ttl_ms: int | None = None, spins: int = 50, spin_sleep: float = 0.1):
        super().__init__()
        self._redis = redis
        self._ttl_ms = int(ttl_ms or settings.SESSION_LOCK_TTL_MS)
        self._spins = spins
        self._spin_sleep = spin_sleep

    @asynccontextmanager
    async def hold(self, session_id: str):
        async with super().hold(session_id):
            key = f"lock:session:{session_id}"
            token = uuid.uuid4().hex
            acquired = await self._redis.set(key, token, px=self._ttl_ms, nx=True)
            if not acquired:
                for _ in range(self._spins):
                    await asyncio.sleep(self._spin_sleep)
                    if await self._redis.set(key, token, px=self._ttl_ms, nx=True):
                        acquired = True
                        break
            if not acquired:
                raise SessionLockTimeout(f"Could not acquire lock for session {session_id}")
            try:
                yield
            finally:
                # Release only if we still own it
                await self._redis.eval(_RELEASE_SCRIPT, 1, key, token)
