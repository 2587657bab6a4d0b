"""
Per-user sliding-window admission control.

State per user is a list of request timestamps (seconds) plus an optional
block. Stores are injected so several instances can share one Redis.
"""
import asyncio
import json
import time
from contextlib import asynccontextmanager
from dataclasses import asdict, dataclass, field
from typing import Callable, Dict, List, Optional

from loanflow.errors import RateLimitError
from loanflow.observability.logging import log
from loanflow.settings import settings

MINUTE = 60
HOUR = 3600


@dataclass
class RateLimitRecord:
    requests: List[float] = field(default_factory=list)
    blocked: bool = False
    blockExpiry: Optional[float] = None


class MemoryRateLimitStore:
    """
    Process-local records. A user whose newest request is more than an hour
    old (and who is not blocked) is swept at most once a minute; per-user
    locks are dropped when no transaction holds them.
    """

    def __init__(self, clock: Callable[[], float] = time.time):
        self._records: Dict[str, RateLimitRecord] = {}
        self._locks: Dict[str, asyncio.Lock] = {}
        self._holders: Dict[str, int] = {}
        self._clock = clock
        self._last_sweep = 0.0

    def __len__(self) -> int:
        return len(self._records)

    def active(self) -> int:
        return len(self._locks)

    @asynccontextmanager
    async def transaction(self, user_id: str):
        self._sweep()
        lock = self._locks.setdefault(user_id, asyncio.Lock())
        self._holders[user_id] = self._holders.get(user_id, 0) + 1
        try:
            async with lock:
                record = self._records.setdefault(user_id, RateLimitRecord())
                yield record
        finally:
            self._holders[user_id] -= 1
            if self._holders[user_id] <= 0:
                self._holders.pop(user_id, None)
                self._locks.pop(user_id, None)

    def _sweep(self) -> None:
        now = self._clock()
        if now - self._last_sweep < MINUTE:
            return
        self._last_sweep = now
        idle = [uid for uid, rec in self._records.items() if uid not in self._holders and _idle(rec, now)]
        for uid in idle:
            del self._records[uid]


def _idle(record: RateLimitRecord, now: float) -> bool:
    if record.blocked and record.blockExpiry is not None and now < record.blockExpiry:
        return False
    return not record.requests or now - max(record.requests) >= HOUR


class RedisRateLimitStore:
    """JSON record per user, guarded by a short redis lock for the read-modify-write."""

    def __init__(self, redis, prefix: str = "ratelimit:", lock_timeout: float = 5.0):
        self._redis = redis
        self._prefix = prefix
        self._lock_timeout = lock_timeout

    @asynccontextmanager
    async def transaction(self, user_id: str):
        key = f"{self._prefix}{user_id}"
        async with self._redis.lock(f"{key}:lock", timeout=self._lock_timeout):
            raw = await self._redis.get(key)
            data = json.loads(raw) if raw else {}
            record = RateLimitRecord(
                requests=[float(t) for t in data.get("requests") or []],
                blocked=bool(data.get("blocked")),
                blockExpiry=data.get("blockExpiry"),
            )
            try:
                yield record
            finally:
                # Blocks are raised from inside the transaction and must still persist
                await self._redis.set(key, json.dumps(asdict(record)), ex=HOUR * 2)


class RateLimiter:
    def __init__(
        self,
        store=None,
        per_minute: Optional[int] = None,
        per_hour: Optional[int] = None,
        minute_block_sec: Optional[int] = None,
        hour_block_sec: Optional[int] = None,
        clock: Callable[[], float] = time.time,
    ):
        self.store = store or MemoryRateLimitStore(clock=clock)
        self.per_minute = int(per_minute or settings.RATE_LIMIT_PER_MINUTE)
        self.per_hour = int(per_hour or settings.RATE_LIMIT_PER_HOUR)
        self.minute_block_sec = int(minute_block_sec or settings.RATE_LIMIT_MINUTE_BLOCK_SEC)
        self.hour_block_sec = int(hour_block_sec or settings.RATE_LIMIT_HOUR_BLOCK_SEC)
        self._clock = clock

    async def check_and_record(self, user_id: str) -> None:
        now = self._clock()
        async with self.store.transaction(user_id) as record:
            record.requests = [t for t in record.requests if now - t < HOUR]

            if record.blocked:
                if record.blockExpiry is not None and now < record.blockExpiry:
                    raise self._denied(user_id, record.blockExpiry - now, "blocked")
                record.blocked = False
                record.blockExpiry = None
                record.requests = []

            last_minute = sum(1 for t in record.requests if now - t < MINUTE)
            if last_minute >= self.per_minute:
                self._block(record, now, self.minute_block_sec)
                raise self._denied(user_id, self.minute_block_sec, "per_minute")

            if len(record.requests) >= self.per_hour:
                self._block(record, now, self.hour_block_sec)
                raise self._denied(user_id, self.hour_block_sec, "per_hour")

            record.requests.append(now)

    @staticmethod
    def _block(record: RateLimitRecord, now: float, seconds: int) -> None:
        record.blocked = True
        record.blockExpiry = now + seconds

    @staticmethod
    def _denied(user_id: str, retry_after: float, reason: str) -> RateLimitError:
        log(event="rate_limited", userId=user_id, reason=reason, retryAfterSec=int(retry_after))
        minutes = max(1, int(round(retry_after / 60)))
        return RateLimitError(
            f"Too many requests. Please wait about {minutes} minute(s) before trying again.",
            retry_after=retry_after,
        )
