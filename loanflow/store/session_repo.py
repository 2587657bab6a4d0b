import json
import time
import inspect
from dataclasses import asdict
from typing import Any, Callable, Dict, Optional, Tuple

from loanflow.observability.logging import log
from loanflow.settings import settings
from loanflow.store.models import LedgerEntry, MessageStatus, Session, UserInfo

PREFIX = "session:"


def _key(user_id: str) -> str:
    return f"{PREFIX}{user_id}"


def _filter_kwargs(cls, data: dict) -> dict:
    """
    Drop unknown fields so cls(**kwargs) never explodes on records written by
    an older or newer build.
    """
    sig = inspect.signature(cls)
    allowed = set(sig.parameters.keys())
    return {k: v for k, v in data.items() if k in allowed}


def serialize_session(session: Session) -> dict:
    return asdict(session)


def deserialize_session(data: dict) -> Session:
    data = dict(data or {})
    data["userInfo"] = UserInfo(**_filter_kwargs(UserInfo, data.get("userInfo") or {}))
    data["messageStatus"] = MessageStatus(**_filter_kwargs(MessageStatus, data.get("messageStatus") or {}))
    ledger = {}
    for step, raw in (data.get("referenceLedger") or {}).items():
        if isinstance(raw, dict):
            ledger[step] = LedgerEntry(**_filter_kwargs(LedgerEntry, raw))
    data["referenceLedger"] = ledger
    return Session(**_filter_kwargs(Session, data))


class SessionStore:
    """
    Persists sessions keyed by user id.

    ``load`` returns the saved session verbatim when it was saved less than
    ``max_age_sec`` ago and a fresh one otherwise. ``save`` never raises: the
    current turn already holds the state in memory, so a failed write is
    logged and reported as False.
    """

    def __init__(self, max_age_sec: Optional[int] = None, clock: Callable[[], float] = time.time):
        self.max_age_sec = int(max_age_sec if max_age_sec is not None else settings.SESSION_RESTORE_MAX_AGE_SEC)
        self._clock = clock

    async def _read(self, user_id: str) -> Optional[Dict[str, Any]]:
        raise NotImplementedError

    async def _write(self, user_id: str, record: Dict[str, Any]) -> None:
        raise NotImplementedError

    async def load(self, user_id: str) -> Session:
        record = await self._read(user_id)
        if not record:
            return Session(userId=user_id)

        saved_at = float(record.get("savedAt") or 0)
        age = self._clock() - saved_at
        if age >= self.max_age_sec:
            log(event="session_stale", userId=user_id, ageSec=int(age))
            return Session(userId=user_id)

        session = deserialize_session(record.get("session") or {})
        session.userId = session.userId or user_id
        log(event="session_restored", userId=user_id, ageSec=int(age), currentStep=session.currentStep)
        return session

    async def save(self, user_id: str, session: Session) -> bool:
        try:
            record = {"savedAt": self._clock(), "session": serialize_session(session)}
            await self._write(user_id, record)
            return True
        except Exception as e:
            log(event="session_save_failed", userId=user_id, errorType=type(e).__name__, error=str(e)[:300])
            return False


class InMemorySessionStore(SessionStore):
    """Process-local store. Records past ``max_age_sec`` are dropped when read and swept on every write."""

    def __init__(self, max_age_sec: Optional[int] = None, clock: Callable[[], float] = time.time):
        super().__init__(max_age_sec=max_age_sec, clock=clock)
        self._records: Dict[str, Tuple[float, str]] = {}

    def __len__(self) -> int:
        return len(self._records)

    async def _read(self, user_id: str) -> Optional[Dict[str, Any]]:
        item = self._records.get(user_id)
        if item is None:
            return None
        saved_at, raw = item
        if self._clock() - saved_at >= self.max_age_sec:
            # Returned once so load() can report it stale
            del self._records[user_id]
        return json.loads(raw)

    async def _write(self, user_id: str, record: Dict[str, Any]) -> None:
        now = self._clock()
        stale = [uid for uid, (saved_at, _) in self._records.items() if now - saved_at >= self.max_age_sec]
        for uid in stale:
            del self._records[uid]
        # Stored as JSON so callers never share mutable objects with the store
        self._records[user_id] = (float(record["savedAt"]), json.dumps(record))


class RedisSessionStore(SessionStore):
    def __init__(self, redis, max_age_sec: Optional[int] = None, clock: Callable[[], float] = time.time):
        super().__init__(max_age_sec=max_age_sec, clock=clock)
        self._redis = redis

    async def _read(self, user_id: str) -> Optional[Dict[str, Any]]:
        raw = await self._redis.get(_key(user_id))
        return json.loads(raw) if raw else None

    async def _write(self, user_id: str, record: Dict[str, Any]) -> None:
        await self._redis.set(_key(user_id), json.dumps(record), ex=self.max_age_sec)
