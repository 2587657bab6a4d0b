"""
Turn pipeline.

rate limit -> per-user lock -> load session -> expiry / sanitation / frustration
-> guided step engine or intent-resolved action -> persist -> respond.

This is the only place where an error becomes a customer-facing message and
``messageStatus.status = ERROR``. The session is saved on every path that got
past admission.
"""
import time
from typing import Any, Dict, Optional

from loanflow.core import state_machine as sm
from loanflow.core.actions import tool_catalog
from loanflow.core.dispatcher import ActionRouter
from loanflow.core.rate_limiter import MemoryRateLimitStore, RateLimiter, RedisRateLimitStore
from loanflow.core.retry import RetryExecutor
from loanflow.core.steps import StepEngine
from loanflow.errors import OnboardingError, RateLimitError, user_message, user_message_for
from loanflow.observability.logging import log
from loanflow.settings import settings
from loanflow.store.ledger import ReferenceLedger
from loanflow.store.models import DELIVERED, ERROR, PROCESSING, SENT, MessageStatus, Session
from loanflow.store.session_repo import InMemorySessionStore, RedisSessionStore
from loanflow.utils.lock import RedisSessionLocks, SessionLockTimeout, SessionLocks
from loanflow.utils.time import new_message_id
from loanflow.utils.validators import sanitize_input

GUIDED = "guided"
ASSISTANT = "assistant"

EXPIRED_NOTICE = "Your previous session timed out, so we'll pick up from the beginning. Your progress so far is saved."
HELP_REPLY = (
    "I understand this might be frustrating. You can:\n"
    "1. Send the requested details again and I'll retry this step\n"
    "2. Ask me to explain what this step needs\n"
    "3. Contact our support team for help"
)


def _response(message_id: str, reply: str, session: Optional[Session], status: str,
              data: Optional[Dict[str, Any]] = None, error: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
    return {
        "messageId": message_id,
        "reply": reply,
        "currentStep": session.currentStep if session else None,
        "status": status,
        "data": data or {},
        "error": error,
    }


def _state_context(session: Session) -> str:
    ledger = ReferenceLedger(session)
    lines = [f"currentStep: {session.currentStep}", f"opportunityId: {session.opportunityId or '-'}"]
    for step, entry in ledger.entries.items():
        lines.append(f"{step}: {entry.status or 'PENDING'}")
    return "\n".join(lines)


def describe_envelope(action: str, envelope: Dict[str, Any]) -> str:
    if not envelope.get("success"):
        error = envelope.get("error") or {}
        return user_message_for(error.get("code") or "ExecutionError", envelope.get("message") or "")
    data = envelope.get("data") or {}
    parts = [f"Done: {action.replace('_', ' ')}."]
    if data.get("status"):
        parts.append(f"Status: {data['status']}.")
    if data.get("webUrl"):
        parts.append(f"Please continue here: {data['webUrl']}")
    if data.get("loanAccountId"):
        parts.append(f"Your loan account id is {data['loanAccountId']}.")
    return " ".join(parts)


class Orchestrator:
    def __init__(
        self,
        store,
        rate_limiter: RateLimiter,
        locks: SessionLocks,
        engine: StepEngine,
        router: ActionRouter,
        resolver=None,
        mode: Optional[str] = None,
        clock=time.time,
    ):
        self.store = store
        self.rate_limiter = rate_limiter
        self.locks = locks
        self.engine = engine
        self.router = router
        self.resolver = resolver
        self.mode = (mode or settings.INTERACTION_MODE).lower()
        self._clock = clock

    async def handle_message(
        self,
        user_id: str,
        text: str,
        mode: Optional[str] = None,
        opportunity_id: Optional[str] = None,
    ) -> Dict[str, Any]:
        message_id = new_message_id()
        try:
            await self.rate_limiter.check_and_record(user_id)
        except RateLimitError as e:
            return _response(message_id, e.message, None, ERROR, error=e.to_dict())

        # Turns for one user never interleave; other users are not blocked
        try:
            async with self.locks.hold(user_id):
                return await self._turn(user_id, text, (mode or self.mode).lower(), opportunity_id, message_id)
        except SessionLockTimeout as e:
            log(event="turn_failed", userId=user_id, messageId=message_id, errorType=type(e).__name__, error=str(e))
            return _response(message_id, user_message(e), None, ERROR, error={"code": "ExecutionError", "message": str(e)})

    async def _turn(self, user_id: str, text: str, mode: str, opportunity_id: Optional[str], message_id: str) -> Dict[str, Any]:
        start = time.time()
        try:
            session = await self.store.load(user_id)
        except Exception as e:
            log(event="turn_failed", userId=user_id, messageId=message_id, stage="session_load",
                errorType=type(e).__name__, error=str(e)[:300])
            return _response(message_id, user_message(e), None, ERROR, error={"code": "ExecutionError", "message": type(e).__name__})
        now = self._clock()
        session.messageStatus = MessageStatus(lastMessageId=message_id, status=PROCESSING, timestampMs=int(now * 1000))

        reply, data, error = "", {}, None
        try:
            if opportunity_id and not session.opportunityId:
                session.opportunityId = opportunity_id

            notices = []
            if self._expired(session, now):
                log(event="session_expired", userId=user_id, fromStep=session.currentStep,
                    idleSec=int(now - session.lastInteractionTime))
                session.currentStep = sm.INIT
                notices.append(EXPIRED_NOTICE)

            clean = sanitize_input(text)
            repeated = self._is_repeat(session, clean)
            session.append_turn("user", clean, int(now * 1000))

            if self._frustrated(session, repeated):
                session.failedAttempts = {}
                session.messageStatus.status = DELIVERED
                reply = HELP_REPLY
            elif mode == ASSISTANT:
                reply, data, error = await self._assist(session)
            else:
                reply, data, error = await self._guide(session, clean)

            if notices:
                reply = "\n\n".join(notices + [reply])
        except Exception as e:
            session.messageStatus.status = ERROR
            error = e.to_dict() if isinstance(e, OnboardingError) else {"code": "ExecutionError", "message": type(e).__name__}
            reply = user_message(e)
            log(event="turn_failed", userId=user_id, step=session.currentStep, messageId=message_id,
                errorType=type(e).__name__, error=str(e)[:300],
                references=ReferenceLedger(session).references(),
                failedAttempts=session.failedAttempts.get(session.currentStep, 0))

        session.append_turn("assistant", reply, int(self._clock() * 1000))
        if session.lastInteractionTime is not None and not self._expired(session, now):
            session.sessionDuration += max(0.0, now - session.lastInteractionTime)
        session.lastInteractionTime = now
        await self.store.save(user_id, session)

        log(
            "turn_processed",
            userId=user_id,
            messageId=message_id,
            mode=mode,
            currentStep=session.currentStep,
            status=session.messageStatus.status,
            functionName=session.messageStatus.functionName,
            errorType=(error or {}).get("code"),
            total_latency_ms=int((time.time() - start) * 1000),
        )
        return _response(message_id, reply, session, session.messageStatus.status, data, error)

    def _expired(self, session: Session, now: float) -> bool:
        last = session.lastInteractionTime
        return last is not None and (now - last) > settings.SESSION_INACTIVITY_SEC

    @staticmethod
    def _is_repeat(session: Session, clean: str) -> bool:
        window = max(2, settings.FRUSTRATION_REPEAT_WINDOW)
        previous = session.user_turns()[-(window - 1):]
        if len(previous) < window - 1 or not clean:
            return False
        return all(p.strip().lower() == clean.lower() for p in previous)

    @staticmethod
    def _frustrated(session: Session, repeated: bool) -> bool:
        fails = session.failedAttempts.get(session.currentStep, 0)
        return repeated or fails >= settings.FRUSTRATION_FAILED_ATTEMPTS

    async def _guide(self, session: Session, clean: str):
        result = await self.engine.advance(session, clean)
        if result.actions:
            session.messageStatus.functionName = result.actions[-1]
        session.messageStatus.status = DELIVERED if result.ok else ERROR
        return result.message, result.data, result.error

    async def _assist(self, session: Session):
        if self.resolver is None:
            raise RuntimeError("Assistant mode needs an intent resolver")
        history = session.conversationHistory[-settings.MAX_HISTORY_FOR_LLM:]
        intent = await self.resolver.resolve(history, tool_catalog(), _state_context(session))
        if not intent.action:
            session.messageStatus.status = DELIVERED
            return intent.text or "", {}, None

        session.messageStatus.status = SENT
        session.messageStatus.functionName = intent.action
        envelope = await self.router.dispatch(intent.action, intent.params, session)
        session.messageStatus.status = DELIVERED if envelope.get("success") else ERROR
        return describe_envelope(intent.action, envelope), envelope.get("data") or {}, envelope.get("error")


def build_orchestrator(provider=None, resolver=None) -> Orchestrator:
    """Wire the default stores, limiter and clients from settings."""
    from loanflow.llm.intent_client import IntentClient
    from loanflow.providers.client import ProviderClient

    redis = None
    if "redis" in (settings.SESSION_BACKEND, settings.RATE_LIMIT_BACKEND):
        from loanflow.store.redis_conn import get_redis
        redis = get_redis()

    if settings.SESSION_BACKEND == "redis":
        store, locks = RedisSessionStore(redis), RedisSessionLocks(redis)
    else:
        store, locks = InMemorySessionStore(), SessionLocks()

    limiter_store = RedisRateLimitStore(redis) if settings.RATE_LIMIT_BACKEND == "redis" else MemoryRateLimitStore()
    router = ActionRouter(provider or ProviderClient(), RetryExecutor())
    if resolver is None and settings.LLM_BASE_URL:
        resolver = IntentClient()
    return Orchestrator(
        store=store,
        rate_limiter=RateLimiter(limiter_store),
        locks=locks,
        engine=StepEngine(router),
        router=router,
        resolver=resolver,
    )
