import asyncio
from contextlib import asynccontextmanager

import pytest
from unittest.mock import AsyncMock, MagicMock, patch

from loanflow.core import state_machine as sm
from loanflow.core.actions import CATALOG
from loanflow.core.dispatcher import ActionRouter
from loanflow.core.orchestrator import EXPIRED_NOTICE, HELP_REPLY, Orchestrator
from loanflow.core.rate_limiter import RateLimiter
from loanflow.core.steps import StepEngine, StepResult
from loanflow.llm.intent_client import Intent
from loanflow.providers.client import ProviderResult
from loanflow.store.ledger import ReferenceLedger
from loanflow.store.models import KYC, Session
from loanflow.store.session_repo import InMemorySessionStore
from loanflow.utils.lock import SessionLocks, SessionLockTimeout

CONTACT = "mobile: 9876543210, email: a@b.com"


class Clock:
    def __init__(self, t=1_000_000.0):
        self.t = t

    def __call__(self):
        return self.t


class SlowEngine:
    """Tracks how many turns run at once."""

    def __init__(self, delay=0.02):
        self.delay = delay
        self.inside = 0
        self.peak = 0

    async def advance(self, session, text):
        self.inside += 1
        self.peak = max(self.peak, self.inside)
        await asyncio.sleep(self.delay)
        self.inside -= 1
        return StepResult(step=session.currentStep, message=f"ack {text}")


@pytest.fixture
def clock():
    return Clock()


@pytest.fixture
def store(clock):
    return InMemorySessionStore(clock=clock)


@pytest.fixture
def build(provider, quick_executor, store, clock):
    def _build(engine=None, resolver=None, limiter=None, locks=None, mode="guided"):
        router = ActionRouter(provider, quick_executor)
        return Orchestrator(
            store=store,
            rate_limiter=limiter or RateLimiter(per_minute=1000, per_hour=10000, clock=clock),
            locks=locks or SessionLocks(),
            engine=engine or StepEngine(router),
            router=router,
            resolver=resolver,
            mode=mode,
            clock=clock,
        )
    return _build


def test_guided_turn_is_delivered_and_saved(build, store, provider):
    out = asyncio.run(build().handle_message("u1", CONTACT))

    assert out["status"] == "DELIVERED"
    assert out["currentStep"] == sm.VERIFY_CONTACT
    assert out["error"] is None
    assert out["messageId"].startswith("msg_")

    saved = asyncio.run(store.load("u1"))
    assert saved.currentStep == sm.VERIFY_CONTACT
    assert [t["role"] for t in saved.conversationHistory] == ["user", "assistant"]
    assert saved.messageStatus.status == "DELIVERED"
    assert saved.messageStatus.functionName == "create_email_verification_log"
    assert saved.messageStatus.lastMessageId == out["messageId"]


def test_unexpected_error_becomes_error_reply_and_session_is_saved(build, store):
    engine = MagicMock()
    engine.advance = AsyncMock(side_effect=RuntimeError("boom"))

    with patch("loanflow.core.orchestrator.log") as mock_log:
        out = asyncio.run(build(engine=engine).handle_message("u1", "hello"))

    assert out["status"] == "ERROR"
    assert out["error"] == {"code": "ExecutionError", "message": "RuntimeError"}
    assert "Something went wrong" in out["reply"]
    events = [c.kwargs.get("event") or c.args[0] for c in mock_log.call_args_list]
    assert "turn_failed" in events
    assert events[-1] == "turn_processed"

    saved = asyncio.run(store.load("u1"))
    assert saved.messageStatus.status == "ERROR"
    assert saved.conversationHistory[-1]["content"] == out["reply"]


def test_failed_step_reports_error_status(build, provider, store):
    session = Session(userId="u1", opportunityId="OPP-1", currentStep=sm.VERIFY_KYC)
    ReferenceLedger(session).record_initiation(KYC, "K-1")
    asyncio.run(store.save("u1", session))
    provider.responses["get_kyc_status"] = RuntimeError("socket closed")

    out = asyncio.run(build().handle_message("u1", "done"))

    assert out["status"] == "ERROR"
    assert out["error"]["code"] == "ExecutionError"
    assert out["currentStep"] == sm.VERIFY_KYC
    assert asyncio.run(store.load("u1")).failedAttempts == {sm.VERIFY_KYC: 1}


def test_turns_for_one_user_are_serialized(build, store):
    engine = SlowEngine()
    orch = build(engine=engine)

    async def scenario():
        return await asyncio.gather(*(orch.handle_message("u1", f"message {i}") for i in range(5)))

    outs = asyncio.run(scenario())

    assert engine.peak == 1
    assert all(o["status"] == "DELIVERED" for o in outs)
    saved = asyncio.run(store.load("u1"))
    assert len(saved.conversationHistory) == 10


def test_different_users_run_in_parallel(build):
    engine = SlowEngine()
    orch = build(engine=engine)

    async def scenario():
        await asyncio.gather(orch.handle_message("u1", "a"), orch.handle_message("u2", "b"))

    asyncio.run(scenario())
    assert engine.peak == 2


def test_rate_limited_message_does_not_touch_session(build, store, clock):
    orch = build(limiter=RateLimiter(per_minute=1, per_hour=100, minute_block_sec=300, clock=clock))

    asyncio.run(orch.handle_message("u1", "hi"))
    out = asyncio.run(orch.handle_message("u1", "hi again"))

    assert out["status"] == "ERROR"
    assert out["currentStep"] is None
    assert out["error"]["code"] == "RateLimitError"
    assert out["error"]["retryAfterSec"] == 300
    assert len(asyncio.run(store.load("u1")).conversationHistory) == 2


def test_inactive_session_restarts_from_init_and_keeps_ledger(build, store, clock):
    session = Session(userId="u1", opportunityId="OPP-1", currentStep=sm.VERIFY_KYC,
                      lastInteractionTime=clock.t - 3600)
    ReferenceLedger(session).record_initiation(KYC, "K-1")
    asyncio.run(store.save("u1", session))

    out = asyncio.run(build().handle_message("u1", "hello"))

    assert out["reply"].startswith(EXPIRED_NOTICE)
    assert out["currentStep"] == sm.COLLECT_CONTACT
    saved = asyncio.run(store.load("u1"))
    assert saved.referenceLedger[KYC].referenceId == "K-1"
    assert saved.sessionDuration == 0.0


def test_active_session_accumulates_duration(build, store, clock):
    orch = build(engine=SlowEngine(delay=0))
    asyncio.run(orch.handle_message("u1", "one"))
    clock.t += 120
    asyncio.run(orch.handle_message("u1", "two"))
    assert asyncio.run(store.load("u1")).sessionDuration == 120


def test_repeated_failures_offer_help(build, store, provider):
    session = Session(userId="u1", opportunityId="OPP-1", currentStep=sm.COLLECT_PAN,
                      failedAttempts={sm.COLLECT_PAN: 3})
    asyncio.run(store.save("u1", session))

    out = asyncio.run(build().handle_message("u1", "ABCDE1234F"))

    assert out["reply"] == HELP_REPLY
    assert out["status"] == "DELIVERED"
    assert out["currentStep"] == sm.COLLECT_PAN
    assert provider.calls == []
    assert asyncio.run(store.load("u1")).failedAttempts == {}


def test_same_message_three_times_offers_help(build):
    orch = build()
    replies = [asyncio.run(orch.handle_message("u1", "hmm"))["reply"] for _ in range(3)]
    assert replies[0] != HELP_REPLY
    assert replies[1] != HELP_REPLY
    assert replies[2] == HELP_REPLY


def test_lock_timeout_is_reported(build):
    class StuckLocks:
        @asynccontextmanager
        async def hold(self, session_id):
            raise SessionLockTimeout(f"Could not acquire lock for session {session_id}")
            yield

    out = asyncio.run(build(locks=StuckLocks()).handle_message("u1", "hi"))
    assert out["status"] == "ERROR"
    assert out["currentStep"] is None


def test_assistant_mode_dispatches_resolved_action(build, provider, store):
    resolver = MagicMock()
    resolver.resolve = AsyncMock(return_value=Intent(action="initiate_kyc", params={}))
    provider.responses["initiate_kyc"] = ProviderResult(referenceId="K-1", status="PENDING",
                                                        webUrl="https://kyc.example/K-1")

    out = asyncio.run(build(resolver=resolver).handle_message("u1", "start my kyc", mode="assistant",
                                                             opportunity_id="OPP-7"))

    assert out["status"] == "DELIVERED"
    assert "https://kyc.example/K-1" in out["reply"]
    history, tools, context = resolver.resolve.call_args.args
    assert history[-1]["content"] == "start my kyc"
    assert len(tools) == len(CATALOG)
    assert "currentStep: INIT" in context
    saved = asyncio.run(store.load("u1"))
    assert saved.opportunityId == "OPP-7"
    assert saved.messageStatus.functionName == "initiate_kyc"
    assert saved.referenceLedger[KYC].referenceId == "K-1"


def test_assistant_mode_text_reply(build):
    resolver = MagicMock()
    resolver.resolve = AsyncMock(return_value=Intent(text="Could you share your PAN?"))
    out = asyncio.run(build(resolver=resolver, mode="assistant").handle_message("u1", "hi"))
    assert out["reply"] == "Could you share your PAN?"
    assert out["status"] == "DELIVERED"


def test_assistant_mode_local_error_is_reported(build, provider):
    resolver = MagicMock()
    resolver.resolve = AsyncMock(return_value=Intent(action="create_loan_account", params={}))

    out = asyncio.run(build(resolver=resolver, mode="assistant").handle_message("u1", "give me the loan"))

    assert out["status"] == "ERROR"
    assert out["error"]["code"] == "PreconditionError"
    assert "mobile" in out["error"]["missing"]
    assert provider.calls == []


def test_assistant_mode_without_resolver_fails_cleanly(build):
    out = asyncio.run(build(mode="assistant").handle_message("u1", "hi"))
    assert out["status"] == "ERROR"
    assert out["error"]["code"] == "ExecutionError"


def test_save_failure_still_answers(build, store):
    store._write = AsyncMock(side_effect=ConnectionError("redis down"))
    out = asyncio.run(build().handle_message("u1", CONTACT))
    assert out["status"] == "DELIVERED"
    assert out["currentStep"] == sm.VERIFY_CONTACT
