import pytest

from loanflow.core.dispatcher import ActionRouter
from loanflow.core.retry import RetryExecutor
from loanflow.providers.client import ProviderResult
from loanflow.store.ledger import ReferenceLedger
from loanflow.store.models import Session


async def no_sleep(_delay):
    return None


class FakeProvider:
    """
    Scripted provider. ``responses[name]`` may be a ProviderResult, an exception,
    a callable taking the payload, or a list of those consumed in order.
    Unscripted operations answer PENDING with a generated reference.
    """

    def __init__(self, responses=None):
        self.responses = dict(responses or {})
        self.calls = []

    def names(self):
        return [name for name, _ in self.calls]

    async def call(self, name, params):
        self.calls.append((name, params))
        r = self.responses.get(name)
        if isinstance(r, list):
            r = r.pop(0) if r else None
        if isinstance(r, BaseException):
            raise r
        if callable(r) and not isinstance(r, ProviderResult):
            r = r(params)
            if isinstance(r, BaseException):
                raise r
        if r is None:
            r = ProviderResult(referenceId=f"{name}-ref-{len(self.calls)}", status="PENDING")
        return r


def approve(session, *steps, status="APPROVED"):
    ledger = ReferenceLedger(session)
    for step in steps:
        ledger.record_initiation(step, f"{step}-ref")
        ledger.record_status(step, status)


@pytest.fixture
def provider():
    return FakeProvider()


@pytest.fixture
def router(provider):
    return ActionRouter(provider, RetryExecutor(sleep=no_sleep, rng=lambda a, b: 0.0))


@pytest.fixture
def session():
    return Session(userId="u1", opportunityId="OPP-1")




@pytest.fixture
def make_provider():
    return FakeProvider


@pytest.fixture
def approved():
    return approve


@pytest.fixture
def quick_executor():
    return RetryExecutor(sleep=no_sleep, rng=lambda a, b: 0.0)
