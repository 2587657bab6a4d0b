"""
Retry/Backoff executor for provider calls.

One policy per operation class. A call site picks exactly one class; calls are
never wrapped twice.
"""
import asyncio
import random
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, Optional

import httpx

from loanflow.errors import TransientProviderError
from loanflow.observability.logging import log

VERIFICATION = "verification"
UPLOAD = "upload"
API = "api"


@dataclass(frozen=True)
class RetryPolicy:
    max_attempts: int
    backoff_factor: float
    initial_delay: float
    jitter: float

    def delay_for(self, attempt: int, rng: Callable[[float, float], float] = random.uniform) -> float:
        """Exponential backoff with jitter for the wait after ``attempt`` failed."""
        delay = self.initial_delay * (self.backoff_factor ** (attempt - 1))
        spread = delay * self.jitter
        return max(0.0, delay + rng(-spread, spread))


POLICIES: Dict[str, RetryPolicy] = {
    VERIFICATION: RetryPolicy(max_attempts=3, backoff_factor=1.5, initial_delay=1.0, jitter=0.2),
    UPLOAD: RetryPolicy(max_attempts=2, backoff_factor=2.0, initial_delay=2.0, jitter=0.1),
    API: RetryPolicy(max_attempts=4, backoff_factor=1.2, initial_delay=0.5, jitter=0.15),
}

RETRYABLE_EXCEPTIONS = (
    TransientProviderError,
    httpx.TimeoutException,
    httpx.NetworkError,
    asyncio.TimeoutError,
    ConnectionError,
)


def is_retryable(exc: BaseException) -> bool:
    return isinstance(exc, RETRYABLE_EXCEPTIONS)


class RetryExecutor:
    def __init__(
        self,
        policies: Optional[Dict[str, RetryPolicy]] = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
        rng: Callable[[float, float], float] = random.uniform,
    ):
        self.policies = dict(policies or POLICIES)
        self._sleep = sleep
        self._rng = rng

    def policy(self, operation_class: str) -> RetryPolicy:
        try:
            return self.policies[operation_class]
        except KeyError:
            raise ValueError(f"Unknown operation class: {operation_class}") from None

    async def execute(self, operation: Callable[[], Awaitable[Any]], operation_class: str = API, **context) -> Any:
        """
        Run ``operation`` up to the policy's attempt ceiling.

        Non-retryable errors propagate on the attempt that raised them. After the
        last attempt the final error is rethrown as-is.
        """
        policy = self.policy(operation_class)
        attempt = 1
        while True:
            try:
                return await operation()
            except Exception as e:
                e.attempts = attempt
                if not is_retryable(e):
                    raise
                if attempt >= policy.max_attempts:
                    log(event="retry_exhausted", operationClass=operation_class, attempt=attempt,
                        errorType=type(e).__name__, error=str(e)[:300], **context)
                    raise
                delay = policy.delay_for(attempt, self._rng)
                log(event="retry_scheduled", operationClass=operation_class, attempt=attempt,
                    delaySec=round(delay, 3), errorType=type(e).__name__, **context)
                await self._sleep(delay)
                attempt += 1
