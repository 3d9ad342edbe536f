"""Retry policy for transient provider failures, built on tenacity.

Wait before attempt n+1 is base_delay * multiplier**(n-1), capped at
max_delay, plus uniform jitter in [0, jitter]. A provider `retry_after` hint
raises the wait when it is longer.
"""
import asyncio
import logging
from dataclasses import dataclass
from typing import Awaitable, Callable, TypeVar

from tenacity import (
    AsyncRetrying,
    RetryCallState,
    before_sleep_log,
    retry_if_exception,
    stop_after_attempt,
    wait_exponential,
    wait_random,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")


def is_retryable(exc: BaseException) -> bool:
    return bool(getattr(exc, "retryable", False))


@dataclass(frozen=True)
class RetryPolicy:
    max_attempts: int = 5
    base_delay: float = 0.5
    multiplier: float = 2.0
    max_delay: float = 30.0
    jitter: float = 0.25

    @classmethod
    def from_settings(cls, settings) -> "RetryPolicy":
        return cls(
            max_attempts=settings.RETRY_MAX_ATTEMPTS,
            base_delay=settings.RETRY_BASE_DELAY,
            multiplier=settings.RETRY_MULTIPLIER,
            max_delay=settings.RETRY_MAX_DELAY,
            jitter=settings.RETRY_JITTER,
        )

    def wait_strategy(self) -> Callable[[RetryCallState], float]:
        backoff = wait_exponential(
            multiplier=self.base_delay, exp_base=self.multiplier, max=self.max_delay
        ) + wait_random(0, self.jitter)

        def wait(retry_state: RetryCallState) -> float:
            delay = backoff(retry_state)
            outcome = retry_state.outcome
            exc = outcome.exception() if outcome is not None and outcome.failed else None
            hint = getattr(exc, "retry_after", None)
            if hint is not None:
                delay = max(delay, float(hint))
            return delay

        return wait


async def run_with_retry(
    operation: Callable[[], Awaitable[T]],
    policy: RetryPolicy,
    is_retryable: Callable[[BaseException], bool] = is_retryable,
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
) -> T:
    """Await `operation()` and retry it according to `policy`.

    Args:
        operation: Zero-argument coroutine factory; called once per attempt.
        policy: Attempt budget and backoff shape.
        is_retryable: Predicate deciding which exceptions are retried.
        sleep: Awaitable sleep used between attempts (injectable for tests).

    Returns:
        The operation's result.

    Raises:
        The first non-retryable exception, or the last exception once
        max_attempts is exhausted.
    """
    retrying = AsyncRetrying(
        stop=stop_after_attempt(max(1, policy.max_attempts)),
        wait=policy.wait_strategy(),
        retry=retry_if_exception(is_retryable),
        sleep=sleep,
        reraise=True,
        before_sleep=before_sleep_log(logger, logging.WARNING),
    )
    return await retrying(operation)
