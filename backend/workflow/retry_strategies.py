"""Retry strategies for step handlers and notification delivery.

Workflow definitions declare retries as a fixed attempt count with a
fixed delay ({"attempts": 3, "delay": 5000}), so the only policies are
FIXED and NONE. The delay never grows between attempts.

Usage:
    strategy = RetryStrategy.from_policy(step.error_handling.retry)
    result = await execute_with_retry(call_handler, strategy, on_retry=log_retry)
"""

import asyncio
from dataclasses import dataclass
from enum import Enum
from typing import Awaitable, Callable, Optional

from workflow.definition import RetryPolicy

Sleep = Callable[[float], Awaitable[None]]


class BackoffPolicy(str, Enum):
    """Available retry policies."""
    FIXED = "fixed"
    NONE = "none"


@dataclass
class RetryStrategy:
    """Fixed-delay retry strategy.

    max_retries counts retries only: a strategy with max_retries=3
    allows 4 invocations in total.
    """
    policy: BackoffPolicy
    max_retries: int = 0
    delay: float = 0.0

    @classmethod
    def none(cls) -> 'RetryStrategy':
        """No retries: fail immediately."""
        return cls(policy=BackoffPolicy.NONE, max_retries=0)

    @classmethod
    def fixed(cls, max_retries: int = 3, delay: float = 5.0) -> 'RetryStrategy':
        """Fixed delay (seconds) between retries."""
        return cls(policy=BackoffPolicy.FIXED, max_retries=max_retries, delay=delay)

    @classmethod
    def from_policy(cls, retry: Optional[RetryPolicy]) -> 'RetryStrategy':
        """Create a strategy from a step's errorHandling.retry block."""
        if retry is None or retry.attempts <= 0:
            return cls.none()
        return cls.fixed(max_retries=retry.attempts, delay=retry.delay_seconds)

    def compute_delay(self, attempt: int) -> float:
        """Delay before retry number `attempt` (1-based)."""
        if self.policy == BackoffPolicy.NONE:
            return 0.0
        return max(0.0, self.delay)

    def should_retry(self, attempt: int) -> bool:
        """True if retry number `attempt` (1-based) is still allowed."""
        if self.policy == BackoffPolicy.NONE:
            return False
        return attempt <= self.max_retries


async def execute_with_retry(
    func: Callable[[], Awaitable],
    strategy: RetryStrategy,
    on_retry: Optional[Callable] = None,
    sleep: Sleep = asyncio.sleep,
    retry_on: tuple = (Exception,),
):
    """Call `func` until it succeeds or the strategy is exhausted.

    Args:
        func: Async callable taking no arguments.
        strategy: RetryStrategy instance.
        on_retry: Optional callback(attempt, error, delay) called before each retry.
        sleep: Awaitable sleep used between attempts.
        retry_on: Exception types that are retried; others propagate at once.

    Returns:
        The result of func().

    Raises:
        The last exception if all retries are exhausted.
    """
    retry = 0
    while True:
        try:
            return await func()
        except retry_on as e:
            retry += 1
            if not strategy.should_retry(retry):
                raise

            delay = strategy.compute_delay(retry)
            if on_retry:
                outcome = on_retry(retry, e, delay)
                if asyncio.iscoroutine(outcome):
                    await outcome
            await sleep(delay)
