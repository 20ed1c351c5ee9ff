"""
Retry policy and the async wrapper that applies it.

The policy is a pure decision function over (error, attempt, elapsed) and
knows nothing about the request being retried. ``call_with_retry`` runs a
blocking client call on a worker thread under tenacity, with the policy
supplying the retry, stop and wait decisions.
"""

import asyncio
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import Any, TypeVar

from tenacity import AsyncRetrying, RetryCallState

from lxc_common.config import RetryConfig
from lxc_common.errors import ConsoleError

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass(frozen=True)
class RetryAfter:
    """Retry the call after ``delay`` seconds."""

    delay: float


@dataclass(frozen=True)
class GiveUp:
    """Stop retrying and surface the error."""

    reason: str


class RetryPolicy:
    """
    Exponential backoff for retryable errors.

    Transport and 5xx errors are retried with delays of
    ``base_delay * multiplier ** (attempt - 1)`` capped at ``max_delay``,
    until ``max_attempts`` calls have been made. Everything else gives up
    immediately.
    """

    def __init__(self, config: RetryConfig | None = None):
        self.config = config or RetryConfig()

    def decide(
        self, error: BaseException, attempt: int, elapsed: float
    ) -> RetryAfter | GiveUp:
        """
        Decide what to do after a failed attempt.

        Args:
            error: The exception raised by the attempt
            attempt: Number of attempts made so far (1 after the first failure)
            elapsed: Seconds since the first attempt started

        Returns:
            RetryAfter with the delay to wait, or GiveUp
        """
        if not getattr(error, "retryable", False):
            return GiveUp(f"{getattr(error, 'kind', type(error).__name__)} is not retryable")

        if attempt >= self.config.max_attempts:
            return GiveUp(f"gave up after {attempt} attempts")

        delay = min(
            self.config.base_delay * self.config.multiplier ** (attempt - 1),
            self.config.max_delay,
        )

        if (
            self.config.max_elapsed is not None
            and elapsed + delay > self.config.max_elapsed
        ):
            return GiveUp(f"gave up after {elapsed:.1f}s")

        return RetryAfter(delay)


class _PolicyAdapter:
    """Expose a RetryPolicy as tenacity's retry, stop and wait strategies."""

    def __init__(self, policy: RetryPolicy):
        self.policy = policy

    def decide(self, retry_state: RetryCallState) -> RetryAfter | GiveUp:
        return self.policy.decide(
            retry_state.outcome.exception(),
            retry_state.attempt_number,
            retry_state.seconds_since_start or 0.0,
        )

    def retry(self, retry_state: RetryCallState) -> bool:
        if not retry_state.outcome.failed:
            return False
        return isinstance(self.decide(retry_state), RetryAfter)

    def stop(self, retry_state: RetryCallState) -> bool:
        return isinstance(self.decide(retry_state), GiveUp)

    def wait(self, retry_state: RetryCallState) -> float:
        decision = self.decide(retry_state)
        return decision.delay if isinstance(decision, RetryAfter) else 0.0


async def call_with_retry(
    func: Callable[..., T],
    *args: Any,
    policy: RetryPolicy,
    on_retry: Callable[[int, ConsoleError, float], None] | None = None,
    sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
) -> T:
    """
    Run a blocking call on a worker thread, retrying per the policy.

    Args:
        func: Blocking callable (an ``LxdApiClient`` method)
        *args: Arguments for ``func``
        policy: Retry policy to consult after each failure
        on_retry: Called with (retry_number, error, delay) before each backoff
        sleep: Awaitable sleep, replaceable in tests

    Returns:
        The call's result

    Raises:
        ConsoleError: The last error once the policy gives up
    """
    name = getattr(func, "__name__", func)
    adapter = _PolicyAdapter(policy)

    def before_sleep(retry_state: RetryCallState) -> None:
        error = retry_state.outcome.exception()
        delay = retry_state.next_action.sleep
        logger.warning(
            f"{name} failed ({error.kind}: {error}), "
            f"retry {retry_state.attempt_number} in {delay:.2f}s"
        )
        if on_retry is not None:
            on_retry(retry_state.attempt_number, error, delay)

    retrying = AsyncRetrying(
        retry=adapter.retry,
        stop=adapter.stop,
        wait=adapter.wait,
        before_sleep=before_sleep,
        sleep=sleep,
        reraise=True,
    )
    return await retrying(asyncio.to_thread, func, *args)
