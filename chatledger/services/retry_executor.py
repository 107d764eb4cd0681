"""
Retry Executor - bounded retry with exponential backoff.

Wraps any fallible coroutine. An error is retried only when its type name,
message or status code contains one of the policy's retryable signatures.
The delay before attempt n+1 is ``min(initial_delay * multiplier ** (n - 1),
max_delay)``. There is no jitter, so concurrent failures retry in lock-step.
"""

import asyncio
from dataclasses import dataclass, field, replace
from typing import Any, Awaitable, Callable, FrozenSet, List, Optional, Sequence, TypeVar

from tenacity import (
    AsyncRetrying,
    RetryCallState,
    retry_if_exception,
    stop_after_attempt,
    wait_exponential,
)

from chatledger.logging_config import get_logger

logger = get_logger(__name__)

T = TypeVar("T")

DEFAULT_RETRYABLE_SIGNATURES: FrozenSet[str] = frozenset({
    "econnreset",
    "connection reset",
    "etimedout",
    "timeout",
    "timed out",
    "enotfound",
    "name resolution",
    "network",
    "fetch failed",
    "500",
    "502",
    "503",
    "504",
})


@dataclass(frozen=True)
class RetryPolicy:
    """Retry configuration. Delays are in seconds."""

    max_attempts: int = 3
    initial_delay: float = 1.0
    multiplier: float = 2.0
    max_delay: float = 10.0
    retryable_signatures: FrozenSet[str] = field(default_factory=lambda: DEFAULT_RETRYABLE_SIGNATURES)

    def delay_for(self, attempt: int) -> float:
        """Delay slept after the given failed attempt (1-based)."""
        return min(self.initial_delay * self.multiplier ** (attempt - 1), self.max_delay)

    def with_signatures(self, *extra: str) -> "RetryPolicy":
        """Copy of this policy with additional retryable signatures."""
        return replace(self, retryable_signatures=self.retryable_signatures | frozenset(extra))


def _status_code(error: BaseException) -> Optional[Any]:
    for attr in ("status_code", "status", "code"):
        value = getattr(error, attr, None)
        if value is not None:
            return value
    response = getattr(error, "response", None)
    return getattr(response, "status_code", None)


def is_retryable_error(error: BaseException, signatures: FrozenSet[str]) -> bool:
    """Check whether an error matches any retryable signature."""
    haystack = f"{type(error).__name__} {error}".lower()
    code = _status_code(error)
    code_text = str(code) if code is not None else ""
    for signature in signatures:
        if signature.lower() in haystack:
            return True
        if code_text and signature in code_text:
            return True
    return False


class RetryExecutor:
    """Runs operations under a retry policy."""

    def __init__(
        self,
        policy: Optional[RetryPolicy] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        metrics: Optional[Any] = None,
    ):
        """
        Initialize retry executor.

        Args:
            policy: Default policy for ``run`` calls without an explicit one
            sleep: Coroutine used to wait between attempts
            metrics: Optional PipelineMetrics for retry counters
        """
        self.policy = policy or RetryPolicy()
        self._sleep = sleep
        self._metrics = metrics

    def is_retryable(self, error: BaseException, policy: Optional[RetryPolicy] = None) -> bool:
        return is_retryable_error(error, (policy or self.policy).retryable_signatures)

    def _log_retry(self, operation_name: str, policy: RetryPolicy) -> Callable[[RetryCallState], None]:
        def before_sleep(retry_state: RetryCallState) -> None:
            error = retry_state.outcome.exception() if retry_state.outcome else None
            delay = retry_state.next_action.sleep if retry_state.next_action else 0
            logger.warning(
                f"Attempt {retry_state.attempt_number}/{policy.max_attempts} failed, retrying",
                operation=operation_name,
                delay_seconds=delay,
                error=str(error),
            )
            if self._metrics is not None:
                self._metrics.record_retry(operation_name)

        return before_sleep

    async def run(
        self,
        operation: Callable[[], Awaitable[T]],
        policy: Optional[RetryPolicy] = None,
        operation_name: str = "operation",
    ) -> T:
        """Run ``operation`` until it succeeds, fails permanently or runs out of attempts.

        The last error propagates unchanged.
        """
        policy = policy or self.policy
        retrying = AsyncRetrying(
            sleep=self._sleep,
            stop=stop_after_attempt(max(1, policy.max_attempts)),
            wait=wait_exponential(
                multiplier=policy.initial_delay,
                exp_base=policy.multiplier,
                max=policy.max_delay,
            ),
            retry=retry_if_exception(lambda error: is_retryable_error(error, policy.retryable_signatures)),
            before_sleep=self._log_retry(operation_name, policy),
            reraise=True,
        )

        async for attempt in retrying:
            with attempt:
                result = await operation()
        return result

    async def run_parallel(
        self,
        operations: Sequence[Callable[[], Awaitable[T]]],
        policy: Optional[RetryPolicy] = None,
    ) -> List[T]:
        """Run independent operations concurrently, each under its own retry policy.

        Returns the successful results in input order. Raises the first error
        only when every operation failed.
        """
        if not operations:
            return []

        outcomes = await asyncio.gather(
            *(self.run(op, policy, operation_name=f"parallel[{index}]") for index, op in enumerate(operations)),
            return_exceptions=True,
        )

        successes: List[T] = []
        errors: List[BaseException] = []
        for outcome in outcomes:
            if isinstance(outcome, BaseException):
                errors.append(outcome)
            else:
                successes.append(outcome)

        if len(errors) == len(operations):
            raise errors[0]

        if errors:
            logger.warning(
                f"{len(errors)} of {len(operations)} operations failed",
                errors=[str(error) for error in errors],
            )

        return successes
