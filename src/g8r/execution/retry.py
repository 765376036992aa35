"""Retry policy with exponential backoff for handler calls.

External systems are eventually consistent: a certificate that was just
requested may not be describable yet, an API may throttle.  Handlers raise
``TransientError`` for those cases and the engine retries the call under a
``RetryPolicy``.  Anything else (validation, permanent, unknown exceptions)
is never retried.

A policy is bounded two ways: a maximum attempt count (first call
included) and a maximum total elapsed time.  Exceeding either ends the
attempt with ``RetryExhausted``.  Backoff waits observe an optional cancel
event, so a cycle being shut down stops at the next retry boundary instead
of mid-call.

Example:
    >>> from g8r.execution.retry import RetryPolicy, RetryContext
    >>>
    >>> policy = RetryPolicy(max_attempts=5, base_delay=2.0, max_delay=30.0)
    >>> [policy.next_delay(n) for n in range(5)]
    [2.0, 4.0, 8.0, 16.0, 30.0]
    >>> ctx = RetryContext(policy, operation="apply S3Bucket/aws")
    >>> result = ctx.run(handler.apply, roster, duty)
"""

from __future__ import annotations

import random
import threading
import time
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, TypeVar

from g8r.core.errors import ExecutionCancelled, G8rError, RetryExhausted
from g8r.core.logging import get_logger

if TYPE_CHECKING:
    from g8r.core.settings import G8rSettings

T = TypeVar("T")

logger = get_logger(__name__)


def is_retryable(error: BaseException) -> bool:
    """Only errors that declare themselves retryable are retried."""
    return isinstance(error, G8rError) and error.retryable


@dataclass
class RetryPolicy:
    """Exponential backoff with a capped delay and optional jitter.

    Delay before retry ``n`` (zero-based) is
    ``min(base_delay * multiplier ** n, max_delay)`` +/- jitter.

    Attributes:
        max_attempts: Total attempts including the first call
        base_delay: Initial delay in seconds
        max_delay: Delay cap in seconds
        multiplier: Exponential multiplier
        jitter: Add randomness to spread concurrent retries
        jitter_range: Jitter as a fraction of the delay
        max_elapsed: Total time bound in seconds (None = unbounded)
    """

    max_attempts: int = 5
    base_delay: float = 2.0
    max_delay: float = 30.0
    multiplier: float = 2.0
    jitter: bool = False
    jitter_range: float = 0.25
    max_elapsed: float | None = 600.0

    def __post_init__(self) -> None:
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be >= 1")

    def next_delay(self, retry: int) -> float:
        delay = min(self.base_delay * (self.multiplier ** retry), self.max_delay)
        if self.jitter and delay > 0:
            jitter_amount = delay * self.jitter_range
            delay = max(0.0, delay + random.uniform(-jitter_amount, jitter_amount))
        return delay

    def should_retry(self, attempts: int, error: BaseException, elapsed: float = 0.0) -> bool:
        """Whether another attempt is allowed after ``attempts`` failed ones."""
        if not is_retryable(error):
            return False
        if attempts >= self.max_attempts:
            return False
        if self.max_elapsed is not None and elapsed >= self.max_elapsed:
            return False
        return True

    @classmethod
    def from_settings(cls, settings: G8rSettings) -> RetryPolicy:
        return cls(
            max_attempts=settings.retry_max_attempts,
            base_delay=settings.retry_base_delay,
            max_delay=settings.retry_max_delay,
            multiplier=settings.retry_multiplier,
            jitter=settings.retry_jitter,
            max_elapsed=settings.retry_max_elapsed,
        )


@dataclass
class RetryContext:
    """State of one retried call.

    Example:
        >>> ctx = RetryContext(RetryPolicy(max_attempts=3), operation="apply")
        >>> ctx.run(lambda: call_api())
        >>> ctx.attempts
        1
    """

    policy: RetryPolicy
    operation: str = "operation"
    cancel_event: threading.Event | None = None
    on_retry: Callable[[int, Exception, float], None] | None = None
    attempt: int = field(default=0, init=False)
    last_error: Exception | None = field(default=None, init=False)
    errors: list[tuple[int, Exception]] = field(default_factory=list, init=False)
    _started: float = field(default_factory=time.monotonic, init=False, repr=False)

    @property
    def attempts(self) -> int:
        return self.attempt

    @property
    def elapsed_seconds(self) -> float:
        return time.monotonic() - self._started

    @property
    def cancelled(self) -> bool:
        return self.cancel_event is not None and self.cancel_event.is_set()

    def run(self, func: Callable[..., T], *args: Any, **kwargs: Any) -> T:
        """Call ``func`` until it succeeds or the policy gives up.

        Raises:
            RetryExhausted: a retryable error persisted past the policy bounds
            ExecutionCancelled: the cancel event was set at a retry boundary
            Exception: any non-retryable error, unchanged
        """
        self._started = time.monotonic()
        while True:
            if self.cancelled:
                raise ExecutionCancelled(
                    f"{self.operation} cancelled after {self.attempt} attempt(s)",
                    cause=self.last_error,
                )

            self.attempt += 1
            try:
                return func(*args, **kwargs)
            except Exception as e:
                self.last_error = e
                self.errors.append((self.attempt, e))

                if not is_retryable(e):
                    raise

                elapsed = self.elapsed_seconds
                delay = self.policy.next_delay(self.attempt - 1)
                over_time = (
                    self.policy.max_elapsed is not None
                    and elapsed + delay > self.policy.max_elapsed
                )
                if not self.policy.should_retry(self.attempt, e, elapsed) or over_time:
                    logger.warning(
                        "retry.exhausted",
                        operation=self.operation,
                        attempts=self.attempt,
                        elapsed=round(elapsed, 3),
                        error=str(e),
                    )
                    raise RetryExhausted(self.operation, self.attempt, e, elapsed) from e

                logger.info(
                    "retry.attempt_failed",
                    operation=self.operation,
                    attempt=self.attempt,
                    max_attempts=self.policy.max_attempts,
                    delay=round(delay, 3),
                    error=str(e),
                )
                if self.on_retry:
                    self.on_retry(self.attempt, e, delay)

                self._wait(delay)

    def _wait(self, delay: float) -> None:
        if self.cancel_event is not None:
            # Returns early if the cycle is cancelled; checked at loop top
            self.cancel_event.wait(delay)
        elif delay > 0:
            time.sleep(delay)
