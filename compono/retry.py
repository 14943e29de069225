"""
Retry and polling primitives for Compono.

Two shapes of "try again" appear in the engine:

- with_retry: run an operation up to N times with a backoff strategy,
  used for transient I/O such as fetching remote model imports.
- poll_until: repeat a probe at a fixed interval until it yields a value,
  bounded by an optional attempt count and an optional deadline. Lock
  acquisition and waiting on domain transactions are built on it.

Design Philosophy:
- Composable backoff strategies
- Bounded loops only: every poll has a count or a deadline
- Expiry surfaces as LoopTimeoutError, never as a silent None
"""

from __future__ import annotations

import asyncio
import logging
import random
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, TypeVar

from .errors import LoopTimeoutError

if TYPE_CHECKING:
    from collections.abc import Awaitable, Callable

logger = logging.getLogger(__name__)

T = TypeVar("T")


# =============================================================================
# Backoff Strategies
# =============================================================================


class BackoffStrategy(ABC):
    """Abstract base for backoff delay calculation."""

    @abstractmethod
    def get_delay(self, attempt: int) -> float:
        """
        Calculate delay before next attempt.

        Args:
            attempt: Current attempt number (1-indexed)

        Returns:
            Delay in seconds before next attempt
        """
        ...


@dataclass
class NoBackoff(BackoffStrategy):
    """No delay between retries."""

    def get_delay(self, attempt: int) -> float:
        return 0.0


@dataclass
class ConstantBackoff(BackoffStrategy):
    """
    Fixed delay between retries.

    Example:
        backoff = ConstantBackoff(delay=5.0)
        # Always waits 5 seconds between attempts
    """

    delay: float = 1.0

    def get_delay(self, attempt: int) -> float:
        return self.delay


@dataclass
class ExponentialBackoff(BackoffStrategy):
    """
    Exponentially increasing delay between retries.

    delay = base * (multiplier ^ (attempt - 1)), capped at max_delay,
    with optional +/- jitter.
    """

    base: float = 1.0
    multiplier: float = 2.0
    max_delay: float = 60.0
    jitter: bool = True
    jitter_factor: float = 0.25

    def get_delay(self, attempt: int) -> float:
        delay = min(self.base * (self.multiplier ** (attempt - 1)), self.max_delay)

        if self.jitter:
            jitter_range = delay * self.jitter_factor
            delay = max(0.0, delay + random.uniform(-jitter_range, jitter_range))

        return delay


# =============================================================================
# Retry Policy
# =============================================================================


@dataclass
class RetryPolicy:
    """
    Configures retry behavior for an operation.

    Example:
        policy = RetryPolicy(
            max_attempts=3,
            backoff=ExponentialBackoff(base=1.0),
            retry_on=(httpx.TransportError,),
        )
    """

    max_attempts: int = 1  # 1 = no retry
    backoff: BackoffStrategy = field(default_factory=NoBackoff)
    retry_on: tuple[type[Exception], ...] = (Exception,)

    def should_retry(self, attempt: int, error: Exception) -> bool:
        if attempt >= self.max_attempts:
            return False
        return isinstance(error, self.retry_on)

    def get_delay(self, attempt: int) -> float:
        return self.backoff.get_delay(attempt)


NO_RETRY = RetryPolicy(max_attempts=1)

RETRY_WITH_BACKOFF = RetryPolicy(
    max_attempts=3,
    backoff=ExponentialBackoff(base=1.0, multiplier=2.0, max_delay=10.0),
)


@dataclass
class RetryResult:
    """Result of a retry-wrapped operation."""

    success: bool
    result: Any = None
    attempts: int = 0
    total_delay: float = 0.0
    errors: list[Exception] = field(default_factory=list)

    @property
    def final_error(self) -> Exception | None:
        """Get the last error encountered."""
        return self.errors[-1] if self.errors else None


async def with_retry(
    operation: Callable[[], Awaitable[T]],
    policy: RetryPolicy,
    operation_name: str = "operation",
) -> RetryResult:
    """
    Execute an async operation with retry logic.

    Errors outside policy.retry_on end the loop immediately; the caller
    inspects RetryResult.final_error and decides how to surface it.
    """
    errors: list[Exception] = []
    total_delay = 0.0
    attempt = 0

    while True:
        attempt += 1

        try:
            result = await operation()
            return RetryResult(
                success=True,
                result=result,
                attempts=attempt,
                total_delay=total_delay,
                errors=errors,
            )

        except Exception as e:
            errors.append(e)

            if not policy.should_retry(attempt, e):
                logger.error(f"{operation_name}: Failed after {attempt} attempts, last error: {e}")
                return RetryResult(
                    success=False,
                    attempts=attempt,
                    total_delay=total_delay,
                    errors=errors,
                )

            delay = policy.get_delay(attempt)
            total_delay += delay
            logger.warning(
                f"{operation_name}: Attempt {attempt}/{policy.max_attempts} "
                f"failed with {type(e).__name__}: {e}, retrying in {delay:.2f}s"
            )
            await asyncio.sleep(delay)


# =============================================================================
# Bounded Polling
# =============================================================================


async def poll_until(
    probe: Callable[[], Awaitable[T | None]],
    *,
    interval: float,
    timeout: float | None = None,
    count: int | None = None,
    retry_on: tuple[type[Exception], ...] = (),
    operation_name: str = "loop",
    error_class: type[LoopTimeoutError] = LoopTimeoutError,
) -> T:
    """
    Call probe until it returns something other than None.

    The first attempt runs immediately, later ones every `interval`
    seconds. Exceptions listed in retry_on count as a failed attempt;
    anything else propagates.

    Raises:
        error_class: "exceeded maximum number of retries" when `count`
            attempts failed, "expired timeout" when `timeout` elapsed.

    Example:
        collection = await poll_until(
            lambda: store.search("collections", {"id": cid}, lock=token),
            interval=settings.loop_retry,
            timeout=settings.component_loop_timeout,
            retry_on=(LockError,),
        )
    """
    deadline = time.monotonic() + timeout if timeout is not None else None
    attempt = 0

    while True:
        attempt += 1
        try:
            result = await probe()
        except retry_on as e:
            logger.debug(f"{operation_name}: attempt {attempt} failed: {e}")
            result = None

        if result is not None:
            return result

        if count is not None and attempt >= count:
            raise error_class(f"{operation_name}: exceeded maximum number of retries")

        delay = interval
        if deadline is not None:
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                raise error_class(f"{operation_name}: expired timeout")
            delay = min(delay, remaining)

        await asyncio.sleep(delay)
