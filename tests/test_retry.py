"""
Tests for Compono retry, polling and join primitives.
"""
import asyncio

import pytest

from compono.concurrency import gather_all
from compono.errors import LockError, LockTimeoutError, LoopTimeoutError
from compono.retry import (
    NO_RETRY,
    RETRY_WITH_BACKOFF,
    ConstantBackoff,
    ExponentialBackoff,
    NoBackoff,
    RetryPolicy,
    poll_until,
    with_retry,
)


# =============================================================================
# Backoff Strategy Tests
# =============================================================================


class TestNoBackoff:
    """Tests for NoBackoff strategy."""

    def test_always_returns_zero(self):
        backoff = NoBackoff()
        assert backoff.get_delay(1) == 0.0
        assert backoff.get_delay(100) == 0.0


class TestConstantBackoff:
    """Tests for ConstantBackoff strategy."""

    def test_returns_constant_delay(self):
        backoff = ConstantBackoff(delay=2.5)
        assert backoff.get_delay(1) == 2.5
        assert backoff.get_delay(5) == 2.5

    def test_default_delay(self):
        assert ConstantBackoff().get_delay(1) == 1.0


class TestExponentialBackoff:
    """Tests for ExponentialBackoff strategy."""

    def test_increases_exponentially(self):
        backoff = ExponentialBackoff(base=1.0, multiplier=2.0, jitter=False)
        assert [backoff.get_delay(n) for n in (1, 2, 3, 4)] == [1.0, 2.0, 4.0, 8.0]

    def test_respects_max_delay(self):
        backoff = ExponentialBackoff(base=1.0, multiplier=10.0, max_delay=5.0, jitter=False)
        assert backoff.get_delay(2) == 5.0
        assert backoff.get_delay(3) == 5.0

    def test_jitter_stays_in_range(self):
        backoff = ExponentialBackoff(base=10.0, multiplier=1.0, jitter=True, jitter_factor=0.25)
        delays = [backoff.get_delay(1) for _ in range(50)]
        assert all(7.5 <= d <= 12.5 for d in delays)


# =============================================================================
# Retry Policy Tests
# =============================================================================


class TestRetryPolicy:
    """Tests for RetryPolicy."""

    def test_default_is_no_retry(self):
        policy = RetryPolicy()
        assert policy.max_attempts == 1
        assert not policy.should_retry(1, ValueError())

    def test_retries_listed_errors_only(self):
        policy = RetryPolicy(max_attempts=3, retry_on=(ConnectionError,))
        assert policy.should_retry(1, ConnectionError())
        assert not policy.should_retry(1, ValueError())
        assert not policy.should_retry(3, ConnectionError())

    def test_presets(self):
        assert NO_RETRY.max_attempts == 1
        assert RETRY_WITH_BACKOFF.max_attempts == 3


class TestWithRetry:
    """Tests for with_retry."""

    @pytest.mark.asyncio
    async def test_success_first_try(self):
        async def operation():
            return "ok"

        result = await with_retry(operation, NO_RETRY)

        assert result.success
        assert result.result == "ok"
        assert result.attempts == 1
        assert result.final_error is None

    @pytest.mark.asyncio
    async def test_retries_until_success(self):
        calls = 0

        async def operation():
            nonlocal calls
            calls += 1
            if calls < 3:
                raise ConnectionError("flaky")
            return calls

        policy = RetryPolicy(max_attempts=5, backoff=ConstantBackoff(delay=0.001))
        result = await with_retry(operation, policy)

        assert result.success
        assert result.result == 3
        assert len(result.errors) == 2

    @pytest.mark.asyncio
    async def test_gives_up_after_max_attempts(self):
        async def operation():
            raise ConnectionError("down")

        policy = RetryPolicy(max_attempts=2, backoff=NoBackoff())
        result = await with_retry(operation, policy, operation_name="fetch")

        assert not result.success
        assert result.attempts == 2
        assert isinstance(result.final_error, ConnectionError)

    @pytest.mark.asyncio
    async def test_non_retryable_error_stops_immediately(self):
        async def operation():
            raise ValueError("bad")

        policy = RetryPolicy(max_attempts=5, retry_on=(ConnectionError,))
        result = await with_retry(operation, policy)

        assert not result.success
        assert result.attempts == 1


# =============================================================================
# poll_until Tests
# =============================================================================


class TestPollUntil:
    """Tests for bounded polling."""

    @pytest.mark.asyncio
    async def test_first_attempt_is_immediate(self):
        async def probe():
            return "done"

        assert await poll_until(probe, interval=10) == "done"

    @pytest.mark.asyncio
    async def test_polls_until_value(self):
        attempts = 0

        async def probe():
            nonlocal attempts
            attempts += 1
            return attempts if attempts == 3 else None

        assert await poll_until(probe, interval=0.001, count=5) == 3

    @pytest.mark.asyncio
    async def test_falsy_values_are_results(self):
        async def probe():
            return 0

        assert await poll_until(probe, interval=0.001, count=1) == 0

    @pytest.mark.asyncio
    async def test_count_exhausted(self):
        async def probe():
            return None

        with pytest.raises(LoopTimeoutError, match="exceeded maximum number of retries"):
            await poll_until(probe, interval=0.001, count=3, operation_name="wait")

    @pytest.mark.asyncio
    async def test_timeout_expired(self):
        async def probe():
            return None

        with pytest.raises(LoopTimeoutError, match="expired timeout"):
            await poll_until(probe, interval=0.01, timeout=0.03)

    @pytest.mark.asyncio
    async def test_retry_on_counts_as_failed_attempt(self):
        attempts = 0

        async def probe():
            nonlocal attempts
            attempts += 1
            if attempts < 2:
                raise LockError("held")
            return "locked"

        result = await poll_until(probe, interval=0.001, count=3, retry_on=(LockError,))
        assert result == "locked"

    @pytest.mark.asyncio
    async def test_other_errors_propagate(self):
        async def probe():
            raise ValueError("broken")

        with pytest.raises(ValueError):
            await poll_until(probe, interval=0.001, count=3, retry_on=(LockError,))

    @pytest.mark.asyncio
    async def test_custom_error_class(self):
        async def probe():
            raise LockError("held")

        with pytest.raises(LockTimeoutError):
            await poll_until(
                probe,
                interval=0.001,
                count=2,
                retry_on=(LockError,),
                error_class=LockTimeoutError,
            )


# =============================================================================
# gather_all Tests
# =============================================================================


class TestGatherAll:
    """Tests for the structured join."""

    @pytest.mark.asyncio
    async def test_results_in_order(self):
        async def value(v, delay):
            await asyncio.sleep(delay)
            return v

        assert await gather_all([value(1, 0.02), value(2, 0.0), value(3, 0.01)]) == [1, 2, 3]

    @pytest.mark.asyncio
    async def test_accepts_generator(self):
        async def double(v):
            return v * 2

        assert await gather_all(double(v) for v in range(3)) == [0, 2, 4]

    @pytest.mark.asyncio
    async def test_waits_for_all_then_raises_first_failure(self):
        finished = []

        async def fail(message, delay):
            await asyncio.sleep(delay)
            raise RuntimeError(message)

        async def slow():
            await asyncio.sleep(0.03)
            finished.append("slow")

        with pytest.raises(RuntimeError, match="first"):
            await gather_all([fail("first", 0.02), fail("second", 0.0), slow()])

        assert finished == ["slow"]

    @pytest.mark.asyncio
    async def test_empty(self):
        assert await gather_all([]) == []
