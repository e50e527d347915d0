"""Tests for the retry policy and compensating transactions"""

import pytest

from hospital_booking.errors import ConflictError
from hospital_booking.shared.retry import RetryExhausted, RetryPolicy
from hospital_booking.shared.transaction import CompensatingTransaction


class Transient(Exception):
    pass


class Fatal(Exception):
    pass


class TestRetryPolicy:
    async def test_returns_first_success(self, sleeps):
        policy = RetryPolicy(max_attempts=3, sleep=sleeps)
        calls = []

        async def operation():
            calls.append(1)
            return "ok"

        assert await policy.run(operation) == "ok"
        assert len(calls) == 1
        assert sleeps.delays == []

    async def test_retries_with_exponential_backoff(self, sleeps):
        policy = RetryPolicy(max_attempts=3, base_delay=1.0, sleep=sleeps)
        attempts = []

        async def operation():
            attempts.append(1)
            if len(attempts) < 3:
                raise Transient("flaky")
            return "ok"

        assert await policy.run(operation) == "ok"
        assert len(attempts) == 3
        assert sleeps.delays == [2.0, 4.0]

    async def test_exhaustion_wraps_last_error(self, sleeps):
        policy = RetryPolicy(max_attempts=3, sleep=sleeps)
        attempts = []

        async def operation():
            attempts.append(1)
            raise Transient(f"failure {len(attempts)}")

        with pytest.raises(RetryExhausted) as exc_info:
            await policy.run(operation)

        assert len(attempts) == 3
        assert exc_info.value.attempts == 3
        assert str(exc_info.value.last_error) == "failure 3"
        # No sleep after the final attempt
        assert sleeps.delays == [2.0, 4.0]

    async def test_non_retryable_error_propagates_immediately(self, sleeps):
        policy = RetryPolicy(
            max_attempts=5, is_retryable=lambda e: isinstance(e, Transient), sleep=sleeps
        )
        attempts = []

        async def operation():
            attempts.append(1)
            raise Fatal("no")

        with pytest.raises(Fatal):
            await policy.run(operation)
        assert len(attempts) == 1
        assert sleeps.delays == []

    def test_requires_at_least_one_attempt(self):
        with pytest.raises(ValueError):
            RetryPolicy(max_attempts=0)


class TestCompensatingTransaction:
    async def test_compensates_completed_steps_in_reverse(self):
        undone = []
        txn = CompensatingTransaction("booking")

        await txn.step("first", lambda: 1, lambda result: undone.append(("first", result)))

        async def second():
            return 2

        async def undo_second(result):
            undone.append(("second", result))

        await txn.step("second", second, undo_second)

        def explode():
            raise ConflictError("taken")

        with pytest.raises(ConflictError) as exc_info:
            await txn.step("third", explode, lambda _: undone.append(("third", None)))

        assert undone == [("second", 2), ("first", 1)]
        assert exc_info.value.step == "third"

    async def test_keeps_existing_step_name(self):
        txn = CompensatingTransaction("booking")

        def explode():
            raise ConflictError("taken", step="inner")

        with pytest.raises(ConflictError) as exc_info:
            await txn.step("outer", explode)
        assert exc_info.value.step == "inner"

    async def test_compensation_failure_is_recorded_and_others_still_run(self):
        undone = []
        txn = CompensatingTransaction("booking")

        def broken_undo(_):
            raise RuntimeError("refund failed")

        await txn.step("reserve", lambda: "slot", lambda _: undone.append("release"))
        await txn.step("charge", lambda: "txn", broken_undo)

        def explode():
            raise RuntimeError("db down")

        with pytest.raises(RuntimeError, match="db down"):
            await txn.step("persist", explode)

        assert undone == ["release"]
        assert [name for name, _ in txn.compensation_failures] == ["charge"]
