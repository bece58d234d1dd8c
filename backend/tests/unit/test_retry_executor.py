import asyncio

import httpx
import pytest

from pipeline_fakes import FakeClock, fast_config
from reviewflow.core.errors import AppError, ErrorCategory, MalformedPayloadError
from reviewflow.core.retry import RetryExecutor


def _flaky(failures: list[BaseException], value="ok"):
    calls = {"n": 0}

    async def op():
        calls["n"] += 1
        if failures:
            raise failures.pop(0)
        return value

    return op, calls


@pytest.mark.asyncio
async def test_success_on_first_call_does_not_sleep():
    clock = FakeClock()
    executor = RetryExecutor(sleep=clock.sleep)
    op, calls = _flaky([])

    outcome = await executor.execute(op, operation_name="dispatch")

    assert outcome.ok
    assert outcome.value == "ok"
    assert outcome.attempts == 1
    assert calls["n"] == 1
    assert clock.sleeps == []


@pytest.mark.asyncio
async def test_transient_failures_are_retried_with_exponential_backoff():
    clock = FakeClock()
    executor = RetryExecutor(max_attempts=3, base_delay=0.5, max_delay=8.0, sleep=clock.sleep)
    op, calls = _flaky([httpx.ReadError("reset"), httpx.ConnectError("refused")])

    outcome = await executor.execute(op, operation_name="dispatch")

    assert outcome.ok
    assert outcome.attempts == 3
    assert calls["n"] == 3
    assert clock.sleeps == [0.5, 1.0]
    assert outcome.delays == [0.5, 1.0]


@pytest.mark.asyncio
@pytest.mark.parametrize("max_attempts", [1, 2, 3, 5])
async def test_never_exceeds_attempt_ceiling(max_attempts):
    clock = FakeClock()
    executor = RetryExecutor(max_attempts=max_attempts, base_delay=0.5, max_delay=2.0, sleep=clock.sleep)
    op, calls = _flaky([httpx.ReadError("reset") for _ in range(10)])

    outcome = await executor.execute(op, operation_name="poll")

    assert not outcome.ok
    assert calls["n"] == max_attempts
    assert outcome.attempts == max_attempts
    assert outcome.error.category == ErrorCategory.NETWORK
    # 第一次调用前不等待，之后每次失败等待一次
    assert len(clock.sleeps) == max_attempts - 1
    assert all(a <= b for a, b in zip(clock.sleeps, clock.sleeps[1:]))
    assert all(d <= 2.0 for d in clock.sleeps)


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "failure",
    [
        MalformedPayloadError("missing similarity_score"),
        PermissionError("forbidden"),
        RuntimeError("bug"),
    ],
)
async def test_non_retryable_errors_return_after_one_attempt(failure):
    clock = FakeClock()
    executor = RetryExecutor(max_attempts=3, sleep=clock.sleep)
    op, calls = _flaky([failure, failure, failure])

    outcome = await executor.execute(op, operation_name="poll")

    assert calls["n"] == 1
    assert outcome.attempts == 1
    assert not outcome.error.retryable
    assert clock.sleeps == []


@pytest.mark.asyncio
async def test_per_call_overrides_cannot_raise_the_ceiling():
    clock = FakeClock()
    executor = RetryExecutor(max_attempts=2, base_delay=0.1, sleep=clock.sleep)
    op, calls = _flaky([httpx.ReadError("x") for _ in range(10)])

    outcome = await executor.execute(op, operation_name="poll", max_attempts=10, base_delay=0.2)

    assert calls["n"] == 2
    assert clock.sleeps == [0.2]
    assert outcome.attempts == 2


@pytest.mark.asyncio
async def test_custom_classifier_is_used():
    clock = FakeClock()
    executor = RetryExecutor(max_attempts=3, sleep=clock.sleep)
    op, calls = _flaky([RuntimeError("flaky sdk"), RuntimeError("flaky sdk")])

    def classify(exc, operation):
        return AppError(ErrorCategory.EXTERNAL_SERVICE, str(exc), operation=operation)

    outcome = await executor.execute(op, operation_name="sdk", classify=classify)

    assert outcome.ok
    assert calls["n"] == 3


@pytest.mark.asyncio
async def test_unwrap_raises_terminal_error():
    executor = RetryExecutor(max_attempts=1, sleep=FakeClock().sleep)
    op, _ = _flaky([PermissionError("denied")])

    outcome = await executor.execute(op, operation_name="op")

    with pytest.raises(AppError) as exc:
        outcome.unwrap()
    assert exc.value.category == ErrorCategory.PERMISSION


def test_delay_schedule_is_capped():
    executor = RetryExecutor(base_delay=1.0, max_delay=5.0)
    assert [executor.delay_for(n) for n in range(0, 6)] == [0.0, 1.0, 2.0, 4.0, 5.0, 5.0]


def test_from_config_uses_pipeline_policy():
    executor = RetryExecutor.from_config(fast_config(max_attempts=4, base_delay=0.25, max_delay=1.0))
    assert executor.max_attempts == 4
    assert executor.base_delay == 0.25
    assert executor.max_delay == 1.0


@pytest.mark.asyncio
async def test_cancellation_is_not_classified_or_retried():
    clock = FakeClock()
    executor = RetryExecutor(max_attempts=3, sleep=clock.sleep)
    op, calls = _flaky([asyncio.CancelledError()])

    with pytest.raises(asyncio.CancelledError):
        await executor.execute(op, operation_name="poll")
    assert calls["n"] == 1
    assert clock.sleeps == []


@pytest.mark.asyncio
async def test_delays_follow_capped_schedule_and_error_is_last_classified():
    clock = FakeClock()
    executor = RetryExecutor(max_attempts=5, base_delay=1.0, max_delay=3.0, sleep=clock.sleep)
    op, _ = _flaky([httpx.ReadError("a"), httpx.ReadError("b"), httpx.ReadError("c"), httpx.ReadTimeout("d"), httpx.ReadTimeout("e")])

    outcome = await executor.execute(op, operation_name="poll")

    assert outcome.delays == [1.0, 2.0, 3.0, 3.0]
    assert outcome.delays == [executor.delay_for(n) for n in range(1, 5)]
    assert outcome.error.category == ErrorCategory.TIMEOUT
    assert outcome.value is None
