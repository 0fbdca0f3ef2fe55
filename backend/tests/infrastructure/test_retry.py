import asyncio
from contextlib import asynccontextmanager
from typing import AsyncIterator

import pytest
from childcare_booking.domain.errors import (
    ConflictRetryExhaustedError,
    InsufficientCapacityError,
    InvariantViolationError,
    StoreUnavailableError,
    TransactionTimeoutError,
)
from childcare_booking.domain.transactions import IsolationLevel, TransactionOptions
from childcare_booking.infrastructure.retry import RetryingTransactionRunner
from childcare_booking.usecases.transactions import read_options, run_guarded
from conftest import FakeClassifier, FakeConflict


class CountingBegin:
    def __init__(self) -> None:
        self.options: list[TransactionOptions] = []
        self.rolled_back = 0

    @asynccontextmanager
    async def __call__(self, options: TransactionOptions) -> AsyncIterator[object]:
        self.options.append(options)
        try:
            yield object()
        except BaseException:
            self.rolled_back += 1
            raise


def _runner(begin: CountingBegin, sleeps: list[float], **defaults: int) -> RetryingTransactionRunner:
    async def record_sleep(seconds: float) -> None:
        sleeps.append(seconds)

    return RetryingTransactionRunner(
        begin, FakeClassifier(), defaults=TransactionOptions(**defaults), sleep=record_sleep
    )


@pytest.mark.asyncio
async def test_conflict_is_retried_with_exponential_backoff() -> None:
    begin, sleeps = CountingBegin(), []
    runner = _runner(begin, sleeps, max_attempts=4, base_delay_ms=50)
    failures = iter([FakeConflict(), FakeConflict()])

    async def work(uow: object) -> str:
        exc = next(failures, None)
        if exc is not None:
            raise exc
        return "done"

    assert await runner.run(work) == "done"
    assert sleeps == [0.05, 0.1]
    assert len(begin.options) == 3
    assert begin.rolled_back == 2
    assert all(o.isolation == IsolationLevel.SERIALIZABLE for o in begin.options)


@pytest.mark.asyncio
async def test_conflict_propagates_unchanged_after_last_attempt() -> None:
    begin, sleeps = CountingBegin(), []
    runner = _runner(begin, sleeps, max_attempts=3)

    async def work(uow: object) -> None:
        raise FakeConflict("still conflicting")

    with pytest.raises(FakeConflict, match="still conflicting"):
        await runner.run(work)
    assert len(begin.options) == 3
    assert sleeps == [0.1, 0.2]


@pytest.mark.asyncio
async def test_caller_error_is_not_retried() -> None:
    begin, sleeps = CountingBegin(), []
    runner = _runner(begin, sleeps)

    async def work(uow: object) -> None:
        raise InsufficientCapacityError("full")

    with pytest.raises(InsufficientCapacityError):
        await runner.run(work)
    assert len(begin.options) == 1
    assert sleeps == []


@pytest.mark.asyncio
async def test_slow_attempt_times_out() -> None:
    begin, sleeps = CountingBegin(), []
    runner = _runner(begin, sleeps, timeout_ms=10)

    async def work(uow: object) -> None:
        await asyncio.sleep(1)

    with pytest.raises(TransactionTimeoutError):
        await runner.run(work)
    assert len(begin.options) == 1


@pytest.mark.asyncio
async def test_run_reports_attempts(caplog: pytest.LogCaptureFixture) -> None:
    runner = _runner(CountingBegin(), [])

    async def work(uow: object) -> int:
        return 1

    with caplog.at_level("INFO", logger="childcare_booking.infrastructure.retry"):
        await runner.run(work)
    assert "attempts=1" in caplog.text
    assert "outcome=committed" in caplog.text


@pytest.mark.asyncio
async def test_guarded_run_translates_store_failures() -> None:
    runner = _runner(CountingBegin(), [])

    async def conflicting(uow: object) -> None:
        raise FakeConflict()

    async def disconnected(uow: object) -> None:
        raise ConnectionError("reset by peer")

    async def broken_invariant(uow: object) -> None:
        raise InvariantViolationError("available below zero")

    with pytest.raises(ConflictRetryExhaustedError):
        await run_guarded(runner, conflicting, operation="test")
    with pytest.raises(StoreUnavailableError):
        await run_guarded(runner, disconnected, operation="test")
    with pytest.raises(InvariantViolationError):
        await run_guarded(runner, broken_invariant, operation="test")


@pytest.mark.asyncio
async def test_read_options_do_not_retry() -> None:
    begin, sleeps = CountingBegin(), []
    runner = _runner(begin, sleeps)

    async def conflicting(uow: object) -> None:
        raise FakeConflict()

    with pytest.raises(FakeConflict):
        await runner.run(conflicting, read_options(runner))
    assert [o.isolation for o in begin.options] == [IsolationLevel.READ_COMMITTED]
    assert sleeps == []
