import asyncio
import time

import pytest

from batchverify.scheduler import BoundedScheduler
from batchverify.schemas import AttemptOutcome, AttemptResult, AttemptStatus, Record


def make_records(count: int) -> list[Record]:
    return [
        Record(index=index, last_name=f"Name{index}", dob="02/23/1961", zip="30331", last4=f"{index:04d}")
        for index in range(1, count + 1)
    ]


def make_scheduler(attempt_fn, **overrides) -> BoundedScheduler:
    options = {
        "concurrency_limit": 2,
        "per_attempt_timeout": 1.0,
        "max_retries": 1,
        "retry_delay": 0,
    }
    options.update(overrides)
    return BoundedScheduler(attempt_fn, **options)


def test_in_flight_attempts_never_exceed_limit() -> None:
    active = 0
    peak = 0

    async def attempt(record: Record) -> AttemptOutcome:
        nonlocal active, peak
        active += 1
        peak = max(peak, active)
        await asyncio.sleep(0.01)
        active -= 1
        return AttemptOutcome(status=AttemptStatus.MATCHED)

    scheduler = make_scheduler(attempt, concurrency_limit=3)
    results = asyncio.run(scheduler.run(make_records(10)))

    assert len(results) == 10
    assert peak == 3


def test_single_slot_admits_records_in_order() -> None:
    started: list[int] = []

    async def attempt(record: Record) -> AttemptOutcome:
        started.append(record.index)
        await asyncio.sleep(0)
        return AttemptOutcome(status=AttemptStatus.MATCHED)

    scheduler = make_scheduler(attempt, concurrency_limit=1)
    asyncio.run(scheduler.run(make_records(5)))

    assert started == [1, 2, 3, 4, 5]


def test_hung_attempt_times_out_and_is_cancelled() -> None:
    cancelled: list[int] = []

    async def attempt(record: Record) -> AttemptOutcome:
        try:
            await asyncio.sleep(30)
        except asyncio.CancelledError:
            cancelled.append(record.index)
            raise
        return AttemptOutcome(status=AttemptStatus.MATCHED)

    scheduler = make_scheduler(attempt, per_attempt_timeout=0.05, max_retries=0)
    started = time.monotonic()
    results = asyncio.run(scheduler.run(make_records(1)))
    elapsed = time.monotonic() - started

    assert elapsed < 2.0
    assert results[0].status == AttemptStatus.FAILED
    assert results[0].error_kind == "timeout"
    assert "timeout" in results[0].message
    assert cancelled == [1]


def test_failed_outcomes_exhaust_retry_budget() -> None:
    calls = 0

    async def attempt(record: Record) -> AttemptOutcome:
        nonlocal calls
        calls += 1
        return AttemptOutcome(
            status=AttemptStatus.FAILED,
            message=f"could not locate all fields (pass {calls})",
            error_kind="fields_not_found",
        )

    scheduler = make_scheduler(attempt, max_retries=2)
    results = asyncio.run(scheduler.run(make_records(1)))

    assert calls == 3
    assert results[0].status == AttemptStatus.FAILED
    assert results[0].passes == 3
    assert results[0].error_kind == "fields_not_found"
    assert results[0].message == "could not locate all fields (pass 3)"


def test_exception_is_retried_then_recovers() -> None:
    calls = 0

    async def attempt(record: Record) -> AttemptOutcome:
        nonlocal calls
        calls += 1
        if calls == 1:
            raise RuntimeError("page crashed")
        return AttemptOutcome(status=AttemptStatus.MISMATCHED)

    scheduler = make_scheduler(attempt, max_retries=1)
    results = asyncio.run(scheduler.run(make_records(1)))

    assert results[0].status == AttemptStatus.MISMATCHED
    assert results[0].passes == 2
    assert results[0].ok is True


def test_every_record_completes_exactly_once() -> None:
    completed: list[AttemptResult] = []

    async def attempt(record: Record) -> AttemptOutcome:
        await asyncio.sleep(0.001 * (7 - record.index % 7))
        if record.index % 3 == 0:
            return AttemptOutcome(status=AttemptStatus.FAILED, message="flaky", error_kind="failed")
        return AttemptOutcome(status=AttemptStatus.INDETERMINATE)

    scheduler = make_scheduler(attempt, concurrency_limit=4, on_complete=completed.append)
    results = asyncio.run(scheduler.run(make_records(12)))

    assert len(results) == 12
    assert sorted(result.index for result in results) == list(range(1, 13))
    assert sorted(result.index for result in completed) == list(range(1, 13))
    assert all(result.input.startswith(f"Name{result.index},") for result in results)


def test_pass_callback_sees_every_pass() -> None:
    passes: list[tuple[int, int, AttemptStatus]] = []

    async def attempt(record: Record) -> AttemptOutcome:
        return AttemptOutcome(status=AttemptStatus.FAILED, message="nope", error_kind="failed")

    scheduler = make_scheduler(
        attempt,
        max_retries=1,
        on_pass=lambda record, pass_no, outcome: passes.append((record.index, pass_no, outcome.status)),
    )
    asyncio.run(scheduler.run(make_records(1)))

    assert passes == [(1, 1, AttemptStatus.FAILED), (1, 2, AttemptStatus.FAILED)]


def test_empty_batch_returns_no_results() -> None:
    async def attempt(record: Record) -> AttemptOutcome:
        raise AssertionError("should not run")

    assert asyncio.run(make_scheduler(attempt).run([])) == []


@pytest.mark.parametrize(
    "overrides",
    [{"concurrency_limit": 0}, {"per_attempt_timeout": 0}, {"max_retries": -1}],
)
def test_invalid_parameters_rejected(overrides) -> None:
    async def attempt(record: Record) -> AttemptOutcome:
        return AttemptOutcome(status=AttemptStatus.MATCHED)

    with pytest.raises(ValueError):
        make_scheduler(attempt, **overrides)


def test_failing_callback_still_releases_in_flight_attempts() -> None:
    released: list[int] = []

    async def attempt(record: Record) -> AttemptOutcome:
        try:
            await asyncio.sleep(0.01 if record.index == 1 else 0.5)
            return AttemptOutcome(status=AttemptStatus.MATCHED)
        finally:
            released.append(record.index)

    def on_complete(result: AttemptResult) -> None:
        raise RuntimeError("ledger commit failed")

    scheduler = make_scheduler(attempt, concurrency_limit=2, on_complete=on_complete)

    with pytest.raises(RuntimeError, match="ledger commit failed"):
        asyncio.run(scheduler.run(make_records(2)))

    assert sorted(released) == [1, 2]
