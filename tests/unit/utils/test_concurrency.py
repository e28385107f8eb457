"""
policy-orchestrator — unit tests for concurrency primitives

File: tests/unit/utils/test_concurrency.py

Purpose
- Verify bounded fan-out, result ordering and cooperative cancellation of the
  worker pool used by the check runner.
"""

from __future__ import annotations

import asyncio

import pytest

from policy_orchestrator.utils.concurrency import (
    BoundedSemaphore,
    CancellationToken,
    WorkerPool,
    default_worker_count,
)


async def _sleep_then(value: int, delay: float) -> int:
    await asyncio.sleep(delay)
    return value


@pytest.mark.asyncio
async def test_gather_preserves_submission_order() -> None:
    pool: WorkerPool[int] = WorkerPool(max_concurrency=3)
    delays = [0.03, 0.0, 0.02, 0.01]

    results = await pool.gather(_sleep_then(index, delay) for index, delay in enumerate(delays))

    assert results == [0, 1, 2, 3]


@pytest.mark.asyncio
async def test_peak_concurrency_never_exceeds_limit() -> None:
    pool: WorkerPool[int] = WorkerPool(max_concurrency=2)

    results = await pool.gather(_sleep_then(index, 0.01) for index in range(6))

    assert sorted(results) == list(range(6))
    assert pool.peak_concurrency == 2


@pytest.mark.asyncio
async def test_run_yields_in_completion_order() -> None:
    pool: WorkerPool[int] = WorkerPool(max_concurrency=4)

    seen = [item async for item in pool.run([_sleep_then(1, 0.05), _sleep_then(2, 0.0)])]

    assert seen == [2, 1]


@pytest.mark.asyncio
async def test_worker_exception_propagates() -> None:
    async def boom() -> int:
        raise RuntimeError("worker failed")

    pool: WorkerPool[int] = WorkerPool(max_concurrency=2)

    with pytest.raises(RuntimeError, match="worker failed"):
        await pool.gather([boom(), _sleep_then(1, 0.0)])


@pytest.mark.asyncio
async def test_cancel_token_stops_in_flight_work() -> None:
    token = CancellationToken()
    pool: WorkerPool[int] = WorkerPool(max_concurrency=2, cancel_token=token)
    started = asyncio.Event()

    async def slow() -> int:
        started.set()
        await asyncio.sleep(10)
        return 1

    async def cancel_later() -> None:
        await started.wait()
        token.cancel()

    canceller = asyncio.create_task(cancel_later())
    with pytest.raises(asyncio.CancelledError):
        await pool.gather([slow(), slow()])
    await canceller
    assert token.is_cancelled


@pytest.mark.asyncio
async def test_pre_cancelled_token_runs_nothing() -> None:
    token = CancellationToken()
    token.cancel()
    pool: WorkerPool[int] = WorkerPool(max_concurrency=1, cancel_token=token)
    calls: list[int] = []

    async def record() -> int:
        calls.append(1)
        return 1

    with pytest.raises(asyncio.CancelledError):
        await pool.gather([record()])
    assert calls == []


@pytest.mark.asyncio
async def test_bounded_semaphore_tracks_usage() -> None:
    semaphore = BoundedSemaphore(2)

    async with semaphore.permit():
        assert semaphore.in_use == 1
        async with semaphore.permit():
            assert semaphore.in_use == 2

    assert semaphore.in_use == 0
    assert semaphore.peak == 2
    with pytest.raises(RuntimeError):
        semaphore.release()


def test_invalid_limits_rejected() -> None:
    with pytest.raises(ValueError):
        BoundedSemaphore(0)
    with pytest.raises(ValueError):
        WorkerPool(max_concurrency=0)


def test_default_worker_count() -> None:
    assert default_worker_count(5) == 5
    assert default_worker_count(0) >= 1
