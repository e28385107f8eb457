"""Async concurrency primitives for bounded check fan-out and cooperative cancellation."""

from __future__ import annotations

import asyncio
import os
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Generic, TypeVar

if TYPE_CHECKING:
    from collections.abc import AsyncIterator, Awaitable, Iterable

T = TypeVar("T")


class CancellationToken:
    """Cooperative cancellation token backed by ``asyncio.Event``."""

    def __init__(self) -> None:
        self._event = asyncio.Event()

    def cancel(self) -> None:
        self._event.set()

    @property
    def is_cancelled(self) -> bool:
        return self._event.is_set()

    async def wait(self) -> None:
        await self._event.wait()

    def raise_if_cancelled(self) -> None:
        if self._event.is_set():
            raise asyncio.CancelledError("operation cancelled")


class BoundedSemaphore:
    """Small wrapper over ``asyncio.Semaphore`` with usage diagnostics."""

    def __init__(self, limit: int) -> None:
        if limit <= 0:
            raise ValueError("limit must be > 0")
        self._limit = limit
        self._semaphore = asyncio.Semaphore(limit)
        self._in_use = 0
        self._peak = 0

    @property
    def limit(self) -> int:
        return self._limit

    @property
    def in_use(self) -> int:
        return self._in_use

    @property
    def peak(self) -> int:
        return self._peak

    async def acquire(self) -> None:
        # Cancellation while waiting here does not acquire a permit.
        await self._semaphore.acquire()
        self._in_use += 1
        self._peak = max(self._peak, self._in_use)

    def release(self) -> None:
        if self._in_use <= 0:
            raise RuntimeError("release called more times than acquire")
        self._in_use -= 1
        self._semaphore.release()

    @asynccontextmanager
    async def permit(self) -> AsyncIterator[None]:
        await self.acquire()
        try:
            yield
        finally:
            self.release()


@dataclass(slots=True)
class WorkerPool(Generic[T]):
    """Run coroutines with bounded concurrency.

    ``run`` yields results as they finish; ``gather`` returns them in
    submission order. Cancelling the token (or the awaiting task) cancels every
    in-flight coroutine and discards their results.
    """

    max_concurrency: int
    cancel_token: CancellationToken | None = None
    _token: CancellationToken = field(init=False, repr=False)
    _semaphore: BoundedSemaphore = field(init=False, repr=False)

    def __post_init__(self) -> None:
        if self.max_concurrency <= 0:
            raise ValueError("max_concurrency must be > 0")
        self._token = self.cancel_token or CancellationToken()
        self._semaphore = BoundedSemaphore(self.max_concurrency)

    @property
    def peak_concurrency(self) -> int:
        return self._semaphore.peak

    async def run(self, coroutines: Iterable[Awaitable[T]]) -> AsyncIterator[T]:
        async for _, result in self._run_indexed(coroutines):
            yield result

    async def gather(self, coroutines: Iterable[Awaitable[T]]) -> list[T]:
        results: dict[int, T] = {}
        async for index, result in self._run_indexed(coroutines):
            results[index] = result
        return [results[index] for index in sorted(results)]

    async def _run_indexed(
        self, coroutines: Iterable[Awaitable[T]]
    ) -> AsyncIterator[tuple[int, T]]:
        tasks: dict[asyncio.Task[T], int] = {}
        cancel_wait = asyncio.create_task(self._token.wait())

        try:
            for index, coroutine in enumerate(coroutines):
                if self._token.is_cancelled:
                    _close(coroutine)
                    continue
                tasks[asyncio.create_task(self._run_one(coroutine))] = index
            self._token.raise_if_cancelled()

            while tasks:
                done, _ = await asyncio.wait(
                    {*tasks, cancel_wait}, return_when=asyncio.FIRST_COMPLETED
                )
                self._token.raise_if_cancelled()

                for task in done:
                    if task is cancel_wait:
                        continue
                    index = tasks.pop(task)
                    if task.cancelled():
                        raise asyncio.CancelledError("worker task cancelled")
                    exc = task.exception()
                    if exc is not None:
                        raise exc
                    yield index, task.result()
        finally:
            cancel_wait.cancel()
            await _cancel_all({*tasks, cancel_wait})

    async def _run_one(self, coroutine: Awaitable[T]) -> T:
        async with self._semaphore.permit():
            self._token.raise_if_cancelled()
            return await coroutine


def default_worker_count(configured: int = 0) -> int:
    """Resolve a configured worker count; ``0`` means the number of available cores."""

    if configured > 0:
        return configured
    try:
        available = len(os.sched_getaffinity(0))
    except AttributeError:
        available = os.cpu_count() or 1
    return max(1, available)


async def _cancel_all(tasks: set[asyncio.Task[object]]) -> None:
    pending = [task for task in tasks if not task.done()]
    for task in pending:
        task.cancel()
    if pending:
        await asyncio.gather(*pending, return_exceptions=True)


def _close(awaitable: Awaitable[object]) -> None:
    close = getattr(awaitable, "close", None)
    if callable(close):
        close()


__all__ = [
    "BoundedSemaphore",
    "CancellationToken",
    "WorkerPool",
    "default_worker_count",
]
