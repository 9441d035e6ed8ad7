"""Async concurrency primitives shared by the runner and provisioner."""

from __future__ import annotations

import asyncio
import inspect
from contextlib import asynccontextmanager, suppress
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Generic, TypeVar

if TYPE_CHECKING:
    from collections.abc import AsyncIterator, Awaitable, Iterable

T = TypeVar("T")


class CancellationToken:
    """Cooperative cancellation token backed by ``asyncio.Event``."""

    def __init__(self) -> None:
        self._event = asyncio.Event()
        self._reason: str | None = None

    def cancel(self, reason: str | None = None) -> None:
        if self._reason is None and reason is not None:
            self._reason = reason
        self._event.set()

    @property
    def is_cancelled(self) -> bool:
        return self._event.is_set()

    @property
    def reason(self) -> str | None:
        return self._reason

    async def wait(self) -> None:
        await self._event.wait()

    def raise_if_cancelled(self) -> None:
        if self._event.is_set():
            raise asyncio.CancelledError(self._reason or "operation cancelled")


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

    @property
    def available(self) -> int:
        return self._limit - self._in_use

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

    def snapshot(self) -> dict[str, int]:
        return {
            "limit": self._limit,
            "in_use": self._in_use,
            "available": self.available,
            "peak": self._peak,
        }


@dataclass(slots=True)
class WorkerPool(Generic[T]):
    """Run coroutines with bounded concurrency and yield results as they finish.

    Tasks are started in iteration order, so with ``max_concurrency == 1`` they
    run strictly in that order. Closing the iterator early (``aclosing`` or
    ``break`` followed by ``aclose``) cancels and awaits every unfinished task.
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
    def semaphore(self) -> BoundedSemaphore:
        return self._semaphore

    async def run(self, coroutines: Iterable[Awaitable[T]]) -> AsyncIterator[T]:
        tasks: set[asyncio.Task[T]] = set()
        pending_coroutines = list(coroutines)
        if self._token.is_cancelled:
            for coroutine in pending_coroutines:
                _close_unscheduled_coroutine(coroutine)
            raise asyncio.CancelledError(self._token.reason or "operation cancelled")

        for coroutine in pending_coroutines:
            task: asyncio.Task[T] = asyncio.create_task(self._run_one(coroutine))
            tasks.add(task)

        cancel_wait_task = asyncio.create_task(self._token.wait())
        try:
            while tasks:
                done, _ = await asyncio.wait(
                    tasks | {cancel_wait_task}, return_when=asyncio.FIRST_COMPLETED
                )
                finished = {task for task in done if task is not cancel_wait_task}
                tasks -= finished

                for task in finished:
                    if task.cancelled():
                        raise asyncio.CancelledError("worker task cancelled")
                    exc = task.exception()
                    if exc is not None:
                        raise exc
                    yield task.result()

                if cancel_wait_task in done:
                    raise asyncio.CancelledError(self._token.reason or "operation cancelled")
        finally:
            cancel_wait_task.cancel()
            with suppress(asyncio.CancelledError):
                await cancel_wait_task
            await self._cancel_all(tasks)

    async def _run_one(self, coroutine: Awaitable[T]) -> T:
        try:
            async with self._semaphore.permit():
                self._token.raise_if_cancelled()
                return await coroutine
        finally:
            _close_unscheduled_coroutine(coroutine)

    async def _cancel_all(self, tasks: set[asyncio.Task[T]]) -> None:
        for task in tasks:
            task.cancel()
        if tasks:
            with suppress(Exception):
                await asyncio.gather(*tasks, return_exceptions=True)


def _close_unscheduled_coroutine(awaitable: Awaitable[object]) -> None:
    # Closing an already-finished coroutine is a no-op; closing one that never
    # started avoids "coroutine was never awaited" warnings at GC time.
    if inspect.iscoroutine(awaitable) and inspect.getcoroutinestate(awaitable) == "CORO_CREATED":
        awaitable.close()


__all__ = [
    "BoundedSemaphore",
    "CancellationToken",
    "WorkerPool",
]
