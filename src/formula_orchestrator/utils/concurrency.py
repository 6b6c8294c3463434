"""Async concurrency primitives for deduplicated loads and one-time initialization."""

from __future__ import annotations

import asyncio
import threading
from typing import TYPE_CHECKING, Generic, TypeVar, cast

if TYPE_CHECKING:
    from collections.abc import Awaitable, Callable

T = TypeVar("T")


class SingleFlight(Generic[T]):
    """Collapse concurrent calls for the same key onto one outstanding task.

    Callers are shielded from each other: cancelling one waiter leaves the
    shared task running for the others.
    """

    def __init__(self) -> None:
        self._inflight: dict[str, asyncio.Future[T]] = {}

    @property
    def in_flight(self) -> int:
        return len(self._inflight)

    def is_pending(self, key: str) -> bool:
        return key in self._inflight

    async def run(self, key: str, factory: Callable[[], Awaitable[T]]) -> T:
        existing = self._inflight.get(key)
        if existing is not None:
            return await asyncio.shield(existing)

        task: asyncio.Future[T] = asyncio.ensure_future(factory())
        self._inflight[key] = task
        task.add_done_callback(lambda done, key=key: self._discard(key, done))
        return await asyncio.shield(task)

    def _discard(self, key: str, task: asyncio.Future[T]) -> None:
        if self._inflight.get(key) is task:
            del self._inflight[key]
        # Mark the exception retrieved when every waiter was cancelled.
        if not task.cancelled():
            task.exception()


class OnceInitializer(Generic[T]):
    """Run an async initializer at most once per instance.

    Concurrent first callers await one shared task. A failed initialization is
    forgotten so the next caller retries.
    """

    def __init__(self, initializer: Callable[[], Awaitable[T]]) -> None:
        self._initializer = initializer
        self._lock = threading.Lock()
        self._task: asyncio.Future[T] | None = None
        self._value: T | None = None
        self._done = False
        self._runs = 0

    @property
    def is_initialized(self) -> bool:
        return self._done

    @property
    def runs(self) -> int:
        """Number of times the initializer has been started."""

        return self._runs

    async def get(self) -> T:
        if self._done:
            return cast("T", self._value)

        loop = asyncio.get_running_loop()
        with self._lock:
            if self._done:
                return cast("T", self._value)
            task = self._task
            if task is None or task.get_loop() is not loop:
                self._runs += 1
                task = loop.create_task(self._run())
                self._task = task
        return await asyncio.shield(task)

    def reset(self) -> None:
        with self._lock:
            self._task = None
            self._value = None
            self._done = False

    async def _run(self) -> T:
        try:
            value = await self._initializer()
        except BaseException:
            with self._lock:
                self._task = None
            raise
        with self._lock:
            self._value = value
            self._done = True
        return value


__all__ = [
    "OnceInitializer",
    "SingleFlight",
]
