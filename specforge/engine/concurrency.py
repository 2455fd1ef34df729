"""
Bounded executor for collaborator invocations.

The ConcurrencyPool runs opaque coroutine functions on up to ``capacity``
lanes at once and hands back an ``asyncio.Task`` as the future for each
submission. It knows nothing about workflow tasks, so one pool can serve
every phase of a run.

Back-pressure:
    ``submit`` waits for a free lane before starting the function. Work is
    never dropped: a submission either starts or the caller's await is
    cancelled before anything ran.

Example:
    >>> pool = ConcurrencyPool(capacity=2)
    >>> future = await pool.submit(lambda: fetch("a"))
    >>> result = await future
"""

import asyncio
from collections.abc import Awaitable, Callable
from typing import Any, TypeVar

import structlog

from specforge.exceptions import ConcurrencyPoolError

log = structlog.get_logger(__name__)

T = TypeVar("T")

DEFAULT_CAPACITY = 5


class ConcurrencyPool:
    """Run up to ``capacity`` coroutine functions simultaneously.

    Attributes:
        capacity: Number of execution lanes.
        active: Lanes currently occupied.
        peak: Highest number of simultaneously occupied lanes observed.
    """

    def __init__(self, capacity: int = DEFAULT_CAPACITY) -> None:
        """Initialize the pool.

        Args:
            capacity: Maximum number of functions running at once. Must be >= 1.

        Raises:
            ConcurrencyPoolError: If capacity is smaller than 1.
        """
        if capacity < 1:
            raise ConcurrencyPoolError(f"Pool capacity must be at least 1, got {capacity}")
        self.capacity = capacity
        self.active = 0
        self.peak = 0
        self._semaphore = asyncio.Semaphore(capacity)
        self._running: set[asyncio.Task[Any]] = set()
        self._closed = False

    @property
    def free_lanes(self) -> int:
        return self.capacity - self.active

    def has_free_lane(self) -> bool:
        return self.active < self.capacity

    async def submit(self, fn: Callable[[], Awaitable[T]]) -> "asyncio.Task[T]":
        """Start ``fn`` on a free lane, waiting for one if all are busy.

        Args:
            fn: Zero-argument callable returning an awaitable.

        Returns:
            The asyncio task running ``fn``; await it for the result. The
            lane is released when ``fn`` finishes, before the task resolves.

        Raises:
            ConcurrencyPoolError: If the pool has been shut down.
        """
        if self._closed:
            raise ConcurrencyPoolError("Cannot submit to a pool that was shut down")

        await self._semaphore.acquire()
        if self._closed:
            self._semaphore.release()
            raise ConcurrencyPoolError("Pool was shut down while waiting for a lane")

        self.active += 1
        self.peak = max(self.peak, self.active)

        async def run_in_lane() -> T:
            try:
                return await fn()
            finally:
                self.active -= 1
                self._semaphore.release()

        task = asyncio.create_task(run_in_lane())
        self._running.add(task)
        task.add_done_callback(self._running.discard)
        log.debug("lane_acquired", active=self.active, capacity=self.capacity)
        return task

    async def cancel_all(self) -> None:
        """Cancel every running submission and wait for the lanes to drain."""
        running = list(self._running)
        for task in running:
            task.cancel()
        if running:
            await asyncio.gather(*running, return_exceptions=True)
            log.warning("pool_submissions_cancelled", count=len(running))

    async def shutdown(self, cancel: bool = False) -> None:
        """Refuse further submissions and wait for (or cancel) running ones."""
        self._closed = True
        if cancel:
            await self.cancel_all()
        elif self._running:
            await asyncio.gather(*list(self._running), return_exceptions=True)
