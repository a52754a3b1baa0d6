from __future__ import annotations

import asyncio
import inspect
import logging
import time
from collections import deque
from collections.abc import Awaitable, Callable
from typing import Generic, TypeVar

from .logging_utils import log_event

T = TypeVar("T")
R = TypeVar("R")

Sleep = Callable[[float], Awaitable[None]]


class Superseded(Exception):
    """A newer generation replaced the work this coroutine was doing."""

    def __init__(self, generation: int, current: int) -> None:
        super().__init__(f"generation {generation} superseded by {current}")
        self.generation = generation
        self.current = current


class SingleFlightQueue(Generic[T]):
    """FIFO worker that services one item at a time.

    Every ``submit`` bumps a generation counter and cancels whatever the previous
    item currently has in flight. Handlers receive their item's generation and route
    all suspension points through ``call``/``pause``; results that come back for an
    older generation raise ``Superseded`` instead of being returned.
    """

    def __init__(
        self,
        name: str,
        handler: Callable[[T, int], Awaitable[None]],
        *,
        cooldown_s: float = 0.0,
        sleep: Sleep | None = None,
    ) -> None:
        self.name = name
        self._handler = handler
        self._cooldown_s = max(0.0, float(cooldown_s))
        self._sleep: Sleep = sleep or asyncio.sleep
        self._items: deque[tuple[int, T]] = deque()
        self._generation = 0
        self._active_generation: int | None = None
        self._inflight: set[asyncio.Future[object]] = set()
        self._worker: asyncio.Task[None] | None = None
        self._item_used_provider = False

    @property
    def generation(self) -> int:
        return self._generation

    @property
    def active_generation(self) -> int | None:
        return self._active_generation

    @property
    def is_processing(self) -> bool:
        return self._worker is not None and not self._worker.done()

    @property
    def pending_count(self) -> int:
        return len(self._items)

    def is_current(self, generation: int) -> bool:
        return generation == self._generation

    def ensure_current(self, generation: int) -> None:
        if not self.is_current(generation):
            raise Superseded(generation, self._generation)

    def submit(self, item: T) -> int:
        generation = self.supersede()
        self._items.append((generation, item))
        if not self.is_processing:
            self._worker = asyncio.get_running_loop().create_task(
                self._drain(),
                name=f"{self.name}-worker",
            )
        return generation

    def supersede(self) -> int:
        """Invalidate everything issued so far without queueing new work."""
        self._generation += 1
        self.cancel_inflight()
        return self._generation

    def cancel_inflight(self) -> int:
        cancelled = 0
        for fut in list(self._inflight):
            if not fut.done():
                fut.cancel()
                cancelled += 1
        return cancelled

    async def call(self, aw: Awaitable[R], generation: int, *, provider: bool = True) -> R:
        if not self.is_current(generation):
            if inspect.iscoroutine(aw):
                aw.close()
            raise Superseded(generation, self._generation)

        if provider:
            self._item_used_provider = True
        fut: asyncio.Future[R] = asyncio.ensure_future(aw)
        self._inflight.add(fut)  # type: ignore[arg-type]
        try:
            await asyncio.wait({fut})
        except asyncio.CancelledError:
            # The worker itself is being torn down.
            fut.cancel()
            raise
        finally:
            self._inflight.discard(fut)  # type: ignore[arg-type]

        if fut.cancelled() or not self.is_current(generation):
            if not fut.cancelled():
                # Consume the outcome so a late exception is not reported as unretrieved.
                fut.exception()
            raise Superseded(generation, self._generation)
        return fut.result()

    async def pause(self, seconds: float, generation: int) -> None:
        """Sleep that a newer submission cuts short."""
        await self.call(self._sleep(max(0.0, float(seconds))), generation, provider=False)

    async def join(self) -> None:
        while self._worker is not None and not self._worker.done():
            await asyncio.wait({self._worker})

    async def aclose(self) -> None:
        self._items.clear()
        self.supersede()
        worker = self._worker
        if worker is not None and not worker.done():
            worker.cancel()
            await asyncio.gather(worker, return_exceptions=True)
        self._worker = None

    async def _drain(self) -> None:
        while self._items:
            generation, item = self._items.popleft()
            self._active_generation = generation
            self._item_used_provider = False
            try:
                await self._handler(item, generation)
            except Superseded as exc:
                log_event(
                    "single_flight_item_superseded",
                    level=logging.DEBUG,
                    queue=self.name,
                    generation=exc.generation,
                    current_generation=exc.current,
                )
            except Exception as exc:
                log_event(
                    "single_flight_handler_failed",
                    level=logging.ERROR,
                    queue=self.name,
                    generation=generation,
                    error=f"{type(exc).__name__}: {exc}",
                )
            finally:
                self._active_generation = None

            if self._items and self._item_used_provider and self._cooldown_s > 0:
                await self._sleep(self._cooldown_s)


class ProviderThrottle:
    """Minimum spacing between provider calls, shareable across queues.

    A zero interval disables spacing entirely.
    """

    def __init__(
        self,
        min_interval_s: float,
        *,
        clock: Callable[[], float] = time.monotonic,
        sleep: Sleep | None = None,
    ) -> None:
        self.min_interval_s = max(0.0, float(min_interval_s))
        self._clock = clock
        self._sleep: Sleep = sleep or asyncio.sleep
        self._lock = asyncio.Lock()
        self._last_call_at: float | None = None

    async def acquire(self) -> float:
        if self.min_interval_s <= 0:
            return 0.0
        async with self._lock:
            waited = 0.0
            if self._last_call_at is not None:
                waited = self.min_interval_s - (self._clock() - self._last_call_at)
                if waited > 0:
                    await self._sleep(waited)
                else:
                    waited = 0.0
            self._last_call_at = self._clock()
            return waited
