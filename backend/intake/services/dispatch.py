from __future__ import annotations

import asyncio
import itertools
import logging
from collections import deque
from collections.abc import AsyncIterator, Awaitable, Callable
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from typing import Optional, TypeVar

from intake.core.errors import ConcurrencyRejected
from intake.core.lifecycle import ShutdownFlag

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass(eq=False)
class DispatchSlot:
    """A concurrency permit owned by the caller until released."""

    slot_id: int
    released: bool = field(default=False, repr=False)


@dataclass(frozen=True)
class DispatchStats:
    """Point-in-time dispatch counters."""

    active: int
    queued: int
    max_concurrent: int
    shutting_down: bool


class DispatchController:
    """Bound concurrent calls to the compute provider.

    Slots are granted immediately while capacity remains and otherwise in strict
    FIFO arrival order. A freed slot is handed straight to the oldest waiter so
    late arrivals cannot overtake the queue.
    """

    def __init__(self, max_concurrent: int, *, shutdown: Optional[ShutdownFlag] = None) -> None:
        self._max_concurrent = max(1, int(max_concurrent))
        self._shutdown = shutdown or ShutdownFlag()
        self._active = 0
        self._waiters: deque[asyncio.Future[DispatchSlot]] = deque()
        self._ids = itertools.count(1)
        self._idle = asyncio.Event()
        self._idle.set()

    @property
    def max_concurrent(self) -> int:
        return self._max_concurrent

    @property
    def active_count(self) -> int:
        return self._active

    @property
    def queued_count(self) -> int:
        return sum(1 for waiter in self._waiters if not waiter.done())

    @property
    def shutting_down(self) -> bool:
        return self._shutdown.requested

    def stats(self) -> DispatchStats:
        return DispatchStats(
            active=self._active,
            queued=self.queued_count,
            max_concurrent=self._max_concurrent,
            shutting_down=self.shutting_down,
        )

    async def acquire(self) -> DispatchSlot:
        """Wait for a slot. Raises ConcurrencyRejected once shutdown has begun."""

        if self.shutting_down:
            raise ConcurrencyRejected()
        if self._active < self._max_concurrent and self.queued_count == 0:
            return self._grant()

        waiter: asyncio.Future[DispatchSlot] = asyncio.get_running_loop().create_future()
        self._waiters.append(waiter)
        try:
            return await waiter
        except asyncio.CancelledError:
            if waiter.done() and not waiter.cancelled() and waiter.exception() is None:
                # Granted just before the cancellation landed; hand the slot on.
                self.release(waiter.result())
            else:
                self._discard_waiter(waiter)
            raise

    def release(self, slot: DispatchSlot) -> None:
        """Return ``slot``. A second release of the same slot is ignored."""

        if slot.released:
            logger.warning("Dispatch slot %s released twice; ignoring", slot.slot_id)
            return
        slot.released = True

        while self._waiters:
            waiter = self._waiters.popleft()
            if waiter.done():
                continue
            waiter.set_result(DispatchSlot(slot_id=next(self._ids)))
            return

        self._active -= 1
        if self._active == 0:
            self._idle.set()

    def begin_shutdown(self) -> None:
        """Stop admitting work and reject everyone still queued."""

        self._shutdown.request()
        rejected = 0
        while self._waiters:
            waiter = self._waiters.popleft()
            if not waiter.done():
                waiter.set_exception(ConcurrencyRejected())
                rejected += 1
        if rejected:
            logger.info("Rejected %s queued dispatch request(s) on shutdown", rejected)

    async def drain(self, timeout_ms: int) -> bool:
        """Wait until no slot is held. Returns False if ``timeout_ms`` elapses first."""

        if self._active == 0:
            return True
        try:
            await asyncio.wait_for(self._idle.wait(), timeout=max(0, timeout_ms) / 1000)
        except asyncio.TimeoutError:
            return False
        return True

    @asynccontextmanager
    async def slot(self) -> AsyncIterator[DispatchSlot]:
        """Hold a slot for the duration of the ``async with`` block."""

        acquired = await self.acquire()
        try:
            yield acquired
        finally:
            self.release(acquired)

    async def run(self, func: Callable[[], Awaitable[T]]) -> T:
        """Run ``func`` while holding a slot."""

        async with self.slot():
            return await func()

    def _grant(self) -> DispatchSlot:
        self._active += 1
        self._idle.clear()
        return DispatchSlot(slot_id=next(self._ids))

    def _discard_waiter(self, waiter: asyncio.Future[DispatchSlot]) -> None:
        if waiter in self._waiters:
            self._waiters.remove(waiter)
