"""
Clock — time source and scheduled-task abstraction.

Every time-dependent component (rate limiter, breaker, retry backoff,
leases, debounced writes, retention sweeps) takes a Clock instead of
calling ``time`` or ``loop.call_later`` directly.

- ``SystemClock``: monotonic time + the running asyncio loop
- ``ManualClock``: virtual time advanced explicitly with ``advance()``,
  firing due timers in deadline order. With ``autojump=True`` every
  ``sleep()`` advances virtual time by its own duration immediately.

Monotonic values are seconds (float). ``utcnow()`` is wall time for
persisted timestamps.
"""
import asyncio
import heapq
import itertools
import time
from datetime import datetime, timedelta, timezone
from typing import Any, Awaitable, Callable, TypeVar

T = TypeVar("T")


class TimerHandle:
    """Cancellable handle for a scheduled callback."""

    __slots__ = ("deadline", "_callback", "_args", "_cancelled", "_inner")

    def __init__(self, deadline: float, callback: Callable[..., Any], args: tuple):
        self.deadline = deadline
        self._callback = callback
        self._args = args
        self._cancelled = False
        self._inner: asyncio.TimerHandle | None = None

    def cancel(self) -> None:
        self._cancelled = True
        if self._inner is not None:
            self._inner.cancel()

    @property
    def cancelled(self) -> bool:
        return self._cancelled

    def _run(self) -> None:
        if not self._cancelled:
            self._cancelled = True  # one-shot
            self._callback(*self._args)


class Clock:
    """Base class — concrete clocks supply time, timers and sleep."""

    def monotonic(self) -> float:
        raise NotImplementedError

    def utcnow(self) -> datetime:
        raise NotImplementedError

    def call_later(self, delay: float, callback: Callable[..., Any], *args: Any) -> TimerHandle:
        raise NotImplementedError

    async def sleep(self, seconds: float) -> None:
        raise NotImplementedError

    def monotonic_ms(self) -> float:
        return self.monotonic() * 1000.0

    async def deadline(self, seconds: float) -> None:
        """Complete once ``seconds`` have passed. Used for timeouts."""
        await self.sleep(seconds)

    async def wait_event(self, event: asyncio.Event, timeout: float) -> bool:
        """Wait until ``event`` is set or ``timeout`` seconds pass on this clock.

        Returns True if the event was set.
        """
        if event.is_set():
            return True
        if timeout <= 0:
            return False
        waiter = asyncio.ensure_future(event.wait())
        sleeper = asyncio.ensure_future(self.deadline(timeout))
        try:
            await asyncio.wait({waiter, sleeper}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            for task in (waiter, sleeper):
                if not task.done():
                    task.cancel()
        return event.is_set()

    async def run_with_timeout(self, awaitable: Awaitable[T], timeout: float) -> T:
        """Await ``awaitable`` for at most ``timeout`` seconds of this clock.

        Raises asyncio.TimeoutError when the deadline passes first; the
        awaitable is cancelled.
        """
        task = asyncio.ensure_future(awaitable)
        sleeper = asyncio.ensure_future(self.deadline(timeout))
        try:
            await asyncio.wait({task, sleeper}, return_when=asyncio.FIRST_COMPLETED)
        except asyncio.CancelledError:
            task.cancel()
            sleeper.cancel()
            raise
        if task.done():
            sleeper.cancel()
            return task.result()
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass
        raise asyncio.TimeoutError()


class SystemClock(Clock):
    """Real time, timers on the running event loop."""

    def monotonic(self) -> float:
        return time.monotonic()

    def utcnow(self) -> datetime:
        return datetime.now(timezone.utc)

    def call_later(self, delay: float, callback: Callable[..., Any], *args: Any) -> TimerHandle:
        loop = asyncio.get_running_loop()
        handle = TimerHandle(self.monotonic() + delay, callback, args)
        handle._inner = loop.call_later(max(delay, 0.0), handle._run)
        return handle

    async def sleep(self, seconds: float) -> None:
        await asyncio.sleep(max(seconds, 0.0))


class ManualClock(Clock):
    """
    Virtual clock for deterministic tests.

    Usage:
        clock = ManualClock()
        store.save(session)          # schedules a debounced write
        clock.advance(1.0)           # fires it
    """

    def __init__(
        self,
        start: float = 0.0,
        wall_start: datetime | None = None,
        autojump: bool = False,
    ):
        self._start = start
        self._now = start
        self._wall_start = wall_start or datetime(2025, 1, 1, tzinfo=timezone.utc)
        self.autojump = autojump
        self._timers: list[tuple[float, int, TimerHandle]] = []
        self._seq = itertools.count()

    def monotonic(self) -> float:
        return self._now

    def utcnow(self) -> datetime:
        return self._wall_start + timedelta(seconds=self._now - self._start)

    def call_later(self, delay: float, callback: Callable[..., Any], *args: Any) -> TimerHandle:
        handle = TimerHandle(self._now + max(delay, 0.0), callback, args)
        heapq.heappush(self._timers, (handle.deadline, next(self._seq), handle))
        return handle

    def advance(self, seconds: float) -> None:
        """Move virtual time forward, firing every timer that comes due."""
        target = self._now + seconds
        while self._timers and self._timers[0][0] <= target:
            deadline, _, handle = heapq.heappop(self._timers)
            if handle.cancelled:
                continue
            self._now = max(self._now, deadline)
            handle._run()
        self._now = target

    def advance_ms(self, ms: float) -> None:
        self.advance(ms / 1000.0)

    @property
    def pending_timers(self) -> int:
        return sum(1 for _, _, h in self._timers if not h.cancelled)

    async def sleep(self, seconds: float) -> None:
        if seconds <= 0:
            await asyncio.sleep(0)
            return
        if self.autojump:
            self.advance(seconds)
            await asyncio.sleep(0)
            return
        await self._wait_timer(seconds)

    async def deadline(self, seconds: float) -> None:
        # Deadlines never jump time; they fire when something else advances it
        await self._wait_timer(seconds)

    async def _wait_timer(self, seconds: float) -> None:
        loop = asyncio.get_running_loop()
        fut: asyncio.Future = loop.create_future()
        handle = self.call_later(seconds, _resolve, fut)
        try:
            await fut
        finally:
            handle.cancel()


def _resolve(fut: asyncio.Future) -> None:
    if not fut.done():
        fut.set_result(None)
