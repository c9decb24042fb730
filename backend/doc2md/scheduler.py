"""Delayed callbacks used for cache expiry and task eviction.

Stores never call ``asyncio`` timers directly; they receive a scheduler so tests
can swap in :class:`ManualScheduler` and advance a virtual clock.
"""
import asyncio
import heapq
import itertools
import logging
import threading
import time
from typing import Callable, Optional, Protocol

logger = logging.getLogger("doc2md.scheduler")


class TimerHandle(Protocol):
    def cancel(self) -> None: ...


class Scheduler(Protocol):
    def now(self) -> float: ...

    def call_later(self, delay: float, callback: Callable[[], None]) -> TimerHandle: ...


class LoopScheduler:
    """Runs callbacks on the asyncio loop.

    Once :meth:`attach` has bound the application's loop, calls made from
    worker threads (``asyncio.to_thread``) are handed to that loop with
    ``call_soon_threadsafe``. A daemon ``threading.Timer`` is only used when no
    loop is known at all, e.g. in scripts.
    """

    def __init__(self, loop: Optional[asyncio.AbstractEventLoop] = None):
        self._loop = loop

    def attach(self, loop: Optional[asyncio.AbstractEventLoop] = None) -> None:
        self._loop = loop or asyncio.get_running_loop()

    def detach(self) -> None:
        self._loop = None

    def now(self) -> float:
        return time.monotonic()

    def call_later(self, delay: float, callback: Callable[[], None]) -> TimerHandle:
        delay = max(0.0, delay)
        try:
            running = asyncio.get_running_loop()
        except RuntimeError:
            running = None
        if running is not None:
            return running.call_later(delay, _guarded(callback))
        loop = self._loop
        if loop is not None and not loop.is_closed():
            handle = _ThreadsafeHandle(loop)
            loop.call_soon_threadsafe(handle.arm, loop.time() + delay, _guarded(callback))
            return handle
        timer = threading.Timer(delay, _guarded(callback))
        timer.daemon = True
        timer.start()
        return timer


class _ThreadsafeHandle:
    """Timer armed on the loop from another thread; ``cancel`` works from any thread."""

    def __init__(self, loop: asyncio.AbstractEventLoop):
        self._loop = loop
        self._lock = threading.Lock()
        self._timer: Optional[asyncio.TimerHandle] = None
        self.cancelled = False

    def arm(self, when: float, callback: Callable[[], None]) -> None:
        with self._lock:
            if self.cancelled:
                return
            self._timer = self._loop.call_at(when, callback)

    def cancel(self) -> None:
        with self._lock:
            if self.cancelled:
                return
            self.cancelled = True
            timer = self._timer
        if timer is None:
            return
        try:
            on_loop = asyncio.get_running_loop() is self._loop
        except RuntimeError:
            on_loop = False
        if on_loop:
            timer.cancel()
        elif not self._loop.is_closed():
            self._loop.call_soon_threadsafe(timer.cancel)


def _guarded(callback: Callable[[], None]) -> Callable[[], None]:
    def run() -> None:
        try:
            callback()
        except Exception:
            logger.exception("Scheduled callback %r failed", callback)
    return run


class _ManualHandle:
    def __init__(self, scheduler: "ManualScheduler", seq: int):
        self._scheduler = scheduler
        self.seq = seq
        self.cancelled = False

    def cancel(self) -> None:
        if not self.cancelled:
            self.cancelled = True
            self._scheduler._pending.discard(self.seq)


class ManualScheduler:
    """Virtual-time scheduler. ``advance`` fires due callbacks in deadline order."""

    def __init__(self, start: float = 0.0):
        self._now = start
        self._queue: list[tuple[float, int, Callable[[], None], _ManualHandle]] = []
        self._pending: set[int] = set()
        self._counter = itertools.count()

    def now(self) -> float:
        return self._now

    def call_later(self, delay: float, callback: Callable[[], None]) -> _ManualHandle:
        seq = next(self._counter)
        handle = _ManualHandle(self, seq)
        heapq.heappush(self._queue, (self._now + max(0.0, delay), seq, callback, handle))
        self._pending.add(seq)
        return handle

    @property
    def pending(self) -> int:
        return len(self._pending)

    def advance(self, seconds: float) -> None:
        target = self._now + seconds
        while self._queue and self._queue[0][0] <= target:
            deadline, seq, callback, handle = heapq.heappop(self._queue)
            self._now = max(self._now, deadline)
            if handle.cancelled:
                continue
            self._pending.discard(seq)
            callback()
        self._now = target

    def next_deadline(self) -> Optional[float]:
        for deadline, _, _, handle in sorted(self._queue):
            if not handle.cancelled:
                return deadline
        return None
