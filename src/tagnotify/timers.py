"""
Cancellable timers for the dispatcher and the rebuild debounce.

``AsyncioTimers`` runs callbacks on an asyncio event loop. ``ManualTimers``
keeps its own simulated clock and only runs callbacks when ``advance`` is
called, so tests can step through minutes of dispatcher activity instantly.
"""

import asyncio
import heapq
import itertools
from datetime import datetime, timedelta
from typing import Callable, Optional, Protocol


class TimerHandle(Protocol):
    def cancel(self) -> None: ...

    @property
    def cancelled(self) -> bool: ...


class Timers(Protocol):
    def call_later(self, delay: float, callback: Callable[[], None]) -> TimerHandle: ...

    def call_repeating(
        self, interval: float, callback: Callable[[], None]
    ) -> TimerHandle: ...


class _RepeatingHandle:
    def __init__(self, loop: asyncio.AbstractEventLoop, interval: float, callback):
        self._loop = loop
        self._interval = interval
        self._callback = callback
        self._handle: Optional[asyncio.TimerHandle] = None
        self._cancelled = False
        self._schedule()

    def _schedule(self) -> None:
        self._handle = self._loop.call_later(self._interval, self._run)

    def _run(self) -> None:
        if self._cancelled:
            return
        try:
            self._callback()
        finally:
            if not self._cancelled:
                self._schedule()

    def cancel(self) -> None:
        self._cancelled = True
        if self._handle is not None:
            self._handle.cancel()

    @property
    def cancelled(self) -> bool:
        return self._cancelled


class _OnceHandle:
    def __init__(self, handle: asyncio.TimerHandle):
        self._handle = handle

    def cancel(self) -> None:
        self._handle.cancel()

    @property
    def cancelled(self) -> bool:
        return self._handle.cancelled()


class AsyncioTimers:
    def __init__(self, loop: Optional[asyncio.AbstractEventLoop] = None):
        self._loop = loop

    @property
    def loop(self) -> asyncio.AbstractEventLoop:
        if self._loop is None:
            self._loop = asyncio.get_running_loop()
        return self._loop

    def call_later(self, delay: float, callback: Callable[[], None]) -> _OnceHandle:
        return _OnceHandle(self.loop.call_later(delay, callback))

    def call_repeating(
        self, interval: float, callback: Callable[[], None]
    ) -> _RepeatingHandle:
        return _RepeatingHandle(self.loop, interval, callback)


class ManualHandle:
    def __init__(self, timers: "ManualTimers", due: float, callback, interval=None):
        self.timers = timers
        self.due = due
        self.callback = callback
        self.interval = interval
        self._cancelled = False

    def cancel(self) -> None:
        self._cancelled = True

    @property
    def cancelled(self) -> bool:
        return self._cancelled


class ManualTimers:
    """
    Simulated timers. ``clock()`` returns ``start`` plus the simulated
    elapsed time and can be handed to anything expecting a ``now`` callable.

    Also used by one-shot commands, where nothing should run in the
    background: callbacks only run when ``advance`` is called.
    """

    def __init__(self, start: Optional[datetime] = None):
        self.start = start or datetime.now()
        self.elapsed = 0.0
        self._queue: list[tuple[float, int, ManualHandle]] = []
        self._counter = itertools.count()

    def clock(self) -> datetime:
        return self.start + timedelta(seconds=self.elapsed)

    def _push(self, handle: ManualHandle) -> None:
        heapq.heappush(self._queue, (handle.due, next(self._counter), handle))

    def call_later(self, delay: float, callback: Callable[[], None]) -> ManualHandle:
        handle = ManualHandle(self, self.elapsed + delay, callback)
        self._push(handle)
        return handle

    def call_repeating(
        self, interval: float, callback: Callable[[], None]
    ) -> ManualHandle:
        handle = ManualHandle(self, self.elapsed + interval, callback, interval)
        self._push(handle)
        return handle

    @property
    def pending(self) -> int:
        return sum(1 for _, _, h in self._queue if not h.cancelled)

    def advance(self, seconds: float) -> int:
        """Move the clock forward, running every callback that falls due."""
        target = self.elapsed + seconds
        ran = 0
        while self._queue and self._queue[0][0] <= target:
            due, _, handle = heapq.heappop(self._queue)
            if handle.cancelled:
                continue
            self.elapsed = due
            handle.callback()
            ran += 1
            if handle.interval is not None and not handle.cancelled:
                handle.due = due + handle.interval
                self._push(handle)
        self.elapsed = target
        return ran
