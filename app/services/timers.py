from __future__ import annotations

import heapq
import itertools
from collections.abc import Callable, Hashable
from typing import Any, Generic, Protocol, TypeVar

K = TypeVar('K', bound=Hashable)


class TimerHandle(Protocol):
    def cancel(self) -> None: ...


class TimerBackend(Protocol):
    """Anything with asyncio's ``call_later`` shape, including the event loop itself."""

    def call_later(self, delay: float, callback: Callable[..., Any], *args: Any) -> TimerHandle: ...


class DebouncedTask:
    """A single cancel-and-reschedule slot."""

    def __init__(self, backend: TimerBackend, delay: float, callback: Callable[[], None]) -> None:
        self._backend = backend
        self._delay = delay
        self._callback = callback
        self._handle: TimerHandle | None = None

    @property
    def pending(self) -> bool:
        return self._handle is not None

    def schedule(self) -> None:
        self.cancel()
        self._handle = self._backend.call_later(self._delay, self._fire)

    def cancel(self) -> None:
        if self._handle is not None:
            self._handle.cancel()
            self._handle = None

    def _fire(self) -> None:
        self._handle = None
        self._callback()


class KeyedDebouncer(Generic[K]):
    """One independent debounce slot per key."""

    def __init__(self, backend: TimerBackend, delay: float, callback: Callable[[K], None]) -> None:
        self._backend = backend
        self._delay = delay
        self._callback = callback
        self._handles: dict[K, TimerHandle] = {}

    def pending_keys(self) -> list[K]:
        return list(self._handles)

    def is_pending(self, key: K) -> bool:
        return key in self._handles

    def schedule(self, key: K) -> None:
        self.cancel(key)
        self._handles[key] = self._backend.call_later(self._delay, self._fire, key)

    def cancel(self, key: K) -> None:
        handle = self._handles.pop(key, None)
        if handle is not None:
            handle.cancel()

    def cancel_all(self) -> None:
        for key in list(self._handles):
            self.cancel(key)

    def _fire(self, key: K) -> None:
        self._handles.pop(key, None)
        self._callback(key)


class _ManualTimer:
    def __init__(self, due: float, callback: Callable[..., Any], args: tuple) -> None:
        self.due = due
        self.callback = callback
        self.args = args
        self.cancelled = False

    def cancel(self) -> None:
        self.cancelled = True


class ManualTimerBackend:
    """Deterministic timer backend; time only moves when ``advance`` is called."""

    def __init__(self) -> None:
        self.now = 0.0
        self._queue: list[tuple[float, int, _ManualTimer]] = []
        self._seq = itertools.count()

    def call_later(self, delay: float, callback: Callable[..., Any], *args: Any) -> _ManualTimer:
        timer = _ManualTimer(self.now + delay, callback, args)
        heapq.heappush(self._queue, (timer.due, next(self._seq), timer))
        return timer

    @property
    def pending_count(self) -> int:
        return sum(1 for _due, _seq, timer in self._queue if not timer.cancelled)

    def advance(self, seconds: float) -> None:
        target = self.now + seconds
        while self._queue and self._queue[0][0] <= target:
            due, _seq, timer = heapq.heappop(self._queue)
            if timer.cancelled:
                continue
            self.now = due
            timer.callback(*timer.args)
        self.now = target

    def run_all(self) -> None:
        while self.pending_count:
            self.advance(max(self._queue[0][0] - self.now, 0.0))


class PeriodicTask:
    """Runs ``callback`` every ``interval`` seconds until stopped."""

    def __init__(self, backend: TimerBackend, interval: float, callback: Callable[[], None]) -> None:
        self._callback = callback
        self._slot = DebouncedTask(backend, interval, self._tick)
        self._running = False

    def start(self) -> None:
        self._running = True
        self._slot.schedule()

    def stop(self) -> None:
        self._running = False
        self._slot.cancel()

    def _tick(self) -> None:
        try:
            self._callback()
        finally:
            if self._running:
                self._slot.schedule()
