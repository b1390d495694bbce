from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable
from concurrent.futures import Executor
from typing import Any, Protocol

from app.services.remote_store import RemoteStoreError

logger = logging.getLogger(__name__)

RemoteCall = Callable[[], Any]
# (result, error); exactly one of them is meaningful
Completion = Callable[[Any, RemoteStoreError | None], None]


class RemoteCallRunner(Protocol):
    def submit(self, call: RemoteCall, on_done: Completion) -> None: ...

    def dispatch(self, callback: Callable[..., Any], *args: Any) -> None: ...


class InlineRunner:
    """Runs remote calls on the caller's thread and completes immediately."""

    def submit(self, call: RemoteCall, on_done: Completion) -> None:
        try:
            result = call()
        except RemoteStoreError as exc:
            on_done(None, exc)
            return
        on_done(result, None)

    def dispatch(self, callback: Callable[..., Any], *args: Any) -> None:
        callback(*args)


class ThreadPoolRunner:
    """Runs blocking remote calls in ``executor``; completions and feed callbacks land on ``loop``.

    A single-worker executor keeps remote calls in submission order.
    """

    def __init__(self, loop: asyncio.AbstractEventLoop, executor: Executor) -> None:
        self._loop = loop
        self._executor = executor

    def submit(self, call: RemoteCall, on_done: Completion) -> None:
        future = self._loop.run_in_executor(self._executor, call)
        future.add_done_callback(lambda done: self._complete(done, on_done))

    def dispatch(self, callback: Callable[..., Any], *args: Any) -> None:
        self._loop.call_soon_threadsafe(callback, *args)

    def _complete(self, future: asyncio.Future, on_done: Completion) -> None:
        if future.cancelled():
            on_done(None, RemoteStoreError('Remote call was cancelled'))
            return
        exc = future.exception()
        if exc is None:
            on_done(future.result(), None)
        elif isinstance(exc, RemoteStoreError):
            on_done(None, exc)
        else:
            logger.error('Unexpected failure in remote call', exc_info=exc)
            on_done(None, RemoteStoreError(str(exc)))
