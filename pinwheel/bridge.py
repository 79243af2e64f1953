"""Asyncio bridge: run awaitables on a background event-loop thread.

Completion callbacks fire on the loop thread, which is a foreign thread from
the executor's point of view; callers hand them wake handles, whose
``wake()`` is thread-safe and interrupts the reactor's blocking wait.
"""

from __future__ import annotations

import asyncio
import threading
from collections.abc import Awaitable, Callable
from concurrent.futures import Future
from typing import Any, TypeVar

from loguru import logger

T = TypeVar("T")

logger = logger.bind(component="bridge")


class AsyncioBridge:
    """Runs asyncio awaitables in a background thread.

    The loop thread is started lazily on the first ``submit`` and stopped by
    ``shutdown``. Cancelling the returned future cancels the awaitable; the
    callbacks are then not invoked.
    """

    def __init__(self, *, shutdown_timeout: float = 5.0) -> None:
        self._loop: asyncio.AbstractEventLoop | None = None
        self._thread: threading.Thread | None = None
        self._started = threading.Event()
        self._lock = threading.Lock()
        self._shutdown = False
        self._shutdown_timeout = shutdown_timeout

    def _run_loop(self) -> None:
        loop = asyncio.new_event_loop()
        asyncio.set_event_loop(loop)
        self._loop = loop
        self._started.set()
        try:
            loop.run_forever()
        finally:
            loop.close()

    def _ensure_started(self) -> asyncio.AbstractEventLoop:
        with self._lock:
            if self._shutdown:
                raise RuntimeError("AsyncioBridge is shut down")
            if self._thread is None:
                self._thread = threading.Thread(
                    target=self._run_loop, name="pinwheel-asyncio", daemon=True
                )
                self._thread.start()
                self._started.wait()
                logger.debug("Started asyncio bridge thread")
        loop = self._loop
        if loop is None:
            raise RuntimeError("AsyncioBridge loop thread failed to start")
        return loop

    @property
    def started(self) -> bool:
        return self._thread is not None

    def submit(
        self,
        awaitable: Awaitable[T],
        on_success: Callable[[T], None],
        on_error: Callable[[BaseException], None],
    ) -> Future[Any]:
        loop = self._ensure_started()

        async def wrapper() -> None:
            try:
                result = await awaitable
            except asyncio.CancelledError:
                raise
            except BaseException as e:
                on_error(e)
                return
            on_success(result)

        return asyncio.run_coroutine_threadsafe(wrapper(), loop)

    def shutdown(self) -> None:
        with self._lock:
            if self._shutdown:
                return
            self._shutdown = True
            loop, thread = self._loop, self._thread
        if loop is not None:
            loop.call_soon_threadsafe(loop.stop)
        if thread is not None:
            thread.join(timeout=self._shutdown_timeout)
            logger.debug("Stopped asyncio bridge thread")


__all__ = [
    "AsyncioBridge",
]
