"""Reactor: timers + readiness registry over a blocking backend.

The reactor owns the Timer Queue and the Readiness Registry. ``poll()``
computes one timeout from the nearest live deadline, blocks in the backend,
and then invokes the wake handles of every fired I/O interest and expired
timer. Interests are one-shot: a fired entry is removed and deregistered,
and re-arming is up to the woken step function.

Wake handles are always invoked after the reactor's locks are released, so
a wake (which takes the executor lock) can never deadlock against a cancel
(which holds the executor lock and then removes reactor entries).
"""

from __future__ import annotations

import math
import threading
from typing import TYPE_CHECKING

from loguru import logger

from pinwheel.backend import Backend, SelectorBackend
from pinwheel.clock import Clock, MonotonicClock
from pinwheel.errors import BackendError
from pinwheel.registry import IoEntry, ReadinessRegistry
from pinwheel.timers import TimerEntry, TimerQueue
from pinwheel.types import Interest, Source, fileno_of

if TYPE_CHECKING:
    from pinwheel.types import TaskId
    from pinwheel.wake import Wakeable

logger = logger.bind(component="reactor")


class Reactor:
    def __init__(
        self,
        backend: Backend | None = None,
        clock: Clock | None = None,
        *,
        max_poll_timeout: float | None = None,
    ) -> None:
        self.backend: Backend = backend if backend is not None else SelectorBackend()
        self.clock: Clock = clock if clock is not None else MonotonicClock()
        self.max_poll_timeout = max_poll_timeout
        self.timers = TimerQueue()
        self.registry = ReadinessRegistry()
        self._lock = threading.RLock()
        self._closed = False

    # ------------------------------------------------------------------
    # Registration
    # ------------------------------------------------------------------

    def add_timer(self, deadline: float, waker: Wakeable) -> TimerEntry:
        return self.timers.push(deadline, waker)

    def cancel_timer(self, entry: TimerEntry) -> bool:
        return self.timers.cancel(entry)

    def add_io(self, source: Source, interest: Interest, waker: Wakeable) -> IoEntry:
        if interest not in (Interest.READ, Interest.WRITE):
            raise ValueError(f"interest must be READ or WRITE, got {interest!r}")
        fd = fileno_of(source)
        with self._lock:
            if self._closed:
                raise BackendError(RuntimeError("reactor is closed"))
            token = self.backend.register(fd, interest)
            entry = IoEntry(
                token=token,
                fd=fd,
                interest=interest,
                waker=waker,
                _release=self.remove_io,
            )
            return self.registry.add(entry)

    def add_reader(self, source: Source, waker: Wakeable) -> IoEntry:
        return self.add_io(source, Interest.READ, waker)

    def add_writer(self, source: Source, waker: Wakeable) -> IoEntry:
        return self.add_io(source, Interest.WRITE, waker)

    def remove_io(self, entry: IoEntry) -> bool:
        with self._lock:
            if not self.registry.remove(entry):
                return False
            entry.cancelled = True
            self.backend.deregister(entry.token)
            return True

    def remove_owner(self, owner: TaskId) -> int:
        """Synchronously drop every timer and interest registered by ``owner``."""
        with self._lock:
            removed = self.timers.remove_owner(owner)
            for entry in self.registry.remove_owner(owner):
                entry.cancelled = True
                self.backend.deregister(entry.token)
                removed += 1
            return removed

    def owned_by(self, owner: TaskId) -> int:
        return self.timers.owned_by(owner) + self.registry.owned_by(owner)

    @property
    def pending_timers(self) -> int:
        return len(self.timers)

    @property
    def pending_io(self) -> int:
        return len(self.registry)

    def has_pending(self) -> bool:
        return bool(self.pending_timers or self.pending_io)

    # ------------------------------------------------------------------
    # Waiting
    # ------------------------------------------------------------------

    def compute_timeout(self, *, block: bool = True) -> float | None:
        if not block:
            return 0.0
        deadline = self.timers.next_deadline()
        timeout: float | None = None
        if deadline is not None and math.isfinite(deadline):
            timeout = max(0.0, deadline - self.clock.now())
        if self.max_poll_timeout is not None:
            timeout = (
                self.max_poll_timeout
                if timeout is None
                else min(timeout, self.max_poll_timeout)
            )
        return timeout

    def poll(self, *, block: bool = True) -> int:
        """Wait once for readiness or timers and fire the matching wake handles.

        Returns:
            Number of wake handles invoked.

        Raises:
            BackendError: The backend failed with a non-transient error.
        """
        while True:
            timeout = self.compute_timeout(block=block)
            try:
                ready = self.backend.wait(timeout)
                break
            except InterruptedError:
                logger.debug("Backend wait interrupted; retrying")
                continue
            except BackendError:
                raise
            except OSError as exc:
                logger.error("Readiness backend failed: {!r}", exc)
                raise BackendError(exc) from exc

        wakers: list[Wakeable] = []
        with self._lock:
            for token in ready:
                entry = self.registry.pop(token)
                if entry is None:
                    # Deregistered while the backend was waiting.
                    continue
                entry.fired = True
                self.backend.deregister(token)
                wakers.append(entry.waker)
        for timer in self.timers.pop_expired(self.clock.now()):
            wakers.append(timer.waker)

        for waker in wakers:
            waker.wake()
        return len(wakers)

    def interrupt(self) -> None:
        """Make a blocked (or the next) ``poll`` return early. Thread-safe."""
        self.backend.interrupt()

    def close(self) -> None:
        with self._lock:
            if self._closed:
                return
            self._closed = True
            self.timers.clear()
            for entry in self.registry.clear():
                entry.cancelled = True
            self.backend.close()
        logger.debug("Reactor closed")

    @property
    def closed(self) -> bool:
        return self._closed

    def __repr__(self) -> str:
        return (
            f"Reactor(timers={self.pending_timers}, io={self.pending_io}, "
            f"backend={type(self.backend).__name__})"
        )


__all__ = [
    "Reactor",
]
