"""Readiness backends consumed by the reactor.

The reactor only relies on the ``Backend`` protocol:

- ``register(source, interest) -> token``
- ``deregister(token)``
- ``wait(timeout) -> list[token]``: block until a registered token is
  ready, the timeout elapses, or ``interrupt()`` is called
- ``interrupt()``: thread-safe; makes a concurrent or the next ``wait``
  return early
- ``close()``

``SelectorBackend`` adapts ``selectors.DefaultSelector`` (epoll, kqueue,
poll or select depending on the platform). ``SimulatedBackend`` is an
in-memory backend for deterministic tests: sources become ready through
``trigger()`` and waiting advances a ``ManualClock`` instead of sleeping.
"""

from __future__ import annotations

import itertools
import selectors
import socket
import threading
from typing import Protocol, runtime_checkable

from loguru import logger

from pinwheel.clock import ManualClock
from pinwheel.errors import BackendError
from pinwheel.types import Interest, Source, fileno_of

logger = logger.bind(component="backend")

# Longer selector timeouts overflow on some platforms; the reactor re-polls.
MAXIMUM_SELECT_TIMEOUT = 24 * 3600


@runtime_checkable
class Backend(Protocol):
    def register(self, source: Source, interest: Interest) -> int: ...

    def deregister(self, token: int) -> None: ...

    def wait(self, timeout: float | None) -> list[int]: ...

    def interrupt(self) -> None: ...

    def close(self) -> None: ...


class SimulationStalledError(BackendError):
    """Raised by ``SimulatedBackend`` when asked to wait forever with nothing pending."""

    def __init__(self) -> None:
        super().__init__(
            RuntimeError("All tasks are waiting and no timer or trigger can wake them")
        )


def _selector_events(interest: Interest) -> int:
    events = 0
    if interest & Interest.READ:
        events |= selectors.EVENT_READ
    if interest & Interest.WRITE:
        events |= selectors.EVENT_WRITE
    return events


class SelectorBackend:
    """Backend over the platform's best ``selectors`` implementation.

    A selector accepts one registration per file descriptor, so tokens
    registered on the same fd are folded into a single combined event mask.
    Cross-thread interruption uses a socketpair whose read end lives in the
    same selector as every other source.
    """

    def __init__(self, selector: selectors.BaseSelector | None = None) -> None:
        self._selector = selector or selectors.DefaultSelector()
        self._tokens = itertools.count(1)
        self._by_token: dict[int, tuple[int, Interest]] = {}
        self._by_fd: dict[int, dict[int, Interest]] = {}
        self._lock = threading.Lock()
        self._closed = False
        self._wait_sock, self._notify_sock = socket.socketpair()
        self._wait_sock.setblocking(False)
        self._notify_sock.setblocking(False)
        self._selector.register(self._wait_sock, selectors.EVENT_READ)

    def register(self, source: Source, interest: Interest) -> int:
        fd = fileno_of(source)
        with self._lock:
            self._ensure_open()
            token = next(self._tokens)
            tokens = self._by_fd.setdefault(fd, {})
            tokens[token] = interest
            self._by_token[token] = (fd, interest)
            try:
                self._sync_fd(fd)
            except BaseException:
                del self._by_token[token]
                del tokens[token]
                if not tokens:
                    del self._by_fd[fd]
                raise
            return token

    def deregister(self, token: int) -> None:
        with self._lock:
            found = self._by_token.pop(token, None)
            if found is None or self._closed:
                return
            fd, _interest = found
            tokens = self._by_fd.get(fd)
            if tokens is not None:
                tokens.pop(token, None)
                if not tokens:
                    del self._by_fd[fd]
            self._sync_fd(fd)

    def wait(self, timeout: float | None) -> list[int]:
        if self._closed:
            raise BackendError(RuntimeError("backend is closed"))
        if timeout is not None:
            timeout = min(timeout, MAXIMUM_SELECT_TIMEOUT)
        events = self._selector.select(timeout)
        ready: list[int] = []
        with self._lock:
            for key, mask in events:
                if key.fileobj is self._wait_sock:
                    self._drain_notifications()
                    continue
                for token, interest in self._by_fd.get(key.fd, {}).items():
                    if _selector_events(interest) & mask:
                        ready.append(token)
        return ready

    def interrupt(self) -> None:
        if self._closed:
            return
        try:
            self._notify_sock.send(b"\x00")
        except (BlockingIOError, InterruptedError):
            # Buffer full: a wakeup is already pending.
            pass

    def close(self) -> None:
        with self._lock:
            if self._closed:
                return
            self._closed = True
            self._by_token.clear()
            self._by_fd.clear()
        self._selector.close()
        self._wait_sock.close()
        self._notify_sock.close()

    def _sync_fd(self, fd: int) -> None:
        events = 0
        for interest in self._by_fd.get(fd, {}).values():
            events |= _selector_events(interest)
        try:
            registered = self._selector.get_key(fd)
        except KeyError:
            registered = None
        try:
            if registered is None:
                if events:
                    self._selector.register(fd, events)
            elif not events:
                self._selector.unregister(fd)
            elif registered.events != events:
                self._selector.modify(fd, events)
        except (OSError, ValueError) as exc:
            if events:
                raise
            # The source was closed before its interest was dropped.
            logger.debug("Dropping registration for closed fd {}: {}", fd, exc)

    def _drain_notifications(self) -> None:
        while True:
            try:
                if not self._wait_sock.recv(4096):
                    return
            except (BlockingIOError, InterruptedError):
                return

    def _ensure_open(self) -> None:
        if self._closed:
            raise BackendError(RuntimeError("backend is closed"))

    def __len__(self) -> int:
        with self._lock:
            return len(self._by_token)

    def __repr__(self) -> str:
        return f"SelectorBackend({type(self._selector).__name__}, tokens={len(self)})"


class SimulatedBackend:
    """In-memory backend with virtual time.

    ``trigger(source, interest)`` marks a source ready; the trigger stays
    pending until a ``wait`` delivers it to at least one registered token.
    With nothing ready, ``wait(timeout)`` advances the manual clock by
    ``timeout`` and returns. ``wait(None)`` with nothing ready blocks on a
    condition until another thread triggers or interrupts, or raises
    ``SimulationStalledError`` when ``block_forever`` is False.
    """

    def __init__(
        self,
        clock: ManualClock | None = None,
        *,
        block_forever: bool = False,
    ) -> None:
        self.clock = clock or ManualClock()
        self._block_forever = block_forever
        self._tokens = itertools.count(1)
        self._registrations: dict[int, tuple[int, Interest]] = {}
        self._triggered: set[tuple[int, Interest]] = set()
        self._interrupted = False
        self._closed = False
        self._cond = threading.Condition()
        self.wait_calls: list[float | None] = []

    def register(self, source: Source, interest: Interest) -> int:
        fd = fileno_of(source)
        with self._cond:
            if self._closed:
                raise BackendError(RuntimeError("backend is closed"))
            token = next(self._tokens)
            self._registrations[token] = (fd, interest)
            return token

    def deregister(self, token: int) -> None:
        with self._cond:
            self._registrations.pop(token, None)

    def trigger(self, source: Source, interest: Interest = Interest.READ) -> None:
        fd = fileno_of(source)
        with self._cond:
            for flag in (Interest.READ, Interest.WRITE):
                if interest & flag:
                    self._triggered.add((fd, flag))
            self._cond.notify_all()

    def wait(self, timeout: float | None) -> list[int]:
        with self._cond:
            self.wait_calls.append(timeout)
            if self._closed:
                raise BackendError(RuntimeError("backend is closed"))
            ready = self._collect_ready()
            if ready or self._consume_interrupt() or timeout == 0:
                return ready
            if timeout is not None:
                self.clock.advance(timeout)
                return ready
            if not self._block_forever:
                raise SimulationStalledError()
            while not ready:
                self._cond.wait()
                if self._consume_interrupt():
                    break
                ready = self._collect_ready()
            return ready

    def interrupt(self) -> None:
        with self._cond:
            self._interrupted = True
            self._cond.notify_all()

    def close(self) -> None:
        with self._cond:
            self._closed = True
            self._registrations.clear()
            self._triggered.clear()
            self._cond.notify_all()

    def _collect_ready(self) -> list[int]:
        ready: list[int] = []
        delivered: set[tuple[int, Interest]] = set()
        for token, (fd, interest) in self._registrations.items():
            for flag in (Interest.READ, Interest.WRITE):
                if interest & flag and (fd, flag) in self._triggered:
                    ready.append(token)
                    delivered.add((fd, flag))
                    break
        self._triggered -= delivered
        return ready

    def _consume_interrupt(self) -> bool:
        interrupted = self._interrupted
        self._interrupted = False
        return interrupted

    def __len__(self) -> int:
        with self._cond:
            return len(self._registrations)


__all__ = [
    "Backend",
    "SelectorBackend",
    "SimulatedBackend",
    "SimulationStalledError",
]
