"""Manual-reset signal: a thread-safe event many tasks can wait on."""

from __future__ import annotations

import itertools
import threading
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from pinwheel.effects import SignalWaitEffect
    from pinwheel.wake import Wakeable


class ManualResetSignal:
    """Event that stays set until ``clear()``.

    ``set()`` may be called from any thread. It wakes every task waiting at
    that moment exactly once and empties the waiter table; tasks that start
    waiting while the signal is set do not suspend at all.

    Each ``set()`` starts a new epoch, so a waiter that missed a short
    set/clear pulse still sees that the signal fired after it subscribed.
    """

    def __init__(self, name: str | None = None) -> None:
        self.name = name
        self._flag = False
        self._epoch = 0
        self._tokens = itertools.count(1)
        self._waiters: dict[int, Wakeable] = {}
        self._lock = threading.Lock()

    def is_set(self) -> bool:
        with self._lock:
            return self._flag

    def set(self) -> int:
        """Set the signal; returns how many waiters were woken."""
        with self._lock:
            if self._flag:
                return 0
            self._flag = True
            self._epoch += 1
            waiters = list(self._waiters.values())
            self._waiters.clear()
        for waker in waiters:
            waker.wake()
        return len(waiters)

    def clear(self) -> None:
        with self._lock:
            self._flag = False

    def wait(self) -> SignalWaitEffect:
        from pinwheel.effects import WaitSignal

        return WaitSignal(self)

    @property
    def waiter_count(self) -> int:
        with self._lock:
            return len(self._waiters)

    def _subscribe(self, waker: Wakeable) -> tuple[int, int]:
        with self._lock:
            token = next(self._tokens)
            self._waiters[token] = waker
            return token, self._epoch

    def _unsubscribe(self, token: int) -> bool:
        with self._lock:
            return self._waiters.pop(token, None) is not None

    def _fired_since(self, epoch: int) -> bool:
        with self._lock:
            return self._flag or self._epoch != epoch

    def __repr__(self) -> str:
        state = "set" if self.is_set() else "clear"
        return f"ManualResetSignal({self.name!r}, {state}, waiters={self.waiter_count})"


__all__ = [
    "ManualResetSignal",
]
