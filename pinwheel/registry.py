"""Readiness registry: I/O source + interest -> wake handle."""

from __future__ import annotations

import threading
from collections.abc import Callable, Iterator
from dataclasses import dataclass, field
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from pinwheel.types import Interest, TaskId
    from pinwheel.wake import Wakeable


@dataclass(eq=False)
class IoEntry:
    """One pending readiness interest.

    ``token`` is the backend registration this entry owns. ``fired`` is set
    by the reactor when the backend reports the token ready, which is how a
    woken step function tells a real readiness event from a spurious wake.
    """

    token: int
    fd: int
    interest: Interest
    waker: Wakeable = field(repr=False)
    fired: bool = False
    cancelled: bool = False
    _release: Callable[[IoEntry], bool] | None = field(default=None, repr=False)

    @property
    def owner(self) -> TaskId | None:
        return self.waker.task_id

    @property
    def active(self) -> bool:
        return not (self.fired or self.cancelled)

    def cancel(self) -> bool:
        if self._release is None:
            if not self.active:
                return False
            self.cancelled = True
            return True
        return self._release(self)


class ReadinessRegistry:
    """Token-keyed table of pending interests with a per-owner index."""

    def __init__(self) -> None:
        self._entries: dict[int, IoEntry] = {}
        self._by_owner: dict[TaskId, set[int]] = {}
        self._lock = threading.RLock()

    def add(self, entry: IoEntry) -> IoEntry:
        with self._lock:
            if entry.token in self._entries:
                raise ValueError(f"token {entry.token} is already registered")
            self._entries[entry.token] = entry
            if entry.owner is not None:
                self._by_owner.setdefault(entry.owner, set()).add(entry.token)
            return entry

    def get(self, token: int) -> IoEntry | None:
        with self._lock:
            return self._entries.get(token)

    def pop(self, token: int) -> IoEntry | None:
        with self._lock:
            entry = self._entries.pop(token, None)
            if entry is not None:
                self._unindex(entry)
            return entry

    def remove(self, entry: IoEntry) -> bool:
        with self._lock:
            if self._entries.get(entry.token) is not entry:
                return False
            return self.pop(entry.token) is not None

    def remove_owner(self, owner: TaskId) -> list[IoEntry]:
        with self._lock:
            tokens = self._by_owner.pop(owner, set())
            return [
                entry
                for token in sorted(tokens)
                if (entry := self._entries.pop(token, None)) is not None
            ]

    def entries_for(self, fd: int) -> list[IoEntry]:
        with self._lock:
            return [entry for entry in self._entries.values() if entry.fd == fd]

    def owned_by(self, owner: TaskId) -> int:
        with self._lock:
            return len(self._by_owner.get(owner, ()))

    def clear(self) -> list[IoEntry]:
        with self._lock:
            entries = list(self._entries.values())
            self._entries.clear()
            self._by_owner.clear()
            return entries

    def _unindex(self, entry: IoEntry) -> None:
        owner = entry.owner
        if owner is None:
            return
        tokens = self._by_owner.get(owner)
        if tokens is not None:
            tokens.discard(entry.token)
            if not tokens:
                del self._by_owner[owner]

    def __contains__(self, token: object) -> bool:
        with self._lock:
            return token in self._entries

    def __iter__(self) -> Iterator[IoEntry]:
        with self._lock:
            return iter(list(self._entries.values()))

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)


__all__ = [
    "IoEntry",
    "ReadinessRegistry",
]
