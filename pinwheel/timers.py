"""Min-heap queue of deadline-ordered wake handles."""

from __future__ import annotations

import heapq
import itertools
import math
import threading
from dataclasses import dataclass, field
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from pinwheel.types import TaskId
    from pinwheel.wake import Wakeable

# Below this many cancelled entries the heap is never rebuilt.
_COMPACT_MIN_DEAD = 64


def _ensure_deadline(value: float) -> float:
    if not isinstance(value, int | float):
        raise TypeError(f"deadline must be float, got {type(value).__name__}")
    deadline = float(value)
    if math.isnan(deadline):
        raise ValueError("deadline must not be NaN")
    return deadline


@dataclass(eq=False)
class TimerEntry:
    deadline: float
    sequence: int
    waker: Wakeable = field(repr=False)
    cancelled: bool = False
    fired: bool = False
    _queue: TimerQueue | None = field(default=None, repr=False)

    @property
    def owner(self) -> TaskId | None:
        return self.waker.task_id

    @property
    def active(self) -> bool:
        return not (self.cancelled or self.fired)

    def cancel(self) -> bool:
        if self._queue is None:
            if not self.active:
                return False
            self.cancelled = True
            return True
        return self._queue.cancel(self)


class TimerQueue:
    """Deadline-ordered registry of wake handles.

    Cancelled entries are flagged and dropped lazily when they reach the top
    of the heap, or all at once when they make up more than half of it;
    ``len()`` counts live entries only. The owner index lets a
    cancelled task drop all of its timers without scanning the heap.
    """

    def __init__(self) -> None:
        self._sequence = itertools.count(1)
        self._items: list[tuple[float, int, TimerEntry]] = []
        self._by_owner: dict[TaskId, set[TimerEntry]] = {}
        self._live = 0
        self._dead = 0
        self._lock = threading.RLock()

    def push(self, deadline: float, waker: Wakeable) -> TimerEntry:
        target = _ensure_deadline(deadline)
        with self._lock:
            entry = TimerEntry(
                deadline=target,
                sequence=next(self._sequence),
                waker=waker,
                _queue=self,
            )
            heapq.heappush(self._items, (entry.deadline, entry.sequence, entry))
            if entry.owner is not None:
                self._by_owner.setdefault(entry.owner, set()).add(entry)
            self._live += 1
            return entry

    def cancel(self, entry: TimerEntry) -> bool:
        with self._lock:
            if not entry.active:
                return False
            entry.cancelled = True
            self._forget(entry)
            self._dead += 1
            self._maybe_compact()
            return True

    def remove_owner(self, owner: TaskId) -> int:
        with self._lock:
            entries = self._by_owner.pop(owner, set())
            removed = 0
            for entry in entries:
                if entry.active:
                    entry.cancelled = True
                    self._live -= 1
                    self._dead += 1
                    removed += 1
            self._maybe_compact()
            return removed

    def next_deadline(self) -> float | None:
        with self._lock:
            self._discard_dead_head()
            if not self._items:
                return None
            return self._items[0][0]

    def pop_expired(self, now: float) -> list[TimerEntry]:
        """Remove and return live entries whose deadline is ``<= now``, in order."""
        expired: list[TimerEntry] = []
        with self._lock:
            while self._items:
                deadline, _seq, entry = self._items[0]
                if entry.active and deadline > now:
                    break
                heapq.heappop(self._items)
                if not entry.active:
                    self._dead -= 1
                    continue
                entry.fired = True
                self._forget(entry)
                expired.append(entry)
        return expired

    def clear(self) -> None:
        with self._lock:
            for _deadline, _seq, entry in self._items:
                if entry.active:
                    entry.cancelled = True
            self._items.clear()
            self._by_owner.clear()
            self._live = 0
            self._dead = 0

    def owned_by(self, owner: TaskId) -> int:
        with self._lock:
            return sum(1 for entry in self._by_owner.get(owner, ()) if entry.active)

    def _forget(self, entry: TimerEntry) -> None:
        self._live -= 1
        owner = entry.owner
        if owner is None:
            return
        bucket = self._by_owner.get(owner)
        if bucket is not None:
            bucket.discard(entry)
            if not bucket:
                del self._by_owner[owner]

    def _discard_dead_head(self) -> None:
        while self._items and not self._items[0][2].active:
            heapq.heappop(self._items)
            self._dead -= 1

    def _maybe_compact(self) -> None:
        if self._dead <= _COMPACT_MIN_DEAD or self._dead * 2 <= len(self._items):
            return
        self._items = [item for item in self._items if item[2].active]
        heapq.heapify(self._items)
        self._dead = 0

    def empty(self) -> bool:
        return len(self) == 0

    def __len__(self) -> int:
        with self._lock:
            return self._live


__all__ = [
    "TimerEntry",
    "TimerQueue",
]
