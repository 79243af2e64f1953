"""Monotonic clocks used for timer deadlines."""

from __future__ import annotations

import math
import threading
import time
from typing import Protocol, runtime_checkable


def _coerce_finite_float(value: float, *, name: str) -> float:
    if not isinstance(value, int | float):
        raise TypeError(f"{name} must be float, got {type(value).__name__}")
    coerced = float(value)
    if math.isnan(coerced) or math.isinf(coerced):
        raise ValueError(f"{name} must be finite, got {value!r}")
    return coerced


@runtime_checkable
class Clock(Protocol):
    """Source of monotonic instants, in seconds."""

    def now(self) -> float: ...


class MonotonicClock:
    """Wall-clock-independent time from ``time.monotonic``."""

    def now(self) -> float:
        return time.monotonic()

    def __repr__(self) -> str:
        return "MonotonicClock()"


class ManualClock:
    """Virtual clock that only moves when told to.

    Used with ``SimulatedBackend`` for deterministic timer tests: instead of
    sleeping, the backend advances this clock to the next deadline.
    """

    def __init__(self, start: float = 0.0) -> None:
        self._current = _coerce_finite_float(start, name="start")
        self._lock = threading.Lock()

    def now(self) -> float:
        with self._lock:
            return self._current

    def advance(self, seconds: float) -> float:
        delta = _coerce_finite_float(seconds, name="seconds")
        if delta < 0:
            raise ValueError(f"seconds must be non-negative, got {seconds!r}")
        with self._lock:
            self._current += delta
            return self._current

    def advance_to(self, target: float) -> float:
        """Move forward to ``target``; moving backwards is ignored."""
        value = _coerce_finite_float(target, name="target")
        with self._lock:
            if value > self._current:
                self._current = value
            return self._current

    def __repr__(self) -> str:
        return f"ManualClock({self.now()!r})"


__all__ = [
    "Clock",
    "ManualClock",
    "MonotonicClock",
]
