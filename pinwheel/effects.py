"""Suspension points for generator computations.

Effects are yielded from ``@do`` generators:

    @do
    def fetch(sock):
        yield Sleep(0.5)                    # timer
        yield Readable(sock)                # I/O readiness
        child = yield Spawn(worker())       # new task, returns its handle
        value = yield child.join()          # wait for another task
        value = yield Timeout(2.0, slow())  # race a program against a timer
        return value

Each effect is *armed* into a ``Waiter`` that owns the registrations it made
on behalf of the running task. The generator driver polls the waiter after
arming and after every wake. ``poll`` returns ``None`` while the awaited
condition does not hold (including after a spurious wake), otherwise a
``Result`` that is sent or thrown into the generator. ``release`` drops every
registration the waiter still holds and is always called exactly once.
"""

from __future__ import annotations

import math
import threading
from dataclasses import dataclass, field
from functools import partial
from typing import TYPE_CHECKING, Any, Generic, Protocol, TypeVar

from pinwheel._vendor import Err, Ok, Result
from pinwheel.errors import InvalidStateError, TaskTimeoutError, UnknownEffectError
from pinwheel.step import Done, Failed, Suspended
from pinwheel.task import TaskHandle
from pinwheel.types import Interest, Source, fileno_of

if TYPE_CHECKING:
    from concurrent.futures import Future as ConcurrentFuture

    from pinwheel.registry import IoEntry
    from pinwheel.step import Computation, WakeContext
    from pinwheel.sync import ManualResetSignal
    from pinwheel.timers import TimerEntry

T = TypeVar("T")


def _ensure_seconds(value: float, *, name: str) -> float:
    if not isinstance(value, int | float):
        raise TypeError(f"{name} must be float, got {type(value).__name__}")
    seconds = float(value)
    if math.isnan(seconds) or seconds < 0:
        raise ValueError(f"{name} must be non-negative, got {value!r}")
    return seconds


class Waiter(Protocol):
    def poll(self, ctx: WakeContext) -> Result[Any] | None: ...

    def release(self) -> None: ...


class EffectBase:
    """Base class for everything a generator computation may yield."""

    __slots__ = ()

    def arm(self, ctx: WakeContext) -> Waiter:
        raise NotImplementedError


def arm(value: Any, ctx: WakeContext) -> Waiter:
    """Arm a yielded value: an effect, or a Program run inline."""

    if isinstance(value, EffectBase):
        return value.arm(ctx)
    from pinwheel.program import Program

    if isinstance(value, Program):
        return _InlineWaiter(value.computation())
    raise UnknownEffectError(value)


# ============================================================================
# Waiters
# ============================================================================


class _Ready:
    __slots__ = ("_outcome",)

    def __init__(self, outcome: Result[Any]) -> None:
        self._outcome = outcome

    def poll(self, ctx: WakeContext) -> Result[Any] | None:
        return self._outcome

    def release(self) -> None:
        return None


class _TimerWaiter:
    __slots__ = ("_deadline", "_entry")

    def __init__(self, ctx: WakeContext, deadline: float) -> None:
        self._deadline = deadline
        self._entry: TimerEntry | None = None
        if deadline > ctx.now():
            self._entry = ctx.add_timer(deadline)

    def poll(self, ctx: WakeContext) -> Result[Any] | None:
        if ctx.now() >= self._deadline:
            return Ok(None)
        return None

    def release(self) -> None:
        if self._entry is not None:
            self._entry.cancel()


class _IoWaiter:
    __slots__ = ("_entry", "_source")

    def __init__(self, entry: IoEntry, source: Source) -> None:
        self._entry = entry
        self._source = source

    def poll(self, ctx: WakeContext) -> Result[Any] | None:
        if self._entry.fired:
            return Ok(self._source)
        return None

    def release(self) -> None:
        self._entry.cancel()


class _JoinWaiter:
    __slots__ = ("_callback", "_handles", "_waker")

    def __init__(self, ctx: WakeContext, handles: tuple[TaskHandle[Any], ...]) -> None:
        for handle in handles:
            if handle is ctx.handle:
                raise InvalidStateError(f"Task {handle.id} cannot wait on itself")
        self._handles = handles
        self._waker = ctx.waker
        self._callback = self._on_done
        for handle in handles:
            handle.add_done_callback(self._callback)

    def _on_done(self, _handle: TaskHandle[Any]) -> None:
        self._waker.wake()

    def poll(self, ctx: WakeContext) -> Result[Any] | None:
        values: list[Any] = []
        for handle in self._handles:
            outcome = handle.outcome()
            if outcome is None:
                return None
            if outcome.is_err():
                return outcome
            values.append(outcome.ok())
        if len(self._handles) == 1:
            return Ok(values[0])
        return Ok(tuple(values))

    def release(self) -> None:
        for handle in self._handles:
            handle.remove_done_callback(self._callback)


class _GatherWaiter(_JoinWaiter):
    """Like a join, but always produces a tuple and fails on the first error."""

    __slots__ = ()

    def poll(self, ctx: WakeContext) -> Result[Any] | None:
        outcomes = [handle.outcome() for handle in self._handles]
        for outcome in outcomes:
            if outcome is not None and outcome.is_err():
                return outcome
        values: list[Any] = []
        for outcome in outcomes:
            if outcome is None:
                return None
            values.append(outcome.ok())
        return Ok(tuple(values))


@dataclass(frozen=True)
class RaceResult(Generic[T]):
    index: int
    value: T
    winner: TaskHandle[T] = field(repr=False)


class _RaceWaiter:
    """Spawn every contender; the first to finish wins, the rest are cancelled."""

    def __init__(self, ctx: WakeContext, programs: tuple[Any, ...]) -> None:
        self._waker = ctx.waker
        self._finished_order: list[int] = []
        self._lock = threading.Lock()
        self._children: list[tuple[TaskHandle[Any], Any]] = []
        self._released = False
        for index, program in enumerate(programs):
            handle = ctx.spawn(program)
            callback = partial(self._on_done, index)
            self._children.append((handle, callback))
            handle.add_done_callback(callback)

    def _on_done(self, index: int, _handle: TaskHandle[Any]) -> None:
        with self._lock:
            self._finished_order.append(index)
        self._waker.wake()

    def poll(self, ctx: WakeContext) -> Result[Any] | None:
        with self._lock:
            if not self._finished_order:
                return None
            index = self._finished_order[0]
        winner = self._children[index][0]
        outcome = winner.outcome()
        if outcome is None:
            return None
        self.release()
        if outcome.is_err():
            return outcome
        return Ok(RaceResult(index=index, value=outcome.ok(), winner=winner))

    def release(self) -> None:
        if self._released:
            return
        self._released = True
        for handle, callback in self._children:
            handle.remove_done_callback(callback)
        for handle, _callback in self._children:
            if not handle.done():
                handle.cancel()


class _InlineWaiter:
    """Run a sub-computation inside the calling task, sharing its wake handle."""

    def __init__(self, inner: Computation) -> None:
        self._inner = inner
        self._finished = False

    def _advance(self, ctx: WakeContext) -> Result[Any] | None:
        try:
            result = self._inner.step(ctx)
        except Exception as exc:
            result = Failed(exc)
        if isinstance(result, Suspended):
            return None
        self._finished = True
        if isinstance(result, Done):
            return Ok(result.value)
        return Err(result.error)

    def poll(self, ctx: WakeContext) -> Result[Any] | None:
        return self._advance(ctx)

    def release(self) -> None:
        if not self._finished:
            self._finished = True
            self._inner.close()


class _TimeoutWaiter(_InlineWaiter):
    """Race the inner computation against a timer on the same wake handle."""

    def __init__(self, ctx: WakeContext, seconds: float, inner: Computation) -> None:
        super().__init__(inner)
        self._seconds = seconds
        self._deadline = ctx.now() + seconds
        self._timer = ctx.add_timer(self._deadline)

    def poll(self, ctx: WakeContext) -> Result[Any] | None:
        if ctx.now() >= self._deadline:
            self.release()
            return Err(TaskTimeoutError(self._seconds))
        outcome = self._advance(ctx)
        if outcome is not None:
            self._timer.cancel()
        return outcome

    def release(self) -> None:
        self._timer.cancel()
        super().release()


class _SignalWaiter:
    __slots__ = ("_epoch", "_signal", "_token")

    def __init__(self, ctx: WakeContext, signal: ManualResetSignal) -> None:
        self._signal = signal
        self._token, self._epoch = signal._subscribe(ctx.waker)

    def poll(self, ctx: WakeContext) -> Result[Any] | None:
        if self._signal._fired_since(self._epoch):
            return Ok(None)
        return None

    def release(self) -> None:
        self._signal._unsubscribe(self._token)


class _YieldWaiter:
    """Give up the rest of this turn: requeue behind every runnable task."""

    __slots__ = ("_polled",)

    def __init__(self, ctx: WakeContext) -> None:
        self._polled = False
        ctx.waker.wake()

    def poll(self, ctx: WakeContext) -> Result[Any] | None:
        if not self._polled:
            self._polled = True
            return None
        return Ok(None)

    def release(self) -> None:
        return None


class _AwaitWaiter:
    """Wait for an asyncio awaitable running on the executor's bridge thread."""

    def __init__(self, ctx: WakeContext, awaitable: Any) -> None:
        self._waker = ctx.waker
        self._lock = threading.Lock()
        self._outcome: Result[Any] | None = None
        self._future: ConcurrentFuture[Any] | None = ctx.executor.asyncio_bridge.submit(
            awaitable, self._on_success, self._on_error
        )

    def _on_success(self, value: Any) -> None:
        with self._lock:
            self._outcome = Ok(value)
        self._waker.wake()

    def _on_error(self, error: BaseException) -> None:
        if not isinstance(error, Exception):
            error = InvalidStateError(f"Awaitable was interrupted: {error!r}")
        with self._lock:
            self._outcome = Err(error)
        self._waker.wake()

    def poll(self, ctx: WakeContext) -> Result[Any] | None:
        with self._lock:
            return self._outcome

    def release(self) -> None:
        with self._lock:
            pending = self._outcome is None
        if pending and self._future is not None:
            self._future.cancel()


# ============================================================================
# Effects
# ============================================================================


@dataclass(frozen=True)
class SleepEffect(EffectBase):
    """Suspend for ``seconds`` on the executor clock."""

    seconds: float

    def __post_init__(self) -> None:
        object.__setattr__(self, "seconds", _ensure_seconds(self.seconds, name="seconds"))

    def arm(self, ctx: WakeContext) -> Waiter:
        return _TimerWaiter(ctx, ctx.now() + self.seconds)


@dataclass(frozen=True)
class SleepUntilEffect(EffectBase):
    """Suspend until the executor clock reaches ``deadline``."""

    deadline: float

    def arm(self, ctx: WakeContext) -> Waiter:
        return _TimerWaiter(ctx, float(self.deadline))


@dataclass(frozen=True)
class IoWaitEffect(EffectBase):
    """Suspend until ``source`` is readable or writable; yields the source back."""

    source: Source
    interest: Interest

    def __post_init__(self) -> None:
        fileno_of(self.source)
        if self.interest not in (Interest.READ, Interest.WRITE):
            raise ValueError(f"interest must be READ or WRITE, got {self.interest!r}")

    def arm(self, ctx: WakeContext) -> Waiter:
        if self.interest is Interest.READ:
            entry = ctx.add_reader(self.source)
        else:
            entry = ctx.add_writer(self.source)
        return _IoWaiter(entry, self.source)


@dataclass(frozen=True)
class JoinEffect(EffectBase):
    """Wait for a task and produce its value (or raise its error)."""

    handle: TaskHandle[Any]

    def __post_init__(self) -> None:
        if not isinstance(self.handle, TaskHandle):
            raise TypeError(f"handle must be TaskHandle, got {type(self.handle).__name__}")

    def arm(self, ctx: WakeContext) -> Waiter:
        if self.handle.done():
            return _Ready(self.handle.outcome())  # type: ignore[arg-type]
        return _JoinWaiter(ctx, (self.handle,))


@dataclass(frozen=True)
class GatherEffect(EffectBase):
    handles: tuple[TaskHandle[Any], ...]

    def __post_init__(self) -> None:
        for i, handle in enumerate(self.handles):
            if not isinstance(handle, TaskHandle):
                raise TypeError(
                    f"Gather argument {i} must be TaskHandle, got {type(handle).__name__}"
                )

    def arm(self, ctx: WakeContext) -> Waiter:
        return _GatherWaiter(ctx, self.handles)


@dataclass(frozen=True)
class RaceEffect(EffectBase):
    programs: tuple[Any, ...]

    def __post_init__(self) -> None:
        if not self.programs:
            raise ValueError("Race requires at least one program")

    def arm(self, ctx: WakeContext) -> Waiter:
        return _RaceWaiter(ctx, self.programs)


@dataclass(frozen=True)
class TimeoutEffect(EffectBase):
    seconds: float
    program: Any

    def __post_init__(self) -> None:
        object.__setattr__(self, "seconds", _ensure_seconds(self.seconds, name="seconds"))

    def arm(self, ctx: WakeContext) -> Waiter:
        from pinwheel.program import as_computation

        return _TimeoutWaiter(ctx, self.seconds, as_computation(self.program))


@dataclass(frozen=True)
class SpawnEffect(EffectBase):
    program: Any
    name: str | None = None
    context: dict[str, Any] = field(default_factory=dict)

    def arm(self, ctx: WakeContext) -> Waiter:
        handle = ctx.spawn(self.program, name=self.name, context=self.context)
        return _Ready(Ok(handle))


@dataclass(frozen=True)
class SignalWaitEffect(EffectBase):
    signal: ManualResetSignal

    def arm(self, ctx: WakeContext) -> Waiter:
        if self.signal.is_set():
            return _Ready(Ok(None))
        return _SignalWaiter(ctx, self.signal)


@dataclass(frozen=True)
class YieldEffect(EffectBase):
    def arm(self, ctx: WakeContext) -> Waiter:
        return _YieldWaiter(ctx)


@dataclass(frozen=True)
class GetTimeEffect(EffectBase):
    def arm(self, ctx: WakeContext) -> Waiter:
        return _Ready(Ok(ctx.now()))


@dataclass(frozen=True)
class CurrentTaskEffect(EffectBase):
    def arm(self, ctx: WakeContext) -> Waiter:
        return _Ready(Ok(ctx.handle))


@dataclass(frozen=True)
class AwaitEffect(EffectBase):
    awaitable: Any

    def arm(self, ctx: WakeContext) -> Waiter:
        return _AwaitWaiter(ctx, self.awaitable)


# ============================================================================
# Constructors
# ============================================================================


def Sleep(seconds: float) -> SleepEffect:
    """Suspend the current task for ``seconds``.

    Example:
        @do
        def tick():
            yield Sleep(0.1)
            return "done"
    """
    return SleepEffect(seconds)


def SleepUntil(deadline: float) -> SleepUntilEffect:
    """Suspend until the executor's monotonic clock reaches ``deadline``."""
    return SleepUntilEffect(deadline)


def Readable(source: Source) -> IoWaitEffect:
    """Suspend until ``source`` is readable. Re-check by reading; readiness can be stale."""
    return IoWaitEffect(source, Interest.READ)


def Writable(source: Source) -> IoWaitEffect:
    return IoWaitEffect(source, Interest.WRITE)


def Join(handle: TaskHandle[T]) -> JoinEffect:
    return JoinEffect(handle)


def Gather(*handles: TaskHandle[Any]) -> GatherEffect:
    """Wait for all ``handles``; produces a tuple of values in argument order.

    The first failed task's error is raised as soon as it is observed.
    """
    return GatherEffect(tuple(handles))


def Race(*programs: Any) -> RaceEffect:
    """Spawn every program; produce a ``RaceResult`` for the first to finish.

    The losers are cancelled. If the winner failed, its error is raised.
    """
    return RaceEffect(tuple(programs))


def Timeout(seconds: float, program: Any) -> TimeoutEffect:
    """Run ``program`` inside the current task, raising ``TaskTimeoutError``
    if it has not finished within ``seconds``.

    On timeout the inner program is closed, which drops its timers and I/O
    interests before the error is raised.
    """
    return TimeoutEffect(seconds, program)


def Spawn(program: Any, *, name: str | None = None, **context: Any) -> SpawnEffect:
    """Spawn ``program`` as a new task and produce its ``TaskHandle``.

    Keyword arguments extend the child's task-local context.
    """
    return SpawnEffect(program, name=name, context=context)


def WaitSignal(signal: ManualResetSignal) -> SignalWaitEffect:
    return SignalWaitEffect(signal)


def Yield() -> YieldEffect:
    return YieldEffect()


def GetTime() -> GetTimeEffect:
    return GetTimeEffect()


def CurrentTask() -> CurrentTaskEffect:
    return CurrentTaskEffect()


def Await(awaitable: Any) -> AwaitEffect:
    """Run an asyncio awaitable on the executor's bridge loop and wait for it."""
    return AwaitEffect(awaitable)


__all__ = [
    "Await",
    "AwaitEffect",
    "CurrentTask",
    "CurrentTaskEffect",
    "EffectBase",
    "Gather",
    "GatherEffect",
    "GetTime",
    "GetTimeEffect",
    "IoWaitEffect",
    "Join",
    "JoinEffect",
    "Race",
    "RaceEffect",
    "RaceResult",
    "Readable",
    "SignalWaitEffect",
    "Sleep",
    "SleepEffect",
    "SleepUntil",
    "SleepUntilEffect",
    "Spawn",
    "SpawnEffect",
    "Timeout",
    "TimeoutEffect",
    "WaitSignal",
    "Waiter",
    "Writable",
    "Yield",
    "YieldEffect",
    "arm",
]
