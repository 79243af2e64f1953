"""Step function contract.

A task wraps one ``Computation``. The executor calls ``step(ctx)``
repeatedly; each call either finishes the computation (``Done`` /
``Failed``) or returns ``Suspended`` after registering, through ``ctx``,
every interest that should wake it. ``close()`` drops a suspended
computation and must release whatever it registered.

Steps must not block the executor thread. Nothing enforces this; a step
that takes longer than ``ExecutorConfig.slow_step_threshold`` is logged.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, Protocol, TypeAlias, runtime_checkable

from pinwheel.types import Interest

if TYPE_CHECKING:
    from pinwheel._vendor import FrozenDict
    from pinwheel.executor import Executor
    from pinwheel.registry import IoEntry
    from pinwheel.task import Task, TaskHandle
    from pinwheel.timers import TimerEntry
    from pinwheel.types import Source, TaskId
    from pinwheel.wake import WakeHandle


# ============================================================================
# Step results
# ============================================================================


@dataclass(frozen=True)
class Done:
    """Terminal: computation completed with a value."""

    value: Any = None


@dataclass(frozen=True)
class Failed:
    """Terminal: computation failed with an exception."""

    error: Exception


@dataclass(frozen=True)
class Suspended:
    """Computation registered its interests and is waiting to be woken."""


SUSPENDED = Suspended()

StepResult: TypeAlias = Done | Failed | Suspended


# ============================================================================
# Computation protocol
# ============================================================================


@runtime_checkable
class Computation(Protocol):
    def step(self, ctx: WakeContext) -> StepResult: ...

    def close(self) -> None: ...


class WakeContext:
    """What a step function may touch while it runs.

    Every registration made through the context is owned by the running
    task, so cancelling the task removes it.
    """

    __slots__ = ("_executor", "_task")

    def __init__(self, executor: Executor, task: Task) -> None:
        self._executor = executor
        self._task = task

    @property
    def executor(self) -> Executor:
        return self._executor

    @property
    def task_id(self) -> TaskId:
        return self._task.id

    @property
    def handle(self) -> TaskHandle:
        return self._task.handle

    @property
    def waker(self) -> WakeHandle:
        return self._task.waker

    @property
    def context(self) -> FrozenDict:
        return self._task.handle.context

    def now(self) -> float:
        return self._executor.clock.now()

    def add_timer(self, deadline: float) -> TimerEntry:
        return self._executor.reactor.add_timer(deadline, self._task.waker)

    def add_reader(self, source: Source) -> IoEntry:
        return self._executor.reactor.add_io(source, Interest.READ, self._task.waker)

    def add_writer(self, source: Source) -> IoEntry:
        return self._executor.reactor.add_io(source, Interest.WRITE, self._task.waker)

    def spawn(
        self,
        computation: Any,
        *,
        name: str | None = None,
        context: Any = None,
    ) -> TaskHandle:
        return self._executor.spawn(computation, name=name, context=context)

    def __repr__(self) -> str:
        return f"WakeContext({self._task.id})"


__all__ = [
    "SUSPENDED",
    "Computation",
    "Done",
    "Failed",
    "StepResult",
    "Suspended",
    "WakeContext",
]
