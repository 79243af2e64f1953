"""Task records and the public handles returned by ``spawn``."""

from __future__ import annotations

from collections.abc import Callable
from typing import TYPE_CHECKING, Any, Generic, TypeVar

from pinwheel._vendor import FrozenDict, Result
from pinwheel.errors import InvalidStateError
from pinwheel.state import TaskState
from pinwheel.wake import WakeHandle

if TYPE_CHECKING:
    from pinwheel.effects import JoinEffect
    from pinwheel.executor import Executor
    from pinwheel.step import Computation
    from pinwheel.types import TaskId

T = TypeVar("T")

DoneCallback = Callable[["TaskHandle[Any]"], None]


class Task:
    """Executor-private state of one task incarnation.

    Lives in exactly one arena slot while it is not terminal. ``notified``
    records a wake that arrived while the task was RUNNING, and
    ``cancel_requested`` a cancel that arrived at the same point; the
    executor settles both once the step returns.
    """

    __slots__ = (
        "cancel_requested",
        "computation",
        "handle",
        "id",
        "name",
        "notified",
        "state",
        "steps",
        "waker",
    )

    def __init__(
        self,
        executor: Executor,
        task_id: TaskId,
        computation: Computation,
        name: str,
        context: FrozenDict,
    ) -> None:
        self.id = task_id
        self.name = name
        self.state = TaskState.CREATED
        self.computation: Computation | None = computation
        self.waker = WakeHandle(executor, task_id)
        self.handle: TaskHandle[Any] = TaskHandle(executor, self, context)
        self.notified = False
        self.cancel_requested = False
        self.steps = 0

    def __repr__(self) -> str:
        return f"Task({self.id}, {self.name!r}, {self.state.name})"


class TaskHandle(Generic[T]):
    """Handle for a spawned task.

    The handle outlives the task: once the task is terminal it keeps the
    outcome, which ``result()`` and ``join()`` deliver to every caller.
    """

    def __init__(self, executor: Executor, task: Task, context: FrozenDict) -> None:
        self._executor = executor
        self._task = task
        self._context = context
        self._outcome: Result[T] | None = None
        self._callbacks: list[DoneCallback] = []

    @property
    def id(self) -> TaskId:
        return self._task.id

    @property
    def name(self) -> str:
        return self._task.name

    @property
    def state(self) -> TaskState:
        return self._task.state

    @property
    def context(self) -> FrozenDict:
        return self._context

    @property
    def executor(self) -> Executor:
        return self._executor

    @property
    def steps(self) -> int:
        """Number of times the task's step function has been invoked."""
        return self._task.steps

    def done(self) -> bool:
        return self._outcome is not None

    def cancelled(self) -> bool:
        return self._task.state is TaskState.CANCELLED

    def outcome(self) -> Result[T] | None:
        return self._outcome

    def result(self) -> T:
        """Return the task's value or raise its error.

        Raises:
            InvalidStateError: The task has not finished yet.
            TaskCancelledError: The task was cancelled.
        """
        outcome = self._outcome
        if outcome is None:
            raise InvalidStateError(f"Task {self.id} is {self.state.name}, not finished")
        return outcome.unwrap()

    def exception(self) -> Exception | None:
        outcome = self._outcome
        if outcome is None:
            raise InvalidStateError(f"Task {self.id} is {self.state.name}, not finished")
        return outcome.err()

    def join(self) -> JoinEffect:
        """Suspend the calling task until this one finishes; yields its value."""
        from pinwheel.effects import Join

        return Join(self)

    def cancel(self) -> bool:
        """Cancel the task.

        Returns False if it had already finished. A task that is inside its
        step function right now is cancelled as soon as that step returns.
        """
        return self._executor.cancel(self._task.id)

    def add_done_callback(self, fn: DoneCallback) -> None:
        """Call ``fn(handle)`` when the task finishes (at once if it already has).

        Callbacks run on whichever thread finishes the task, normally the
        executor thread, and never while the executor lock is held.
        """
        with self._executor._lock:
            if self._outcome is None:
                self._callbacks.append(fn)
                return
        fn(self)

    def remove_done_callback(self, fn: DoneCallback) -> int:
        with self._executor._lock:
            before = len(self._callbacks)
            self._callbacks = [cb for cb in self._callbacks if cb != fn]
            return before - len(self._callbacks)

    def _publish(self, outcome: Result[T]) -> list[DoneCallback]:
        if self._outcome is not None:
            raise InvalidStateError(f"Task {self.id} outcome already published")
        self._outcome = outcome
        callbacks, self._callbacks = self._callbacks, []
        return callbacks

    def __repr__(self) -> str:
        return f"TaskHandle({self.id}, {self.name!r}, {self.state.name})"


__all__ = [
    "DoneCallback",
    "Task",
    "TaskHandle",
]
