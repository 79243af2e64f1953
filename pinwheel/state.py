"""Task lifecycle states and the transitions allowed between them.

    CREATED -> RUNNABLE -> RUNNING -> {COMPLETED | FAILED | WAITING | CANCELLED}
    WAITING -> RUNNABLE                         (only via a wake handle)
    {CREATED | RUNNABLE | WAITING} -> CANCELLED (cancel outside a step)
"""

from __future__ import annotations

from enum import Enum, auto
from typing import TYPE_CHECKING

from pinwheel.errors import InvalidTransitionError

if TYPE_CHECKING:
    from pinwheel.types import TaskId


class TaskState(Enum):
    """State of one task in the executor."""

    CREATED = auto()
    """Task record exists but has not been queued yet."""

    RUNNABLE = auto()
    """Task id sits in the run queue."""

    RUNNING = auto()
    """Executor is inside the task's step function."""

    WAITING = auto()
    """Task is parked until a wake handle fires."""

    COMPLETED = auto()
    """Step function returned a value."""

    FAILED = auto()
    """Step function raised or returned an error."""

    CANCELLED = auto()
    """Task was dropped before finishing."""

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATES


TERMINAL_STATES: frozenset[TaskState] = frozenset(
    {TaskState.COMPLETED, TaskState.FAILED, TaskState.CANCELLED}
)

ALLOWED_TRANSITIONS: dict[TaskState, frozenset[TaskState]] = {
    TaskState.CREATED: frozenset({TaskState.RUNNABLE, TaskState.CANCELLED}),
    TaskState.RUNNABLE: frozenset({TaskState.RUNNING, TaskState.CANCELLED}),
    TaskState.RUNNING: frozenset(
        {
            TaskState.COMPLETED,
            TaskState.FAILED,
            TaskState.WAITING,
            TaskState.CANCELLED,
        }
    ),
    TaskState.WAITING: frozenset({TaskState.RUNNABLE, TaskState.CANCELLED}),
    TaskState.COMPLETED: frozenset(),
    TaskState.FAILED: frozenset(),
    TaskState.CANCELLED: frozenset(),
}


def check_transition(task_id: TaskId, current: TaskState, target: TaskState) -> None:
    if target not in ALLOWED_TRANSITIONS[current]:
        raise InvalidTransitionError(task_id, current, target)


__all__ = [
    "ALLOWED_TRANSITIONS",
    "TERMINAL_STATES",
    "TaskState",
    "check_transition",
]
