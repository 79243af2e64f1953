"""Access to the executor and task currently running a step.

These are set only while the executor is inside ``run()`` (executor) or a
step function (task). There is no process-wide default executor.
"""

from __future__ import annotations

from contextvars import ContextVar
from typing import TYPE_CHECKING, Any

from pinwheel.errors import InvalidStateError

if TYPE_CHECKING:
    from pinwheel.executor import Executor
    from pinwheel.task import TaskHandle

_current_executor: ContextVar[Executor | None] = ContextVar(
    "pinwheel_current_executor", default=None
)
_current_task: ContextVar[TaskHandle[Any] | None] = ContextVar(
    "pinwheel_current_task", default=None
)


def current_executor() -> Executor:
    executor = _current_executor.get()
    if executor is None:
        raise InvalidStateError("No pinwheel executor is running on this thread")
    return executor


def current_task() -> TaskHandle[Any] | None:
    return _current_task.get()


__all__ = [
    "current_executor",
    "current_task",
]
