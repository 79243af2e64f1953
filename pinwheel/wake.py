"""Wake handles: thread-safe tokens that make a parked task runnable again.

A handle never owns its task. It names the task by ``TaskId`` (arena index +
generation) and reaches the executor through a weak reference, so timers,
registries and foreign threads can hold clones without creating a cycle back
to the task or keeping a dead executor alive. Once the task is terminal its
arena slot moves to a new generation and every outstanding handle becomes
inert.
"""

from __future__ import annotations

import weakref
from typing import TYPE_CHECKING, Protocol, runtime_checkable

if TYPE_CHECKING:
    from pinwheel.executor import Executor
    from pinwheel.types import TaskId


@runtime_checkable
class Wakeable(Protocol):
    """Anything the reactor can wake. ``task_id`` may be None for unowned wakers."""

    @property
    def task_id(self) -> TaskId | None: ...

    def wake(self) -> bool: ...


class WakeHandle:
    """Cloneable token for one task incarnation.

    ``wake()`` is idempotent, safe to call from any thread, and a no-op once
    the task is terminal or the executor is gone. It returns True only when
    this call moved the task out of WAITING (or flagged a running task).
    """

    __slots__ = ("__weakref__", "_executor_ref", "_task_id")

    def __init__(self, executor: Executor, task_id: TaskId) -> None:
        self._executor_ref: weakref.ReferenceType[Executor] = weakref.ref(executor)
        self._task_id = task_id

    @property
    def task_id(self) -> TaskId:
        return self._task_id

    @property
    def executor(self) -> Executor | None:
        return self._executor_ref()

    def wake(self) -> bool:
        executor = self._executor_ref()
        if executor is None:
            return False
        return executor._wake(self._task_id)

    def clone(self) -> WakeHandle:
        twin = WakeHandle.__new__(WakeHandle)
        twin._executor_ref = self._executor_ref
        twin._task_id = self._task_id
        return twin

    __copy__ = clone

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, WakeHandle):
            return NotImplemented
        return (
            self._executor_ref() is other._executor_ref()
            and self._task_id == other._task_id
        )

    def __hash__(self) -> int:
        return hash((id(self._executor_ref()), self._task_id))

    def __repr__(self) -> str:
        return f"WakeHandle({self._task_id})"


__all__ = [
    "WakeHandle",
    "Wakeable",
]
