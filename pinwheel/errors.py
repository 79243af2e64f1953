"""pinwheel error types."""

from __future__ import annotations

from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from pinwheel.state import TaskState
    from pinwheel.types import TaskId


class PinwheelError(Exception):
    """Base class for errors raised by pinwheel itself."""


class TaskCancelledError(PinwheelError):
    """Raised to joiners of a task that was cancelled before finishing."""

    def __init__(self, task_id: TaskId | None = None, message: str | None = None) -> None:
        self.task_id = task_id
        super().__init__(message or f"Task {task_id} was cancelled")


class TaskTimeoutError(PinwheelError, TimeoutError):
    """Raised into a computation whose ``Timeout`` deadline passed first."""

    def __init__(self, seconds: float) -> None:
        self.seconds = seconds
        super().__init__(f"Operation timed out after {seconds:g}s")


class InvalidStateError(PinwheelError):
    """Raised when a task handle is queried in the wrong state."""


class InvalidTransitionError(PinwheelError):
    """Raised when the executor attempts a transition the state machine forbids.

    This indicates a bug in the executor, never a user error.
    """

    def __init__(self, task_id: TaskId, current: TaskState, target: TaskState) -> None:
        self.task_id = task_id
        self.current = current
        self.target = target
        super().__init__(
            f"Illegal transition for {task_id}: {current.name} -> {target.name}"
        )


class ExecutorClosedError(PinwheelError):
    """Raised when spawning on, or running, an executor that was shut down."""


class BackendError(PinwheelError):
    """Fatal readiness backend failure propagated out of ``Executor.run``.

    Attributes:
        original: The OSError raised by the backend.
    """

    def __init__(self, original: BaseException) -> None:
        self.original = original
        super().__init__(f"Readiness backend failed: {original!r}")


class UnknownEffectError(PinwheelError, TypeError):
    """Raised into a generator that yielded something the executor cannot arm."""

    def __init__(self, value: Any) -> None:
        self.value = value
        super().__init__(
            f"Cannot suspend on {type(value).__name__!s}: expected an Effect or Program"
        )


__all__ = [
    "BackendError",
    "ExecutorClosedError",
    "InvalidStateError",
    "InvalidTransitionError",
    "PinwheelError",
    "TaskCancelledError",
    "TaskTimeoutError",
    "UnknownEffectError",
]
