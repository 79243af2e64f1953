"""
pinwheel - A cooperative task executor with an integrated reactor.

Tasks are step functions (usually ``@do`` generators) that run on one
executor thread. A task that cannot make progress registers timers or I/O
interests and suspends; the reactor blocks until one of them fires and hands
the task's wake handle back to the executor. Wake handles may be cloned and
fired from any thread.

Example:
    >>> from pinwheel import Executor, Sleep, do
    >>>
    >>> @do
    ... def answer():
    ...     yield Sleep(0.1)
    ...     return 42
    >>>
    >>> with Executor() as executor:
    ...     executor.run_until_complete(answer())
    42

Logging goes through loguru and is disabled for the ``pinwheel`` namespace
until ``enable_logging()`` is called.
"""

from loguru import logger

from pinwheel._vendor import Err, FrozenDict, Ok, Result
from pinwheel.backend import (
    Backend,
    SelectorBackend,
    SimulatedBackend,
    SimulationStalledError,
)
from pinwheel.bridge import AsyncioBridge
from pinwheel.clock import Clock, ManualClock, MonotonicClock
from pinwheel.config import ExecutorConfig
from pinwheel.context import current_executor, current_task
from pinwheel.effects import (
    Await,
    CurrentTask,
    EffectBase,
    Gather,
    GetTime,
    Join,
    Race,
    RaceResult,
    Readable,
    Sleep,
    SleepUntil,
    Spawn,
    Timeout,
    WaitSignal,
    Writable,
    Yield,
)
from pinwheel.errors import (
    BackendError,
    ExecutorClosedError,
    InvalidStateError,
    InvalidTransitionError,
    PinwheelError,
    TaskCancelledError,
    TaskTimeoutError,
    UnknownEffectError,
)
from pinwheel.executor import Executor, ExecutorStats, run
from pinwheel.program import GeneratorComputation, Program, do
from pinwheel.reactor import Reactor
from pinwheel.state import TaskState
from pinwheel.step import SUSPENDED, Computation, Done, Failed, Suspended, WakeContext
from pinwheel.sync import ManualResetSignal
from pinwheel.task import TaskHandle
from pinwheel.types import Interest, TaskId
from pinwheel.wake import WakeHandle, Wakeable

__version__ = "0.1.0"

logger.disable("pinwheel")


def enable_logging() -> None:
    """Turn on pinwheel's loguru output (disabled by default for libraries)."""
    logger.enable("pinwheel")


def disable_logging() -> None:
    logger.disable("pinwheel")


__all__ = [
    "SUSPENDED",
    "AsyncioBridge",
    "Await",
    "Backend",
    "BackendError",
    "Clock",
    "Computation",
    "CurrentTask",
    "Done",
    "EffectBase",
    "Err",
    "Executor",
    "ExecutorClosedError",
    "ExecutorConfig",
    "ExecutorStats",
    "Failed",
    "FrozenDict",
    "Gather",
    "GeneratorComputation",
    "GetTime",
    "Interest",
    "InvalidStateError",
    "InvalidTransitionError",
    "Join",
    "ManualClock",
    "ManualResetSignal",
    "MonotonicClock",
    "Ok",
    "PinwheelError",
    "Program",
    "Race",
    "RaceResult",
    "Reactor",
    "Readable",
    "Result",
    "SelectorBackend",
    "SimulatedBackend",
    "SimulationStalledError",
    "Sleep",
    "SleepUntil",
    "Spawn",
    "Suspended",
    "TaskCancelledError",
    "TaskHandle",
    "TaskId",
    "TaskState",
    "TaskTimeoutError",
    "Timeout",
    "UnknownEffectError",
    "WaitSignal",
    "WakeContext",
    "WakeHandle",
    "Wakeable",
    "Writable",
    "Yield",
    "__version__",
    "current_executor",
    "current_task",
    "disable_logging",
    "enable_logging",
    "do",
    "run",
]
