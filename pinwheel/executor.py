"""Single-threaded cooperative executor.

The executor owns a task arena, a FIFO run queue of task ids and a Reactor.
``run()`` repeatedly pops a runnable id, steps its computation once, and
settles the result:

- ``Done`` / ``Failed``: publish the outcome, wake joiners, free the slot
- ``Suspended``: park the task as WAITING; its interests are already
  registered by the step function

Scheduling is round-based: each round runs the tasks that were runnable when
it started, then polls the reactor without blocking so I/O is never starved
by tasks that keep yielding. When nothing is runnable the executor blocks in
the reactor until a timer, a readiness event or a cross-thread wake fires.

A wake that lands during a step (from the step itself or another thread) is
enqueued for a later turn; the woken task is never stepped re-entrantly.
"""

from __future__ import annotations

import threading
import time
from collections import deque
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, TypeVar

from loguru import logger

from pinwheel._vendor import Err, FrozenDict, Ok, Result, freeze
from pinwheel.bridge import AsyncioBridge
from pinwheel.clock import Clock, MonotonicClock
from pinwheel.config import ExecutorConfig
from pinwheel.context import _current_executor, _current_task
from pinwheel.errors import (
    ExecutorClosedError,
    InvalidStateError,
    TaskCancelledError,
)
from pinwheel.program import as_computation, name_of
from pinwheel.reactor import Reactor
from pinwheel.state import TaskState, check_transition
from pinwheel.step import Done, Failed, Suspended, WakeContext
from pinwheel.task import Task, TaskHandle
from pinwheel.types import TaskId

if TYPE_CHECKING:
    from pinwheel.backend import Backend
    from pinwheel.step import StepResult
    from pinwheel.task import DoneCallback

T = TypeVar("T")


@dataclass(frozen=True)
class ExecutorStats:
    """Counters since the executor was created."""

    spawned: int = 0
    steps: int = 0
    wakes_delivered: int = 0
    wakes_ignored: int = 0
    completed: int = 0
    failed: int = 0
    cancelled: int = 0
    live: int = 0

    def as_dict(self) -> FrozenDict:
        return FrozenDict(
            spawned=self.spawned,
            steps=self.steps,
            wakes_delivered=self.wakes_delivered,
            wakes_ignored=self.wakes_ignored,
            completed=self.completed,
            failed=self.failed,
            cancelled=self.cancelled,
            live=self.live,
        )


class _Slot:
    __slots__ = ("generation", "task")

    def __init__(self) -> None:
        self.generation = 0
        self.task: Task | None = None


class Executor:
    """Cooperative executor with an integrated reactor.

    Create one explicitly and pass it where it is needed; it is also exposed
    through ``pinwheel.current_executor()`` while it is running a step.

    Usage:
        with Executor() as executor:
            handle = executor.spawn(worker())
            executor.run()
            print(handle.result())
    """

    def __init__(
        self,
        config: ExecutorConfig | None = None,
        *,
        backend: Backend | None = None,
        clock: Clock | None = None,
    ) -> None:
        self.config = config if config is not None else ExecutorConfig()
        if clock is None:
            # SimulatedBackend advances its own ManualClock; share it.
            clock = getattr(backend, "clock", None) or MonotonicClock()
        self.clock: Clock = clock
        self.reactor = Reactor(
            backend,
            self.clock,
            max_poll_timeout=self.config.max_poll_timeout,
        )
        self._lock = threading.RLock()
        self._slots: list[_Slot] = []
        self._free: list[int] = []
        self._run_queue: deque[TaskId] = deque()
        self._live = 0
        self._running = False
        self._stop_requested = False
        self._closed = False
        self._loop_thread: int | None = None
        self._bridge: AsyncioBridge | None = None
        self._settle_depth = 0
        self._finished: list[tuple[Task, list[DoneCallback]]] = []
        self._counters = {
            "spawned": 0,
            "steps": 0,
            "wakes_delivered": 0,
            "wakes_ignored": 0,
            "completed": 0,
            "failed": 0,
            "cancelled": 0,
        }
        self._log = logger.bind(component="executor", executor=self.config.name)

    # ------------------------------------------------------------------
    # Introspection
    # ------------------------------------------------------------------

    @property
    def stats(self) -> ExecutorStats:
        with self._lock:
            return ExecutorStats(live=self._live, **self._counters)

    @property
    def running(self) -> bool:
        return self._running

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def asyncio_bridge(self) -> AsyncioBridge:
        with self._lock:
            if self._closed:
                raise ExecutorClosedError("Executor is shut down")
            if self._bridge is None:
                self._bridge = AsyncioBridge()
            return self._bridge

    def live_tasks(self) -> list[TaskHandle[Any]]:
        with self._lock:
            return [slot.task.handle for slot in self._slots if slot.task is not None]

    def run_queue_length(self) -> int:
        with self._lock:
            return len(self._run_queue)

    def __len__(self) -> int:
        with self._lock:
            return self._live

    def __repr__(self) -> str:
        return (
            f"Executor({self.config.name!r}, live={len(self)}, "
            f"runnable={self.run_queue_length()}, running={self._running})"
        )

    # ------------------------------------------------------------------
    # Spawning, waking, cancelling
    # ------------------------------------------------------------------

    def spawn(
        self,
        computation: Any,
        *,
        name: str | None = None,
        context: Any = None,
    ) -> TaskHandle[Any]:
        """Create a task for ``computation`` and queue it. Thread-safe.

        Spawning from inside a running task only enqueues the child; it runs
        on a later turn. The child inherits the spawning task's context,
        extended by ``context``.
        """
        parent = _current_task.get()
        inherited = parent.context if parent is not None and parent.executor is self else None
        merged = freeze({**(inherited or {}), **(context or {})})
        with self._lock:
            if self._closed:
                raise ExecutorClosedError("Cannot spawn on a shut down executor")
            comp = as_computation(computation)
            index = self._allocate_slot()
            slot = self._slots[index]
            task_id = TaskId(index, slot.generation)
            task = Task(
                self,
                task_id,
                comp,
                name or name_of(computation) or name_of(comp) or str(task_id),
                merged,
            )
            slot.task = task
            self._live += 1
            self._counters["spawned"] += 1
            self._transition(task, TaskState.RUNNABLE)
            self._run_queue.append(task_id)
            if self.config.debug:
                self._log.debug("Spawned {} ({})", task_id, task.name)
        self._interrupt_if_foreign()
        return task.handle

    def _wake(self, task_id: TaskId) -> bool:
        with self._lock:
            task = self._lookup(task_id)
            if task is None:
                self._counters["wakes_ignored"] += 1
                return False
            if task.state is TaskState.WAITING:
                self._transition(task, TaskState.RUNNABLE)
                self._run_queue.append(task_id)
                self._counters["wakes_delivered"] += 1
            elif task.state is TaskState.RUNNING and not task.notified:
                task.notified = True
                self._counters["wakes_delivered"] += 1
            else:
                self._counters["wakes_ignored"] += 1
                return False
        self._interrupt_if_foreign()
        return True

    def cancel(self, task_id: TaskId) -> bool:
        """Cancel a task by id. Thread-safe; see ``TaskHandle.cancel``."""
        with self._settling():
            task = self._lookup(task_id)
            if task is None:
                return False
            if task.state is TaskState.RUNNING:
                task.cancel_requested = True
                return True
            self._cancel_locked(task)
        self._interrupt_if_foreign()
        return True

    def stop(self) -> None:
        """Ask ``run()`` to return after the current step. Thread-safe."""
        with self._lock:
            self._stop_requested = True
        self._interrupt_if_foreign()

    # ------------------------------------------------------------------
    # Running
    # ------------------------------------------------------------------

    def run(self) -> None:
        """Run until no live tasks remain or ``stop()`` is called.

        Raises:
            BackendError: The readiness backend failed fatally. Tasks keep
                their RUNNABLE / WAITING states; ``shutdown()`` still works.
        """
        self._drive(block=True)

    def run_until_idle(self) -> int:
        """Run until nothing is runnable, without ever blocking in the reactor.

        Ready I/O and already-expired timers are still delivered. Returns the
        number of steps taken. Useful for driving a ``SimulatedBackend`` one
        stage at a time.
        """
        before = self.stats.steps
        self._drive(block=False)
        return self.stats.steps - before

    def run_until_complete(self, computation: Any, *, name: str | None = None) -> Any:
        """Spawn ``computation`` as a root task, run until it finishes, and
        return its value (or raise its error).

        Other tasks that are still live when the root finishes are left in
        place; ``shutdown()`` cancels them.
        """
        handle = self.spawn(computation, name=name)
        handle.add_done_callback(self._stop_on_done)
        try:
            self.run()
        finally:
            handle.remove_done_callback(self._stop_on_done)
        if not handle.done():
            raise InvalidStateError(f"Executor stopped before {handle.id} finished")
        return handle.result()

    def _stop_on_done(self, _handle: TaskHandle[Any]) -> None:
        self.stop()

    def _drive(self, *, block: bool) -> None:
        with self._lock:
            if self._closed:
                raise ExecutorClosedError("Cannot run a shut down executor")
            if self._running:
                raise InvalidStateError("Executor is already running")
            self._running = True
            self._stop_requested = False
            self._loop_thread = threading.get_ident()
        token = _current_executor.set(self)
        try:
            self._loop(block)
        finally:
            _current_executor.reset(token)
            with self._lock:
                self._running = False
                self._loop_thread = None

    def _loop(self, block: bool) -> None:
        while True:
            with self._lock:
                if self._stop_requested:
                    return
                batch = len(self._run_queue)
                if batch == 0 and self._live == 0:
                    return
            if batch == 0:
                if block:
                    self.reactor.poll(block=True)
                elif not (self.reactor.has_pending() and self.reactor.poll(block=False)):
                    return
                continue
            for _ in range(batch):
                with self._lock:
                    if self._stop_requested or not self._run_queue:
                        break
                    task_id = self._run_queue.popleft()
                self._run_one(task_id)
            if self.reactor.has_pending():
                self.reactor.poll(block=False)

    def _run_one(self, task_id: TaskId) -> None:
        with self._lock:
            task = self._lookup(task_id)
            if task is None or task.state is not TaskState.RUNNABLE:
                # Cancelled or already settled after it was queued.
                return
            self._transition(task, TaskState.RUNNING)
            task.notified = False
            task.steps += 1
            self._counters["steps"] += 1
            computation = task.computation
        if computation is None:
            raise InvalidStateError(f"Task {task.id} is RUNNING without a computation")

        ctx = WakeContext(self, task)
        token = _current_task.set(task.handle)
        threshold = self.config.effective_slow_step_threshold
        started = time.perf_counter()
        try:
            result: StepResult = computation.step(ctx)
        except (KeyboardInterrupt, SystemExit):
            with self._settling():
                self._cancel_locked(task)
            raise
        except Exception as exc:
            result = Failed(exc)
        finally:
            _current_task.reset(token)
        elapsed = time.perf_counter() - started
        if threshold is not None and elapsed > threshold:
            self._log.warning(
                "Task {} ({}) blocked the executor for {:.3f}s in one step",
                task.id,
                task.name,
                elapsed,
            )
        self._settle(task, result)

    def _settle(self, task: Task, result: Any) -> None:
        with self._settling():
            if isinstance(result, Done):
                self._finish(task, TaskState.COMPLETED, Ok(result.value))
            elif isinstance(result, Failed):
                self._log.opt(exception=result.error).debug(
                    "Task {} ({}) failed: {!r}", task.id, task.name, result.error
                )
                self._finish(task, TaskState.FAILED, Err(result.error))
            elif isinstance(result, Suspended):
                if task.cancel_requested:
                    self._cancel_locked(task)
                    return
                self._transition(task, TaskState.WAITING)
                if task.notified:
                    task.notified = False
                    self._transition(task, TaskState.RUNNABLE)
                    self._run_queue.append(task.id)
            else:
                error = TypeError(
                    f"step() must return Done, Failed or Suspended, got {type(result).__name__}"
                )
                self._finish(task, TaskState.FAILED, Err(error))

    # ------------------------------------------------------------------
    # Shutdown
    # ------------------------------------------------------------------

    def shutdown(self) -> None:
        """Cancel every live task and release the reactor and bridge.

        Must not be called while ``run()`` is active; call ``stop()`` first.
        """
        with self._settling():
            if self._closed:
                return
            if self._running:
                raise InvalidStateError("Cannot shut down a running executor; call stop() first")
            self._closed = True
            remaining = [slot.task for slot in self._slots if slot.task is not None]
            for task in remaining:
                self._cancel_locked(task)
            bridge, self._bridge = self._bridge, None
        if bridge is not None:
            bridge.shutdown()
        self.reactor.close()
        self._log.info("Executor shut down ({} tasks cancelled)", len(remaining))

    def __enter__(self) -> Executor:
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.shutdown()

    @contextmanager
    def _settling(self) -> Iterator[None]:
        """Hold the lock, then run the done callbacks queued under it.

        Callbacks run after the outermost holder releases the lock, so a
        callback may block on a thread that spawns, wakes or cancels.
        """
        ready: list[tuple[Task, list[DoneCallback]]] = []
        try:
            with self._lock:
                self._settle_depth += 1
                try:
                    yield
                finally:
                    self._settle_depth -= 1
                    if self._settle_depth == 0:
                        ready, self._finished = self._finished, []
        finally:
            for task, callbacks in ready:
                self._run_callbacks(task, callbacks)

    # ------------------------------------------------------------------
    # Internals (callers hold self._lock)
    # ------------------------------------------------------------------

    def _allocate_slot(self) -> int:
        if self._free:
            return self._free.pop()
        self._slots.append(_Slot())
        return len(self._slots) - 1

    def _lookup(self, task_id: TaskId) -> Task | None:
        if not 0 <= task_id.index < len(self._slots):
            return None
        slot = self._slots[task_id.index]
        if slot.generation != task_id.generation:
            return None
        return slot.task

    def _transition(self, task: Task, target: TaskState) -> None:
        check_transition(task.id, task.state, target)
        if self.config.debug:
            self._log.debug("{}: {} -> {}", task.id, task.state.name, target.name)
        task.state = target

    def _cancel_locked(self, task: Task) -> None:
        self.reactor.remove_owner(task.id)
        computation, task.computation = task.computation, None
        if computation is not None:
            token = _current_task.set(task.handle)
            try:
                computation.close()
            except Exception as exc:
                self._log.opt(exception=exc).warning(
                    "Closing cancelled task {} ({}) raised {!r}", task.id, task.name, exc
                )
            finally:
                _current_task.reset(token)
            # close() may have registered new interests from finally blocks.
            self.reactor.remove_owner(task.id)
        self._finish(task, TaskState.CANCELLED, Err(TaskCancelledError(task.id)))

    def _finish(self, task: Task, state: TaskState, outcome: Result[Any]) -> None:
        self._transition(task, state)
        self.reactor.remove_owner(task.id)
        task.computation = None
        slot = self._slots[task.id.index]
        slot.task = None
        slot.generation += 1
        self._free.append(task.id.index)
        self._live -= 1
        self._counters[
            {
                TaskState.COMPLETED: "completed",
                TaskState.FAILED: "failed",
                TaskState.CANCELLED: "cancelled",
            }[state]
        ] += 1
        callbacks = task.handle._publish(outcome)
        if callbacks:
            self._finished.append((task, callbacks))

    def _run_callbacks(self, task: Task, callbacks: list[DoneCallback]) -> None:
        for callback in callbacks:
            try:
                callback(task.handle)
            except Exception as exc:
                self._log.opt(exception=exc).error(
                    "Done callback {!r} for {} raised", callback, task.id
                )

    def _interrupt_if_foreign(self) -> None:
        if self._running and self._loop_thread != threading.get_ident():
            self.reactor.interrupt()


def run(
    program: Any,
    config: ExecutorConfig | None = None,
    *,
    backend: Backend | None = None,
    clock: Clock | None = None,
) -> Any:
    """Run ``program`` on a fresh executor and return its value.

    The executor is shut down afterwards, cancelling any tasks the program
    left behind.
    """
    with Executor(config, backend=backend, clock=clock) as executor:
        return executor.run_until_complete(program)


__all__ = [
    "Executor",
    "ExecutorStats",
    "run",
]
