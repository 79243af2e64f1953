"""
Executor behaviour: scheduling, wakes, cancellation and failure isolation.

Most tests run on the simulated backend so timing is virtual and
deterministic; the real-time tests use the default selectors backend.
"""

from __future__ import annotations

import errno
import time

import pytest
from frozendict import frozendict

from pinwheel import (
    SUSPENDED,
    BackendError,
    Done,
    Executor,
    ExecutorClosedError,
    GetTime,
    InvalidStateError,
    Program,
    Readable,
    SimulatedBackend,
    SimulationStalledError,
    Sleep,
    Spawn,
    TaskCancelledError,
    TaskState,
    WakeHandle,
    Yield,
    current_executor,
    do,
    run,
)


@do
def sleep_then(seconds: float, value):
    yield Sleep(seconds)
    return value


@do
def wait_readable(fd: int):
    yield Readable(fd)
    return fd


class TestSleep:
    def test_sleep_returns_value_after_real_delay(self, executor: Executor) -> None:
        """A 100ms sleep completes with its value and takes at least 100ms."""
        started = time.monotonic()
        assert executor.run_until_complete(sleep_then(0.1, 42)) == 42
        assert time.monotonic() - started >= 0.1

    def test_sleep_in_virtual_time(self, sim_executor: Executor, clock) -> None:
        assert sim_executor.run_until_complete(sleep_then(0.1, 42)) == 42
        assert clock.now() == pytest.approx(0.1)

    def test_zero_sleep_does_not_suspend(self, sim_executor: Executor) -> None:
        handle = sim_executor.spawn(sleep_then(0, "now"))
        sim_executor.run()
        assert handle.result() == "now"
        assert handle.steps == 1

    def test_sleepers_wake_in_deadline_order(self, sim_executor: Executor) -> None:
        order: list[str] = []

        @do
        def sleeper(name: str, seconds: float):
            yield Sleep(seconds)
            order.append(name)

        sim_executor.spawn(sleeper("slow", 0.3))
        sim_executor.spawn(sleeper("fast", 0.1))
        sim_executor.spawn(sleeper("middle", 0.2))
        sim_executor.run()

        assert order == ["fast", "middle", "slow"]

    def test_module_level_run(self) -> None:
        assert run(sleep_then(0.5, "done"), backend=SimulatedBackend()) == "done"


class TestLifecycle:
    def test_states_through_a_sleep(self, sim_executor: Executor, clock) -> None:
        handle = sim_executor.spawn(sleep_then(1.0, "x"), name="sleeper")
        assert handle.name == "sleeper"
        assert handle.state is TaskState.RUNNABLE
        assert not handle.done()
        with pytest.raises(InvalidStateError):
            handle.result()

        sim_executor.run_until_idle()
        assert handle.state is TaskState.WAITING
        assert len(sim_executor) == 1
        assert sim_executor.live_tasks() == [handle]

        clock.advance(1.0)
        sim_executor.run_until_idle()
        assert handle.state is TaskState.COMPLETED
        assert handle.outcome().ok() == "x"
        assert handle.exception() is None
        assert len(sim_executor) == 0

    def test_spawn_accepts_generators_and_programs(self, sim_executor: Executor) -> None:
        def plain():
            yield Sleep(0.1)
            return "plain"

        gen_handle = sim_executor.spawn(plain())
        program_handle = sim_executor.spawn(Program.pure("pure"))
        sim_executor.run()

        assert gen_handle.result() == "plain"
        assert gen_handle.name == "TestLifecycle.test_spawn_accepts_generators_and_programs.<locals>.plain"
        assert program_handle.result() == "pure"

    def test_spawn_rejects_other_objects(self, sim_executor: Executor) -> None:
        with pytest.raises(TypeError):
            sim_executor.spawn(42)
        assert len(sim_executor) == 0

    def test_stats(self, sim_executor: Executor) -> None:
        @do
        def boom():
            yield Sleep(0.1)
            raise RuntimeError("boom")

        sim_executor.spawn(sleep_then(0.1, 1))
        sim_executor.spawn(boom())
        cancelled = sim_executor.spawn(sleep_then(5.0, 3))
        cancelled.cancel()
        sim_executor.run()

        stats = sim_executor.stats
        assert (stats.spawned, stats.completed, stats.failed, stats.cancelled) == (3, 1, 1, 1)
        assert stats.live == 0
        assert stats.steps == 4
        assert stats.wakes_delivered == 2
        snapshot = stats.as_dict()
        assert isinstance(snapshot, frozendict)
        assert snapshot["completed"] == 1


class TestFairness:
    def test_yielding_tasks_round_robin(self, sim_executor: Executor) -> None:
        order: list[tuple[str, int]] = []

        @do
        def spinner(name: str, turns: int):
            for turn in range(turns):
                order.append((name, turn))
                yield Yield()

        for name in ("a", "b", "c"):
            sim_executor.spawn(spinner(name, 2))
        sim_executor.run()

        assert order == [("a", 0), ("b", 0), ("c", 0), ("a", 1), ("b", 1), ("c", 1)]

    def test_spawn_from_task_is_not_run_synchronously(self, sim_executor: Executor) -> None:
        order: list[str] = []

        @do
        def child():
            order.append("child")
            yield GetTime()
            return "c"

        @do
        def parent():
            handle = yield Spawn(child())
            order.append("parent-after-spawn")
            value = yield handle.join()
            order.append("parent-joined")
            return value

        assert sim_executor.run_until_complete(parent()) == "c"
        assert order == ["parent-after-spawn", "child", "parent-joined"]

    def test_wake_during_step_requeues_instead_of_reentering(
        self, sim_executor: Executor
    ) -> None:
        """A task that wakes itself mid-step runs again on the next turn."""

        class SelfWaking:
            def __init__(self) -> None:
                self.calls = 0

            def step(self, ctx):
                self.calls += 1
                if self.calls == 1:
                    assert ctx.waker.wake() is True
                    assert ctx.waker.wake() is False
                    return SUSPENDED
                return Done(self.calls)

            def close(self) -> None:
                pass

        assert sim_executor.run_until_complete(SelfWaking()) == 2


class TestCancellation:
    def test_cancel_waiting_task_clears_registrations(
        self, sim_executor: Executor, sim_backend: SimulatedBackend
    ) -> None:
        handle = sim_executor.spawn(wait_readable(7))
        sim_executor.run_until_idle()
        assert sim_executor.reactor.pending_io == 1
        assert len(sim_backend) == 1

        assert handle.cancel() is True
        assert sim_executor.reactor.pending_io == 0
        assert len(sim_backend) == 0
        assert handle.cancelled()
        with pytest.raises(TaskCancelledError) as exc_info:
            handle.result()
        assert exc_info.value.task_id == handle.id

    def test_double_cancel_is_noop(self, sim_executor: Executor) -> None:
        handle = sim_executor.spawn(sleep_then(1.0, None))
        assert handle.cancel() is True
        assert handle.cancel() is False
        assert sim_executor.stats.cancelled == 1

    def test_cancel_finished_task(self, sim_executor: Executor) -> None:
        handle = sim_executor.spawn(Program.pure(1))
        sim_executor.run()
        assert handle.cancel() is False
        assert handle.result() == 1

    def test_cancel_runnable_task_before_first_step(self, sim_executor: Executor) -> None:
        started: list[bool] = []

        @do
        def never():
            started.append(True)
            yield Sleep(1.0)

        handle = sim_executor.spawn(never())
        handle.cancel()
        sim_executor.run()
        assert started == []
        assert handle.state is TaskState.CANCELLED

    def test_cancel_during_step_applies_when_step_returns(
        self, sim_executor: Executor
    ) -> None:
        class CancelsItself:
            closed = False

            def step(self, ctx):
                assert ctx.handle.cancel() is True
                return SUSPENDED

            def close(self) -> None:
                self.closed = True

        computation = CancelsItself()
        handle = sim_executor.spawn(computation)
        sim_executor.run_until_idle()

        assert handle.cancelled()
        assert handle.steps == 1
        assert computation.closed

    def test_generator_finally_runs_on_cancel(self, sim_executor: Executor) -> None:
        cleaned: list[str] = []

        @do
        def guarded():
            try:
                yield Sleep(10.0)
            finally:
                cleaned.append("closed")

        handle = sim_executor.spawn(guarded())
        sim_executor.run_until_idle()
        handle.cancel()
        assert cleaned == ["closed"]
        assert sim_executor.reactor.pending_timers == 0

    def test_joiner_sees_cancellation(self, sim_executor: Executor) -> None:
        @do
        def parent():
            child = yield Spawn(sleep_then(5.0, "late"))
            child.cancel()
            try:
                yield child.join()
            except TaskCancelledError:
                return "cancelled"

        assert sim_executor.run_until_complete(parent()) == "cancelled"


class TestFailures:
    def test_fault_is_isolated(self, sim_executor: Executor) -> None:
        @do
        def boom():
            yield Sleep(0.01)
            raise ValueError("boom")

        bad = sim_executor.spawn(boom())
        good = sim_executor.spawn(sleep_then(0.02, "ok"))
        sim_executor.run()

        assert bad.state is TaskState.FAILED
        assert isinstance(bad.exception(), ValueError)
        with pytest.raises(ValueError, match="boom"):
            bad.result()
        assert good.result() == "ok"

    def test_run_until_complete_raises_task_error(self, sim_executor: Executor) -> None:
        @do
        def boom():
            yield Sleep(0)
            raise KeyError("missing")

        with pytest.raises(KeyError):
            sim_executor.run_until_complete(boom())

    def test_step_returning_garbage_fails_task(self, sim_executor: Executor) -> None:
        class Garbage:
            def step(self, ctx):
                return "not a step result"

            def close(self) -> None:
                pass

        handle = sim_executor.spawn(Garbage())
        sim_executor.run()
        assert isinstance(handle.exception(), TypeError)

    def test_keyboard_interrupt_propagates(self, sim_executor: Executor) -> None:
        @do
        def interrupted():
            yield Sleep(0)
            raise KeyboardInterrupt

        handle = sim_executor.spawn(interrupted())
        with pytest.raises(KeyboardInterrupt):
            sim_executor.run()
        assert handle.cancelled()
        assert not sim_executor.running

    def test_backend_failure_propagates_and_leaves_tasks_consistent(self, clock) -> None:
        class BrokenBackend(SimulatedBackend):
            def wait(self, timeout):
                raise OSError(errno.EBADF, "Bad file descriptor")

        executor = Executor(backend=BrokenBackend(clock))
        handle = executor.spawn(wait_readable(3))

        with pytest.raises(BackendError) as exc_info:
            executor.run()
        assert isinstance(exc_info.value.original, OSError)
        assert not executor.running
        assert handle.state is TaskState.WAITING

        executor.shutdown()
        assert handle.cancelled()

    def test_deadlock_is_reported_by_simulation(self, sim_executor: Executor) -> None:
        with pytest.raises(SimulationStalledError):
            sim_executor.run_until_complete(wait_readable(5))


class TestSpuriousWakes:
    def test_spurious_wake_resuspends(
        self, sim_executor: Executor, sim_backend: SimulatedBackend
    ) -> None:
        handle = sim_executor.spawn(wait_readable(9))
        sim_executor.run_until_idle()

        assert WakeHandle(sim_executor, handle.id).wake() is True
        sim_executor.run_until_idle()
        assert handle.state is TaskState.WAITING
        assert handle.steps == 2
        assert sim_executor.reactor.pending_io == 1

        sim_backend.trigger(9)
        sim_executor.run_until_idle()
        assert handle.result() == 9

    def test_independent_io_wakes(
        self, sim_executor: Executor, sim_backend: SimulatedBackend
    ) -> None:
        first = sim_executor.spawn(wait_readable(3))
        second = sim_executor.spawn(wait_readable(4))
        sim_executor.run_until_idle()

        sim_backend.trigger(3)
        sim_executor.run_until_idle()
        assert first.result() == 3
        assert second.state is TaskState.WAITING
        assert second.steps == 1

        sim_backend.trigger(4)
        sim_executor.run_until_idle()
        assert second.result() == 4


class TestShutdown:
    def test_shutdown_cancels_live_tasks(self, sim_backend: SimulatedBackend) -> None:
        with Executor(backend=sim_backend) as executor:
            handle = executor.spawn(sleep_then(1.0, None))
            executor.run_until_idle()
        assert handle.cancelled()
        assert executor.closed
        with pytest.raises(ExecutorClosedError):
            executor.spawn(Program.pure(1))
        with pytest.raises(ExecutorClosedError):
            executor.run()

    def test_shutdown_while_running_is_refused(self, sim_executor: Executor) -> None:
        @do
        def rude():
            current_executor().shutdown()
            yield Sleep(0)

        handle = sim_executor.spawn(rude())
        sim_executor.run()
        assert isinstance(handle.exception(), InvalidStateError)
        assert not sim_executor.closed

    def test_stop_returns_from_run(self, sim_executor: Executor) -> None:
        @do
        def forever():
            while True:
                yield Yield()

        @do
        def stopper():
            yield Yield()
            yield Yield()
            current_executor().stop()

        spinner = sim_executor.spawn(forever())
        sim_executor.spawn(stopper())
        sim_executor.run()

        assert spinner.state is TaskState.RUNNABLE
        assert len(sim_executor) == 1

    def test_current_executor_outside_run(self) -> None:
        with pytest.raises(InvalidStateError):
            current_executor()
