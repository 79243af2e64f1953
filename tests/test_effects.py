"""Tests for the effects generator computations can yield."""

from __future__ import annotations

import asyncio

import pytest

from pinwheel import (
    Await,
    CurrentTask,
    Executor,
    Gather,
    GetTime,
    InvalidStateError,
    Race,
    RaceResult,
    Readable,
    SimulatedBackend,
    Sleep,
    SleepUntil,
    Spawn,
    TaskState,
    TaskTimeoutError,
    Timeout,
    UnknownEffectError,
    Writable,
    Yield,
    do,
)


@do
def sleep_then(seconds: float, value):
    yield Sleep(seconds)
    return value


@do
def fail_after(seconds: float, error: Exception):
    yield Sleep(seconds)
    raise error


@do
def wait_readable(fd: int):
    yield Readable(fd)
    return "data"


class TestEffectValidation:
    def test_sleep_rejects_negative_and_nan(self) -> None:
        with pytest.raises(ValueError):
            Sleep(-1)
        with pytest.raises(ValueError):
            Sleep(float("nan"))
        with pytest.raises(TypeError):
            Sleep("1")  # type: ignore[arg-type]

    def test_io_effects_need_a_file_descriptor(self) -> None:
        with pytest.raises(TypeError):
            Readable("stdin")  # type: ignore[arg-type]
        with pytest.raises(ValueError):
            Writable(-1)

    def test_race_needs_programs(self) -> None:
        with pytest.raises(ValueError):
            Race()

    def test_gather_needs_handles(self) -> None:
        with pytest.raises(TypeError):
            Gather(sleep_then(1, 1))  # type: ignore[arg-type]

    def test_unknown_yield_is_thrown_back(self, sim_executor: Executor) -> None:
        @do
        def confused():
            try:
                yield 42
            except UnknownEffectError as exc:
                return exc.value

        assert sim_executor.run_until_complete(confused()) == 42

    def test_unknown_yield_fails_task_if_uncaught(self, sim_executor: Executor) -> None:
        @do
        def confused():
            yield "not an effect"

        handle = sim_executor.spawn(confused())
        sim_executor.run()
        assert isinstance(handle.exception(), UnknownEffectError)
        assert isinstance(handle.exception(), TypeError)


class TestTimeEffects:
    def test_get_time_and_sleep_until(self, sim_executor: Executor, clock) -> None:
        clock.advance(5.0)

        @do
        def program():
            start = yield GetTime()
            yield SleepUntil(start + 2.5)
            end = yield GetTime()
            return start, end

        assert sim_executor.run_until_complete(program()) == (5.0, 7.5)

    def test_sleep_until_past_deadline_is_immediate(self, sim_executor: Executor, clock) -> None:
        clock.advance(10.0)
        handle = sim_executor.spawn(_sleep_until(3.0))
        sim_executor.run()
        assert handle.done()
        assert handle.steps == 1
        assert clock.now() == 10.0


@do
def _sleep_until(deadline: float):
    yield SleepUntil(deadline)


class TestJoinAndGather:
    def test_join_returns_value(self, sim_executor: Executor) -> None:
        @do
        def parent():
            child = yield Spawn(sleep_then(0.5, "child-value"))
            return (yield child.join())

        assert sim_executor.run_until_complete(parent()) == "child-value"

    def test_join_reraises_child_error(self, sim_executor: Executor) -> None:
        @do
        def parent():
            child = yield Spawn(fail_after(0.1, ValueError("bad child")))
            try:
                yield child.join()
            except ValueError as exc:
                return str(exc)

        assert sim_executor.run_until_complete(parent()) == "bad child"

    def test_join_self_is_refused(self, sim_executor: Executor) -> None:
        @do
        def narcissist():
            me = yield CurrentTask()
            try:
                yield me.join()
            except InvalidStateError:
                return "refused"

        assert sim_executor.run_until_complete(narcissist()) == "refused"

    def test_many_joiners_see_the_same_outcome(self, sim_executor: Executor) -> None:
        target = sim_executor.spawn(sleep_then(1.0, "shared"))

        @do
        def joiner():
            return (yield target.join())

        joiners = [sim_executor.spawn(joiner()) for _ in range(5)]
        sim_executor.run()
        assert [j.result() for j in joiners] == ["shared"] * 5

    def test_gather_keeps_argument_order(self, sim_executor: Executor) -> None:
        @do
        def parent():
            slow = yield Spawn(sleep_then(0.2, "a"))
            fast = yield Spawn(sleep_then(0.1, "b"))
            return (yield Gather(slow, fast))

        assert sim_executor.run_until_complete(parent()) == ("a", "b")

    def test_gather_fails_fast(self, sim_executor: Executor, clock) -> None:
        @do
        def parent():
            slow = yield Spawn(sleep_then(10.0, "slow"))
            bad = yield Spawn(fail_after(0.1, RuntimeError("early")))
            try:
                yield Gather(slow, bad)
            except RuntimeError:
                return (yield GetTime())

        assert sim_executor.run_until_complete(parent()) == pytest.approx(0.1)

    def test_gather_of_nothing(self, sim_executor: Executor) -> None:
        @do
        def parent():
            return (yield Gather())

        assert sim_executor.run_until_complete(parent()) == ()


class TestRace:
    def test_first_finisher_wins_and_losers_are_cancelled(
        self, sim_executor: Executor, clock
    ) -> None:
        @do
        def parent():
            return (yield Race(sleep_then(1.0, "slow"), sleep_then(0.1, "fast")))

        result = sim_executor.run_until_complete(parent())

        assert isinstance(result, RaceResult)
        assert (result.index, result.value) == (1, "fast")
        assert result.winner.state is TaskState.COMPLETED
        assert clock.now() == pytest.approx(0.1)
        assert sim_executor.stats.cancelled == 1
        assert len(sim_executor) == 0
        assert sim_executor.reactor.pending_timers == 0

    def test_failed_winner_raises(self, sim_executor: Executor) -> None:
        @do
        def parent():
            try:
                yield Race(sleep_then(1.0, "slow"), fail_after(0.1, KeyError("k")))
            except KeyError:
                return "lost"

        assert sim_executor.run_until_complete(parent()) == "lost"

    def test_cancelling_the_racer_cancels_contenders(self, sim_executor: Executor) -> None:
        @do
        def parent():
            yield Race(sleep_then(1.0, "a"), sleep_then(2.0, "b"))

        handle = sim_executor.spawn(parent())
        sim_executor.run_until_idle()
        assert len(sim_executor) == 3

        handle.cancel()
        assert len(sim_executor) == 0
        assert sim_executor.stats.cancelled == 3


class TestTimeout:
    def test_timer_wins_over_io(
        self, sim_executor: Executor, sim_backend: SimulatedBackend, clock
    ) -> None:
        @do
        def guarded():
            try:
                return (yield Timeout(0.05, wait_readable(5)))
            except TaskTimeoutError as exc:
                return f"timeout after {exc.seconds}"

        assert sim_executor.run_until_complete(guarded()) == "timeout after 0.05"
        assert clock.now() == pytest.approx(0.05)
        assert sim_executor.reactor.pending_io == 0
        assert len(sim_backend) == 0

        wakes = sim_executor.stats.wakes_delivered
        sim_backend.trigger(5)
        sim_executor.run_until_idle()
        assert sim_executor.stats.wakes_delivered == wakes

    def test_io_wins_over_timer(
        self, sim_executor: Executor, sim_backend: SimulatedBackend
    ) -> None:
        handle = sim_executor.spawn(_with_timeout(1.0, wait_readable(5)))
        sim_executor.run_until_idle()
        assert sim_executor.reactor.pending_timers == 1

        sim_backend.trigger(5)
        sim_executor.run_until_idle()
        assert handle.result() == "data"
        assert sim_executor.reactor.pending_timers == 0

    def test_timeout_error_is_a_timeout_error(self, sim_executor: Executor) -> None:
        handle = sim_executor.spawn(_with_timeout(0.1, sleep_then(1.0, None)))
        sim_executor.run()
        assert isinstance(handle.exception(), TimeoutError)
        assert isinstance(handle.exception(), TaskTimeoutError)

    def test_inner_program_error_propagates(self, sim_executor: Executor) -> None:
        handle = sim_executor.spawn(_with_timeout(1.0, fail_after(0.1, ValueError("inner"))))
        sim_executor.run()
        assert isinstance(handle.exception(), ValueError)

    def test_timeout_runs_inside_the_calling_task(self, sim_executor: Executor) -> None:
        @do
        def who_am_i():
            me = yield CurrentTask()
            return me.id

        @do
        def outer():
            me = yield CurrentTask()
            inner_id = yield Timeout(1.0, who_am_i())
            return me.id == inner_id

        assert sim_executor.run_until_complete(outer()) is True
        assert sim_executor.stats.spawned == 1

    def test_finished_timeouts_leave_no_timers_behind(self, sim_executor: Executor) -> None:
        """A long-lived task arming many far-off timeouts keeps the heap small."""

        @do
        def quick():
            yield Yield()
            return 1

        @do
        def many_timeouts():
            total = 0
            for _ in range(5000):
                value = yield Timeout(3600, quick())
                total += value
            return total

        assert sim_executor.run_until_complete(many_timeouts()) == 5000
        timers = sim_executor.reactor.timers
        assert len(timers) == 0
        assert len(timers._items) < 100

    def test_infinite_timeout_never_fires(self, sim_executor: Executor, clock) -> None:
        assert sim_executor.run_until_complete(
            _with_timeout(float("inf"), sleep_then(0.5, "inner"))
        ) == "inner"
        assert clock.now() == pytest.approx(0.5)


@do
def _with_timeout(seconds: float, program):
    return (yield Timeout(seconds, program))


class TestInlineAndContext:
    def test_yielding_a_program_runs_it_inline(self, sim_executor: Executor) -> None:
        @do
        def helper(x: int):
            yield Sleep(0.1)
            return x * 2

        @do
        def program():
            a = yield helper(1)
            b = yield helper(a)
            return b

        assert sim_executor.run_until_complete(program()) == 4
        assert sim_executor.stats.spawned == 1

    def test_children_inherit_context(self, sim_executor: Executor) -> None:
        @do
        def child():
            me = yield CurrentTask()
            return dict(me.context)

        @do
        def parent():
            handle = yield Spawn(child(), name="child", region="eu")
            return (yield handle.join())

        root = sim_executor.spawn(parent(), context={"request_id": "r1"})
        sim_executor.run()

        assert root.result() == {"request_id": "r1", "region": "eu"}
        assert dict(root.context) == {"request_id": "r1"}

    def test_context_is_immutable(self, sim_executor: Executor) -> None:
        handle = sim_executor.spawn(sleep_then(0, None), context={"k": "v"})
        with pytest.raises(TypeError):
            handle.context["k"] = "other"  # type: ignore[index]


class TestAwait:
    def test_await_asyncio_coroutine(self, executor: Executor) -> None:
        async def compute() -> int:
            await asyncio.sleep(0.01)
            return 21

        @do
        def program():
            value = yield Await(compute())
            return value * 2

        assert executor.run_until_complete(program()) == 42

    def test_await_error_is_raised_into_generator(self, executor: Executor) -> None:
        async def broken() -> None:
            await asyncio.sleep(0)
            raise LookupError("gone")

        @do
        def program():
            try:
                yield Await(broken())
            except LookupError as exc:
                return str(exc)

        assert executor.run_until_complete(program()) == "gone"
