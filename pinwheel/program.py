"""
Generator-based computations and the ``@do`` decorator.

A generator is the natural Python step function: its frame keeps the locals
that must survive a suspension, and each ``yield`` is a suspension point.
``GeneratorComputation`` drives a generator that yields effects (see
``pinwheel.effects``) and exposes it through the ``Computation`` protocol.

Example:
    >>> from pinwheel import Sleep, do, run
    >>>
    >>> @do
    ... def answer():
    ...     yield Sleep(0.1)
    ...     return 42
    >>>
    >>> run(answer())
    42
"""

from __future__ import annotations

import inspect
from collections.abc import Callable, Generator
from functools import wraps
from typing import TYPE_CHECKING, Any, Generic, ParamSpec, TypeVar

from pinwheel._vendor import Err, Ok, Result
from pinwheel.effects import Waiter, arm
from pinwheel.step import SUSPENDED, Computation, Done, Failed

if TYPE_CHECKING:
    from pinwheel.step import StepResult, WakeContext

P = ParamSpec("P")
T = TypeVar("T")

ProgramGenerator = Generator[Any, Any, T]


class Program(Generic[T]):
    """Reusable recipe for a computation.

    Generators are single-use; a Program defers creating one until
    ``computation()`` is called, so the same Program can be spawned, joined
    inline, or raced more than once.
    """

    __slots__ = ("_factory", "name")

    def __init__(self, factory: Callable[[], Any], *, name: str | None = None) -> None:
        self._factory = factory
        self.name = name or getattr(factory, "__qualname__", None) or "program"

    @classmethod
    def pure(cls, value: T) -> Program[T]:
        return cls(lambda: value, name="pure")

    def computation(self) -> Computation:
        produced = self._factory()
        if inspect.isgenerator(produced):
            return GeneratorComputation(produced, name=self.name)
        return ValueComputation(produced, name=self.name)

    def __repr__(self) -> str:
        return f"Program({self.name})"


def do(func: Callable[P, ProgramGenerator[T]]) -> Callable[P, Program[T]]:
    """Turn a generator function into a factory of ``Program`` objects.

    Usage:
        @do
        def echo(sock):
            yield Readable(sock)
            data = sock.recv(1024)
            yield Writable(sock)
            sock.send(data)
            return len(data)

        executor.spawn(echo(sock))
    """

    @wraps(func)
    def build(*args: P.args, **kwargs: P.kwargs) -> Program[T]:
        return Program(lambda: func(*args, **kwargs), name=func.__qualname__)

    build.original_func = func  # type: ignore[attr-defined]
    return build


class ValueComputation:
    """Computation that finishes on its first step with a fixed value."""

    def __init__(self, value: Any, *, name: str | None = None) -> None:
        self._value = value
        self.name = name

    def step(self, ctx: WakeContext) -> StepResult:
        return Done(self._value)

    def close(self) -> None:
        return None


class GeneratorComputation:
    """Drive a generator that yields effects.

    On each step the pending waiter is polled. A waiter that is not ready
    means the wake was spurious: the step re-suspends and its registrations
    stay in place. Otherwise the outcome is sent (or thrown) into the
    generator, and every effect it yields is armed until one has to wait.
    """

    def __init__(self, gen: Generator[Any, Any, Any], *, name: str | None = None) -> None:
        if not inspect.isgenerator(gen):
            raise TypeError(f"gen must be a generator, got {type(gen).__name__}")
        self._gen = gen
        self._waiter: Waiter | None = None
        self._finished = False
        self.name = name or getattr(gen, "__qualname__", None)

    @property
    def finished(self) -> bool:
        return self._finished

    @property
    def waiter(self) -> Waiter | None:
        return self._waiter

    def step(self, ctx: WakeContext) -> StepResult:
        if self._finished:
            raise RuntimeError("step() called on a finished computation")
        outcome: Result[Any] = Ok(None)
        if self._waiter is not None:
            polled = self._waiter.poll(ctx)
            if polled is None:
                return SUSPENDED
            self._waiter.release()
            self._waiter = None
            outcome = polled

        while True:
            try:
                if isinstance(outcome, Err):
                    effect = self._gen.throw(outcome.error)
                else:
                    effect = self._gen.send(outcome.value)
            except StopIteration as stop:
                self._finished = True
                return Done(stop.value)
            except Exception as exc:
                self._finished = True
                return Failed(exc)

            try:
                waiter = arm(effect, ctx)
                polled = waiter.poll(ctx)
            except Exception as exc:
                outcome = Err(exc)
                continue
            if polled is None:
                self._waiter = waiter
                return SUSPENDED
            waiter.release()
            outcome = polled

    def close(self) -> None:
        waiter, self._waiter = self._waiter, None
        try:
            if waiter is not None:
                waiter.release()
        finally:
            self._finished = True
            self._gen.close()

    def __repr__(self) -> str:
        return f"GeneratorComputation({self.name})"


def as_computation(obj: Any) -> Computation:
    """Coerce a Program, generator or Computation into a Computation."""

    if isinstance(obj, Program):
        return obj.computation()
    if inspect.isgenerator(obj):
        return GeneratorComputation(obj)
    if isinstance(obj, Computation):
        return obj
    raise TypeError(
        "expected a Program, a generator or an object with step()/close(), "
        f"got {type(obj).__name__}"
    )


def name_of(obj: Any) -> str | None:
    name = getattr(obj, "name", None)
    if isinstance(name, str) and name:
        return name
    qualname = getattr(obj, "__qualname__", None)
    return qualname if isinstance(qualname, str) else None


__all__ = [
    "GeneratorComputation",
    "Program",
    "ProgramGenerator",
    "ValueComputation",
    "as_computation",
    "do",
    "name_of",
]
