"""
Small shared value types used across pinwheel.

``Result`` carries a task outcome; ``FrozenDict`` backs task-local context
snapshots so children can inherit them without aliasing the parent's data.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Generic, NoReturn, TypeVar, cast

from frozendict import frozendict

T = TypeVar("T")
T_co = TypeVar("T_co", covariant=True)


class Result(Generic[T_co]):
    """Outcome of a finished task or of a satisfied waiter.

    ``TaskHandle.outcome()`` returns one of these; a waiter's ``poll``
    returns one when the condition it waits for holds, and the generator
    adapter sends ``Ok`` values in and throws ``Err`` errors in.
    """

    __slots__ = ()

    def is_ok(self) -> bool:
        return isinstance(self, Ok)

    def is_err(self) -> bool:
        return isinstance(self, Err)

    def ok(self) -> T_co | None:
        """The task's value, or ``None`` for a failed or cancelled task."""
        return self.value if isinstance(self, Ok) else None

    def err(self) -> Exception | None:
        """The error a task finished with, ``TaskCancelledError`` included."""
        return self.error if isinstance(self, Err) else None

    def unwrap(self) -> T_co:
        """Value for ``Ok``; re-raises the stored error for ``Err``."""
        if isinstance(self, Ok):
            return self.value
        raise cast(Err, self).error


@dataclass(frozen=True)
class Ok(Result[T], Generic[T]):
    value: T


@dataclass(frozen=True)
class Err(Result[NoReturn]):
    error: Exception


# =========================================================
# Frozen Dict
# =========================================================
FrozenDict = frozendict


def freeze(mapping: Any = None) -> FrozenDict:
    """Snapshot a task context mapping; ``None`` is the empty context."""
    if mapping is None:
        return FrozenDict()
    if isinstance(mapping, frozendict):
        return mapping
    return FrozenDict(mapping)


__all__ = [
    "Err",
    "FrozenDict",
    "Ok",
    "Result",
    "freeze",
]
