"""
Identity and interest types shared by the executor and reactor.

This module contains:
- TaskId: arena index + generation identifying one task incarnation
- Interest: readiness interest flags (READ / WRITE)
- Source: anything that resolves to a file descriptor
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import IntFlag
from typing import Protocol, TypeAlias, runtime_checkable


# ============================================
# Identity Types
# ============================================


@dataclass(frozen=True, order=True)
class TaskId:
    """Identifier for a task in an executor's arena.

    ``index`` names the arena slot and ``generation`` the incarnation of that
    slot. A slot is reused once its task is terminal, with the generation
    bumped, so stale ids (held by wake handles or registries) never match a
    newer task.
    """

    index: int
    generation: int

    def __str__(self) -> str:
        return f"task-{self.index}.{self.generation}"

    def __repr__(self) -> str:
        return f"TaskId({self.index}, {self.generation})"


# ============================================
# I/O readiness
# ============================================


class Interest(IntFlag):
    """Readiness condition a task waits on."""

    READ = 1
    WRITE = 2


@runtime_checkable
class HasFileno(Protocol):
    def fileno(self) -> int: ...


Source: TypeAlias = int | HasFileno


def fileno_of(source: Source) -> int:
    """Resolve ``source`` to a file descriptor number."""

    if isinstance(source, int):
        fd = source
    elif isinstance(source, HasFileno):
        fd = source.fileno()
    else:
        raise TypeError(
            f"source must be an int or have fileno(), got {type(source).__name__}"
        )
    if fd < 0:
        raise ValueError(f"invalid file descriptor: {fd}")
    return fd


__all__ = [
    "HasFileno",
    "Interest",
    "Source",
    "TaskId",
    "fileno_of",
]
