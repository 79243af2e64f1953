"""
Shared fixtures for pinwheel tests.

Deterministic tests run on ``sim_executor``: a SimulatedBackend over a
ManualClock, so sleeping advances virtual time and I/O readiness comes from
``sim_backend.trigger``. Real-time tests use ``executor`` (selectors backend)
with ``socket_pair``.
"""

from __future__ import annotations

import socket
from collections.abc import Iterator

import pytest

from pinwheel import Executor, ManualClock, SimulatedBackend
from pinwheel.types import TaskId


class RecordingWaker:
    """Wakeable stub that counts wakes."""

    def __init__(self, task_id: TaskId | None = None) -> None:
        self.task_id = task_id
        self.wakes = 0

    def wake(self) -> bool:
        self.wakes += 1
        return True


@pytest.fixture
def make_waker() -> type[RecordingWaker]:
    return RecordingWaker


@pytest.fixture
def clock() -> ManualClock:
    return ManualClock()


@pytest.fixture
def sim_backend(clock: ManualClock) -> SimulatedBackend:
    return SimulatedBackend(clock)


@pytest.fixture
def sim_executor(sim_backend: SimulatedBackend) -> Iterator[Executor]:
    executor = Executor(backend=sim_backend)
    yield executor
    executor.shutdown()


@pytest.fixture
def executor() -> Iterator[Executor]:
    executor = Executor()
    yield executor
    executor.shutdown()


@pytest.fixture
def socket_pair() -> Iterator[tuple[socket.socket, socket.socket]]:
    left, right = socket.socketpair()
    left.setblocking(False)
    right.setblocking(False)
    yield left, right
    left.close()
    right.close()
