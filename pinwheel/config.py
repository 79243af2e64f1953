"""Executor configuration.

Configuration is an explicit, immutable value passed to ``Executor``; there
is no global settings object. ``ExecutorConfig.from_env`` builds one from
``PINWHEEL_*`` environment variables:

- ``PINWHEEL_DEBUG``: "1", "true" or "yes" enables debug mode
- ``PINWHEEL_SLOW_STEP``: seconds after which a single step is reported as
  blocking the executor thread
- ``PINWHEEL_MAX_POLL_TIMEOUT``: upper bound, in seconds, on one reactor wait
"""

from __future__ import annotations

import math
import os
from collections.abc import Mapping
from dataclasses import dataclass

from beartype import BeartypeConf, beartype

_TRUTHY = ("1", "true", "yes")

# Slow-step threshold applied when debug is on and none is configured.
DEBUG_SLOW_STEP_THRESHOLD = 0.1


def _env_flag(env: Mapping[str, str], key: str) -> bool:
    return env.get(key, "").lower() in _TRUTHY


def _env_seconds(env: Mapping[str, str], key: str) -> float | None:
    raw = env.get(key, "").strip()
    if not raw:
        return None
    try:
        return float(raw)
    except ValueError as exc:
        raise ValueError(f"{key} must be a number of seconds, got {raw!r}") from exc


def _ensure_seconds(value: float | None, *, name: str) -> None:
    if value is None:
        return
    if math.isnan(value) or math.isinf(value):
        raise ValueError(f"{name} must be finite, got {value!r}")
    if value < 0:
        raise ValueError(f"{name} must be non-negative, got {value!r}")


@beartype(conf=BeartypeConf(is_pep484_tower=True))
@dataclass(frozen=True)
class ExecutorConfig:
    """Tunables for one executor.

    Attributes:
        debug: Enables debug logging of every state transition and turns on
            slow-step detection with a default threshold.
        slow_step_threshold: A step running longer than this many seconds is
            logged as blocking the executor thread. ``None`` disables the
            check unless ``debug`` is set.
        max_poll_timeout: Cap on a single blocking reactor wait. ``None``
            lets the reactor block until the next timer or readiness event.
        name: Label bound into log records.
    """

    debug: bool = False
    slow_step_threshold: float | None = None
    max_poll_timeout: float | None = None
    name: str = "pinwheel"

    def __post_init__(self) -> None:
        _ensure_seconds(self.slow_step_threshold, name="slow_step_threshold")
        _ensure_seconds(self.max_poll_timeout, name="max_poll_timeout")
        if not self.name:
            raise ValueError("name must be non-empty")

    @property
    def effective_slow_step_threshold(self) -> float | None:
        if self.slow_step_threshold is not None:
            return self.slow_step_threshold
        if self.debug:
            return DEBUG_SLOW_STEP_THRESHOLD
        return None

    @classmethod
    def from_env(
        cls,
        environ: Mapping[str, str] | None = None,
        **overrides: object,
    ) -> ExecutorConfig:
        """Build a config from ``PINWHEEL_*`` variables.

        Args:
            environ: Mapping to read instead of ``os.environ``.
            **overrides: Field values that take precedence over the environment.
        """
        env = os.environ if environ is None else environ
        values: dict[str, object] = {
            "debug": _env_flag(env, "PINWHEEL_DEBUG"),
            "slow_step_threshold": _env_seconds(env, "PINWHEEL_SLOW_STEP"),
            "max_poll_timeout": _env_seconds(env, "PINWHEEL_MAX_POLL_TIMEOUT"),
        }
        values.update(overrides)
        return cls(**values)  # type: ignore[arg-type]


__all__ = [
    "DEBUG_SLOW_STEP_THRESHOLD",
    "ExecutorConfig",
]
