"""
Stage plans and the concurrency scheduler.

A stage plan is the ramp/plateau schedule of a run: an ordered list of
``(duration, target)`` pairs.  Within a stage the desired number of
virtual users moves linearly from the previous stage's target (or the
plan's ``start_concurrency`` for the first stage) to this stage's
target.  A zero-duration stage is an instantaneous jump.

Durations accept plain numbers of seconds or the duration strings used
by k6 run files (``"500ms"``, ``"30s"``, ``"2m"``, ``"1m30s"``, ``"1h"``).
"""

from __future__ import annotations

import math
import re
import time
from collections.abc import Callable, Iterable, Mapping
from dataclasses import dataclass
from typing import Any

from loadgen.errors import ConfigurationError

_DURATION_PART = re.compile(r"(\d+(?:\.\d+)?)(ms|h|m|s)")
_DURATION_UNITS = {"ms": 0.001, "s": 1.0, "m": 60.0, "h": 3600.0}


def parse_duration(value: Any) -> float:
    """
    Convert a duration value to seconds.

    Args:
        value: A non-negative number of seconds, or a string made of one
            or more ``<number><unit>`` parts with units ``ms``, ``s``,
            ``m`` and ``h`` (e.g. ``"1m30s"``).  A bare numeric string is
            read as seconds.

    Returns:
        The duration in seconds.

    Raises:
        ConfigurationError: If the value is negative or cannot be parsed.
    """
    if isinstance(value, bool):
        raise ConfigurationError(f"Invalid duration: {value!r}")

    if isinstance(value, (int, float)):
        seconds = float(value)
    elif isinstance(value, str):
        text = value.strip().lower()
        try:
            seconds = float(text)
        except ValueError:
            parts = _DURATION_PART.findall(text)
            if not parts or "".join(number + unit for number, unit in parts) != text:
                raise ConfigurationError(f"Invalid duration: {value!r}") from None
            seconds = sum(float(number) * _DURATION_UNITS[unit] for number, unit in parts)
    else:
        raise ConfigurationError(f"Invalid duration: {value!r}")

    if seconds < 0 or math.isnan(seconds) or math.isinf(seconds):
        raise ConfigurationError(f"Duration must be a finite non-negative value, got {value!r}")
    return seconds


@dataclass(frozen=True)
class Stage:
    """One window of the schedule: reach ``target`` users over ``duration`` seconds."""

    duration: float
    target: int

    def __post_init__(self) -> None:
        if self.duration < 0:
            raise ConfigurationError(f"Stage duration must be >= 0, got {self.duration}")
        if isinstance(self.target, bool) or not isinstance(self.target, int):
            raise ConfigurationError(f"Stage target must be an integer, got {self.target!r}")
        if self.target < 0:
            raise ConfigurationError(f"Stage target must be >= 0, got {self.target}")

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> Stage:
        """Build a stage from a run-file entry such as ``{"duration": "2m", "target": 10}``."""
        try:
            raw_duration = data["duration"]
            raw_target = data["target"]
        except (KeyError, TypeError) as exc:
            raise ConfigurationError(
                f"Stage must define 'duration' and 'target', got {data!r}"
            ) from exc

        if isinstance(raw_target, float) and raw_target.is_integer():
            raw_target = int(raw_target)
        return cls(duration=parse_duration(raw_duration), target=raw_target)


@dataclass(frozen=True)
class StagePlan:
    """
    Immutable ramp/plateau schedule.

    Attributes:
        stages: Ordered stages; must not be empty.
        start_concurrency: Number of users the first stage ramps from.
    """

    stages: tuple[Stage, ...]
    start_concurrency: int = 0

    def __post_init__(self) -> None:
        if not self.stages:
            raise ConfigurationError("Stage plan must contain at least one stage")
        if isinstance(self.start_concurrency, bool) or not isinstance(self.start_concurrency, int):
            raise ConfigurationError(
                f"start_concurrency must be an integer, got {self.start_concurrency!r}"
            )
        if self.start_concurrency < 0:
            raise ConfigurationError(
                f"start_concurrency must be >= 0, got {self.start_concurrency}"
            )

    @classmethod
    def from_config(cls, stages: Iterable[Any], start_concurrency: int = 0) -> StagePlan:
        """Build a plan from run-file stage entries (dicts or ready-made :class:`Stage` objects)."""
        if stages is None:
            raise ConfigurationError("Stage plan must contain at least one stage")
        parsed = tuple(
            stage if isinstance(stage, Stage) else Stage.from_dict(stage)
            for stage in stages
        )
        return cls(stages=parsed, start_concurrency=start_concurrency)

    @property
    def total_duration(self) -> float:
        return sum(stage.duration for stage in self.stages)

    @property
    def peak_concurrency(self) -> int:
        return max([self.start_concurrency, *(stage.target for stage in self.stages)])

    def level_at(self, elapsed: float) -> float:
        """
        Return the interpolated concurrency level ``elapsed`` seconds into the plan.

        Returns ``0.0`` before the plan starts and once it has ended.
        """
        if elapsed < 0:
            return 0.0

        previous = float(self.start_concurrency)
        stage_start = 0.0
        for stage in self.stages:
            if stage.duration == 0:
                previous = float(stage.target)
                continue
            if elapsed < stage_start + stage.duration:
                progress = (elapsed - stage_start) / stage.duration
                return previous + (stage.target - previous) * progress
            stage_start += stage.duration
            previous = float(stage.target)
        return 0.0


class Scheduler:
    """
    Turns a :class:`StagePlan` into a time-varying target concurrency.

    The scheduler has no threads of its own; the runtime's control loop
    polls it.  The clock is injectable so tests can walk a schedule
    without sleeping.
    """

    def __init__(
        self,
        plan: StagePlan,
        start_time: float | None = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.plan = plan
        self._clock = clock
        self.start_time = clock() if start_time is None else start_time

    def elapsed(self, now: float | None = None) -> float:
        if now is None:
            now = self._clock()
        return now - self.start_time

    def level(self, now: float | None = None) -> float:
        """Exact (fractional) target concurrency at ``now``."""
        return self.plan.level_at(self.elapsed(now))

    def desired_concurrency(self, now: float | None = None) -> int:
        """Target number of running virtual users at ``now``, rounded half-up."""
        return int(math.floor(self.level(now) + 0.5))

    def is_finished(self, now: float | None = None) -> bool:
        """True once the whole plan has elapsed: no new iterations may start."""
        return self.elapsed(now) >= self.plan.total_duration

    @property
    def end_time(self) -> float:
        return self.start_time + self.plan.total_duration
