"""
Metric aggregation shared by all virtual users.

The registry is the only mutable state virtual users share.  Every
metric carries its own lock, so two users recording different metrics
never contend; the registry-wide lock is taken only when a metric is
created for the first time.

Three metric kinds are supported:

* :class:`Counter` -- monotonically increasing sum.
* :class:`Rate` -- fraction of boolean observations that were true.
* :class:`Trend` -- full sample set answering min / max / avg / median
  and percentile queries.

Percentiles use linear interpolation between the closest ranks of the
sorted sample set (the method k6 uses): for ``p`` in ``[0, 100]`` the
fractional index is ``p / 100 * (n - 1)``.  Samples are sorted at query
time, so the answer never depends on the order observations arrived in.
"""

from __future__ import annotations

import logging
import math
import re
import threading
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

logger = logging.getLogger(__name__)

_PERCENTILE = re.compile(r"^p\((\d+(?:\.\d+)?)\)$")


class MetricKind(str, Enum):
    """Enumeration of supported metric kinds."""

    COUNTER = "counter"
    RATE = "rate"
    TREND = "trend"


# Built-in metrics fed by the engine itself.
HTTP_REQS = "http_reqs"
HTTP_REQ_DURATION = "http_req_duration"
HTTP_REQ_FAILED = "http_req_failed"
DATA_RECEIVED = "data_received"
DATA_SENT = "data_sent"
CHECKS = "checks"
ITERATIONS = "iterations"
ITERATION_DURATION = "iteration_duration"
ITERATIONS_FAILED = "iterations_failed"
ITERATIONS_ABORTED = "iterations_aborted"

BUILTIN_METRICS: dict[str, MetricKind] = {
    HTTP_REQS: MetricKind.COUNTER,
    HTTP_REQ_DURATION: MetricKind.TREND,
    HTTP_REQ_FAILED: MetricKind.RATE,
    DATA_RECEIVED: MetricKind.COUNTER,
    DATA_SENT: MetricKind.COUNTER,
    CHECKS: MetricKind.RATE,
    ITERATIONS: MetricKind.COUNTER,
    ITERATION_DURATION: MetricKind.TREND,
    ITERATIONS_FAILED: MetricKind.COUNTER,
    ITERATIONS_ABORTED: MetricKind.COUNTER,
}


def tagged_name(metric: str, tag: str, value: str) -> str:
    """Name of the sub-metric of ``metric`` restricted to one tag value, e.g. ``checks{check:ok}``."""
    return f"{metric}{{{tag}:{value}}}"


def base_name(name: str) -> str:
    """Strip a ``{tag:value}`` suffix from a metric name."""
    return name.split("{", 1)[0]


def percentile(sorted_values: list[float] | tuple[float, ...], pct: float) -> float:
    """
    Linear-interpolation percentile of an already sorted sequence.

    Args:
        sorted_values: Samples in ascending order; must not be empty.
        pct: Percentile between 0 and 100 inclusive.

    Returns:
        The interpolated value.
    """
    if not sorted_values:
        raise ValueError("percentile of an empty sample set is undefined")
    if not 0 <= pct <= 100:
        raise ValueError(f"percentile must be within [0, 100], got {pct}")

    position = (len(sorted_values) - 1) * pct / 100.0
    lower = math.floor(position)
    upper = math.ceil(position)
    if lower == upper:
        return float(sorted_values[lower])
    weight = position - lower
    return sorted_values[lower] + (sorted_values[upper] - sorted_values[lower]) * weight


class Counter:
    kind = MetricKind.COUNTER

    def __init__(self, name: str):
        self.name = name
        self._lock = threading.Lock()
        self._total = 0.0
        self._observations = 0

    def add(self, value: float = 1) -> None:
        if value < 0:
            raise ValueError(f"Counter {self.name} cannot be decremented (got {value})")
        with self._lock:
            self._total += value
            self._observations += 1

    def snapshot(self, duration: float) -> MetricSnapshot:
        with self._lock:
            total, observations = self._total, self._observations
        per_second = total / duration if duration > 0 else 0.0
        return MetricSnapshot(
            name=self.name,
            kind=self.kind,
            observations=observations,
            values={"count": total, "rate": per_second},
        )


class Rate:
    kind = MetricKind.RATE

    def __init__(self, name: str):
        self.name = name
        self._lock = threading.Lock()
        self._passes = 0
        self._total = 0

    def add(self, value: Any) -> None:
        passed = bool(value)
        with self._lock:
            self._total += 1
            if passed:
                self._passes += 1

    @property
    def rate(self) -> float:
        with self._lock:
            return self._passes / self._total if self._total else 0.0

    def snapshot(self, duration: float) -> MetricSnapshot:
        with self._lock:
            passes, total = self._passes, self._total
        return MetricSnapshot(
            name=self.name,
            kind=self.kind,
            observations=total,
            values={
                "rate": passes / total if total else 0.0,
                "passes": passes,
                "fails": total - passes,
            },
        )


class Trend:
    kind = MetricKind.TREND

    def __init__(self, name: str):
        self.name = name
        self._lock = threading.Lock()
        self._samples: list[float] = []

    def add(self, value: float) -> None:
        sample = float(value)
        if math.isnan(sample):
            raise ValueError(f"Trend {self.name} cannot record NaN")
        with self._lock:
            self._samples.append(sample)

    def snapshot(self, duration: float) -> MetricSnapshot:
        with self._lock:
            samples = tuple(sorted(self._samples))
        values: dict[str, float] = {"count": len(samples)}
        if samples:
            values.update(
                {
                    "min": samples[0],
                    "max": samples[-1],
                    "avg": math.fsum(samples) / len(samples),
                    "med": percentile(samples, 50),
                    "p(90)": percentile(samples, 90),
                    "p(95)": percentile(samples, 95),
                }
            )
        return MetricSnapshot(
            name=self.name,
            kind=self.kind,
            observations=len(samples),
            values=values,
            samples=samples,
        )


_METRIC_TYPES = {
    MetricKind.COUNTER: Counter,
    MetricKind.RATE: Rate,
    MetricKind.TREND: Trend,
}


@dataclass(frozen=True)
class MetricSnapshot:
    """
    Read-only view of one metric at the end of a run.

    Attributes:
        name: Metric name (including any ``{tag:value}`` suffix).
        kind: The metric's kind.
        observations: Number of recorded observations.
        values: Headline statistics used in summaries.
        samples: Sorted samples; populated for trends only.
    """

    name: str
    kind: MetricKind
    observations: int
    values: dict[str, float]
    samples: tuple[float, ...] = field(default=(), repr=False)

    def value(self, aggregation: str) -> float:
        """
        Answer one aggregation query, e.g. ``"rate"``, ``"avg"`` or ``"p(99.9)"``.

        Raises:
            KeyError: If the aggregation does not apply to this metric or
                the metric has no data for it.
        """
        match = _PERCENTILE.match(aggregation)
        if match and self.kind is MetricKind.TREND:
            if not self.samples:
                raise KeyError(aggregation)
            return percentile(self.samples, float(match.group(1)))
        return self.values[aggregation]

    def to_dict(self) -> dict[str, Any]:
        return {
            "type": self.kind.value,
            "observations": self.observations,
            "values": dict(self.values),
        }


class MetricRegistry:
    """
    Run-scoped metric aggregator.

    Created at run start, written by every virtual user, read once at the
    end.  After :meth:`seal` further observations are discarded; they can
    only come from iterations that were abandoned at the hard cutoff.
    """

    def __init__(self) -> None:
        self._metrics: dict[str, Counter | Rate | Trend] = {}
        self._create_lock = threading.Lock()
        self._sealed = threading.Event()

    def declare(self, name: str, kind: MetricKind | str) -> Counter | Rate | Trend:
        """Create ``name`` with ``kind`` if missing and return it."""
        kind = MetricKind(kind)
        metric = self._metrics.get(name)
        if metric is None:
            with self._create_lock:
                metric = self._metrics.get(name)
                if metric is None:
                    metric = _METRIC_TYPES[kind](name)
                    self._metrics[name] = metric
        if metric.kind is not kind:
            raise TypeError(
                f"Metric {name!r} is a {metric.kind.value}, cannot record it as a {kind.value}"
            )
        return metric

    def record(self, name: str, kind: MetricKind | str, value: Any) -> None:
        """Add one observation to ``name``, creating the metric on first use."""
        if self._sealed.is_set():
            logger.debug("Discarding late observation for %s after run end", name)
            return
        self.declare(name, kind).add(value)

    def kind_of(self, name: str) -> MetricKind | None:
        metric = self._metrics.get(name)
        return metric.kind if metric is not None else None

    def names(self) -> list[str]:
        return sorted(self._metrics)

    def seal(self) -> None:
        self._sealed.set()

    @property
    def sealed(self) -> bool:
        return self._sealed.is_set()

    def snapshot(self, duration: float = 0.0) -> dict[str, MetricSnapshot]:
        """Snapshot every metric; counters report per-second rates over ``duration``."""
        with self._create_lock:
            metrics = list(self._metrics.values())
        return {metric.name: metric.snapshot(duration) for metric in sorted(metrics, key=lambda m: m.name)}
