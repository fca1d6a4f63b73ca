"""
Threshold parsing and evaluation.

Thresholds are written the way k6 run files write them::

    thresholds:
      http_req_duration: ["p(95)<500"]
      http_req_failed: ["rate<0.1"]
      success:
        - threshold: "rate>0.9"
          abortOnFail: true

Each expression is ``<aggregation> <operator> <number>``.  Which
aggregations are allowed depends on the kind of the metric:

- counter -- ``count``, ``rate`` (per second)
- rate -- ``rate``
- trend -- ``min``, ``max``, ``avg``, ``med``, ``count``, ``p(N)``

Every threshold is validated against the metrics known before the run
(built-ins plus metrics the scenario declares), so a typo fails fast
with a :class:`~loadgen.errors.ConfigurationError` instead of silently
passing at the end.

A threshold on a metric that received no observations has status
``no_data``.  The no-data policy decides whether that counts as a pass
(``skip``) or a failure (``fail``); no division by zero is involved
either way.
"""

from __future__ import annotations

import logging
import operator
import re
from collections.abc import Callable, Iterable, Mapping
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any

from loadgen.errors import ConfigurationError
from loadgen.metrics import (
    ITERATIONS,
    ITERATIONS_ABORTED,
    ITERATIONS_FAILED,
    MetricKind,
    MetricSnapshot,
    base_name,
)

logger = logging.getLogger(__name__)

_EXPRESSION = re.compile(
    r"^\s*(?P<aggregation>[a-z]+(?:\(\s*(?P<pct>\d+(?:\.\d+)?)\s*\))?)"
    r"\s*(?P<op>===|==|!=|<=|>=|<|>)"
    r"\s*(?P<value>-?\d+(?:\.\d+)?(?:[eE][-+]?\d+)?)\s*$"
)

_OPERATORS: dict[str, Callable[[float, float], bool]] = {
    "<": operator.lt,
    "<=": operator.le,
    ">": operator.gt,
    ">=": operator.ge,
    "==": operator.eq,
    "===": operator.eq,
    "!=": operator.ne,
}

_AGGREGATIONS: dict[MetricKind, frozenset[str]] = {
    MetricKind.COUNTER: frozenset({"count", "rate"}),
    MetricKind.RATE: frozenset({"rate"}),
    MetricKind.TREND: frozenset({"min", "max", "avg", "med", "count"}),
}


class NoDataPolicy(str, Enum):
    """What a threshold on a metric without observations means for the verdict."""

    SKIP = "skip"
    FAIL = "fail"


class ThresholdStatus(str, Enum):
    PASSED = "passed"
    FAILED = "failed"
    NO_DATA = "no_data"


@dataclass(frozen=True)
class ThresholdSpec:
    """
    One parsed pass/fail criterion.

    Attributes:
        metric: Metric name, optionally with a ``{tag:value}`` suffix.
        expression: The original expression text.
        aggregation: ``"rate"``, ``"avg"``, ``"p(95)"``, ...
        operator: Comparison operator.
        value: Right-hand side of the comparison.
        abort_on_fail: Stop the run as soon as a periodic evaluation fails.
    """

    metric: str
    expression: str
    aggregation: str
    operator: str
    value: float
    abort_on_fail: bool = False

    @classmethod
    def parse(cls, metric: str, expression: str, abort_on_fail: bool = False) -> ThresholdSpec:
        if not isinstance(expression, str):
            raise ConfigurationError(
                f"Threshold for {metric!r} must be a string expression, got {expression!r}"
            )
        match = _EXPRESSION.match(expression)
        if match is None:
            raise ConfigurationError(f"Cannot parse threshold {expression!r} for metric {metric!r}")

        aggregation = match.group("aggregation")
        pct = match.group("pct")
        if pct is not None:
            if not aggregation.startswith("p("):
                raise ConfigurationError(f"Unknown aggregation {aggregation!r} in {expression!r}")
            if float(pct) > 100:
                raise ConfigurationError(f"Percentile out of range in {expression!r}")
            aggregation = f"p({pct})"

        return cls(
            metric=metric,
            expression=expression.strip(),
            aggregation=aggregation,
            operator=match.group("op"),
            value=float(match.group("value")),
            abort_on_fail=bool(abort_on_fail),
        )

    @property
    def is_percentile(self) -> bool:
        return self.aggregation.startswith("p(")

    def supports(self, kind: MetricKind) -> bool:
        if self.is_percentile:
            return kind is MetricKind.TREND
        return self.aggregation in _AGGREGATIONS[kind]

    def holds(self, observed: float) -> bool:
        return _OPERATORS[self.operator](observed, self.value)

    def __str__(self) -> str:
        return f"{self.metric}: {self.expression}"


def parse_thresholds(config: Mapping[str, Any] | None) -> list[ThresholdSpec]:
    """
    Parse a k6-style ``thresholds`` mapping.

    Values may be a single expression, a list of expressions, or objects
    of the form ``{"threshold": "...", "abortOnFail": true}``.
    """
    if not config:
        return []
    if not isinstance(config, Mapping):
        raise ConfigurationError(f"thresholds must be a mapping, got {type(config).__name__}")

    specs: list[ThresholdSpec] = []
    for metric, entries in config.items():
        if isinstance(entries, (str, Mapping)):
            entries = [entries]
        if not isinstance(entries, Iterable):
            raise ConfigurationError(f"Invalid thresholds for {metric!r}: {entries!r}")
        for entry in entries:
            if isinstance(entry, Mapping):
                if "threshold" not in entry:
                    raise ConfigurationError(f"Threshold object for {metric!r} lacks 'threshold'")
                abort = entry.get("abortOnFail", entry.get("abort_on_fail", False))
                specs.append(ThresholdSpec.parse(metric, entry["threshold"], abort))
            else:
                specs.append(ThresholdSpec.parse(metric, entry))
    return specs


@dataclass(frozen=True)
class ThresholdOutcome:
    """Evaluation result of one :class:`ThresholdSpec`."""

    spec: ThresholdSpec
    status: ThresholdStatus
    observed: float | None
    ok: bool
    reason: str = ""


@dataclass(frozen=True)
class IterationSummary:
    completed: int = 0
    failed: int = 0
    aborted: int = 0

    @property
    def total(self) -> int:
        return self.completed + self.failed + self.aborted


@dataclass(frozen=True)
class RunReport:
    """
    Terminal artifact of a run.

    Attributes:
        started_at: Wall-clock start of the run.
        duration: Seconds from the first tick to the end of the drain.
        metrics: Snapshot of every metric.
        thresholds: Outcome per threshold, in configuration order.
        iterations: Completed / failed / aborted iteration counts.
        aborted_by_threshold: True if an abort-on-fail threshold stopped the run.
        scenario_errors: Sample of distinct scenario error messages.
    """

    started_at: datetime
    duration: float
    metrics: Mapping[str, MetricSnapshot]
    thresholds: tuple[ThresholdOutcome, ...] = ()
    iterations: IterationSummary = field(default_factory=IterationSummary)
    aborted_by_threshold: bool = False
    scenario_errors: tuple[str, ...] = ()

    @property
    def passed(self) -> bool:
        return all(outcome.ok for outcome in self.thresholds) and not self.aborted_by_threshold

    @property
    def failed_thresholds(self) -> list[ThresholdOutcome]:
        return [outcome for outcome in self.thresholds if not outcome.ok]

    def metric(self, name: str) -> MetricSnapshot | None:
        return self.metrics.get(name)


def _count(metrics: Mapping[str, MetricSnapshot], name: str) -> int:
    snapshot = metrics.get(name)
    if snapshot is None:
        return 0
    return int(snapshot.values.get("count", 0))


class ThresholdEvaluator:
    """
    Validates thresholds up front and evaluates them against snapshots.

    Args:
        specs: Parsed thresholds.
        no_data_policy: ``"skip"`` or ``"fail"``.
        known_metrics: Metric name -> kind for every metric that may be
            referenced.  Tagged names are validated via their base name.

    Raises:
        ConfigurationError: If a threshold references an unknown metric
            or an aggregation the metric kind does not support.
    """

    def __init__(
        self,
        specs: Iterable[ThresholdSpec],
        no_data_policy: NoDataPolicy | str = NoDataPolicy.SKIP,
        known_metrics: Mapping[str, MetricKind] | None = None,
    ):
        self.specs = tuple(specs)
        try:
            self.no_data_policy = NoDataPolicy(no_data_policy)
        except ValueError as exc:
            raise ConfigurationError(
                f"no_data_policy must be 'skip' or 'fail', got {no_data_policy!r}"
            ) from exc
        self.known_metrics = dict(known_metrics or {})
        if known_metrics is not None:
            for spec in self.specs:
                self._validate(spec)

    def _validate(self, spec: ThresholdSpec) -> None:
        kind = self.known_metrics.get(spec.metric) or self.known_metrics.get(base_name(spec.metric))
        if kind is None:
            raise ConfigurationError(
                f"Threshold {spec} references unknown metric {spec.metric!r}; "
                "declare custom metrics on the scenario"
            )
        if not spec.supports(kind):
            raise ConfigurationError(
                f"Aggregation {spec.aggregation!r} is not available for {kind.value} metric {spec.metric!r}"
            )

    @property
    def has_abort_on_fail(self) -> bool:
        return any(spec.abort_on_fail for spec in self.specs)

    def evaluate_spec(self, spec: ThresholdSpec, metrics: Mapping[str, MetricSnapshot]) -> ThresholdOutcome:
        snapshot = metrics.get(spec.metric)
        if snapshot is None or snapshot.observations == 0:
            ok = self.no_data_policy is NoDataPolicy.SKIP
            return ThresholdOutcome(spec, ThresholdStatus.NO_DATA, None, ok, "no observations")

        if not spec.supports(snapshot.kind):
            return ThresholdOutcome(
                spec,
                ThresholdStatus.FAILED,
                None,
                False,
                f"{spec.aggregation} not available for {snapshot.kind.value} metric",
            )

        observed = snapshot.value(spec.aggregation)
        if spec.holds(observed):
            return ThresholdOutcome(spec, ThresholdStatus.PASSED, observed, True)
        return ThresholdOutcome(
            spec,
            ThresholdStatus.FAILED,
            observed,
            False,
            f"{spec.aggregation}={observed:.4g} does not satisfy {spec.expression}",
        )

    def evaluate_all(self, metrics: Mapping[str, MetricSnapshot]) -> tuple[ThresholdOutcome, ...]:
        return tuple(self.evaluate_spec(spec, metrics) for spec in self.specs)

    def failing_abort_thresholds(self, metrics: Mapping[str, MetricSnapshot]) -> list[ThresholdOutcome]:
        """Evaluate only abort-on-fail thresholds; return those that currently fail with data."""
        failing = []
        for spec in self.specs:
            if not spec.abort_on_fail:
                continue
            outcome = self.evaluate_spec(spec, metrics)
            if outcome.status is ThresholdStatus.FAILED:
                failing.append(outcome)
        return failing

    def evaluate(
        self,
        metrics: Mapping[str, MetricSnapshot],
        *,
        started_at: datetime,
        duration: float,
        aborted_by_threshold: bool = False,
        scenario_errors: Iterable[str] = (),
    ) -> RunReport:
        """Evaluate every threshold and assemble the final :class:`RunReport`."""
        outcomes = self.evaluate_all(metrics)
        for outcome in outcomes:
            if not outcome.ok:
                logger.warning("Threshold failed: %s (%s)", outcome.spec, outcome.reason)

        iterations = IterationSummary(
            completed=_count(metrics, ITERATIONS),
            failed=_count(metrics, ITERATIONS_FAILED),
            aborted=_count(metrics, ITERATIONS_ABORTED),
        )
        return RunReport(
            started_at=started_at,
            duration=duration,
            metrics=dict(metrics),
            thresholds=outcomes,
            iterations=iterations,
            aborted_by_threshold=aborted_by_threshold,
            scenario_errors=tuple(scenario_errors),
        )
