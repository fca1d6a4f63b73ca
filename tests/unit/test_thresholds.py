"""
Unit tests for threshold parsing, validation and evaluation.

Key SDET Concepts Demonstrated:
- Parametrized parsing tests
- Fail-fast configuration validation
- Policy-driven verdicts (no-data skip vs fail)
"""

from datetime import datetime, timezone

import pytest

from loadgen.errors import ConfigurationError
from loadgen.metrics import BUILTIN_METRICS, MetricKind, MetricRegistry
from loadgen.thresholds import (
    NoDataPolicy,
    ThresholdEvaluator,
    ThresholdSpec,
    ThresholdStatus,
    parse_thresholds,
)

pytestmark = pytest.mark.unit

STARTED_AT = datetime(2024, 1, 1, tzinfo=timezone.utc)


def _known(**custom: str) -> dict[str, MetricKind]:
    known = dict(BUILTIN_METRICS)
    known.update({name: MetricKind(kind) for name, kind in custom.items()})
    return known


class TestParsing:
    """k6-style threshold expressions."""

    @pytest.mark.parametrize(
        ("expression", "aggregation", "op", "value"),
        [
            ("p(95)<500", "p(95)", "<", 500.0),
            ("p( 99.9 ) <= 1500", "p(99.9)", "<=", 1500.0),
            ("rate<0.1", "rate", "<", 0.1),
            ("rate>0.9", "rate", ">", 0.9),
            ("avg >= 10", "avg", ">=", 10.0),
            ("count==0", "count", "==", 0.0),
        ],
    )
    def test_parses_expression(self, expression, aggregation, op, value):
        spec = ThresholdSpec.parse("metric", expression)

        assert spec.aggregation == aggregation
        assert spec.operator == op
        assert spec.value == pytest.approx(value)
        assert spec.abort_on_fail is False

    @pytest.mark.parametrize("expression", ["", "p95<500", "rate <", "rate ~ 1", "p(101)<5", "foo(5)<1", 0.5])
    def test_rejects_malformed_expression(self, expression):
        with pytest.raises(ConfigurationError):
            ThresholdSpec.parse("metric", expression)

    def test_parse_thresholds_accepts_strings_lists_and_objects(self):
        specs = parse_thresholds(
            {
                "http_req_duration": ["p(95)<500", "avg<200"],
                "http_req_failed": "rate<0.1",
                "success": {"threshold": "rate>0.9", "abortOnFail": True},
            }
        )

        assert [str(spec) for spec in specs] == [
            "http_req_duration: p(95)<500",
            "http_req_duration: avg<200",
            "http_req_failed: rate<0.1",
            "success: rate>0.9",
        ]
        assert [spec.abort_on_fail for spec in specs] == [False, False, False, True]

    def test_threshold_object_without_expression_is_rejected(self):
        with pytest.raises(ConfigurationError):
            parse_thresholds({"success": [{"abortOnFail": True}]})

    def test_empty_mapping_yields_no_thresholds(self):
        assert parse_thresholds(None) == []
        assert parse_thresholds({}) == []


class TestValidation:
    """Unknown metrics and impossible aggregations fail before the run."""

    def test_unknown_metric_is_a_configuration_error(self):
        specs = parse_thresholds({"sucess": ["rate>0.9"]})

        with pytest.raises(ConfigurationError, match="unknown metric"):
            ThresholdEvaluator(specs, known_metrics=_known(success="rate"))

    def test_percentile_on_a_rate_is_a_configuration_error(self):
        specs = parse_thresholds({"http_req_failed": ["p(95)<0.1"]})

        with pytest.raises(ConfigurationError, match="not available"):
            ThresholdEvaluator(specs, known_metrics=_known())

    def test_tagged_metric_is_validated_by_base_name(self):
        specs = parse_thresholds({"http_req_duration{name:create_order}": ["p(95)<800"]})

        evaluator = ThresholdEvaluator(specs, known_metrics=_known())

        assert evaluator.specs == tuple(specs)

    def test_invalid_no_data_policy_is_rejected(self):
        with pytest.raises(ConfigurationError):
            ThresholdEvaluator([], no_data_policy="ignore")


class TestEvaluation:
    """Verdicts computed from final metric snapshots."""

    def test_passing_and_failing_thresholds(self, registry):
        for latency in (100, 200, 300, 400, 900):
            registry.record("http_req_duration", MetricKind.TREND, latency)
        for ok in (True, True, True, False):
            registry.record("success", MetricKind.RATE, ok)
        specs = parse_thresholds(
            {"http_req_duration": ["p(95)<1000", "max<500"], "success": ["rate>0.9"]}
        )
        evaluator = ThresholdEvaluator(specs, known_metrics=_known(success="rate"))

        report = evaluator.evaluate(registry.snapshot(1.0), started_at=STARTED_AT, duration=1.0)

        statuses = [outcome.status for outcome in report.thresholds]
        assert statuses == [ThresholdStatus.PASSED, ThresholdStatus.FAILED, ThresholdStatus.FAILED]
        assert report.thresholds[2].observed == pytest.approx(0.75)
        assert not report.passed
        assert len(report.failed_thresholds) == 2

    def test_all_thresholds_passing_means_run_passes(self, registry):
        registry.record("http_req_failed", MetricKind.RATE, False)
        evaluator = ThresholdEvaluator(parse_thresholds({"http_req_failed": ["rate<0.1"]}))

        report = evaluator.evaluate(registry.snapshot(1.0), started_at=STARTED_AT, duration=1.0)

        assert report.passed
        assert report.thresholds[0].observed == 0.0

    def test_no_data_is_skipped_by_default(self):
        evaluator = ThresholdEvaluator(parse_thresholds({"success": ["rate>0.9"]}))

        report = evaluator.evaluate({}, started_at=STARTED_AT, duration=1.0)

        assert report.thresholds[0].status is ThresholdStatus.NO_DATA
        assert report.thresholds[0].observed is None
        assert report.passed

    def test_no_data_fails_under_fail_policy(self, registry):
        registry.declare("success", MetricKind.RATE)
        evaluator = ThresholdEvaluator(
            parse_thresholds({"success": ["rate>0.9"]}), no_data_policy=NoDataPolicy.FAIL
        )

        report = evaluator.evaluate(registry.snapshot(1.0), started_at=STARTED_AT, duration=1.0)

        assert report.thresholds[0].status is ThresholdStatus.NO_DATA
        assert not report.passed

    def test_abort_flag_fails_the_run_even_with_green_thresholds(self):
        evaluator = ThresholdEvaluator([])

        report = evaluator.evaluate({}, started_at=STARTED_AT, duration=1.0, aborted_by_threshold=True)

        assert not report.passed

    def test_failing_abort_thresholds_ignores_no_data_and_plain_thresholds(self, registry):
        for ok in (False, False):
            registry.record("errors", MetricKind.RATE, ok)
        specs = parse_thresholds(
            {
                "errors": [{"threshold": "rate>0.5", "abortOnFail": True}, "rate>0.9"],
                "success": [{"threshold": "rate>0.9", "abortOnFail": True}],
            }
        )
        evaluator = ThresholdEvaluator(specs, no_data_policy="fail")

        failing = evaluator.failing_abort_thresholds(registry.snapshot(1.0))

        assert evaluator.has_abort_on_fail
        assert [outcome.spec.expression for outcome in failing] == ["rate>0.5"]

    def test_iteration_counts_are_summarised(self):
        registry = MetricRegistry()
        registry.record("iterations", MetricKind.COUNTER, 1)
        registry.record("iterations", MetricKind.COUNTER, 1)
        registry.record("iterations_failed", MetricKind.COUNTER, 1)

        report = ThresholdEvaluator([]).evaluate(
            registry.snapshot(1.0), started_at=STARTED_AT, duration=1.0
        )

        assert report.iterations.completed == 2
        assert report.iterations.failed == 1
        assert report.iterations.aborted == 0
        assert report.iterations.total == 3
