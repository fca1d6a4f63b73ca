"""
End-of-run summary rendering and export.

The summary is a plain-text table written to stdout for CI logs; the
JSON export carries the same data for dashboards or later comparison.
"""

from __future__ import annotations

import json
from pathlib import Path
from typing import Any

from loadgen.metrics import MetricKind, MetricSnapshot
from loadgen.thresholds import RunReport, ThresholdStatus

WIDTH = 78


def _format_metric(snapshot: MetricSnapshot) -> str:
    values = snapshot.values
    if snapshot.kind is MetricKind.COUNTER:
        return f"count={values['count']:g} rate={values['rate']:.2f}/s"
    if snapshot.kind is MetricKind.RATE:
        return f"{values['rate'] * 100:.2f}% ({values['passes']:g} of {values['passes'] + values['fails']:g})"
    if not snapshot.observations:
        return "no data"
    return (
        f"avg={values['avg']:.2f} min={values['min']:.2f} med={values['med']:.2f} "
        f"max={values['max']:.2f} p(90)={values['p(90)']:.2f} p(95)={values['p(95)']:.2f}"
    )


def render_summary(report: RunReport) -> str:
    """Build the human-readable results table."""
    lines = ["Load Test Summary", "-" * WIDTH]
    for name, snapshot in report.metrics.items():
        if snapshot.observations == 0:
            continue
        lines.append(f"{name:<40}{_format_metric(snapshot)}")

    lines.append("-" * WIDTH)
    iterations = report.iterations
    lines.append(
        f"Iterations: {iterations.completed} completed, {iterations.failed} failed, "
        f"{iterations.aborted} aborted"
    )
    for message in report.scenario_errors:
        lines.append(f"  scenario error: {message}")

    if report.thresholds:
        lines.append("-" * WIDTH)
        lines.append(f"{'Threshold':<50}{'Actual':>14}{'Status':>14}")
        for outcome in report.thresholds:
            actual = "-" if outcome.observed is None else f"{outcome.observed:.4g}"
            if outcome.status is ThresholdStatus.NO_DATA:
                status = "NO DATA" if outcome.ok else "FAIL"
            else:
                status = "PASS" if outcome.ok else "FAIL"
            lines.append(f"{str(outcome.spec):<50}{actual:>14}{status:>14}")

    lines.append("-" * WIDTH)
    if report.aborted_by_threshold:
        lines.append("Run stopped early by an abort-on-fail threshold")
    lines.append(f"Duration: {report.duration:.1f}s")
    lines.append(f"Overall: {'PASS' if report.passed else 'FAIL'}")
    return "\n".join(lines)


def report_to_dict(report: RunReport) -> dict[str, Any]:
    return {
        "started_at": report.started_at.isoformat(),
        "duration": report.duration,
        "passed": report.passed,
        "aborted_by_threshold": report.aborted_by_threshold,
        "iterations": {
            "completed": report.iterations.completed,
            "failed": report.iterations.failed,
            "aborted": report.iterations.aborted,
        },
        "scenario_errors": list(report.scenario_errors),
        "metrics": {name: snapshot.to_dict() for name, snapshot in report.metrics.items()},
        "thresholds": [
            {
                "metric": outcome.spec.metric,
                "expression": outcome.spec.expression,
                "status": outcome.status.value,
                "observed": outcome.observed,
                "ok": outcome.ok,
                "reason": outcome.reason,
            }
            for outcome in report.thresholds
        ],
    }


def export_json(report: RunReport, path: str | Path) -> None:
    with Path(path).open("w", encoding="utf-8") as handle:
        json.dump(report_to_dict(report), handle, indent=2)
