"""
Command-line entry point.

Usage::

    loadgen run tests.performance.scenarios.ecommerce:SCENARIO \\
        --config tests/performance/ecommerce.yml --summary-export summary.json

The scenario reference is ``module:attribute`` where the attribute is a
:class:`~loadgen.runtime.Scenario` or a plain ``run(ctx)`` callable.

Exit codes follow :mod:`loadgen.errors`: ``0`` pass, ``1`` threshold
breach, ``2`` configuration / setup / engine failure.
"""

from __future__ import annotations

import argparse
import importlib
import logging
import sys
from pathlib import Path

from loadgen.errors import (
    EXIT_ENGINE_ERROR,
    EXIT_PASS,
    EXIT_THRESHOLD_BREACH,
    ConfigurationError,
    LoadGenError,
)
from loadgen.loader import load_run_config
from loadgen.report import export_json, render_summary
from loadgen.runtime import LoadRunner, Scenario

logger = logging.getLogger(__name__)


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    """Parse CLI arguments."""
    parser = argparse.ArgumentParser(prog="loadgen", description="Run a virtual-user load test.")
    subparsers = parser.add_subparsers(dest="command", required=True)

    run_parser = subparsers.add_parser("run", help="Run a scenario against a stage plan")
    run_parser.add_argument("scenario", help="Scenario reference as module:attribute")
    run_parser.add_argument("--config", required=True, type=Path, help="Path to the YAML run file")
    run_parser.add_argument(
        "--env",
        default=None,
        help="Configuration environment (development, testing, production)",
    )
    run_parser.add_argument(
        "--summary-export",
        type=Path,
        default=None,
        help="Write the run report as JSON to this path",
    )
    return parser.parse_args(argv)


def load_scenario(reference: str) -> Scenario:
    """
    Import ``module:attribute`` and return it as a :class:`Scenario`.

    Raises:
        ConfigurationError: If the reference is malformed, cannot be
            imported, or does not name a scenario.
    """
    module_name, sep, attribute = reference.partition(":")
    if not sep or not module_name or not attribute:
        raise ConfigurationError(f"Scenario reference must look like module:attribute, got {reference!r}")

    try:
        module = importlib.import_module(module_name)
    except ImportError as exc:
        raise ConfigurationError(f"Cannot import scenario module {module_name!r}: {exc}") from exc

    try:
        target = getattr(module, attribute)
    except AttributeError as exc:
        raise ConfigurationError(f"{module_name!r} has no attribute {attribute!r}") from exc

    if isinstance(target, Scenario):
        return target
    if callable(target):
        return Scenario(run=target, name=attribute)
    raise ConfigurationError(f"{reference!r} is neither a Scenario nor callable")


def main(argv: list[str] | None = None) -> int:
    """
    Entry point: load config and scenario, run, print the summary.

    Returns:
        ``EXIT_PASS`` (0) if all thresholds are met,
        ``EXIT_THRESHOLD_BREACH`` (1) if any are breached, or
        ``EXIT_ENGINE_ERROR`` (2) on configuration, setup or engine failures.
    """
    args = parse_args(argv)

    try:
        run_config = load_run_config(args.config, env=args.env)
        scenario = load_scenario(args.scenario)
        runner = LoadRunner(
            scenario,
            run_config.plan,
            run_config.thresholds,
            run_config.options,
        )
        report = runner.run()
        summary = render_summary(report)
    except ConfigurationError as exc:
        print(f"Configuration error: {exc}", file=sys.stderr)
        return EXIT_ENGINE_ERROR
    except LoadGenError as exc:
        logger.exception("Load run failed")
        print(f"Load run failed: {exc}", file=sys.stderr)
        return EXIT_ENGINE_ERROR
    except Exception as exc:
        logger.exception("Unexpected error during load run")
        print(f"Load run failed: {type(exc).__name__}: {exc}", file=sys.stderr)
        return EXIT_ENGINE_ERROR

    print(summary)
    if args.summary_export is not None:
        try:
            export_json(report, args.summary_export)
        except OSError as exc:
            print(f"Cannot write summary export: {exc}", file=sys.stderr)
            return EXIT_ENGINE_ERROR

    return EXIT_PASS if report.passed else EXIT_THRESHOLD_BREACH


if __name__ == "__main__":
    raise SystemExit(main())
