"""
loadgen -- a single-process virtual-user load generator.

A run is described by a stage plan (how many virtual users over time),
a scenario (what each user does per iteration) and thresholds (what
counts as passing).  The engine schedules users, executes their HTTP
calls, aggregates metrics and turns the threshold verdict into the
process exit code.

Typical embedding::

    from loadgen import LoadRunner, Scenario, StagePlan, Stage, parse_thresholds

    def visit(ctx):
        result = ctx.get("/api/products", name="list products")
        ctx.check(result, {"status is 200": lambda r: r.status == 200})

    report = LoadRunner(
        Scenario(run=visit),
        StagePlan((Stage(30, 10), Stage(60, 10))),
        parse_thresholds({"http_req_duration": ["p(95)<500"]}),
    ).run()
"""

from __future__ import annotations

import logging

from loadgen.config import get_config
from loadgen.context import CheckOutcome, ScenarioContext
from loadgen.errors import (
    EXIT_ENGINE_ERROR,
    EXIT_PASS,
    EXIT_THRESHOLD_BREACH,
    ConfigurationError,
    EngineError,
    ScenarioError,
    TransportError,
)
from loadgen.executor import HttpExecutor, RequestResult
from loadgen.metrics import MetricKind, MetricRegistry
from loadgen.runtime import LoadRunner, RunOptions, Scenario
from loadgen.stages import Scheduler, Stage, StagePlan
from loadgen.thresholds import RunReport, ThresholdEvaluator, ThresholdSpec, parse_thresholds

# Configure logging
logging.basicConfig(
    level=get_config().LOG_LEVEL,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)

__all__ = [
    "CheckOutcome",
    "ConfigurationError",
    "EXIT_ENGINE_ERROR",
    "EXIT_PASS",
    "EXIT_THRESHOLD_BREACH",
    "EngineError",
    "HttpExecutor",
    "LoadRunner",
    "MetricKind",
    "MetricRegistry",
    "RequestResult",
    "RunOptions",
    "RunReport",
    "Scenario",
    "ScenarioContext",
    "ScenarioError",
    "Scheduler",
    "Stage",
    "StagePlan",
    "ThresholdEvaluator",
    "ThresholdSpec",
    "TransportError",
    "parse_thresholds",
]
