"""
Execution context handed to a scenario on every iteration.

A scenario never talks to the engine directly.  It receives a
:class:`ScenarioContext` exposing the handful of operations a scripted
user needs -- ``http_call`` (plus ``get``/``post``/... shortcuts),
``check``, ``sleep`` and ``record`` -- and the engine takes care of
timing, metric bookkeeping and cancellation behind them.

Each virtual user owns exactly one context for its whole lifetime, so
nothing in here is shared between users except the metric registry.
"""

from __future__ import annotations

import logging
import random
import threading
from collections.abc import Callable, Mapping
from dataclasses import dataclass
from typing import Any

from loadgen.errors import IterationAborted
from loadgen.executor import HttpExecutor, RequestResult
from loadgen.metrics import (
    CHECKS,
    DATA_RECEIVED,
    DATA_SENT,
    HTTP_REQ_DURATION,
    HTTP_REQ_FAILED,
    HTTP_REQS,
    MetricKind,
    MetricRegistry,
    tagged_name,
)

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class CheckOutcome:
    """A named boolean assertion evaluated against a request or derived value."""

    name: str
    passed: bool


class ScenarioContext:
    """
    Per-virtual-user handle for issuing requests and recording results.

    Attributes:
        vu_id: 1-based id of the owning virtual user.
        iteration: Number of the iteration currently running (1-based).
        random: Random generator private to this user; seeded
            deterministically when the run has a seed.
        fixtures: Read-only test data from the run file.
        setup_data: Whatever the scenario's ``setup`` hook returned.
    """

    def __init__(
        self,
        *,
        vu_id: int,
        executor: HttpExecutor,
        registry: MetricRegistry,
        hard_stop: threading.Event,
        rng: random.Random | None = None,
        fixtures: Mapping[str, Any] | None = None,
        setup_data: Any = None,
    ):
        self.vu_id = vu_id
        self.iteration = 0
        self.executor = executor
        self.random = rng if rng is not None else random.Random()
        self.fixtures = fixtures if fixtures is not None else {}
        self.setup_data = setup_data
        self._registry = registry
        self._hard_stop = hard_stop

    @property
    def base_url(self) -> str:
        return self.executor.base_url

    def _ensure_running(self) -> None:
        if self._hard_stop.is_set():
            raise IterationAborted(f"VU {self.vu_id} abandoned at hard cutoff")

    # =====================================================================
    # HTTP
    # =====================================================================

    def http_call(
        self,
        method: str,
        url: str,
        body: bytes | str | None = None,
        headers: Mapping[str, str] | None = None,
        *,
        json: Any = None,
        timeout: float | None = None,
        name: str | None = None,
    ) -> RequestResult:
        """
        Issue one request and feed its outcome into the HTTP metrics.

        Records ``http_reqs``, ``http_req_duration``, ``http_req_failed``
        (transport error or a status outside 200-399), ``data_sent`` and
        ``data_received``.  When ``name`` is given the duration and
        failure rate are also recorded under ``{name:<name>}`` sub-metrics
        so thresholds can target a single step.
        """
        self._ensure_running()
        result = self.executor.execute(
            method, url, body, headers, json=json, timeout=timeout, name=name
        )
        self._record_request(result)
        return result

    def get(self, url: str, **kwargs: Any) -> RequestResult:
        return self.http_call("GET", url, **kwargs)

    def post(self, url: str, body: bytes | str | None = None, **kwargs: Any) -> RequestResult:
        return self.http_call("POST", url, body, **kwargs)

    def put(self, url: str, body: bytes | str | None = None, **kwargs: Any) -> RequestResult:
        return self.http_call("PUT", url, body, **kwargs)

    def patch(self, url: str, body: bytes | str | None = None, **kwargs: Any) -> RequestResult:
        return self.http_call("PATCH", url, body, **kwargs)

    def delete(self, url: str, **kwargs: Any) -> RequestResult:
        return self.http_call("DELETE", url, **kwargs)

    def _record_request(self, result: RequestResult) -> None:
        registry = self._registry
        failed = not result.ok
        registry.record(HTTP_REQS, MetricKind.COUNTER, 1)
        registry.record(HTTP_REQ_DURATION, MetricKind.TREND, result.latency_ms)
        registry.record(HTTP_REQ_FAILED, MetricKind.RATE, failed)
        registry.record(DATA_SENT, MetricKind.COUNTER, result.sent_bytes)
        registry.record(DATA_RECEIVED, MetricKind.COUNTER, result.body_bytes)
        if result.name:
            registry.record(
                tagged_name(HTTP_REQ_DURATION, "name", result.name),
                MetricKind.TREND,
                result.latency_ms,
            )
            registry.record(
                tagged_name(HTTP_REQ_FAILED, "name", result.name), MetricKind.RATE, failed
            )

    # =====================================================================
    # Checks, pacing and custom metrics
    # =====================================================================

    def check(self, value: Any, checks: Mapping[str, Callable[[Any], Any]]) -> bool:
        """
        Evaluate named predicates against ``value`` and record each outcome.

        Every predicate is evaluated (no short-circuit) so each name gets
        an observation in ``checks`` and ``checks{check:<name>}``.  An
        exception raised by a predicate propagates and fails the
        iteration.

        Returns:
            True if every predicate passed.
        """
        outcomes = [CheckOutcome(name, bool(predicate(value))) for name, predicate in checks.items()]
        for outcome in outcomes:
            self._registry.record(CHECKS, MetricKind.RATE, outcome.passed)
            self._registry.record(
                tagged_name(CHECKS, "check", outcome.name), MetricKind.RATE, outcome.passed
            )
        return all(outcome.passed for outcome in outcomes)

    def sleep(self, seconds: float) -> None:
        """Pause this user only; wakes up early and aborts if the hard cutoff hits."""
        self._ensure_running()
        if seconds <= 0:
            return
        if self._hard_stop.wait(seconds):
            raise IterationAborted(f"VU {self.vu_id} abandoned at hard cutoff")

    def record(self, name: str, kind: MetricKind | str, value: Any) -> None:
        """Add one observation to a custom metric (e.g. a ``Rate`` named ``errors``)."""
        self._registry.record(name, kind, value)

    def close(self) -> None:
        self.executor.close()
