"""
Virtual user runtime: the control loop that drives a run.

The runtime owns three moving parts:

1. A **control loop** on the calling thread.  Every ``tick_interval``
   it asks the :class:`~loadgen.stages.Scheduler` how many users should
   be running, starts new users when below target and retires the
   newest ones when above it.
2. One **daemon thread per virtual user**.  A user runs the scenario
   iteration after iteration, pausing for think time in between, until
   it is retired or the run stops.  Retired users always finish the
   iteration they are in; ramp-down never cuts a request short.
3. A **drain** phase.  When the plan ends (or an abort-on-fail
   threshold trips) no new iterations start and in-flight ones get
   ``graceful_stop`` seconds to finish.  Whatever is still running at
   that hard cutoff is recorded as *aborted* and its thread abandoned.

Users never see each other; the only shared state is the
:class:`~loadgen.metrics.MetricRegistry`, which has one lock per metric.

Key Concepts Demonstrated:
- Closed-loop concurrency control against a time-varying target
- Graceful ramp-down and two-phase (drain, then cutoff) shutdown
- Converting per-iteration failures into metrics instead of crashes
"""

from __future__ import annotations

import logging
import random
import threading
import time
from collections.abc import Callable, Iterable, Mapping
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any

import requests

from loadgen.config import Config, get_config
from loadgen.context import ScenarioContext
from loadgen.errors import (
    ConfigurationError,
    EngineError,
    IterationAborted,
    LoadGenError,
    ScenarioError,
)
from loadgen.executor import HttpExecutor
from loadgen.metrics import (
    BUILTIN_METRICS,
    ITERATION_DURATION,
    ITERATIONS,
    ITERATIONS_ABORTED,
    ITERATIONS_FAILED,
    MetricKind,
    MetricRegistry,
)
from loadgen.stages import Scheduler, StagePlan
from loadgen.thresholds import NoDataPolicy, RunReport, ThresholdEvaluator, ThresholdSpec

logger = logging.getLogger(__name__)

# Distinct scenario error messages kept for the report.
MAX_REPORTED_ERRORS = 10


class IterationOutcome(str, Enum):
    COMPLETED = "completed"
    FAILED = "failed"
    ABORTED = "aborted"


@dataclass
class Scenario:
    """
    What a virtual user executes.

    Attributes:
        run: Called once per iteration with a
            :class:`~loadgen.context.ScenarioContext`.
        setup: Optional hook run once before the first user starts.  It
            receives the run's :class:`RunOptions`; its return value is
            exposed as ``ctx.setup_data``.
        teardown: Optional hook run once after the run with the final
            :class:`~loadgen.thresholds.RunReport`.
        name: Label used in logs.
        metrics: Custom metrics the scenario records, name -> kind.
            Declaring them lets thresholds on them validate up front.
    """

    run: Callable[[ScenarioContext], Any]
    setup: Callable[[RunOptions], Any] | None = None
    teardown: Callable[[RunReport], Any] | None = None
    name: str = "default"
    metrics: Mapping[str, MetricKind | str] = field(default_factory=dict)


@dataclass(frozen=True)
class RunOptions:
    """
    Immutable knobs of one run.

    Defaults come from a :mod:`loadgen.config` class; run files override
    individual values via :meth:`from_config`.
    """

    base_url: str = ""
    request_timeout: float = 60.0
    think_time: float = 0.0
    tick_interval: float = 1.0
    graceful_stop: float = 30.0
    threshold_interval: float = 5.0
    no_data_policy: str = NoDataPolicy.SKIP.value
    seed: int | None = None
    headers: Mapping[str, str] = field(default_factory=dict)
    fixtures: Mapping[str, Any] = field(default_factory=dict)

    def __post_init__(self) -> None:
        if self.request_timeout <= 0:
            raise ConfigurationError(f"request_timeout must be positive, got {self.request_timeout}")
        if self.tick_interval <= 0:
            raise ConfigurationError(f"tick_interval must be positive, got {self.tick_interval}")
        if self.threshold_interval <= 0:
            raise ConfigurationError(
                f"threshold_interval must be positive, got {self.threshold_interval}"
            )
        for name in ("think_time", "graceful_stop"):
            if getattr(self, name) < 0:
                raise ConfigurationError(f"{name} must be >= 0, got {getattr(self, name)}")
        if self.no_data_policy not in {policy.value for policy in NoDataPolicy}:
            raise ConfigurationError(
                f"no_data_policy must be 'skip' or 'fail', got {self.no_data_policy!r}"
            )

    @classmethod
    def from_config(cls, config_class: type[Config] | None = None, **overrides: Any) -> RunOptions:
        """Build options from a config class, replacing any value given in ``overrides``."""
        config_class = config_class or get_config()
        values: dict[str, Any] = {
            "base_url": config_class.BASE_URL,
            "request_timeout": config_class.REQUEST_TIMEOUT,
            "think_time": config_class.THINK_TIME,
            "tick_interval": config_class.TICK_INTERVAL,
            "graceful_stop": config_class.GRACEFUL_STOP,
            "threshold_interval": config_class.THRESHOLD_INTERVAL,
            "no_data_policy": config_class.NO_DATA_POLICY,
            "seed": config_class.SEED,
        }
        values.update({key: value for key, value in overrides.items() if value is not None})
        return cls(**values)


class VirtualUser:
    """
    One simulated client running the scenario in a loop on its own thread.

    The iteration state machine is guarded by a per-user lock so that
    "iteration finished" and "iteration abandoned at cutoff" can never
    both be recorded for the same iteration.
    """

    def __init__(self, vu_id: int, runner: LoadRunner):
        self.id = vu_id
        self._runner = runner
        self._retired = threading.Event()
        self._lock = threading.Lock()
        self._in_iteration = False
        self._abandoned = False
        self.thread = threading.Thread(target=self._loop, name=f"vu-{vu_id}", daemon=True)

    def start(self) -> None:
        self.thread.start()

    def retire(self) -> None:
        """Ask the user to stop after its current iteration."""
        self._retired.set()

    @property
    def retired(self) -> bool:
        return self._retired.is_set()

    def is_alive(self) -> bool:
        return self.thread.is_alive()

    def abandon(self) -> bool:
        """Mark the running iteration aborted; False if the user was between iterations."""
        with self._lock:
            if not self._in_iteration or self._abandoned:
                return False
            self._abandoned = True
            return True

    def _begin_iteration(self) -> bool:
        with self._lock:
            if self._abandoned:
                return False
            self._in_iteration = True
            return True

    def _end_iteration(self, outcome: IterationOutcome | None = None) -> bool:
        """Close the iteration; False if the runner already counted it as aborted."""
        with self._lock:
            self._in_iteration = False
            if self._abandoned:
                return False
            if outcome is IterationOutcome.ABORTED:
                # Cut off before the runner reached this user; count it under
                # the lock so the runner's abandon() cannot miss or repeat it.
                self._abandoned = True
                self._runner.registry.record(ITERATIONS_ABORTED, MetricKind.COUNTER, 1)
            return True

    def _loop(self) -> None:
        runner = self._runner
        ctx: ScenarioContext | None = None
        try:
            ctx = runner.new_context(self.id)
            logger.debug("VU %d started", self.id)
            while runner.admitting and not self.retired:
                outcome = self._run_iteration(ctx)
                if outcome is IterationOutcome.ABORTED:
                    break
                think_time = runner.options.think_time
                if think_time > 0 and self._retired.wait(think_time):
                    break
        except EngineError as exc:
            runner.fail(exc)
        except Exception as exc:
            fault = EngineError(f"VU {self.id} crashed: {type(exc).__name__}: {exc}")
            fault.__cause__ = exc
            runner.fail(fault)
        finally:
            if ctx is not None:
                ctx.close()
            logger.debug("VU %d stopped", self.id)

    def _run_iteration(self, ctx: ScenarioContext) -> IterationOutcome:
        runner = self._runner
        if not self._begin_iteration():
            return IterationOutcome.ABORTED

        ctx.iteration += 1
        started = time.perf_counter()
        try:
            runner.scenario.run(ctx)
        except IterationAborted:
            outcome = IterationOutcome.ABORTED
        except EngineError:
            self._end_iteration()
            raise
        except Exception as exc:
            outcome = IterationOutcome.FAILED
            error = ScenarioError(
                f"{type(exc).__name__}: {exc}", vu_id=self.id, iteration=ctx.iteration
            )
            logger.warning(
                "VU %d iteration %d failed: %s", self.id, ctx.iteration, error, exc_info=exc
            )
            runner.note_scenario_error(error)
        else:
            outcome = IterationOutcome.COMPLETED
        elapsed_ms = (time.perf_counter() - started) * 1000.0

        if not self._end_iteration(outcome) or outcome is IterationOutcome.ABORTED:
            # Counted as aborted, by the runner or by _end_iteration.
            return IterationOutcome.ABORTED

        registry = runner.registry
        if outcome is IterationOutcome.COMPLETED:
            registry.record(ITERATIONS, MetricKind.COUNTER, 1)
            registry.record(ITERATION_DURATION, MetricKind.TREND, elapsed_ms)
        elif outcome is IterationOutcome.FAILED:
            registry.record(ITERATIONS_FAILED, MetricKind.COUNTER, 1)
            registry.record(ITERATION_DURATION, MetricKind.TREND, elapsed_ms)
        return outcome


class LoadRunner:
    """
    Runs one scenario along one stage plan and produces a :class:`RunReport`.

    Args:
        scenario: The scenario every virtual user executes.
        plan: Ramp/plateau schedule.
        thresholds: Pass/fail criteria evaluated at the end (and
            periodically for abort-on-fail ones).
        options: Run options; defaults come from the active config class.
        registry: Metric registry to record into; a fresh one by default.
        session_factory: Builds the HTTP session for each new user.
        clock: Monotonic clock, injectable for tests.

    Raises:
        ConfigurationError: From the constructor, for invalid thresholds.
    """

    def __init__(
        self,
        scenario: Scenario,
        plan: StagePlan,
        thresholds: Iterable[ThresholdSpec] = (),
        options: RunOptions | None = None,
        *,
        registry: MetricRegistry | None = None,
        session_factory: Callable[[], requests.Session] = requests.Session,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.scenario = scenario
        self.plan = plan
        self.options = options or RunOptions.from_config()
        self.registry = registry or MetricRegistry()
        self._session_factory = session_factory
        self._clock = clock

        known_metrics: dict[str, MetricKind] = dict(BUILTIN_METRICS)
        for name, kind in scenario.metrics.items():
            try:
                kind = MetricKind(kind)
            except ValueError as exc:
                raise ConfigurationError(f"Unknown metric kind {kind!r} for {name!r}") from exc
            if known_metrics.get(name, kind) is not kind:
                raise ConfigurationError(f"{name!r} is a built-in {known_metrics[name].value} metric")
            known_metrics[name] = kind
        self.evaluator = ThresholdEvaluator(
            thresholds, self.options.no_data_policy, known_metrics=known_metrics
        )
        self._known_metrics = known_metrics

        self._users: list[VirtualUser] = []
        self._next_vu_id = 1
        self._admitting = threading.Event()
        self._hard_stop = threading.Event()
        self._wake = threading.Event()
        self._fatal: EngineError | None = None
        self._errors_lock = threading.Lock()
        self._scenario_errors: list[str] = []
        self._setup_data: Any = None

    # =====================================================================
    # Hooks used by virtual users
    # =====================================================================

    @property
    def admitting(self) -> bool:
        """True while new iterations may start."""
        return self._admitting.is_set()

    def new_context(self, vu_id: int) -> ScenarioContext:
        options = self.options
        executor = HttpExecutor(
            base_url=options.base_url,
            timeout=options.request_timeout,
            session=self._session_factory(),
            default_headers=options.headers,
        )
        if options.seed is not None:
            rng = random.Random(options.seed * 1_000_003 + vu_id)
        else:
            rng = random.Random()
        return ScenarioContext(
            vu_id=vu_id,
            executor=executor,
            registry=self.registry,
            hard_stop=self._hard_stop,
            rng=rng,
            fixtures=options.fixtures,
            setup_data=self._setup_data,
        )

    def note_scenario_error(self, error: ScenarioError) -> None:
        message = str(error)
        with self._errors_lock:
            if message not in self._scenario_errors and len(self._scenario_errors) < MAX_REPORTED_ERRORS:
                self._scenario_errors.append(message)

    def fail(self, exc: EngineError) -> None:
        """Record a fatal engine fault raised on a user thread and stop the run."""
        logger.error("Engine fault, stopping run: %s", exc)
        if self._fatal is None:
            self._fatal = exc
        self._wake.set()

    # =====================================================================
    # Control loop
    # =====================================================================

    @property
    def active_users(self) -> int:
        return sum(1 for user in self._users if not user.retired and user.is_alive())

    def _spawn(self, count: int) -> None:
        for _ in range(count):
            user = VirtualUser(self._next_vu_id, self)
            self._next_vu_id += 1
            user.start()
            self._users.append(user)

    def _adjust(self, desired: int) -> None:
        self._users = [user for user in self._users if user.is_alive()]
        running = [user for user in self._users if not user.retired]
        if desired > len(running):
            logger.debug("Scaling up %d -> %d users", len(running), desired)
            self._spawn(desired - len(running))
        elif desired < len(running):
            logger.debug("Scaling down %d -> %d users", len(running), desired)
            for user in running[desired:]:
                user.retire()

    def _run_setup(self) -> None:
        if self.scenario.setup is None:
            return
        try:
            self._setup_data = self.scenario.setup(self.options)
        except Exception as exc:
            raise ScenarioError(f"Setup of scenario {self.scenario.name!r} failed: {exc}") from exc

    def _run_teardown(self, report: RunReport) -> None:
        if self.scenario.teardown is None:
            return
        try:
            self.scenario.teardown(report)
        except Exception as exc:
            logger.error("Teardown of scenario %r failed: %s", self.scenario.name, exc)

    def _check_abort_thresholds(self, elapsed: float) -> bool:
        failing = self.evaluator.failing_abort_thresholds(self.registry.snapshot(elapsed))
        for outcome in failing:
            logger.error("Abort-on-fail threshold breached: %s (%s)", outcome.spec, outcome.reason)
        return bool(failing)

    def _drain(self) -> None:
        """Stop admitting, wait up to ``graceful_stop`` seconds, then abandon the rest."""
        self._admitting.clear()
        for user in self._users:
            user.retire()

        deadline = self._clock() + self.options.graceful_stop
        for user in self._users:
            remaining = deadline - self._clock()
            if remaining <= 0:
                break
            user.thread.join(timeout=remaining)

        self._hard_stop.set()
        aborted = 0
        for user in self._users:
            if user.is_alive() and user.abandon():
                aborted += 1
                self.registry.record(ITERATIONS_ABORTED, MetricKind.COUNTER, 1)
        if aborted:
            logger.warning(
                "Hard cutoff: abandoned %d in-flight iteration(s) after %.1fs grace period",
                aborted,
                self.options.graceful_stop,
            )

    def run(self) -> RunReport:
        """
        Execute the run to completion and return its report.

        Raises:
            ScenarioError: If the setup hook fails (no traffic generated).
            EngineError: If an internal fault stopped the run.
        """
        for name, kind in self._known_metrics.items():
            self.registry.declare(name, kind)

        logger.info(
            "Starting scenario %r: %d stage(s), %.1fs, peak %d users",
            self.scenario.name,
            len(self.plan.stages),
            self.plan.total_duration,
            self.plan.peak_concurrency,
        )
        if self.evaluator.specs:
            logger.info("Thresholds: %s", ", ".join(str(spec) for spec in self.evaluator.specs))
        self._run_setup()

        try:
            report = self._execute()
        except LoadGenError:
            raise
        except Exception as exc:
            self._stop_after_fault()
            raise EngineError(
                f"Run of scenario {self.scenario.name!r} failed: {type(exc).__name__}: {exc}"
            ) from exc

        self._run_teardown(report)
        return report

    def _stop_after_fault(self) -> None:
        """Release every user and freeze the metrics after an unexpected error."""
        self._admitting.clear()
        for user in self._users:
            user.retire()
        self._hard_stop.set()
        self.registry.seal()

    def _execute(self) -> RunReport:
        started_at = datetime.now(timezone.utc)
        scheduler = Scheduler(self.plan, clock=self._clock)
        tick = self.options.tick_interval
        next_threshold_check = self.options.threshold_interval
        aborted_by_threshold = False
        self._admitting.set()

        while self._fatal is None:
            now = self._clock()
            if scheduler.is_finished(now):
                break
            self._adjust(scheduler.desired_concurrency(now))

            elapsed = scheduler.elapsed(now)
            if self.evaluator.has_abort_on_fail and elapsed >= next_threshold_check:
                next_threshold_check += self.options.threshold_interval
                if self._check_abort_thresholds(elapsed):
                    aborted_by_threshold = True
                    break

            remaining = scheduler.end_time - self._clock()
            self._wake.wait(max(0.0, min(tick, remaining)))

        logger.info("Stage plan finished; draining %d user(s)", len(self._users))
        self._drain()

        duration = self._clock() - scheduler.start_time
        self.registry.seal()
        if self._fatal is not None:
            raise self._fatal

        with self._errors_lock:
            scenario_errors = list(self._scenario_errors)
        report = self.evaluator.evaluate(
            self.registry.snapshot(duration),
            started_at=started_at,
            duration=duration,
            aborted_by_threshold=aborted_by_threshold,
            scenario_errors=scenario_errors,
        )
        logger.info(
            "Run finished in %.1fs: %d completed, %d failed, %d aborted iterations; verdict %s",
            duration,
            report.iterations.completed,
            report.iterations.failed,
            report.iterations.aborted,
            "PASS" if report.passed else "FAIL",
        )
        return report
