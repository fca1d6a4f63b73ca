"""
Unit tests for stage plans and the concurrency scheduler.

The scheduler is driven with an injected clock, so every schedule is
walked instantly and deterministically.

Key SDET Concepts Demonstrated:
- Boundary-value analysis at stage edges
- Property-style sweeps over many sample points
- Negative tests for configuration validation
"""

from __future__ import annotations

import pytest

from loadgen.errors import ConfigurationError
from loadgen.stages import Scheduler, Stage, StagePlan, parse_duration

pytestmark = pytest.mark.unit


def _scheduler(*stages: tuple[float, int], start_concurrency: int = 0) -> Scheduler:
    plan = StagePlan(tuple(Stage(duration, target) for duration, target in stages), start_concurrency)
    return Scheduler(plan, start_time=100.0, clock=lambda: 100.0)


class TestParseDuration:
    """Duration strings accepted in run files."""

    @pytest.mark.parametrize(
        ("value", "expected"),
        [
            (5, 5.0),
            (2.5, 2.5),
            ("10", 10.0),
            ("30s", 30.0),
            ("2m", 120.0),
            ("1h", 3600.0),
            ("500ms", 0.5),
            ("1m30s", 90.0),
            ("0s", 0.0),
        ],
    )
    def test_valid_durations(self, value, expected):
        assert parse_duration(value) == pytest.approx(expected)

    @pytest.mark.parametrize("value", ["", "abc", "10x", "-5s", -1, None, True, "5s junk"])
    def test_invalid_durations_are_configuration_errors(self, value):
        with pytest.raises(ConfigurationError):
            parse_duration(value)


class TestStagePlanValidation:
    """Plans are validated before any virtual user starts."""

    def test_empty_plan_is_rejected(self):
        with pytest.raises(ConfigurationError):
            StagePlan(())

    def test_empty_stage_list_from_config_is_rejected(self):
        with pytest.raises(ConfigurationError):
            StagePlan.from_config([])

    def test_negative_duration_is_rejected(self):
        with pytest.raises(ConfigurationError):
            Stage(-1, 5)

    def test_negative_target_is_rejected(self):
        with pytest.raises(ConfigurationError):
            Stage(10, -5)

    def test_fractional_target_is_rejected(self):
        with pytest.raises(ConfigurationError):
            StagePlan.from_config([{"duration": "10s", "target": 2.5}])

    def test_stage_without_target_is_rejected(self):
        with pytest.raises(ConfigurationError):
            StagePlan.from_config([{"duration": "10s"}])

    def test_from_config_parses_k6_style_entries(self):
        plan = StagePlan.from_config(
            [{"duration": "2m", "target": 10}, {"duration": "30s", "target": 0}]
        )

        assert plan.stages == (Stage(120.0, 10), Stage(30.0, 0))
        assert plan.total_duration == 150.0
        assert plan.peak_concurrency == 10


class TestDesiredConcurrency:
    """Piecewise-linear interpolation of the target user count."""

    def test_before_start_is_zero(self):
        scheduler = _scheduler((10, 10))

        assert scheduler.desired_concurrency(now=99.0) == 0

    def test_ramp_interpolates_linearly(self):
        scheduler = _scheduler((10, 10))

        assert scheduler.level(now=100.0) == pytest.approx(0.0)
        assert scheduler.level(now=102.5) == pytest.approx(2.5)
        assert scheduler.level(now=105.0) == pytest.approx(5.0)
        assert scheduler.desired_concurrency(now=107.0) == 7

    def test_plateau_is_constant(self):
        scheduler = _scheduler((0, 5), (10, 5))

        levels = {scheduler.desired_concurrency(now=100.0 + t / 10) for t in range(100)}

        assert levels == {5}

    def test_ramp_down_starts_from_previous_target(self):
        scheduler = _scheduler((10, 10), (10, 0))

        assert scheduler.level(now=115.0) == pytest.approx(5.0)

    def test_start_concurrency_is_the_first_ramp_origin(self):
        scheduler = _scheduler((10, 10), start_concurrency=4)

        assert scheduler.level(now=100.0) == pytest.approx(4.0)
        assert scheduler.level(now=105.0) == pytest.approx(7.0)

    def test_zero_duration_stage_jumps_to_target(self):
        scheduler = _scheduler((10, 10), (0, 50), (10, 50))

        assert scheduler.level(now=109.999) == pytest.approx(10.0, abs=0.01)
        assert scheduler.level(now=110.0) == pytest.approx(50.0)

    def test_after_the_plan_target_is_zero_and_run_is_finished(self):
        scheduler = _scheduler((10, 10), (10, 10))

        assert not scheduler.is_finished(now=119.9)
        assert scheduler.is_finished(now=120.0)
        assert scheduler.desired_concurrency(now=150.0) == 0

    def test_rounding_is_half_up(self):
        scheduler = _scheduler((10, 1))

        assert scheduler.desired_concurrency(now=104.9) == 0
        assert scheduler.desired_concurrency(now=105.0) == 1

    def test_level_is_continuous_at_stage_boundaries(self):
        stages = ((7, 10), (13, 10), (5, 40), (9, 3), (11, 25))
        scheduler = _scheduler(*stages)
        boundary = 100.0
        epsilon = 1e-6

        for duration, _ in stages[:-1]:
            boundary += duration
            before = scheduler.level(now=boundary - epsilon)
            after = scheduler.level(now=boundary)
            assert before == pytest.approx(after, abs=1e-3)

    def test_ramp_is_monotonic_between_targets(self):
        scheduler = _scheduler((20, 100))

        samples = [scheduler.level(now=100.0 + t * 0.25) for t in range(80)]

        assert samples == sorted(samples)
        assert all(0 <= sample <= 100 for sample in samples)

    def test_uses_injected_clock_when_now_is_omitted(self):
        now = [100.0]
        plan = StagePlan((Stage(10, 10),))
        scheduler = Scheduler(plan, clock=lambda: now[0])

        now[0] = 104.0

        assert scheduler.elapsed() == pytest.approx(4.0)
        assert scheduler.desired_concurrency() == 4
