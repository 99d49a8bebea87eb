"""Tests for canary vs baseline performance comparison."""
import asyncio
import math
from datetime import timedelta

import pytest

from config.reliability.canary.comparator import (
    PerformanceComparator,
    aggregate_score,
    metric_score,
    percent_change,
)
from config.reliability.canary.errors import MetricsUnavailableError
from config.reliability.canary.models import MetricComparison
from config.reliability.canary.profiles import Direction, MetricProfile
from conftest import FIXED_NOW, stats


def _comparison(name="m", change=10.0, improvement=True, significant=True, weight=1.0):
    return MetricComparison(
        metric_name=name,
        baseline_average=1.0,
        canary_average=1.0 + change / 100,
        percent_change=change,
        is_significant=significant,
        p_value=0.01 if significant else 0.5,
        is_improvement=improvement,
        weight=weight,
    )


def _comparator(gateway, metric_source, **kwargs):
    return PerformanceComparator(gateway, metric_source, clock=lambda: FIXED_NOW, **kwargs)


class TestPercentChange:

    def test_relative_to_baseline(self):
        assert percent_change(0.05, 0.02) == pytest.approx(-60.0)
        assert percent_change(100.0, 110.0) == pytest.approx(10.0)

    def test_negative_baseline_uses_magnitude(self):
        assert percent_change(-10.0, -5.0) == pytest.approx(50.0)

    def test_zero_baseline_is_zero(self):
        assert percent_change(0.0, 42.0) == 0.0


class TestMetricScore:

    def test_significant_improvement_caps_at_one(self):
        assert metric_score(_comparison(change=-60.0)) == 1.0

    def test_significant_regression_floors_at_zero(self):
        assert metric_score(_comparison(change=60.0, improvement=False)) == 0.0

    def test_small_change_scales_linearly(self):
        assert metric_score(_comparison(change=5.0)) == pytest.approx(0.75)
        assert metric_score(_comparison(change=5.0, improvement=False)) == pytest.approx(0.25)

    def test_not_significant_is_dampened_toward_neutral(self):
        assert metric_score(_comparison(change=-60.0, significant=False)) == pytest.approx(0.75)
        assert metric_score(_comparison(change=60.0, improvement=False, significant=False)) == pytest.approx(0.25)

    def test_no_change_is_neutral(self):
        assert metric_score(_comparison(change=0.0, improvement=False)) == 0.5


class TestAggregateScore:

    def test_empty_is_zero(self):
        assert aggregate_score([]) == 0.0

    def test_weights_are_normalised(self):
        comparisons = [
            _comparison("a", change=-60.0, weight=0.3),
            _comparison("b", change=60.0, improvement=False, weight=0.1),
        ]
        assert aggregate_score(comparisons) == pytest.approx(0.75)

    def test_non_finite_changes_are_excluded(self):
        comparisons = [
            _comparison("a", change=-60.0, weight=0.3),
            _comparison("b", change=math.inf, improvement=False, weight=0.4),
            _comparison("c", change=math.nan, weight=0.4),
        ]
        assert aggregate_score(comparisons) == pytest.approx(1.0)

    def test_only_non_finite_changes_is_zero(self):
        assert aggregate_score([_comparison(change=math.nan)]) == 0.0


@pytest.mark.asyncio
class TestPerformanceComparator:

    async def test_error_rate_improvement_promotes(self, gateway, metric_source):
        metric_source.set_statistics("error_rate", "baseline-1", stats(0.05))
        metric_source.set_statistics("error_rate", "canary-1", stats(0.02))

        result = await _comparator(gateway, metric_source).compare("canary-1", "baseline-1", timedelta(hours=1))

        assert result.error_message is None
        assert len(result.comparisons) == 1
        comparison = result.comparisons[0]
        assert comparison.metric_name == "error_rate"
        assert comparison.percent_change == pytest.approx(-60.0)
        assert comparison.is_improvement is True
        assert comparison.is_significant is True
        assert comparison.p_value < 0.05
        assert comparison.weight == 0.3
        assert result.overall_score == pytest.approx(1.0)

    async def test_small_sample_is_not_significant(self, gateway, metric_source):
        metric_source.set_statistics("error_rate", "baseline-1", stats(0.05))
        metric_source.set_statistics("error_rate", "canary-1", stats(0.02, n=1))

        result = await _comparator(gateway, metric_source).compare("canary-1", "baseline-1", timedelta(hours=1))

        comparison = result.comparisons[0]
        assert comparison.p_value == 1.0
        assert comparison.is_significant is False
        assert result.overall_score == pytest.approx(0.75)

    async def test_direction_table_per_metric(self, gateway, metric_source):
        # All metrics go up by 10% on the canary
        for name in ("latency_ms", "error_rate", "token_count", "user_feedback", "relevance_score"):
            metric_source.set_statistics(name, "baseline-1", stats(10.0))
            metric_source.set_statistics(name, "canary-1", stats(11.0))

        result = await _comparator(gateway, metric_source).compare("canary-1", "baseline-1", timedelta(hours=1))

        improvements = {c.metric_name: c.is_improvement for c in result.comparisons}
        assert improvements == {
            "latency_ms": False,
            "error_rate": False,
            "token_count": False,
            "user_feedback": True,
            "relevance_score": True,
        }
        # 0.5 weight on improvements, 0.5 on regressions: symmetric scores
        assert result.overall_score == pytest.approx(0.5)

    async def test_only_metrics_present_on_both_sides(self, gateway, metric_source):
        metric_source.set_statistics("error_rate", "baseline-1", stats(0.05))
        metric_source.set_statistics("error_rate", "canary-1", stats(0.02))
        metric_source.set_statistics("latency_ms", "canary-1", stats(100.0))
        metric_source.set_statistics("user_feedback", "baseline-1", stats(4.0))

        result = await _comparator(gateway, metric_source).compare("canary-1", "baseline-1", timedelta(hours=1))

        assert [c.metric_name for c in result.comparisons] == ["error_rate"]

    async def test_no_data_scores_zero(self, gateway, metric_source):
        result = await _comparator(gateway, metric_source).compare("canary-1", "baseline-1", timedelta(hours=1))

        assert result.comparisons == []
        assert result.overall_score == 0.0

    async def test_zero_baseline_gives_zero_change(self, gateway, metric_source):
        metric_source.set_statistics("error_rate", "baseline-1", stats(0.0))
        metric_source.set_statistics("error_rate", "canary-1", stats(0.02))

        result = await _comparator(gateway, metric_source).compare("canary-1", "baseline-1", timedelta(hours=1))

        comparison = result.comparisons[0]
        assert comparison.percent_change == 0.0
        assert comparison.is_improvement is False
        assert result.overall_score == pytest.approx(0.5)

    async def test_window_ends_now(self, gateway, metric_source):
        result = await _comparator(gateway, metric_source).compare("canary-1", "baseline-1", timedelta(minutes=30))

        assert result.window.end == FIXED_NOW
        assert result.window.start == FIXED_NOW - timedelta(minutes=30)

    async def test_unknown_canary_fails_fast(self, gateway, metric_source):
        result = await _comparator(gateway, metric_source).compare("missing", "baseline-1", timedelta(hours=1))

        assert result.overall_score == 0.0
        assert result.error_message == "Deployment not found: missing"
        assert result.comparisons == []

    async def test_unknown_baseline_fails_fast(self, gateway, metric_source):
        result = await _comparator(gateway, metric_source).compare("canary-1", "missing", timedelta(hours=1))

        assert result.overall_score == 0.0
        assert "missing" in result.error_message

    async def test_metrics_backend_failure_is_degraded(self, gateway):
        class BrokenSource:
            async def get_statistics(self, metric_name, start, end, dimensions):
                raise MetricsUnavailableError("connection refused")

        result = await _comparator(gateway, BrokenSource()).compare("canary-1", "baseline-1", timedelta(hours=1))

        assert result.overall_score == 0.0
        assert "connection refused" in result.error_message

    async def test_unexpected_error_is_degraded(self, gateway):
        class BrokenSource:
            async def get_statistics(self, metric_name, start, end, dimensions):
                raise RuntimeError("boom")

        result = await _comparator(gateway, BrokenSource()).compare("canary-1", "baseline-1", timedelta(hours=1))

        assert result.overall_score == 0.0
        assert result.error_message == "boom"

    async def test_failed_fetch_leaves_no_fetch_running(self, gateway):
        in_flight = []
        finished = []

        class PartlyBrokenSource:
            async def get_statistics(self, metric_name, start, end, dimensions):
                in_flight.append(metric_name)
                try:
                    if metric_name == "latency_ms" and dimensions["deployment_id"] == "canary-1":
                        raise MetricsUnavailableError("connection refused")
                    await asyncio.sleep(0.05)
                    return None
                finally:
                    in_flight.remove(metric_name)
                    finished.append(metric_name)

        result = await _comparator(gateway, PartlyBrokenSource()).compare("canary-1", "baseline-1", timedelta(hours=1))

        assert "connection refused" in result.error_message
        assert in_flight == []
        assert len(finished) == 10

    async def test_dimensions_passed_to_metric_source(self, gateway):
        seen = []

        class RecordingSource:
            async def get_statistics(self, metric_name, start, end, dimensions):
                seen.append(dict(dimensions))
                return None

        await _comparator(gateway, RecordingSource()).compare(
            "canary-1", "baseline-1", timedelta(hours=1), metric_names=["error_rate"]
        )

        assert {"deployment_id": "canary-1", "model_id": "ranker-v2", "environment": "prod"} in seen
        assert {"deployment_id": "baseline-1", "model_id": "ranker-v1", "environment": "prod"} in seen

    async def test_monitored_metric_names_restrict_the_set(self, gateway, metric_source):
        metric_source.set_statistics("error_rate", "baseline-1", stats(0.05))
        metric_source.set_statistics("error_rate", "canary-1", stats(0.02))
        metric_source.set_statistics("latency_ms", "baseline-1", stats(100.0))
        metric_source.set_statistics("latency_ms", "canary-1", stats(200.0))

        result = await _comparator(gateway, metric_source).compare(
            "canary-1", "baseline-1", timedelta(hours=1), metric_names=["error_rate"]
        )

        assert [c.metric_name for c in result.comparisons] == ["error_rate"]

    async def test_unknown_metric_uses_default_profile(self, gateway, metric_source):
        metric_source.set_statistics("gpu_memory_mb", "baseline-1", stats(100.0))
        metric_source.set_statistics("gpu_memory_mb", "canary-1", stats(90.0))

        result = await _comparator(gateway, metric_source).compare(
            "canary-1", "baseline-1", timedelta(hours=1), metric_names=["gpu_memory_mb"]
        )

        comparison = result.comparisons[0]
        assert comparison.is_improvement is False
        assert comparison.weight == 0.05

    async def test_injected_profiles_and_tester(self, gateway, metric_source):
        class AlwaysSignificant:
            def p_value(self, baseline, canary):
                return 0.0

            def is_significant(self, p_value):
                return True

        metric_source.set_statistics("gpu_memory_mb", "baseline-1", stats(100.0, n=1))
        metric_source.set_statistics("gpu_memory_mb", "canary-1", stats(90.0, n=1))
        comparator = _comparator(
            gateway,
            metric_source,
            profiles={"gpu_memory_mb": MetricProfile(Direction.LOWER_IS_BETTER, 1.0)},
            significance_tester=AlwaysSignificant(),
        )

        result = await comparator.compare("canary-1", "baseline-1", timedelta(hours=1))

        comparison = result.comparisons[0]
        assert comparison.is_improvement is True
        assert comparison.is_significant is True
        assert result.overall_score == pytest.approx(1.0)

    async def test_deterministic_for_identical_inputs(self, gateway, metric_source):
        metric_source.set_statistics("latency_ms", "baseline-1", stats(120.0, std_dev=15.0, n=40))
        metric_source.set_statistics("latency_ms", "canary-1", stats(110.0, std_dev=12.0, n=35))
        metric_source.set_statistics("user_feedback", "baseline-1", stats(4.1, std_dev=0.6, n=80))
        metric_source.set_statistics("user_feedback", "canary-1", stats(4.0, std_dev=0.7, n=75))
        comparator = _comparator(gateway, metric_source)

        first = await comparator.compare("canary-1", "baseline-1", timedelta(hours=1))
        second = await comparator.compare("canary-1", "baseline-1", timedelta(hours=1))

        assert first == second
