"""Canary vs baseline performance comparison.

Fetches summary statistics for both deployments over the evaluation window,
compares them metric by metric and folds the comparisons into one
rollout-safety score in [0, 1]. Failures never escape ``compare``: they are
reported as a zero-score result with ``error_message`` set, so a rollout
without data always rolls back.
"""
import asyncio
import logging
import math
from datetime import datetime, timedelta
from typing import Callable, Dict, List, Mapping, Optional, Sequence

from prometheus_client import Counter

from config.reliability.canary.errors import DeploymentNotFoundError, MetricsUnavailableError
from config.reliability.canary.interfaces import DeploymentGateway, MetricSource
from config.reliability.canary.models import (
    CanaryPerformanceResult,
    DeploymentInfo,
    MetricComparison,
    MetricStatistics,
    TimeWindow,
    utcnow,
)
from config.reliability.canary.profiles import DEFAULT_METRIC_PROFILES, MetricProfile, profile_for
from config.reliability.canary.significance import ApproximateSignificanceTester, SignificanceTester
from services.shared.observability import add_span_attributes, trace_operation

logger = logging.getLogger(__name__)

COMPARISON_ERRORS = Counter(
    "seraphim_comparison_errors_total",
    "Canary comparisons that degraded to a zero score",
    labelnames=["reason"],
)


def percent_change(baseline_average: float, canary_average: float) -> float:
    if baseline_average == 0:
        return 0.0
    return (canary_average - baseline_average) / abs(baseline_average) * 100.0


def metric_score(comparison: MetricComparison) -> float:
    """Score one comparison: 0.5 is neutral, 1.0 a large improvement."""
    magnitude = min(abs(comparison.percent_change) / 20.0, 0.5)
    base = 0.5 + magnitude if comparison.is_improvement else 0.5 - magnitude
    if not comparison.is_significant:
        # Halve the distance from neutral
        return 0.5 + (base - 0.5) * 0.5
    return base


def aggregate_score(comparisons: Sequence[MetricComparison]) -> float:
    """Weighted mean of per-metric scores; 0 when nothing can be scored."""
    total_weight = 0.0
    weighted = 0.0
    for comparison in comparisons:
        if not math.isfinite(comparison.percent_change):
            continue
        weighted += metric_score(comparison) * comparison.weight
        total_weight += comparison.weight
    if total_weight <= 0:
        return 0.0
    return weighted / total_weight


def _dimensions(info: DeploymentInfo) -> Dict[str, str]:
    return {
        "deployment_id": info.deployment_id,
        "model_id": info.model_id,
        "environment": info.environment,
    }


class PerformanceComparator:
    def __init__(
        self,
        gateway: DeploymentGateway,
        metric_source: MetricSource,
        profiles: Mapping[str, MetricProfile] = DEFAULT_METRIC_PROFILES,
        significance_tester: Optional[SignificanceTester] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self._gateway = gateway
        self._metric_source = metric_source
        self._profiles = dict(profiles)
        self._tester = significance_tester or ApproximateSignificanceTester()
        self._clock = clock

    @property
    def metric_names(self) -> List[str]:
        return list(self._profiles)

    async def compare(
        self,
        canary_deployment_id: str,
        baseline_deployment_id: str,
        evaluation_period: timedelta,
        metric_names: Optional[Sequence[str]] = None,
    ) -> CanaryPerformanceResult:
        end = self._clock()
        window = TimeWindow(start=end - evaluation_period, end=end)
        names = list(metric_names) if metric_names else self.metric_names

        def degraded(message: str) -> CanaryPerformanceResult:
            return CanaryPerformanceResult(
                canary_deployment_id=canary_deployment_id,
                baseline_deployment_id=baseline_deployment_id,
                window=window,
                overall_score=0.0,
                error_message=message,
            )

        with trace_operation(
            "canary_comparison",
            canary_deployment_id=canary_deployment_id,
            baseline_deployment_id=baseline_deployment_id,
        ):
            try:
                canary = await self._resolve(canary_deployment_id)
                baseline = await self._resolve(baseline_deployment_id)
                comparisons = await self._compare_metrics(
                    names, window, _dimensions(canary), _dimensions(baseline)
                )
            except DeploymentNotFoundError as e:
                logger.warning(
                    "Deployment not found, skipping comparison",
                    extra={"deployment_id": e.deployment_id}
                )
                COMPARISON_ERRORS.labels(reason="deployment_not_found").inc()
                return degraded(str(e))
            except MetricsUnavailableError as e:
                logger.error(
                    "Metrics backend unavailable",
                    extra={"canary_deployment_id": canary_deployment_id, "error": str(e)}
                )
                COMPARISON_ERRORS.labels(reason="metrics_unavailable").inc()
                return degraded(f"Metrics unavailable: {e}")
            except Exception as e:
                logger.exception(
                    "Canary comparison failed",
                    extra={"canary_deployment_id": canary_deployment_id, "error_type": type(e).__name__}
                )
                COMPARISON_ERRORS.labels(reason="error").inc()
                return degraded(str(e) or type(e).__name__)

            overall_score = aggregate_score(comparisons)
            add_span_attributes(overall_score=overall_score, compared_metrics=len(comparisons))

        if not comparisons:
            logger.warning(
                "No metrics available on both deployments",
                extra={
                    "canary_deployment_id": canary_deployment_id,
                    "baseline_deployment_id": baseline_deployment_id,
                }
            )
        logger.info(
            "Canary comparison completed",
            extra={
                "canary_deployment_id": canary_deployment_id,
                "baseline_deployment_id": baseline_deployment_id,
                "overall_score": overall_score,
                "compared_metrics": [c.metric_name for c in comparisons],
            }
        )

        return CanaryPerformanceResult(
            canary_deployment_id=canary_deployment_id,
            baseline_deployment_id=baseline_deployment_id,
            window=window,
            overall_score=overall_score,
            comparisons=comparisons,
        )

    async def _resolve(self, deployment_id: str) -> DeploymentInfo:
        info = await self._gateway.get(deployment_id)
        if info is None:
            raise DeploymentNotFoundError(deployment_id)
        return info

    async def _compare_metrics(
        self,
        names: Sequence[str],
        window: TimeWindow,
        canary_dimensions: Mapping[str, str],
        baseline_dimensions: Mapping[str, str],
    ) -> List[MetricComparison]:
        fetches = []
        for name in names:
            fetches.append(self._metric_source.get_statistics(name, window.start, window.end, canary_dimensions))
            fetches.append(self._metric_source.get_statistics(name, window.start, window.end, baseline_dimensions))
        # Every fetch settles before the first failure is raised
        stats = await asyncio.gather(*fetches, return_exceptions=True)
        for value in stats:
            if isinstance(value, BaseException):
                raise value

        comparisons: List[MetricComparison] = []
        seen = set()
        for i, name in enumerate(names):
            canary_stats, baseline_stats = stats[2 * i], stats[2 * i + 1]
            if name in seen or canary_stats is None or baseline_stats is None:
                continue
            seen.add(name)
            comparisons.append(self._compare(name, baseline_stats, canary_stats))
        return comparisons

    def _compare(
        self, name: str, baseline: MetricStatistics, canary: MetricStatistics
    ) -> MetricComparison:
        profile = profile_for(name, self._profiles)
        change = percent_change(baseline.average, canary.average)
        p_value = self._tester.p_value(baseline, canary)
        return MetricComparison(
            metric_name=name,
            baseline_average=baseline.average,
            canary_average=canary.average,
            percent_change=change,
            is_significant=self._tester.is_significant(p_value),
            p_value=p_value,
            is_improvement=profile.is_improvement(change),
            weight=profile.weight,
        )
