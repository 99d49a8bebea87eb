"""Canary rollout state machine.

    IDLE -> CANARY_DEPLOYED -> EVALUATING -> PROMOTED | ROLLED_BACK | FAILED

The canary is promoted when the comparison score reaches the promotion
threshold. A comparison with no metric data, or one that degraded on an
error, always rolls back, whatever the threshold. Per-metric limits in
``CanaryConfig.metric_thresholds`` can only force a rollback, never a
promotion.

``run`` always returns a ``DeploymentResult``. A failed promotion deploy is
returned as-is and leaves the canary live at its initial traffic share; a
failed rollback is recorded in metadata only. Concurrent runs for the same
canary are not serialised here.
"""
import asyncio
import logging
from enum import Enum
from typing import Awaitable, Callable, List, Mapping, Optional, Sequence

from prometheus_client import Counter, Histogram

from config.reliability.canary.comparator import PerformanceComparator
from config.reliability.canary.interfaces import DeploymentGateway
from config.reliability.canary.models import (
    CanaryConfig,
    CanaryPerformanceResult,
    DeploymentRequest,
    DeploymentResult,
    MetricComparison,
)
from config.reliability.canary.profiles import DEFAULT_METRIC_PROFILES, MetricProfile, profile_for
from services.shared.observability import add_span_attributes, trace_operation

logger = logging.getLogger(__name__)

ROLLBACK_MESSAGE = "Canary performance below promotion threshold"

ROLLOUT_OUTCOMES = Counter(
    "seraphim_rollout_outcomes_total",
    "Canary rollouts by terminal state",
    labelnames=["state"],
)
CANARY_SCORE = Histogram(
    "seraphim_canary_score",
    "Overall canary score at decision time",
    buckets=(0.1, 0.2, 0.3, 0.4, 0.5, 0.6, 0.7, 0.8, 0.9, 0.95, 1.0),
)


class RolloutState(str, Enum):
    IDLE = "idle"
    CANARY_DEPLOYED = "canary_deployed"
    EVALUATING = "evaluating"
    PROMOTED = "promoted"
    ROLLED_BACK = "rolled_back"
    FAILED = "failed"


def threshold_breaches(
    comparisons: Sequence[MetricComparison],
    thresholds: Optional[Mapping[str, float]],
    profiles: Mapping[str, MetricProfile] = DEFAULT_METRIC_PROFILES,
) -> List[str]:
    """Names of metrics whose canary average is past its hard limit.

    A limited metric that has no comparison is skipped with a warning.
    """
    if not thresholds:
        return []
    by_name = {c.metric_name: c for c in comparisons}
    breaches = []
    for name, limit in thresholds.items():
        comparison = by_name.get(name)
        if comparison is None:
            logger.warning("No data for limited metric", extra={"metric_name": name, "limit": limit})
            continue
        if not profile_for(name, profiles).within_limit(comparison.canary_average, limit):
            logger.warning(
                "Canary metric past its limit",
                extra={"metric_name": name, "limit": limit, "canary_average": comparison.canary_average}
            )
            breaches.append(name)
    return breaches


class CanaryOrchestrator:
    def __init__(
        self,
        gateway: DeploymentGateway,
        comparator: PerformanceComparator,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        profiles: Mapping[str, MetricProfile] = DEFAULT_METRIC_PROFILES,
    ):
        self._gateway = gateway
        self._comparator = comparator
        self._sleep = sleep
        self._profiles = dict(profiles)

    async def run(self, request: DeploymentRequest, config: CanaryConfig) -> DeploymentResult:
        with trace_operation(
            "canary_rollout",
            model_id=request.model_id,
            environment=request.environment,
            baseline_deployment_id=config.baseline_deployment_id,
        ):
            state = RolloutState.IDLE
            canary_id: Optional[str] = None
            try:
                canary = await self._deploy_canary(request, config)
                if not canary.success:
                    state = self._transition(state, RolloutState.FAILED, request)
                    return canary
                canary_id = canary.deployment_id
                state = self._transition(state, RolloutState.CANARY_DEPLOYED, request, canary_id)

                # Yields the event loop; nothing is held while waiting
                await self._sleep(config.evaluation_period.total_seconds())

                state = self._transition(state, RolloutState.EVALUATING, request, canary_id)
                performance = await self._comparator.compare(
                    canary_id,
                    config.baseline_deployment_id,
                    config.evaluation_period,
                    metric_names=config.monitored_metric_names,
                )
                CANARY_SCORE.observe(performance.overall_score)
                add_span_attributes(canary_deployment_id=canary_id, canary_score=performance.overall_score)

                breaches = threshold_breaches(
                    performance.comparisons, config.metric_thresholds, self._profiles
                )
                if not breaches and self.should_promote(performance, config):
                    result = await self._promote(request, config, canary_id, performance)
                    next_state = RolloutState.PROMOTED if result.success else RolloutState.FAILED
                else:
                    result = await self._roll_back(config, canary_id, performance, breaches)
                    next_state = RolloutState.ROLLED_BACK
                self._transition(state, next_state, request, canary_id)
                return result
            except Exception as e:
                logger.exception(
                    "Canary rollout failed",
                    extra={
                        "model_id": request.model_id,
                        "canary_deployment_id": canary_id,
                        "state": state.value,
                    }
                )
                self._transition(state, RolloutState.FAILED, request, canary_id)
                return DeploymentResult(
                    success=False,
                    deployment_id=canary_id or request.model_id,
                    canary_deployment_id=canary_id,
                    error_message=str(e) or type(e).__name__,
                )

    @staticmethod
    def should_promote(performance: CanaryPerformanceResult, config: CanaryConfig) -> bool:
        """Inclusive threshold check; a result without comparisons never promotes."""
        if performance.error_message is not None or not performance.comparisons:
            return False
        return performance.overall_score >= config.promotion_threshold

    async def _deploy_canary(self, request: DeploymentRequest, config: CanaryConfig) -> DeploymentResult:
        logger.info(
            "Starting canary deployment",
            extra={
                "model_id": request.model_id,
                "environment": request.environment,
                "initial_percentage": config.initial_percentage,
            }
        )
        try:
            result = await self._gateway.deploy(request.with_traffic(config.initial_percentage))
        except Exception as e:
            logger.error(
                "Canary deployment raised",
                extra={"model_id": request.model_id, "error": str(e), "error_type": type(e).__name__}
            )
            return DeploymentResult(
                success=False,
                deployment_id=request.model_id,
                error_message=str(e) or type(e).__name__,
            )
        if not result.success:
            logger.warning(
                "Canary deployment failed",
                extra={"model_id": request.model_id, "error": result.error_message}
            )
        return result

    async def _promote(
        self,
        request: DeploymentRequest,
        config: CanaryConfig,
        canary_id: str,
        performance: CanaryPerformanceResult,
    ) -> DeploymentResult:
        logger.info(
            "Promoting canary to full traffic",
            extra={
                "canary_deployment_id": canary_id,
                "canary_score": performance.overall_score,
                "promotion_threshold": config.promotion_threshold,
            }
        )
        result = await self._gateway.deploy(request.with_traffic(100))
        if not result.success:
            # Canary stays live at its initial share; no corrective rollback
            logger.error(
                "Full deployment failed after canary passed",
                extra={"canary_deployment_id": canary_id, "error": result.error_message}
            )
            return result

        metadata = dict(result.metadata)
        metadata.update({
            "canary_score": performance.overall_score,
            "canary_deployment_id": canary_id,
            "promotion_threshold": config.promotion_threshold,
            "canary_promotion": "success",
        })
        return result.model_copy(update={"canary_deployment_id": canary_id, "metadata": metadata})

    async def _roll_back(
        self,
        config: CanaryConfig,
        canary_id: str,
        performance: CanaryPerformanceResult,
        breaches: Optional[List[str]] = None,
    ) -> DeploymentResult:
        logger.warning(
            "Canary below promotion threshold, rolling back",
            extra={
                "canary_deployment_id": canary_id,
                "canary_score": performance.overall_score,
                "promotion_threshold": config.promotion_threshold,
                "comparison_error": performance.error_message,
                "threshold_breaches": breaches,
            }
        )
        try:
            rollback = await self._gateway.rollback(canary_id)
            rollback_success = rollback.success
            rollback_error = rollback.error_message
        except Exception as e:
            rollback_success = False
            rollback_error = str(e) or type(e).__name__
        if not rollback_success:
            logger.error(
                "Canary rollback failed",
                extra={"canary_deployment_id": canary_id, "error": rollback_error}
            )

        metadata = {
            "canary_score": performance.overall_score,
            "canary_deployment_id": canary_id,
            "promotion_threshold": config.promotion_threshold,
            "canary_promotion": "failed",
            "rollback_success": rollback_success,
        }
        if breaches:
            metadata["threshold_breaches"] = breaches
        return DeploymentResult(
            success=False,
            deployment_id=canary_id,
            canary_deployment_id=canary_id,
            error_message=ROLLBACK_MESSAGE,
            metadata=metadata,
        )

    @staticmethod
    def _transition(
        current: RolloutState,
        target: RolloutState,
        request: DeploymentRequest,
        canary_id: Optional[str] = None,
    ) -> RolloutState:
        logger.info(
            "Rollout state changed",
            extra={
                "from_state": current.value,
                "to_state": target.value,
                "model_id": request.model_id,
                "canary_deployment_id": canary_id,
            }
        )
        if target in (RolloutState.PROMOTED, RolloutState.ROLLED_BACK, RolloutState.FAILED):
            ROLLOUT_OUTCOMES.labels(state=target.value).inc()
        return target
